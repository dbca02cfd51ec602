"""
JSON document store and the operations built on it.

Every operation loads the whole document, changes it in memory and writes the
whole document back. `DocumentStore.mutate` serializes these cycles within one
process; separate processes writing the same file still race (last write wins).
"""

import hashlib
import json
import logging
import os
import secrets
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

from schemas import (
    AdminCredential,
    ContentItem,
    Document,
    MediaRef,
    VisitorRecord,
    new_id,
)

logger = logging.getLogger(__name__)

MAX_VISITORS = 5000

# route kind -> collection name
COLLECTIONS = {
    "post": "posts",
    "video": "videos",
    "photo": "photos",
}

_ENTRY_MODELS = {
    "posts": ContentItem,
    "videos": ContentItem,
    "photos": ContentItem,
    "visitors": VisitorRecord,
}


class UnknownKind(LookupError):
    pass


class ItemNotFound(LookupError):
    pass


# ---------- Normalization ----------
def default_document(seed_admin: AdminCredential) -> Document:
    return Document(admin=seed_admin.model_copy())


def _validate_entries(name: str, model: type, entries: list) -> List[BaseModel]:
    valid = []
    for position, entry in enumerate(entries):
        try:
            valid.append(model.model_validate(entry))
        except ValidationError as e:
            logger.warning("Dropping malformed %s entry at %d: %s", name, position, e.errors()[:1])
    return valid


def _with_visitor_id(position: int, entry: Any) -> Any:
    """Give an id-less visitor entry an id derived from its position and content."""
    if not isinstance(entry, dict) or entry.get("id"):
        return entry
    key = "|".join(str(entry.get(k)) for k in ("time", "ip", "path"))
    digest = hashlib.sha1(f"{position}|{key}".encode("utf-8")).hexdigest()[:24]
    return {**entry, "id": digest}


def normalize_document(raw: Any, seed_admin: AdminCredential) -> Document:
    """
    Build a Document from whatever was deserialized.

    Absent or non-list collections become empty and null fields fall back to
    their defaults. Entries that still do not validate (not objects, no id) are
    dropped. Visitors without an id get one derived from position and content,
    so it is the same on every load. A missing or broken admin record is
    replaced by the seed.
    """
    if not isinstance(raw, dict):
        return default_document(seed_admin)

    data = {}
    for name, model in _ENTRY_MODELS.items():
        entries = raw.get(name)
        if not isinstance(entries, list):
            entries = []
        if name == "visitors":
            entries = [_with_visitor_id(i, e) for i, e in enumerate(entries)]
        data[name] = _validate_entries(name, model, entries)

    try:
        admin = AdminCredential.model_validate(raw.get("admin"))
    except ValidationError:
        logger.warning("Admin record missing or invalid, using seeded credential")
        admin = seed_admin.model_copy()

    return Document(admin=admin, **data)


# ---------- Store ----------
class DocumentStore:
    def __init__(self, path: Union[str, Path], seed_admin: AdminCredential) -> None:
        self.path = Path(path)
        self.seed_admin = seed_admin
        self._lock = threading.Lock()

    def load(self) -> Document:
        """Read the document; never raises for missing or corrupt storage."""
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.info("No document at %s, starting from defaults", self.path)
            raw = None
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s, starting from defaults: %s", self.path, e)
            raw = None
        return normalize_document(raw, self.seed_admin)

    def persist(self, document: Document) -> bool:
        """Overwrite storage with `document`. Returns False when the write failed."""
        payload = document.model_dump(mode="json", exclude_none=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            logger.error("Could not write %s: %s", self.path, e)
            return False
        return True

    def init(self) -> Document:
        with self._lock:
            document = self.load()
            if not self.persist(document):
                logger.warning("Continuing with an unsaved document at %s", self.path)
        return document

    @contextmanager
    def mutate(self) -> Iterator[Document]:
        with self._lock:
            document = self.load()
            yield document
            self.persist(document)


# ---------- Content ----------
def _collection(document: Document, kind: str) -> List[ContentItem]:
    try:
        return getattr(document, COLLECTIONS[kind])
    except KeyError:
        raise UnknownKind(kind) from None


def create_item(
    store: DocumentStore,
    kind: str,
    title: Optional[str] = "",
    content: Optional[str] = None,
    files: Iterable[Tuple[str, str]] = (),
    links: Iterable[str] = (),
) -> ContentItem:
    """
    Append a new visible item. `files` are (public path, original name) pairs
    already stored by the upload layer; blank links are skipped.
    """
    media = [MediaRef(type="file", path=path, originalname=name) for path, name in files]
    media += [MediaRef(type="link", url=url) for url in links if url]
    item = ContentItem(
        id=new_id(),
        title=title or "",
        content=(content or "") if kind == "post" else None,
        media=media,
    )
    with store.mutate() as document:
        _collection(document, kind).append(item)
    logger.info("Created %s %s", kind, item.id)
    return item


def list_items(store: DocumentStore, kind: str, include_hidden: bool = False) -> List[ContentItem]:
    items = list(reversed(_collection(store.load(), kind)))
    if include_hidden:
        return items
    return [item for item in items if item.visible]


def get_item(store: DocumentStore, kind: str, item_id: str) -> ContentItem:
    for item in _collection(store.load(), kind):
        if item.id == item_id:
            return item
    raise ItemNotFound(item_id)


def toggle_visibility(store: DocumentStore, kind: str, item_id: str) -> Optional[ContentItem]:
    with store.mutate() as document:
        for item in _collection(document, kind):
            if item.id == item_id:
                item.visible = not item.visible
                return item
    return None


def delete_item(store: DocumentStore, kind: str, item_id: str) -> int:
    with store.mutate() as document:
        items = _collection(document, kind)
        kept = [item for item in items if item.id != item_id]
        removed = len(items) - len(kept)
        items[:] = kept
    if removed:
        logger.info("Deleted %s %s", kind, item_id)
    return removed


# ---------- Admin ----------
def update_credentials(
    store: DocumentStore, email: Optional[str] = None, password: Optional[str] = None
) -> AdminCredential:
    with store.mutate() as document:
        document.admin.email = email or document.admin.email
        document.admin.password = password or document.admin.password
        admin = document.admin.model_copy()
    return admin


def check_credentials(store: DocumentStore, email: str, password: str) -> bool:
    admin = store.load().admin
    email_ok = secrets.compare_digest(email.encode(), admin.email.encode())
    password_ok = secrets.compare_digest(password.encode(), admin.password.encode())
    return email_ok and password_ok


# ---------- Visitors ----------
def append_visitor(document: Document, record: VisitorRecord) -> None:
    document.visitors.append(record)
    overflow = len(document.visitors) - MAX_VISITORS
    if overflow > 0:
        del document.visitors[:overflow]


def record_visitor(store: DocumentStore, ip: Optional[str], path: str) -> VisitorRecord:
    record = VisitorRecord(ip=ip, path=path)
    with store.mutate() as document:
        append_visitor(document, record)
    return record


def list_visitors(store: DocumentStore) -> List[VisitorRecord]:
    return list(reversed(store.load().visitors))


def clear_visitors(store: DocumentStore) -> int:
    with store.mutate() as document:
        removed = len(document.visitors)
        document.visitors = []
    return removed


def delete_visitor(store: DocumentStore, visitor_id: str) -> bool:
    with store.mutate() as document:
        before = len(document.visitors)
        document.visitors = [v for v in document.visitors if v.id != visitor_id]
        removed = len(document.visitors) != before
    return removed
