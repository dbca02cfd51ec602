import logging
import os
import secrets
import shutil
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.middleware.sessions import SessionMiddleware

import database
from config import Settings
from database import DocumentStore, ItemNotFound, UnknownKind

logger = logging.getLogger(__name__)

UPLOAD_LIMITS = {"mediaFiles": 6, "videoFile": 1, "photoFiles": 12}


class LoginRequired(Exception):
    pass


# ---------- Helpers ----------
def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def require_admin(request: Request) -> None:
    if not request.session.get("authenticated"):
        raise LoginRequired()


def client_address(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def to_dashboard() -> RedirectResponse:
    return RedirectResponse(url="/admin/dashboard", status_code=303)


def save_upload(upload: UploadFile, uploads_dir: Path) -> Tuple[str, str]:
    """Store one upload; returns (public path, original filename)."""
    ext = os.path.splitext(upload.filename or "")[1]
    name = f"{int(time.time() * 1000)}-{secrets.token_urlsafe(6)[:6]}{ext}"
    with open(uploads_dir / name, "wb") as out:
        shutil.copyfileobj(upload.file, out)
    return "/uploads/" + name, upload.filename


async def stored_files(request: Request, field: str) -> List[Tuple[str, str]]:
    form = await request.form()
    uploads = [f for f in form.getlist(field) if isinstance(f, UploadFile) and f.filename]
    if len(uploads) > UPLOAD_LIMITS[field]:
        raise HTTPException(status_code=400, detail=f"Too many files in {field} (max {UPLOAD_LIMITS[field]})")
    settings: Settings = request.app.state.settings
    return [await run_in_threadpool(save_upload, f, settings.uploads_dir) for f in uploads]


async def form_values(request: Request, field: str) -> List[str]:
    form = await request.form()
    return [v for v in form.getlist(field) if isinstance(v, str) and v]


def dump(items) -> List[Dict[str, Any]]:
    return [i.model_dump(mode="json", exclude_none=True) for i in items]


# ---------- App ----------
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    store = DocumentStore(settings.db_path, settings.seed_admin)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        settings.uploads_dir.mkdir(parents=True, exist_ok=True)
        store.init()
        logger.info("Data dir %s", settings.data_dir)
        yield

    app = FastAPI(title="Mini CMS Backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store

    @app.middleware("http")
    async def log_visitor(request: Request, call_next):
        if not request.url.path.startswith("/uploads/"):
            try:
                await run_in_threadpool(
                    database.record_visitor, store, client_address(request), request.url.path
                )
            except Exception:
                logger.exception("Visitor logging failed")
        return await call_next(request)

    app.add_middleware(SessionMiddleware, secret_key=settings.secret_key)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoginRequired)
    async def login_redirect(request: Request, exc: LoginRequired):
        return RedirectResponse(url="/admin/login", status_code=303)

    @app.exception_handler(UnknownKind)
    async def unknown_kind(request: Request, exc: UnknownKind):
        return JSONResponse(status_code=404, content={"detail": f"Unknown content type: {exc}"})

    # created in lifespan
    app.mount(
        "/uploads",
        StaticFiles(directory=str(settings.uploads_dir), check_dir=False),
        name="uploads",
    )

    register_public_routes(app)
    register_admin_routes(app)
    return app


# ---------- Public ----------
def register_public_routes(app: FastAPI) -> None:
    @app.get("/")
    def home(request: Request, store: DocumentStore = Depends(get_store)):
        return {
            "videos": dump(database.list_items(store, "video")),
            "photos": dump(database.list_items(store, "photo")),
            "posts": dump(database.list_items(store, "post")),
            "user": request.session.get("user"),
        }

    @app.get("/videos")
    def videos(store: DocumentStore = Depends(get_store)):
        return {"videos": dump(database.list_items(store, "video"))}

    @app.get("/photos")
    def photos(store: DocumentStore = Depends(get_store)):
        return {"photos": dump(database.list_items(store, "photo"))}

    @app.get("/blog")
    def blog(store: DocumentStore = Depends(get_store)):
        return {"posts": dump(database.list_items(store, "post"))}

    @app.get("/post/{post_id}")
    def post(post_id: str, request: Request, store: DocumentStore = Depends(get_store)):
        try:
            item = database.get_item(store, "post", post_id)
        except ItemNotFound:
            raise HTTPException(status_code=404, detail="Not found")
        if not item.visible and not request.session.get("authenticated"):
            raise HTTPException(status_code=404, detail="Not found")
        return {"post": item.model_dump(mode="json", exclude_none=True)}

    @app.get("/health")
    def health(store: DocumentStore = Depends(get_store)):
        document = store.load()
        return {
            "backend": "running",
            "document_path": str(store.path),
            "document_exists": store.path.exists(),
            "collections": {
                "posts": len(document.posts),
                "videos": len(document.videos),
                "photos": len(document.photos),
                "visitors": len(document.visitors),
            },
        }


# ---------- Admin ----------
def register_admin_routes(app: FastAPI) -> None:
    @app.get("/admin/login")
    def login_form():
        return {"error": None}

    @app.post("/admin/login")
    def login(
        request: Request,
        email: str = Form(""),
        password: str = Form(""),
        store: DocumentStore = Depends(get_store),
    ):
        if database.check_credentials(store, email, password):
            request.session["authenticated"] = True
            request.session["user"] = {"email": email}
            logger.info("Admin %s logged in", email)
            return to_dashboard()
        logger.warning("Failed login for %s", email)
        return JSONResponse(status_code=401, content={"error": "Invalid credentials"})

    @app.get("/admin/logout")
    def logout(request: Request):
        request.session.clear()
        return RedirectResponse(url="/", status_code=303)

    @app.get("/admin/dashboard", dependencies=[Depends(require_admin)])
    def dashboard(store: DocumentStore = Depends(get_store)):
        document = store.load()
        return {
            "posts": dump(reversed(document.posts)),
            "videos": dump(reversed(document.videos)),
            "photos": dump(reversed(document.photos)),
            "visitors": dump(reversed(document.visitors)),
            "admin": {"email": document.admin.email},
        }

    @app.post("/admin/post/blog", dependencies=[Depends(require_admin)])
    async def create_post(request: Request, store: DocumentStore = Depends(get_store)):
        form = await request.form()
        files = await stored_files(request, "mediaFiles")
        links = await form_values(request, "mediaLinks")
        await run_in_threadpool(
            database.create_item, store, "post",
            title=form.get("title"), content=form.get("content"), files=files, links=links,
        )
        return to_dashboard()

    @app.post("/admin/post/video", dependencies=[Depends(require_admin)])
    async def create_video(request: Request, store: DocumentStore = Depends(get_store)):
        form = await request.form()
        files = await stored_files(request, "videoFile")
        links = await form_values(request, "videoLink")
        await run_in_threadpool(
            database.create_item, store, "video",
            title=form.get("title"), files=files, links=links[:1],
        )
        return to_dashboard()

    @app.post("/admin/post/photo", dependencies=[Depends(require_admin)])
    async def create_photo(request: Request, store: DocumentStore = Depends(get_store)):
        form = await request.form()
        files = await stored_files(request, "photoFiles")
        links = await form_values(request, "photoLinks")
        await run_in_threadpool(
            database.create_item, store, "photo",
            title=form.get("title"), files=files, links=links,
        )
        return to_dashboard()

    @app.post("/admin/item/{kind}/{item_id}/delete", dependencies=[Depends(require_admin)])
    def delete_item(kind: str, item_id: str, store: DocumentStore = Depends(get_store)):
        database.delete_item(store, kind, item_id)
        return to_dashboard()

    @app.post("/admin/item/{kind}/{item_id}/toggle", dependencies=[Depends(require_admin)])
    def toggle_item(kind: str, item_id: str, store: DocumentStore = Depends(get_store)):
        database.toggle_visibility(store, kind, item_id)
        return to_dashboard()

    @app.post("/admin/settings/credentials", dependencies=[Depends(require_admin)])
    def update_credentials(
        email: str = Form(""),
        password: str = Form(""),
        store: DocumentStore = Depends(get_store),
    ):
        database.update_credentials(store, email=email, password=password)
        return to_dashboard()

    @app.post("/admin/visitors/clear", dependencies=[Depends(require_admin)])
    def clear_visitors(store: DocumentStore = Depends(get_store)):
        database.clear_visitors(store)
        return to_dashboard()

    @app.post("/admin/visitor/{visitor_id}/delete", dependencies=[Depends(require_admin)])
    def delete_visitor(visitor_id: str, store: DocumentStore = Depends(get_store)):
        database.delete_visitor(store, visitor_id)
        return to_dashboard()


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings: Settings = app.state.settings
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
