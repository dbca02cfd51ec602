"""
Document schemas for the CMS store

The whole site lives in one JSON document. Each collection holds one of the
models below; `Document` is the aggregate written to disk.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, Field, field_validator


def new_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MediaRef(BaseModel):
    """
    A file uploaded by the admin, or an external link
    """
    type: Literal["file", "link"] = Field(..., description="Kind of media reference")
    path: Optional[str] = Field(None, description="Public path of a stored upload, e.g. /uploads/...")
    originalname: Optional[str] = Field(None, description="Filename as sent by the browser")
    url: Optional[str] = Field(None, description="External URL for link media")


class ContentItem(BaseModel):
    """
    Blog post, video or photo gallery
    Collections: "posts", "videos", "photos"
    """
    id: str = Field(..., description="Generated identifier, unique within its collection")
    title: str = Field("", description="Display title, may be empty")
    content: Optional[str] = Field(None, description="Post body; only set on posts")
    media: List[MediaRef] = Field(default_factory=list, description="Files first, then links")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time (UTC)")
    visible: bool = Field(True, description="Shown to the public when true")

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator("title", mode="before")
    @classmethod
    def _null_title(cls, v):
        return "" if v is None else v

    @field_validator("media", mode="before")
    @classmethod
    def _media_list(cls, v):
        if not isinstance(v, list):
            return []
        return [m for m in v if isinstance(m, MediaRef) or (isinstance(m, dict) and m.get("type") in ("file", "link"))]

    @field_validator("created_at", mode="before")
    @classmethod
    def _missing_created_at(cls, v):
        return utcnow() if v is None else v

    # only an explicit false hides an item
    @field_validator("visible", mode="before")
    @classmethod
    def _null_visible(cls, v):
        return True if v is None else v


class VisitorRecord(BaseModel):
    """
    One logged request
    Collection name: "visitors"
    """
    id: str = Field(default_factory=new_id, description="Stable identifier used for deletion")
    ip: Optional[str] = Field(None, description="Best-effort client address")
    path: str = Field("", description="Requested path")
    time: datetime = Field(default_factory=utcnow, description="Request time (UTC)")

    @field_validator("path", mode="before")
    @classmethod
    def _null_path(cls, v):
        return "" if v is None else v


class AdminCredential(BaseModel):
    """
    The single administrator login, stored as entered
    """
    email: str
    password: str


class Document(BaseModel):
    posts: List[ContentItem] = Field(default_factory=list)
    videos: List[ContentItem] = Field(default_factory=list)
    photos: List[ContentItem] = Field(default_factory=list)
    visitors: List[VisitorRecord] = Field(default_factory=list)
    admin: AdminCredential
