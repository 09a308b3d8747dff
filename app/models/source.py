"""Source model — one knowledge input (URL, file, text, crawled page) of a bot."""

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import field_validator
from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class SourceType(StrEnum):
    URL = "url"
    FILE = "file"
    TEXT = "text"
    SITEMAP_CHILD = "sitemap-child"


class SourceStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SourceStatus.COMPLETED, SourceStatus.FAILED)


class Source(TimestampMixin, SQLModel, table=True):
    __tablename__ = "sources"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    bot_id: uuid.UUID = Field(foreign_key="bots.id", nullable=False, index=True)

    name: str = Field(max_length=255, nullable=False)
    source_type: SourceType = Field(nullable=False)
    status: SourceStatus = Field(default=SourceStatus.PENDING, index=True)

    # Raw location: url for url / sitemap-child, file_path for uploads
    url: str | None = Field(default=None, max_length=2048)
    file_path: str | None = Field(default=None, max_length=1024)
    original_filename: str | None = Field(default=None, max_length=255)
    content_type: str | None = Field(default=None, max_length=255)
    size_bytes: int = Field(default=0)

    # Pasted text, or page text captured during a sitemap crawl
    content: str | None = Field(default=None, sa_column=Column(Text))

    # Processing state
    processing_progress: int = Field(default=0, ge=0, le=100)
    chunk_count: int = Field(default=0)
    error_message: str | None = Field(default=None, max_length=2000)
    claimed_at: datetime | None = Field(default=None)
    processed_at: datetime | None = Field(default=None)

    deleted_at: datetime | None = Field(default=None, index=True)


# ── Pydantic schemas ─────────────────────────────────────────

class SourceUrlCreate(SQLModel):
    url: str = Field(max_length=2048)
    name: str | None = Field(default=None, max_length=255)

    @field_validator("url")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


class SourceTextCreate(SQLModel):
    name: str = Field(min_length=1, max_length=255)
    content: str


class SitemapCreate(SQLModel):
    url: str = Field(max_length=2048)
    limit: int | None = Field(default=None, ge=1)

    @field_validator("url")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


class SourceRead(SQLModel):
    id: uuid.UUID
    bot_id: uuid.UUID
    name: str
    source_type: SourceType
    status: SourceStatus
    url: str | None = None
    original_filename: str | None = None
    content_type: str | None = None
    size_bytes: int
    processing_progress: int
    chunk_count: int
    error_message: str | None = None
    processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class SitemapResponse(SQLModel):
    total_urls: int
    created_count: int
    sources: list[SourceRead | None]
