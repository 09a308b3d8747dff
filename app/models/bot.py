"""Bot model — an assistant owned by a user, answering from its sources."""

import uuid
from datetime import datetime

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class Bot(TimestampMixin, SQLModel, table=True):
    __tablename__ = "bots"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    owner_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)

    name: str = Field(max_length=255, nullable=False)
    description: str = Field(default="", max_length=1000)

    # LLM configuration
    model: str = Field(default="gpt-4o-mini", max_length=100)
    system_prompt: str = Field(default="You are a helpful assistant.")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, ge=1, le=128000)

    is_active: bool = Field(default=True)


# ── Pydantic schemas ─────────────────────────────────────────

class BotCreate(SQLModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = Field(default="", max_length=1000)
    model: str | None = Field(default=None, max_length=100)
    system_prompt: str = Field(default="You are a helpful assistant.")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, ge=1, le=128000)


class BotUpdate(SQLModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    model: str | None = Field(default=None, max_length=100)
    system_prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1, le=128000)
    is_active: bool | None = None


class BotRead(SQLModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    name: str
    description: str
    model: str
    system_prompt: str
    temperature: float
    max_tokens: int
    is_active: bool
    created_at: datetime
    updated_at: datetime
