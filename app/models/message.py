"""Message model — a single turn in a ChatSession."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from app.models.base import new_uuid, utcnow


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(SQLModel, table=True):
    __tablename__ = "messages"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    session_id: uuid.UUID = Field(foreign_key="chat_sessions.id", nullable=False, index=True)
    bot_id: uuid.UUID = Field(foreign_key="bots.id", nullable=False, index=True)

    role: MessageRole = Field(nullable=False)
    content: str = Field(sa_column=Column(Text, nullable=False))
    token_count: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)
    deleted_at: datetime | None = Field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class MessageCreate(SQLModel):
    content: str = Field(min_length=1, max_length=32000)


class MessageRead(SQLModel):
    id: uuid.UUID
    session_id: uuid.UUID
    role: MessageRole
    content: str
    token_count: int
    created_at: datetime


class ChatRequest(SQLModel):
    message: str = Field(min_length=1, max_length=32000)
    session_id: uuid.UUID | None = None
