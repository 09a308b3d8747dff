"""ChatSession model — an anonymous, time-boxed conversation with one bot."""

import uuid
from datetime import datetime

from sqlmodel import Field, SQLModel

from app.models.base import new_uuid, utcnow


class ChatSession(SQLModel, table=True):
    __tablename__ = "chat_sessions"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    bot_id: uuid.UUID = Field(foreign_key="bots.id", nullable=False, index=True)

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    last_activity_at: datetime = Field(default_factory=utcnow, nullable=False)
    expires_at: datetime = Field(nullable=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


# ── Pydantic schemas ─────────────────────────────────────────

class ChatSessionCreate(SQLModel):
    bot_id: uuid.UUID


class ChatSessionRead(SQLModel):
    id: uuid.UUID
    bot_id: uuid.UUID
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
