"""DocumentChunk model — an immutable text segment of a source, vector lives in Qdrant."""

import uuid
from datetime import datetime

from sqlalchemy import Text, UniqueConstraint
from sqlmodel import Column, Field, SQLModel

from app.models.base import new_uuid, utcnow


class DocumentChunk(SQLModel, table=True):
    __tablename__ = "document_chunks"
    __table_args__ = (UniqueConstraint("source_id", "chunk_index", name="uq_chunk_source_index"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    source_id: uuid.UUID = Field(foreign_key="sources.id", nullable=False, index=True)
    bot_id: uuid.UUID = Field(foreign_key="bots.id", nullable=False, index=True)

    # Position within the source, contiguous from 0
    chunk_index: int = Field(nullable=False)

    content: str = Field(sa_column=Column(Text, nullable=False))
    char_count: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
