"""Import all models so SQLModel.metadata picks them up."""

from app.models.bot import Bot, BotCreate, BotRead, BotUpdate
from app.models.chat_session import ChatSession, ChatSessionCreate, ChatSessionRead
from app.models.chunk import DocumentChunk
from app.models.message import ChatRequest, Message, MessageCreate, MessageRead, MessageRole
from app.models.source import (
    SitemapCreate,
    SitemapResponse,
    Source,
    SourceRead,
    SourceStatus,
    SourceTextCreate,
    SourceType,
    SourceUrlCreate,
)
from app.models.user import User, UserTier

__all__ = [
    "Bot",
    "BotCreate",
    "BotRead",
    "BotUpdate",
    "ChatRequest",
    "ChatSession",
    "ChatSessionCreate",
    "ChatSessionRead",
    "DocumentChunk",
    "Message",
    "MessageCreate",
    "MessageRead",
    "MessageRole",
    "SitemapCreate",
    "SitemapResponse",
    "Source",
    "SourceRead",
    "SourceStatus",
    "SourceTextCreate",
    "SourceType",
    "SourceUrlCreate",
    "User",
    "UserTier",
]
