"""Chat endpoints — owner chat and anonymous widget sessions, both streamed over SSE."""

import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse
from sqlmodel import select

from app.api.deps import Auth, Session, Svc
from app.api.v1.bots import get_owned_bot
from app.core.errors import SessionExpired
from app.models.base import utcnow
from app.models.bot import Bot
from app.models.chat_session import ChatSession, ChatSessionCreate, ChatSessionRead
from app.models.message import ChatRequest, Message, MessageCreate, MessageRead
from app.services.chat_stream import ChatStream
from app.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bots/{bot_id}/chat", tags=["chat"])
public_router = APIRouter(prefix="/public/chats", tags=["public-chat"])


# ── Helpers ───────────────────────────────────────────────────

def _new_session(bot: Bot, services: Services) -> ChatSession:
    now = utcnow()
    return ChatSession(
        bot_id=bot.id,
        created_at=now,
        last_activity_at=now,
        expires_at=now + timedelta(hours=services.settings.session_ttl_hours),
    )


async def _stream_response(services: Services, session_id: uuid.UUID, message: str) -> StreamingResponse:
    """Validate the turn up front, then hand the engine stream to the SSE writer."""
    engine = services.chat_engine
    turn = await engine.prepare(session_id, message)
    stream = ChatStream(engine.stream_turn(turn))
    return StreamingResponse(
        stream.sse(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Session-Id": str(session_id),
        },
    )


async def _get_session_or_404(session_id: uuid.UUID, session) -> ChatSession:
    chat = await session.get(ChatSession, session_id)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat session not found")
    return chat


# ── Owner chat ────────────────────────────────────────────────

@router.post("")
async def chat_with_bot(
    bot_id: uuid.UUID,
    body: ChatRequest,
    auth: Auth,
    session: Session,
    services: Svc,
) -> StreamingResponse:
    """Stream an answer; a session is created when none is given."""
    bot = await get_owned_bot(bot_id, auth.user_id, session)
    if body.session_id is not None:
        chat = await _get_session_or_404(body.session_id, session)
        if chat.bot_id != bot.id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat session not found")
    else:
        chat = _new_session(bot, services)
        session.add(chat)
        await session.commit()

    return await _stream_response(services, chat.id, body.message)


# ── Public widget sessions ────────────────────────────────────

@public_router.post("", response_model=ChatSessionRead, status_code=status.HTTP_201_CREATED)
async def create_public_session(
    body: ChatSessionCreate,
    session: Session,
    services: Svc,
) -> ChatSessionRead:
    bot = await session.get(Bot, body.bot_id)
    if bot is None or not bot.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bot not found")
    chat = _new_session(bot, services)
    session.add(chat)
    await session.commit()
    await session.refresh(chat)
    logger.info("Opened public chat session %s for bot %s", chat.id, bot.id)
    return ChatSessionRead.model_validate(chat)


@public_router.post("/{session_id}/messages")
async def send_public_message(
    session_id: uuid.UUID,
    body: MessageCreate,
    services: Svc,
) -> StreamingResponse:
    return await _stream_response(services, session_id, body.content)


@public_router.get("/{session_id}/messages", response_model=list[MessageRead])
async def list_public_messages(
    session_id: uuid.UUID,
    session: Session,
) -> list[MessageRead]:
    chat = await _get_session_or_404(session_id, session)
    if chat.is_expired():
        raise SessionExpired("Chat session has expired, start a new one")
    stmt = (
        select(Message)
        .where(Message.session_id == chat.id, Message.deleted_at.is_(None))
        .order_by(Message.created_at.asc(), Message.role.desc())  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    return [MessageRead.model_validate(m) for m in result.scalars().all()]
