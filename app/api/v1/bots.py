"""Bot CRUD — all queries scoped to the authenticated owner."""

import uuid

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import delete
from sqlmodel import select

from app.api.deps import Auth, Session, Svc
from app.models.base import utcnow
from app.models.bot import Bot, BotCreate, BotRead, BotUpdate
from app.models.chat_session import ChatSession
from app.models.chunk import DocumentChunk
from app.models.message import Message
from app.models.source import Source

router = APIRouter(prefix="/bots", tags=["bots"])


def _to_read(bot: Bot) -> BotRead:
    return BotRead.model_validate(bot)


@router.post("", response_model=BotRead, status_code=status.HTTP_201_CREATED)
async def create_bot(
    body: BotCreate,
    auth: Auth,
    session: Session,
    services: Svc,
) -> BotRead:
    data = body.model_dump()
    data["model"] = data["model"] or services.settings.default_llm_model
    bot = Bot(owner_id=auth.user_id, **data)
    session.add(bot)
    await session.commit()
    await session.refresh(bot)
    return _to_read(bot)


@router.get("", response_model=list[BotRead])
async def list_bots(
    auth: Auth,
    session: Session,
) -> list[BotRead]:
    stmt = (
        select(Bot)
        .where(Bot.owner_id == auth.user_id)
        .order_by(Bot.created_at.desc())  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    return [_to_read(b) for b in result.scalars().all()]


@router.get("/{bot_id}", response_model=BotRead)
async def get_bot(
    bot_id: uuid.UUID,
    auth: Auth,
    session: Session,
) -> BotRead:
    return _to_read(await get_owned_bot(bot_id, auth.user_id, session))


@router.patch("/{bot_id}", response_model=BotRead)
async def update_bot(
    bot_id: uuid.UUID,
    body: BotUpdate,
    auth: Auth,
    session: Session,
) -> BotRead:
    bot = await get_owned_bot(bot_id, auth.user_id, session)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(bot, field, value)
    bot.updated_at = utcnow()
    session.add(bot)
    await session.commit()
    await session.refresh(bot)
    return _to_read(bot)


@router.delete("/{bot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_bot(
    bot_id: uuid.UUID,
    auth: Auth,
    session: Session,
    services: Svc,
) -> None:
    """Delete the bot with its sources, chunks, vectors, sessions and messages."""
    bot = await get_owned_bot(bot_id, auth.user_id, session)

    result = await session.execute(select(Source.file_path).where(Source.bot_id == bot.id))
    file_paths = [p for p in result.scalars().all() if p]

    await session.execute(delete(Message).where(Message.bot_id == bot.id))
    await session.execute(delete(ChatSession).where(ChatSession.bot_id == bot.id))
    await session.execute(delete(DocumentChunk).where(DocumentChunk.bot_id == bot.id))
    await session.execute(delete(Source).where(Source.bot_id == bot.id))
    await session.delete(bot)
    await session.commit()

    await services.vector_store.delete_bot(bot_id)
    for path in file_paths:
        await services.storage.delete(path)


# ── Shared helper ─────────────────────────────────────────────

async def get_owned_bot(
    bot_id: uuid.UUID,
    owner_id: uuid.UUID,
    session,
) -> Bot:
    stmt = select(Bot).where(Bot.id == bot_id, Bot.owner_id == owner_id)
    result = await session.execute(stmt)
    bot = result.scalar_one_or_none()
    if bot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bot not found")
    return bot
