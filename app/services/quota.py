"""Tier quota checks — run before any extraction, crawl or model call."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import QuotaExceeded
from app.core.tiers import TierLimits, get_tier_limits
from app.models.base import utcnow
from app.models.bot import Bot
from app.models.message import Message, MessageRole
from app.models.source import Source
from app.models.user import User


async def get_owner_limits(session: AsyncSession, bot: Bot) -> TierLimits:
    owner = await session.get(User, bot.owner_id)
    return get_tier_limits(owner.tier if owner else "free")


async def remaining_source_slots(session: AsyncSession, bot_id: uuid.UUID, limits: TierLimits) -> int | None:
    """Sources the bot may still add; None means unlimited. Crawl children count."""
    if limits.max_sources_per_bot is None:
        return None
    used = (
        await session.execute(
            select(func.count()).select_from(Source).where(
                Source.bot_id == bot_id,
                Source.deleted_at.is_(None),
            )
        )
    ).scalar_one()
    return max(0, limits.max_sources_per_bot - used)


async def check_source_quota(session: AsyncSession, bot: Bot, limits: TierLimits) -> int | None:
    """Raise QuotaExceeded if the bot has no free source slot, else return remaining slots."""
    remaining = await remaining_source_slots(session, bot.id, limits)
    if remaining is not None and remaining < 1:
        raise QuotaExceeded(
            f"Source limit reached: the {limits.tier} tier allows "
            f"{limits.max_sources_per_bot} sources per bot"
        )
    return remaining


async def remaining_storage_bytes(session: AsyncSession, bot: Bot, limits: TierLimits) -> int | None:
    """Bytes the owner may still store across all bots; None means unlimited."""
    if limits.max_storage_bytes is None:
        return None
    used = (
        await session.execute(
            select(func.coalesce(func.sum(Source.size_bytes), 0))
            .select_from(Source)
            .join(Bot, Bot.id == Source.bot_id)
            .where(Bot.owner_id == bot.owner_id, Source.deleted_at.is_(None))
        )
    ).scalar_one()
    return max(0, limits.max_storage_bytes - used)


def storage_exceeded(limits: TierLimits) -> QuotaExceeded:
    return QuotaExceeded(
        f"Storage limit reached: the {limits.tier} tier allows "
        f"{limits.max_storage_bytes // (1024 * 1024)} MB"
    )


async def check_storage_quota(
    session: AsyncSession, bot: Bot, limits: TierLimits, additional_bytes: int,
) -> int | None:
    """Raise QuotaExceeded if adding *additional_bytes* would pass the owner's storage cap.

    Returns the bytes left before the addition (None when unlimited).
    """
    remaining = await remaining_storage_bytes(session, bot, limits)
    if remaining is not None and additional_bytes > remaining:
        raise storage_exceeded(limits)
    return remaining


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def check_message_quota(
    session: AsyncSession, bot: Bot, limits: TierLimits, now: datetime | None = None,
) -> None:
    """Raise QuotaExceeded once the owner's bots answered their monthly allowance."""
    if limits.max_messages_per_month is None:
        return
    since = _month_start(now or utcnow())
    used = (
        await session.execute(
            select(func.count())
            .select_from(Message)
            .join(Bot, Bot.id == Message.bot_id)
            .where(
                Bot.owner_id == bot.owner_id,
                Message.role == MessageRole.USER,
                Message.deleted_at.is_(None),
                Message.created_at >= since,
            )
        )
    ).scalar_one()
    if used >= limits.max_messages_per_month:
        raise QuotaExceeded(
            f"Monthly message limit reached: the {limits.tier} tier allows "
            f"{limits.max_messages_per_month} messages per month"
        )
