"""Subscription tier limits.

Single source of truth for the per-tier caps the ingestion pipeline and the
chat engine enforce. ``None`` means unlimited.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TierLimits:
    tier: str
    max_sources_per_bot: int | None
    max_storage_bytes: int | None
    max_messages_per_month: int | None


TIER_FREE = "free"
TIER_PRO = "pro"
TIER_ENTERPRISE = "enterprise"

TIERS: dict[str, TierLimits] = {
    TIER_FREE: TierLimits(
        tier=TIER_FREE,
        max_sources_per_bot=5,
        max_storage_bytes=10 * 1024 * 1024,
        max_messages_per_month=100,
    ),
    TIER_PRO: TierLimits(
        tier=TIER_PRO,
        max_sources_per_bot=50,
        max_storage_bytes=1024 * 1024 * 1024,
        max_messages_per_month=None,
    ),
    TIER_ENTERPRISE: TierLimits(
        tier=TIER_ENTERPRISE,
        max_sources_per_bot=None,
        max_storage_bytes=None,
        max_messages_per_month=None,
    ),
}


def get_tier_limits(tier: str) -> TierLimits:
    """Return limits for *tier*, defaulting to the free tier."""
    return TIERS.get(tier, TIERS[TIER_FREE])
