"""Token counting for prompt budgeting."""

from __future__ import annotations

import logging

import litellm

logger = logging.getLogger(__name__)


def count_tokens(text: str, model: str) -> int:
    """Tokens in *text* for *model*; falls back to ~4 characters per token."""
    if not text:
        return 0
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception as exc:
        logger.debug("token_counter unavailable for %s: %s", model, exc)
        return max(1, len(text) // 4)
