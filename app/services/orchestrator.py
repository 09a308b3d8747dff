"""Chat orchestrator — retrieval-augmented generation over a streaming LLM call.

Flow:
  1. Validate the chat session and the owner's monthly message quota
  2. Retrieve relevant chunks for the bot
  3. Assemble system prompt + context + history + user message within budget
  4. Stream the completion via LiteLLM, one ``token`` event per delta
  5. Persist the user and assistant messages, then emit ``done``

Any failure ends the stream with a single ``error`` event and nothing is
persisted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime

from litellm import acompletion
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import (
    ContextOverflow,
    SessionExpired,
    SessionNotFound,
    SourcebotError,
    StreamInterrupted,
)
from app.models.base import utcnow
from app.models.bot import Bot
from app.models.chat_session import ChatSession
from app.models.message import Message, MessageRole
from app.services.gate import ModelGate
from app.services.quota import check_message_quota, get_owner_limits
from app.services.retrieval import RetrievedChunk, Retriever
from app.services.tokens import count_tokens

logger = logging.getLogger(__name__)

# Maximum conversation history turns to include
MAX_HISTORY_TURNS = 10
# Per-message framing overhead in chat formats
_MESSAGE_OVERHEAD_TOKENS = 4


@dataclass
class ChatEvent:
    """A single event in the streaming response."""
    type: str  # "token", "done", "error"
    content: str | None = None
    error: str | None = None
    code: str | None = None
    session_id: str | None = None
    message_id: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"type": self.type}
        for key in ("content", "error", "code", "session_id", "message_id"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def failure(cls, exc: SourcebotError) -> ChatEvent:
        return cls(type="error", error=exc.message, code=exc.code)


@dataclass
class ChatTurn:
    """Everything needed to answer one user message, loaded up front."""
    session_id: uuid.UUID
    bot_id: uuid.UUID
    model: str
    system_prompt: str
    temperature: float
    max_tokens: int
    message: str
    started_at: datetime
    history: list[dict] = field(default_factory=list)


class ChatEngine:
    def __init__(
        self,
        session_factory,
        retriever: Retriever,
        gate: ModelGate,
        max_context_chunks: int = 5,
        max_prompt_tokens: int = 6000,
        timeout_seconds: float = 60.0,
        idle_timeout_seconds: float = 30.0,
        api_key: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.retriever = retriever
        self.gate = gate
        self.max_context_chunks = max_context_chunks
        self.max_prompt_tokens = max_prompt_tokens
        self.timeout_seconds = timeout_seconds
        self.idle_timeout_seconds = idle_timeout_seconds
        self.api_key = api_key

    async def stream_reply(self, session_id: uuid.UUID, message: str) -> AsyncIterator[ChatEvent]:
        """Validate the session, then stream the answer.

        Session and quota errors are raised before the first event so HTTP
        callers can still answer with a status code.
        """
        turn = await self.prepare(session_id, message)
        async for event in self.stream_turn(turn):
            yield event

    async def prepare(self, session_id: uuid.UUID, message: str) -> ChatTurn:
        """Load and validate the session; bump its activity timestamp.

        Raises:
            SessionNotFound, SessionExpired, QuotaExceeded.
        """
        now = utcnow()
        async with self.session_factory() as db:
            chat = await db.get(ChatSession, session_id)
            if chat is None:
                raise SessionNotFound("Chat session not found")
            if chat.is_expired(now):
                raise SessionExpired("Chat session has expired, start a new one")
            bot = await db.get(Bot, chat.bot_id)
            if bot is None or not bot.is_active:
                raise SessionNotFound("Bot not available")

            limits = await get_owner_limits(db, bot)
            await check_message_quota(db, bot, limits, now)

            chat.last_activity_at = now
            db.add(chat)
            await db.commit()

            history = await load_history(db, chat.id)

        return ChatTurn(
            session_id=chat.id,
            bot_id=bot.id,
            model=bot.model,
            system_prompt=bot.system_prompt,
            temperature=bot.temperature,
            max_tokens=bot.max_tokens,
            message=message,
            started_at=now,
            history=history,
        )

    async def stream_turn(self, turn: ChatTurn) -> AsyncIterator[ChatEvent]:
        """Yield ``token`` events, then exactly one ``done`` or ``error`` event."""
        deadline = asyncio.get_running_loop().time() + self.timeout_seconds
        parts: list[str] = []
        try:
            async with asyncio.timeout_at(deadline):
                async with self.session_factory() as db:
                    retrieved = await self.retriever.retrieve(
                        db, turn.bot_id, turn.message, k=self.max_context_chunks,
                    )
            messages = self.fit_prompt(turn, retrieved)
            async for token in self._complete(turn, messages, deadline):
                parts.append(token)
                yield ChatEvent(type="token", content=token)
            message_id = await self._persist(turn, "".join(parts))
        except TimeoutError:
            logger.warning("Chat stream for session %s timed out", turn.session_id)
            yield ChatEvent.failure(StreamInterrupted("The answer took too long and was stopped"))
            return
        except SourcebotError as exc:
            logger.warning("Chat stream for session %s failed: %s", turn.session_id, exc.message)
            yield ChatEvent.failure(exc)
            return
        except Exception:
            logger.exception("Chat stream for session %s failed", turn.session_id)
            yield ChatEvent.failure(StreamInterrupted("The assistant could not complete the answer"))
            return

        yield ChatEvent(type="done", session_id=str(turn.session_id), message_id=str(message_id))

    # ── Prompt assembly ──────────────────────────────────────

    def fit_prompt(self, turn: ChatTurn, retrieved: list[RetrievedChunk]) -> list[dict]:
        """Build messages within ``max_prompt_tokens``.

        Oldest history turns go first, then the lowest-ranked context chunks.

        Raises:
            ContextOverflow: If system prompt and user message alone don't fit.
        """
        chunks = list(retrieved)
        history = list(turn.history)
        while True:
            messages = _build_messages(turn.system_prompt, chunks, history, turn.message)
            if _prompt_tokens(messages, turn.model) <= self.max_prompt_tokens:
                return messages
            if history:
                history = history[2:]
            elif chunks:
                chunks.pop()
            else:
                raise ContextOverflow("The message is too long for this assistant")

    # ── LLM call ─────────────────────────────────────────────

    async def _complete(
        self, turn: ChatTurn, messages: list[dict], deadline: float,
    ) -> AsyncIterator[str]:
        """Yield content deltas; raises TimeoutError once *deadline* passes."""
        loop = asyncio.get_running_loop()
        kwargs: dict = {
            "model": turn.model,
            "messages": messages,
            "temperature": turn.temperature,
            "max_tokens": turn.max_tokens,
            "stream": True,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key

        async with self.gate:
            try:
                async with asyncio.timeout_at(deadline):
                    response = await acompletion(**kwargs)
            except TimeoutError:
                raise
            except Exception as exc:
                logger.warning("LLM request failed: %s", exc)
                raise StreamInterrupted("The model provider is unavailable") from exc

            stream = response.__aiter__()
            try:
                while True:
                    idle_deadline = loop.time() + self.idle_timeout_seconds
                    try:
                        async with asyncio.timeout_at(min(deadline, idle_deadline)):
                            chunk = await anext(stream)
                    except StopAsyncIteration:
                        break
                    except TimeoutError as exc:
                        if loop.time() >= deadline:
                            raise
                        raise StreamInterrupted("The model stopped responding") from exc
                    except Exception as exc:
                        logger.warning("LLM stream broke: %s", exc)
                        raise StreamInterrupted("The model stream was interrupted") from exc

                    delta = chunk.choices[0].delta if chunk.choices else None
                    if delta and delta.content:
                        yield delta.content
            finally:
                aclose = getattr(response, "aclose", None)
                if aclose is not None:
                    await aclose()

    # ── Persistence ──────────────────────────────────────────

    async def _persist(self, turn: ChatTurn, answer: str) -> uuid.UUID:
        async with self.session_factory() as db:
            user_msg = Message(
                session_id=turn.session_id,
                bot_id=turn.bot_id,
                role=MessageRole.USER,
                content=turn.message,
                token_count=count_tokens(turn.message, turn.model),
                created_at=turn.started_at,
            )
            assistant_msg = Message(
                session_id=turn.session_id,
                bot_id=turn.bot_id,
                role=MessageRole.ASSISTANT,
                content=answer,
                token_count=count_tokens(answer, turn.model),
                created_at=max(utcnow(), turn.started_at),
            )
            db.add_all([user_msg, assistant_msg])
            await db.commit()
            return assistant_msg.id


async def load_history(db: AsyncSession, session_id: uuid.UUID) -> list[dict]:
    """Last MAX_HISTORY_TURNS turns of a session, oldest first."""
    stmt = (
        select(Message)
        .where(Message.session_id == session_id, Message.deleted_at.is_(None))
        .order_by(Message.created_at.desc(), Message.role.asc())
        .limit(MAX_HISTORY_TURNS * 2)
    )
    rows = (await db.execute(stmt)).scalars().all()
    return [{"role": str(m.role), "content": m.content} for m in reversed(rows)]


def _prompt_tokens(messages: list[dict], model: str) -> int:
    return sum(count_tokens(m["content"], model) + _MESSAGE_OVERHEAD_TOKENS for m in messages)


def _build_messages(
    system_prompt: str,
    retrieved_chunks: list[RetrievedChunk],
    history: list[dict],
    user_message: str,
) -> list[dict]:
    """Assemble the message array for the LLM call."""
    messages: list[dict] = []

    # System prompt with injected context
    context_block = ""
    if retrieved_chunks:
        context_parts = [f"[{i}] {chunk.content}" for i, chunk in enumerate(retrieved_chunks, 1)]
        context_block = (
            "\n\n---\nRelevant context from the knowledge base:\n"
            + "\n\n".join(context_parts)
            + "\n---\n\nUse the context above to answer the user's question. "
            "If the context doesn't contain relevant information, say so."
        )

    messages.append({"role": "system", "content": system_prompt + context_block})
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    messages.append({"role": "user", "content": user_message})
    return messages
