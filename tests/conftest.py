"""Shared test fixtures — async SQLite DB, fake model/vector/queue edges, test client."""

import asyncio
import hashlib
import math
import os
import re
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

# Import all models so metadata is populated
import app.models  # noqa: F401
from app.api.deps import get_services
from app.core.config import Settings
from app.core.database import build_session_factory, get_session
from app.core.security import create_jwt
from app.main import app
from app.models.user import User
from app.services.container import Services, build_services
from app.services.crawler import SitemapCrawler
from app.services.status_events import status_payload
from app.services.storage import FileStorage
from app.services.vector_store import ScoredPoint, VectorPoint

EMBED_DIM = 64


# ── Fake embeddings ──────────────────────────────────────────

def fake_vector(text: str) -> list[float]:
    """Deterministic bag-of-words vector: shared words → higher cosine."""
    vec = [0.0] * EMBED_DIM
    for word in re.findall(r"\w+", text.lower()):
        idx = int(hashlib.md5(word.encode()).hexdigest(), 16) % EMBED_DIM
        vec[idx] += 1.0
    norm = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / norm for v in vec]


async def fake_aembedding(model: str, input: list[str], **kwargs):
    return SimpleNamespace(data=[{"embedding": fake_vector(t)} for t in input])


# ── Fake I/O edges ───────────────────────────────────────────

class InMemoryVectorStore:
    """Cosine search over a dict, same surface as VectorStore."""

    def __init__(self) -> None:
        self.points: dict[str, VectorPoint] = {}

    async def ensure_collection(self) -> None:
        return None

    async def upsert(self, points: list[VectorPoint]) -> None:
        for p in points:
            self.points[str(p.id)] = p

    async def search(self, vector, bot_id, limit: int = 10) -> list[ScoredPoint]:
        hits = []
        for pid, p in self.points.items():
            if p.payload.get("bot_id") != str(bot_id):
                continue
            hits.append(ScoredPoint(id=pid, score=_cosine(vector, p.vector), payload=p.payload))
        hits.sort(key=lambda h: (-h.score, h.id))
        return hits[:limit]

    async def delete_source(self, source_id) -> None:
        self.points = {
            pid: p for pid, p in self.points.items() if p.payload.get("source_id") != str(source_id)
        }

    async def delete_bot(self, bot_id) -> None:
        self.points = {
            pid: p for pid, p in self.points.items() if p.payload.get("bot_id") != str(bot_id)
        }

    async def close(self) -> None:
        return None

    def for_source(self, source_id) -> list[VectorPoint]:
        return [p for p in self.points.values() if p.payload.get("source_id") == str(source_id)]


def _cosine(a: list[float], b: list[float]) -> float:
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(x * x for x in b))
    if not na or not nb:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / (na * nb)


class RecordingQueue:
    def __init__(self) -> None:
        self.enqueued: list[uuid.UUID] = []

    async def enqueue(self, source_id: uuid.UUID) -> None:
        self.enqueued.append(source_id)

    async def aclose(self) -> None:
        return None


class QueueSubscription:
    def __init__(self, queue: asyncio.Queue) -> None:
        self.queue = queue

    async def next(self, timeout: float) -> dict | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except TimeoutError:
            return None


class RecordingBroker:
    """Records every publish; subscribers only see what comes after they subscribe."""

    def __init__(self) -> None:
        self.published: list[dict] = []
        self.subscribers: dict[str, list[asyncio.Queue]] = {}

    async def publish(self, source) -> None:
        payload = status_payload(source)
        self.published.append(payload)
        for queue in self.subscribers.get(payload["source_id"], []):
            queue.put_nowait(payload)

    @asynccontextmanager
    async def subscribe(self, source_id):
        queue: asyncio.Queue = asyncio.Queue()
        queues = self.subscribers.setdefault(str(source_id), [])
        queues.append(queue)
        try:
            yield QueueSubscription(queue)
        finally:
            queues.remove(queue)

    async def aclose(self) -> None:
        return None


# ── Database ─────────────────────────────────────────────────

@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return build_session_factory(engine)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


# ── Services ─────────────────────────────────────────────────

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        jwt_secret_key="test-secret-key",
        embedding_dimensions=EMBED_DIM,
        embedding_batch_size=4,
        embedding_backoff_seconds=0.0,
        chunk_size=200,
        chunk_overlap=20,
        upload_dir=str(tmp_path / "uploads"),
        sitemap_max_urls=50,
        crawl_timeout_seconds=5.0,
        chat_timeout_seconds=5.0,
        chat_idle_timeout_seconds=2.0,
        status_events_idle_seconds=0.05,
    )


@pytest.fixture(autouse=True)
def fake_embeddings(monkeypatch) -> AsyncMock:
    mock = AsyncMock(side_effect=fake_aembedding)
    monkeypatch.setattr("app.services.embedding.aembedding", mock)
    return mock


@pytest.fixture
def web() -> dict[str, tuple[int, str, str]]:
    """URL → (status, body, content-type) served by the crawler's mock transport."""
    return {}


@pytest.fixture
async def crawler(web, settings) -> AsyncGenerator[SitemapCrawler, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        entry = web.get(str(request.url))
        if entry is None:
            return httpx.Response(404, text="not found")
        status, body, content_type = entry
        return httpx.Response(status, text=body, headers={"content-type": content_type})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    c = SitemapCrawler(http, max_urls=settings.sitemap_max_urls, timeout=settings.crawl_timeout_seconds)
    yield c
    await c.aclose()


@pytest.fixture
def services(settings, test_session_factory, crawler, tmp_path) -> Services:
    return build_services(
        settings,
        test_session_factory,
        vector_store=InMemoryVectorStore(),
        crawler=crawler,
        broker=RecordingBroker(),
        queue=RecordingQueue(),
        storage=FileStorage(tmp_path / "uploads"),
    )


# ── HTTP ─────────────────────────────────────────────────────

@pytest.fixture
async def client(test_session_factory, services) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with DB session and service overrides."""

    async def _override_session():
        async with test_session_factory() as sess:
            yield sess

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_services] = lambda: services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def make_owner(session_factory, tier: str = "free") -> dict:
    async with session_factory() as sess:
        user = User(email=f"{uuid.uuid4().hex[:10]}@test.com", tier=tier)
        sess.add(user)
        await sess.commit()
        user_id = user.id
    return {
        "user_id": user_id,
        "headers": {"Authorization": f"Bearer {create_jwt(str(user_id))}"},
    }


@pytest.fixture
async def owner(test_session_factory) -> dict:
    return await make_owner(test_session_factory)


@pytest.fixture
async def bot(client: AsyncClient, owner: dict) -> dict:
    resp = await client.post("/v1/bots", json={
        "name": "Docs Bot",
        "system_prompt": "You answer questions about the docs.",
    }, headers=owner["headers"])
    assert resp.status_code == 201, resp.text
    return {**resp.json(), "headers": owner["headers"]}


@pytest.fixture
def new_owner(test_session_factory):
    """Factory for additional owners, e.g. on another tier."""

    async def _new(tier: str = "free") -> dict:
        return await make_owner(test_session_factory, tier)

    return _new
