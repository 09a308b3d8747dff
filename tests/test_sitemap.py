"""Sitemap crawl endpoint tests — discovery, partial failure, quota truncation."""

import uuid

import pytest
from httpx import AsyncClient
from sqlmodel import select

from app.models.source import Source, SourceStatus, SourceType

SITE = "https://docs.example.com"
HTML = "text/html"


def _serve_site(web: dict, pages: dict[str, tuple[int, str]]) -> None:
    entries = "".join(f"<url><loc>{SITE}{path}</loc></url>" for path in pages)
    web[f"{SITE}/sitemap.xml"] = (
        200,
        f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>',
        "application/xml",
    )
    for path, (status, body) in pages.items():
        web[f"{SITE}{path}"] = (status, body, HTML)


@pytest.mark.asyncio
async def test_sitemap_partial_failure(client: AsyncClient, bot: dict, web, services, test_session_factory):
    """Five pages, two unreadable: three pending children, two failed ones."""
    _serve_site(web, {
        "/install": (200, "<title>Install</title><main><p>Run the installer.</p></main>"),
        "/broken": (500, "boom"),
        "/usage": (200, "<main><p>Call the API.</p></main>"),
        "/empty": (200, "<html><body><script>x()</script></body></html>"),
        "/faq": (200, "<main><p>Frequently asked.</p></main>"),
    })

    resp = await client.post(f"/v1/bots/{bot['id']}/sources/sitemap", json={
        "url": f"{SITE}/sitemap.xml",
    }, headers=bot["headers"])

    assert resp.status_code == 201, resp.text
    data = resp.json()
    assert data["total_urls"] == 5
    assert data["created_count"] == 3
    assert [s is None for s in data["sources"]] == [False, True, False, True, False]

    install = data["sources"][0]
    assert install["source_type"] == "sitemap-child"
    assert install["name"] == "Install"
    assert install["url"] == f"{SITE}/install"
    assert install["status"] == "pending"
    assert data["sources"][2]["name"] == f"{SITE}/usage"

    assert services.queue.enqueued == [uuid.UUID(s["id"]) for s in data["sources"] if s]

    async with test_session_factory() as session:
        result = await session.execute(
            select(Source).where(Source.status == SourceStatus.FAILED)
        )
        failed = {s.url: s for s in result.scalars().all()}
    assert set(failed) == {f"{SITE}/broken", f"{SITE}/empty"}
    assert "HTTP 500" in failed[f"{SITE}/broken"].error_message
    assert failed[f"{SITE}/empty"].error_message


@pytest.mark.asyncio
async def test_sitemap_children_ingest(client: AsyncClient, bot: dict, web, services):
    _serve_site(web, {"/install": (200, "<title>Install</title><main><p>Run the installer.</p></main>")})

    resp = await client.post(f"/v1/bots/{bot['id']}/sources/sitemap", json={
        "url": SITE,
    }, headers=bot["headers"])
    child = resp.json()["sources"][0]

    result = await services.pipeline.run(uuid.UUID(child["id"]))

    assert result.status == "completed"
    assert result.chunk_count == 1


@pytest.mark.asyncio
async def test_sitemap_truncated_to_quota(client: AsyncClient, bot: dict, web):
    """Free tier: at most five sources per bot, crawl children included."""
    _serve_site(web, {f"/p{i}": (200, f"<main><p>Page {i}</p></main>") for i in range(8)})
    await client.post(f"/v1/bots/{bot['id']}/sources/text", json={
        "name": "Existing", "content": "already here",
    }, headers=bot["headers"])

    resp = await client.post(f"/v1/bots/{bot['id']}/sources/sitemap", json={
        "url": f"{SITE}/sitemap.xml",
    }, headers=bot["headers"])

    data = resp.json()
    assert data["total_urls"] == 4
    assert data["created_count"] == 4

    resp = await client.post(f"/v1/bots/{bot['id']}/sources/sitemap", json={
        "url": f"{SITE}/sitemap.xml",
    }, headers=bot["headers"])
    assert resp.status_code == 403
    assert resp.json()["code"] == "quota_exceeded"


@pytest.mark.asyncio
async def test_sitemap_limit(client: AsyncClient, bot: dict, web):
    _serve_site(web, {f"/p{i}": (200, f"<main><p>Page {i}</p></main>") for i in range(4)})

    resp = await client.post(f"/v1/bots/{bot['id']}/sources/sitemap", json={
        "url": f"{SITE}/sitemap.xml",
        "limit": 2,
    }, headers=bot["headers"])

    data = resp.json()
    assert data["total_urls"] == 2
    assert [s["url"] for s in data["sources"]] == [f"{SITE}/p0", f"{SITE}/p1"]


@pytest.mark.asyncio
async def test_sitemap_not_found(client: AsyncClient, bot: dict, services):
    resp = await client.post(f"/v1/bots/{bot['id']}/sources/sitemap", json={
        "url": SITE,
    }, headers=bot["headers"])

    assert resp.status_code == 422
    assert resp.json()["code"] == "fetch_failed"
    assert services.queue.enqueued == []


@pytest.mark.asyncio
async def test_sitemap_invalid_url(client: AsyncClient, bot: dict):
    resp = await client.post(f"/v1/bots/{bot['id']}/sources/sitemap", json={
        "url": "docs.example.com",
    }, headers=bot["headers"])

    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


async def _fill_storage(session_factory, bot: dict, free_bytes: int) -> None:
    """Free tier owners have 10 MB; leave only *free_bytes* of it."""
    async with session_factory() as session:
        session.add(Source(
            bot_id=uuid.UUID(bot["id"]),
            name="Large archive",
            source_type=SourceType.TEXT,
            status=SourceStatus.COMPLETED,
            size_bytes=10 * 1024 * 1024 - free_bytes,
        ))
        await session.commit()


@pytest.mark.asyncio
async def test_sitemap_pages_past_storage_cap_fail(
    client: AsyncClient, bot: dict, web, services, test_session_factory,
):
    _serve_site(web, {f"/p{i}": (200, f"<main><p>Page {i}</p></main>") for i in range(3)})
    await _fill_storage(test_session_factory, bot, free_bytes=10)

    resp = await client.post(f"/v1/bots/{bot['id']}/sources/sitemap", json={
        "url": f"{SITE}/sitemap.xml",
    }, headers=bot["headers"])

    assert resp.status_code == 201, resp.text
    data = resp.json()
    assert data["total_urls"] == 3
    assert data["created_count"] == 1
    assert 0 < data["sources"][0]["size_bytes"] <= 10
    assert data["sources"][1:] == [None, None]
    assert services.queue.enqueued == [uuid.UUID(data["sources"][0]["id"])]

    async with test_session_factory() as session:
        result = await session.execute(select(Source).where(Source.status == SourceStatus.FAILED))
        failed = result.scalars().all()
    assert {s.url for s in failed} == {f"{SITE}/p1", f"{SITE}/p2"}
    assert all(s.error_message.startswith("Storage limit reached") for s in failed)
    assert all(s.size_bytes == 0 for s in failed)


@pytest.mark.asyncio
async def test_sitemap_rejected_when_storage_full(
    client: AsyncClient, bot: dict, web, services, test_session_factory,
):
    _serve_site(web, {"/p0": (200, "<main><p>Page 0</p></main>")})
    await _fill_storage(test_session_factory, bot, free_bytes=0)

    resp = await client.post(f"/v1/bots/{bot['id']}/sources/sitemap", json={
        "url": f"{SITE}/sitemap.xml",
    }, headers=bot["headers"])

    assert resp.status_code == 403
    assert resp.json()["code"] == "quota_exceeded"
    assert services.queue.enqueued == []
