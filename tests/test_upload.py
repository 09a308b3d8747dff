"""Upload endpoint tests for POST /v1/bots/{bot_id}/sources/upload."""

import uuid
from io import BytesIO

import pytest
from httpx import AsyncClient

from app.models.source import Source, SourceType


async def _upload(client: AsyncClient, bot: dict, filename: str, content: bytes, content_type: str):
    return await client.post(
        f"/v1/bots/{bot['id']}/sources/upload",
        files={"file": (filename, content, content_type)},
        headers=bot["headers"],
    )


@pytest.mark.asyncio
async def test_upload_txt_file(client: AsyncClient, bot: dict, services):
    """Uploading a .txt file stores it and enqueues ingestion."""
    resp = await _upload(client, bot, "notes.txt", b"Hello from upload", "text/plain")

    assert resp.status_code == 201
    src = resp.json()
    assert src["source_type"] == "file"
    assert src["name"] == "notes.txt"
    assert src["status"] == "pending"
    assert src["original_filename"] == "notes.txt"
    assert src["size_bytes"] == len(b"Hello from upload")
    assert services.queue.enqueued == [uuid.UUID(src["id"])]

    stored = await services.storage.read(f"{bot['id']}/{src['id']}.txt")
    assert stored == b"Hello from upload"


@pytest.mark.asyncio
async def test_upload_then_ingest(client: AsyncClient, bot: dict, services):
    from docx import Document

    doc = Document()
    doc.add_paragraph("Refunds are processed within five business days.")
    buf = BytesIO()
    doc.save(buf)

    resp = await _upload(
        client, bot, "policy.docx", buf.getvalue(),
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    )
    source_id = uuid.UUID(resp.json()["id"])

    result = await services.pipeline.run(source_id)

    assert result.status == "completed"
    resp = await client.get(f"/v1/bots/{bot['id']}/sources/{source_id}", headers=bot["headers"])
    assert resp.json()["chunk_count"] == 1


@pytest.mark.asyncio
async def test_corrupt_pdf_upload_fails_during_ingest(client: AsyncClient, bot: dict, services):
    resp = await _upload(client, bot, "broken.pdf", b"%PDF-1.7 definitely not a pdf", "application/pdf")
    assert resp.status_code == 201
    source_id = resp.json()["id"]

    await services.pipeline.run(uuid.UUID(source_id))

    resp = await client.get(f"/v1/bots/{bot['id']}/sources/{source_id}", headers=bot["headers"])
    data = resp.json()
    assert data["status"] == "failed"
    assert data["chunk_count"] == 0
    assert data["error_message"]
    assert len(data["error_message"]) <= 2000


@pytest.mark.asyncio
async def test_upload_unsupported_type(client: AsyncClient, bot: dict, services):
    resp = await _upload(client, bot, "malware.exe", b"\x00\x01\x02", "application/octet-stream")

    assert resp.status_code == 422
    assert resp.json()["code"] == "unsupported_format"
    assert services.queue.enqueued == []


@pytest.mark.asyncio
async def test_upload_uses_mime_type_without_extension(client: AsyncClient, bot: dict, services):
    resp = await _upload(client, bot, "README", b"# Title\n\nBody", "text/markdown")

    assert resp.status_code == 201
    src = resp.json()
    stored = await services.storage.read(f"{bot['id']}/{src['id']}.md")
    assert stored == b"# Title\n\nBody"


@pytest.mark.asyncio
async def test_upload_file_too_large(client: AsyncClient, bot: dict, services):
    services.settings.max_upload_mb = 0

    resp = await _upload(client, bot, "big.txt", b"x", "text/plain")

    assert resp.status_code == 422
    assert "too large" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_upload_empty_file(client: AsyncClient, bot: dict):
    resp = await _upload(client, bot, "empty.txt", b"", "text/plain")

    assert resp.status_code == 422
    assert resp.json()["detail"] == "Uploaded file is empty"


@pytest.mark.asyncio
async def test_upload_storage_quota(client: AsyncClient, bot: dict, test_session_factory):
    """Free tier owners have 10 MB across all their bots."""
    async with test_session_factory() as session:
        session.add(Source(
            bot_id=uuid.UUID(bot["id"]),
            name="Existing archive",
            source_type=SourceType.FILE,
            size_bytes=10 * 1024 * 1024 - 4,
        ))
        await session.commit()

    resp = await _upload(client, bot, "small.txt", b"12345", "text/plain")

    assert resp.status_code == 403
    assert resp.json()["code"] == "quota_exceeded"


@pytest.mark.asyncio
async def test_upload_cross_owner_isolation(client: AsyncClient, bot: dict, new_owner):
    stranger = await new_owner()

    resp = await _upload(client, {**bot, "headers": stranger["headers"]}, "notes.txt", b"hi", "text/plain")

    assert resp.status_code == 404
