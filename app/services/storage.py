"""Local-disk storage for uploaded files.

Files are stored as ``<bot_id>/<source_id><ext>`` under the configured upload
directory; the relative key is kept on ``Source.file_path``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


class FileStorage:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes upload directory: {key}")
        return path

    async def save(self, bot_id: uuid.UUID, source_id: uuid.UUID, extension: str, data: bytes) -> str:
        key = f"{bot_id}/{source_id}{extension}"
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        return key

    async def read(self, key: str) -> bytes:
        return await asyncio.to_thread(self._path(key).read_bytes)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            logger.info("Stored file %s already removed", key)
