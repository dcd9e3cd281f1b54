"""Content store: one file per object, named exactly by its identifier."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


class ContentStore:
    """Directory of opaque byte blobs.

    The store knows nothing about records, hashes or transforms. Callers pass
    identifiers that have already been sanitized to the UUID character set.
    """

    CHUNK_SIZE = 64 * 1024

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, object_id: str) -> Path:
        return self.root / object_id

    async def exists(self, object_id: str) -> bool:
        return await aiofiles.os.path.isfile(self.path_for(object_id))

    async def write(self, object_id: str, data: bytes) -> None:
        """Write via a temporary name, then rename into place.

        A reader never observes a partially written object under its final name.
        """
        final = self.path_for(object_id)
        partial = final.with_name(f".{object_id}.part")
        try:
            async with aiofiles.open(partial, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(partial, final)
        except BaseException:
            await self._discard(partial)
            raise

    async def read(self, object_id: str) -> bytes:
        async with aiofiles.open(self.path_for(object_id), "rb") as f:
            return await f.read()

    async def open(self, object_id: str):
        """Open the object for streaming. The caller must close the handle.

        Raises:
            FileNotFoundError: The object is not on disk.
        """
        return await aiofiles.open(self.path_for(object_id), "rb")

    async def unlink(self, object_id: str) -> bool:
        """Remove the object's file. Returns False if it was already gone."""
        try:
            await aiofiles.os.remove(self.path_for(object_id))
        except FileNotFoundError:
            return False
        return True

    def list_ids(self) -> list[str]:
        """Names of all finished objects on disk (temporary files excluded)."""
        if not self.root.is_dir():
            return []
        return [
            entry.name
            for entry in os.scandir(self.root)
            if entry.is_file() and not entry.name.startswith(".")
        ]

    async def _discard(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Could not remove partial file %s", path.name)
