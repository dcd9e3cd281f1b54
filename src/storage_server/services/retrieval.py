"""Retrieval pipeline: read, inspect and delete stored objects.

A read checks, in order: the record exists, the caller's key matches an
encrypted object (before touching the filesystem), the backing file exists
(otherwise the stale row is removed), and the object has not expired
(otherwise row and file are reclaimed on the spot). Only then is
`last_accessed_at` bumped and the file streamed through decrypt ->
decompress.

Row/file mutations for one identifier take the same per-identifier lock as
the retention sweeper. Streaming does not hold it: once the handle is open,
a concurrent delete only unlinks the name.
"""

from __future__ import annotations

import logging
import socket
from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storage_server import __version__
from storage_server.clock import Clock, now_ms
from storage_server.config import Settings
from storage_server.errors import InternalError, NotFoundError, UnauthorizedError
from storage_server.identifiers import sanitize_object_id
from storage_server.index import BlobIndex
from storage_server.locks import KeyedLocks, id_key
from storage_server.models import BlobRecord
from storage_server.schemas import BlobInfo, ServerInfo
from storage_server.store import ContentStore
from storage_server.transforms import Decompressor, Decryptor, Passthrough, keys_match

logger = logging.getLogger(__name__)


class BlobDownload:
    """An opened object ready to stream.

    Iterating `chunks()` yields plaintext and closes the file handle when the
    iteration ends for any reason, including the consumer going away.
    """

    def __init__(
        self,
        record: BlobRecord,
        handle: Any,
        *,
        key: str | None,
        max_age_seconds: int,
        chunk_size: int = ContentStore.CHUNK_SIZE,
    ) -> None:
        self.object_id = record.id
        self.size = record.size_bytes
        self.compression_algorithm = record.compression_algorithm
        self.max_age_seconds = max_age_seconds
        self._handle = handle
        self._decryptor = Decryptor(key) if record.encrypted and key else Passthrough()
        self._decompressor = Decompressor(record.compression_algorithm)
        self._chunk_size = chunk_size

    @property
    def cache_control(self) -> str:
        return f"public, max-age={self.max_age_seconds}, immutable"

    @property
    def closed(self) -> bool:
        return self._handle.closed

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            while True:
                block = await self._handle.read(self._chunk_size)
                if not block:
                    break
                out = self._decompressor.feed(self._decryptor.feed(block))
                if out:
                    yield out
            tail = self._decompressor.feed(self._decryptor.flush()) + self._decompressor.flush()
            if tail:
                yield tail
        except OSError as e:
            logger.error("Error while reading the file (%s): %s", self.object_id, e)
            raise InternalError("Error streaming the file") from e
        finally:
            await self._handle.close()

    async def read_all(self) -> bytes:
        return b"".join([chunk async for chunk in self.chunks()])

    async def aclose(self) -> None:
        """Release the handle without streaming (e.g. response never sent)."""
        await self._handle.close()


class RetrievalService:
    """Read-side operations plus delete and aggregate inspection.

    Usage:
        service = RetrievalService(async_session_factory, store, settings)
        download = await service.open_read(object_id, key=None)
        async for chunk in download.chunks():
            ...
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ContentStore,
        settings: Settings,
        *,
        clock: Clock = now_ms,
        locks: KeyedLocks | None = None,
        started_at: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._settings = settings
        self._clock = clock
        self._locks = locks or KeyedLocks()
        self._started_at = started_at if started_at is not None else clock()

    async def open_read(self, raw_id: str, key: str | None = None) -> BlobDownload:
        """Validate, touch and open an object for streaming.

        Raises:
            ValidationError: Malformed identifier.
            NotFoundError: Unknown, stale or expired object.
            UnauthorizedError: Encrypted object and missing/wrong key.
        """
        object_id = sanitize_object_id(raw_id)
        record = await self._load_live(object_id, key)

        now = self._clock()
        if record.expires_at is not None:
            max_age = max((record.expires_at - now) // 1000, 0)
        else:
            max_age = self._settings.default_cache_seconds

        async with self._session_factory() as session:
            await BlobIndex(session).touch(object_id, now)
            await session.commit()

        try:
            handle = await self._store.open(object_id)
        except FileNotFoundError as e:
            # Deleted between the existence check and the open
            raise NotFoundError() from e

        return BlobDownload(record, handle, key=key, max_age_seconds=max_age)

    async def inspect(self, raw_id: str, key: str | None = None) -> BlobInfo:
        """Metadata for one object. Same checks as a read, no access bump."""
        object_id = sanitize_object_id(raw_id)
        record = await self._load_live(object_id, key)
        return BlobInfo(
            id=record.id,
            content_hash=record.content_hash,
            stored_hash=record.stored_hash,
            size=record.size_bytes,
            compression_algorithm=record.compression_algorithm,
            encrypted=record.encrypted,
            expires_at=record.expires_at,
            last_accessed_at=record.last_accessed_at,
            created_at=record.created_at,
        )

    async def delete(self, raw_id: str) -> str:
        """Remove row then file. A file already gone is not an error."""
        object_id = sanitize_object_id(raw_id)
        async with self._locks.hold(id_key(object_id)):
            async with self._session_factory() as session:
                if not await BlobIndex(session).delete(object_id):
                    raise NotFoundError()
                await session.commit()
            await self._store.unlink(object_id)
        logger.info("Deleted file (%s)", object_id)
        return object_id

    async def aggregate(self) -> ServerInfo:
        async with self._session_factory() as session:
            count, size = await BlobIndex(session).totals()
        return ServerInfo(
            name=self._settings.hostname or socket.gethostname(),
            version=__version__,
            started_at=self._started_at,
            object_count=count,
            total_size_bytes=size,
            max_upload_bytes=self._settings.max_upload_bytes,
            max_storage_bytes=self._settings.max_storage_bytes,
        )

    async def _load_live(self, object_id: str, key: str | None) -> BlobRecord:
        async with self._session_factory() as session:
            record = await BlobIndex(session).get(object_id)
        if record is None:
            raise NotFoundError()

        if not keys_match(record.encryption_key_digest, key):
            raise UnauthorizedError("Incorrect decryption key!")

        if not await self._store.exists(object_id):
            await self._drop_row(object_id)
            logger.warning("Removed index row with no backing file (%s)", object_id)
            raise NotFoundError()

        if record.is_expired(self._clock()):
            await self._drop_row(object_id, unlink=True)
            logger.info("Deleted expired file (%s)", object_id)
            raise NotFoundError()

        return record

    async def _drop_row(self, object_id: str, *, unlink: bool = False) -> None:
        async with self._locks.hold(id_key(object_id)):
            async with self._session_factory() as session:
                await BlobIndex(session).delete(object_id)
                await session.commit()
            if unlink:
                await self._store.unlink(object_id)
