"""Ingest pipeline: validated payload -> stored object + index record.

Steps, in order:
1. Validate the request (exactly one source, base64/URL shape, future expiry)
   before any I/O.
2. Load the plaintext, inline or fetched from the URL.
3. Hash the plaintext (SHA-256). The hash never depends on transform settings.
4. Dedup: return the newest live, unencrypted record with the same hash, if
   any. A match whose file is missing is dropped and the upload stored anew.
5. Compress (server setting), then encrypt (per request).
6. Enforce the global storage ceiling on the final bytes.
7. Write the file, then insert the row.

Steps 4-7 for one content hash run under a per-hash lock so two concurrent
uploads of the same plaintext cannot both miss the dedup check.

A crash or index failure after step 7's write leaves a file with no row.
That is the accepted failure mode: a row never points at a missing file
because of ingest.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from urllib.parse import unquote

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storage_server import __version__
from storage_server.clock import Clock, now_ms
from storage_server.config import Settings
from storage_server.errors import (
    CapacityExceededError,
    InternalError,
    UpstreamFetchError,
    ValidationError,
)
from storage_server.identifiers import new_object_id
from storage_server.index import BlobIndex
from storage_server.locks import KeyedLocks, hash_key, id_key
from storage_server.models import BlobRecord, CompressionAlgorithm
from storage_server.schemas import IngestRequest, IngestResult
from storage_server.store import ContentStore
from storage_server.transforms import (
    compress,
    encrypt,
    generate_key,
    key_digest,
    sha256_hex,
)

logger = logging.getLogger(__name__)

USER_AGENT = f"StorageServer/{__version__}"

# Characters allowed to survive in a caller-supplied link (RFC 3986 set)
_LINK_DISALLOWED = re.compile(r"[^a-zA-Z0-9\-._~:/?#\[\]@!$&'()*+,;=%]")


class IngestService:
    """Turns upload requests into stored objects.

    Usage:
        service = IngestService(async_session_factory, store, settings)
        result = await service.ingest(IngestRequest(file=b64_payload))
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ContentStore,
        settings: Settings,
        *,
        clock: Clock = now_ms,
        locks: KeyedLocks | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._settings = settings
        self._clock = clock
        self._locks = locks or KeyedLocks()
        self._http_client = http_client

    async def ingest(self, request: IngestRequest) -> IngestResult:
        """Store the request's payload, or return the existing duplicate.

        Raises:
            ValidationError: Missing/invalid source or expiry.
            CapacityExceededError: Upload or total storage ceiling exceeded.
            UpstreamFetchError: The link could not be fetched.
            InternalError: A transform, filesystem or index step failed.
        """
        link = self._validate(request)
        plaintext = await self._fetch(link) if link else self._decode(request.file or "")
        self._check_upload_size(len(plaintext))
        if not plaintext:
            raise ValidationError("Please at least send a file or a link!")

        content_hash = await asyncio.to_thread(sha256_hex, plaintext)

        if request.encrypt:
            # The key of an existing object is not recoverable, so never dedup
            return await self._store_new(plaintext, content_hash, request)

        async with self._locks.hold(hash_key(content_hash)):
            existing = await self._find_duplicate(content_hash)
            if existing is not None:
                logger.debug("Upload matches existing file (%s)", existing.id)
                return IngestResult(
                    id=existing.id,
                    content_hash=content_hash,
                    deduplicated=True,
                    size=existing.size_bytes,
                    expires_at=existing.expires_at,
                    created_at=existing.created_at,
                )
            return await self._store_new(plaintext, content_hash, request)

    async def _find_duplicate(self, content_hash: str) -> BlobRecord | None:
        """Newest live record with this hash. A match whose file is gone is dropped."""
        async with self._session_factory() as session:
            existing = await BlobIndex(session).find_latest_by_hash(content_hash, self._clock())
        if existing is None or await self._store.exists(existing.id):
            return existing

        async with self._locks.hold(id_key(existing.id)):
            async with self._session_factory() as session:
                await BlobIndex(session).delete(existing.id)
                await session.commit()
        logger.warning("Removed index row with no backing file (%s)", existing.id)
        return None

    # ── Validation and payload loading ───────────────────────────────────────

    def _validate(self, request: IngestRequest) -> str | None:
        """Check the request shape. Returns the sanitized link, if any."""
        link = None
        if request.link:
            link = _LINK_DISALLOWED.sub("", unquote(request.link))

        if not request.file and not link:
            raise ValidationError("Please at least send a file or a link!")
        if request.file and link:
            raise ValidationError("Send either a file or a link, not both")

        if request.expires is not None and request.expires <= self._clock():
            raise ValidationError("Expiry timestamp must be above the current epoch timestamp")

        if link is not None:
            try:
                url = httpx.URL(link)
            except httpx.InvalidURL as e:
                raise ValidationError("Please send a valid URL") from e
            if url.scheme not in ("http", "https") or not url.host:
                raise ValidationError("Please send a valid URL")
        return link

    def _decode(self, payload: str) -> bytes:
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError("Please send a base64 encoded file") from e

    async def _fetch(self, link: str) -> bytes:
        if self._http_client is not None:
            return await self._download(self._http_client, link)
        async with httpx.AsyncClient(
            follow_redirects=True, timeout=self._settings.fetch_timeout_seconds
        ) as client:
            return await self._download(client, link)

    async def _download(self, client: httpx.AsyncClient, link: str) -> bytes:
        limit = self._settings.max_upload_bytes
        chunks: list[bytes] = []
        received = 0
        try:
            async with client.stream(
                "GET", link, headers={"User-Agent": USER_AGENT}
            ) as response:
                if not response.is_success:
                    logger.error(
                        "Failed to fetch file from URL with code %d: %s",
                        response.status_code,
                        response.reason_phrase,
                    )
                    raise UpstreamFetchError()
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if limit is not None and received > limit:
                        raise CapacityExceededError()
                    chunks.append(chunk)
        except httpx.HTTPError as e:
            logger.error("Error fetching file from URL: %s", e)
            raise UpstreamFetchError() from e
        return b"".join(chunks)

    def _check_upload_size(self, size: int) -> None:
        limit = self._settings.max_upload_bytes
        if limit is not None and size > limit:
            raise CapacityExceededError()

    # ── Transform and persist ────────────────────────────────────────────────

    async def _store_new(
        self, plaintext: bytes, content_hash: str, request: IngestRequest
    ) -> IngestResult:
        algorithm = self._settings.compression_algorithm
        data = plaintext
        if algorithm is not CompressionAlgorithm.NONE:
            data = await asyncio.to_thread(
                compress, data, algorithm, self._settings.compression_level
            )

        key = None
        if request.encrypt:
            key = generate_key()
            data = await asyncio.to_thread(encrypt, data, key)

        transformed = algorithm is not CompressionAlgorithm.NONE or key is not None
        stored_hash = await asyncio.to_thread(sha256_hex, data) if transformed else None

        async with self._session_factory() as session:
            index = BlobIndex(session)
            await self._check_storage_ceiling(index, len(data))

            object_id = new_object_id()
            created_at = self._clock()
            try:
                await self._store.write(object_id, data)
            except OSError as e:
                logger.error("Error writing file %s: %s", object_id, e)
                raise InternalError() from e

            record = BlobRecord(
                id=object_id,
                content_hash=content_hash,
                stored_hash=stored_hash,
                size_bytes=len(data),
                compression_algorithm=algorithm,
                encryption_key_digest=key_digest(key) if key else None,
                expires_at=request.expires,
                created_at=created_at,
            )
            try:
                await index.insert(record)
                await session.commit()
            except SQLAlchemyError as e:
                logger.error("Index insert failed, file %s left without a row: %s", object_id, e)
                raise InternalError() from e

        logger.info("New file added (%s)", object_id)
        return IngestResult(
            id=object_id,
            content_hash=content_hash,
            encryption_key=key,
            size=len(data),
            expires_at=request.expires,
            created_at=created_at,
        )

    async def _check_storage_ceiling(self, index: BlobIndex, incoming: int) -> None:
        limit = self._settings.max_storage_bytes
        if limit is None:
            return
        _, used = await index.totals()
        if used + incoming > limit:
            raise CapacityExceededError("Storage capacity exceeded")
