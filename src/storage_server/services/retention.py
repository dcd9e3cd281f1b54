"""Retention sweeper: periodic reconciliation of index, content store and clock.

Three independent sweeps:
- Expiry: rows past `expires_at`, or idle past the inactivity threshold, are
  deleted in one batch; their files are unlinked afterwards. A crash between
  the two leaves stray files, which `stray_files()` reports.
- Orphans: rows whose backing file is gone are deleted.
- Hash backfill: rows with no `content_hash` get one computed from the
  plaintext recovered from their file.

Files with no row are never deleted automatically; `stray_files()` lists
them for an operator.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storage_server.clock import Clock, now_ms
from storage_server.config import Settings
from storage_server.errors import InternalError
from storage_server.index import BlobIndex
from storage_server.locks import KeyedLocks, id_key
from storage_server.ratelimit import FixedWindowRateLimiter
from storage_server.schemas import SweepReport
from storage_server.store import ContentStore
from storage_server.transforms import decompress, sha256_hex

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Runs the retention sweeps on demand or on fixed background ticks.

    Usage:
        sweeper = RetentionSweeper(async_session_factory, store, settings)
        report = await sweeper.run_once()

        sweeper.start()   # inside a running event loop
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ContentStore,
        settings: Settings,
        *,
        clock: Clock = now_ms,
        locks: KeyedLocks | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._settings = settings
        self._clock = clock
        self._locks = locks or KeyedLocks()
        self._rate_limiter = rate_limiter
        self._tasks: list[asyncio.Task[None]] = []

    # ── Sweeps ───────────────────────────────────────────────────────────────

    async def sweep_expired(self) -> int:
        """Delete expired and inactive objects. Returns the number of rows removed."""
        now = self._clock()
        inactivity = self._settings.inactivity_ms
        inactive_before = now - inactivity if inactivity is not None else None

        async with self._session_factory() as session:
            index = BlobIndex(session)
            object_ids = await index.expired_ids(now, inactive_before)
            removed = await index.delete_many(object_ids)
            await session.commit()

        for object_id in object_ids:
            async with self._locks.hold(id_key(object_id)):
                try:
                    await self._store.unlink(object_id)
                except OSError as e:
                    logger.error("Error deleting expired file from storage (%s): %s", object_id, e)
                    continue
            logger.info("Deleted expired file (%s)", object_id)
        return removed

    async def sweep_orphans(self) -> int:
        """Delete rows whose file no longer exists. Returns the number removed."""
        async with self._session_factory() as session:
            index = BlobIndex(session)
            missing = [
                object_id
                for object_id in await index.all_ids()
                if not await self._store.exists(object_id)
            ]
            removed = await index.delete_many(missing)
            await session.commit()

        for object_id in missing:
            logger.warning("Removed index row with no backing file (%s)", object_id)
        return removed

    async def backfill_hashes(self) -> int:
        """Compute `content_hash` for rows missing it. Returns rows updated."""
        updated = 0
        async with self._session_factory() as session:
            index = BlobIndex(session)
            for record in await index.missing_hash():
                if record.encrypted:
                    logger.warning("Cannot backfill hash of encrypted file (%s)", record.id)
                    continue
                try:
                    stored = await self._store.read(record.id)
                except FileNotFoundError:
                    continue  # the orphan sweep owns this row
                try:
                    plaintext = await asyncio.to_thread(
                        decompress, stored, record.compression_algorithm
                    )
                except InternalError as e:
                    logger.error("Cannot backfill hash of %s: %s", record.id, e.cause)
                    continue
                await index.set_content_hash(record.id, await asyncio.to_thread(sha256_hex, plaintext))
                updated += 1
            await session.commit()

        if updated:
            logger.info("Backfilled content hash for %d file(s)", updated)
        return updated

    async def run_once(self) -> SweepReport:
        return SweepReport(
            expired=await self.sweep_expired(),
            orphans=await self.sweep_orphans(),
            backfilled=await self.backfill_hashes(),
        )

    async def stray_files(self) -> list[str]:
        """Files in the store that no row references."""
        async with self._session_factory() as session:
            known = set(await BlobIndex(session).all_ids())
        on_disk = await asyncio.to_thread(self._store.list_ids)
        return sorted(name for name in on_disk if name not in known)

    # ── Background ticks ─────────────────────────────────────────────────────

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks.append(
            asyncio.create_task(
                self._every(self._settings.sweep_interval_seconds, self.run_once, "retention sweep")
            )
        )
        if self._rate_limiter is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._every(
                        self._settings.rate_limit_cleanup_seconds,
                        self._cleanup_rate_limits,
                        "rate limit cleanup",
                    )
                )
            )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def _cleanup_rate_limits(self) -> None:
        assert self._rate_limiter is not None
        removed = self._rate_limiter.cleanup()
        if removed:
            logger.debug("Dropped %d expired rate limit counter(s)", removed)

    async def _every(
        self, interval: float, job: Callable[[], Awaitable[object]], name: str
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error during %s", name)
