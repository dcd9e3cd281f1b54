"""Metadata index access layer.

`BlobIndex` is the only code that issues SQL against `blob_records`. It
never commits; callers own the transaction boundary.
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storage_server.models import BlobRecord


class BlobIndex:
    """Queries over blob records bound to one session.

    Usage:
        async with session_factory() as session:
            index = BlobIndex(session)
            record = await index.get(object_id)
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, object_id: str) -> BlobRecord | None:
        return await self._session.get(BlobRecord, object_id)

    async def find_latest_by_hash(self, content_hash: str, now_ms: int) -> BlobRecord | None:
        """Most recently created unencrypted, unexpired record with this plaintext hash."""
        stmt = (
            select(BlobRecord)
            .where(
                BlobRecord.content_hash == content_hash,
                BlobRecord.encryption_key_digest.is_(None),
                or_(BlobRecord.expires_at.is_(None), BlobRecord.expires_at > now_ms),
            )
            .order_by(BlobRecord.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(self, record: BlobRecord) -> None:
        self._session.add(record)
        await self._session.flush()

    async def delete(self, object_id: str) -> bool:
        result = await self._session.execute(
            delete(BlobRecord).where(BlobRecord.id == object_id)
        )
        return result.rowcount > 0

    async def delete_many(self, object_ids: Sequence[str]) -> int:
        if not object_ids:
            return 0
        result = await self._session.execute(
            delete(BlobRecord).where(BlobRecord.id.in_(list(object_ids)))
        )
        return result.rowcount

    async def touch(self, object_id: str, now_ms: int) -> None:
        await self._session.execute(
            update(BlobRecord)
            .where(BlobRecord.id == object_id)
            .values(last_accessed_at=now_ms)
        )

    async def set_content_hash(self, object_id: str, content_hash: str) -> None:
        await self._session.execute(
            update(BlobRecord)
            .where(BlobRecord.id == object_id)
            .values(content_hash=content_hash)
        )

    async def expired_ids(self, now_ms: int, inactive_before_ms: int | None = None) -> list[str]:
        """Ids past their explicit expiry, or idle since before `inactive_before_ms`."""
        conditions = [
            (BlobRecord.expires_at.is_not(None)) & (BlobRecord.expires_at < now_ms),
        ]
        if inactive_before_ms is not None:
            last_seen = func.coalesce(BlobRecord.last_accessed_at, BlobRecord.created_at)
            conditions.append(last_seen < inactive_before_ms)
        result = await self._session.execute(select(BlobRecord.id).where(or_(*conditions)))
        return list(result.scalars().all())

    async def all_ids(self) -> list[str]:
        result = await self._session.execute(select(BlobRecord.id))
        return list(result.scalars().all())

    async def missing_hash(self) -> list[BlobRecord]:
        result = await self._session.execute(
            select(BlobRecord).where(BlobRecord.content_hash.is_(None))
        )
        return list(result.scalars().all())

    async def totals(self) -> tuple[int, int]:
        """(object_count, total_size_bytes)."""
        result = await self._session.execute(
            select(func.count(BlobRecord.id), func.coalesce(func.sum(BlobRecord.size_bytes), 0))
        )
        count, size = result.one()
        return int(count), int(size)
