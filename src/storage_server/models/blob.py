"""Blob record model: the metadata index row for one stored object."""

from __future__ import annotations

from sqlalchemy import BigInteger, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from storage_server.models.base import Base
from storage_server.models.enums import CompressionAlgorithm


class BlobRecord(Base):
    """One stored object.

    The object is addressed by a random UUID v4 (`id`), never by its content.
    `content_hash` is the SHA-256 of the plaintext as received and is only a
    lookup key for deduplication. The backing file in the content store is
    named exactly by `id`.

    All timestamps are epoch milliseconds.
    """

    __tablename__ = "blob_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    stored_hash: Mapped[str | None] = mapped_column(String(64))
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    compression_algorithm: Mapped[CompressionAlgorithm] = mapped_column(
        Enum(CompressionAlgorithm, native_enum=False, length=16),
        default=CompressionAlgorithm.NONE,
    )
    # SHA-256 of the per-object key; the key itself is only handed to the uploader
    encryption_key_digest: Mapped[str | None] = mapped_column(String(64))
    expires_at: Mapped[int | None] = mapped_column(BigInteger, index=True)
    last_accessed_at: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[int] = mapped_column(BigInteger, index=True)

    @property
    def encrypted(self) -> bool:
        return self.encryption_key_digest is not None

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at is not None and self.expires_at <= now_ms
