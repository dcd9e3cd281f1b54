"""Request and result schemas for the lifecycle operations."""

from __future__ import annotations

from pydantic import BaseModel, Field, StrictBool, StrictInt

from storage_server.models.enums import CompressionAlgorithm


class IngestRequest(BaseModel):
    """Upload input. Exactly one of `file` (base64) or `link` must be set."""

    file: str | None = Field(default=None, description="Base64 encoded payload")
    link: str | None = Field(default=None, description="URL to fetch the payload from")
    expires: StrictInt | None = Field(
        default=None, description="Absolute expiry, epoch milliseconds, must be in the future"
    )
    encrypt: StrictBool = False


class IngestResult(BaseModel):
    id: str
    content_hash: str
    encryption_key: str | None = None
    deduplicated: bool = False
    size: int
    expires_at: int | None = None
    created_at: int


class BlobInfo(BaseModel):
    """Single-object metadata as returned by inspect."""

    id: str
    content_hash: str | None
    stored_hash: str | None = None
    size: int
    compression_algorithm: CompressionAlgorithm
    encrypted: bool
    expires_at: int | None = None
    last_accessed_at: int | None = None
    created_at: int


class ServerInfo(BaseModel):
    """Aggregate view of the store."""

    name: str
    version: str
    started_at: int
    object_count: int
    total_size_bytes: int
    max_upload_bytes: int | None = None
    max_storage_bytes: int | None = None


class SweepReport(BaseModel):
    expired: int = 0
    orphans: int = 0
    backfilled: int = 0
