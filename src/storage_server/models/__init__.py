"""Database models for storage-server."""

from storage_server.models.base import Base
from storage_server.models.blob import BlobRecord
from storage_server.models.enums import CompressionAlgorithm
from storage_server.models.migration import MigrationRecord

__all__ = [
    "Base",
    "BlobRecord",
    "CompressionAlgorithm",
    "MigrationRecord",
]
