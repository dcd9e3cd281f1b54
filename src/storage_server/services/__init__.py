"""Object lifecycle services: ingest, retrieval and retention."""

from storage_server.services.ingest import IngestService
from storage_server.services.retention import RetentionSweeper
from storage_server.services.retrieval import BlobDownload, RetrievalService

__all__ = [
    "BlobDownload",
    "IngestService",
    "RetentionSweeper",
    "RetrievalService",
]
