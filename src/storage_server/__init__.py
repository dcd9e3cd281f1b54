"""storage-server: single-tenant blob storage with dedup, compression and retention."""

__version__ = "1.0.0"
