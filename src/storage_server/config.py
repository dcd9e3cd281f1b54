"""Configuration settings for storage-server."""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from storage_server.models.enums import CompressionAlgorithm

GIB = 1024 * 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/database.db"
    database_echo: bool = False

    # Content store
    storage_path: Path = Path("data/storage")

    # HTTP
    host: str = "0.0.0.0"
    port: int = 3033
    token: str | None = None
    hostname: str | None = None  # Reported by /info, defaults to the OS hostname

    # Rate limiting (requests per window per client, unset disables)
    rate_limit: int | None = None
    rate_limit_window_seconds: int = 60

    # Ingest transforms
    compression_algorithm: CompressionAlgorithm = CompressionAlgorithm.NONE
    compression_level: int | None = None  # 1-9, anything else uses the zlib default

    # Capacity ceilings in gigabytes (unset means unlimited)
    max_upload_size_gb: float | None = None
    max_storage_size_gb: float | None = None

    fetch_timeout_seconds: float = 30.0

    # ── Retention ────────────────────────────────────────────────────────────
    default_cache_seconds: int = 30 * 24 * 3600
    # Objects untouched for this many days are swept; None keeps them forever
    inactivity_days: int | None = 30
    sweeper_enabled: bool = True
    sweep_interval_seconds: float = 1800.0
    rate_limit_cleanup_seconds: float = 300.0

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None

    @field_validator("compression_algorithm", mode="before")
    @classmethod
    def _accept_legacy_codes(cls, value: object) -> object:
        # COMPRESSION_ALGORITHM=0/1/2 from older deployments
        if isinstance(value, int) or (isinstance(value, str) and value.strip().isdigit()):
            return CompressionAlgorithm.from_code(int(value))
        return value

    @property
    def max_upload_bytes(self) -> int | None:
        if self.max_upload_size_gb is None:
            return None
        return int(self.max_upload_size_gb * GIB)

    @property
    def max_storage_bytes(self) -> int | None:
        if self.max_storage_size_gb is None:
            return None
        return int(self.max_storage_size_gb * GIB)

    @property
    def inactivity_ms(self) -> int | None:
        if self.inactivity_days is None:
            return None
        return self.inactivity_days * 24 * 3600 * 1000


settings = Settings()
