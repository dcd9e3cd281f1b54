"""Applied schema migrations."""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from storage_server.models.base import Base


class MigrationRecord(Base):
    """Marks a schema migration as applied so it runs at most once."""

    __tablename__ = "migrations"

    migration_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    applied_at: Mapped[int] = mapped_column(BigInteger)
