from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, Column, DateTime, LargeBinary, String
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

base = declarative_base()


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way back, so values are normalized both when
    binding and when loading.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = as_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


class Vault(base):
    __tablename__ = "vaults"

    user_id = Column(String(36), primary_key=True, index=True)
    encrypted_blob = Column(LargeBinary, nullable=False)
    version = Column(BigInteger, nullable=False, default=0)
    last_updated_by_device_id = Column(String(36), nullable=True)

    created_at = Column(UTCDateTime(), server_default=func.now())
    updated_at = Column(UTCDateTime(), nullable=False)


@dataclass(frozen=True)
class VaultRecord:
    """Detached view of a user's vault row.

    ``version`` is the logical clock under the version-counter policy;
    ``updated_at`` doubles as the logical clock under the timestamp policy.
    """

    user_id: str
    encrypted_blob: bytes
    version: int
    last_writer_device_id: Optional[str]
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Vault) -> "VaultRecord":
        return cls(
            user_id=row.user_id,
            encrypted_blob=bytes(row.encrypted_blob),
            version=row.version,
            last_writer_device_id=row.last_updated_by_device_id,
            updated_at=as_utc(row.updated_at),
        )
