import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from vaultsync.errors import ConfigError

load_dotenv()

DATABASE_URL = "sqlite:///./vaultsync.db"
SYNC_POLICY = "version"

MAX_BLOB_BYTES = 10 * 1024 * 1024
LOCK_TIMEOUT_SECONDS = 5.0

SECRET_KEY_FILE = ".key_db"
TOKEN_TTL_DAYS = 30

HOST = "127.0.0.1"
PORT = 5000

LOG_LEVEL = "INFO"
CORS_ORIGINS = "*"


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    return os.getenv(name, default)


def _env_number(name: str, default, kind):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes")


def _split_origins(raw: str) -> List[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@dataclass(frozen=True)
class Settings:
    """Explicit runtime configuration handed to the app factory."""

    database_url: str = DATABASE_URL
    sync_policy: str = SYNC_POLICY
    max_blob_bytes: int = MAX_BLOB_BYTES
    lock_timeout_seconds: float = LOCK_TIMEOUT_SECONDS
    secret_key: Optional[str] = None
    secret_key_file: str = SECRET_KEY_FILE
    token_ttl_days: int = TOKEN_TTL_DAYS
    host: str = HOST
    port: int = PORT
    log_level: str = LOG_LEVEL
    log_json: bool = False
    cors_origins: List[str] = field(default_factory=lambda: _split_origins(CORS_ORIGINS))

    @classmethod
    def from_env(cls) -> "Settings":
        """Read the environment (after .env loading); bad numbers raise ConfigError."""
        return cls(
            database_url=_env_str("DATABASE_URL", DATABASE_URL),
            sync_policy=_env_str("SYNC_POLICY", SYNC_POLICY),
            max_blob_bytes=_env_number("MAX_BLOB_BYTES", MAX_BLOB_BYTES, int),
            lock_timeout_seconds=_env_number("LOCK_TIMEOUT_SECONDS", LOCK_TIMEOUT_SECONDS, float),
            secret_key=_env_str("SECRET_KEY", None),
            secret_key_file=_env_str("SECRET_KEY_FILE", SECRET_KEY_FILE),
            token_ttl_days=_env_number("TOKEN_TTL_DAYS", TOKEN_TTL_DAYS, int),
            host=_env_str("HOST", HOST),
            port=_env_number("PORT", PORT, int),
            log_level=_env_str("LOG_LEVEL", LOG_LEVEL),
            log_json=_env_bool("LOG_JSON"),
            cors_origins=_split_origins(_env_str("CORS_ORIGINS", CORS_ORIGINS)),
        )
