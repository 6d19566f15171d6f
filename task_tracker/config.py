"""Application settings read from the environment."""
import os
from dataclasses import dataclass
from typing import Optional

MEMORY_BACKEND = "memory"
POSTGRES_BACKEND = "postgres"


class ConfigError(Exception):
    """Raised when the environment describes an unusable configuration."""


@dataclass(frozen=True)
class Settings:
    database_url: str
    store_backend: str
    port: int
    log_level: str
    db_operation_timeout: float
    db_ping_retries: int


def normalize_database_url(url: str) -> str:
    # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def load_settings(environ: Optional[dict] = None) -> Settings:
    """
    Build settings from environment variables.

    DATABASE_URL wins over POSTGRES_DSN. Without either, the in-memory
    store is used unless STORE_BACKEND asks for postgres explicitly.
    """
    env = os.environ if environ is None else environ

    database_url = (env.get("DATABASE_URL") or env.get("POSTGRES_DSN") or "").strip()
    database_url = normalize_database_url(database_url)

    default_backend = POSTGRES_BACKEND if database_url else MEMORY_BACKEND
    store_backend = (env.get("STORE_BACKEND") or default_backend).strip().lower()
    if store_backend not in (MEMORY_BACKEND, POSTGRES_BACKEND):
        raise ConfigError(f"Unknown STORE_BACKEND: {store_backend!r}")
    if store_backend == POSTGRES_BACKEND and not database_url:
        raise ConfigError("DATABASE_URL (or POSTGRES_DSN) is required for the postgres store")

    try:
        port = int(env.get("PORT", "8080"))
        db_operation_timeout = float(env.get("DB_OPERATION_TIMEOUT", "3"))
        db_ping_retries = int(env.get("DB_PING_RETRIES", "20"))
    except ValueError as exc:
        raise ConfigError(f"Invalid numeric setting: {exc}") from exc

    return Settings(
        database_url=database_url,
        store_backend=store_backend,
        port=port,
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        db_operation_timeout=db_operation_timeout,
        db_ping_retries=db_ping_retries,
    )
