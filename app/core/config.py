"""Environment-driven configuration for the Text2SQL service."""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file from project root
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

_FALSE_VALUES = {"0", "false", "False", "no"}


@dataclass(slots=True)
class DatabaseSettings:
    """Connection details for the marketplace database."""

    driver: str
    host: str
    port: int
    user: str
    password: str
    name: str
    url_override: str = ""

    @property
    def sqlalchemy_url(self) -> str:
        """Build a SQLAlchemy compatible URL."""

        if self.url_override:
            return self.url_override
        if self.password:
            credentials = f"{self.user}:{self.password}"
        else:
            credentials = self.user
        return f"{self.driver}://{credentials}@{self.host}:{self.port}/{self.name}"


@dataclass(slots=True)
class AuthSettings:
    """JWT settings used to identify the caller of the AI endpoints."""

    secret_key: str
    algorithm: str
    cookie_name: str = "access_token"
    enabled: bool = True


@dataclass(slots=True)
class AiSettings:
    """Pipeline-level switches for LLM, embeddings and SQL retries."""

    llm_provider: str = "gemini"
    embedding_provider: str = "gemini"
    embedding_model: str = "text-embedding-004"
    embedding_batch_size: int = 10
    tenant_id: str = "trustay"
    db_key: str = "default"
    sql_max_attempts: int = 5
    sql_retry_delay_seconds: float = 1.0
    session_timeout_minutes: int = 30


@dataclass(slots=True)
class LogSettings:
    level: str = "INFO"
    log_dir: str = "logs"


@dataclass(slots=True)
class Settings:
    """Top-level application configuration container."""

    database: DatabaseSettings
    auth: AuthSettings
    ai: AiSettings
    log: LogSettings
    sqlalchemy_echo: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Load configuration values from environment variables."""

        def _get_env(name: str, default: str) -> str:
            return os.getenv(name, default)

        def _get_int(name: str, default: int) -> int:
            raw = _get_env(name, str(default)).strip()
            if not raw.lstrip("-").isdigit():
                raise ValueError(f"{name} must be an integer, got {raw!r}")
            return int(raw)

        def _get_float(name: str, default: float) -> float:
            raw = _get_env(name, str(default)).strip()
            try:
                return float(raw)
            except ValueError:
                raise ValueError(f"{name} must be a number, got {raw!r}") from None

        db = DatabaseSettings(
            driver=_get_env("DB_DRIVER", "postgresql+psycopg"),
            host=_get_env("DB_HOST", "127.0.0.1"),
            port=_get_int("DB_PORT", 5432),
            user=_get_env("DB_USER", "trustay"),
            password=_get_env("DB_PASSWORD", "trustay"),
            name=_get_env("DB_NAME", "trustay"),
            url_override=_get_env("DATABASE_URL", ""),
        )
        auth = AuthSettings(
            secret_key=_get_env("JWT_SECRET_KEY", "change-me"),
            algorithm=_get_env("JWT_ALGORITHM", "HS256"),
            cookie_name=_get_env("JWT_COOKIE_NAME", "access_token"),
            enabled=_get_env("AUTH_ENABLED", "1") not in _FALSE_VALUES,
        )
        ai = AiSettings(
            llm_provider=_get_env("AI_LLM_PROVIDER", "gemini"),
            embedding_provider=_get_env("AI_EMBEDDING_PROVIDER", "gemini"),
            embedding_model=_get_env("AI_EMBEDDING_MODEL", "text-embedding-004"),
            embedding_batch_size=_get_int("AI_EMBEDDING_BATCH_SIZE", 10),
            tenant_id=_get_env("AI_TENANT_ID", "trustay"),
            db_key=_get_env("AI_DB_KEY", "default"),
            sql_max_attempts=_get_int("AI_SQL_MAX_ATTEMPTS", 5),
            sql_retry_delay_seconds=_get_float("AI_SQL_RETRY_DELAY", 1.0),
            session_timeout_minutes=_get_int("AI_SESSION_TIMEOUT_MINUTES", 30),
        )
        log = LogSettings(
            level=_get_env("LOG_LEVEL", "INFO"),
            log_dir=_get_env("LOG_DIR", "logs"),
        )
        echo_flag = _get_env("SQLALCHEMY_ECHO", "0")
        return cls(
            database=db,
            auth=auth,
            ai=ai,
            log=log,
            sqlalchemy_echo=echo_flag not in _FALSE_VALUES,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance."""

    settings = Settings.from_env()

    # Import locally to avoid circular dependencies during module import time.
    from .logger import get_logger

    logger = get_logger(__name__)
    logger.debug(
        "Settings initialised",
        extra={
            "sqlalchemy_echo": settings.sqlalchemy_echo,
            "database": {
                "driver": settings.database.driver,
                "host": settings.database.host,
                "port": settings.database.port,
                "name": settings.database.name,
                "user": settings.database.user,
            },
            "ai": {
                "llm_provider": settings.ai.llm_provider,
                "embedding_provider": settings.ai.embedding_provider,
                "embedding_model": settings.ai.embedding_model,
                "tenant_id": settings.ai.tenant_id,
                "db_key": settings.ai.db_key,
            },
            "auth_enabled": settings.auth.enabled,
        },
    )
    return settings
