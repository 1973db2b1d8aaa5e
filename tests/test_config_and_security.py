import logging

import pytest

from app.core.config import AuthSettings, DatabaseSettings, Settings
from app.core.logger import log_context, timeit
from app.core.security import AuthenticatedUser, AuthenticationError, SecurityProvider


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("DB_HOST", "db.internal")
    monkeypatch.setenv("DB_PORT", "6543")
    monkeypatch.setenv("AI_LLM_PROVIDER", "openai")
    monkeypatch.setenv("AI_SQL_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("AUTH_ENABLED", "false")

    settings = Settings.from_env()

    assert settings.database.host == "db.internal"
    assert settings.database.port == 6543
    assert settings.ai.llm_provider == "openai"
    assert settings.ai.sql_max_attempts == 3
    assert settings.auth.enabled is False


def test_invalid_integer_setting_is_reported(monkeypatch):
    monkeypatch.setenv("DB_PORT", "postgres")

    with pytest.raises(ValueError, match="DB_PORT"):
        Settings.from_env()


def test_invalid_retry_delay_is_reported(monkeypatch):
    monkeypatch.setenv("AI_SQL_RETRY_DELAY", "soon")

    with pytest.raises(ValueError, match="AI_SQL_RETRY_DELAY must be a number"):
        Settings.from_env()


def test_database_url():
    settings = DatabaseSettings(
        driver="postgresql+psycopg", host="h", port=5432, user="u", password="p", name="trustay"
    )

    assert settings.sqlalchemy_url == "postgresql+psycopg://u:p@h:5432/trustay"
    settings.url_override = "sqlite:///local.db"
    assert settings.sqlalchemy_url == "sqlite:///local.db"


def test_token_round_trip():
    provider = SecurityProvider(AuthSettings(secret_key="s", algorithm="HS256"))

    token = provider.create_access_token(AuthenticatedUser("u-1", role="admin", email="a@b.c"))
    user = provider.decode_token(token)

    assert user == AuthenticatedUser("u-1", role="admin", email="a@b.c")
    assert user.is_admin


def test_tampered_and_expired_tokens_are_rejected():
    provider = SecurityProvider(AuthSettings(secret_key="s", algorithm="HS256"))
    other = SecurityProvider(AuthSettings(secret_key="other", algorithm="HS256"))

    with pytest.raises(AuthenticationError, match="Invalid token"):
        provider.decode_token(other.create_access_token(AuthenticatedUser("u-1")))
    with pytest.raises(AuthenticationError, match="Token expired"):
        provider.decode_token(
            provider.create_access_token(AuthenticatedUser("u-1"), expires_in_minutes=-5)
        )


def test_timeit_logs_throughput(caplog):
    logger = logging.getLogger("tests.timing")

    with caplog.at_level(logging.INFO, logger="tests.timing"):
        with timeit("Ingest", logger=logger, unit="chunks") as timer:
            timer.set_total(4)

    assert "Ingest completed in" in caplog.text
    assert "4 chunks" in caplog.text


def test_log_context_scope_is_restored():
    with log_context.scope(session_id="s-1"):
        assert log_context.as_dict()["session_id"] == "s-1"
    assert "session_id" not in log_context.as_dict()
