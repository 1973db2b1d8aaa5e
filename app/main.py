"""FastAPI application instance and startup hooks."""
from __future__ import annotations

from pathlib import Path

from fastapi import FastAPI, Request
from sqlalchemy.orm import sessionmaker

from app.core import get_logger, get_settings
from app.core.logger import init_logging
from app.core.security import AuthenticatedUser, get_optional_user
from app.db.session import get_sessionmaker
from app.models import Base
from app.text2sql import Text2SqlPipeline, configure_dependencies, router as ai_router
from app.text2sql.embeddings import create_embedding_client
from app.text2sql.llm_providers import LLMProviderFactory

LOGGER = get_logger(__name__)


def _build_pipeline() -> Text2SqlPipeline:
    settings = get_settings().ai
    provider = LLMProviderFactory.create(settings.llm_provider)
    try:
        embedder = create_embedding_client(settings)
    except ValueError as exc:
        LOGGER.warning("Embeddings disabled, RAG falls back to the full schema: %s", exc)
        embedder = None
    return Text2SqlPipeline(provider, embedder=embedder, settings=settings)


def create_app(
    *,
    session_factory: sessionmaker | None = None,
    pipeline: Text2SqlPipeline | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    init_logging(level=settings.log.level, log_dir=Path(settings.log.log_dir) if settings.log.log_dir else None)

    app = FastAPI(title="Trustay AI", version="0.1.0")
    factory = session_factory or get_sessionmaker()
    Base.metadata.create_all(bind=factory.kw["bind"])

    def get_db_session():
        session = factory()
        try:
            yield session
        finally:
            session.close()

    def get_current_user(request: Request) -> AuthenticatedUser | None:
        return get_optional_user(request)

    configure_dependencies(
        get_db=get_db_session,
        get_user=get_current_user,
        pipeline=pipeline or _build_pipeline(),
    )
    app.include_router(ai_router)
    LOGGER.info("AI assistant routes registered")

    LOGGER.info("FastAPI application initialised")
    return app
