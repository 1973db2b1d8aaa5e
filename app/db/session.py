"""SQLAlchemy session helpers."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session, sessionmaker

from .engine import get_shared_engine


def get_sessionmaker(url: str | None = None) -> sessionmaker:
    """Return a ``sessionmaker`` bound to the shared engine for ``url``."""

    engine = get_shared_engine(url)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(
    url: str | None = None, *, factory: sessionmaker | None = None
) -> Iterator[Session]:
    """Provide a transactional scope for scripts and background work."""

    Session_ = factory or get_sessionmaker(url)
    session = Session_()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
