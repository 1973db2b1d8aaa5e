"""Vector knowledge chunks and canonical question/SQL pairs."""
from __future__ import annotations

from enum import Enum
from typing import Any

from sqlalchemy import JSON, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, BigIntPK, TimestampMixin


class ChunkCollection(str, Enum):
    SCHEMA = "schema"
    BUSINESS = "business"
    QA = "qa"
    DOCS = "docs"


class SqlQa(TimestampMixin, Base):
    """A question that was answered successfully, with its canonical SQL."""

    __tablename__ = "sql_qa"
    __table_args__ = (Index("ix_sql_qa_scope", "tenant_id", "db_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    db_key: Mapped[str] = mapped_column(String(64), nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    sql_canonical: Mapped[str] = mapped_column(Text, nullable=False)
    sql_template: Mapped[str | None] = mapped_column(Text)
    parameters: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    chunks: Mapped[list["AiChunk"]] = relationship(back_populates="sql_qa")


class AiChunk(TimestampMixin, Base):
    """Embedded text used for retrieval; ``embedding`` is a JSON list of floats."""

    __tablename__ = "ai_chunks"
    __table_args__ = (Index("ix_ai_chunks_scope", "tenant_id", "db_key", "collection"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    collection: Mapped[str] = mapped_column(String(16), nullable=False)
    db_key: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(JSON, nullable=False)
    sql_qa_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("sql_qa.id", ondelete="SET NULL")
    )

    sql_qa: Mapped[SqlQa | None] = relationship(back_populates="chunks")
