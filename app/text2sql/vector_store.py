"""Embedding-backed retrieval over ``ai_chunks`` plus the ``sql_qa`` ledger.

Vectors live in a JSON column and are ranked in-process with numpy cosine
similarity, so the store works on any SQLAlchemy backend (PostgreSQL in
production, SQLite in tests). All queries are scoped to one
``tenant_id``/``db_key`` pair.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.core.logger import get_logger
from app.models.knowledge import AiChunk, ChunkCollection, SqlQa

from .embeddings import EmbeddingClient

LOGGER = get_logger(__name__)


@dataclass(slots=True)
class VectorSearchResult:
    id: int
    content: str
    score: float
    collection: str
    sql_qa_id: int | None = None


@dataclass(slots=True)
class ChunkInput:
    content: str
    collection: str
    sql_qa_id: int | None = None


def cosine_scores(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``; zero vectors score 0."""

    q = np.asarray(query, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros(0)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / norms, 0.0)
    return np.clip(scores, -1.0, 1.0)


def _collection_value(collection: ChunkCollection | str) -> str:
    return ChunkCollection(collection).value


class VectorStore:
    """Chunk and canonical-SQL persistence for one tenant/database scope."""

    def __init__(
        self,
        session: Session,
        embedder: EmbeddingClient,
        *,
        tenant_id: str,
        db_key: str,
    ) -> None:
        self.session = session
        self.embedder = embedder
        self.tenant_id = tenant_id
        self.db_key = db_key

    def _scoped_chunks(self):
        return select(AiChunk).where(
            AiChunk.tenant_id == self.tenant_id, AiChunk.db_key == self.db_key
        )

    def _scoped_sql_qa(self):
        return select(SqlQa).where(SqlQa.tenant_id == self.tenant_id, SqlQa.db_key == self.db_key)

    # ------------------------------------------------------------------ chunks
    async def add_chunks(self, chunks: Sequence[ChunkInput]) -> list[int]:
        """Embed and insert ``chunks``; returns the new ids in input order."""

        if not chunks:
            return []
        vectors = await self.embedder.embed_documents([chunk.content for chunk in chunks])
        rows = [
            AiChunk(
                tenant_id=self.tenant_id,
                db_key=self.db_key,
                collection=_collection_value(chunk.collection),
                content=chunk.content,
                embedding=vector,
                sql_qa_id=chunk.sql_qa_id,
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        self.session.add_all(rows)
        self.session.commit()
        LOGGER.debug("Inserted %d chunks", len(rows))
        return [row.id for row in rows]

    async def add_chunk(
        self, content: str, collection: ChunkCollection | str, *, sql_qa_id: int | None = None
    ) -> int:
        ids = await self.add_chunks([ChunkInput(content, collection, sql_qa_id)])
        return ids[0]

    async def similarity_search(
        self,
        query: str,
        collection: ChunkCollection | str | None = None,
        *,
        limit: int = 8,
        threshold: float = 0.0,
    ) -> list[VectorSearchResult]:
        """Return the ``limit`` best chunks with ``score >= threshold``, best first."""

        stmt = self._scoped_chunks()
        if collection is not None:
            stmt = stmt.where(AiChunk.collection == _collection_value(collection))
        candidates = list(self.session.scalars(stmt))
        if not candidates or limit <= 0:
            return []

        query_vector = await self.embedder.embed_query(query)
        dimension = len(query_vector)
        usable = [chunk for chunk in candidates if len(chunk.embedding or []) == dimension]
        if len(usable) != len(candidates):
            LOGGER.warning(
                "Skipping %d chunks with mismatched embedding dimension",
                len(candidates) - len(usable),
            )
        if not usable:
            return []

        matrix = np.asarray([chunk.embedding for chunk in usable], dtype=np.float64)
        scores = cosine_scores(query_vector, matrix)
        order = np.argsort(-scores, kind="stable")

        results: list[VectorSearchResult] = []
        for index in order:
            score = float(scores[index])
            if score < threshold:
                break
            chunk = usable[int(index)]
            results.append(
                VectorSearchResult(
                    id=chunk.id,
                    content=chunk.content,
                    score=score,
                    collection=chunk.collection,
                    sql_qa_id=chunk.sql_qa_id,
                )
            )
            if len(results) >= limit:
                break
        return results

    async def update_chunk(self, chunk_id: int, content: str) -> int:
        """Replace the content of a chunk and re-embed it."""

        chunk = self.session.get(AiChunk, chunk_id)
        if chunk is None or chunk.tenant_id != self.tenant_id or chunk.db_key != self.db_key:
            raise LookupError(f"Chunk {chunk_id} not found")
        chunk.embedding = await self.embedder.embed_query(content)
        chunk.content = content
        self.session.commit()
        return chunk.id

    def get_chunk(self, chunk_id: int) -> AiChunk | None:
        return self.session.scalars(self._scoped_chunks().where(AiChunk.id == chunk_id)).first()

    def delete_chunks(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        result = self.session.execute(
            delete(AiChunk).where(
                AiChunk.id.in_(ids),
                AiChunk.tenant_id == self.tenant_id,
                AiChunk.db_key == self.db_key,
            )
        )
        self.session.commit()
        return result.rowcount or 0

    def delete_chunks_by_collection(self, collection: ChunkCollection | str) -> int:
        result = self.session.execute(
            delete(AiChunk).where(
                AiChunk.tenant_id == self.tenant_id,
                AiChunk.db_key == self.db_key,
                AiChunk.collection == _collection_value(collection),
            )
        )
        self.session.commit()
        deleted = result.rowcount or 0
        LOGGER.debug("Deleted %d chunks from collection %s", deleted, collection)
        return deleted

    def find_chunk_by_sql_qa_id(self, sql_qa_id: int) -> int | None:
        return self.session.scalars(
            select(AiChunk.id)
            .where(
                AiChunk.tenant_id == self.tenant_id,
                AiChunk.db_key == self.db_key,
                AiChunk.sql_qa_id == sql_qa_id,
            )
            .order_by(AiChunk.id)
        ).first()

    def find_sql_qa_id_by_chunk_id(self, chunk_id: int) -> int | None:
        chunk = self.get_chunk(chunk_id)
        return chunk.sql_qa_id if chunk is not None else None

    # ------------------------------------------------------------------ sql_qa
    def save_sql_qa(
        self,
        question: str,
        sql_canonical: str,
        *,
        sql_template: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> int:
        """Insert a canonical entry; an identical template in scope is reused instead."""

        template = " ".join(sql_template.split()) if sql_template else None
        if template:
            existing = self.session.scalars(
                self._scoped_sql_qa().where(SqlQa.sql_template == template)
            ).first()
            if existing is not None:
                LOGGER.info("SQL QA template already stored", extra={"sql_qa_id": existing.id})
                return existing.id

        entry = SqlQa(
            tenant_id=self.tenant_id,
            db_key=self.db_key,
            question=question,
            sql_canonical=sql_canonical,
            sql_template=template,
            parameters=parameters or None,
        )
        self.session.add(entry)
        self.session.commit()
        LOGGER.info("Inserted SQL QA %s", entry.id)
        return entry.id

    def update_sql_qa(self, sql_qa_id: int, **fields: Any) -> SqlQa:
        allowed = {"question", "sql_canonical", "sql_template", "parameters"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unsupported SQL QA fields: {', '.join(sorted(unknown))}")
        entry = self.get_sql_qa(sql_qa_id)
        if entry is None:
            raise LookupError(f"SQL QA {sql_qa_id} not found")
        for key, value in fields.items():
            setattr(entry, key, value)
        self.session.commit()
        return entry

    def get_sql_qa(self, sql_qa_id: int) -> SqlQa | None:
        return self.session.scalars(self._scoped_sql_qa().where(SqlQa.id == sql_qa_id)).first()

    def search_sql_qa(self, term: str = "", *, limit: int = 10) -> list[SqlQa]:
        """Case-insensitive substring match on the stored question, newest first."""

        stmt = self._scoped_sql_qa()
        if term:
            stmt = stmt.where(func.lower(SqlQa.question).contains(term.lower(), autoescape=True))
        stmt = stmt.order_by(SqlQa.created_at.desc(), SqlQa.id.desc()).limit(limit)
        return list(self.session.scalars(stmt))

    def delete_sql_qa(self, sql_qa_id: int) -> dict[str, int]:
        """Delete an entry together with every chunk linked to it."""

        linked = list(
            self.session.scalars(
                select(AiChunk.id).where(
                    AiChunk.tenant_id == self.tenant_id,
                    AiChunk.db_key == self.db_key,
                    AiChunk.sql_qa_id == sql_qa_id,
                )
            )
        )
        deleted_chunks = self.delete_chunks(linked)
        result = self.session.execute(
            delete(SqlQa).where(
                SqlQa.id == sql_qa_id,
                SqlQa.tenant_id == self.tenant_id,
                SqlQa.db_key == self.db_key,
            )
        )
        self.session.commit()
        return {"deleted_chunks": deleted_chunks, "deleted_sql_qa": result.rowcount or 0}

    # ------------------------------------------------------------------ listings
    def get_canonical_list(
        self, *, search: str | None = None, limit: int = 20, offset: int = 0
    ) -> dict[str, Any]:
        stmt = self._scoped_sql_qa()
        if search:
            stmt = stmt.where(func.lower(SqlQa.question).contains(search.lower(), autoescape=True))
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = self.session.scalars(
            stmt.order_by(SqlQa.created_at.desc(), SqlQa.id.desc()).limit(limit).offset(offset)
        )
        items = [
            {
                "id": row.id,
                "question": row.question,
                "sql_canonical": row.sql_canonical,
                "sql_template": row.sql_template,
                "parameters": row.parameters,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
            }
            for row in rows
        ]
        return {"items": items, "total": total, "limit": limit, "offset": offset}

    def get_chunks_list(
        self,
        *,
        search: str | None = None,
        collection: ChunkCollection | str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        stmt = self._scoped_chunks()
        if collection:
            stmt = stmt.where(AiChunk.collection == _collection_value(collection))
        if search:
            stmt = stmt.where(func.lower(AiChunk.content).contains(search.lower(), autoescape=True))
        total = self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = self.session.scalars(
            stmt.order_by(AiChunk.created_at.desc(), AiChunk.id.desc()).limit(limit).offset(offset)
        )
        items = [
            {
                "id": row.id,
                "collection": row.collection,
                "content": row.content,
                "sql_qa_id": row.sql_qa_id,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
            }
            for row in rows
        ]
        return {"items": items, "total": total, "limit": limit, "offset": offset}


__all__ = ["ChunkInput", "VectorSearchResult", "VectorStore", "cosine_scores"]
