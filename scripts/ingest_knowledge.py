#!/usr/bin/env python3
"""Embed the database schema and business knowledge into the AI vector store."""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app.core.config import get_settings
from app.core.logger import get_logger, init_logging, log_context, progress_manager, timeit
from app.db.session import session_scope
from app.models import Base
from app.text2sql.embeddings import create_embedding_client
from app.text2sql.knowledge import KnowledgeService
from app.text2sql.vector_store import VectorStore

logger = get_logger(__name__)

TARGETS = ("schema", "business", "narrative", "all")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("target", choices=TARGETS, help="Which knowledge to (re)ingest")
    parser.add_argument("--database-url", default=None, help="Override the configured SQLAlchemy URL")
    return parser.parse_args(argv)


async def ingest(knowledge: KnowledgeService, target: str) -> dict[str, int]:
    steps = {
        "schema": ("schema ingestion", knowledge.ingest_database_schema),
        "business": ("business ingestion", knowledge.ingest_business_knowledge),
        "narrative": ("narrative ingestion", knowledge.ingest_business_narrative),
    }
    selected = ("schema", "business", "narrative") if target == "all" else (target,)
    counts: dict[str, int] = {}
    for name in selected:
        label, step = steps[name]
        with progress_manager.spinner(label), timeit(label, logger=logger, unit="chunks") as timer:
            ids = await step()
            timer.set_total(len(ids))
        counts[name] = len(ids)
    return counts


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()
    embedder = create_embedding_client(settings.ai)

    with session_scope(args.database_url) as session:
        Base.metadata.create_all(bind=session.get_bind())
        store = VectorStore(
            session, embedder, tenant_id=settings.ai.tenant_id, db_key=settings.ai.db_key
        )
        counts = asyncio.run(ingest(KnowledgeService(store), args.target))

    for name, count in counts.items():
        logger.info("Ingested %s chunks into %s", count, name)


if __name__ == "__main__":
    init_logging(app_name="ingest-knowledge")
    log_context.bind(job="ingest_knowledge")
    main()
