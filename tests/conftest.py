"""Shared fixtures: in-memory database, scripted LLM provider and fake embeddings."""
from __future__ import annotations

import re
import sys
import zlib
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.models import Base
from app.text2sql.embeddings import EmbeddingClient
from app.text2sql.llm_providers import LLMProvider
from app.text2sql.vector_store import VectorStore

MARKETPLACE_DDL = [
    """
    CREATE TABLE users (
        id TEXT PRIMARY KEY,
        email TEXT,
        first_name TEXT,
        last_name TEXT,
        role TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE districts (
        id INTEGER PRIMARY KEY,
        district_name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE buildings (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        owner_id TEXT REFERENCES users(id),
        district_id INTEGER REFERENCES districts(id)
    )
    """,
    """
    CREATE TABLE rooms (
        id TEXT PRIMARY KEY,
        building_id TEXT REFERENCES buildings(id),
        name TEXT NOT NULL,
        area_sqm NUMERIC,
        is_active BOOLEAN DEFAULT 1
    )
    """,
    """
    CREATE TABLE room_pricing (
        id INTEGER PRIMARY KEY,
        room_id TEXT REFERENCES rooms(id),
        base_price_monthly NUMERIC NOT NULL
    )
    """,
    """
    CREATE TABLE rentals (
        id TEXT PRIMARY KEY,
        tenant_id TEXT REFERENCES users(id),
        owner_id TEXT REFERENCES users(id),
        monthly_rent NUMERIC,
        status TEXT
    )
    """,
    """
    CREATE TABLE bills (
        id TEXT PRIMARY KEY,
        rental_id TEXT REFERENCES rentals(id),
        tenant_id TEXT,
        owner_id TEXT,
        total_amount NUMERIC,
        status TEXT
    )
    """,
    """
    CREATE TABLE amenities (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        name_en TEXT NOT NULL,
        category TEXT,
        description TEXT,
        is_active BOOLEAN DEFAULT 1,
        sort_order INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE cost_type_templates (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        name_en TEXT NOT NULL,
        category TEXT,
        default_unit TEXT,
        description TEXT,
        is_active BOOLEAN DEFAULT 1,
        sort_order INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE room_rule_templates (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        name_en TEXT NOT NULL,
        category TEXT,
        rule_type TEXT,
        description TEXT,
        is_active BOOLEAN DEFAULT 1,
        sort_order INTEGER DEFAULT 0
    )
    """,
]

SEED_SQL = [
    "INSERT INTO users (id, email, first_name, role) VALUES ('landlord-1', 'll@example.com', 'Lan', 'landlord')",
    "INSERT INTO users (id, email, first_name, role) VALUES ('tenant-1', 'tn@example.com', 'Tuan', 'tenant')",
    "INSERT INTO districts (id, district_name) VALUES (1, 'Gò Vấp'), (2, 'Quận 1')",
    "INSERT INTO buildings (id, name, owner_id, district_id) VALUES ('b-1', 'Nhà trọ An Phú', 'landlord-1', 1)",
    "INSERT INTO rooms (id, building_id, name, area_sqm) VALUES ('r-1', 'b-1', 'Phòng 101', 20), ('r-2', 'b-1', 'Phòng 102', 25)",
    "INSERT INTO room_pricing (id, room_id, base_price_monthly) VALUES (1, 'r-1', 2500000), (2, 'r-2', 3200000)",
    "INSERT INTO rentals (id, tenant_id, owner_id, monthly_rent, status) VALUES ('rt-1', 'tenant-1', 'landlord-1', 2500000, 'active')",
    "INSERT INTO bills (id, rental_id, tenant_id, owner_id, total_amount, status) VALUES ('bl-1', 'rt-1', 'tenant-1', 'landlord-1', 2700000, 'pending')",
    "INSERT INTO amenities (id, name, name_en, category) VALUES ('a-1', 'Wifi', 'wifi', 'basic')",
    "INSERT INTO cost_type_templates (id, name, name_en, category, default_unit) VALUES ('c-1', 'Tiền điện', 'electricity', 'utility', 'kWh')",
    "INSERT INTO room_rule_templates (id, name, name_en, category, rule_type) VALUES ('rr-1', 'Không hút thuốc', 'no_smoking', 'safety', 'forbidden')",
]


def create_test_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    with engine.begin() as connection:
        for statement in MARKETPLACE_DDL + SEED_SQL:
            connection.execute(text(statement))
    return engine


@pytest.fixture()
def engine():
    engine = create_test_engine()
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class FakeProvider(LLMProvider):
    """Replays scripted responses; a callable script receives the prompt.

    Exceptions in the script are raised instead of returned.
    """

    name = "fake"

    def __init__(self, script: Iterable[Any] | Callable[[str], Any] = ()):
        self._script = script if callable(script) else list(script)
        self.prompts: list[str] = []
        self.calls: list[dict[str, Any]] = []

    async def query(
        self,
        system_prompt,
        user_prompt,
        conversation_history=None,
        json_mode=False,
        temperature=None,
        max_tokens=None,
    ):
        self.prompts.append(user_prompt)
        self.calls.append({"json_mode": json_mode, "temperature": temperature, "max_tokens": max_tokens})
        if callable(self._script):
            reply = self._script(user_prompt)
        elif self._script:
            reply = self._script.pop(0)
        else:
            reply = ""
        if isinstance(reply, Exception):
            raise reply
        return {
            "content": reply,
            "model": "fake-model",
            "provider": self.name,
            "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        }


STAGE_MARKERS = {
    "orchestrator": "Orchestrator Agent (Nhà điều phối)",
    "expansion": "Câu hỏi kết quả (canonical question)",
    "sql": "CHECKLIST TRƯỚC KHI TẠO SQL",
    "validation": "Result Validator",
    "labels": "Dịch các tên cột",
    "insight": "Phân tích CHI TIẾT",
    "final": "CHỈ TRẢ VỀ NỘI DUNG TIN NHẮN",
    "title": "tạo tiêu đề",
    "summary": "chuyên tóm tắt",
}


def stage_of(prompt: str) -> str:
    for stage, marker in STAGE_MARKERS.items():
        if marker in prompt:
            return stage
    return "unknown"


class StagedProvider(FakeProvider):
    """Answers by pipeline stage; a list value is consumed one reply per call."""

    def __init__(self, replies: dict[str, Any]):
        self.replies = {key: list(value) if isinstance(value, list) else value for key, value in replies.items()}
        self.stages: list[str] = []
        super().__init__(self._reply)

    def _reply(self, prompt: str) -> Any:
        stage = stage_of(prompt)
        self.stages.append(stage)
        reply = self.replies.get(stage, "")
        if isinstance(reply, list):
            return reply.pop(0) if reply else ""
        return reply


@pytest.fixture()
def staged_provider() -> Callable[..., StagedProvider]:
    def _build(**replies: Any) -> StagedProvider:
        return StagedProvider(replies)

    return _build


class FakeEmbeddingClient(EmbeddingClient):
    """Bag-of-words hashing; identical texts embed identically, shared words raise similarity."""

    name = "fake"

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.calls = 0

    def _embed(self, value: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in re.findall(r"\w+", value.lower()):
            vector[zlib.crc32(token.encode("utf-8")) % self.dimension] += 1.0
        return vector

    async def embed_documents(self, texts):
        self.calls += 1
        return [self._embed(value) for value in texts]


@pytest.fixture()
def embedder() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture()
def store(db, embedder) -> VectorStore:
    return VectorStore(db, embedder, tenant_id="trustay", db_key="test")
