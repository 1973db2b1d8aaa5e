from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app.core.config import AiSettings, get_settings
from app.core.security import AuthenticatedUser, get_security_provider
from app.main import create_app
from app.models.chat import AiChatSession
from app.text2sql.pipeline import Text2SqlPipeline
from app.text2sql.router import get_current_user

GREETING = "REQUEST_TYPE: GREETING\nRESPONSE: Xin chào bạn!"


@pytest.fixture()
def configured_env(monkeypatch):
    monkeypatch.setenv("LOG_DIR", "")
    monkeypatch.setenv("JWT_SECRET_KEY", "test-secret")
    monkeypatch.setenv("AUTH_ENABLED", "1")
    get_settings.cache_clear()
    get_security_provider.cache_clear()
    yield
    get_settings.cache_clear()
    get_security_provider.cache_clear()


@pytest.fixture()
def provider(staged_provider):
    return staged_provider(orchestrator=GREETING, title="Chào hỏi")


@pytest.fixture()
def client(configured_env, session_factory, provider, embedder):
    settings = AiSettings(sql_max_attempts=1, sql_retry_delay_seconds=0, db_key="test")
    pipeline = Text2SqlPipeline(provider, embedder=embedder, settings=settings)
    app = create_app(session_factory=session_factory, pipeline=pipeline)
    with TestClient(app) as test_client:
        yield test_client


def _auth(user_id: str, role: str) -> dict[str, str]:
    token = get_security_provider().create_access_token(AuthenticatedUser(user_id=user_id, role=role))
    return {"Authorization": f"Bearer {token}"}


def test_health(client):
    response = client.get("/ai/health")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "healthy"
    assert data["pipeline_initialized"]
    assert data["knowledge_enabled"]


def test_anonymous_conversation_flow(client):
    created = client.post("/ai/conversations", json={"initial_message": "xin chào"})

    assert created.status_code == 200
    body = created.json()
    assert body["success"] is True
    conversation = body["data"]["conversation"]
    assert conversation["title"] == "Chào hỏi"
    assert conversation["message_count"] == 2
    assert body["data"]["response"]["kind"] == "CONTROL"

    reply = client.post(
        f"/ai/conversations/{conversation['id']}/messages",
        json={"message": "bạn là ai", "page_context": {"entity": "room", "identifier": "r-1"}},
    )
    assert reply.status_code == 200
    assert reply.json()["data"]["message"] == "Xin chào bạn!"

    messages = client.get(f"/ai/conversations/{conversation['id']}/messages").json()["data"]
    assert [m["role"] for m in messages] == ["user", "assistant", "user", "system", "assistant"]
    assert messages[1]["metadata"]["kind"] == "CONTROL"


def test_anonymous_listing_is_empty(client):
    client.post("/ai/conversations", json={})

    assert client.get("/ai/conversations").json()["data"] == []


def test_conversations_are_private_to_their_owner(client):
    owner = _auth("tenant-1", "tenant")
    created = client.post("/ai/conversations", json={"title": "Hóa đơn"}, headers=owner).json()["data"]
    conversation_id = created["conversation"]["id"]

    listed = client.get("/ai/conversations", headers=owner).json()["data"]
    assert [c["id"] for c in listed] == [conversation_id]

    assert client.get(f"/ai/conversations/{conversation_id}").status_code == 403
    assert (
        client.post(
            f"/ai/conversations/{conversation_id}/messages",
            json={"message": "xin chào"},
            headers=_auth("landlord-1", "landlord"),
        ).status_code
        == 403
    )
    assert client.get(f"/ai/conversations/{conversation_id}", headers=owner).status_code == 200


def test_missing_conversation_returns_404(client):
    assert client.get("/ai/conversations/nope").status_code == 404
    assert client.post("/ai/conversations/nope/messages", json={"message": "hi"}).status_code == 404


def test_empty_message_is_rejected(client):
    conversation_id = client.post("/ai/conversations", json={}).json()["data"]["conversation"]["id"]

    assert client.post(f"/ai/conversations/{conversation_id}/messages", json={"message": ""}).status_code == 422


def test_title_clear_and_delete(client):
    conversation_id = client.post(
        "/ai/conversations", json={"initial_message": "xin chào"}
    ).json()["data"]["conversation"]["id"]

    renamed = client.patch(f"/ai/conversations/{conversation_id}/title", json={"title": "Phòng Gò Vấp"})
    assert renamed.json()["data"]["title"] == "Phòng Gò Vấp"

    cleared = client.post(f"/ai/conversations/{conversation_id}/clear").json()["data"]
    assert cleared == {"id": conversation_id, "deleted_messages": 2}
    assert client.get(f"/ai/conversations/{conversation_id}/messages").json()["data"] == []

    deleted = client.delete(f"/ai/conversations/{conversation_id}").json()["data"]
    assert deleted == {"id": conversation_id, "deleted": True}
    assert client.get(f"/ai/conversations/{conversation_id}").status_code == 404


def test_knowledge_routes_require_admin(client):
    assert client.get("/ai/knowledge/canonical").status_code == 401
    assert client.get("/ai/knowledge/canonical", headers=_auth("tenant-1", "tenant")).status_code == 403


def test_invalid_token_is_treated_as_anonymous(client):
    response = client.get("/ai/conversations", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 200
    assert response.json()["data"] == []


def test_admin_can_teach_list_and_delete_knowledge(client):
    admin = _auth("admin-1", "admin")

    taught = client.post(
        "/ai/knowledge/teach",
        json={"question": "phòng rẻ nhất", "sql": "SELECT r.name FROM rooms r LIMIT 1"},
        headers=admin,
    )
    assert taught.status_code == 200
    result = taught.json()["data"]
    assert result["is_update"] is False

    canonical = client.get("/ai/knowledge/canonical", headers=admin).json()["data"]
    assert canonical["total"] == 1
    assert canonical["items"][0]["question"] == "phòng rẻ nhất"

    chunks = client.get("/ai/knowledge/chunks", params={"collection": "qa"}, headers=admin).json()["data"]
    assert chunks["items"][0]["sql_qa_id"] == result["sql_qa_id"]
    assert client.get("/ai/knowledge/chunks", params={"collection": "bogus"}, headers=admin).status_code == 400

    missing = client.post(
        "/ai/knowledge/teach",
        json={"question": "q", "sql": "SELECT 1", "id": 999},
        headers=admin,
    )
    assert missing.status_code == 404

    assert client.delete("/ai/knowledge/everything/1", headers=admin).status_code == 400
    removed = client.delete(f"/ai/knowledge/sql_qa/{result['sql_qa_id']}", headers=admin).json()["data"]
    assert removed["deleted_chunks"] == 1


def test_admin_can_ingest_business_knowledge(client):
    response = client.post(
        "/ai/knowledge/ingest",
        json={"schema": False, "business": True, "narrative": True},
        headers=_auth("admin-1", "admin"),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["business_chunks"] >= 1
    assert data["narrative_chunks"] >= 5
    assert "schema_chunks" not in data


def test_admin_check_uses_the_injected_user_resolver(client):
    client.app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser("admin-1", role="admin")
    try:
        assert client.get("/ai/knowledge/canonical").status_code == 200
        assert client.get("/ai/knowledge/chunks").status_code == 200
    finally:
        client.app.dependency_overrides.clear()

    client.app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser("tenant-1", role="tenant")
    try:
        assert client.get("/ai/knowledge/canonical").status_code == 403
    finally:
        client.app.dependency_overrides.clear()


def test_canonical_and_chunk_lookups(client):
    admin = _auth("admin-1", "admin")
    taught = client.post(
        "/ai/knowledge/teach",
        json={"question": "phòng có máy lạnh", "sql": "SELECT r.id FROM rooms r"},
        headers=admin,
    ).json()["data"]

    by_canonical = client.get(f"/ai/knowledge/canonical/{taught['sql_qa_id']}/chunk", headers=admin)
    by_chunk = client.get(f"/ai/knowledge/chunk/{taught['chunk_id']}/canonical", headers=admin)

    assert by_canonical.json()["data"] == {"sql_qa_id": taught["sql_qa_id"], "chunk_id": taught["chunk_id"]}
    assert by_chunk.json()["data"] == {"chunk_id": taught["chunk_id"], "sql_qa_id": taught["sql_qa_id"]}
    assert client.get("/ai/knowledge/canonical/999/chunk", headers=admin).status_code == 404
    assert client.get("/ai/knowledge/chunk/999/canonical", headers=admin).status_code == 404


def test_teach_json_collects_errors_and_honours_fail_fast(client):
    admin = _auth("admin-1", "admin")
    items = [
        {"question": "phòng ở quận 1", "sql": "SELECT r.id FROM rooms r WHERE r.id = 'r-1'"},
        {"question": "sửa câu cũ", "sql": "SELECT 1", "id": 999},
        {"question": "hóa đơn chưa thanh toán", "sql": "SELECT b.id FROM bills b"},
    ]

    batch = client.post("/ai/knowledge/teach-json", json={"items": items}, headers=admin).json()["data"]

    assert batch["success"] is True
    assert batch["count"] == 3
    assert batch["items"][0]["is_update"] is False
    assert "999" in batch["items"][1]["error"]
    assert batch["items"][2]["sql_qa_id"] != batch["items"][0]["sql_qa_id"]

    stopped = client.post(
        "/ai/knowledge/teach-json",
        json={"items": items[1:], "fail_fast": True},
        headers=admin,
    ).json()["data"]
    assert stopped["success"] is False
    assert [item["question"] for item in stopped["items"]] == ["sửa câu cũ"]


def test_confirm_golden_qa_and_export(client):
    admin = _auth("admin-1", "admin")
    confirmed = client.post(
        "/ai/knowledge/confirm-golden-qa",
        json={"question": "phòng ở Gò Vấp", "sql": "SELECT r.id FROM rooms r WHERE r.district_name ILIKE '%Gò Vấp%'"},
        headers=admin,
    ).json()["data"]
    assert confirmed["sql_qa_id"] > 0
    assert confirmed["chunk_id"] > 0

    exported = client.get("/ai/knowledge/export-golden-data", headers=admin).json()["data"]
    assert exported["format"] == "json"
    assert exported["total"] == exported["exported"] == 1
    assert exported["data"][0]["parameters"] == {"district": "Gò Vấp"}

    csv_response = client.get(
        "/ai/knowledge/export-golden-data", params={"format": "csv"}, headers=admin
    )
    assert csv_response.status_code == 200
    assert csv_response.headers["content-type"].startswith("text/csv")
    assert "attachment; filename=\"golden-data-" in csv_response.headers["content-disposition"]
    lines = csv_response.text.splitlines()
    assert lines[0] == "\ufeffid,question,sql,parameters,created_at"
    assert lines[1].startswith(f"{confirmed['sql_qa_id']},phòng ở Gò Vấp,")
    assert client.get(
        "/ai/knowledge/export-golden-data", params={"format": "xml"}, headers=admin
    ).status_code == 422


def test_re_embed_schema_refreshes_schema_and_reference_data(client):
    admin = _auth("admin-1", "admin")

    first = client.post("/ai/knowledge/re-embed-schema", headers=admin).json()["data"]
    second = client.post("/ai/knowledge/re-embed-schema", headers=admin).json()["data"]

    assert first["schema_chunks"] >= 1
    assert first["reference_data_chunks"] >= 1
    assert second == first
    schema = client.get("/ai/knowledge/chunks", params={"collection": "schema", "limit": 200}, headers=admin)
    assert schema.json()["data"]["total"] == second["schema_chunks"]


def test_creating_a_conversation_purges_idle_anonymous_ones(client, session_factory):
    stale_id = client.post("/ai/conversations", json={}).json()["data"]["conversation"]["id"]
    with session_factory() as db:
        stale = db.get(AiChatSession, stale_id)
        stale.created_at = datetime.now(timezone.utc) - timedelta(hours=1)
        db.commit()

    client.post("/ai/conversations", json={})

    assert client.get(f"/ai/conversations/{stale_id}").status_code == 404
