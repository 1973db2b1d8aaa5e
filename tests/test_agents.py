import asyncio

import pytest

from app.text2sql.access import AccessDeniedError
from app.text2sql.agents import (
    ErrorHandler,
    OrchestratorAgent,
    QuestionExpansionAgent,
    ResponseGenerator,
    ResultValidatorAgent,
    SqlGenerationAgent,
    SqlGenerationError,
    SqlGenerationResult,
    SummaryAgent,
)
from app.text2sql.agents.error_handler import (
    AUTH_REQUIRED_MESSAGE,
    GENERIC_MESSAGE,
    SECURITY_MESSAGE,
    SQL_FAILURE_MESSAGE,
)
from app.text2sql.agents.orchestrator import (
    DEFAULT_GREETING_MESSAGE,
    DEFAULT_LOGIN_MESSAGE,
    parse_missing_params,
)
from app.text2sql.agents.question_expansion import clean_expanded_question
from app.text2sql.agents.result_validator import parse_validation
from app.text2sql.agents.sql_generation import clean_sql
from app.text2sql.agents.summary import clean_title
from app.text2sql.llm_providers import LLMProviderError
from app.text2sql.session_view import SessionView

from conftest import FakeProvider

ORCHESTRATOR_REPLY = """REQUEST_TYPE: QUERY
MODE_HINT: LIST
ENTITY_HINT: room
FILTERS_HINT: [quận="gò vấp"]
TABLES_HINT: [rooms, buildings]
RELATIONSHIPS_HINT: none
INTENT_ACTION: search
MISSING_PARAMS: none
RESPONSE: [GUEST] Mình tìm ngay nhé!"""


def _view(**kwargs) -> SessionView:
    return SessionView(session_id="s-1", **kwargs)


# ---------------------------------------------------------------- session view
def test_session_view_history_and_page_context():
    view = _view(
        summary="tóm tắt",
        messages=[
            {"role": "user", "content": "a"},
            {"role": "system", "content": "[CONTEXT]\nEntity: room\nIdentifier: r-1"},
            {"role": "assistant", "content": "b", "metadata": {"sql": "SELECT 1"}},
        ],
    )

    assert view.history_text(5) == "Tóm tắt trước đó: tóm tắt\nNgười dùng: a\nAI: b"
    assert view.page_context() == {"entity": "room", "identifier": "r-1", "type": ""}
    assert view.last_assistant_metadata() == {"sql": "SELECT 1"}
    assert view.is_first_message


# ---------------------------------------------------------------- orchestrator
def test_orchestrator_parses_tagged_reply():
    agent = OrchestratorAgent(FakeProvider())

    result = agent.parse(ORCHESTRATOR_REPLY)

    assert result.request_type == "QUERY"
    assert result.ready_for_sql
    assert result.mode_hint == "LIST"
    assert result.entity_hint == "room"
    assert result.filters_hint == 'quận="gò vấp"'
    assert result.tables_hint == "rooms, buildings"
    assert result.relationships_hint == ""
    assert result.intent_action == "search"
    assert result.message == "Mình tìm ngay nhé!"


def test_orchestrator_missing_params_block_sql():
    agent = OrchestratorAgent(FakeProvider())

    result = agent.parse(
        "REQUEST_TYPE: QUERY\nMISSING_PARAMS: location:Cần biết khu vực:Quận 1,Gò Vấp\n"
        "RESPONSE: Bạn muốn tìm ở đâu?"
    )

    assert not result.ready_for_sql
    assert result.missing_params[0].name == "location"
    assert result.missing_params[0].examples == ["Quận 1", "Gò Vấp"]


def test_parse_missing_params_skips_none_and_role_tags():
    assert parse_missing_params("none") == []
    params = parse_missing_params("[TENANT] budget:Ngân sách|null")
    assert [(p.name, p.reason) for p in params] == [("budget", "Ngân sách")]


def test_personal_question_without_login_asks_to_sign_in():
    agent = OrchestratorAgent(FakeProvider())

    result = agent.parse("REQUEST_TYPE: QUERY\nINTENT_ACTION: own\nRESPONSE: ok", user_id=None)

    assert result.request_type == "CLARIFICATION"
    assert result.message == DEFAULT_LOGIN_MESSAGE
    assert not result.ready_for_sql


def test_greeting_without_response_uses_default():
    result = OrchestratorAgent(FakeProvider()).parse("REQUEST_TYPE: GREETING")

    assert result.request_type == "GREETING"
    assert result.message == DEFAULT_GREETING_MESSAGE


def test_orchestrator_falls_back_when_llm_fails():
    provider = FakeProvider([LLMProviderError("down"), LLMProviderError("down")])
    agent = OrchestratorAgent(provider)

    data = asyncio.run(agent.process("tìm phòng ở quận 1", _view()))
    chat = asyncio.run(agent.process("hôm nay trời đẹp", _view()))

    assert (data.request_type, data.ready_for_sql) == ("QUERY", True)
    assert (chat.request_type, chat.ready_for_sql) == ("GENERAL_CHAT", False)


def test_orchestrator_prompt_carries_page_context():
    provider = FakeProvider([ORCHESTRATOR_REPLY])
    view = _view(messages=[{"role": "system", "content": "[CONTEXT]\nEntity: room\nIdentifier: r-1"}])

    result = asyncio.run(OrchestratorAgent(provider).process("phòng này giá bao nhiêu", view))

    assert "Identifier: r-1" in provider.prompts[0]
    assert result.page_context["identifier"] == "r-1"


# ---------------------------------------------------------------- question expansion
def test_clean_expanded_question():
    assert clean_expanded_question('"Tìm phòng quận 1 dưới 4 triệu."\nGiải thích') == (
        "Tìm phòng quận 1 dưới 4 triệu"
    )
    assert clean_expanded_question("") == ""


def test_expansion_keeps_original_on_failure_or_empty_reply():
    agent = QuestionExpansionAgent(FakeProvider([LLMProviderError("down"), "  "]))

    assert asyncio.run(agent.expand_question("rẻ hơn", "SELECT 1")) == "rẻ hơn"
    assert asyncio.run(agent.expand_question("rẻ hơn", "SELECT 1")) == "rẻ hơn"


def test_expansion_returns_rewritten_question():
    provider = FakeProvider(["Tìm phòng Gò Vấp dưới 2 triệu"])

    expanded = asyncio.run(
        QuestionExpansionAgent(provider).expand_question(
            "rẻ hơn", "SELECT ... < 3000000", "Tìm phòng Gò Vấp dưới 3 triệu"
        )
    )

    assert expanded == "Tìm phòng Gò Vấp dưới 2 triệu"
    assert "Tìm phòng Gò Vấp dưới 3 triệu" in provider.prompts[0]


# ---------------------------------------------------------------- SQL generation
def test_clean_sql():
    assert clean_sql("```sql\nSELECT 1\n```") == "SELECT 1;"
    assert clean_sql("SQL: SELECT id FROM rooms;") == "SELECT id FROM rooms;"
    assert clean_sql("   ") == ""


def test_sql_generation_retries_after_rejected_statement(db):
    provider = FakeProvider(
        ["DROP TABLE rooms", "```sql\nSELECT r.id, r.name FROM rooms r ORDER BY r.id\n```"]
    )
    agent = SqlGenerationAgent(provider, max_attempts=3, retry_delay=0)

    result = asyncio.run(agent.process("tìm phòng trọ ở Gò Vấp", None, db))

    assert result.attempts == 2
    assert result.sql == "SELECT r.id, r.name FROM rooms r ORDER BY r.id LIMIT 50;"
    assert result.results == [{"id": "r-1", "name": "Phòng 101"}, {"id": "r-2", "name": "Phòng 102"}]
    assert "COMPLETE DATABASE SCHEMA" in provider.prompts[0]
    assert "Query must be SELECT only" in provider.prompts[1]


def test_sql_generation_feeds_back_execution_errors(db):
    provider = FakeProvider(
        [
            "SELECT r.price FROM rooms r LIMIT 5",
            "SELECT r.name, p.base_price_monthly FROM rooms r JOIN room_pricing p ON p.room_id = r.id ORDER BY p.base_price_monthly LIMIT 5",
        ]
    )
    agent = SqlGenerationAgent(provider, max_attempts=2, retry_delay=0)

    result = asyncio.run(
        agent.process(
            "phòng rẻ nhất", None, db, rag_context="RELEVANT SCHEMA CONTEXT (from vector search):\n- rooms\n"
        )
    )

    assert result.results[0] == {"name": "Phòng 101", "base_price_monthly": 2500000}
    assert "COMPLETE DATABASE SCHEMA" not in provider.prompts[0]
    assert "no such column" in provider.prompts[1]


def test_sql_generation_gives_up_after_budget(db):
    provider = FakeProvider(["SELECT s.id FROM secrets s"] * 2)
    agent = SqlGenerationAgent(provider, max_attempts=2, retry_delay=0)

    with pytest.raises(SqlGenerationError, match="after 2 attempts"):
        asyncio.run(agent.process("tìm phòng", None, db))


def test_anonymous_sql_may_not_touch_personal_tables(db):
    agent = SqlGenerationAgent(FakeProvider(["SELECT b.id FROM bills b LIMIT 5"]), max_attempts=1, retry_delay=0)

    with pytest.raises(SqlGenerationError) as excinfo:
        asyncio.run(agent.process("tìm phòng", None, db))

    assert "Security violation" in str(excinfo.value)
    assert ErrorHandler.generate_error_response(str(excinfo.value)) == SECURITY_MESSAGE


def test_own_query_must_filter_by_current_user(db):
    provider = FakeProvider(
        [
            "SELECT b.id, b.total_amount FROM bills b LIMIT 5",
            "SELECT b.id, b.total_amount FROM bills b WHERE b.tenant_id = 'tenant-1' LIMIT 5",
        ]
    )
    agent = SqlGenerationAgent(provider, max_attempts=2, retry_delay=0)

    result = asyncio.run(
        agent.process("hóa đơn của tôi", None, db, user_id="tenant-1", intent_action="own")
    )

    assert result.attempts == 2
    assert result.user_role == "TENANT"
    assert result.results == [{"id": "bl-1", "total_amount": 2700000}]
    assert "rentals.tenant_id = 'tenant-1'" in provider.prompts[0]


def test_statistics_access_is_checked_before_calling_the_model(db):
    provider = FakeProvider()
    agent = SqlGenerationAgent(provider, max_attempts=1, retry_delay=0)

    with pytest.raises(AccessDeniedError, match="Authentication required"):
        asyncio.run(agent.process("thống kê doanh thu", None, db))
    with pytest.raises(AccessDeniedError, match="Security violation"):
        asyncio.run(agent.process("thống kê doanh thu", None, db, user_id="tenant-1"))
    assert provider.prompts == []


# ---------------------------------------------------------------- validation
def test_parse_validation_error():
    result = parse_validation(
        "IS_VALID: false\nSEVERITY: ERROR\nVIOLATIONS: [wrong entity, missing filter]\n"
        "REASON: trả về hóa đơn\nEVALUATION: sai"
    )

    assert not result.is_valid
    assert result.violations == ["wrong entity", "missing filter"]
    assert result.feedback == "Result validation failed: trả về hóa đơn (wrong entity, missing filter)"


def test_parse_validation_warning_is_accepted():
    result = parse_validation("IS_VALID: true\nSEVERITY: WARN\nVIOLATIONS: none\nREASON: OK")

    assert result.is_valid
    assert result.severity == "WARN"
    assert result.violations == []


def test_error_severity_overrides_valid_flag():
    assert not parse_validation("IS_VALID: true\nSEVERITY: ERROR").is_valid


def test_validator_fails_closed_on_llm_error():
    agent = ResultValidatorAgent(FakeProvider([LLMProviderError("timeout")]))

    result = asyncio.run(agent.validate("tìm phòng", "SELECT 1", []))

    assert not result.is_valid
    assert result.severity == "ERROR"
    assert "timeout" in result.reason


# ---------------------------------------------------------------- summary
def test_clean_title_limits():
    assert clean_title('"Tìm phòng trọ giá rẻ tại quận Gò Vấp của."') == "Tìm phòng trọ giá rẻ tại quận Gò Vấp"
    assert len(clean_title(" ".join(f"w{i}" for i in range(30))).split()) == 15


def test_title_falls_back_to_first_message():
    agent = SummaryAgent(FakeProvider([LLMProviderError("down")]))

    title = asyncio.run(agent.generate_title("Tìm phòng ở Quận 1?", "Có 3 phòng"))

    assert title == "Tìm phòng ở Quận 1"


def test_rolling_summary_is_capped():
    agent = SummaryAgent(FakeProvider([" ".join(["từ"] * 250)]))

    summary = asyncio.run(
        agent.generate_rolling_summary("cũ", [{"role": "user", "content": "tìm phòng"}])
    )

    assert len(summary.split()) == 200
    assert asyncio.run(agent.generate_rolling_summary("cũ", [])) == "cũ"


# ---------------------------------------------------------------- errors
@pytest.mark.parametrize(
    "error, expected",
    [
        ("Authentication required for statistics", AUTH_REQUIRED_MESSAGE),
        ("Security violation: Only landlords can access statistics", SECURITY_MESSAGE),
        ("Failed to generate valid SQL after 5 attempts", SQL_FAILURE_MESSAGE),
        ("boom", GENERIC_MESSAGE),
    ],
)
def test_error_handler_messages(error, expected):
    assert ErrorHandler.generate_error_response(error) == expected


# ---------------------------------------------------------------- response generation
ROOM_ROWS = [
    {"id": "r-1", "name": "Phòng 101", "entity": "room"},
    {"id": "r-2", "name": "Phòng 102", "entity": "room"},
]


def test_list_rows_become_list_payload():
    provider = FakeProvider(["Có 2 phòng phù hợp"])
    responder = ResponseGenerator(provider)

    envelope = asyncio.run(
        responder.generate_final_response(
            "Mình tìm ngay nhé!",
            SqlGenerationResult(sql="SELECT 1", results=ROOM_ROWS, count=2),
            _view(),
            "LIST",
        )
    )

    assert envelope.message == "Có 2 phòng phù hợp"
    assert envelope.payload.mode == "LIST"
    assert [item.path for item in envelope.payload.list.items] == ["/rooms/r-1", "/rooms/r-2"]
    assert envelope.meta.token_usage["total_tokens"] == 15


def test_chart_mode_builds_chart_payload():
    responder = ResponseGenerator(FakeProvider())
    rows = [{"district_name": "Gò Vấp", "total": 4}, {"district_name": "Quận 1", "total": 2}]

    payload = asyncio.run(responder.build_payload(rows, "CHART", "số phòng theo quận"))

    assert payload.mode == "CHART"
    assert payload.chart.url.startswith("https://quickchart.io/chart?")


def test_table_labels_unknown_columns_with_llm():
    provider = FakeProvider(['{"weird_col": "Cột lạ"}'])
    responder = ResponseGenerator(provider)

    payload = asyncio.run(responder.build_payload([{"id": 1, "weird_col": "x"}], "TABLE"))

    labels = {column.key: column.label for column in payload.table.columns}
    assert labels == {"id": "ID", "weird_col": "Cột lạ"}
    assert provider.calls[0]["json_mode"] is True


def test_empty_results_use_fallback_message():
    responder = ResponseGenerator(FakeProvider([LLMProviderError("down")]))

    envelope = asyncio.run(
        responder.generate_final_response(
            "ok", SqlGenerationResult(sql="SELECT 1", results=[], count=0), _view()
        )
    )

    assert envelope.payload is None
    assert "không thấy kết quả" in envelope.message


def test_insight_mode_has_no_structured_payload():
    responder = ResponseGenerator(FakeProvider(["**20m²**, giá hợp lý"]))

    envelope = asyncio.run(
        responder.generate_final_response(
            "ok", SqlGenerationResult(sql="SELECT 1", results=ROOM_ROWS[:1], count=1), _view(), "INSIGHT"
        )
    )

    assert envelope.payload.mode == "INSIGHT"
    assert envelope.message == "**20m²**, giá hợp lý"
