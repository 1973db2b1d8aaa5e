from datetime import date
from decimal import Decimal
from urllib.parse import unquote

from app.text2sql.chart_generator import ChartGenerator
from app.text2sql.data_utils import (
    build_entity_path,
    infer_columns,
    is_list_like,
    normalize_rows,
    select_important_columns,
    to_label,
    to_list_item,
    translate_column_name,
)
from app.text2sql.response_parser import extract_json_object, parse_response


def test_is_list_like_requires_title_and_link_or_entity():
    assert is_list_like([{"name": "Phòng 101", "id": "r-1", "entity": "room"}])
    assert is_list_like([{"title": "Bài đăng", "url": "https://x"}])
    assert not is_list_like([{"name": "Phòng 101", "price": 10}])
    assert not is_list_like([])


def test_to_list_item_builds_entity_path():
    item = to_list_item({"id": "r-1", "name": "Phòng 101", "entity": "room", "image_url": "http://img"})

    assert item.path == "/rooms/r-1"
    assert item.thumbnail_url == "http://img"
    assert item.title == "Phòng 101"
    assert build_entity_path("room_seeking_post", "p-9") == "/room-seeking-posts/p-9"


def test_infer_columns_types_and_labels():
    rows = [
        {
            "base_price_monthly": Decimal("2500000"),
            "created_at": date(2024, 1, 2),
            "is_active": True,
            "image_url": "http://img",
            "name": "Phòng 101",
        }
    ]

    columns = {c.key: c for c in infer_columns(rows)}

    assert columns["base_price_monthly"].type == "number"
    assert columns["base_price_monthly"].label == translate_column_name("base_price_monthly")
    assert columns["created_at"].type == "date"
    assert columns["is_active"].type == "boolean"
    assert columns["image_url"].type == "url"
    assert columns["name"].type == "string"

    normalized = normalize_rows(rows, list(columns.values()))
    assert normalized[0]["base_price_monthly"] == 2500000.0
    assert normalized[0]["created_at"] == "2024-01-02"


def test_select_important_columns_prioritises_and_drops_empty():
    rows = [{"zeta": "z", "empty": None, "id": 1, "name": "A", "nested": {"a": 1}}]

    keys = [c.key for c in select_important_columns(infer_columns(rows), rows)]

    assert keys == ["id", "name", "zeta"]


def test_to_label():
    assert to_label("base_price_monthly") == "Base price monthly"
    assert to_label("createdAt") == "Created At"


def test_chart_requires_numeric_and_label():
    generator = ChartGenerator()

    assert generator.try_build_chart([{"name": "A", "city": "B"}]) is None
    assert generator.try_build_chart([]) is None


def test_chart_sorts_translates_and_sizes():
    rows = [
        {"gender": "male", "count": 3},
        {"gender": None, "count": 9},
        {"gender": "female", "count": 5},
    ]

    chart = ChartGenerator().try_build_chart(rows, query="biểu đồ tròn tỷ lệ giới tính")

    assert chart is not None
    assert chart.type == "pie"
    assert (chart.width, chart.height) == (600, 600)
    decoded = unquote(chart.url)
    assert decoded.index("Không xác định") < decoded.index("Nữ") < decoded.index("Nam")


def test_bar_chart_keeps_top_ten():
    rows = [{"district": f"Quận {i}", "total": i} for i in range(1, 16)]

    chart = ChartGenerator().try_build_chart(rows, query="so sánh cột theo quận")

    assert chart.type == "bar"
    assert (chart.width, chart.height) == (800, 400)
    decoded = unquote(chart.url)
    assert "Quận 15" in decoded
    assert "Quận 5\"" not in decoded


def test_parse_response_json_envelope_in_fence():
    raw = '```json\n{"message": "Có 2 phòng", "payload": {"mode": "TABLE", "table": {"rows": []}}}\n```'

    parsed = parse_response(raw)

    assert parsed.message == "Có 2 phòng"
    assert parsed.table == {"rows": []}
    assert parsed.list is None


def test_parse_response_legacy_end_marker():
    raw = 'Đây là danh sách ---END\nLIST: [{"id": "r-1"}]\nTABLE: null\nCHART: null'

    parsed = parse_response(raw)

    assert parsed.message == "Đây là danh sách"
    assert parsed.list == [{"id": "r-1"}]
    assert parsed.table is None


def test_parse_response_plain_text():
    assert parse_response("Xin chào").message == "Xin chào"


def test_extract_json_object_from_noise():
    assert extract_json_object('labels: {"price": "Giá"} done') == {"price": "Giá"}
    assert extract_json_object("no json") is None
