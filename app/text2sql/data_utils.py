"""Helpers that turn raw SQL rows into list items and table columns."""
from __future__ import annotations

import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from .config import response_config
from .schemas import ListItem, TableColumn

Row = Mapping[str, Any]

ENTITY_ROUTE_MAP = {
    "room": "/rooms/:id",
    "post": "/posts/:id",
    "room_seeking_post": "/room-seeking-posts/:id",
}

# Database column → Vietnamese label shown in tables.
COLUMN_NAME_MAPPING: dict[str, str] = {
    # Pricing & costs
    "base_price_monthly": "Giá thuê/tháng",
    "monthly_rent": "Tiền thuê/tháng",
    "deposit_amount": "Tiền cọc",
    "deposit_months": "Số tháng cọc",
    "utility_cost_per_person": "Phí dịch vụ/người",
    "utility_cost_monthly": "Phí dịch vụ/tháng",
    "utility_included": "Đã bao gồm phí dịch vụ",
    "electricity_cost": "Tiền điện",
    "water_cost": "Tiền nước",
    "internet_cost": "Tiền internet",
    "cleaning_cost": "Phí dọn dẹp",
    "service_fee_percentage": "Phí dịch vụ (%)",
    "cleaning_fee": "Phí dọn dẹp",
    "total_amount": "Tổng tiền",
    "subtotal": "Tạm tính",
    "discount_amount": "Giảm giá",
    "tax_amount": "Thuế",
    "amount": "Số tiền",
    "price": "Giá",
    "cost": "Chi phí",
    # Location
    "district_name": "Quận/Huyện",
    "district_name_en": "Quận/Huyện (EN)",
    "province_name": "Tỉnh/Thành phố",
    "province_name_en": "Tỉnh/Thành phố (EN)",
    "ward_name": "Phường/Xã",
    "ward_name_en": "Phường/Xã (EN)",
    "address_line_1": "Địa chỉ dòng 1",
    "address_line_2": "Địa chỉ dòng 2",
    "latitude": "Vĩ độ",
    "longitude": "Kinh độ",
    # Rooms & buildings
    "area_sqm": "Diện tích (m²)",
    "max_occupancy": "Sức chứa",
    "room_number": "Số phòng",
    "floor_number": "Tầng",
    "room_type": "Loại phòng",
    "building_name": "Tên tòa nhà",
    "room_name": "Tên phòng",
    "name": "Tên",
    "title": "Tiêu đề",
    "description": "Mô tả",
    "slug": "Đường dẫn",
    # Status & dates
    "status": "Trạng thái",
    "is_active": "Đang hoạt động",
    "contract_start_date": "Ngày bắt đầu hợp đồng",
    "contract_end_date": "Ngày kết thúc hợp đồng",
    "payment_date": "Ngày thanh toán",
    "due_date": "Ngày đến hạn",
    "billing_period": "Kỳ thanh toán",
    "billing_month": "Tháng thanh toán",
    "billing_year": "Năm thanh toán",
    "period_start": "Bắt đầu kỳ",
    "period_end": "Kết thúc kỳ",
    "move_in_date": "Ngày vào ở",
    "move_out_date": "Ngày ra",
    "created_at": "Ngày tạo",
    "updated_at": "Ngày cập nhật",
    # Aggregates
    "count": "Số lượng",
    "total": "Tổng",
    "sum": "Tổng",
    "avg": "Trung bình",
    "average": "Trung bình",
    "min": "Tối thiểu",
    "max": "Tối đa",
    # Users
    "user_id": "ID người dùng",
    "owner_id": "ID chủ sở hữu",
    "tenant_id": "ID người thuê",
    "first_name": "Tên",
    "last_name": "Họ",
    "email": "Email",
    "phone": "Số điện thoại",
    "role": "Vai trò",
    # Payments & bills
    "payment_type": "Loại thanh toán",
    "payment_method": "Phương thức thanh toán",
    "payment_status": "Trạng thái thanh toán",
    "currency": "Tiền tệ",
    # Other
    "id": "ID",
    "entity": "Thực thể",
    "path": "Đường dẫn",
    "view_count": "Lượt xem",
    "contact_count": "Lượt liên hệ",
    "min_budget": "Ngân sách tối thiểu",
    "max_budget": "Ngân sách tối đa",
    "preferred_room_type": "Loại phòng ưa thích",
    "occupancy": "Sức chứa",
    "rental_months": "Số tháng thuê",
    "price_negotiable": "Có thể thương lượng",
    "minimum_stay_months": "Thời gian ở tối thiểu (tháng)",
    "maximum_stay_months": "Thời gian ở tối đa (tháng)",
}

PRIORITY_KEYS = (
    "id", "name", "title", "price", "area", "count", "total",
    "created_at", "updated_at", "room", "post", "url", "link", "href",
)

_TITLE_KEYS = ("title", "name")
_URL_KEYS = ("url", "link", "href")
_IMAGE_KEYS = ("imageurl", "image_url", "image", "thumbnail", "thumbnail_url")


def _lower_keys(row: Row) -> dict[str, Any]:
    return {str(key).lower(): value for key, value in row.items()}


def build_entity_path(entity: str, identifier: str) -> str:
    pattern = ENTITY_ROUTE_MAP.get(entity)
    return pattern.replace(":id", identifier) if pattern else ""


def is_list_like(rows: Sequence[Row]) -> bool:
    """Rows render as cards when they have a title plus a link, image or entity id."""

    if not rows:
        return False
    keys = set(_lower_keys(rows[0]))
    has_title = any(key in keys for key in _TITLE_KEYS)
    has_url_or_image = any(key in keys for key in _URL_KEYS + _IMAGE_KEYS)
    has_entity_id = "id" in keys and "entity" in keys
    return has_title and (has_url_or_image or has_entity_id)


def _infer_entity(identifier: str) -> str:
    if "room-seeking" in identifier or "tìm-phòng" in identifier:
        return "room_seeking_post"
    if "post" in identifier or "bài-đăng" in identifier:
        return "post"
    return "room"


def _first(values: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = values.get(key)
        if value not in (None, ""):
            return value
    return None


def to_list_item(row: Row) -> ListItem:
    values = _lower_keys(row)
    raw_id = _first(values, ("id", "slug", "uuid"))
    identifier = str(raw_id).strip() if raw_id is not None else ""
    entity = values.get("entity") or (_infer_entity(identifier) if identifier else None)
    if entity not in ENTITY_ROUTE_MAP:
        entity = None
    path = build_entity_path(entity, identifier) if entity and identifier else None
    description = values.get("description")
    return ListItem(
        id=identifier or uuid.uuid4().hex[:12],
        title=str(_first(values, _TITLE_KEYS) or "Untitled"),
        description=str(description) if description else None,
        thumbnail_url=_first(values, _IMAGE_KEYS),
        entity=entity,
        path=path,
        external_url=_first(values, _URL_KEYS),
    )


def to_list_items(rows: Sequence[Row]) -> list[ListItem]:
    return [to_list_item(row) for row in rows]


def translate_column_name(key: str) -> str:
    """Vietnamese label for ``key``; unmapped keys are returned unchanged."""

    return COLUMN_NAME_MAPPING.get(key) or COLUMN_NAME_MAPPING.get(key.lower()) or key


def has_column_mapping(key: str) -> bool:
    return key in COLUMN_NAME_MAPPING or key.lower() in COLUMN_NAME_MAPPING


def _column_type(key: str, value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, (datetime, date)):
        return "date"
    if re.search(r"url|link|href", key, re.IGNORECASE):
        return "url"
    if re.search(r"image|thumbnail", key, re.IGNORECASE):
        return "image"
    return "string"


def infer_columns(rows: Sequence[Row]) -> list[TableColumn]:
    if not rows:
        return []
    sample = rows[0]
    return [
        TableColumn(key=key, label=translate_column_name(key), type=_column_type(key, value))
        for key, value in sample.items()
    ]


def _cell(value: Any, column_type: str) -> Any:
    if value is None:
        return None
    if column_type == "date":
        return value.isoformat() if isinstance(value, (datetime, date)) else str(value)
    if column_type == "number":
        return float(value) if isinstance(value, Decimal) else value
    if column_type == "boolean":
        return bool(value)
    return str(value)


def normalize_rows(rows: Sequence[Row], columns: Sequence[TableColumn]) -> list[dict[str, Any]]:
    return [
        {column.key: _cell(row.get(column.key), column.type) for column in columns}
        for row in rows
    ]


def to_label(key: str) -> str:
    """``base_price_monthly`` → ``Base price monthly``; ``createdAt`` → ``Created At``."""

    spaced = re.sub(r"([a-z])([A-Z])", r"\1 \2", key.replace("_", " "))
    spaced = re.sub(r"\s+", " ", spaced).strip()
    return spaced[:1].upper() + spaced[1:]


def select_important_columns(
    columns: Sequence[TableColumn],
    rows: Sequence[Row],
    max_columns: int = response_config.max_table_columns,
) -> list[TableColumn]:
    """Primitive, non-empty columns with the priority keys first."""

    if not rows:
        return list(columns)[:max_columns]
    sample = rows[0]
    window = rows[: response_config.preview_limit]

    def _primitive(column: TableColumn) -> bool:
        value = sample.get(column.key)
        return value is None or isinstance(
            value, (str, int, float, bool, Decimal, datetime, date)
        )

    def _non_empty(column: TableColumn) -> bool:
        return any(
            row.get(column.key) is not None and str(row.get(column.key)).strip() != ""
            for row in window
        )

    usable = [column for column in columns if _primitive(column) and _non_empty(column)]
    prioritized = [c for c in usable if c.key in PRIORITY_KEYS] + [
        c for c in usable if c.key not in PRIORITY_KEYS
    ]
    return prioritized[:max_columns]


__all__ = [
    "COLUMN_NAME_MAPPING",
    "ENTITY_ROUTE_MAP",
    "build_entity_path",
    "has_column_mapping",
    "infer_columns",
    "is_list_like",
    "normalize_rows",
    "select_important_columns",
    "to_label",
    "to_list_item",
    "to_list_items",
    "translate_column_name",
]
