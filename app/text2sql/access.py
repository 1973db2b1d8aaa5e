"""Who may ask what: query classification, role lookup and row-level guards."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.logger import get_logger

from .sql_safety import extract_tables

LOGGER = get_logger(__name__)


class AccessDeniedError(PermissionError):
    """Raised when the caller may not run a query or the SQL misses user filters."""


class QueryType(str, Enum):
    CREATE_BUILDING = "CREATE_BUILDING"
    CREATE_ROOM = "CREATE_ROOM"
    UPDATE_BUILDING = "UPDATE_BUILDING"
    UPDATE_ROOM = "UPDATE_ROOM"
    STATISTICS = "STATISTICS"
    ROOM_SEARCH = "ROOM_SEARCH"

    @property
    def is_creation(self) -> bool:
        return self in (
            QueryType.CREATE_BUILDING,
            QueryType.CREATE_ROOM,
            QueryType.UPDATE_BUILDING,
            QueryType.UPDATE_ROOM,
        )


class UserRole(str, Enum):
    GUEST = "GUEST"
    TENANT = "TENANT"
    LANDLORD = "LANDLORD"


_CREATE_BUILDING = ("tạo toà", "tạo tòa", "tạo building", "thêm building", "add building",
                    "create building", "đăng toà", "đăng tòa", "create apartment building")
_CREATE_ROOM = ("tạo phòng", "thêm phòng", "đăng phòng", "create room", "add room", "post listing")
_UPDATE_BUILDING = ("cập nhật toà", "cập nhật tòa", "update building", "sửa building", "chỉnh building")
_UPDATE_ROOM = ("cập nhật phòng", "update room", "edit room", "sửa phòng", "chỉnh phòng")
_STATISTICS = ("thống kê", "doanh thu", "revenue", "income", "tổng quan", "overview", "báo cáo",
               "report", "phân tích", "analysis", "dashboard", "rental income", "profit",
               "khách thuê", "tenants", "occupancy", "tỷ lệ", "lấp đầy", "percentage")

# Tables holding per-user financial or contractual data, with the columns that scope them.
SENSITIVE_TABLES: dict[str, tuple[str, ...]] = {
    "rentals": ("tenant_id", "owner_id"),
    "bills": ("tenant_id", "owner_id"),
    "bill_items": ("tenant_id", "owner_id"),
    "payments": ("payer_id",),
    "contracts": ("tenant_id", "landlord_id", "owner_id"),
    "room_bookings": ("tenant_id", "owner_id"),
}


@dataclass(slots=True)
class UserAccessResult:
    has_access: bool
    user_role: UserRole = UserRole.GUEST
    restrictions: list[str] = field(default_factory=list)


def classify_query(query: str) -> QueryType:
    """Bucket a question by keyword; anything unrecognised is a room search."""

    lowered = (query or "").lower().strip()
    for query_type, patterns in (
        (QueryType.CREATE_BUILDING, _CREATE_BUILDING),
        (QueryType.CREATE_ROOM, _CREATE_ROOM),
        (QueryType.UPDATE_BUILDING, _UPDATE_BUILDING),
        (QueryType.UPDATE_ROOM, _UPDATE_ROOM),
        (QueryType.STATISTICS, _STATISTICS),
    ):
        if any(pattern in lowered for pattern in patterns):
            return query_type
    return QueryType.ROOM_SEARCH


def lookup_user_role(db: Session, user_id: str) -> Optional[UserRole]:
    """Return the stored role for ``user_id`` or ``None`` when the user does not exist."""

    try:
        raw = db.execute(text("SELECT role FROM users WHERE id = :id"), {"id": user_id}).scalar()
    except SQLAlchemyError as exc:
        db.rollback()
        LOGGER.warning("User role lookup failed: %s", exc)
        return None
    if raw is None:
        return None
    value = str(getattr(raw, "value", raw)).lower()
    if value == "landlord":
        return UserRole.LANDLORD
    if value == "tenant":
        return UserRole.TENANT
    return UserRole.GUEST


def resolve_user_role(db: Session, user_id: Optional[str]) -> UserRole:
    if not user_id:
        return UserRole.GUEST
    return lookup_user_role(db, user_id) or UserRole.GUEST


def validate_user_access(
    db: Session, user_id: Optional[str], query_type: QueryType
) -> UserAccessResult:
    if not user_id:
        if query_type == QueryType.ROOM_SEARCH:
            return UserAccessResult(has_access=True)
        if query_type == QueryType.STATISTICS or query_type.is_creation:
            return UserAccessResult(
                has_access=False,
                restrictions=["Authentication required for statistics and room creation queries"],
            )
        return UserAccessResult(has_access=False, restrictions=["Authentication required"])

    role = lookup_user_role(db, user_id)
    if role is None:
        raise AccessDeniedError("Security violation: user not found")

    restrictions: list[str] = []
    if query_type == QueryType.STATISTICS and role != UserRole.LANDLORD:
        restrictions.append("Only landlords can access statistics")
    if query_type.is_creation and role != UserRole.LANDLORD:
        restrictions.append("Only landlords can create and manage rooms")
    return UserAccessResult(has_access=not restrictions, user_role=role, restrictions=restrictions)


def sensitive_restrictions(sql: str) -> list[str]:
    """One restriction per sensitive table the statement reads."""

    return [
        f"{table}: filter by {' or '.join(SENSITIVE_TABLES[table])}"
        for table in sorted(extract_tables(sql))
        if table in SENSITIVE_TABLES
    ]


def validate_sql_security(
    sql: str, restrictions: list[str], *, user_id: Optional[str] = None
) -> bool:
    """Every restricted table must be filtered by one of its owner columns.

    When ``user_id`` is given the literal id must also appear in the statement.
    """

    if not restrictions:
        return True
    lowered = sql.lower()
    for restriction in restrictions:
        table = restriction.split(":", 1)[0].strip()
        columns = SENSITIVE_TABLES.get(table)
        if columns is None:
            continue
        if not any(re.search(rf"\b{column}\b", lowered) for column in columns):
            return False
    if user_id and str(user_id).lower() not in lowered:
        return False
    return True


def generate_user_where_clauses(user_id: str, role: UserRole | str, query: str) -> str:
    """Suggest WHERE fragments that scope personal data to ``user_id``."""

    role_value = role.value if isinstance(role, UserRole) else str(role).upper()
    quoted = str(user_id).replace("'", "''")
    lowered = (query or "").lower()
    clauses: list[str] = []

    def _rental_clause() -> None:
        if role_value == UserRole.TENANT.value:
            clauses.append(f"rentals.tenant_id = '{quoted}'")
        elif role_value == UserRole.LANDLORD.value:
            clauses.append(f"rentals.owner_id = '{quoted}'")

    if "bill" in lowered or "hóa đơn" in lowered or "hoá đơn" in lowered:
        _rental_clause()
    if "payment" in lowered or "thanh toán" in lowered:
        clauses.append(f"payments.payer_id = '{quoted}'")
    if "rental" in lowered or "thuê" in lowered:
        _rental_clause()
    if ("building" in lowered or "tòa nhà" in lowered or "toà nhà" in lowered) and (
        role_value == UserRole.LANDLORD.value
    ):
        clauses.append(f"buildings.owner_id = '{quoted}'")
    if "booking" in lowered or "đặt phòng" in lowered:
        clauses.append(f"room_bookings.tenant_id = '{quoted}'")

    return " AND ".join(dict.fromkeys(clauses))


__all__ = [
    "AccessDeniedError",
    "QueryType",
    "SENSITIVE_TABLES",
    "UserAccessResult",
    "UserRole",
    "classify_query",
    "generate_user_where_clauses",
    "lookup_user_role",
    "resolve_user_role",
    "sensitive_restrictions",
    "validate_sql_security",
    "validate_user_access",
]
