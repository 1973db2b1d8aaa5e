"""Render the marketplace schema as plain text for retrieval and prompting."""
from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.engine import Connection, Engine

from app.core.logger import get_logger

from .config import sql_safety_config

LOGGER = get_logger(__name__)

SCHEMA_NOTES = """IMPORTANT NOTES:
- rooms table does NOT have 'price' column - use room_pricing.base_price_monthly instead
- Use room_instances for specific room instances, rooms for room types
- All foreign key relationships use snake_case column names
- Use proper JOIN syntax for related tables
- Always include LIMIT to prevent large result sets"""

STATIC_SCHEMA = """DATABASE SCHEMA - Trustay App (PostgreSQL):
- users (id, email, phone, first_name, last_name, role: tenant|landlord, created_at, updated_at)
- buildings (id, slug, owner_id -> users.id, name, address_line_1, district_id -> districts.id, province_id -> provinces.id, is_active, created_at)
- rooms (id, slug, building_id -> buildings.id, name, description, room_type, area_sqm, max_occupancy, total_rooms, view_count, is_active, created_at)
- room_instances (id, room_id -> rooms.id, room_number, status: available|occupied|maintenance|reserved|unavailable, is_active)
- room_pricing (id, room_id -> rooms.id, base_price_monthly, currency, deposit_amount, utility_included, price_negotiable)
- room_images (id, room_id -> rooms.id, image_url, alt_text, sort_order, is_primary)
- rentals (id, room_instance_id -> room_instances.id, tenant_id -> users.id, owner_id -> users.id, contract_start_date, contract_end_date, monthly_rent, status)
- bills (id, rental_id -> rentals.id, billing_month, billing_year, total_amount, status: draft|pending|paid|overdue|cancelled, due_date)
- payments (id, rental_id -> rentals.id, bill_id -> bills.id, payer_id -> users.id, payment_type, amount, payment_status, payment_date)
- room_bookings (id, room_id -> rooms.id, tenant_id -> users.id, move_in_date, monthly_rent, status)
- amenities (id, name, name_en, category, description, is_active, sort_order)
- provinces (id, province_code, province_name); districts (id, district_code, district_name, province_id -> provinces.id); wards (id, ward_name, district_id -> districts.id)"""


def _describe_table(inspector, table: str) -> str:
    pk = set(inspector.get_pk_constraint(table).get("constrained_columns") or [])
    foreign = {}
    for fk in inspector.get_foreign_keys(table):
        for local, remote in zip(fk.get("constrained_columns", []), fk.get("referred_columns", [])):
            foreign[local] = f"{fk.get('referred_table')}.{remote}"

    parts = []
    for column in inspector.get_columns(table):
        name = column["name"]
        piece = f"{name} {column['type']}"
        if name in pk:
            piece += " PK"
        if not column.get("nullable", True) and name not in pk:
            piece += " NOT NULL"
        if name in foreign:
            piece += f" -> {foreign[name]}"
        parts.append(piece)
    return f"- {table} ({', '.join(parts)})"


def get_complete_database_schema(bind: Engine | Connection | None = None) -> str:
    """Describe every allow-listed table present in ``bind``.

    Falls back to the static description when no bind is given or none of the
    tables exist.
    """

    if bind is None:
        return f"{STATIC_SCHEMA}\n\n{SCHEMA_NOTES}"

    inspector = inspect(bind)
    existing = set(inspector.get_table_names())
    tables = [name for name in sql_safety_config.allowed_tables if name in existing]
    if not tables:
        LOGGER.warning("No allow-listed tables found; using static schema description")
        return f"{STATIC_SCHEMA}\n\n{SCHEMA_NOTES}"

    lines = ["DATABASE SCHEMA - Trustay App:"]
    lines.extend(_describe_table(inspector, table) for table in tables)
    LOGGER.debug("Rendered schema for %d tables", len(tables))
    return "\n".join(lines) + f"\n\n{SCHEMA_NOTES}"
