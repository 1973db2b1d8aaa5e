import pytest

from app.text2sql.access import (
    AccessDeniedError,
    QueryType,
    UserRole,
    classify_query,
    generate_user_where_clauses,
    resolve_user_role,
    sensitive_restrictions,
    validate_sql_security,
    validate_user_access,
)


@pytest.mark.parametrize(
    "query, expected",
    [
        ("tìm phòng trọ ở Gò Vấp dưới 3 triệu", QueryType.ROOM_SEARCH),
        ("thống kê doanh thu tháng này", QueryType.STATISTICS),
        ("tạo phòng mới cho tòa A", QueryType.CREATE_ROOM),
        ("cập nhật phòng 101", QueryType.UPDATE_ROOM),
        ("tạo tòa nhà mới", QueryType.CREATE_BUILDING),
    ],
)
def test_classify_query(query, expected):
    assert classify_query(query) == expected


def test_resolve_user_role(db):
    assert resolve_user_role(db, None) == UserRole.GUEST
    assert resolve_user_role(db, "landlord-1") == UserRole.LANDLORD
    assert resolve_user_role(db, "tenant-1") == UserRole.TENANT
    assert resolve_user_role(db, "ghost") == UserRole.GUEST


def test_anonymous_room_search_is_allowed(db):
    result = validate_user_access(db, None, QueryType.ROOM_SEARCH)

    assert result.has_access
    assert result.user_role == UserRole.GUEST


def test_anonymous_statistics_requires_login(db):
    result = validate_user_access(db, None, QueryType.STATISTICS)

    assert not result.has_access
    assert result.restrictions[0].startswith("Authentication required")


def test_unknown_user_raises(db):
    with pytest.raises(AccessDeniedError):
        validate_user_access(db, "ghost", QueryType.ROOM_SEARCH)


def test_statistics_require_landlord(db):
    tenant = validate_user_access(db, "tenant-1", QueryType.STATISTICS)
    landlord = validate_user_access(db, "landlord-1", QueryType.STATISTICS)

    assert not tenant.has_access
    assert tenant.restrictions == ["Only landlords can access statistics"]
    assert landlord.has_access
    assert landlord.user_role == UserRole.LANDLORD


def test_sensitive_tables_need_owner_filter():
    sql = "SELECT b.id, b.total_amount FROM bills b JOIN rentals r ON r.id = b.rental_id"
    restrictions = sensitive_restrictions(sql)

    assert [r.split(":")[0] for r in restrictions] == ["bills", "rentals"]
    assert not validate_sql_security(sql, restrictions, user_id="tenant-1")

    scoped = sql + " WHERE r.tenant_id = 'tenant-1'"
    assert validate_sql_security(scoped, sensitive_restrictions(scoped), user_id="tenant-1")
    assert not validate_sql_security(scoped, sensitive_restrictions(scoped), user_id="tenant-2")


def test_public_tables_have_no_restrictions():
    assert sensitive_restrictions("SELECT r.name FROM rooms r") == []
    assert validate_sql_security("SELECT r.name FROM rooms r", [])


def test_where_clause_hints_follow_role():
    assert generate_user_where_clauses("u1", UserRole.TENANT, "hóa đơn của tôi") == "rentals.tenant_id = 'u1'"
    assert generate_user_where_clauses("u1", "LANDLORD", "hóa đơn và tòa nhà") == (
        "rentals.owner_id = 'u1' AND buildings.owner_id = 'u1'"
    )
    assert generate_user_where_clauses("u1", UserRole.TENANT, "phòng trống") == ""
