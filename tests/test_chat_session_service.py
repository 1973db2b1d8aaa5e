from datetime import datetime, timedelta, timezone

import pytest

from app.models.chat import DEFAULT_SESSION_TITLE, MessageRole
from app.services.chat_session_service import (
    ChatSessionService,
    build_session_id,
    message_to_dict,
    session_to_dict,
)


@pytest.fixture()
def sessions() -> ChatSessionService:
    return ChatSessionService()


def test_build_session_id():
    assert build_session_id("u-1", "10.0.0.1") == "user_u-1"
    assert build_session_id(None, "10.0.0.1") == "ip_10_0_0_1"
    assert build_session_id(None, "::1") == "ip___1"
    assert build_session_id().startswith("anon_")


def test_create_session_defaults(db, sessions):
    chat = sessions.create_session(db, user_id="tenant-1", title="   ")

    assert chat.title == DEFAULT_SESSION_TITLE
    assert chat.message_count == 0
    assert sessions.get_session(db, chat.id) is chat


def test_get_or_create_is_idempotent(db, sessions):
    first = sessions.get_or_create_session(db, "user_tenant-1", "tenant-1")
    second = sessions.get_or_create_session(db, "user_tenant-1", "tenant-1")

    assert first is second
    assert first.id == "user_tenant-1"


def test_add_message_assigns_sequence_numbers(db, sessions):
    chat = sessions.create_session(db, user_id="tenant-1")

    first = sessions.add_message(db, chat.id, MessageRole.USER, "xin chào")
    second = sessions.add_message(db, chat.id, "assistant", "chào bạn", {"kind": "CONTROL"})

    assert (first.sequence_number, second.sequence_number) == (1, 2)
    assert chat.message_count == 2
    assert chat.last_message_at is not None
    payload = message_to_dict(second)
    assert payload["role"] == "assistant"
    assert payload["metadata"] == {"kind": "CONTROL"}


def test_add_message_to_missing_session_raises(db, sessions):
    with pytest.raises(LookupError):
        sessions.add_message(db, "nope", MessageRole.USER, "hi")


def test_recent_messages_are_oldest_first(db, sessions):
    chat = sessions.create_session(db)
    for index in range(5):
        sessions.add_message(db, chat.id, MessageRole.USER, f"m{index}")

    recent = sessions.get_recent_messages(db, chat.id, limit=3)

    assert [m.content for m in recent] == ["m2", "m3", "m4"]
    assert len(sessions.get_messages(db, chat.id)) == 5
    assert sessions.count_messages(db, chat.id) == 5


def test_old_messages_skip_summarised_and_recent_window(db, sessions):
    chat = sessions.create_session(db)
    for index in range(12):
        sessions.add_message(db, chat.id, MessageRole.USER, f"m{index + 1}")

    assert [m.sequence_number for m in sessions.get_old_messages(db, chat.id, keep_recent=4)] == [
        1, 2, 3, 4, 5
    ]

    sessions.update_summary(db, chat.id, "tóm tắt", summarized_through=5)
    sessions.update_summary(db, chat.id, "tóm tắt cũ", summarized_through=3)

    assert chat.summarized_message_count == 5
    assert [m.sequence_number for m in sessions.get_old_messages(db, chat.id, keep_recent=4)] == [
        6, 7, 8
    ]


def test_update_title_truncates_and_falls_back(db, sessions):
    chat = sessions.create_session(db)

    sessions.update_title(db, chat.id, "x" * 300)
    assert len(chat.title) == 200

    sessions.update_title(db, chat.id, "  ")
    assert chat.title == DEFAULT_SESSION_TITLE
    assert sessions.update_title(db, "missing", "t") is None


def test_list_user_sessions_orders_by_activity(db, sessions):
    older = sessions.create_session(db, user_id="tenant-1", title="older")
    newer = sessions.create_session(db, user_id="tenant-1", title="newer")
    sessions.create_session(db, user_id="landlord-1")
    sessions.add_message(db, older.id, MessageRole.USER, "a")
    sessions.add_message(db, newer.id, MessageRole.USER, "b")

    listed = sessions.list_user_sessions(db, "tenant-1")

    assert [s.title for s in listed] == ["newer", "older"]
    assert session_to_dict(listed[0])["message_count"] == 1


def test_clear_messages_resets_counters(db, sessions):
    chat = sessions.create_session(db)
    sessions.add_message(db, chat.id, MessageRole.USER, "a")
    sessions.add_message(db, chat.id, MessageRole.ASSISTANT, "b")
    sessions.update_summary(db, chat.id, "s", summarized_through=2)

    deleted = sessions.clear_messages(db, chat.id)

    assert deleted == 2
    assert (chat.message_count, chat.summarized_message_count, chat.summary) == (0, 0, None)
    assert sessions.add_message(db, chat.id, MessageRole.USER, "again").sequence_number == 1


def test_delete_session(db, sessions):
    chat = sessions.create_session(db)
    sessions.add_message(db, chat.id, MessageRole.USER, "a")

    assert sessions.delete_session(db, chat.id)
    assert sessions.get_session(db, chat.id) is None
    assert sessions.count_messages(db, chat.id) == 0
    assert not sessions.delete_session(db, chat.id)


def test_add_message_sees_messages_written_by_another_session(db, session_factory, sessions):
    chat = sessions.create_session(db)
    sessions.add_message(db, chat.id, MessageRole.USER, "xin chào")

    other = session_factory()
    try:
        sessions.add_message(other, chat.id, MessageRole.ASSISTANT, "chào bạn")
    finally:
        other.close()

    third = sessions.add_message(db, chat.id, MessageRole.USER, "tìm phòng")

    assert third.sequence_number == 3
    assert chat.message_count == 3
    assert [m.sequence_number for m in sessions.get_messages(db, chat.id)] == [1, 2, 3]


def test_purge_expired_sessions_only_removes_idle_anonymous(db, sessions):
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    idle = sessions.create_session(db)
    sessions.add_message(db, idle.id, MessageRole.USER, "hi")
    idle.last_message_at = old
    never_used = sessions.create_session(db)
    never_used.created_at = old
    owned = sessions.create_session(db, user_id="tenant-1")
    owned.created_at = old
    fresh = sessions.create_session(db)
    db.commit()

    purged = sessions.purge_expired_sessions(db, idle_minutes=30)

    assert purged == 2
    db.expire_all()
    assert sessions.get_session(db, idle.id) is None
    assert sessions.get_session(db, never_used.id) is None
    assert sessions.get_session(db, owned.id) is not None
    assert sessions.get_session(db, fresh.id) is not None
    assert sessions.count_messages(db, idle.id) == 0
    assert sessions.purge_expired_sessions(db, idle_minutes=0) == 0
