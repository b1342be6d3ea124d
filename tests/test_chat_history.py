from datetime import datetime, timezone

import pytest

from src.mamasaheli import chat_history, db
from src.mamasaheli.errors import StoreError
from src.mamasaheli.models import ChatMessage
from src.mamasaheli.store import Query, get_store

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


def message(session_id, role, content, timestamp, id_=None):
    return ChatMessage(
        id=id_ or f"{session_id}-{timestamp}",
        user_id="u1",
        role=role,
        content=content,
        timestamp=timestamp,
        session_id=session_id,
    )


def test_sessions_are_grouped_and_ranked_by_latest_activity():
    messages = [
        message("s1", "user", "How much water should I drink?", "2026-06-15T09:00:00.000Z"),
        message("s1", "assistant", "About 8-10 glasses.", "2026-06-15T09:00:05.000Z"),
        message("s2", "user", "Is back pain normal?", "2026-06-15T11:00:00.000Z"),
        message("s1", "user", "Thanks", "2026-06-15T09:01:00.000Z"),
        message("s2", "assistant", "Yes, quite common.", "2026-06-15T11:00:03.000Z"),
    ]

    summaries = chat_history.build_session_summaries(messages, now=NOW)

    assert [s.session_id for s in summaries] == ["s2", "s1"]
    assert [s.message_count for s in summaries] == [2, 3]
    assert summaries[1].preview == "How much water should I drink?"
    assert summaries[1].first_message_timestamp == "2026-06-15T09:00:00.000Z"
    assert summaries[0].relative_date == "about 1 hour ago"
    assert summaries[1].relative_date == "about 3 hours ago"


def test_group_orders_oldest_first_and_skips_missing_session():
    messages = [
        message("s1", "user", "second", "2026-06-15T10:00:00.000Z"),
        message("s1", "user", "broken", "garbage"),
        message("s1", "user", "first", "2026-06-15T09:00:00.000Z"),
        message("", "user", "orphan", "2026-06-15T09:00:00.000Z"),
    ]
    groups = chat_history.group_messages_by_session(messages)
    assert list(groups) == ["s1"]
    assert [m.content for m in groups["s1"]] == ["first", "second", "broken"]


def test_preview_truncation_and_ai_started_sessions():
    long_text = "x" * 50
    assert chat_history.session_preview([message("s", "user", long_text, "t")]) == "x" * 40 + "..."
    assert chat_history.session_preview([message("s", "assistant", "Hello!", "t")]) == "[AI Started Chat]"


def test_unparsable_sessions_sort_last():
    messages = [
        message("bad", "user", "hm", "not-a-date"),
        message("good", "user", "hi", "2026-06-14T12:00:00.000Z"),
    ]
    summaries = chat_history.build_session_summaries(messages, now=NOW)
    assert [s.session_id for s in summaries] == ["good", "bad"]
    assert summaries[0].relative_date == "1 day ago"
    assert summaries[1].relative_date == "unknown date"


def test_messages_are_encrypted_at_rest(run, settings):
    async def scenario():
        saved = await chat_history.save_chat_message("u1", "user", "I feel dizzy", "s1")
        await chat_history.save_chat_message("u1", "assistant", "Please sit down.", "s1")
        assert saved.content == "I feel dizzy"

        store = await get_store()
        raw = await store.get_document(settings.chat_history_collection_id, saved.id)
        assert raw["content"] != "I feel dizzy"
        assert raw.permissions == ['read("user:u1")', 'delete("user:u1")']

        history = await chat_history.get_chat_history_for_session("u1", "s1")
        sessions = await chat_history.get_chat_sessions_list("u1")
        recent = await chat_history.get_recent_user_messages("u1")
        return history, sessions, recent

    history, sessions, recent = run(scenario())
    assert [m.content for m in history] == ["I feel dizzy", "Please sit down."]
    assert len(sessions) == 1 and sessions[0].message_count == 2
    assert recent == ["I feel dizzy"]


def test_saved_content_is_trimmed(run):
    saved = run(chat_history.save_chat_message("u1", "user", "  Can I fly at 30 weeks?\n", "s1"))
    assert saved.content == "Can I fly at 30 weeks?"


def test_long_session_history_is_returned_in_full(run, settings):
    async def scenario():
        store = await get_store()
        # stored newest first so insertion order differs from timestamp order
        for i in reversed(range(150)):
            await store.create_document(
                settings.chat_history_collection_id,
                {
                    "userId": "u1",
                    "role": "user" if i % 2 == 0 else "assistant",
                    "content": db.encrypt(f"message {i}"),
                    "timestamp": f"2026-06-15T10:{i // 60:02d}:{i % 60:02d}.000Z",
                    "sessionId": "s1",
                },
            )
        paged = await chat_history.get_chat_history_for_session("u1", "s1", page_size=40)
        full = await chat_history.get_chat_history_for_session("u1", "s1")
        return paged, full

    paged, full = run(scenario())
    for history in (paged, full):
        assert len(history) == 150
        assert history[0].content == "message 0"
        assert history[-1].content == "message 149"
        assert history[-1].timestamp == "2026-06-15T10:02:29.000Z"
        timestamps = [m.timestamp for m in history]
        assert timestamps == sorted(timestamps)
    assert len({m.id for m in paged}) == 150


@pytest.mark.parametrize(
    "args",
    [
        ("", "user", "hi", "s1"),
        ("u1", "user", "", "s1"),
        ("u1", "user", "   \n\t", "s1"),
        ("u1", "user", "hi", ""),
        ("u1", "system", "hi", "s1"),
    ],
)
def test_save_chat_message_validation(run, args):
    with pytest.raises(ValueError):
        run(chat_history.save_chat_message(*args))


def test_delete_session_history_across_batches(run, settings):
    async def scenario():
        store = await get_store()
        for i in range(130):
            await store.create_document(
                settings.chat_history_collection_id,
                {"userId": "u1", "role": "user", "content": "", "timestamp": f"t{i}", "sessionId": "s1"},
            )
        await store.create_document(
            settings.chat_history_collection_id,
            {"userId": "u1", "role": "user", "content": "", "timestamp": "t", "sessionId": "keep"},
        )
        report = await chat_history.delete_chat_session_history("u1", "s1")
        remaining = await store.list_documents(settings.chat_history_collection_id, [Query.equal("userId", "u1")])
        return report, remaining

    report, remaining = run(scenario())
    assert report.success is True
    assert report.deleted_count == 130
    assert report.failed_count == 0
    assert [d["sessionId"] for d in remaining.documents] == ["keep"]


def test_delete_session_history_tallies_failures(run, settings, monkeypatch):
    async def scenario():
        store = await get_store()
        ids = []
        for i in range(5):
            doc = await store.create_document(
                settings.chat_history_collection_id,
                {"userId": "u1", "role": "user", "content": "", "timestamp": f"t{i}", "sessionId": "s1"},
            )
            ids.append(doc.id)
        failing = set(sorted(ids)[:2])
        original = store.delete_document

        async def flaky_delete(collection_id, document_id):
            if document_id in failing:
                raise StoreError("Server error", 500, "general_unknown")
            await original(collection_id, document_id)

        monkeypatch.setattr(store, "delete_document", flaky_delete)
        return await chat_history.delete_chat_session_history("u1", "s1")

    report = run(scenario())
    assert report.success is False
    assert report.deleted_count == 3
    assert report.failed_count == 2


def test_delete_session_history_failures_in_first_batch(run, settings, monkeypatch):
    async def scenario():
        store = await get_store()
        ids = []
        for i in range(130):
            doc = await store.create_document(
                settings.chat_history_collection_id,
                {"userId": "u1", "role": "user", "content": "", "timestamp": f"t{i}", "sessionId": "s1"},
            )
            ids.append(doc.id)
        ordered = sorted(ids)
        failing = {ordered[10], ordered[50]}
        original = store.delete_document

        async def flaky_delete(collection_id, document_id):
            if document_id in failing:
                raise StoreError("Server error", 500, "general_unknown")
            await original(collection_id, document_id)

        monkeypatch.setattr(store, "delete_document", flaky_delete)
        report = await chat_history.delete_chat_session_history("u1", "s1")
        remaining = await store.list_documents(
            settings.chat_history_collection_id, [Query.equal("sessionId", "s1"), Query.limit(500)]
        )
        return report, failing, remaining

    report, failing, remaining = run(scenario())
    assert report.success is False
    assert report.failed_count == 2
    assert report.deleted_count + report.failed_count == 130
    assert {d.id for d in remaining.documents} == failing


def test_delete_session_history_requires_ids(run):
    with pytest.raises(ValueError):
        run(chat_history.delete_chat_session_history("u1", ""))


def test_bookmarks(run):
    async def scenario():
        first = await chat_history.add_bookmark("u1", "Eat leafy greens")
        await chat_history.add_bookmark("u1", "Walk daily")
        await chat_history.add_bookmark("u2", "Not mine")
        await chat_history.delete_bookmark(first.id)
        return await chat_history.get_bookmarks("u1")

    bookmarks = run(scenario())
    assert [b["messageContent"] for b in bookmarks] == ["Walk daily"]


def test_chat_image_must_be_an_image(run):
    with pytest.raises(ValueError):
        run(chat_history.upload_chat_image("u1", "notes.txt", b"hello", "text/plain"))

    stored, url = run(chat_history.upload_chat_image("u1", "belly.png", b"\x89PNG", "image/png"))
    assert url.endswith(f"/files/{stored.id}/view")
