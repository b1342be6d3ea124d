import pytest

from src.mamasaheli import forum
from src.mamasaheli.errors import StoreError
from src.mamasaheli.store import Query, get_store
from src.mamasaheli.utils import to_iso


def test_reply_count_and_last_reply_follow_posts(run):
    async def scenario():
        topic = await forum.create_forum_topic("u1", "  ", "Swollen feet", "Anyone else?", category="Health")
        first = await forum.create_forum_post("u2", "Asha", topic.id, "Yes, put them up.")
        second = await forum.create_forum_post("u3", "Meera", topic.id, "Drink water.")
        after_create = await forum.get_forum_topic(topic.id)

        await forum.delete_forum_post(second.id, topic.id)
        after_one_delete = await forum.get_forum_topic(topic.id)

        await forum.delete_forum_post(first.id, topic.id)
        after_all_deleted = await forum.get_forum_topic(topic.id)
        return topic, first, second, after_create, after_one_delete, after_all_deleted

    topic, first, second, after_create, after_one_delete, after_all_deleted = run(scenario())
    assert topic["userName"] == "Anonymous"
    assert topic["replyCount"] == 0
    assert after_create["replyCount"] == 2
    assert after_create["lastReplyAt"] == to_iso(second.created_at)
    assert after_one_delete["replyCount"] == 1
    assert after_one_delete["lastReplyAt"] == to_iso(first.created_at)
    assert after_all_deleted["replyCount"] == 0
    assert after_all_deleted["lastReplyAt"] == to_iso(topic.created_at)


def test_posts_listed_oldest_first(run):
    async def scenario():
        topic = await forum.create_forum_topic("u1", "Priya", "Cravings", "Pickles at 3am")
        for text in ("one", "two", "three"):
            await forum.create_forum_post("u2", "Asha", topic.id, text)
        everything = await forum.get_forum_posts(topic.id)
        found = await forum.get_forum_posts(topic.id, search="TWO")
        return everything, found

    everything, found = run(scenario())
    assert [p["content"] for p in everything.documents] == ["one", "two", "three"]
    assert [p["content"] for p in found.documents] == ["two"]


def test_topics_pinned_first_and_filtered(run):
    async def scenario():
        old = await forum.create_forum_topic("u1", "A", "Old pinned", "x", category="Diet")
        await forum.create_forum_topic("u1", "A", "Newer", "x", category="Diet")
        await forum.create_forum_topic("u1", "A", "Sleep question", "x", category="Sleep")
        await forum.update_forum_topic(old.id, {"isPinned": True, "userId": "hijack"})
        diet = await forum.get_forum_topics(category="Diet")
        everything = await forum.get_forum_topics(category="all")
        searched = await forum.get_forum_topics(search="sleep")
        pinned = await forum.get_forum_topic(old.id)
        return diet, everything, searched, pinned

    diet, everything, searched, pinned = run(scenario())
    assert [t["title"] for t in diet.documents] == ["Old pinned", "Newer"]
    assert everything.total == 3
    assert [t["title"] for t in searched.documents] == ["Sleep question"]
    assert pinned["userId"] == "u1"


def test_topic_validation(run):
    with pytest.raises(ValueError):
        run(forum.create_forum_topic("u1", "A", "   ", "content"))
    with pytest.raises(ValueError):
        run(forum.update_forum_topic("t1", {"replyCount": 99}))
    with pytest.raises(ValueError):
        run(forum.create_forum_post("u1", "A", "t1", "  "))


def test_delete_topic_cascades_to_posts(run):
    async def scenario():
        topic = await forum.create_forum_topic("u1", "A", "Cascade", "x")
        other = await forum.create_forum_topic("u1", "A", "Other", "x")
        for i in range(3):
            await forum.create_forum_post("u2", "B", topic.id, f"reply {i}")
        await forum.create_forum_post("u2", "B", other.id, "stays")
        report = await forum.delete_forum_topic_and_posts(topic.id)
        gone = await forum.get_forum_topic(topic.id)
        orphans = await forum.get_forum_posts(topic.id)
        kept = await forum.get_forum_posts(other.id)
        return report, gone, orphans, kept

    report, gone, orphans, kept = run(scenario())
    assert report.posts_deleted == 3
    assert report.posts_failed == 0
    assert report.topic_deleted is True
    assert gone is None
    assert orphans.total == 0
    assert kept.total == 1


def test_delete_topic_with_failures_in_first_batch(run, settings, monkeypatch):
    async def scenario():
        store = await get_store()
        topic = await forum.create_forum_topic("u1", "A", "Busy thread", "x")
        ids = []
        for i in range(120):
            post = await store.create_document(
                settings.forum_posts_collection_id,
                {"topicId": topic.id, "userId": "u2", "userName": "B", "content": f"reply {i}", "voteScore": 0},
            )
            ids.append(post.id)
        ordered = sorted(ids)
        failing = {ordered[3], ordered[70], ordered[99]}
        original = store.delete_document

        async def flaky_delete(collection_id, document_id):
            if document_id in failing:
                raise StoreError("Server error", 500, "general_unknown")
            await original(collection_id, document_id)

        monkeypatch.setattr(store, "delete_document", flaky_delete)
        report = await forum.delete_forum_topic_and_posts(topic.id)
        remaining = await store.list_documents(
            settings.forum_posts_collection_id, [Query.equal("topicId", topic.id), Query.limit(500)]
        )
        return report, failing, remaining

    report, failing, remaining = run(scenario())
    assert report.posts_failed == 3
    assert report.posts_deleted + report.posts_failed == 120
    assert report.topic_deleted is True
    assert {d.id for d in remaining.documents} == failing


def test_vote_delta():
    assert forum.vote_delta(None, "up") == 1
    assert forum.vote_delta("up", "down") == -2
    assert forum.vote_delta("down", None) == 1
    assert forum.vote_delta(None, None) == 0


def test_vote_sequences_keep_score_consistent(run):
    async def scenario():
        topic = await forum.create_forum_topic("u1", "A", "Votes", "x")
        deltas = [
            await forum.cast_forum_vote("u2", topic.id, "topic", "up"),
            await forum.cast_forum_vote("u3", topic.id, "topic", "up"),
            await forum.cast_forum_vote("u4", topic.id, "topic", "down"),
            await forum.cast_forum_vote("u2", topic.id, "topic", "down"),
            await forum.cast_forum_vote("u3", topic.id, "topic", "up"),
            await forum.cast_forum_vote("u4", topic.id, "topic", "remove"),
            await forum.cast_forum_vote("u5", topic.id, "topic", "remove"),
        ]
        refreshed = await forum.get_forum_topic(topic.id)
        counts = await forum.get_target_vote_counts(topic.id)
        recomputed = await forum.recompute_vote_score(topic.id, "topic")
        status = [await forum.get_user_vote_status(u, topic.id) for u in ("u2", "u3", "u4")]
        return deltas, refreshed, counts, recomputed, status

    deltas, refreshed, counts, recomputed, status = run(scenario())
    assert deltas == [1, 1, -1, -2, -1, 1, 0]
    assert counts.upvotes == 0
    assert counts.downvotes == 1
    assert refreshed["voteScore"] == counts.score == -1
    assert recomputed == -1
    assert status == ["down", "none", "none"]


def test_failed_score_increment_is_repaired_from_vote_records(run, monkeypatch):
    async def scenario():
        store = await get_store()
        topic = await forum.create_forum_topic("u1", "A", "Votes", "x")
        original = store.increment_document_attribute
        calls = []

        async def failing_once(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise StoreError("Server error", 500, "general_unknown")
            return await original(*args, **kwargs)

        monkeypatch.setattr(store, "increment_document_attribute", failing_once)
        first = await forum.cast_forum_vote("u2", topic.id, "topic", "up")
        after_failure = await forum.get_forum_topic(topic.id)
        second = await forum.cast_forum_vote("u3", topic.id, "topic", "up")
        refreshed = await forum.get_forum_topic(topic.id)
        counts = await forum.get_target_vote_counts(topic.id)
        return first, second, after_failure, refreshed, counts

    first, second, after_failure, refreshed, counts = run(scenario())
    assert (first, second) == (1, 1)
    assert after_failure["voteScore"] == 1
    assert counts.upvotes == 2
    assert refreshed["voteScore"] == counts.score == 2


def test_vote_on_post_and_invalid_input(run):
    async def scenario():
        topic = await forum.create_forum_topic("u1", "A", "T", "x")
        post = await forum.create_forum_post("u2", "B", topic.id, "reply")
        await forum.cast_forum_vote("u1", post.id, "post", "up")
        return await forum.get_forum_posts(topic.id)

    posts = run(scenario())
    assert posts.documents[0]["voteScore"] == 1

    with pytest.raises(ValueError):
        run(forum.cast_forum_vote("u1", "x", "comment", "up"))
    with pytest.raises(ValueError):
        run(forum.cast_forum_vote("u1", "x", "post", "sideways"))
