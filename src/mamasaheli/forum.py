import asyncio
import logging
from typing import Any, Dict, List, Optional

from .config import get_settings
from .errors import handle_store_error
from .models import Document, DocumentList, TopicDeletionReport, VoteCounts
from .store import Permission, Query, Role, get_store, owner_permissions
from .utils import now_iso, to_iso

logger = logging.getLogger(__name__)

TOPIC_SORTS = {
    "lastReplyAt": "lastReplyAt",
    "createdAt": "$createdAt",
    "voteScore": "voteScore",
}
TOPIC_UPDATABLE = ("title", "content", "category", "isLocked", "isPinned")
TARGET_TYPES = ("topic", "post")
VOTE_TYPES = ("up", "down", "remove")
DELETE_BATCH_SIZE = 100


def _community_permissions(user_id: str) -> List[str]:
    return [Permission.read(Role.users())] + owner_permissions(user_id, "update", "delete")


def _author_name(user_name: Optional[str]) -> str:
    return (user_name or "").strip() or "Anonymous"


# ------------------------------------------------------------------------------
# Topics
# ------------------------------------------------------------------------------
async def create_forum_topic(
    user_id: str,
    user_name: Optional[str],
    title: str,
    content: str,
    category: Optional[str] = None,
    user_avatar_url: Optional[str] = None,
) -> Document:
    if not user_id or not title or not title.strip() or not content or not content.strip():
        raise ValueError("User ID, title, and content are required.")

    data: Dict[str, Any] = {
        "userId": user_id,
        "userName": _author_name(user_name),
        "title": title.strip(),
        "content": content.strip(),
        "lastReplyAt": now_iso(),
        "replyCount": 0,
        "isLocked": False,
        "isPinned": False,
        "voteScore": 0,
    }
    if user_avatar_url and user_avatar_url.strip():
        data["userAvatarUrl"] = user_avatar_url.strip()
    if category and category.strip():
        data["category"] = category.strip()

    try:
        store = await get_store()
        topic = await store.create_document(
            get_settings().forum_topics_collection_id, data, _community_permissions(user_id)
        )
    except Exception as e:
        raise handle_store_error(e, f"creating forum topic for user {user_id}")
    logger.info(f"Created forum topic {topic.id}")
    return topic


async def get_forum_topics(
    category: Optional[str] = None,
    limit: int = 25,
    offset: int = 0,
    sort_by: str = "lastReplyAt",
    search: Optional[str] = None,
) -> DocumentList:
    """Topics with pinned ones first, then by ``sort_by`` descending"""
    queries = [Query.limit(limit), Query.offset(offset)]
    if search and search.strip():
        queries.append(Query.search("title", search.strip()))
    if category and category.strip() and category.strip().lower() != "all":
        queries.append(Query.equal("category", category.strip()))
    queries.append(Query.order_desc("isPinned"))
    queries.append(Query.order_desc(TOPIC_SORTS.get(sort_by, "lastReplyAt")))

    try:
        store = await get_store()
        return await store.list_documents(get_settings().forum_topics_collection_id, queries)
    except Exception as e:
        handle_store_error(e, f"fetching forum topics (category: {category}, sort: {sort_by}, search: {search})")
        return DocumentList()


async def get_forum_topic(topic_id: str) -> Optional[Document]:
    if not topic_id:
        return None
    try:
        store = await get_store()
        return await store.get_document(get_settings().forum_topics_collection_id, topic_id)
    except Exception as e:
        handle_store_error(e, f"fetching forum topic {topic_id}")
        return None


async def update_forum_topic(topic_id: str, updates: Dict[str, Any]) -> Document:
    if not topic_id:
        raise ValueError("Topic ID is required.")
    data = {k: v for k, v in updates.items() if k in TOPIC_UPDATABLE and v is not None}
    if not data:
        raise ValueError("No valid fields provided for topic update.")
    try:
        store = await get_store()
        return await store.update_document(get_settings().forum_topics_collection_id, topic_id, data)
    except Exception as e:
        raise handle_store_error(e, f"updating forum topic {topic_id}")


async def _delete_posts_of_topic(topic_id: str) -> TopicDeletionReport:
    store = await get_store()
    collection_id = get_settings().forum_posts_collection_id
    report = TopicDeletionReport()
    cursor: Optional[str] = None

    while True:
        queries = [Query.equal("topicId", topic_id), Query.order_asc("$id"), Query.limit(DELETE_BATCH_SIZE)]
        if cursor:
            queries.append(Query.cursor_after(cursor))
        try:
            page = await store.list_documents(collection_id, queries)
        except Exception as e:
            handle_store_error(e, f"listing posts of topic {topic_id} for deletion")
            report.posts_failed += 1
            return report

        batch = page.documents
        if not batch:
            break
        results = await asyncio.gather(
            *(store.delete_document(collection_id, post.id) for post in batch),
            return_exceptions=True,
        )
        for post, result in zip(batch, results):
            if isinstance(result, Exception):
                report.posts_failed += 1
                cursor = post.id
                handle_store_error(result, f"deleting post {post.id} during topic {topic_id} cleanup")
            else:
                report.posts_deleted += 1
        if len(batch) < DELETE_BATCH_SIZE:
            break
    return report


async def delete_forum_topic_and_posts(topic_id: str) -> TopicDeletionReport:
    """Delete every post of a topic, then the topic itself"""
    if not topic_id or not topic_id.strip():
        raise ValueError("Invalid Topic ID provided for deletion.")

    report = await _delete_posts_of_topic(topic_id)
    try:
        store = await get_store()
        await store.delete_document(get_settings().forum_topics_collection_id, topic_id)
        report.topic_deleted = True
    except Exception as e:
        handle_store_error(e, f"deleting topic document {topic_id}")

    logger.info(
        f"Topic {topic_id}: {report.posts_deleted} posts deleted, "
        f"{report.posts_failed} failed, topic deleted: {report.topic_deleted}"
    )
    return report


# ------------------------------------------------------------------------------
# Posts
# ------------------------------------------------------------------------------
async def create_forum_post(
    user_id: str,
    user_name: Optional[str],
    topic_id: str,
    content: str,
    user_avatar_url: Optional[str] = None,
) -> Document:
    """Create a reply and bump the topic's reply count and last reply time"""
    if not user_id or not topic_id or not content or not content.strip():
        raise ValueError("User ID, Topic ID, and content are required.")

    settings = get_settings()
    data: Dict[str, Any] = {
        "userId": user_id,
        "userName": _author_name(user_name),
        "topicId": topic_id,
        "content": content.strip(),
        "voteScore": 0,
    }
    if user_avatar_url and user_avatar_url.strip():
        data["userAvatarUrl"] = user_avatar_url.strip()

    try:
        store = await get_store()
        post = await store.create_document(
            settings.forum_posts_collection_id, data, _community_permissions(user_id)
        )
    except Exception as e:
        raise handle_store_error(e, f"creating forum post for user {user_id} on topic {topic_id}")

    try:
        await store.increment_document_attribute(settings.forum_topics_collection_id, topic_id, "replyCount", 1)
        await store.update_document(
            settings.forum_topics_collection_id, topic_id, {"lastReplyAt": to_iso(post.created_at)}
        )
    except Exception as e:
        handle_store_error(e, f"updating topic metadata for {topic_id}")
    return post


async def get_forum_posts(
    topic_id: str, limit: int = 50, offset: int = 0, search: Optional[str] = None
) -> DocumentList:
    """Replies of a topic, oldest first"""
    if not topic_id:
        return DocumentList()
    queries = [Query.equal("topicId", topic_id), Query.limit(limit), Query.offset(offset)]
    if search and search.strip():
        queries.append(Query.search("content", search.strip()))
    queries.append(Query.order_asc("$createdAt"))
    try:
        store = await get_store()
        return await store.list_documents(get_settings().forum_posts_collection_id, queries)
    except Exception as e:
        handle_store_error(e, f"fetching posts for topic {topic_id}, search: {search}")
        return DocumentList()


async def update_forum_post(post_id: str, content: str) -> Document:
    if not post_id:
        raise ValueError("Post ID is required.")
    if not content or not content.strip():
        raise ValueError("Post content cannot be empty.")
    try:
        store = await get_store()
        return await store.update_document(
            get_settings().forum_posts_collection_id, post_id, {"content": content.strip()}
        )
    except Exception as e:
        raise handle_store_error(e, f"updating forum post {post_id}")


async def delete_forum_post(post_id: str, topic_id: str):
    """Delete a reply and roll back the topic's reply count and last reply time"""
    if not post_id or not topic_id:
        raise ValueError("Post ID and Topic ID are required for deletion.")

    settings = get_settings()
    store = await get_store()
    try:
        await store.delete_document(settings.forum_posts_collection_id, post_id)
    except Exception as e:
        raise handle_store_error(e, f"deleting forum post {post_id}")

    try:
        topic = await store.increment_document_attribute(
            settings.forum_topics_collection_id, topic_id, "replyCount", -1, min_value=0
        )
        remaining = await store.list_documents(
            settings.forum_posts_collection_id,
            [Query.equal("topicId", topic_id), Query.order_desc("$createdAt"), Query.limit(1)],
        )
        if remaining.documents:
            last_reply_at = to_iso(remaining.documents[0].created_at)
        else:
            last_reply_at = to_iso(topic.created_at)
        await store.update_document(settings.forum_topics_collection_id, topic_id, {"lastReplyAt": last_reply_at})
    except Exception as e:
        handle_store_error(e, f"updating topic metadata post-deletion for {topic_id}")


# ------------------------------------------------------------------------------
# Votes
# ------------------------------------------------------------------------------
def _target_collection(target_type: str) -> str:
    settings = get_settings()
    if target_type == "topic":
        return settings.forum_topics_collection_id
    if target_type == "post":
        return settings.forum_posts_collection_id
    raise ValueError(f"Invalid target type: {target_type}")


def vote_delta(previous: Optional[str], new: Optional[str]) -> int:
    """Change in score when a vote goes from ``previous`` to ``new`` (None = no vote)"""
    weight = {"up": 1, "down": -1, None: 0}
    return weight[new] - weight[previous]


async def _find_vote(user_id: str, target_id: str) -> Optional[Document]:
    store = await get_store()
    page = await store.list_documents(
        get_settings().forum_votes_collection_id,
        [Query.equal("userId", user_id), Query.equal("targetId", target_id), Query.limit(1)],
    )
    return page.documents[0] if page.documents else None


async def cast_forum_vote(user_id: str, target_id: str, target_type: str, vote_type: str) -> int:
    """
    Cast, change or remove a vote and return the applied score delta.

    Voting the same way twice removes the vote. The target's voteScore is
    adjusted with an atomic increment.
    """
    if not user_id or not target_id or not target_type:
        raise ValueError("User ID, Target ID, and Target Type are required.")
    if target_type not in TARGET_TYPES:
        raise ValueError(f"Invalid target type: {target_type}")
    if vote_type not in VOTE_TYPES:
        raise ValueError(f"Invalid vote type: {vote_type}")

    context = f"casting vote ({vote_type}) for {target_type} {target_id} by user {user_id}"
    votes_collection = get_settings().forum_votes_collection_id
    try:
        store = await get_store()
        existing = await _find_vote(user_id, target_id)
        previous = existing["voteType"] if existing else None

        if existing:
            if vote_type == "remove" or previous == vote_type:
                await store.delete_document(votes_collection, existing.id)
                current = None
            else:
                await store.update_document(votes_collection, existing.id, {"voteType": vote_type})
                current = vote_type
        elif vote_type != "remove":
            await store.create_document(
                votes_collection,
                {"userId": user_id, "targetId": target_id, "targetType": target_type, "voteType": vote_type},
                owner_permissions(user_id, "read", "update", "delete"),
            )
            current = vote_type
        else:
            current = None
    except Exception as e:
        raise handle_store_error(e, context)

    delta = vote_delta(previous, current)
    if delta:
        try:
            await store.increment_document_attribute(_target_collection(target_type), target_id, "voteScore", delta)
        except Exception as e:
            handle_store_error(e, f"updating vote score for {target_type} {target_id}")
            # the vote record is already written; rebuild the score from the records
            await recompute_vote_score(target_id, target_type)
    return delta


async def get_user_vote_status(user_id: str, target_id: str) -> str:
    """'up', 'down' or 'none'"""
    if not user_id or not target_id:
        return "none"
    try:
        vote = await _find_vote(user_id, target_id)
    except Exception as e:
        handle_store_error(e, f"getting user vote status for target {target_id}")
        return "none"
    return vote["voteType"] if vote else "none"


async def get_target_vote_counts(target_id: str) -> VoteCounts:
    if not target_id:
        return VoteCounts()
    try:
        store = await get_store()
        collection_id = get_settings().forum_votes_collection_id
        up, down = await asyncio.gather(
            store.list_documents(
                collection_id, [Query.equal("targetId", target_id), Query.equal("voteType", "up"), Query.limit(1)]
            ),
            store.list_documents(
                collection_id, [Query.equal("targetId", target_id), Query.equal("voteType", "down"), Query.limit(1)]
            ),
        )
    except Exception as e:
        handle_store_error(e, f"getting vote counts for target {target_id}")
        return VoteCounts()
    return VoteCounts(upvotes=up.total, downvotes=down.total, score=up.total - down.total)


async def recompute_vote_score(target_id: str, target_type: str) -> int:
    """Recount the votes of a target and overwrite its voteScore"""
    collection_id = _target_collection(target_type)
    counts = await get_target_vote_counts(target_id)
    try:
        store = await get_store()
        await store.update_document(collection_id, target_id, {"voteScore": counts.score})
    except Exception as e:
        raise handle_store_error(e, f"recomputing vote score for {target_type} {target_id}")
    logger.info(f"Recomputed voteScore for {target_type} {target_id}: {counts.score}")
    return counts.score
