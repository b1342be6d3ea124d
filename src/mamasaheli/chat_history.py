import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .config import get_settings
from .db import decrypt, encrypt
from .errors import StoreError, handle_store_error
from .gemini_api import ChatContext, upcoming_only
from .health import get_latest_readings, get_user_appointments
from .models import ChatMessage, DeletionReport, Document, SessionSummary, StoredFile
from .storage import create_file, get_file_view_url
from .store import Query, get_store, owner_permissions
from .utils import format_distance_to_now, now_iso, parse_iso

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")
DEFAULT_MESSAGE_LIMIT = 200
HISTORY_PAGE_SIZE = 500
DELETE_BATCH_SIZE = 100
PREVIEW_LENGTH = 40
AI_STARTED_PREVIEW = "[AI Started Chat]"
UNKNOWN_DATE = "unknown date"


def _to_message(doc: Document) -> ChatMessage:
    return ChatMessage(
        id=doc.id,
        user_id=doc["userId"],
        role=doc["role"],
        content=decrypt(doc.get("content", "")),
        timestamp=doc["timestamp"],
        session_id=doc.get("sessionId") or "",
    )


def _parsed(timestamp: str) -> Optional[datetime]:
    try:
        return parse_iso(timestamp)
    except (TypeError, ValueError):
        return None


# ------------------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------------------
async def save_chat_message(user_id: str, role: str, content: str, session_id: str) -> ChatMessage:
    """Store one chat turn with its content encrypted"""
    content = (content or "").strip()
    if not user_id or not role or not content or not session_id:
        raise ValueError("user_id, role, content, and session_id are required")
    if role not in ROLES:
        raise ValueError("role must be 'user' or 'assistant'")

    try:
        store = await get_store()
        doc = await store.create_document(
            get_settings().chat_history_collection_id,
            {
                "userId": user_id,
                "role": role,
                "content": encrypt(content),
                "timestamp": now_iso(),
                "sessionId": session_id,
            },
            owner_permissions(user_id, "read", "delete"),
        )
    except Exception as e:
        raise handle_store_error(e, "saving chat message")
    return ChatMessage(
        id=doc.id, user_id=user_id, role=role, content=content,
        timestamp=doc["timestamp"], session_id=session_id,
    )


async def get_chat_history_for_session(
    user_id: str, session_id: str, page_size: int = HISTORY_PAGE_SIZE
) -> List[ChatMessage]:
    """Every message of one session, oldest first, fetched page by page"""
    if not user_id or not session_id:
        return []
    documents: List[Document] = []
    cursor: Optional[str] = None
    try:
        store = await get_store()
        while True:
            queries = [
                Query.equal("userId", user_id),
                Query.equal("sessionId", session_id),
                Query.order_asc("timestamp"),
                Query.limit(page_size),
            ]
            if cursor:
                queries.append(Query.cursor_after(cursor))
            page = await store.list_documents(get_settings().chat_history_collection_id, queries)
            documents.extend(page.documents)
            if len(page.documents) < page_size:
                break
            cursor = page.documents[-1].id
    except Exception as e:
        handle_store_error(e, f"fetching chat history for session {session_id}")
        return []
    return [_to_message(doc) for doc in documents]


# ------------------------------------------------------------------------------
# Session aggregation
# ------------------------------------------------------------------------------
def group_messages_by_session(messages: Sequence[ChatMessage]) -> Dict[str, List[ChatMessage]]:
    """
    Group messages by session id, each group ordered oldest first.

    Sessions keep the order in which they are first seen. Messages without a
    session id are skipped.
    """
    groups: Dict[str, List[ChatMessage]] = {}
    for message in messages:
        if not message.session_id:
            logger.warning(f"Skipping message {message.id} without a session id")
            continue
        groups.setdefault(message.session_id, []).append(message)

    for session_id, group in groups.items():
        parsed = [(_parsed(m.timestamp), i, m) for i, m in enumerate(group)]
        # unparsable timestamps go last, input order breaks ties
        parsed.sort(key=lambda item: (item[0] is None, item[0] or datetime.min, item[1]))
        groups[session_id] = [m for _, _, m in parsed]
    return groups


def session_preview(messages: Sequence[ChatMessage]) -> str:
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return AI_STARTED_PREVIEW
    text = first_user.content
    if len(text) > PREVIEW_LENGTH:
        return text[:PREVIEW_LENGTH] + "..."
    return text


def build_session_summaries(
    messages: Sequence[ChatMessage], now: Optional[datetime] = None
) -> List[SessionSummary]:
    """Summaries for each session, most recently active first"""
    ranked: List[Tuple[Optional[datetime], int, SessionSummary]] = []
    for index, (session_id, group) in enumerate(group_messages_by_session(messages).items()):
        try:
            stamps = [dt for dt in (_parsed(m.timestamp) for m in group) if dt is not None]
            latest = max(stamps) if stamps else None
            relative = format_distance_to_now(latest, now) if latest else UNKNOWN_DATE
            summary = SessionSummary(
                session_id=session_id,
                first_message_timestamp=group[0].timestamp,
                preview=session_preview(group),
                relative_date=relative,
                message_count=len(group),
            )
        except Exception as e:
            logger.warning(f"Could not summarize session {session_id}: {e}")
            continue
        ranked.append((latest, index, summary))

    parsable = sorted((r for r in ranked if r[0] is not None), key=lambda r: (-r[0].timestamp(), r[1]))
    unparsable = [r for r in ranked if r[0] is None]
    return [summary for _, _, summary in parsable + unparsable]


async def get_chat_sessions_list(
    user_id: str, message_limit: int = DEFAULT_MESSAGE_LIMIT, now: Optional[datetime] = None
) -> List[SessionSummary]:
    """Session summaries built from the user's most recent messages"""
    if not user_id:
        return []
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().chat_history_collection_id,
            [
                Query.equal("userId", user_id),
                Query.order_desc("timestamp"),
                Query.limit(message_limit),
            ],
        )
    except Exception as e:
        handle_store_error(e, "fetching chat sessions")
        return []

    messages: List[ChatMessage] = []
    for doc in page.documents:
        try:
            messages.append(_to_message(doc))
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping malformed chat message {doc.id}: {e}")
    return build_session_summaries(messages, now)


# ------------------------------------------------------------------------------
# Session deletion
# ------------------------------------------------------------------------------
async def delete_chat_session_history(user_id: str, session_id: str) -> DeletionReport:
    """
    Delete every message of a session in batches of 100.

    Deletions inside a batch run concurrently. Documents that fail to delete
    still exist, so the cursor moves to the last of them and they are not
    fetched again.
    """
    if not user_id or not session_id:
        raise ValueError("user_id and session_id are required")

    store = await get_store()
    collection_id = get_settings().chat_history_collection_id
    deleted_count = 0
    failed_count = 0
    cursor: Optional[str] = None

    while True:
        queries = [
            Query.equal("userId", user_id),
            Query.equal("sessionId", session_id),
            Query.order_asc("$id"),
            Query.limit(DELETE_BATCH_SIZE),
        ]
        if cursor:
            queries.append(Query.cursor_after(cursor))

        try:
            page = await store.list_documents(collection_id, queries)
        except Exception as e:
            handle_store_error(e, f"listing messages of session {session_id} for deletion")
            return DeletionReport(success=False, deleted_count=deleted_count, failed_count=failed_count + 1)

        batch = page.documents
        if not batch:
            break

        results = await asyncio.gather(
            *(store.delete_document(collection_id, doc.id) for doc in batch),
            return_exceptions=True,
        )
        for doc, result in zip(batch, results):
            if isinstance(result, Exception):
                failed_count += 1
                cursor = doc.id
                logger.error(f"Failed to delete message {doc.id}: {result}")
            else:
                deleted_count += 1

        if len(batch) < DELETE_BATCH_SIZE:
            break

    logger.info(f"Session {session_id}: deleted {deleted_count}, failed {failed_count}")
    return DeletionReport(success=failed_count == 0, deleted_count=deleted_count, failed_count=failed_count)


# ------------------------------------------------------------------------------
# Bookmarks
# ------------------------------------------------------------------------------
async def add_bookmark(user_id: str, message_content: str) -> Document:
    if not user_id or not message_content:
        raise ValueError("user_id and message_content are required")
    try:
        store = await get_store()
        return await store.create_document(
            get_settings().bookmarks_collection_id,
            {"userId": user_id, "messageContent": message_content, "bookmarkedAt": now_iso()},
            owner_permissions(user_id, "read", "delete"),
        )
    except Exception as e:
        raise handle_store_error(e, "adding bookmark")


async def get_bookmarks(user_id: str) -> List[Document]:
    if not user_id:
        return []
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().bookmarks_collection_id,
            [Query.equal("userId", user_id), Query.order_desc("bookmarkedAt"), Query.limit(100)],
        )
        return page.documents
    except Exception as e:
        handle_store_error(e, "fetching bookmarks")
        return []


async def delete_bookmark(bookmark_id: str):
    if not bookmark_id:
        raise ValueError("bookmark_id is required")
    try:
        store = await get_store()
        await store.delete_document(get_settings().bookmarks_collection_id, bookmark_id)
    except Exception as e:
        raise handle_store_error(e, f"deleting bookmark {bookmark_id}")


# ------------------------------------------------------------------------------
# Chat images
# ------------------------------------------------------------------------------
async def upload_chat_image(
    user_id: str, filename: str, content: bytes, mime_type: str
) -> Tuple[StoredFile, Optional[str]]:
    """Store an image attached to a chat turn and return it with its view URL"""
    if not user_id:
        raise ValueError("user_id is required")
    if not mime_type or not mime_type.startswith("image/"):
        raise ValueError("Only image files can be attached to a chat")
    bucket_id = get_settings().chat_images_bucket_id
    try:
        stored = await create_file(
            bucket_id, filename, content, mime_type,
            permissions=owner_permissions(user_id, "read", "delete"),
            owner_id=user_id,
        )
    except StoreError as e:
        raise handle_store_error(e, "uploading chat image")
    return stored, get_file_view_url(stored.id, bucket_id)


# ------------------------------------------------------------------------------
# Prompt context
# ------------------------------------------------------------------------------
async def get_recent_user_messages(user_id: str, limit: int = 10) -> List[str]:
    """Text of the user's latest messages, oldest first"""
    if not user_id:
        return []
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().chat_history_collection_id,
            [
                Query.equal("userId", user_id),
                Query.equal("role", "user"),
                Query.order_desc("timestamp"),
                Query.limit(limit),
            ],
        )
    except Exception as e:
        handle_store_error(e, "fetching recent user messages")
        return []
    return [decrypt(doc.get("content", "")) for doc in reversed(page.documents)]


async def load_chat_context(user_id: str) -> ChatContext:
    """Latest readings, upcoming appointments and recent concerns for the system prompt"""
    latest = await get_latest_readings(user_id)
    appointments = await get_user_appointments(user_id)
    return ChatContext(
        latest_bp=latest["bloodPressure"],
        latest_sugar=latest["bloodSugar"],
        latest_weight=latest["weight"],
        upcoming_appointments=upcoming_only(appointments),
        previous_concerns=await get_recent_user_messages(user_id),
    )
