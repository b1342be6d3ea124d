import asyncio
import logging
from typing import Any, Dict, List, Optional

from .config import get_settings
from .errors import StoreError, handle_store_error
from .models import Document, StoredFile
from .storage import create_file, get_file_view_url
from .store import Permission, Query, Role, get_store, owner_permissions
from .utils import calculate_estimated_due_date

logger = logging.getLogger(__name__)

# never written through a profile update
PROTECTED_FIELDS = ("userId", "email", "profilePhotoUrl")
SEARCH_LIMIT = 15


def _prepare(profile: Document) -> Document:
    """Attach the photo view URL and normalise dietaryPreferences"""
    photo_id = profile.get("profilePhotoId")
    profile.data["profilePhotoUrl"] = (
        get_file_view_url(photo_id, get_settings().profile_bucket_id) if photo_id else None
    )
    if not isinstance(profile.get("dietaryPreferences"), list):
        profile.data["dietaryPreferences"] = []
    return profile


def _with_due_date(data: Dict[str, Any]) -> Dict[str, Any]:
    if data.get("lmpDate") and not data.get("estimatedDueDate"):
        try:
            data["estimatedDueDate"] = calculate_estimated_due_date(data["lmpDate"])
        except ValueError:
            logger.warning(f"Ignoring unparsable lmpDate {data['lmpDate']!r}")
    return data


# ------------------------------------------------------------------------------
# Own profile
# ------------------------------------------------------------------------------
async def get_user_profile(user_id: str) -> Optional[Document]:
    if not user_id:
        return None
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().profiles_collection_id, [Query.equal("userId", user_id), Query.limit(1)]
        )
    except Exception as e:
        handle_store_error(e, f"fetching profile for user {user_id}")
        return None
    return _prepare(page.documents[0]) if page.documents else None


async def create_user_profile(user_id: str, profile_data: Dict[str, Any]) -> Document:
    """Create the user's profile, or update it when one already exists"""
    if not user_id:
        raise ValueError("User ID required for profile.")

    existing = await get_user_profile(user_id)
    if existing:
        return await update_user_profile(existing.id, profile_data)

    data = {k: v for k, v in profile_data.items() if k != "profilePhotoUrl"}
    data["userId"] = user_id
    if not isinstance(data.get("dietaryPreferences"), list):
        data["dietaryPreferences"] = []
    try:
        store = await get_store()
        profile = await store.create_document(
            get_settings().profiles_collection_id,
            _with_due_date(data),
            owner_permissions(user_id, "read", "update", "delete")
            + [Permission.read(Role.label("doctor"))],
        )
    except Exception as e:
        raise handle_store_error(e, f"creating/updating profile for user {user_id}")
    logger.info(f"Created profile {profile.id} for user {user_id}")
    return _prepare(profile)


async def update_user_profile(profile_id: str, profile_data: Dict[str, Any]) -> Document:
    if not profile_id:
        raise ValueError("Profile document ID required for update.")

    data = {k: v for k, v in profile_data.items() if k not in PROTECTED_FIELDS and v is not None}
    if "dietaryPreferences" in profile_data and profile_data["dietaryPreferences"] is None:
        data["dietaryPreferences"] = []
    elif "dietaryPreferences" in data and not isinstance(data["dietaryPreferences"], list):
        logger.warning("update_user_profile: dietaryPreferences is not a list, ignoring")
        del data["dietaryPreferences"]

    collection_id = get_settings().profiles_collection_id
    try:
        store = await get_store()
        if not data:
            return _prepare(await store.get_document(collection_id, profile_id))
        return _prepare(await store.update_document(collection_id, profile_id, _with_due_date(data)))
    except Exception as e:
        raise handle_store_error(e, f"updating profile document {profile_id}")


async def upload_profile_photo(user_id: str, filename: str, content: bytes, mime_type: Optional[str] = None) -> StoredFile:
    """Store a profile photo and point the user's profile at it"""
    if not user_id:
        raise ValueError("User ID required for profile photo permissions.")
    try:
        stored = await create_file(
            get_settings().profile_bucket_id, filename, content, mime_type,
            permissions=owner_permissions(user_id, "read"),
            owner_id=user_id,
        )
    except StoreError as e:
        raise handle_store_error(e, f"uploading profile photo for user {user_id}")
    await create_user_profile(user_id, {"profilePhotoId": stored.id})
    return stored


# ------------------------------------------------------------------------------
# Lookups across users
# ------------------------------------------------------------------------------
async def search_user_profiles(query: str) -> List[Document]:
    """Profiles whose name or email matches, deduplicated by document id"""
    if not query or not query.strip():
        return []
    collection_id = get_settings().profiles_collection_id
    try:
        store = await get_store()
        by_name, by_email = await asyncio.gather(
            store.list_documents(collection_id, [Query.search("name", query.strip()), Query.limit(SEARCH_LIMIT)]),
            store.list_documents(collection_id, [Query.search("email", query.strip()), Query.limit(SEARCH_LIMIT)]),
        )
    except Exception as e:
        handle_store_error(e, f'searching user profiles with query "{query}"')
        return []

    combined: Dict[str, Document] = {}
    for doc in by_name.documents + by_email.documents:
        combined[doc.id] = doc
    return [_prepare(doc) for doc in combined.values()]


async def get_user_profiles_by_ids(user_ids: List[str]) -> Dict[str, Document]:
    """Profiles keyed by userId"""
    unique_ids = list(dict.fromkeys(uid for uid in user_ids or [] if uid))
    if not unique_ids:
        return {}
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().profiles_collection_id,
            [Query.equal("userId", unique_ids), Query.limit(len(unique_ids))],
        )
    except Exception as e:
        handle_store_error(e, "fetching profiles for user IDs")
        return {}
    return {doc["userId"]: _prepare(doc) for doc in page.documents}


async def get_recent_user_profiles(limit: int = 10) -> List[Document]:
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().profiles_collection_id, [Query.order_desc("$updatedAt"), Query.limit(limit)]
        )
    except Exception as e:
        handle_store_error(e, "fetching recent user profiles")
        return []
    return [_prepare(doc) for doc in page.documents]
