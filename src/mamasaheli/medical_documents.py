import logging
from typing import List, Optional, Sequence, Tuple

from .config import get_settings
from .errors import handle_store_error
from .models import Document, StoredFile
from .storage import create_file, delete_file, get_file_content
from .store import Permission, Query, Role, get_store, owner_permissions

logger = logging.getLogger(__name__)


async def upload_medical_document(
    user_id: str,
    filename: str,
    content: bytes,
    mime_type: Optional[str] = None,
    description: Optional[str] = None,
) -> StoredFile:
    """
    Store a medical file and record it in the medical documents collection.

    The stored file is removed again if the record cannot be written.
    """
    if not user_id or not filename or not content:
        raise ValueError("User ID and file required.")

    settings = get_settings()
    doctor_read = Permission.read(Role.label("doctor"))
    try:
        stored = await create_file(
            settings.medical_bucket_id, filename, content, mime_type,
            permissions=owner_permissions(user_id, "read", "delete") + [doctor_read],
            owner_id=user_id,
        )
    except Exception as e:
        raise handle_store_error(e, f"uploading medical document for user {user_id}")

    data = {
        "userId": user_id,
        "fileId": stored.id,
        "fileName": filename,
        "documentType": mime_type or "application/octet-stream",
    }
    if description and description.strip():
        data["description"] = description.strip()

    try:
        store = await get_store()
        await store.create_document(
            settings.medical_documents_collection_id,
            data,
            owner_permissions(user_id, "read", "update", "delete") + [doctor_read],
        )
    except Exception as e:
        logger.warning(f"DB record failed after file upload ({stored.id}). Deleting orphaned file.")
        try:
            await delete_file(settings.medical_bucket_id, stored.id)
        except Exception as cleanup_error:
            handle_store_error(cleanup_error, f"deleting orphaned medical file {stored.id}")
        raise handle_store_error(e, f"recording medical document for user {user_id}")
    return stored


async def get_user_medical_documents(user_id: str) -> List[Document]:
    if not user_id:
        return []
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().medical_documents_collection_id,
            [Query.equal("userId", user_id), Query.order_desc("$createdAt"), Query.limit(100)],
        )
        return page.documents
    except Exception as e:
        handle_store_error(e, f"fetching medical documents for user {user_id}")
        return []


async def get_medical_document_content(
    document: Document, user_id: str, labels: Sequence[str] = ()
) -> Tuple[StoredFile, bytes]:
    """File metadata and bytes of a medical document the caller may read"""
    if not document or not document.get("fileId"):
        raise ValueError("Invalid document.")
    try:
        return await get_file_content(get_settings().medical_bucket_id, document["fileId"], user_id, labels)
    except Exception as e:
        raise handle_store_error(e, f"reading medical document {document.id}")


async def delete_medical_document(document: Document):
    """Delete both the stored file and its record"""
    if not document or not document.id or not document.get("fileId"):
        raise ValueError("Invalid document for deletion.")
    settings = get_settings()
    try:
        await delete_file(settings.medical_bucket_id, document["fileId"])
        store = await get_store()
        await store.delete_document(settings.medical_documents_collection_id, document.id)
    except Exception as e:
        raise handle_store_error(
            e, f"deleting medical document (DocID: {document.id}, FileID: {document.get('fileId')})"
        )
