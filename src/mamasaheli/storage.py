import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from .config import get_settings
from .db import get_engine, init_db
from .errors import StoreError
from .models import FileRecord, StoredFile
from .store import is_permitted
from .utils import unique_id

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "heic", "heif")


@dataclass(frozen=True)
class BucketRules:
    name: str
    maximum_file_size: int
    allowed_extensions: Tuple[str, ...]


def bucket_rules() -> Dict[str, BucketRules]:
    settings = get_settings()
    return {
        settings.profile_bucket_id: BucketRules(
            "Profile Photos", 5 * 1024 * 1024, ("jpg", "jpeg", "png", "gif", "webp")
        ),
        settings.medical_bucket_id: BucketRules(
            "Medical Documents",
            10 * 1024 * 1024,
            ("jpg", "jpeg", "png", "pdf", "doc", "docx", "txt", "heic", "heif"),
        ),
        settings.chat_images_bucket_id: BucketRules("Chat Images", 5 * 1024 * 1024, IMAGE_EXTENSIONS),
    }


def _extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lstrip(".").lower()


def _to_stored_file(record: FileRecord) -> StoredFile:
    return StoredFile(
        id=record.id,
        bucket_id=record.bucket_id,
        name=record.name,
        mime_type=record.mime_type,
        size_bytes=record.size_bytes,
        created_at=record.created_at,
    )


async def _get_record(session: AsyncSession, bucket_id: str, file_id: str) -> FileRecord:
    record = await session.get(FileRecord, file_id)
    if record is None or record.bucket_id != bucket_id:
        raise StoreError(
            f"File with the requested ID '{file_id}' could not be found.", 404, "storage_file_not_found"
        )
    return record


async def create_file(
    bucket_id: str,
    filename: str,
    content: bytes,
    mime_type: Optional[str] = None,
    permissions: Optional[Sequence[str]] = None,
    owner_id: Optional[str] = None,
    file_id: Optional[str] = None,
) -> StoredFile:
    """Upload a file into a bucket, enforcing the bucket's size and extension rules"""
    rules = bucket_rules().get(bucket_id)
    if rules is None:
        raise StoreError(f"Bucket '{bucket_id}' could not be found.", 404, "storage_bucket_not_found")
    if not content:
        raise StoreError("File is empty.", 400, "storage_file_empty")
    if len(content) > rules.maximum_file_size:
        raise StoreError(
            f"File size exceeds the {rules.name} limit of {rules.maximum_file_size} bytes.",
            400,
            "storage_invalid_file_size",
        )
    extension = _extension(filename)
    if extension not in rules.allowed_extensions:
        raise StoreError(
            f"File extension '{extension}' is not allowed in {rules.name}.",
            400,
            "storage_file_type_unsupported",
        )

    await init_db()
    record = FileRecord(
        id=file_id or unique_id(),
        bucket_id=bucket_id,
        name=filename,
        mime_type=mime_type or "application/octet-stream",
        size_bytes=len(content),
        owner_id=owner_id,
        permissions=list(permissions or []),
        content=content,
    )
    try:
        async with AsyncSession(get_engine(), expire_on_commit=False) as session:
            session.add(record)
            await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to store file {filename}: {e}")
        raise StoreError(f"Database error: {e}", 500, "general_database_error") from e
    logger.info(f"Stored file {record.id} ({record.size_bytes} bytes) in bucket {bucket_id}")
    return _to_stored_file(record)


async def get_file(bucket_id: str, file_id: str) -> StoredFile:
    await init_db()
    async with AsyncSession(get_engine()) as session:
        return _to_stored_file(await _get_record(session, bucket_id, file_id))


async def get_file_content(
    bucket_id: str, file_id: str, user_id: Optional[str] = None, labels: Sequence[str] = ()
) -> Tuple[StoredFile, bytes]:
    """Metadata and bytes of a file the caller is allowed to read"""
    await init_db()
    async with AsyncSession(get_engine()) as session:
        record = await _get_record(session, bucket_id, file_id)
        if not is_permitted(record.permissions, "read", user_id, labels):
            raise StoreError(
                "The current user is not authorized to perform the requested action.",
                401,
                "user_unauthorized",
            )
        return _to_stored_file(record), record.content


async def delete_file(bucket_id: str, file_id: str):
    await init_db()
    async with AsyncSession(get_engine()) as session:
        record = await _get_record(session, bucket_id, file_id)
        await session.delete(record)
        await session.commit()
    logger.info(f"Deleted file {file_id} from bucket {bucket_id}")


def get_file_view_url(file_id: str, bucket_id: str) -> Optional[str]:
    """Public view URL for a stored file, or None for blank ids"""
    if not file_id or not file_id.strip() or not bucket_id or not bucket_id.strip():
        return None
    base_url = get_settings().base_url
    return f"{base_url}/storage/buckets/{bucket_id}/files/{file_id}/view"
