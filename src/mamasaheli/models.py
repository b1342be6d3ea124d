from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, LargeBinary
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ------------------------------------------------------------------------------
# Tables
# ------------------------------------------------------------------------------
class DocumentRecord(SQLModel, table=True):
    """A document in a collection, attributes kept as a JSON blob"""
    __tablename__ = "documents"

    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(index=True, unique=True)
    database_id: str = Field(index=True)
    collection_id: str = Field(index=True)
    owner_id: Optional[str] = Field(default=None, index=True)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    permissions: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FileRecord(SQLModel, table=True):
    """A stored file inside a bucket"""
    __tablename__ = "files"

    id: str = Field(primary_key=True)
    bucket_id: str = Field(index=True)
    name: str
    mime_type: str
    size_bytes: int
    owner_id: Optional[str] = Field(default=None, index=True)
    permissions: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    content: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)


class Account(SQLModel, table=True):
    """Login identity; profile data lives in the profiles collection"""
    id: str = Field(primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    password_hash: bytes
    salt: bytes
    labels: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)


class AuthSession(SQLModel, table=True):
    id: str = Field(primary_key=True)
    user_id: str = Field(foreign_key="account.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


# ------------------------------------------------------------------------------
# Value models
# ------------------------------------------------------------------------------
class Document(SQLModel):
    """Document as returned to callers: system attributes plus its data"""
    id: str
    collection_id: str
    database_id: str
    created_at: datetime
    updated_at: datetime
    permissions: List[str] = []
    data: Dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]


class DocumentList(SQLModel):
    total: int = 0
    documents: List[Document] = []


class StoredFile(SQLModel):
    id: str
    bucket_id: str
    name: str
    mime_type: str
    size_bytes: int
    created_at: datetime


class User(SQLModel):
    id: str
    email: str
    name: str
    labels: List[str] = []


class ChatMessage(SQLModel):
    id: str
    user_id: str
    role: str
    content: str
    timestamp: str
    session_id: str


class SessionSummary(SQLModel):
    session_id: str
    first_message_timestamp: str
    preview: str
    relative_date: str
    message_count: int


class DeletionReport(SQLModel):
    success: bool
    deleted_count: int = 0
    failed_count: int = 0


class TopicDeletionReport(SQLModel):
    posts_deleted: int = 0
    posts_failed: int = 0
    topic_deleted: bool = False


class VoteCounts(SQLModel):
    upvotes: int = 0
    downvotes: int = 0
    score: int = 0


class BloodworkResult(SQLModel):
    name: str
    value: str = ""
    unit: str = ""
    referenceRange: str = ""
    flag: str = "N/A"


class ParsedBloodwork(SQLModel):
    results: List[BloodworkResult] = []
    allTestNames: List[str] = []
    summary: str = ""
