"""
Collection-oriented document store.

Documents live in one SQL table, keyed by database id and collection id, with
their attributes in a JSON column. Listing takes query primitives for filters,
sort order, limit/offset and cursor pagination:

    store = await get_store()
    page = await store.list_documents(
        collection_id,
        [Query.equal("userId", user_id), Query.order_desc("timestamp"), Query.limit(200)],
    )
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .config import get_settings
from .db import get_engine, init_db
from .errors import StoreError
from .models import Document, DocumentList, DocumentRecord, utcnow
from .utils import to_iso, unique_id

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 25
MAX_LIMIT = 5000

FILTER_METHODS = {
    "equal", "notEqual", "greaterThan", "greaterThanEqual",
    "lessThan", "lessThanEqual", "search", "isNull", "isNotNull",
}
ORDER_METHODS = {"orderAsc", "orderDesc"}


# ------------------------------------------------------------------------------
# Query primitives
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class QueryClause:
    method: str
    attribute: Optional[str] = None
    values: Tuple[Any, ...] = ()


class Query:
    @staticmethod
    def equal(attribute: str, value: Any) -> QueryClause:
        values = tuple(value) if isinstance(value, (list, tuple, set)) else (value,)
        return QueryClause("equal", attribute, values)

    @staticmethod
    def not_equal(attribute: str, value: Any) -> QueryClause:
        return QueryClause("notEqual", attribute, (value,))

    @staticmethod
    def greater_than(attribute: str, value: Any) -> QueryClause:
        return QueryClause("greaterThan", attribute, (value,))

    @staticmethod
    def greater_than_equal(attribute: str, value: Any) -> QueryClause:
        return QueryClause("greaterThanEqual", attribute, (value,))

    @staticmethod
    def less_than(attribute: str, value: Any) -> QueryClause:
        return QueryClause("lessThan", attribute, (value,))

    @staticmethod
    def less_than_equal(attribute: str, value: Any) -> QueryClause:
        return QueryClause("lessThanEqual", attribute, (value,))

    @staticmethod
    def search(attribute: str, text: str) -> QueryClause:
        return QueryClause("search", attribute, (text,))

    @staticmethod
    def is_null(attribute: str) -> QueryClause:
        return QueryClause("isNull", attribute)

    @staticmethod
    def is_not_null(attribute: str) -> QueryClause:
        return QueryClause("isNotNull", attribute)

    @staticmethod
    def order_asc(attribute: str) -> QueryClause:
        return QueryClause("orderAsc", attribute)

    @staticmethod
    def order_desc(attribute: str) -> QueryClause:
        return QueryClause("orderDesc", attribute)

    @staticmethod
    def limit(count: int) -> QueryClause:
        return QueryClause("limit", values=(count,))

    @staticmethod
    def offset(count: int) -> QueryClause:
        return QueryClause("offset", values=(count,))

    @staticmethod
    def cursor_after(document_id: str) -> QueryClause:
        return QueryClause("cursorAfter", values=(document_id,))


# ------------------------------------------------------------------------------
# Permissions
# ------------------------------------------------------------------------------
class Role:
    @staticmethod
    def any() -> str:
        return "any"

    @staticmethod
    def users() -> str:
        return "users"

    @staticmethod
    def user(user_id: str) -> str:
        return f"user:{user_id}"

    @staticmethod
    def label(name: str) -> str:
        return f"label:{name}"


class Permission:
    @staticmethod
    def read(role: str) -> str:
        return f'read("{role}")'

    @staticmethod
    def update(role: str) -> str:
        return f'update("{role}")'

    @staticmethod
    def delete(role: str) -> str:
        return f'delete("{role}")'


def owner_permissions(user_id: str, *actions: str) -> List[str]:
    """Permission strings granting ``actions`` on a document to one user"""
    role = Role.user(user_id)
    builders = {"read": Permission.read, "update": Permission.update, "delete": Permission.delete}
    return [builders[action](role) for action in actions]


def is_permitted(
    permissions: Iterable[str],
    action: str,
    user_id: Optional[str] = None,
    labels: Sequence[str] = (),
) -> bool:
    """Whether a caller with ``user_id`` and ``labels`` may perform ``action``"""
    roles = {Role.any()}
    if user_id:
        roles.update({Role.users(), Role.user(user_id)})
        roles.update(Role.label(label) for label in labels)
    return any(f'{action}("{role}")' in permissions for role in roles)


# ------------------------------------------------------------------------------
# Query evaluation
# ------------------------------------------------------------------------------
def _attribute(doc: Document, attribute: str) -> Any:
    if attribute == "$id":
        return doc.id
    if attribute == "$createdAt":
        return to_iso(doc.created_at)
    if attribute == "$updatedAt":
        return to_iso(doc.updated_at)
    return doc.data.get(attribute)


def _compare(method: str, value: Any, target: Any) -> bool:
    if value is None:
        return False
    try:
        if method == "greaterThan":
            return value > target
        if method == "greaterThanEqual":
            return value >= target
        if method == "lessThan":
            return value < target
        if method == "lessThanEqual":
            return value <= target
    except TypeError:
        return False
    raise StoreError(f"Unknown comparison: {method}", 400, "general_query_invalid")


def _matches(doc: Document, clause: QueryClause) -> bool:
    value = _attribute(doc, clause.attribute)
    method = clause.method

    if method == "equal":
        return value in clause.values
    if method == "notEqual":
        return value != clause.values[0]
    if method == "isNull":
        return value is None
    if method == "isNotNull":
        return value is not None
    if method == "search":
        if not isinstance(value, str):
            return False
        haystack = value.lower()
        return all(word in haystack for word in str(clause.values[0]).lower().split())
    return _compare(method, value, clause.values[0])


_JSON_ACCESSORS = {bool: "as_boolean", str: "as_string", int: "as_integer", float: "as_float"}


def _sql_equal(clause: QueryClause):
    """SQL condition for an equal clause, or None when it has to run in Python"""
    values = list(clause.values)
    if not values:
        return None
    # owner_id mirrors userId
    if clause.attribute == "userId":
        return DocumentRecord.owner_id.in_(values)
    if clause.attribute == "$id":
        return DocumentRecord.id.in_(values)
    if not clause.attribute or clause.attribute.startswith("$"):
        return None
    kinds = {type(value) for value in values}
    accessor = _JSON_ACCESSORS.get(kinds.pop()) if len(kinds) == 1 else None
    if accessor is None:
        return None
    return getattr(DocumentRecord.data[clause.attribute], accessor)().in_(values)


def _sort_key(value: Any) -> Tuple[int, Any]:
    if isinstance(value, (int, float)):
        return (0, value)
    return (1, str(value))


def _apply_orders(docs: List[Document], orders: List[QueryClause]) -> List[Document]:
    # stable sorts applied last-to-first give a multi-key ordering
    for clause in reversed(orders):
        present = [d for d in docs if _attribute(d, clause.attribute) is not None]
        missing = [d for d in docs if _attribute(d, clause.attribute) is None]
        present.sort(
            key=lambda d: _sort_key(_attribute(d, clause.attribute)),
            reverse=clause.method == "orderDesc",
        )
        docs = present + missing
    return docs


def _single_int(clause: QueryClause) -> int:
    try:
        value = int(clause.values[0])
    except (IndexError, TypeError, ValueError):
        raise StoreError(f"Invalid {clause.method} value", 400, "general_query_invalid")
    if value < 0:
        raise StoreError(f"{clause.method} must not be negative", 400, "general_query_invalid")
    return value


def _to_document(record: DocumentRecord) -> Document:
    created_at = record.created_at
    updated_at = record.updated_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return Document(
        id=record.id,
        collection_id=record.collection_id,
        database_id=record.database_id,
        created_at=created_at,
        updated_at=updated_at,
        permissions=list(record.permissions or []),
        data=dict(record.data or {}),
    )


def _clean_data(data: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise StoreError("Document data must be an object", 400, "document_invalid_structure")
    return {k: v for k, v in data.items() if not str(k).startswith("$")}


# ------------------------------------------------------------------------------
# Store
# ------------------------------------------------------------------------------
class DocumentStore:
    def __init__(self, engine: AsyncEngine, database_id: str):
        self.engine = engine
        self.database_id = database_id
        self._locks: Dict[str, asyncio.Lock] = {}
        # sqlite allows one writer at a time
        self._serialize_writes = engine.dialect.name == "sqlite"
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _session(self):
        try:
            async with AsyncSession(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Database error: {e}")
            raise StoreError(f"Database error: {e}", 500, "general_database_error") from e

    @asynccontextmanager
    async def _writing(self):
        if not self._serialize_writes:
            yield
            return
        async with self._write_lock:
            yield

    async def _get_record(
        self, session: AsyncSession, collection_id: str, document_id: str, for_update: bool = False
    ) -> DocumentRecord:
        stmt = select(DocumentRecord).where(
            DocumentRecord.database_id == self.database_id,
            DocumentRecord.collection_id == collection_id,
            DocumentRecord.id == document_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        record = result.scalars().first()
        if record is None:
            raise StoreError(
                f"Document with the requested ID '{document_id}' could not be found.",
                404,
                "document_not_found",
            )
        return record

    async def create_document(
        self,
        collection_id: str,
        data: Dict[str, Any],
        permissions: Optional[List[str]] = None,
        document_id: Optional[str] = None,
    ) -> Document:
        if not collection_id:
            raise StoreError("Collection ID is required", 400, "collection_not_found")
        data = _clean_data(data)
        now = utcnow()
        record = DocumentRecord(
            id=document_id or unique_id(),
            database_id=self.database_id,
            collection_id=collection_id,
            owner_id=data.get("userId"),
            data=data,
            permissions=list(permissions or []),
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._writing(), self._session() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
        except StoreError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise StoreError(
                    f"Document with the requested ID '{record.id}' already exists.",
                    409,
                    "document_already_exists",
                ) from e.__cause__
            raise
        logger.debug(f"Created document {record.id} in {collection_id}")
        return _to_document(record)

    async def get_document(self, collection_id: str, document_id: str) -> Document:
        async with self._session() as session:
            record = await self._get_record(session, collection_id, document_id)
            return _to_document(record)

    async def list_documents(
        self, collection_id: str, queries: Optional[Sequence[QueryClause]] = None
    ) -> DocumentList:
        queries = list(queries or [])
        filters = [q for q in queries if q.method in FILTER_METHODS]
        orders = [q for q in queries if q.method in ORDER_METHODS]
        limit = DEFAULT_LIMIT
        offset = 0
        cursor: Optional[str] = None

        for clause in queries:
            if clause.method == "limit":
                limit = _single_int(clause)
                if limit > MAX_LIMIT:
                    raise StoreError(
                        f"Limit must be at most {MAX_LIMIT}", 400, "general_query_invalid"
                    )
            elif clause.method == "offset":
                offset = _single_int(clause)
            elif clause.method == "cursorAfter":
                cursor = clause.values[0]
            elif clause.method not in FILTER_METHODS and clause.method not in ORDER_METHODS:
                raise StoreError(f"Invalid query method: {clause.method}", 400, "general_query_invalid")

        stmt = select(DocumentRecord).where(
            DocumentRecord.database_id == self.database_id,
            DocumentRecord.collection_id == collection_id,
        )
        for clause in filters:
            condition = _sql_equal(clause) if clause.method == "equal" else None
            if condition is not None:
                stmt = stmt.where(condition)
        stmt = stmt.order_by(DocumentRecord.seq)

        async with self._session() as session:
            result = await session.execute(stmt)
            records = result.scalars().all()

        docs = [_to_document(r) for r in records]
        docs = [d for d in docs if all(_matches(d, clause) for clause in filters)]
        docs = _apply_orders(docs, orders)
        total = len(docs)

        if cursor is not None:
            position = next((i for i, d in enumerate(docs) if d.id == cursor), None)
            if position is None:
                raise StoreError(
                    f"Cursor document '{cursor}' not found in result set", 400, "cursor_not_found"
                )
            docs = docs[position + 1:]

        return DocumentList(total=total, documents=docs[offset:offset + limit])

    async def update_document(self, collection_id: str, document_id: str, data: Dict[str, Any]) -> Document:
        data = _clean_data(data)
        async with self._writing(), self._session() as session:
            record = await self._get_record(session, collection_id, document_id)
            merged = {**(record.data or {}), **data}
            record.data = merged
            record.owner_id = merged.get("userId")
            record.updated_at = utcnow()
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return _to_document(record)

    async def delete_document(self, collection_id: str, document_id: str):
        async with self._writing(), self._session() as session:
            record = await self._get_record(session, collection_id, document_id)
            await session.delete(record)
            await session.commit()
        logger.debug(f"Deleted document {document_id} from {collection_id}")

    async def increment_document_attribute(
        self,
        collection_id: str,
        document_id: str,
        attribute: str,
        delta: float = 1,
        min_value: Optional[float] = None,
    ) -> Document:
        """Add ``delta`` to a numeric attribute in a single locked transaction"""
        key = f"{collection_id}/{document_id}"
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            async with self._writing(), self._session() as session:
                record = await self._get_record(session, collection_id, document_id, for_update=True)
                current = (record.data or {}).get(attribute) or 0
                if not isinstance(current, (int, float)):
                    raise StoreError(
                        f"Attribute '{attribute}' is not numeric", 400, "attribute_type_invalid"
                    )
                value = current + delta
                if min_value is not None:
                    value = max(min_value, value)
                record.data = {**record.data, attribute: value}
                record.updated_at = utcnow()
                session.add(record)
                await session.commit()
                await session.refresh(record)
                return _to_document(record)


_store: Optional[DocumentStore] = None


async def get_store() -> DocumentStore:
    """Get or create the document store bound to the configured database"""
    global _store
    if _store is None:
        await init_db()
        _store = DocumentStore(get_engine(), get_settings().database_id)
    return _store


def reset_store():
    global _store
    _store = None
