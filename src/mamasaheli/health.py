import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import get_settings
from .errors import handle_store_error
from .models import Document
from .store import Permission, Query, Role, get_store, owner_permissions
from .utils import now_iso

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Health readings
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class ReadingKind:
    label: str
    settings_attr: str
    numeric_fields: Tuple[str, ...]
    choice_fields: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()

    @property
    def collection_id(self) -> str:
        return getattr(get_settings(), self.settings_attr)

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return self.numeric_fields + tuple(name for name, _ in self.choice_fields)


BLOOD_PRESSURE = ReadingKind("Blood Pressure", "bp_collection_id", ("systolic", "diastolic"))
BLOOD_SUGAR = ReadingKind(
    "Blood Sugar", "sugar_collection_id", ("level",),
    (("measurementType", ("fasting", "post_meal", "random")),),
)
WEIGHT = ReadingKind("Weight", "weight_collection_id", ("weight",), (("unit", ("kg", "lbs")),))

READING_KINDS = {"bloodPressure": BLOOD_PRESSURE, "bloodSugar": BLOOD_SUGAR, "weight": WEIGHT}


def _validate_reading(kind: ReadingKind, data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    clean: Dict[str, Any] = {}
    for name in kind.required_fields:
        value = data.get(name)
        if value is None or str(value).strip() == "":
            if partial:
                continue
            raise ValueError(f"Field '{name}' required for {kind.label}.")
        clean[name] = value

    for name in kind.numeric_fields:
        if name not in clean:
            continue
        try:
            number = float(clean[name])
        except (TypeError, ValueError):
            raise ValueError(f"Field '{name}' must be a number for {kind.label}.")
        if number < 0:
            raise ValueError(f"Field '{name}' cannot be negative for {kind.label}.")
        clean[name] = int(number) if number.is_integer() else number

    for name, choices in kind.choice_fields:
        if name in clean and clean[name] not in choices:
            raise ValueError(f"Field '{name}' must be one of {', '.join(choices)}.")
    return clean


async def create_health_reading(kind: ReadingKind, user_id: str, data: Dict[str, Any]) -> Document:
    if not user_id or data is None:
        raise ValueError(f"User ID and data required for {kind.label}.")
    payload = {"userId": user_id, **_validate_reading(kind, data), "recordedAt": now_iso()}
    try:
        store = await get_store()
        return await store.create_document(
            kind.collection_id,
            payload,
            owner_permissions(user_id, "read", "update", "delete") + [Permission.read(Role.label("doctor"))],
        )
    except Exception as e:
        raise handle_store_error(e, f"creating {kind.label} reading for user {user_id}")


async def get_health_readings(kind: ReadingKind, user_id: str, limit: int = 50) -> List[Document]:
    """Most recent readings first"""
    if not user_id:
        return []
    try:
        store = await get_store()
        page = await store.list_documents(
            kind.collection_id,
            [Query.equal("userId", user_id), Query.order_desc("recordedAt"), Query.limit(limit)],
        )
        return page.documents
    except Exception as e:
        handle_store_error(e, f"fetching {kind.label} readings for user {user_id}")
        return []


async def update_health_reading(kind: ReadingKind, document_id: str, data: Dict[str, Any]) -> Document:
    if not document_id:
        raise ValueError(f"Document ID required for updating {kind.label}.")
    clean = _validate_reading(kind, data, partial=True)
    if not clean:
        raise ValueError(f"No valid fields provided for {kind.label} update.")
    try:
        store = await get_store()
        return await store.update_document(kind.collection_id, document_id, clean)
    except Exception as e:
        raise handle_store_error(e, f"updating {kind.label} reading {document_id}")


async def delete_health_reading(kind: ReadingKind, document_id: str):
    if not document_id:
        raise ValueError(f"Document ID required for deleting {kind.label}.")
    try:
        store = await get_store()
        await store.delete_document(kind.collection_id, document_id)
    except Exception as e:
        raise handle_store_error(e, f"deleting {kind.label} reading {document_id}")


async def get_latest_readings(user_id: str) -> Dict[str, Optional[Document]]:
    """The newest reading of each kind, keyed like READING_KINDS"""
    latest: Dict[str, Optional[Document]] = {}
    for key, kind in READING_KINDS.items():
        readings = await get_health_readings(kind, user_id, limit=1)
        latest[key] = readings[0] if readings else None
    return latest


# ------------------------------------------------------------------------------
# Medication reminders
# ------------------------------------------------------------------------------
def _clean_times(times: Optional[List[str]]) -> List[str]:
    return [t.strip() for t in times or [] if t and t.strip()]


async def create_medication_reminder(user_id: str, data: Dict[str, Any]) -> Document:
    name = (data.get("medicationName") or "").strip()
    dosage = (data.get("dosage") or "").strip()
    frequency = (data.get("frequency") or "").strip()
    if not user_id or not name or not dosage or not frequency:
        raise ValueError("User ID, name, dosage, frequency required.")

    payload: Dict[str, Any] = {
        "userId": user_id,
        "medicationName": name,
        "dosage": dosage,
        "frequency": frequency,
        "times": _clean_times(data.get("times")),
        "isActive": data.get("isActive", True),
    }
    notes = (data.get("notes") or "").strip()
    if notes:
        payload["notes"] = notes
    try:
        store = await get_store()
        return await store.create_document(
            get_settings().meds_collection_id, payload, owner_permissions(user_id, "read", "update", "delete")
        )
    except Exception as e:
        raise handle_store_error(e, f"creating medication reminder for user {user_id}")


async def get_medication_reminders(user_id: str, only_active: bool = True) -> List[Document]:
    if not user_id:
        return []
    queries = [Query.equal("userId", user_id), Query.order_desc("$createdAt"), Query.limit(50)]
    if only_active:
        queries.append(Query.equal("isActive", True))
    try:
        store = await get_store()
        page = await store.list_documents(get_settings().meds_collection_id, queries)
        return page.documents
    except Exception as e:
        handle_store_error(e, f"fetching medication reminders for user {user_id}")
        return []


async def update_medication_reminder(document_id: str, data: Dict[str, Any]) -> Document:
    if not document_id:
        raise ValueError("Document ID required for update.")
    clean = {k: v for k, v in data.items() if k != "userId" and v is not None}
    if "times" in clean:
        clean["times"] = _clean_times(clean["times"])
    if not clean:
        raise ValueError("No data provided for medication reminder update.")
    try:
        store = await get_store()
        return await store.update_document(get_settings().meds_collection_id, document_id, clean)
    except Exception as e:
        raise handle_store_error(e, f"updating medication reminder {document_id}")


async def delete_medication_reminder(document_id: str):
    if not document_id:
        raise ValueError("Document ID required for deletion.")
    try:
        store = await get_store()
        await store.delete_document(get_settings().meds_collection_id, document_id)
    except Exception as e:
        raise handle_store_error(e, f"deleting medication reminder {document_id}")


# ------------------------------------------------------------------------------
# Appointments
# ------------------------------------------------------------------------------
async def create_appointment(user_id: str, data: Dict[str, Any]) -> Document:
    date = (data.get("date") or "").strip()
    time = (data.get("time") or "").strip()
    if not user_id or not date or not time:
        raise ValueError("User ID, date, and time required.")

    payload: Dict[str, Any] = {
        "userId": user_id,
        "date": date,
        "time": time,
        "isCompleted": bool(data.get("isCompleted", False)),
        "appointmentType": (data.get("appointmentType") or "").strip() or "General",
    }
    notes = (data.get("notes") or "").strip()
    if notes:
        payload["notes"] = notes
    try:
        store = await get_store()
        return await store.create_document(
            get_settings().appointments_collection_id,
            payload,
            owner_permissions(user_id, "read", "update", "delete") + [Permission.read(Role.label("doctor"))],
        )
    except Exception as e:
        raise handle_store_error(e, f"creating appointment for user {user_id}")


async def get_user_appointments(user_id: str) -> List[Document]:
    """Appointments soonest first"""
    if not user_id:
        return []
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().appointments_collection_id,
            [Query.equal("userId", user_id), Query.order_asc("date"), Query.limit(100)],
        )
        return page.documents
    except Exception as e:
        handle_store_error(e, f"fetching appointments for user {user_id}")
        return []


async def update_appointment(document_id: str, data: Dict[str, Any]) -> Document:
    if not document_id:
        raise ValueError("Document ID required for update.")
    clean = {k: v for k, v in data.items() if k != "userId" and v is not None}
    if not clean:
        raise ValueError("No data provided for appointment update.")
    try:
        store = await get_store()
        return await store.update_document(get_settings().appointments_collection_id, document_id, clean)
    except Exception as e:
        raise handle_store_error(e, f"updating appointment {document_id}")


async def delete_appointment(document_id: str):
    if not document_id:
        raise ValueError("Document ID required for deletion.")
    try:
        store = await get_store()
        await store.delete_document(get_settings().appointments_collection_id, document_id)
    except Exception as e:
        raise handle_store_error(e, f"deleting appointment {document_id}")
