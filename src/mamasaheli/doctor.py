import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .bloodwork import get_bloodwork_entries
from .config import get_settings
from .errors import handle_store_error
from .health import BLOOD_PRESSURE, BLOOD_SUGAR, WEIGHT, get_health_readings, get_user_appointments
from .medical_documents import get_user_medical_documents
from .models import Document
from .profiles import get_user_profile, get_user_profiles_by_ids
from .store import Query, get_store
from .utils import now_iso

logger = logging.getLogger(__name__)


@dataclass
class PatientOverview:
    profile: Optional[Document]
    blood_pressure: List[Document] = field(default_factory=list)
    blood_sugar: List[Document] = field(default_factory=list)
    weight: List[Document] = field(default_factory=list)
    appointments: List[Document] = field(default_factory=list)
    medical_documents: List[Document] = field(default_factory=list)
    bloodwork: List[Document] = field(default_factory=list)


@dataclass
class DoctorDashboard:
    upcoming_appointments: List[Document] = field(default_factory=list)
    recent_documents: List[Document] = field(default_factory=list)
    patients: Dict[str, Document] = field(default_factory=dict)


async def get_all_upcoming_appointments(limit: int = 50, now: Optional[str] = None) -> List[Document]:
    """Appointments across all patients from now on, soonest first"""
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().appointments_collection_id,
            [Query.greater_than_equal("date", now or now_iso()), Query.order_asc("date"), Query.limit(limit)],
        )
        return page.documents
    except Exception as e:
        handle_store_error(e, "fetching all upcoming appointments (doctor view)")
        return []


async def get_all_recent_medical_documents(limit: int = 50) -> List[Document]:
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().medical_documents_collection_id,
            [Query.order_desc("$createdAt"), Query.limit(limit)],
        )
        return page.documents
    except Exception as e:
        handle_store_error(e, "fetching all recent medical documents (doctor view)")
        return []


async def get_doctor_dashboard(limit: int = 50) -> DoctorDashboard:
    """Upcoming appointments and recent uploads with the patients they belong to"""
    await get_store()  # schema must exist before the concurrent reads
    appointments, documents = await asyncio.gather(
        get_all_upcoming_appointments(limit),
        get_all_recent_medical_documents(limit),
    )
    user_ids = [doc.get("userId") for doc in appointments + documents]
    patients = await get_user_profiles_by_ids(user_ids)
    return DoctorDashboard(upcoming_appointments=appointments, recent_documents=documents, patients=patients)


async def get_patient_overview(user_id: str) -> PatientOverview:
    """Everything a doctor reviews for one patient"""
    if not user_id:
        raise ValueError("Patient user ID is required.")
    await get_store()
    profile, bp, sugar, weight, appointments, documents, bloodwork = await asyncio.gather(
        get_user_profile(user_id),
        get_health_readings(BLOOD_PRESSURE, user_id, limit=10),
        get_health_readings(BLOOD_SUGAR, user_id, limit=10),
        get_health_readings(WEIGHT, user_id, limit=10),
        get_user_appointments(user_id),
        get_user_medical_documents(user_id),
        get_bloodwork_entries(user_id, limit=10),
    )
    logger.info(f"Loaded overview for patient {user_id}")
    return PatientOverview(
        profile=profile,
        blood_pressure=bp,
        blood_sugar=sugar,
        weight=weight,
        appointments=appointments,
        medical_documents=documents,
        bloodwork=bloodwork,
    )
