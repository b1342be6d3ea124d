import pytest

from src.mamasaheli import doctor, health, medical_documents, profiles


def test_upcoming_appointments_span_all_patients(run):
    async def scenario():
        await health.create_appointment("u1", {"date": "2026-07-10T10:00:00.000Z", "time": "10:00"})
        await health.create_appointment("u2", {"date": "2026-07-06T09:00:00.000Z", "time": "09:00"})
        await health.create_appointment("u1", {"date": "2026-06-01T09:00:00.000Z", "time": "09:00"})
        return await doctor.get_all_upcoming_appointments(now="2026-07-05T00:00:00.000Z")

    upcoming = run(scenario())
    assert [(a["userId"], a["time"]) for a in upcoming] == [("u2", "09:00"), ("u1", "10:00")]


def test_dashboard_maps_patients(run):
    async def scenario():
        await profiles.create_user_profile("u1", {"name": "Priya"})
        await profiles.create_user_profile("u2", {"name": "Asha"})
        await health.create_appointment("u1", {"date": "2099-01-01T09:00:00.000Z", "time": "09:00"})
        await health.create_appointment("u3", {"date": "2000-01-01T09:00:00.000Z", "time": "09:00"})
        await medical_documents.upload_medical_document("u2", "scan.png", b"\x89PNG", "image/png")
        return await doctor.get_doctor_dashboard()

    dashboard = run(scenario())
    assert [a["userId"] for a in dashboard.upcoming_appointments] == ["u1"]
    assert [d["userId"] for d in dashboard.recent_documents] == ["u2"]
    assert {uid: p["name"] for uid, p in dashboard.patients.items()} == {"u1": "Priya", "u2": "Asha"}


def test_patient_overview(run):
    async def scenario():
        await profiles.create_user_profile("u1", {"name": "Priya"})
        await health.create_health_reading(health.BLOOD_PRESSURE, "u1", {"systolic": 110, "diastolic": 70})
        await health.create_health_reading(health.WEIGHT, "u2", {"weight": 70, "unit": "kg"})
        return await doctor.get_patient_overview("u1")

    overview = run(scenario())
    assert overview.profile["name"] == "Priya"
    assert len(overview.blood_pressure) == 1
    assert overview.weight == []
    assert overview.bloodwork == []

    with pytest.raises(ValueError):
        run(doctor.get_patient_overview(""))
