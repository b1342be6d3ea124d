import pytest

from src.mamasaheli import profiles
from src.mamasaheli.store import get_store


def test_create_is_an_upsert(run, settings):
    async def scenario():
        first = await profiles.create_user_profile(
            "u1", {"name": "Priya Sharma", "email": "priya@example.com", "lmpDate": "2026-01-01"}
        )
        second = await profiles.create_user_profile("u1", {"age": 29, "profilePhotoUrl": "http://evil"})
        store = await get_store()
        page = await store.list_documents(settings.profiles_collection_id)
        return first, second, page

    first, second, page = run(scenario())
    assert page.total == 1
    assert second.id == first.id
    assert second["age"] == 29
    assert second["name"] == "Priya Sharma"
    assert first["estimatedDueDate"] == "2026-10-08"
    assert first["dietaryPreferences"] == []
    assert first["profilePhotoUrl"] is None
    assert 'read("label:doctor")' in first.permissions


def test_update_strips_protected_fields(run):
    async def scenario():
        profile = await profiles.create_user_profile("u1", {"name": "Asha", "email": "asha@example.com"})
        updated = await profiles.update_user_profile(
            profile.id,
            {"userId": "u2", "email": "new@example.com", "dietaryPreferences": None, "name": "Asha K"},
        )
        untouched = await profiles.update_user_profile(profile.id, {"email": "x@example.com"})
        return updated, untouched

    updated, untouched = run(scenario())
    assert updated["userId"] == "u1"
    assert updated["email"] == "asha@example.com"
    assert updated["name"] == "Asha K"
    assert updated["dietaryPreferences"] == []
    assert untouched["email"] == "asha@example.com"


def test_profile_photo_upload_sets_view_url(run):
    async def scenario():
        stored = await profiles.upload_profile_photo("u1", "me.jpg", b"\xff\xd8jpeg", "image/jpeg")
        profile = await profiles.get_user_profile("u1")
        return stored, profile

    stored, profile = run(scenario())
    assert profile["profilePhotoId"] == stored.id
    assert profile["profilePhotoUrl"] == (
        f"http://testserver/v1/storage/buckets/profile_bucket_id_test/files/{stored.id}/view"
    )


def test_search_merges_name_and_email_matches(run):
    async def scenario():
        await profiles.create_user_profile("u1", {"name": "Meera Patel", "email": "meera@example.com"})
        await profiles.create_user_profile("u2", {"name": "Sunita Rao", "email": "sunita.meera@example.com"})
        await profiles.create_user_profile("u3", {"name": "Kavya Iyer", "email": "kavya@example.com"})
        return await profiles.search_user_profiles("meera")

    results = run(scenario())
    assert sorted(p["userId"] for p in results) == ["u1", "u2"]


def test_profiles_by_ids_and_recent(run):
    async def scenario():
        for uid in ("u1", "u2", "u3"):
            await profiles.create_user_profile(uid, {"name": uid.upper()})
        by_ids = await profiles.get_user_profiles_by_ids(["u1", "u3", "u1", "", "missing"])
        recent = await profiles.get_recent_user_profiles(limit=2)
        empty = await profiles.get_user_profiles_by_ids([])
        return by_ids, recent, empty

    by_ids, recent, empty = run(scenario())
    assert set(by_ids) == {"u1", "u3"}
    assert by_ids["u3"]["name"] == "U3"
    assert len(recent) == 2
    assert empty == {}


def test_profile_requires_user_id(run):
    with pytest.raises(ValueError):
        run(profiles.create_user_profile("", {"name": "x"}))
    assert run(profiles.get_user_profile("")) is None
