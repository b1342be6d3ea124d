import pytest

from src.mamasaheli import storage
from src.mamasaheli.errors import StoreError
from src.mamasaheli.store import owner_permissions


def test_upload_and_read_back(run, settings):
    async def scenario():
        stored = await storage.create_file(
            settings.medical_bucket_id,
            "scan.pdf",
            b"%PDF-1.4 data",
            "application/pdf",
            permissions=owner_permissions("u1", "read", "delete"),
            owner_id="u1",
        )
        meta = await storage.get_file(settings.medical_bucket_id, stored.id)
        assert meta.size_bytes == len(b"%PDF-1.4 data")

        _, content = await storage.get_file_content(settings.medical_bucket_id, stored.id, "u1")
        assert content == b"%PDF-1.4 data"

        with pytest.raises(StoreError) as exc:
            await storage.get_file_content(settings.medical_bucket_id, stored.id, "someone-else")
        assert exc.value.code == 401

        await storage.delete_file(settings.medical_bucket_id, stored.id)
        with pytest.raises(StoreError) as exc:
            await storage.get_file(settings.medical_bucket_id, stored.id)
        assert exc.value.code == 404

    run(scenario())


@pytest.mark.parametrize(
    "bucket_attr, filename, size, error_type",
    [
        ("profile_bucket_id", "photo.pdf", 10, "storage_file_type_unsupported"),
        ("profile_bucket_id", "photo.png", 5 * 1024 * 1024 + 1, "storage_invalid_file_size"),
        ("chat_images_bucket_id", "notes.txt", 10, "storage_file_type_unsupported"),
        ("medical_bucket_id", "report.exe", 10, "storage_file_type_unsupported"),
        ("medical_bucket_id", "empty.pdf", 0, "storage_file_empty"),
    ],
)
def test_bucket_rules_are_enforced(run, settings, bucket_attr, filename, size, error_type):
    with pytest.raises(StoreError) as exc:
        run(storage.create_file(getattr(settings, bucket_attr), filename, b"x" * size))
    assert exc.value.code == 400
    assert exc.value.type == error_type


def test_unknown_bucket(run):
    with pytest.raises(StoreError) as exc:
        run(storage.create_file("nope", "a.png", b"x"))
    assert exc.value.code == 404


def test_file_view_url(settings):
    assert (
        storage.get_file_view_url("abc", settings.profile_bucket_id)
        == "http://testserver/v1/storage/buckets/profile_bucket_id_test/files/abc/view"
    )
    assert storage.get_file_view_url("  ", settings.profile_bucket_id) is None
    assert storage.get_file_view_url("abc", "") is None
