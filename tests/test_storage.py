from __future__ import annotations

import pytest

import storage
from tests.conftest import PROJECT_URL


@pytest.fixture
def cache():
    return storage.PublicUrlCache()


def test_public_url_is_cached_until_deletion(client, cache):
    url = storage.upload_file(client, "documents", "certificats/1_a.pdf", b"%PDF", cache)
    assert url == f"{PROJECT_URL}/storage/v1/object/public/documents/certificats/1_a.pdf"
    calls = client.storage.url_calls
    assert storage.get_public_url(client, "documents", "certificats/1_a.pdf", cache) == url
    assert client.storage.url_calls == calls
    assert ("documents", "certificats/1_a.pdf") in cache

    storage.delete_file(client, "documents", "certificats/1_a.pdf", cache)
    assert ("documents", "certificats/1_a.pdf") not in cache
    assert ("documents", "certificats/1_a.pdf") not in client.storage.files


def test_upload_sets_content_type(client, cache):
    storage.upload_file(client, "documents", "certificats/x.png", b"png", cache)
    _, options = client.storage.files[("documents", "certificats/x.png")]
    assert options["content-type"] == "image/png"
    assert options["upsert"] == "false"


def test_upload_failure_raises_storage_error(client, cache):
    storage.upload_file(client, "documents", "certificats/x.pdf", b"1", cache)
    with pytest.raises(storage.StorageError):
        storage.upload_file(client, "documents", "certificats/x.pdf", b"2", cache)


def test_split_public_url():
    url = f"{PROJECT_URL}/storage/v1/object/public/documents/certificats/1_a.pdf?download=1"
    assert storage.split_public_url(url) == ("documents", "certificats/1_a.pdf")
    with pytest.raises(storage.StorageError):
        storage.split_public_url("https://example.com/file.pdf")


def test_document_path_is_timestamped_and_sanitized():
    assert storage.document_path("Certificat médical.pdf", 1700000000000) == \
        "certificats/1700000000000_Certificat_medical.pdf"


def test_member_document_lifecycle(client, cache):
    entry = storage.upload_member_document(client, "certif 2025.pdf", b"%PDF", cache, now_ms=42)
    assert entry["name"] == "certif_2025.pdf"
    assert ("documents", "certificats/42_certif_2025.pdf") in client.storage.files

    storage.remove_member_document(client, entry, cache)
    assert client.storage.files == {}
    assert len(cache) == 0


def test_capture_member_document(client, cache):
    entry = storage.capture_member_document(client, b"jpeg", cache, now_ms=7)
    assert entry["name"] == "doc_7.jpg"
    _, options = client.storage.files[("documents", "certificats/doc_7.jpg")]
    assert options["content-type"] == "image/jpeg"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("data:image/png;base64,AAAA", "data:image/png;base64,AAAA"),
        ("https://cdn.example.com/p.jpg", "https://cdn.example.com/p.jpg"),
        ("members/1.jpg", f"{PROJECT_URL}/storage/v1/object/public/photo/members/1.jpg"),
        ("", None),
        (None, None),
    ],
)
def test_resolve_photo_src(client, cache, value, expected):
    assert storage.resolve_photo_src(client, value, cache) == expected
