"""
storage.py
Object storage helpers (member documents and photos) with a public URL cache.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import time

import httpx
from supabase import Client, StorageException

from models import DOCUMENTS_BUCKET, PHOTO_BUCKET
from utils import sanitize_file_name

log = logging.getLogger(__name__)

PUBLIC_PREFIX = "/storage/v1/object/public/"
DOCUMENTS_FOLDER = "certificats"


class StorageError(Exception):
    pass


class PublicUrlCache:
    """Public URLs keyed by (bucket, path); entries are dropped when the file is removed."""

    def __init__(self):
        self._urls: dict[tuple[str, str], str] = {}

    def get(self, bucket: str, path: str) -> str | None:
        return self._urls.get((bucket, path))

    def put(self, bucket: str, path: str, url: str) -> None:
        self._urls[(bucket, path)] = url

    def invalidate(self, bucket: str, path: str) -> None:
        self._urls.pop((bucket, path), None)

    def clear(self) -> None:
        self._urls.clear()

    def __contains__(self, key) -> bool:
        return key in self._urls

    def __len__(self) -> int:
        return len(self._urls)


def get_public_url(client: Client, bucket: str, path: str, cache: PublicUrlCache) -> str:
    url = cache.get(bucket, path)
    if url is None:
        url = client.storage.from_(bucket).get_public_url(path)
        cache.put(bucket, path, url)
    return url


def upload_file(client: Client, bucket: str, path: str, data: bytes, cache: PublicUrlCache,
                content_type: str | None = None) -> str:
    """Upload bytes to `bucket/path` and return the file's public URL."""
    content_type = content_type or mimetypes.guess_type(path)[0] or "application/octet-stream"
    try:
        client.storage.from_(bucket).upload(
            path,
            data,
            {"content-type": content_type, "cache-control": "3600", "upsert": "false"},
        )
    except (StorageException, httpx.HTTPError) as e:
        log.error("upload to %s/%s failed: %s", bucket, path, e)
        raise StorageError(f"Upload failed: {e}") from e
    # a re-used path must not serve a stale entry
    cache.invalidate(bucket, path)
    return get_public_url(client, bucket, path, cache)


def delete_file(client: Client, bucket: str, path: str, cache: PublicUrlCache) -> None:
    try:
        client.storage.from_(bucket).remove([path])
    except (StorageException, httpx.HTTPError) as e:
        log.error("removal of %s/%s failed: %s", bucket, path, e)
        raise StorageError(f"Removal failed: {e}") from e
    cache.invalidate(bucket, path)


def split_public_url(url: str) -> tuple[str, str]:
    """Return (bucket, path) from a public storage URL."""
    idx = url.find(PUBLIC_PREFIX)
    if idx == -1:
        raise StorageError("Invalid storage URL")
    bucket, _, path = url[idx + len(PUBLIC_PREFIX):].partition("/")
    if not bucket or not path:
        raise StorageError("Invalid storage URL")
    return bucket, path.split("?", 1)[0]


def document_path(file_name: str, now_ms: int | None = None) -> str:
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{DOCUMENTS_FOLDER}/{now_ms}_{sanitize_file_name(file_name)}"


def upload_member_document(client: Client, file_name: str, data: bytes, cache: PublicUrlCache,
                           now_ms: int | None = None) -> dict:
    """Store a certificate in the documents bucket; returns the member file entry."""
    path = document_path(file_name, now_ms)
    url = upload_file(client, DOCUMENTS_BUCKET, path, data, cache)
    return {"name": sanitize_file_name(file_name), "url": url}


def capture_member_document(client: Client, image: bytes, cache: PublicUrlCache,
                            now_ms: int | None = None) -> dict:
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    name = sanitize_file_name(f"doc_{now_ms}.jpg")
    url = upload_file(client, DOCUMENTS_BUCKET, f"{DOCUMENTS_FOLDER}/{name}", image, cache,
                      content_type="image/jpeg")
    return {"name": name, "url": url}


def remove_member_document(client: Client, file_entry: dict, cache: PublicUrlCache) -> None:
    bucket, path = split_public_url(file_entry["url"])
    delete_file(client, bucket, path, cache)


def resolve_photo_src(client: Client, value, cache: PublicUrlCache) -> str | None:
    """Data URLs and absolute URLs are used as-is; anything else is a path in the photo bucket."""
    if not value or not isinstance(value, str):
        return None
    if value.startswith("data:") or re.match(r"^https?://", value, re.IGNORECASE):
        return value
    return get_public_url(client, PHOTO_BUCKET, value, cache)
