"""Helpers around the Firebase Storage bucket used for chat media."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote, unquote, urlparse
import logging
import uuid

from google.api_core import exceptions as google_exceptions

from .firebase import get_storage_bucket

log = logging.getLogger(__name__)

__all__ = [
    "StorageError",
    "blob_created_at",
    "delete_by_url",
    "list_blobs",
    "storage_path_from_url",
    "upload_bytes",
]


class StorageError(Exception):
    """Raised when a Cloud Storage operation fails."""


def _bucket(bucket: Any = None):
    return bucket if bucket is not None else get_storage_bucket()


def storage_path_from_url(url: str, bucket_name: Optional[str] = None) -> Optional[str]:
    """Return the object path referenced by a storage URL.

    Understands ``gs://bucket/path``, Firebase download URLs
    (``.../v0/b/<bucket>/o/<encoded path>?alt=media``) and
    ``https://storage.googleapis.com/<bucket>/<path>``. When ``bucket_name``
    is given, URLs pointing at another bucket yield ``None``.
    """

    if not url:
        return None

    parsed = urlparse(url)
    url_bucket: Optional[str] = None
    path: Optional[str] = None

    if parsed.scheme == "gs":
        url_bucket = parsed.netloc
        path = parsed.path.lstrip("/")
    elif parsed.scheme in {"http", "https"}:
        segments = parsed.path.split("/")
        if "o" in segments and "b" in segments:
            b_index = segments.index("b")
            o_index = segments.index("o")
            if b_index + 1 < len(segments) and o_index + 1 < len(segments):
                url_bucket = segments[b_index + 1]
                path = unquote("/".join(segments[o_index + 1:]))
        elif parsed.netloc == "storage.googleapis.com":
            parts = parsed.path.lstrip("/").split("/", 1)
            if len(parts) == 2:
                url_bucket, path = parts[0], unquote(parts[1])

    if not path:
        return None
    if bucket_name and url_bucket and url_bucket != bucket_name:
        return None
    return path


def upload_bytes(
    path: str,
    data: bytes,
    content_type: Optional[str] = None,
    *,
    bucket: Any = None,
) -> str:
    """Upload ``data`` to ``path`` and return a Firebase download URL."""

    target = _bucket(bucket)
    blob = target.blob(path)
    token = uuid.uuid4().hex
    blob.metadata = {"firebaseStorageDownloadTokens": token}
    try:
        blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
    except google_exceptions.GoogleAPICallError as exc:
        raise StorageError(f"Failed to upload '{path}': {exc}") from exc

    encoded = quote(path, safe="")
    return (
        f"https://firebasestorage.googleapis.com/v0/b/{target.name}/o/{encoded}"
        f"?alt=media&token={token}"
    )


def delete_by_url(url: str, *, bucket: Any = None) -> bool:
    """Delete the object referenced by ``url``. Returns True when something was removed."""

    target = _bucket(bucket)
    path = storage_path_from_url(url, getattr(target, "name", None))
    if path is None:
        log.warning("Ignoring unrecognised storage URL: %s", url)
        return False

    try:
        target.blob(path).delete()
    except google_exceptions.NotFound:
        log.debug("Storage object already gone: %s", path)
        return False
    except google_exceptions.GoogleAPICallError as exc:
        raise StorageError(f"Failed to delete '{path}': {exc}") from exc

    log.info("Deleted storage file: %s", path)
    return True


def list_blobs(prefix: str, *, bucket: Any = None) -> list[Any]:
    target = _bucket(bucket)
    folder = prefix.rstrip("/") + "/"
    try:
        return list(target.list_blobs(prefix=folder))
    except google_exceptions.GoogleAPICallError as exc:
        raise StorageError(f"Failed to list '{folder}': {exc}") from exc


def blob_created_at(blob: Any) -> Optional[datetime]:
    created = getattr(blob, "time_created", None)
    if not isinstance(created, datetime):
        return None
    if created.tzinfo is None:
        return created.replace(tzinfo=timezone.utc)
    return created
