from datetime import datetime, timezone

import pytest

from soc_chat_backend.storage import (
    StorageError,
    blob_created_at,
    delete_by_url,
    list_blobs,
    storage_path_from_url,
    upload_bytes,
)

from firestore_fakes import FakeBucket


@pytest.mark.parametrize("url, expected", [
    ("gs://demo-bucket/chat_images/a.png", "chat_images/a.png"),
    (
        "https://firebasestorage.googleapis.com/v0/b/demo-bucket/o/chat_documents%2Freport%20v2.pdf?alt=media&token=t",
        "chat_documents/report v2.pdf",
    ),
    ("https://storage.googleapis.com/demo-bucket/voice_messages/v.m4a", "voice_messages/v.m4a"),
    ("https://example.com/picture.png", None),
    ("", None),
])
def test_storage_path_from_url(url, expected):
    assert storage_path_from_url(url) == expected


def test_urls_for_other_buckets_are_ignored():
    assert storage_path_from_url("gs://other/chat_images/a.png", "demo-bucket") is None


def test_delete_by_url():
    bucket = FakeBucket()
    bucket.add("chat_images/a.png", datetime(2024, 1, 1, tzinfo=timezone.utc))

    assert delete_by_url("gs://demo-bucket/chat_images/a.png", bucket=bucket) is True
    assert delete_by_url("gs://demo-bucket/chat_images/a.png", bucket=bucket) is False
    assert delete_by_url("https://example.com/x", bucket=bucket) is False


def test_upload_bytes_returns_download_url():
    bucket = FakeBucket()

    url = upload_bytes("chat_media/pic.png", b"data", "image/png", bucket=bucket)

    blob = bucket.blobs["chat_media/pic.png"]
    token = blob.metadata["firebaseStorageDownloadTokens"]
    assert blob.content_type == "image/png"
    assert url == (
        "https://firebasestorage.googleapis.com/v0/b/demo-bucket/o/chat_media%2Fpic.png"
        f"?alt=media&token={token}"
    )
    assert storage_path_from_url(url, "demo-bucket") == "chat_media/pic.png"


def test_upload_url_escapes_reserved_characters_in_file_names():
    bucket = FakeBucket()
    path = "scheduled_media/1_what?#1 & 100%.png"

    url = upload_bytes(path, b"data", "image/png", bucket=bucket)

    assert "scheduled_media%2F1_what%3F%231%20%26%20100%25.png?alt=media" in url
    assert storage_path_from_url(url, "demo-bucket") == path
    assert delete_by_url(url, bucket=bucket) is True
    assert path not in bucket.blobs


def test_list_blobs_wraps_api_errors():
    from google.api_core import exceptions as google_exceptions

    class BrokenBucket(FakeBucket):
        def list_blobs(self, prefix=""):
            raise google_exceptions.Forbidden("nope")

    with pytest.raises(StorageError):
        list_blobs("chat_images", bucket=BrokenBucket())


def test_blob_created_at_normalises_naive_times():
    bucket = FakeBucket()
    blob = bucket.add("x", datetime(2024, 1, 1))

    assert blob_created_at(blob) == datetime(2024, 1, 1, tzinfo=timezone.utc)
    blob.time_created = None
    assert blob_created_at(blob) is None
