"""Tests for blob keys, object metadata, and S3BlobStore against a mocked client."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from ingestor.blobstore import (
    S3BlobStore,
    find_original,
    metadata_from_blob,
    metadata_to_blob,
    original_key,
    record_id_from_key,
)
from ingestor.models import BlobInfo, FileType
from ingestor.upload.exceptions import TransientBackendError


def _client_error(code: str, status: int, operation: str = "HeadObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class _Paginator:
    def __init__(self, pages: list[dict]) -> None:
        self.pages = pages
        self.kwargs: dict = {}

    def paginate(self, **kwargs):
        self.kwargs = kwargs
        return self._pages()

    async def _pages(self):
        for page in self.pages:
            yield page


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.put_object = AsyncMock(return_value={})
    client.head_object = AsyncMock()
    client.delete_object = AsyncMock(return_value={})
    client.head_bucket = AsyncMock(return_value={})
    return client


@pytest.fixture
def s3(client: MagicMock) -> S3BlobStore:
    store = S3BlobStore(access_key_id="test", secret_access_key="test", max_attempts=2)
    store._client = client
    return store


class TestKeys:
    def test_original_key(self):
        assert original_key("wlpr_1", ".JPG") == "wlpr_1/original.jpg"
        assert record_id_from_key("wlpr_1/original.jpg") == "wlpr_1"

    async def test_find_original_ignores_other_records(self, s3, client):
        paginator = _Paginator([{"Contents": [{"Key": "wlpr_1/original.webp"}]}])
        client.get_paginator.return_value = paginator

        assert await find_original(s3, "wallpapers", "wlpr_1") == "wlpr_1/original.webp"
        assert paginator.kwargs == {"Bucket": "wallpapers", "Prefix": "wlpr_1/original"}

    async def test_find_original_closes_the_listing(self):
        class Listing:
            closed = False

            async def list_keys(self, bucket, prefix=None):
                try:
                    yield f"{prefix}.jpg"
                    yield f"{prefix}.png"
                finally:
                    Listing.closed = True

        assert await find_original(Listing(), "wallpapers", "wlpr_1") == "wlpr_1/original.jpg"
        assert Listing.closed


class TestObjectMetadata:
    def test_round_trip_with_non_ascii_filename(self):
        meta = metadata_to_blob(FileType.VIDEO, 1080, 1920, "fête nocturne.mp4")
        assert all(value.isascii() for value in meta.values())

        info = BlobInfo(key="wlpr_1/original.mp4", size=10, content_type="video/mp4", metadata=meta)
        restored = metadata_from_blob(info, "wallpapers")

        assert restored is not None
        assert restored.file_type is FileType.VIDEO
        assert restored.original_filename == "fête nocturne.mp4"
        assert restored.aspect_ratio == pytest.approx(0.5625)

    @pytest.mark.parametrize(
        ("content_type", "overrides"),
        [
            (None, {}),
            ("image/jpeg", {"width": "wide"}),
            ("image/jpeg", {"height": "0"}),
            ("image/jpeg", {"file-type": "audio"}),
        ],
    )
    def test_incomplete_metadata_returns_none(self, content_type, overrides):
        meta = metadata_to_blob(FileType.IMAGE, 800, 600, "a.jpg")
        meta.update(overrides)
        info = BlobInfo(key="k", size=10, content_type=content_type, metadata=meta)
        assert metadata_from_blob(info, "wallpapers") is None

    def test_missing_key_returns_none(self):
        info = BlobInfo(key="k", size=10, content_type="image/jpeg", metadata={"width": "1"})
        assert metadata_from_blob(info, "wallpapers") is None


class TestS3BlobStore:
    async def test_put_sends_content_type_and_metadata(self, s3, client):
        await s3.put("wallpapers", "wlpr_1/original.png", b"png", "image/png", {"width": "1"})
        client.put_object.assert_awaited_once_with(
            Bucket="wallpapers",
            Key="wlpr_1/original.png",
            Body=b"png",
            ContentType="image/png",
            Metadata={"width": "1"},
        )

    async def test_stat(self, s3, client):
        client.head_object.return_value = {
            "ContentLength": 42,
            "ContentType": "image/png",
            "Metadata": {"width": "1"},
        }
        info = await s3.stat("wallpapers", "wlpr_1/original.png")
        assert info == BlobInfo(
            key="wlpr_1/original.png", size=42, content_type="image/png", metadata={"width": "1"}
        )

    async def test_stat_missing_returns_none(self, s3, client):
        client.head_object.side_effect = _client_error("404", 404)
        assert await s3.stat("wallpapers", "nope") is None
        assert not await s3.exists("wallpapers", "nope")

    async def test_delete_missing_key_succeeds(self, s3, client):
        client.delete_object.side_effect = _client_error("NoSuchKey", 404, "DeleteObject")
        await s3.delete("wallpapers", "nope")

    async def test_transient_error_is_retried(self, s3, client):
        client.put_object.side_effect = [_client_error("SlowDown", 503, "PutObject"), {}]
        await s3.put("wallpapers", "k", b"x", "image/png")
        assert client.put_object.await_count == 2

    async def test_persistent_outage_raises_transient_error(self, s3, client):
        client.head_object.side_effect = EndpointConnectionError(endpoint_url="http://minio")
        with pytest.raises(TransientBackendError, match="head_object"):
            await s3.stat("wallpapers", "k")
        assert client.head_object.await_count == 2

    async def test_access_denied_not_retried(self, s3, client):
        client.head_object.side_effect = _client_error("AccessDenied", 403)
        with pytest.raises(TransientBackendError):
            await s3.stat("wallpapers", "k")
        assert client.head_object.await_count == 1

    async def test_list_keys_walks_every_page(self, s3, client):
        client.get_paginator.return_value = _Paginator(
            [
                {"Contents": [{"Key": "a/original.jpg"}, {"Key": "b/original.jpg"}]},
                {},
                {"Contents": [{"Key": "c/original.png"}]},
            ]
        )
        keys = [key async for key in s3.list_keys("wallpapers")]
        assert keys == ["a/original.jpg", "b/original.jpg", "c/original.png"]

    async def test_not_connected(self):
        store = S3BlobStore()
        with pytest.raises(RuntimeError, match="Not connected"):
            await store.put("wallpapers", "k", b"x", "image/png")
        assert not await store.check_health("wallpapers")

    async def test_check_health(self, s3, client):
        assert await s3.check_health("wallpapers")
        client.head_bucket.side_effect = _client_error("NoSuchBucket", 404, "HeadBucket")
        assert not await s3.check_health("wallpapers")
