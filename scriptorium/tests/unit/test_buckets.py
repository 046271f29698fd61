from __future__ import annotations

import io
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from scriptorium.core.errors import UpstreamError
from scriptorium.runtime.buckets import Buckets, MemoryBucket, S3Bucket
from scriptorium.runtime.clock import ManualClock


class _FakeS3Client:
    """Synchronous stand-in for a boto3 S3 client covering the calls S3Bucket makes."""

    def __init__(self) -> None:
        self.objects: dict[str, dict] = {}
        self.unreachable = False

    def _missing(self, operation: str) -> ClientError:
        return ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "missing"}, "ResponseMetadata": {"HTTPStatusCode": 404}},
            operation,
        )

    def _guard(self) -> None:
        if self.unreachable:
            raise EndpointConnectionError(endpoint_url="http://minio:9000")

    def put_object(self, *, Bucket, Key, Body, ContentType, Metadata):  # noqa: ANN001, N803
        self._guard()
        self.objects[Key] = {
            "Body": Body,
            "ContentType": ContentType,
            "Metadata": dict(Metadata),
            "LastModified": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }
        return {}

    def get_object(self, *, Bucket, Key):  # noqa: ANN001, N803
        self._guard()
        item = self.objects.get(Key)
        if item is None:
            raise self._missing("GetObject")
        return {**item, "Body": io.BytesIO(item["Body"])}

    def head_object(self, *, Bucket, Key):  # noqa: ANN001, N803
        self._guard()
        item = self.objects.get(Key)
        if item is None:
            raise self._missing("HeadObject")
        return {**item, "ContentLength": len(item["Body"])}

    def delete_object(self, *, Bucket, Key):  # noqa: ANN001, N803
        self._guard()
        self.objects.pop(Key, None)
        return {}

    def list_objects_v2(self, *, Bucket, Prefix, MaxKeys, ContinuationToken=None):  # noqa: ANN001, N803
        self._guard()
        keys = sorted(key for key in self.objects if key.startswith(Prefix))
        if ContinuationToken:
            keys = [key for key in keys if key > ContinuationToken]
        page = keys[:MaxKeys]
        truncated = len(keys) > len(page)
        response = {
            "Contents": [
                {"Key": key, "Size": len(self.objects[key]["Body"]), "LastModified": self.objects[key]["LastModified"]}
                for key in page
            ],
            "IsTruncated": truncated,
        }
        if truncated:
            response["NextContinuationToken"] = page[-1]
        return response


@pytest.mark.asyncio
async def test_memory_bucket_keeps_metadata_and_expires() -> None:
    clock = ManualClock()
    bucket = MemoryBucket("manuscripts_raw", clock=clock)
    head = await bucket.put("u1/a.txt", "hello", custom_metadata={"reportId": "abcd1234"}, expiration_ttl=30)
    assert head.size == 5
    assert head.content_type == "text/plain; charset=utf-8"

    stored = await bucket.get("u1/a.txt")
    assert await stored.text() == "hello"
    assert stored.custom_metadata == {"reportId": "abcd1234"}

    clock.advance(30)
    assert await bucket.get("u1/a.txt") is None
    assert await bucket.head("u1/a.txt") is None


@pytest.mark.asyncio
async def test_memory_bucket_lists_with_cursor() -> None:
    bucket = MemoryBucket("manuscripts_raw", clock=ManualClock())
    for name in ("u1/a", "u1/b", "u1/c", "u2/a"):
        await bucket.put(name, b"x")

    first = await bucket.list(prefix="u1/", limit=2)
    assert [obj.key for obj in first.objects] == ["u1/a", "u1/b"]
    assert first.truncated is True
    second = await bucket.list(prefix="u1/", limit=2, cursor=first.cursor)
    assert [obj.key for obj in second.objects] == ["u1/c"]
    assert second.truncated is False
    assert second.cursor is None


@pytest.mark.asyncio
async def test_bucket_object_streams_in_chunks() -> None:
    bucket = MemoryBucket("b", clock=ManualClock())
    await bucket.put("k", b"abcdefg")
    stored = await bucket.get("k")
    chunks = [chunk async for chunk in stored.stream(chunk_size=3)]
    assert chunks == [b"abc", b"def", b"g"]


@pytest.mark.asyncio
async def test_s3_bucket_round_trips_custom_metadata() -> None:
    client = _FakeS3Client()
    bucket = S3Bucket("manuscripts_raw", "raw-bucket", client, clock=ManualClock())
    await bucket.put("u1/a.txt", b"chapter", content_type="text/plain", custom_metadata={"userId": "U1"})

    stored = await bucket.get("u1/a.txt")
    assert stored.data == b"chapter"
    assert stored.content_type == "text/plain"
    assert stored.custom_metadata == {"userId": "U1"}

    head = await bucket.head("u1/a.txt")
    assert head.size == 7
    assert head.custom_metadata == {"userId": "U1"}


@pytest.mark.asyncio
async def test_s3_bucket_missing_keys_are_none() -> None:
    bucket = S3Bucket("manuscripts_raw", "raw-bucket", _FakeS3Client(), clock=ManualClock())
    assert await bucket.get("nope") is None
    assert await bucket.head("nope") is None
    await bucket.delete("nope")


@pytest.mark.asyncio
async def test_s3_bucket_enforces_ttl_from_metadata() -> None:
    clock = ManualClock()
    client = _FakeS3Client()
    bucket = S3Bucket("manuscripts_processed", "processed-bucket", client, clock=clock)
    await bucket.put("r/status.json", "{}", expiration_ttl=60)

    clock.advance(60)
    assert await bucket.head("r/status.json") is None
    assert await bucket.get("r/status.json") is None
    assert "r/status.json" not in client.objects


@pytest.mark.asyncio
async def test_s3_bucket_lists_pages() -> None:
    client = _FakeS3Client()
    bucket = S3Bucket("manuscripts_raw", "raw-bucket", client, clock=ManualClock())
    for name in ("u1/a", "u1/b", "u1/c"):
        await bucket.put(name, b"x")

    first = await bucket.list(prefix="u1/", limit=2)
    assert [obj.key for obj in first.objects] == ["u1/a", "u1/b"]
    assert first.cursor == "u1/b"
    second = await bucket.list(prefix="u1/", cursor=first.cursor)
    assert [obj.key for obj in second.objects] == ["u1/c"]
    assert second.cursor is None


@pytest.mark.asyncio
async def test_s3_transport_failures_are_upstream_errors() -> None:
    client = _FakeS3Client()
    client.unreachable = True
    bucket = S3Bucket("manuscripts_raw", "raw-bucket", client, clock=ManualClock())
    with pytest.raises(UpstreamError):
        await bucket.get("a")
    with pytest.raises(UpstreamError):
        await bucket.put("a", b"x")


def test_buckets_resolve_logical_names() -> None:
    clock = ManualClock()
    raw = MemoryBucket("manuscripts_raw", clock=clock)
    processed = MemoryBucket("manuscripts_processed", clock=clock)
    buckets = Buckets({"manuscripts_raw": raw, "manuscripts_processed": processed})
    assert buckets.raw is raw
    assert buckets.processed is processed
    assert buckets.names() == ["manuscripts_processed", "manuscripts_raw"]
    with pytest.raises(KeyError):
        buckets["assets"]
