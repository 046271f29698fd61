from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from scriptorium.core.errors import UpstreamError
from scriptorium.runtime.clock import Clock, system_clock


logger = logging.getLogger(__name__)

# Custom metadata rides in one JSON header so key case survives S3 normalization.
_META_CUSTOM = "custom"
_META_EXPIRES = "expires-at"
_STREAM_CHUNK = 64 * 1024


@dataclass(frozen=True)
class ObjectHead:
    key: str
    size: int
    content_type: str
    custom_metadata: dict[str, str]
    uploaded: float


@dataclass
class BucketObject:
    """A fetched object; bytes are held in memory once read from the backend."""

    key: str
    data: bytes
    content_type: str = "application/octet-stream"
    custom_metadata: dict[str, str] = field(default_factory=dict)
    uploaded: float = 0.0

    @property
    def size(self) -> int:
        return len(self.data)

    async def read(self) -> bytes:
        return self.data

    async def text(self) -> str:
        return self.data.decode("utf-8")

    async def json(self) -> Any:
        return json.loads(self.data)

    async def stream(self, chunk_size: int = _STREAM_CHUNK) -> AsyncIterator[bytes]:
        for offset in range(0, len(self.data), chunk_size):
            yield self.data[offset : offset + chunk_size]


@dataclass(frozen=True)
class ListResult:
    objects: list[ObjectHead]
    truncated: bool
    cursor: str | None


class Bucket(Protocol):
    name: str

    async def get(self, key: str) -> BucketObject | None: ...

    async def put(
        self,
        key: str,
        body: bytes | str,
        *,
        content_type: str | None = None,
        custom_metadata: dict[str, str] | None = None,
        expiration_ttl: int | None = None,
    ) -> ObjectHead: ...

    async def head(self, key: str) -> ObjectHead | None: ...

    async def delete(self, key: str) -> None: ...

    async def list(
        self, *, prefix: str = "", limit: int = 1000, cursor: str | None = None
    ) -> ListResult: ...


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else bytes(body)


def _guess_content_type(body: bytes | str, content_type: str | None) -> str:
    if content_type:
        return content_type
    return "text/plain; charset=utf-8" if isinstance(body, str) else "application/octet-stream"


@dataclass
class _MemoryEntry:
    data: bytes
    content_type: str
    custom_metadata: dict[str, str]
    uploaded: float
    expires_at: float | None


class MemoryBucket:
    """Dict-backed bucket honoring expiration TTLs against an injectable clock."""

    def __init__(self, name: str, *, clock: Clock | None = None) -> None:
        self.name = name
        self._clock = clock or system_clock
        self._objects: dict[str, _MemoryEntry] = {}

    def _live(self, key: str) -> _MemoryEntry | None:
        entry = self._objects.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            # Expired objects are removed on access.
            self._objects.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> BucketObject | None:
        entry = self._live(key)
        if entry is None:
            return None
        return BucketObject(
            key=key,
            data=entry.data,
            content_type=entry.content_type,
            custom_metadata=dict(entry.custom_metadata),
            uploaded=entry.uploaded,
        )

    async def put(
        self,
        key: str,
        body: bytes | str,
        *,
        content_type: str | None = None,
        custom_metadata: dict[str, str] | None = None,
        expiration_ttl: int | None = None,
    ) -> ObjectHead:
        now = self._clock()
        entry = _MemoryEntry(
            data=_as_bytes(body),
            content_type=_guess_content_type(body, content_type),
            custom_metadata=dict(custom_metadata or {}),
            uploaded=now,
            expires_at=now + expiration_ttl if expiration_ttl else None,
        )
        self._objects[key] = entry
        return ObjectHead(key, len(entry.data), entry.content_type, dict(entry.custom_metadata), now)

    async def head(self, key: str) -> ObjectHead | None:
        entry = self._live(key)
        if entry is None:
            return None
        return ObjectHead(key, len(entry.data), entry.content_type, dict(entry.custom_metadata), entry.uploaded)

    async def delete(self, key: str) -> None:
        self._objects.pop(key, None)

    async def list(self, *, prefix: str = "", limit: int = 1000, cursor: str | None = None) -> ListResult:
        keys = sorted(k for k in list(self._objects) if k.startswith(prefix) and self._live(k) is not None)
        if cursor:
            keys = [k for k in keys if k > cursor]
        page = keys[: max(1, limit)]
        truncated = len(keys) > len(page)
        heads = [await self.head(k) for k in page]
        return ListResult(
            objects=[h for h in heads if h is not None],
            truncated=truncated,
            cursor=page[-1] if truncated and page else None,
        )


def _client_status(exc: ClientError) -> int | None:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def _is_missing(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code")
    return code in {"NoSuchKey", "404", "NotFound"} or _client_status(exc) == 404


class S3Bucket:
    """Bucket over an S3-compatible store; blocking boto3 calls run in worker threads."""

    def __init__(self, name: str, bucket_name: str, client: Any, *, clock: Clock | None = None) -> None:
        self.name = name
        self._bucket_name = bucket_name
        self._client = client
        self._clock = clock or system_clock

    def _unpack_metadata(self, metadata: dict[str, str] | None) -> tuple[dict[str, str], float | None]:
        metadata = metadata or {}
        custom: dict[str, str] = {}
        raw_custom = metadata.get(_META_CUSTOM)
        if raw_custom:
            try:
                custom = json.loads(raw_custom)
            except ValueError:
                logger.warning("bucket_metadata_invalid bucket=%s", self.name)
        expires_raw = metadata.get(_META_EXPIRES)
        expires_at = float(expires_raw) if expires_raw else None
        return custom, expires_at

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    async def _call(self, method: str, **kwargs: Any) -> Any:
        func = getattr(self._client, method)
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ClientError:
            raise
        except BotoCoreError as exc:
            raise UpstreamError("Object store unavailable") from exc

    async def get(self, key: str) -> BucketObject | None:
        try:
            response = await self._call("get_object", Bucket=self._bucket_name, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return None
            raise UpstreamError("Object store read failed") from exc
        custom, expires_at = self._unpack_metadata(response.get("Metadata"))
        if self._expired(expires_at):
            await self.delete(key)
            return None
        body = response["Body"]
        data = await asyncio.to_thread(body.read)
        last_modified = response.get("LastModified")
        return BucketObject(
            key=key,
            data=data,
            content_type=response.get("ContentType") or "application/octet-stream",
            custom_metadata=custom,
            uploaded=last_modified.timestamp() if last_modified is not None else 0.0,
        )

    async def put(
        self,
        key: str,
        body: bytes | str,
        *,
        content_type: str | None = None,
        custom_metadata: dict[str, str] | None = None,
        expiration_ttl: int | None = None,
    ) -> ObjectHead:
        data = _as_bytes(body)
        resolved_type = _guess_content_type(body, content_type)
        metadata = {_META_CUSTOM: json.dumps(custom_metadata or {}, ensure_ascii=True)}
        now = self._clock()
        if expiration_ttl:
            metadata[_META_EXPIRES] = str(now + expiration_ttl)
        try:
            await self._call(
                "put_object",
                Bucket=self._bucket_name,
                Key=key,
                Body=data,
                ContentType=resolved_type,
                Metadata=metadata,
            )
        except ClientError as exc:
            raise UpstreamError("Object store write failed") from exc
        return ObjectHead(key, len(data), resolved_type, dict(custom_metadata or {}), now)

    async def head(self, key: str) -> ObjectHead | None:
        try:
            response = await self._call("head_object", Bucket=self._bucket_name, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return None
            raise UpstreamError("Object store read failed") from exc
        custom, expires_at = self._unpack_metadata(response.get("Metadata"))
        if self._expired(expires_at):
            return None
        last_modified = response.get("LastModified")
        return ObjectHead(
            key=key,
            size=int(response.get("ContentLength") or 0),
            content_type=response.get("ContentType") or "application/octet-stream",
            custom_metadata=custom,
            uploaded=last_modified.timestamp() if last_modified is not None else 0.0,
        )

    async def delete(self, key: str) -> None:
        try:
            await self._call("delete_object", Bucket=self._bucket_name, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return
            raise UpstreamError("Object store delete failed") from exc

    async def list(self, *, prefix: str = "", limit: int = 1000, cursor: str | None = None) -> ListResult:
        request: dict[str, Any] = {"Bucket": self._bucket_name, "Prefix": prefix, "MaxKeys": max(1, limit)}
        if cursor:
            request["ContinuationToken"] = cursor
        try:
            response = await self._call("list_objects_v2", **request)
        except ClientError as exc:
            raise UpstreamError("Object store list failed") from exc
        objects: list[ObjectHead] = []
        for item in response.get("Contents", []) or []:
            last_modified = item.get("LastModified")
            # Listing does not return metadata; callers needing it follow up with head().
            objects.append(
                ObjectHead(
                    key=item["Key"],
                    size=int(item.get("Size") or 0),
                    content_type="application/octet-stream",
                    custom_metadata={},
                    uploaded=last_modified.timestamp() if last_modified is not None else 0.0,
                )
            )
        truncated = bool(response.get("IsTruncated"))
        return ListResult(
            objects=objects,
            truncated=truncated,
            cursor=response.get("NextContinuationToken") if truncated else None,
        )


def create_s3_client(*, endpoint_url: str, region: str, access_key_id: str, secret_access_key: str) -> Any:
    import boto3

    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        region_name=region,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
    )


class Buckets:
    """Named bucket handles keyed by logical name."""

    def __init__(self, buckets: dict[str, Bucket]) -> None:
        self._buckets = dict(buckets)

    def __getitem__(self, name: str) -> Bucket:
        try:
            return self._buckets[name]
        except KeyError as exc:
            raise KeyError(f"Unknown bucket {name!r}") from exc

    def __contains__(self, name: str) -> bool:
        return name in self._buckets

    def names(self) -> list[str]:
        return sorted(self._buckets)

    @property
    def raw(self) -> Bucket:
        return self._buckets["manuscripts_raw"]

    @property
    def processed(self) -> Bucket:
        return self._buckets["manuscripts_processed"]
