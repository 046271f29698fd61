from __future__ import annotations

import pytest

from scriptorium.core.errors import PayloadTooLarge
from scriptorium.services.ingest.upload import blob_key_for, read_bounded, sanitize_filename


class _FakeUpload:
    def __init__(self, data: bytes, *, declared_size: int | None) -> None:
        self._data = data
        self.size = declared_size
        self.requested: list[int] = []

    async def read(self, size: int = -1) -> bytes:
        self.requested.append(size)
        return self._data if size < 0 else self._data[:size]


@pytest.mark.asyncio
async def test_declared_size_is_refused_without_reading() -> None:
    upload = _FakeUpload(b"x" * 100, declared_size=100)
    with pytest.raises(PayloadTooLarge) as excinfo:
        await read_bounded(upload, 10)
    assert excinfo.value.details == {"maxBytes": 10}
    assert upload.requested == []


@pytest.mark.asyncio
async def test_unknown_size_reads_one_byte_past_the_limit() -> None:
    upload = _FakeUpload(b"x" * 100, declared_size=None)
    with pytest.raises(PayloadTooLarge):
        await read_bounded(upload, 10)
    assert upload.requested == [11]


@pytest.mark.asyncio
async def test_upload_at_the_limit_is_returned_whole() -> None:
    upload = _FakeUpload(b"x" * 10, declared_size=None)
    assert await read_bounded(upload, 10) == b"x" * 10


def test_blob_keys_are_sanitized() -> None:
    assert sanitize_filename("my novel (final).txt") == "my_novel__final_.txt"
    assert sanitize_filename("") == "manuscript"
    key = blob_key_for("u1", "m1", 0, "a b.txt")
    assert key == "u1/m1/1970-01-01T00:00:00.000Z_a_b.txt"
