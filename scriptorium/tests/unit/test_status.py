from __future__ import annotations

import pytest

from scriptorium.providers.agents.base import ASSET_KINDS
from scriptorium.runtime.buckets import MemoryBucket
from scriptorium.runtime.clock import ManualClock
from scriptorium.runtime.kv import MemoryKV
from scriptorium.services.analysis.status import (
    STATUS_ANALYZING,
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_QUEUED,
    AnalysisStatusStore,
    public_status,
    transition_allowed,
)
from scriptorium.services.assets.status import (
    ASSETS_COMPLETE,
    ASSETS_FAILED,
    ASSETS_NOT_STARTED,
    ASSETS_PARTIAL,
    KIND_COMPLETE,
    KIND_FAILED,
    classify,
    initialize_status_document,
    public_asset_status,
    store_status_document,
    succeeded_count,
)


def test_asset_classification_thresholds() -> None:
    assert classify(7) == ASSETS_COMPLETE
    assert classify(6) == ASSETS_PARTIAL
    assert classify(4) == ASSETS_PARTIAL
    assert classify(3) == ASSETS_FAILED
    assert classify(0) == ASSETS_FAILED


def test_public_asset_status_hides_internal_fields() -> None:
    assert public_asset_status(None)["status"] == ASSETS_NOT_STARTED

    doc = {
        "status": ASSETS_PARTIAL,
        "progress": 100,
        "updatedAt": "2024-01-01T00:00:00.000Z",
        "perKind": {
            "keywords": {"kind": "keywords", "status": KIND_FAILED, "error": "down", "attempts": 3},
            "categories": {"kind": "categories", "status": KIND_COMPLETE, "completedAt": "t", "result": [1]},
        },
    }
    view = public_asset_status(doc)
    assert view["perKind"]["keywords"] == {"status": KIND_FAILED, "error": "down"}
    assert view["perKind"]["categories"] == {"status": KIND_COMPLETE, "completedAt": "t"}
    assert view["perKind"]["author_bio"] == {"status": "pending"}
    assert set(view["perKind"]) == set(ASSET_KINDS)
    assert succeeded_count(doc) == 1


@pytest.mark.asyncio
async def test_initialize_keeps_existing_document() -> None:
    bucket = MemoryBucket("manuscripts_processed", clock=ManualClock())
    first = await initialize_status_document(bucket, "u1/a.txt", "abcd1234", now_iso="t0")
    first["perKind"]["keywords"]["status"] = KIND_COMPLETE
    await store_status_document(bucket, "u1/a.txt", first)

    again = await initialize_status_document(bucket, "u1/a.txt", "abcd1234", now_iso="t1")
    assert again["perKind"]["keywords"]["status"] == KIND_COMPLETE
    assert again["createdAt"] == "t0"


def test_transitions_only_move_forward() -> None:
    assert transition_allowed(None, STATUS_QUEUED)
    assert transition_allowed({"status": STATUS_QUEUED}, STATUS_ANALYZING)
    assert transition_allowed({"status": STATUS_ANALYZING}, STATUS_ANALYZING)
    assert not transition_allowed({"status": STATUS_ANALYZING}, STATUS_QUEUED)
    assert not transition_allowed({"status": STATUS_COMPLETE}, STATUS_FAILED)
    assert not transition_allowed({"status": STATUS_FAILED}, STATUS_ANALYZING)


@pytest.mark.asyncio
async def test_status_store_is_monotonic() -> None:
    clock = ManualClock()
    store = AnalysisStatusStore(MemoryKV(clock=clock), ttl_s=3600, clock=clock)
    await store.initialize("abcd1234")

    claimed = await store.advance(
        "abcd1234", status=STATUS_ANALYZING, progress=33, message="m", current_step="line", claimed=True
    )
    assert claimed["claimedAt"] == clock()

    # A lower progress value never lowers the stored one.
    lower = await store.advance(
        "abcd1234", status=STATUS_ANALYZING, progress=5, message="m", current_step="developmental", error="busy"
    )
    assert lower["progress"] == 33
    assert public_status(lower)["error"] == "busy"

    done = await store.advance(
        "abcd1234", status=STATUS_COMPLETE, progress=100, message="done", current_step="complete"
    )
    assert "error" not in done
    assert done["claimedAt"] is None
    assert done["completedAt"]

    refused = await store.advance(
        "abcd1234", status=STATUS_FAILED, progress=100, message="late", current_step="failed"
    )
    assert refused is None
    assert (await store.get("abcd1234"))["status"] == STATUS_COMPLETE


@pytest.mark.asyncio
async def test_claims_go_stale() -> None:
    clock = ManualClock()
    store = AnalysisStatusStore(MemoryKV(clock=clock), ttl_s=3600, clock=clock)
    await store.initialize("abcd1234")
    doc = await store.advance(
        "abcd1234", status=STATUS_ANALYZING, progress=5, message="m", current_step="claimed", claimed=True
    )
    assert store.claim_is_fresh(doc, timeout_s=600)
    clock.advance(600)
    assert not store.claim_is_fresh(doc, timeout_s=600)

    released = await store.advance(
        "abcd1234", status=STATUS_ANALYZING, progress=5, message="m", current_step="claimed", claimed=False
    )
    assert not store.claim_is_fresh(released, timeout_s=600)


@pytest.mark.asyncio
async def test_status_documents_expire() -> None:
    clock = ManualClock()
    store = AnalysisStatusStore(MemoryKV(clock=clock), ttl_s=60, clock=clock)
    await store.initialize("abcd1234")
    clock.advance(60)
    assert await store.get("abcd1234") is None
