from __future__ import annotations

import json
from typing import Any

from scriptorium.providers.agents.base import ASSET_KINDS
from scriptorium.runtime.buckets import Bucket


ASSETS_NOT_STARTED = "not_started"
ASSETS_GENERATING = "generating"
ASSETS_COMPLETE = "complete"
ASSETS_PARTIAL = "partial"
ASSETS_FAILED = "failed"

KIND_PENDING = "pending"
KIND_GENERATING = "generating"
KIND_COMPLETE = "complete"
KIND_FAILED = "failed"

# Overall thresholds over the seven kinds; any failed kind keeps the run partial.
COMPLETE_MIN_SUCCEEDED = len(ASSET_KINDS)
PARTIAL_MIN_SUCCEEDED = 4


def assets_key(blob_key: str) -> str:
    return f"{blob_key}-assets.json"


def classify(succeeded: int) -> str:
    if succeeded >= COMPLETE_MIN_SUCCEEDED:
        return ASSETS_COMPLETE
    if succeeded >= PARTIAL_MIN_SUCCEEDED:
        return ASSETS_PARTIAL
    return ASSETS_FAILED


def succeeded_count(doc: dict[str, Any]) -> int:
    per_kind = doc.get("perKind") or {}
    return sum(1 for kind in ASSET_KINDS if (per_kind.get(kind) or {}).get("status") == KIND_COMPLETE)


def new_status_document(report_id: str, *, now_iso: str) -> dict[str, Any]:
    return {
        "reportId": report_id,
        "status": ASSETS_GENERATING,
        "progress": 0,
        "perKind": {kind: {"kind": kind, "status": KIND_PENDING} for kind in ASSET_KINDS},
        "createdAt": now_iso,
        "updatedAt": now_iso,
    }


async def load_status_document(bucket: Bucket, blob_key: str) -> dict[str, Any] | None:
    obj = await bucket.get(assets_key(blob_key))
    if obj is None:
        return None
    try:
        doc = await obj.json()
    except ValueError:
        return None
    return doc if isinstance(doc, dict) else None


async def store_status_document(bucket: Bucket, blob_key: str, doc: dict[str, Any]) -> None:
    await bucket.put(
        assets_key(blob_key),
        json.dumps(doc, default=str),
        content_type="application/json",
    )


async def initialize_status_document(bucket: Bucket, blob_key: str, report_id: str, *, now_iso: str) -> dict[str, Any]:
    # Existing documents are kept so completed kinds survive redelivery.
    existing = await load_status_document(bucket, blob_key)
    if existing is not None:
        return existing
    doc = new_status_document(report_id, now_iso=now_iso)
    await store_status_document(bucket, blob_key, doc)
    return doc


def public_asset_status(doc: dict[str, Any] | None) -> dict[str, Any]:
    if doc is None:
        return {
            "status": ASSETS_NOT_STARTED,
            "progress": 0,
            "perKind": {kind: {"status": KIND_PENDING} for kind in ASSET_KINDS},
        }
    per_kind: dict[str, Any] = {}
    for kind in ASSET_KINDS:
        entry = (doc.get("perKind") or {}).get(kind) or {"status": KIND_PENDING}
        view = {"status": entry.get("status", KIND_PENDING)}
        for field in ("error", "completedAt"):
            if entry.get(field):
                view[field] = entry[field]
        per_kind[kind] = view
    return {
        "status": doc.get("status", ASSETS_NOT_STARTED),
        "progress": doc.get("progress", 0),
        "perKind": per_kind,
        "updatedAt": doc.get("updatedAt"),
    }
