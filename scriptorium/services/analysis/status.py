from __future__ import annotations

import logging
from typing import Any

from scriptorium.runtime.clock import Clock, system_clock, utc_iso
from scriptorium.runtime.kv import KVStore, put_json


logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_ANALYZING = "analyzing"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETE, STATUS_FAILED})
# queued -> analyzing -> (complete | failed); a status never moves to a lower rank.
_RANK = {STATUS_QUEUED: 0, STATUS_ANALYZING: 1, STATUS_COMPLETE: 2, STATUS_FAILED: 2}

PROGRESS_QUEUED = 0
PROGRESS_CLAIMED = 5
PROGRESS_DEVELOPMENTAL = 33
PROGRESS_LINE = 66
PROGRESS_COMPLETE = 100


def status_key(report_id: str) -> str:
    return f"status:{report_id}"


def transition_allowed(current: dict[str, Any] | None, target: str) -> bool:
    if current is None:
        return True
    current_status = current.get("status", STATUS_QUEUED)
    if current_status in TERMINAL_STATUSES:
        return False
    return _RANK.get(target, 0) >= _RANK.get(current_status, 0)


def public_status(doc: dict[str, Any]) -> dict[str, Any]:
    payload = {
        "status": doc.get("status"),
        "progress": doc.get("progress", 0),
        "message": doc.get("message"),
        "currentStep": doc.get("currentStep"),
        "updatedAt": doc.get("updatedAt"),
    }
    if doc.get("error"):
        payload["error"] = doc["error"]
    return payload


class AnalysisStatusStore:
    """Per-report progress documents in KV; writes are monotonic in status and progress."""

    def __init__(self, kv: KVStore, *, ttl_s: int, clock: Clock | None = None) -> None:
        self._kv = kv
        self._ttl_s = ttl_s
        self._clock = clock or system_clock

    async def get(self, report_id: str) -> dict[str, Any] | None:
        doc = await self._kv.get(status_key(report_id), as_json=True)
        return doc if isinstance(doc, dict) else None

    async def _write(self, report_id: str, doc: dict[str, Any]) -> None:
        doc["updatedAt"] = utc_iso(self._clock())
        await put_json(self._kv, status_key(report_id), doc, expiration_ttl=self._ttl_s)

    async def initialize(self, report_id: str) -> dict[str, Any]:
        doc = {
            "status": STATUS_QUEUED,
            "progress": PROGRESS_QUEUED,
            "message": "Queued for analysis",
            "currentStep": "queued",
            "claimedAt": None,
            "createdAt": utc_iso(self._clock()),
        }
        await self._write(report_id, doc)
        return doc

    async def advance(
        self,
        report_id: str,
        *,
        status: str,
        progress: int,
        message: str,
        current_step: str,
        claimed: bool | None = None,
        error: str | None = None,
    ) -> dict[str, Any] | None:
        """Apply a forward move; returns the written document or None when it was refused."""
        current = await self.get(report_id)
        if not transition_allowed(current, status):
            logger.info(
                "analysis_status_refused report_id=%s from=%s to=%s",
                report_id,
                current.get("status") if current else None,
                status,
            )
            return None
        doc = dict(current or {})
        doc.update(
            {
                "status": status,
                "progress": max(int(doc.get("progress", 0) or 0), progress),
                "message": message,
                "currentStep": current_step,
            }
        )
        if claimed is True:
            doc["claimedAt"] = self._clock()
        elif claimed is False:
            doc["claimedAt"] = None
        if error is not None:
            doc["error"] = error
        elif status != STATUS_FAILED:
            doc.pop("error", None)
        if status in TERMINAL_STATUSES:
            doc["completedAt"] = utc_iso(self._clock())
            doc["claimedAt"] = None
        await self._write(report_id, doc)
        return doc

    def claim_is_fresh(self, doc: dict[str, Any], *, timeout_s: int) -> bool:
        # A released claim (retryable failure) is never fresh.
        claimed_at = doc.get("claimedAt")
        if doc.get("status") != STATUS_ANALYZING or claimed_at is None:
            return False
        return (self._clock() - float(claimed_at)) < timeout_s
