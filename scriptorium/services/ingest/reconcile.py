from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from scriptorium.domain.models import MANUSCRIPT_UPLOADED
from scriptorium.persistence.repos import manuscripts as manuscripts_repo
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.services.ingest.upload import REPORT_POINTER_PREFIX


logger = logging.getLogger(__name__)

_PAGE_SIZE = 500


@dataclass
class ReconcileReport:
    scanned: int = 0
    recreated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _upload_epoch(value: str | None, fallback: float) -> int:
    if value:
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
        except ValueError:
            pass
    return int(fallback)


async def reconcile_orphans(env: RuntimeEnv, *, dry_run: bool = False) -> ReconcileReport:
    """Recreate manuscript rows for raw blobs whose row went missing."""
    report = ReconcileReport()
    raw = env.buckets.raw
    cursor: str | None = None
    while True:
        page = await raw.list(limit=_PAGE_SIZE, cursor=cursor)
        candidates = {}
        for head in page.objects:
            if head.key.startswith(REPORT_POINTER_PREFIX):
                continue
            report.scanned += 1
            if not head.custom_metadata:
                # Listings from S3 omit metadata.
                full = await raw.head(head.key)
                if full is None:
                    continue
                head = full
            manuscript_id = head.custom_metadata.get("manuscriptId")
            principal_id = head.custom_metadata.get("principalId")
            if not manuscript_id or not principal_id:
                report.skipped.append(head.key)
                continue
            candidates[manuscript_id] = head

        known = await manuscripts_repo.existing_ids(env.db, list(candidates))
        for manuscript_id, head in candidates.items():
            if manuscript_id in known:
                continue
            if dry_run:
                report.recreated.append(manuscript_id)
                continue
            metadata = head.custom_metadata
            uploaded_at = _upload_epoch(metadata.get("uploadTime"), head.uploaded)
            await manuscripts_repo.create_manuscript(
                env.db,
                manuscript_id=manuscript_id,
                user_id=metadata["principalId"],
                title=metadata.get("title") or metadata.get("originalName") or "Untitled manuscript",
                genre=None,
                word_count=None,
                status=MANUSCRIPT_UPLOADED,
                blob_key=head.key,
                file_type=metadata.get("fileType") or head.content_type,
                file_size=head.size,
                metadata={"originalName": metadata.get("originalName"), "recovered": True},
                now=uploaded_at,
            )
            report.recreated.append(manuscript_id)
            logger.info("orphan_manuscript_recreated manuscript_id=%s", manuscript_id)

        if not page.truncated or not page.cursor:
            break
        cursor = page.cursor

    logger.info(
        "orphan_sweep_complete scanned=%s recreated=%s skipped=%s dry_run=%s",
        report.scanned,
        len(report.recreated),
        len(report.skipped),
        dry_run,
    )
    return report
