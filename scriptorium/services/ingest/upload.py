from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol
from uuid import uuid4

from scriptorium.core.errors import (
    ConflictError,
    GoneError,
    NotFoundError,
    PayloadTooLarge,
    UnsupportedFormat,
    ValidationError,
)
from scriptorium.domain.models import MANUSCRIPT_QUEUED, MANUSCRIPT_UPLOADED, User
from scriptorium.persistence.repos import manuscripts as manuscripts_repo
from scriptorium.runtime.clock import utc_iso
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.services.analysis.extraction import CONTENT_TYPE_TEXT, resolve_content_type
from scriptorium.services.analysis.jobs import PipelineJob
from scriptorium.services.analysis.status import AnalysisStatusStore
from scriptorium.services.analysis.structure import count_words
from scriptorium.services.cache import Cache, CacheTTL, invalidate_manuscript
from scriptorium.services.usage import UsageService


logger = logging.getLogger(__name__)

BLOB_VERSION = "1"
REPORT_POINTER_PREFIX = "report-id:"
_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]")
_MAX_TITLE_CHARS = 300


def sanitize_filename(name: str) -> str:
    cleaned = _UNSAFE_FILENAME_RE.sub("_", name or "")
    return cleaned or "manuscript"


def blob_key_for(principal_id: str, manuscript_id: str, uploaded_at: float, filename: str) -> str:
    return f"{principal_id}/{manuscript_id}/{utc_iso(uploaded_at)}_{sanitize_filename(filename)}"


def report_pointer_key(report_id: str) -> str:
    return f"{REPORT_POINTER_PREFIX}{report_id}"


def mint_report_id() -> str:
    # 6 random bytes encode to exactly 8 URL-safe characters.
    return secrets.token_urlsafe(6)


class _ReadableUpload(Protocol):
    size: int | None

    def read(self, size: int = -1) -> Awaitable[bytes]: ...


async def read_bounded(upload: _ReadableUpload, max_bytes: int) -> bytes:
    """Read at most max_bytes + 1 bytes, refusing oversized uploads before buffering them."""
    if upload.size is not None and upload.size > max_bytes:
        raise PayloadTooLarge(details={"maxBytes": max_bytes})
    data = await upload.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise PayloadTooLarge(details={"maxBytes": max_bytes})
    return data


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str | None
    data: bytes


class IngestService:
    """Producer side of the pipeline: validate, persist, mint a report id and enqueue analysis."""

    def __init__(
        self,
        env: RuntimeEnv,
        *,
        report_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._env = env
        self._settings = env.settings
        self._usage = UsageService(env.db, env.settings)
        self._cache = Cache(env.kv, CacheTTL.from_settings(env.settings))
        self._status = AnalysisStatusStore(env.kv, ttl_s=env.settings.analysis_status_ttl_s, clock=env.clock)
        self._report_id_factory = report_id_factory or mint_report_id

    def _validate(self, upload: UploadedFile | None, title: str | None) -> tuple[UploadedFile, str, str]:
        if upload is None or not upload.filename:
            raise ValidationError("A manuscript file is required", details={"field": "file"})
        clean_title = (title or "").strip()
        if not clean_title:
            raise ValidationError("A title is required", details={"field": "title"})
        if len(clean_title) > _MAX_TITLE_CHARS:
            raise ValidationError(f"Title must be at most {_MAX_TITLE_CHARS} characters", details={"field": "title"})
        if len(upload.data) > self._settings.max_upload_bytes:
            raise PayloadTooLarge(details={"maxBytes": self._settings.max_upload_bytes})
        if not upload.data:
            raise ValidationError("The uploaded file is empty", details={"field": "file"})
        content_type = resolve_content_type(upload.content_type, upload.filename)
        if content_type is None:
            raise UnsupportedFormat(
                "Upload a .txt, .docx, .epub or .pdf manuscript",
                details={"fileType": upload.content_type},
            )
        return upload, clean_title, content_type

    async def _mint_report_id(self) -> str:
        raw = self._env.buckets.raw
        for _attempt in range(max(self._settings.report_id_mint_attempts, 1)):
            candidate = self._report_id_factory()
            # Expired pointers still own their id through the manuscript row.
            if await raw.head(report_pointer_key(candidate)) is not None:
                continue
            if await manuscripts_repo.get_manuscript_by_report_id(self._env.db, candidate) is not None:
                continue
            return candidate
        logger.error("report_id_mint_exhausted attempts=%s", self._settings.report_id_mint_attempts)
        raise ConflictError("Could not allocate a report id; please retry")

    async def ingest(
        self,
        user: User,
        upload: UploadedFile | None,
        *,
        title: str | None,
        genre: str | None,
    ) -> dict[str, Any]:
        now = self._env.now()
        await self._usage.require_capacity(user, now=now)
        upload, clean_title, content_type = self._validate(upload, title)
        genre = (genre or "").strip() or None

        manuscript_id = str(uuid4())
        blob_key = blob_key_for(user.id, manuscript_id, self._env.clock(), upload.filename)
        word_count = None
        if content_type == CONTENT_TYPE_TEXT:
            word_count = count_words(upload.data.decode("utf-8", errors="replace"))
        await self._env.buckets.raw.put(
            blob_key,
            upload.data,
            content_type=content_type,
            custom_metadata={
                "principalId": user.id,
                "manuscriptId": manuscript_id,
                "originalName": upload.filename,
                "uploadTime": utc_iso(self._env.clock()),
                "fileType": content_type,
                "fileSize": str(len(upload.data)),
                "version": BLOB_VERSION,
                "title": clean_title,
            },
        )
        await manuscripts_repo.create_manuscript(
            self._env.db,
            manuscript_id=manuscript_id,
            user_id=user.id,
            title=clean_title,
            genre=genre,
            word_count=word_count,
            status=MANUSCRIPT_UPLOADED,
            blob_key=blob_key,
            file_type=content_type,
            file_size=len(upload.data),
            metadata={"originalName": upload.filename},
            now=now,
        )

        report_id = await self._mint_report_id()
        await self._env.buckets.raw.put(
            report_pointer_key(report_id),
            blob_key,
            content_type="text/plain",
            custom_metadata={"manuscriptId": manuscript_id, "principalId": user.id},
            expiration_ttl=self._settings.report_id_ttl_s,
        )
        await manuscripts_repo.set_report_id(self._env.db, manuscript_id, report_id, now=now)
        await self._status.initialize(report_id)

        job = PipelineJob(
            report_id=report_id,
            blob_key=blob_key,
            principal_id=user.id,
            manuscript_id=manuscript_id,
            genre=genre,
        )
        await self._env.queue.send(self._settings.analysis_queue_name, job.to_body())
        await manuscripts_repo.set_status(self._env.db, manuscript_id, MANUSCRIPT_QUEUED, now=now)
        await self._usage.record_ingest(user, now=now)
        await invalidate_manuscript(
            self._cache, manuscript_id=manuscript_id, user_id=user.id, report_id=report_id, genre=genre
        )
        logger.info(
            "manuscript_ingested manuscript_id=%s report_id=%s file_type=%s size=%s",
            manuscript_id,
            report_id,
            content_type,
            len(upload.data),
        )
        return {
            "manuscript": {
                "id": manuscript_id,
                "reportId": report_id,
                "status": MANUSCRIPT_QUEUED,
                "wordCount": word_count,
                "title": clean_title,
                "genre": genre,
            }
        }


@dataclass(frozen=True)
class ResolvedReport:
    report_id: str
    blob_key: str
    manuscript: dict[str, Any] | None


async def resolve_report(env: RuntimeEnv, report_id: str | None) -> ResolvedReport:
    """Follow a ReportId pointer to its blob; expired pointers still known to a row are gone, not missing."""
    report_id = (report_id or "").strip()
    if not report_id:
        raise ValidationError("A report id is required", details={"field": "id"})
    pointer = await env.buckets.raw.get(report_pointer_key(report_id))
    manuscript = await manuscripts_repo.get_manuscript_by_report_id(env.db, report_id)
    if pointer is None:
        if manuscript is not None:
            raise GoneError("This report link has expired")
        raise NotFoundError("Report not found")
    return ResolvedReport(report_id=report_id, blob_key=await pointer.text(), manuscript=manuscript)
