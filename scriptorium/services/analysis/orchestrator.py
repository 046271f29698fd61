from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, TypeVar

from scriptorium.core.errors import (
    NotFoundError,
    ScriptoriumError,
    UpstreamTimeoutError,
    ValidationError,
    is_transient,
)
from scriptorium.domain.models import MANUSCRIPT_ANALYZING, MANUSCRIPT_FAILED
from scriptorium.persistence.repos import manuscripts as manuscripts_repo
from scriptorium.persistence.repos import users as users_repo
from scriptorium.providers.agents.base import (
    STAGE_COPY,
    STAGE_DEVELOPMENTAL,
    STAGE_LINE,
    STAGES,
    AgentSet,
    AnalysisRequest,
)
from scriptorium.runtime.clock import utc_iso
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.runtime.queues import QueueMessage
from scriptorium.services.analysis.extraction import extract_text
from scriptorium.services.analysis.jobs import STAGE_LABELS, PipelineJob, result_key
from scriptorium.services.analysis.status import (
    PROGRESS_CLAIMED,
    PROGRESS_COMPLETE,
    PROGRESS_DEVELOPMENTAL,
    PROGRESS_LINE,
    STATUS_ANALYZING,
    STATUS_COMPLETE,
    STATUS_FAILED,
    AnalysisStatusStore,
)
from scriptorium.services.analysis.structure import analyze_structure
from scriptorium.services.assets.status import initialize_status_document
from scriptorium.services.cache import Cache, CacheTTL, invalidate_manuscript
from scriptorium.services.email import EmailSender, analysis_complete_email


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Progress and message written after each stage result is stored.
_STAGE_PROGRESS: dict[str, tuple[int, str]] = {
    STAGE_DEVELOPMENTAL: (PROGRESS_DEVELOPMENTAL, "Developmental analysis complete"),
    STAGE_LINE: (PROGRESS_LINE, "Line editing complete"),
    STAGE_COPY: (PROGRESS_COMPLETE, "All analyses complete"),
}

STEP_PREPARING = "preparing"
STEP_FINALIZING = "finalizing"
STEP_DONE = "done"


def retry_delay_s(attempt: int, base_s: int) -> int:
    """Per-message backoff: 2^attempt * base."""
    return (2 ** max(attempt, 1)) * base_s


def _safe_error_text(exc: BaseException) -> str:
    # Only typed errors carry user-safe messages.
    if isinstance(exc, ScriptoriumError):
        return exc.message
    return "Unexpected processing error"


class AnalysisOrchestrator:
    """Consumer for analysis-queue: developmental, line and copy stages in strict order."""

    def __init__(
        self,
        env: RuntimeEnv,
        agents: AgentSet,
        *,
        email: EmailSender | None = None,
    ) -> None:
        self._env = env
        self._agents = agents
        self._email = email
        self._settings = env.settings
        self._cache = Cache(env.kv, CacheTTL.from_settings(env.settings))
        self.status = AnalysisStatusStore(env.kv, ttl_s=env.settings.analysis_status_ttl_s, clock=env.clock)

    async def handle(self, messages: list[QueueMessage]) -> None:
        # Messages in a batch are independent; each settles itself.
        for message in messages:
            await self.process(message)

    async def process(self, message: QueueMessage) -> None:
        try:
            job = PipelineJob.from_body(message.body)
        except ValidationError:
            logger.error("analysis_message_invalid message_id=%s", message.id)
            message.ack()
            return

        current = await self.status.get(job.report_id)
        if current is not None:
            if current.get("status") in (STATUS_COMPLETE, STATUS_FAILED):
                logger.info("analysis_skip_terminal report_id=%s status=%s", job.report_id, current["status"])
                message.ack()
                return
            if self.status.claim_is_fresh(current, timeout_s=self._settings.stage_timeout_s):
                logger.info("analysis_skip_claimed report_id=%s", job.report_id)
                message.ack()
                return

        claimed = await self.status.advance(
            job.report_id,
            status=STATUS_ANALYZING,
            progress=PROGRESS_CLAIMED,
            message="Preparing manuscript",
            current_step=STEP_PREPARING,
            claimed=True,
        )
        if claimed is None:
            message.ack()
            return

        step = STEP_PREPARING
        try:
            await manuscripts_repo.set_status(
                self._env.db, job.manuscript_id, MANUSCRIPT_ANALYZING, now=self._env.now()
            )
            await self._invalidate(job)
            text, structure = await self._with_timeout(self._prepare(job), step)
            prior: dict[str, Any] = {}
            for stage in STAGES:
                step = stage
                prior[stage] = await self._run_stage(job, stage, text, structure, prior)
            step = STEP_FINALIZING
            await self._finalize(job)
        except Exception as exc:  # noqa: BLE001 - every failure is classified into retry or terminal
            await self._handle_failure(message, job, step, exc)
            return
        message.ack()

    async def _with_timeout(self, awaitable: Awaitable[T], step: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._settings.stage_timeout_s)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError(f"{step} exceeded {self._settings.stage_timeout_s}s") from exc

    async def _prepare(self, job: PipelineJob) -> tuple[str, dict[str, Any]]:
        obj = await self._env.buckets.raw.get(job.blob_key)
        if obj is None:
            raise NotFoundError("Manuscript file not found")
        data = await obj.read()
        file_type = obj.custom_metadata.get("fileType") or obj.content_type
        text = extract_text(data, file_type, obj.custom_metadata.get("originalName"))
        if not text.strip():
            raise ValidationError("Manuscript contains no readable text")
        return text, analyze_structure(text)

    async def _load_result(self, job: PipelineJob, stage: str) -> dict[str, Any] | None:
        obj = await self._env.buckets.processed.get(result_key(job.blob_key, stage))
        if obj is None:
            return None
        try:
            return await obj.json()
        except ValueError:
            # A torn write is recomputed.
            return None

    async def _run_stage(
        self,
        job: PipelineJob,
        stage: str,
        text: str,
        structure: dict[str, Any],
        prior: dict[str, Any],
    ) -> dict[str, Any]:
        existing = await self._load_result(job, stage)
        if existing is not None:
            # Resumed delivery: the stored result stands and the agent is not called again.
            logger.info("analysis_stage_reused report_id=%s stage=%s", job.report_id, stage)
            result = existing
        else:
            request = AnalysisRequest(
                report_id=job.report_id,
                text=text,
                genre=job.genre,
                structure=structure,
                prior=dict(prior),
            )
            result = await self._with_timeout(self._agents.analysis_agent(stage).analyze(request), stage)
            await self._env.buckets.processed.put(
                result_key(job.blob_key, stage),
                json.dumps(result, default=str),
                content_type="application/json",
                custom_metadata={"reportId": job.report_id, "stage": stage},
            )
            logger.info("analysis_stage_complete report_id=%s stage=%s", job.report_id, stage)
        if stage != STAGE_COPY:
            progress, label = _STAGE_PROGRESS[stage]
            next_stage = STAGES[STAGES.index(stage) + 1]
            await self.status.advance(
                job.report_id,
                status=STATUS_ANALYZING,
                progress=progress,
                message=label,
                current_step=next_stage,
                claimed=True,
            )
        return result

    async def _finalize(self, job: PipelineJob) -> None:
        now = self._env.now()
        await initialize_status_document(
            self._env.buckets.processed, job.blob_key, job.report_id, now_iso=utc_iso(now)
        )
        await self._env.queue.send(self._settings.asset_queue_name, job.to_body())
        await manuscripts_repo.mark_analyzed(self._env.db, job.manuscript_id, now=now)
        progress, label = _STAGE_PROGRESS[STAGE_COPY]
        await self.status.advance(
            job.report_id,
            status=STATUS_COMPLETE,
            progress=progress,
            message=label,
            current_step=STEP_DONE,
        )
        await self._invalidate(job)
        await self._notify(job)
        logger.info("analysis_complete report_id=%s", job.report_id)

    async def _invalidate(self, job: PipelineJob) -> None:
        await invalidate_manuscript(
            self._cache,
            manuscript_id=job.manuscript_id,
            user_id=job.principal_id,
            report_id=job.report_id,
            genre=job.genre,
        )

    async def _notify(self, job: PipelineJob) -> None:
        if self._email is None:
            return
        try:
            owner = await users_repo.get_user_by_id(self._env.db, job.principal_id)
            manuscript = await manuscripts_repo.get_manuscript(self._env.db, job.manuscript_id)
            if owner is None or manuscript is None:
                return
            link = f"{self._settings.frontend_url}/report?id={job.report_id}"
            await self._email.send(analysis_complete_email(owner["email"], title=manuscript["title"], link=link))
        except Exception as exc:  # noqa: BLE001 - notification is best-effort after completion
            logger.warning("analysis_notify_failed report_id=%s", job.report_id, exc_info=exc)

    async def _handle_failure(self, message: QueueMessage, job: PipelineJob, step: str, exc: Exception) -> None:
        attempt = max(message.attempts, job.attempt)
        error_text = _safe_error_text(exc)
        label = STAGE_LABELS.get(step, step.capitalize())
        status_message = f"{label} failed: {error_text}"
        if is_transient(exc) and attempt < self._settings.queue_max_attempts:
            delay = retry_delay_s(attempt, self._settings.queue_retry_base_s)
            logger.warning(
                "analysis_stage_retry report_id=%s step=%s attempt=%s delay_s=%s",
                job.report_id,
                step,
                attempt,
                delay,
                exc_info=exc,
            )
            # The claim is released so the redelivery is not mistaken for a live duplicate.
            await self.status.advance(
                job.report_id,
                status=STATUS_ANALYZING,
                progress=0,
                message=f"{status_message} (retrying)",
                current_step=step,
                claimed=False,
                error=error_text,
            )
            message.retry(delay_s=delay)
            return

        logger.error(
            "analysis_failed report_id=%s step=%s attempt=%s kind=%s",
            job.report_id,
            step,
            attempt,
            type(exc).__name__,
            exc_info=exc,
        )
        await self.status.advance(
            job.report_id,
            status=STATUS_FAILED,
            progress=0,
            message=status_message,
            current_step=step,
            error=error_text,
        )
        if step == STEP_FINALIZING:
            # All stage results exist; the row keeps whatever finalize already wrote.
            message.ack()
            return
        try:
            await manuscripts_repo.set_status(self._env.db, job.manuscript_id, MANUSCRIPT_FAILED, now=self._env.now())
            await self._invalidate(job)
        except Exception as row_exc:  # noqa: BLE001 - the status document already records the failure
            logger.warning("analysis_row_update_failed report_id=%s", job.report_id, exc_info=row_exc)
        message.ack()
