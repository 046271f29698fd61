from __future__ import annotations

import asyncio
import logging
from typing import Any

from scriptorium.core.errors import NotFoundError, ScriptoriumError, ValidationError, is_transient
from scriptorium.persistence.repos import manuscripts as manuscripts_repo
from scriptorium.providers.agents.base import ASSET_KINDS, STAGES, AgentSet, AssetRequest
from scriptorium.runtime.clock import utc_iso
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.runtime.queues import QueueMessage
from scriptorium.services.analysis.extraction import extract_text
from scriptorium.services.analysis.jobs import PipelineJob, result_key
from scriptorium.services.analysis.orchestrator import retry_delay_s
from scriptorium.services.assets.status import (
    ASSETS_FAILED,
    ASSETS_GENERATING,
    KIND_COMPLETE,
    KIND_FAILED,
    KIND_GENERATING,
    classify,
    initialize_status_document,
    store_status_document,
    succeeded_count,
)


logger = logging.getLogger(__name__)


def settled_progress(per_kind: dict[str, Any]) -> int:
    settled = sum(
        1 for kind in ASSET_KINDS if (per_kind.get(kind) or {}).get("status") in (KIND_COMPLETE, KIND_FAILED)
    )
    return round(100 * settled / len(ASSET_KINDS))


class AssetOrchestrator:
    """Consumer for asset-queue: seven independent agents, isolated failures, incremental status."""

    def __init__(self, env: RuntimeEnv, agents: AgentSet) -> None:
        self._env = env
        self._agents = agents
        self._settings = env.settings

    async def handle(self, messages: list[QueueMessage]) -> None:
        for message in messages:
            await self.process(message)

    async def process(self, message: QueueMessage) -> None:
        try:
            job = PipelineJob.from_body(message.body)
        except ValidationError:
            logger.error("asset_message_invalid message_id=%s", message.id)
            message.ack()
            return
        try:
            await self.generate(job)
        except Exception as exc:  # noqa: BLE001 - input loading failures decide retry or terminal here
            attempt = max(message.attempts, job.attempt)
            if is_transient(exc) and attempt < self._settings.queue_max_attempts:
                delay = retry_delay_s(attempt, self._settings.queue_retry_base_s)
                logger.warning(
                    "asset_generation_retry report_id=%s attempt=%s delay_s=%s",
                    job.report_id,
                    attempt,
                    delay,
                    exc_info=exc,
                )
                message.retry(delay_s=delay)
                return
            logger.error("asset_generation_failed report_id=%s", job.report_id, exc_info=exc)
            await self._mark_failed(job, exc)
        message.ack()

    async def _mark_failed(self, job: PipelineJob, exc: Exception) -> None:
        try:
            doc = await initialize_status_document(
                self._env.buckets.processed, job.blob_key, job.report_id, now_iso=utc_iso(self._env.now())
            )
            doc["status"] = ASSETS_FAILED
            doc["error"] = exc.message if isinstance(exc, ScriptoriumError) else "Generation failed"
            await self._store(job, doc)
        except Exception as store_exc:  # noqa: BLE001 - the message is settled either way
            logger.warning("asset_status_store_failed report_id=%s", job.report_id, exc_info=store_exc)

    async def _inputs(self, job: PipelineJob) -> tuple[str, dict[str, Any], dict[str, Any]]:
        raw = await self._env.buckets.raw.get(job.blob_key)
        if raw is None:
            raise NotFoundError("Manuscript file not found")
        file_type = raw.custom_metadata.get("fileType") or raw.content_type
        text = extract_text(await raw.read(), file_type, raw.custom_metadata.get("originalName"))
        analyses: dict[str, Any] = {}
        for stage in STAGES:
            obj = await self._env.buckets.processed.get(result_key(job.blob_key, stage))
            if obj is None:
                raise NotFoundError(f"Analysis result for {stage} is missing")
            analyses[stage] = await obj.json()
        manuscript = await manuscripts_repo.get_manuscript(self._env.db, job.manuscript_id)
        metadata: dict[str, Any] = {
            "manuscriptId": job.manuscript_id,
            "title": manuscript["title"] if manuscript else None,
            "genre": job.genre,
            "authorData": job.author_data,
            "seriesData": job.series_data,
        }
        return text, analyses, metadata

    async def generate(self, job: PipelineJob) -> dict[str, Any]:
        """Run every kind not already complete and return the merged status document."""
        processed = self._env.buckets.processed
        doc = await initialize_status_document(
            processed, job.blob_key, job.report_id, now_iso=utc_iso(self._env.now())
        )
        per_kind: dict[str, Any] = doc.setdefault("perKind", {})
        todo = [kind for kind in ASSET_KINDS if (per_kind.get(kind) or {}).get("status") != KIND_COMPLETE]
        if not todo:
            logger.info("asset_generation_skip_complete report_id=%s", job.report_id)
            return await self._conclude(job, doc)

        text, analyses, metadata = await self._inputs(job)
        doc["status"] = ASSETS_GENERATING
        for kind in todo:
            per_kind[kind] = {"kind": kind, "status": KIND_GENERATING}
        await self._store(job, doc)

        # One writer at a time so incremental documents never drop a peer's result.
        lock = asyncio.Lock()

        async def _run(kind: str) -> None:
            request = AssetRequest(
                report_id=job.report_id,
                kind=kind,
                text=text,
                analyses=analyses,
                metadata=metadata,
            )
            entry = await self._run_agent(kind, request)
            async with lock:
                per_kind[kind] = entry
                doc["progress"] = settled_progress(per_kind)
                await self._store(job, doc)

        await asyncio.gather(*(_run(kind) for kind in todo))
        return await self._conclude(job, doc)

    async def _run_agent(self, kind: str, request: AssetRequest) -> dict[str, Any]:
        agent = self._agents.asset_agent(kind)
        try:
            outcome = await asyncio.wait_for(agent.generate(request), timeout=self._settings.asset_agent_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("asset_agent_timeout report_id=%s kind=%s", request.report_id, kind)
            return {"kind": kind, "status": KIND_FAILED, "error": "Timed out"}
        except Exception as exc:  # noqa: BLE001 - a failed kind never fails its peers
            logger.warning("asset_agent_failed report_id=%s kind=%s", request.report_id, kind, exc_info=exc)
            error = exc.message if isinstance(exc, ScriptoriumError) else "Generation failed"
            return {"kind": kind, "status": KIND_FAILED, "error": error}
        return {
            "kind": kind,
            "status": KIND_COMPLETE,
            "result": outcome.result,
            "tokensIn": outcome.tokens_in,
            "tokensOut": outcome.tokens_out,
            "completedAt": utc_iso(self._env.now()),
        }

    async def _store(self, job: PipelineJob, doc: dict[str, Any]) -> None:
        doc["updatedAt"] = utc_iso(self._env.now())
        await store_status_document(self._env.buckets.processed, job.blob_key, doc)

    async def _conclude(self, job: PipelineJob, doc: dict[str, Any]) -> dict[str, Any]:
        succeeded = succeeded_count(doc)
        doc["status"] = classify(succeeded)
        doc["progress"] = 100
        doc["succeeded"] = succeeded
        doc["completedAt"] = utc_iso(self._env.now())
        await self._store(job, doc)
        logger.info(
            "asset_generation_complete report_id=%s status=%s succeeded=%s",
            job.report_id,
            doc["status"],
            succeeded,
        )
        return doc
