from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Sequence
from uuid import uuid4

from arq import Retry

from scriptorium.runtime.clock import Clock, system_clock


logger = logging.getLogger(__name__)

# Redelivery delays by attempt number when a consumer retries without a delay.
DEFAULT_BACKOFF_S: tuple[int, ...] = (5, 30, 300)
DEFAULT_MAX_ATTEMPTS = 3

ANALYSIS_QUEUE = "analysis-queue"
ASSET_QUEUE = "asset-queue"

# arq dispatches by function name; each logical queue has one consumer task.
QUEUE_FUNCTIONS: dict[str, str] = {
    ANALYSIS_QUEUE: "consume_analysis_queue",
    ASSET_QUEUE: "consume_asset_queue",
}

ACK = "ack"
RETRY = "retry"


def backoff_delay(attempt: int, schedule: Sequence[int] = DEFAULT_BACKOFF_S) -> int:
    index = min(max(attempt, 1), len(schedule)) - 1
    return int(schedule[index])


@dataclass
class QueueMessage:
    """A delivered message; the consumer settles it with ack() or retry()."""

    id: str
    queue: str
    body: dict[str, Any]
    attempts: int = 1
    decision: str | None = None
    retry_delay_s: int | None = None

    def ack(self) -> None:
        self.decision = ACK

    def retry(self, *, delay_s: int | None = None) -> None:
        self.decision = RETRY
        self.retry_delay_s = delay_s


BatchConsumer = Callable[[list[QueueMessage]], Awaitable[None]]


class QueueProducer(Protocol):
    async def send(self, queue_name: str, payload: dict[str, Any], *, delay_s: int | None = None) -> str: ...


@dataclass
class _Pending:
    id: str
    body: dict[str, Any]
    attempts: int
    available_at: float


@dataclass
class DeadLetter:
    id: str
    body: dict[str, Any]
    attempts: int
    reason: str


@dataclass
class MemoryQueue:
    """In-process queue with batch delivery, ack/retry and bounded redelivery."""

    clock: Clock = system_clock
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_s: Sequence[int] = DEFAULT_BACKOFF_S
    _pending: dict[str, list[_Pending]] = field(default_factory=dict)
    dead_letters: dict[str, list[DeadLetter]] = field(default_factory=dict)

    async def send(self, queue_name: str, payload: dict[str, Any], *, delay_s: int | None = None) -> str:
        message_id = uuid4().hex
        # Round-trip through JSON so consumers never share mutable state with producers.
        body = json.loads(json.dumps(payload))
        self._pending.setdefault(queue_name, []).append(
            _Pending(message_id, body, 1, self.clock() + (delay_s or 0))
        )
        return message_id

    def pending(self, queue_name: str) -> list[dict[str, Any]]:
        return [item.body for item in self._pending.get(queue_name, [])]

    def depth(self, queue_name: str) -> int:
        return len(self._pending.get(queue_name, []))

    async def deliver(self, queue_name: str, consumer: BatchConsumer, *, batch_size: int = 10) -> int:
        """Deliver one batch of available messages; returns how many were delivered."""
        now = self.clock()
        queue = self._pending.get(queue_name, [])
        ready = [item for item in queue if item.available_at <= now][: max(1, batch_size)]
        if not ready:
            return 0
        ready_ids = {item.id for item in ready}
        self._pending[queue_name] = [item for item in queue if item.id not in ready_ids]
        messages = [QueueMessage(item.id, queue_name, item.body, item.attempts) for item in ready]
        failure: Exception | None = None
        try:
            await consumer(messages)
        except Exception as exc:  # noqa: BLE001 - a throwing consumer retries every unsettled message
            failure = exc
            logger.warning("queue_consumer_failed queue=%s", queue_name, exc_info=exc)
        for message in messages:
            decision = message.decision
            if decision is None:
                decision = RETRY if failure is not None else ACK
            if decision == ACK:
                continue
            self._redeliver(queue_name, message, reason=str(failure) if failure else "retry requested")
        return len(messages)

    def _redeliver(self, queue_name: str, message: QueueMessage, *, reason: str) -> None:
        if message.attempts >= self.max_attempts:
            logger.warning(
                "queue_message_dead_lettered queue=%s message_id=%s attempts=%s",
                queue_name,
                message.id,
                message.attempts,
            )
            self.dead_letters.setdefault(queue_name, []).append(
                DeadLetter(message.id, message.body, message.attempts, reason)
            )
            return
        delay = message.retry_delay_s
        if delay is None:
            delay = backoff_delay(message.attempts, self.backoff_s)
        self._pending.setdefault(queue_name, []).append(
            _Pending(message.id, message.body, message.attempts + 1, self.clock() + delay)
        )

    async def drain(self, queue_name: str, consumer: BatchConsumer, *, batch_size: int = 10) -> int:
        """Deliver until nothing is currently available; delayed retries stay queued."""
        total = 0
        while True:
            delivered = await self.deliver(queue_name, consumer, batch_size=batch_size)
            if delivered == 0:
                return total
            total += delivered


class ArqQueue:
    """Producer that enqueues arq jobs on the Redis-backed queue named after the logical queue."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def send(self, queue_name: str, payload: dict[str, Any], *, delay_s: int | None = None) -> str:
        function = QUEUE_FUNCTIONS.get(queue_name)
        if function is None:
            raise KeyError(f"No consumer registered for queue {queue_name!r}")
        kwargs: dict[str, Any] = {"_queue_name": queue_name}
        if delay_s:
            kwargs["_defer_by"] = delay_s
        job = await self._pool.enqueue_job(function, payload, **kwargs)
        return job.job_id if job is not None else ""

    async def close(self) -> None:
        await self._pool.close()


async def settle_arq_job(
    ctx: dict[str, Any],
    *,
    queue_name: str,
    payload: dict[str, Any],
    consumer: BatchConsumer,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_s: Sequence[int] = DEFAULT_BACKOFF_S,
) -> str:
    """Run one arq job as a single-message batch and translate the decision for arq."""
    attempts = int(ctx.get("job_try", 1) or 1)
    message = QueueMessage(str(ctx.get("job_id") or uuid4().hex), queue_name, payload, attempts)
    failure: Exception | None = None
    try:
        await consumer([message])
    except Exception as exc:  # noqa: BLE001 - unsettled messages retry like on the memory queue
        failure = exc
        logger.warning("queue_consumer_failed queue=%s", queue_name, exc_info=exc)
    decision = message.decision or (RETRY if failure is not None else ACK)
    if decision == ACK:
        return ACK
    if attempts >= max_attempts:
        logger.warning(
            "queue_message_dead_lettered queue=%s message_id=%s attempts=%s",
            queue_name,
            message.id,
            attempts,
        )
        redis = ctx.get("redis")
        if redis is not None:
            record = {"id": message.id, "body": payload, "attempts": attempts}
            await redis.rpush(f"dead-letter:{queue_name}", json.dumps(record))
        return "dead_letter"
    delay = message.retry_delay_s
    if delay is None:
        delay = backoff_delay(attempts, backoff_s)
    raise Retry(defer=delay)


def heartbeat_key(queue_name: str) -> str:
    return f"worker:{queue_name}:heartbeat"
