from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)

_SQL_PREVIEW_CHARS = 160


class QueryMonitor:
    """Times relational calls and logs the slow ones with a truncated statement preview."""

    def __init__(
        self,
        *,
        slow_query_ms: int,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._slow_query_ms = slow_query_ms
        self._time = time_provider or time.perf_counter
        self.total_queries = 0
        self.slow_queries = 0

    async def observe(self, sql: str, call: Callable[[], Awaitable[Any]]) -> Any:
        start = self._time()
        try:
            return await call()
        finally:
            elapsed_ms = (self._time() - start) * 1000.0
            self.total_queries += 1
            if elapsed_ms >= self._slow_query_ms:
                self.slow_queries += 1
                preview = " ".join(sql.split())[:_SQL_PREVIEW_CHARS]
                logger.warning("slow_query duration_ms=%.1f sql=%s", elapsed_ms, preview)

    def stats(self) -> dict[str, int]:
        return {"total": self.total_queries, "slow": self.slow_queries}
