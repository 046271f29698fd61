from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable


# Every adapter reads wall time through a clock so tests can move time forward.
Clock = Callable[[], float]


def system_clock() -> float:
    return time.time()


class ManualClock:
    """Deterministic clock for tests; starts at a fixed epoch and only moves on advance()."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        self._now += float(seconds)
        return self._now


def utc_iso(epoch: float) -> str:
    # Millisecond ISO-8601 timestamps in UTC, matching blob key and metadata formats.
    moment = datetime.fromtimestamp(epoch, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
