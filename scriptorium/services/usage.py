from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from scriptorium.core.config import Settings
from scriptorium.core.errors import QuotaExceeded
from scriptorium.domain.models import User
from scriptorium.persistence.repos import usage as usage_repo
from scriptorium.runtime.relational import Database


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageSnapshot:
    # Current billing window for a principal; limit None means unlimited.
    principal_id: str
    period_start: int
    period_end: int
    count: int
    limit: int | None

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(self.limit - self.count, 0)

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and self.count >= self.limit

    def public(self) -> dict[str, object]:
        return {
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "periodStart": self.period_start,
            "periodEnd": self.period_end,
        }


def month_bounds(epoch: float) -> tuple[int, int]:
    """Calendar month in UTC containing ``epoch`` as [start, end) epoch seconds."""
    moment = datetime.fromtimestamp(epoch, tz=timezone.utc)
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return int(start.timestamp()), int(end.timestamp())


def monthly_limit_for(user: User, settings: Settings) -> int | None:
    if user.role == "admin":
        return None
    limits = {
        "free": settings.quota_free_monthly,
        "pro": settings.quota_pro_monthly,
        "enterprise": settings.quota_enterprise_monthly,
    }
    limit = limits.get(user.tier, settings.quota_free_monthly)
    return limit if limit > 0 else None


class UsageService:
    def __init__(self, db: Database, settings: Settings) -> None:
        self._db = db
        self._settings = settings

    async def current(self, user: User, *, now: float) -> UsageSnapshot:
        period_start, period_end = month_bounds(now)
        limit = monthly_limit_for(user, self._settings)
        row = await usage_repo.ensure_window(
            self._db,
            principal_id=user.id,
            period_start=period_start,
            period_end=period_end,
            monthly_limit=limit,
            now=int(now),
        )
        return UsageSnapshot(
            principal_id=user.id,
            period_start=int(row["period_start"]),
            period_end=int(row["period_end"]),
            count=int(row["manuscripts_count"] or 0),
            # The tier may have changed since the window opened; the live tier wins.
            limit=limit,
        )

    async def require_capacity(self, user: User, *, now: float) -> UsageSnapshot:
        snapshot = await self.current(user, now=now)
        if snapshot.exhausted:
            raise QuotaExceeded(
                details={
                    "limit": snapshot.limit,
                    "used": snapshot.count,
                    "periodEnd": snapshot.period_end,
                    "tier": user.tier,
                    "upgradeRequired": True,
                }
            )
        return snapshot

    async def record_ingest(self, user: User, *, now: float) -> None:
        # Best-effort: a failed increment is logged and the upload still succeeds.
        period_start, _period_end = month_bounds(now)
        try:
            changed = await usage_repo.increment_window(self._db, user.id, period_start, now=int(now))
            if changed == 0:
                await self.current(user, now=now)
                await usage_repo.increment_window(self._db, user.id, period_start, now=int(now))
        except Exception as exc:  # noqa: BLE001 - accounting must not fail an accepted upload
            logger.warning("usage_increment_failed principal_id=%s", user.id, exc_info=exc)
