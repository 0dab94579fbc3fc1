"""Retention policy evaluation for stored snapshots."""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Set

from bulletproof.errors import RetentionPolicyError
from bulletproof.ids import sort_newest_first
from bulletproof.models import SnapshotInfo

if TYPE_CHECKING:
    from bulletproof.destinations import Destination


logger = logging.getLogger(__name__)

# Keeps a snapshot captured right on a weekly/monthly boundary despite clock skew.
BOUNDARY_GRACE = timedelta(hours=1)


@dataclass(slots=True)
class RetentionPolicy:
    enabled: bool = False
    keep_last: int = 0
    keep_daily: int = 0
    keep_weekly: int = 0
    keep_monthly: int = 0

    @property
    def has_rules(self) -> bool:
        return any((self.keep_last, self.keep_daily, self.keep_weekly, self.keep_monthly))

    def validate(self) -> None:
        if not self.enabled:
            raise RetentionPolicyError("Retention policy is not enabled")
        counts = (self.keep_last, self.keep_daily, self.keep_weekly, self.keep_monthly)
        if any(count < 0 for count in counts):
            raise RetentionPolicyError("Retention policy values cannot be negative")
        if not self.has_rules:
            raise RetentionPolicyError("Retention policy enabled but no retention rules configured")

    def describe(self) -> list[str]:
        lines: list[str] = []
        if self.keep_last > 0:
            lines.append(f"Keep last {self.keep_last} snapshots")
        if self.keep_daily > 0:
            lines.append(f"Keep daily snapshots for {self.keep_daily} days")
        if self.keep_weekly > 0:
            lines.append(f"Keep weekly snapshots for {self.keep_weekly} weeks")
        if self.keep_monthly > 0:
            lines.append(f"Keep monthly snapshots for {self.keep_monthly} months")
        return lines


@dataclass(slots=True)
class PruneResult:
    to_keep: List[SnapshotInfo]
    to_delete: List[SnapshotInfo]
    total_snapshots: int
    reasons: Dict[str, Set[str]] = field(default_factory=dict)


@dataclass(slots=True)
class PruneReport:
    deleted: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def subtract_months(value: datetime, months: int) -> datetime:
    total = value.year * 12 + (value.month - 1) - months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _cutoff(now: datetime, compute: Callable[[], datetime]) -> datetime:
    try:
        return compute()
    except (OverflowError, ValueError):
        # Windows reaching back past year 1 cover every snapshot.
        return datetime.min.replace(tzinfo=now.tzinfo)


def _keep_one_per_bucket(
    items: List[SnapshotInfo],
    cutoff: datetime,
    bucket: Callable[[datetime], object],
    reason: str,
    keep: Dict[str, Set[str]],
) -> None:
    # Items are newest first, so the first hit per bucket is the newest.
    seen: Set[object] = set()
    for info in items:
        if info.timestamp < cutoff:
            continue
        key = bucket(info.timestamp)
        if key in seen:
            continue
        seen.add(key)
        keep.setdefault(info.id, set()).add(reason)


def calculate_prune(
    snapshots: Iterable[SnapshotInfo],
    policy: RetentionPolicy,
    *,
    now: datetime | None = None,
) -> PruneResult:
    policy.validate()
    items = sort_newest_first(snapshots)
    if not items:
        return PruneResult(to_keep=[], to_delete=[], total_snapshots=0)

    now = now or datetime.now(timezone.utc)
    keep: Dict[str, Set[str]] = {}

    for info in items[: policy.keep_last]:
        keep.setdefault(info.id, set()).add("last")

    if policy.keep_daily > 0:
        _keep_one_per_bucket(
            items,
            _cutoff(now, lambda: now - timedelta(days=policy.keep_daily)),
            lambda ts: ts.date(),
            "daily",
            keep,
        )

    if policy.keep_weekly > 0:
        _keep_one_per_bucket(
            items,
            _cutoff(now, lambda: now - timedelta(weeks=policy.keep_weekly) - BOUNDARY_GRACE),
            lambda ts: tuple(ts.isocalendar())[:2],
            "weekly",
            keep,
        )

    if policy.keep_monthly > 0:
        _keep_one_per_bucket(
            items,
            _cutoff(now, lambda: subtract_months(now, policy.keep_monthly) - BOUNDARY_GRACE),
            lambda ts: (ts.year, ts.month),
            "monthly",
            keep,
        )

    to_keep = [info for info in items if info.id in keep]
    to_delete = [info for info in items if info.id not in keep]
    return PruneResult(
        to_keep=to_keep,
        to_delete=to_delete,
        total_snapshots=len(items),
        reasons=keep,
    )


async def execute_prune(destination: "Destination", result: PruneResult) -> PruneReport:
    """Delete every snapshot marked for deletion, continuing past failures.

    Deletions that succeeded stay deleted even if a later one fails.
    """
    report = PruneReport()
    for info in result.to_delete:
        try:
            await destination.delete_snapshot(info.id)
        except Exception as exc:
            logger.warning("Failed to delete snapshot %s: %s", info.id, exc)
            report.failures[info.id] = str(exc)
            continue
        logger.info("Deleted snapshot %s", info.id)
        report.deleted.append(info.id)
    return report


__all__ = [
    "PruneReport",
    "PruneResult",
    "RetentionPolicy",
    "calculate_prune",
    "execute_prune",
    "subtract_months",
]
