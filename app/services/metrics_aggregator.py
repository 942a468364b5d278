"""
Dual-Write Metrics Aggregator

Rolls dual_write_logs entries into fixed hourly/daily buckets.

Buckets are always recomputed from the log: no counters are kept between
calls, so two computations over the same entries return identical values.
refresh() persists snapshots into system_health_metrics for dashboards that
want precomputed history; the on-demand path never reads them.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.exceptions import PersistenceError, QueryError, ValidationError
from app.models.dual_write_log import DualWriteLog
from app.models.system_health_metric import SystemHealthMetric
from app.services.clock import utcnow

logger = structlog.get_logger(__name__)

GRANULARITIES = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
}

PERIODS = ("today", "week", "month")

MAX_BUCKETS = 1000


def _check_granularity(granularity: str) -> timedelta:
    if granularity not in GRANULARITIES:
        raise ValidationError(
            f"Invalid granularity '{granularity}'",
            details={"validTypes": list(GRANULARITIES)}
        )
    return GRANULARITIES[granularity]


def floor_window(ts: datetime, granularity: str) -> datetime:
    """Start of the hour or UTC calendar day containing ts."""
    _check_granularity(granularity)
    if granularity == "hourly":
        return ts.replace(minute=0, second=0, microsecond=0)
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def window_starts(start: datetime, end: datetime, granularity: str) -> List[datetime]:
    """
    Aligned window starts for every window overlapping [start, end).

    The first window starts at floor(start), so a bucket is always a whole
    hour or day even if start is not aligned.
    """
    step = _check_granularity(granularity)
    starts = []
    current = floor_window(start, granularity)
    while current < end:
        starts.append(current)
        current += step
    return starts


@dataclass(frozen=True)
class MetricsScope:
    """Optional filters applied to log entries before bucketing."""

    table: Optional[str] = None
    batch: Optional[str] = None
    program: Optional[str] = None

    @property
    def key(self) -> str:
        parts = [
            f"{name}={value}"
            for name, value in (("table", self.table), ("batch", self.batch), ("program", self.program))
            if value
        ]
        return ";".join(parts) if parts else "all"


@dataclass
class MetricsBucket:
    """Aggregate of the log entries in one window."""

    period_type: str
    window_start: datetime
    window_end: datetime
    scope_key: str
    total_operations: int
    error_count: int
    sheets_success_count: int
    supabase_success_count: int
    both_success_count: int
    sheets_only_success_count: int
    supabase_only_success_count: int
    both_failed_count: int
    discrepancy_count: int
    sheets_error_count: int
    supabase_error_count: int
    avg_sheets_duration_ms: Optional[int]
    avg_supabase_duration_ms: Optional[int]
    min_sheets_duration_ms: Optional[int]
    min_supabase_duration_ms: Optional[int]
    max_sheets_duration_ms: Optional[int]
    max_supabase_duration_ms: Optional[int]
    sheets_success_rate: float
    supabase_success_rate: float
    both_success_rate: float

    def to_dict(self) -> dict:
        data = asdict(self)
        data["window_start"] = self.window_start.isoformat()
        data["window_end"] = self.window_end.isoformat()
        return data


def _rate(count: int, total: int) -> float:
    """Percentage with 2 decimals; an empty window is 0, not an error."""
    if total == 0:
        return 0.0
    return round(count * 100.0 / total, 2)


def _duration_stats(values: Sequence[int]) -> Dict[str, Optional[int]]:
    if not values:
        return {"avg": None, "min": None, "max": None}
    return {
        "avg": int(round(sum(values) / len(values))),
        "min": min(values),
        "max": max(values),
    }


def aggregate_entries(entries: Iterable) -> Dict[str, object]:
    """
    Compute bucket statistics for a set of log rows.

    Args:
        entries: Rows exposing sheets_success, supabase_success,
            sheets_duration_ms, supabase_duration_ms, sheets_error, supabase_error

    Returns:
        dict of counts, duration stats and success rates
    """
    total = 0
    sheets_ok = supabase_ok = both_ok = sheets_only = supabase_only = both_failed = 0
    sheets_errors = supabase_errors = 0
    sheets_durations: List[int] = []
    supabase_durations: List[int] = []

    for entry in entries:
        total += 1
        s_ok = bool(entry.sheets_success)
        b_ok = bool(entry.supabase_success)

        sheets_ok += s_ok
        supabase_ok += b_ok
        if s_ok and b_ok:
            both_ok += 1
        elif s_ok:
            sheets_only += 1
        elif b_ok:
            supabase_only += 1
        else:
            both_failed += 1

        if entry.sheets_error is not None:
            sheets_errors += 1
        if entry.supabase_error is not None:
            supabase_errors += 1
        if entry.sheets_duration_ms is not None:
            sheets_durations.append(entry.sheets_duration_ms)
        if entry.supabase_duration_ms is not None:
            supabase_durations.append(entry.supabase_duration_ms)

    sheets_stats = _duration_stats(sheets_durations)
    supabase_stats = _duration_stats(supabase_durations)

    return {
        "total_operations": total,
        "error_count": total - both_ok,
        "sheets_success_count": sheets_ok,
        "supabase_success_count": supabase_ok,
        "both_success_count": both_ok,
        "sheets_only_success_count": sheets_only,
        "supabase_only_success_count": supabase_only,
        "both_failed_count": both_failed,
        "discrepancy_count": sheets_only + supabase_only,
        "sheets_error_count": sheets_errors,
        "supabase_error_count": supabase_errors,
        "avg_sheets_duration_ms": sheets_stats["avg"],
        "avg_supabase_duration_ms": supabase_stats["avg"],
        "min_sheets_duration_ms": sheets_stats["min"],
        "min_supabase_duration_ms": supabase_stats["min"],
        "max_sheets_duration_ms": sheets_stats["max"],
        "max_supabase_duration_ms": supabase_stats["max"],
        "sheets_success_rate": _rate(sheets_ok, total),
        "supabase_success_rate": _rate(supabase_ok, total),
        "both_success_rate": _rate(both_ok, total),
    }


def summarize(buckets: Sequence[MetricsBucket]) -> Dict[str, object]:
    """
    Period summary over a list of buckets.

    Success rates are weighted by operation count, which is the same as
    computing them over the pooled entries.
    """
    total = sum(b.total_operations for b in buckets)
    return {
        "totalOperations": total,
        "totalErrors": sum(b.error_count for b in buckets),
        "avgSheetsSuccessRate": _rate(sum(b.sheets_success_count for b in buckets), total),
        "avgSupabaseSuccessRate": _rate(sum(b.supabase_success_count for b in buckets), total),
        "avgBothSuccessRate": _rate(sum(b.both_success_count for b in buckets), total),
    }


class MetricsAggregator:
    """
    Stateless metrics computation over the dual-write log.

    Safe to call concurrently with logging and with itself: every call is a
    single read of an append-only table.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        """
        Initialize MetricsAggregator.

        Args:
            session_factory: SQLAlchemy sessionmaker
            clock: Time source used for "latest" and period windows
        """
        self.session_factory = session_factory
        self.clock = clock

    def range(
        self,
        start: datetime,
        end: datetime,
        granularity: str = "hourly",
        scope: Optional[MetricsScope] = None
    ) -> List[MetricsBucket]:
        """
        Buckets covering [start, end), oldest first.

        Raises:
            ValidationError: Unknown granularity, end before start, or too many windows
            QueryError: The log could not be read
        """
        step = _check_granularity(granularity)
        if end < start:
            raise ValidationError("end must not be before start", details={"start": start.isoformat(), "end": end.isoformat()})
        if end == start:
            return []

        starts = window_starts(start, end, granularity)
        if len(starts) > MAX_BUCKETS:
            raise ValidationError(
                f"Range spans {len(starts)} {granularity} buckets (max {MAX_BUCKETS})",
                details={"granularity": granularity}
            )
        if not starts:
            return []

        scope = scope or MetricsScope()
        entries = self._fetch_entries(starts[0], starts[-1] + step, scope)

        binned: Dict[datetime, list] = {s: [] for s in starts}
        for entry in entries:
            window = floor_window(entry.timestamp, granularity)
            if window in binned:
                binned[window].append(entry)

        return [
            MetricsBucket(
                period_type=granularity,
                window_start=s,
                window_end=s + step,
                scope_key=scope.key,
                **aggregate_entries(binned[s])
            )
            for s in starts
        ]

    def latest(
        self,
        granularity: str = "hourly",
        count: int = 24,
        scope: Optional[MetricsScope] = None
    ) -> List[MetricsBucket]:
        """
        The most recent `count` buckets, newest first.

        The newest bucket is the window containing the current time.
        """
        step = _check_granularity(granularity)
        if count < 1:
            raise ValidationError("count must be at least 1", details={"count": count})
        count = min(count, MAX_BUCKETS)

        current = floor_window(self.clock(), granularity)
        first = current - step * (count - 1)
        buckets = self.range(first, current + step, granularity, scope)
        return list(reversed(buckets))

    def period_stats(self, period: str = "today", granularity: str = "hourly") -> Dict[str, object]:
        """
        Dashboard statistics for a named period.

        - today: hourly buckets since UTC midnight
        - week: last 7 days, hourly or daily
        - month: last 30 days, daily

        Returns:
            {period, type, summary, metrics}
        """
        if period not in PERIODS:
            raise ValidationError("Invalid period", details={"validPeriods": list(PERIODS)})
        _check_granularity(granularity)

        now = self.clock()
        if period == "today":
            granularity = "hourly"
            start = floor_window(now, "daily")
            end = floor_window(now, "hourly") + GRANULARITIES["hourly"]
        elif period == "week":
            end = floor_window(now, granularity) + GRANULARITIES[granularity]
            start = end - timedelta(days=7)
        else:
            granularity = "daily"
            end = floor_window(now, "daily") + GRANULARITIES["daily"]
            start = end - timedelta(days=30)

        buckets = self.range(start, end, granularity)

        return {
            "period": period,
            "type": granularity,
            "summary": summarize(buckets),
            "metrics": [b.to_dict() for b in buckets],
        }

    def refresh(
        self,
        start: datetime,
        end: datetime,
        granularity: str = "hourly",
        scope: Optional[MetricsScope] = None
    ) -> int:
        """
        Recompute buckets and persist them into system_health_metrics.

        Existing snapshots for the same windows and scope are deleted and
        re-inserted in one transaction, so a re-run replaces rather than
        duplicates.

        Returns:
            Number of snapshots written

        Raises:
            QueryError: The log could not be read
            PersistenceError: Snapshots could not be written
        """
        buckets = self.range(start, end, granularity, scope)
        if not buckets:
            return 0

        scope_key = buckets[0].scope_key
        starts = [b.window_start for b in buckets]
        computed_at = self.clock()

        session = self.session_factory()
        try:
            session.query(SystemHealthMetric).filter(
                SystemHealthMetric.period_type == granularity,
                SystemHealthMetric.scope_key == scope_key,
                SystemHealthMetric.window_start.in_(starts)
            ).delete(synchronize_session=False)

            for bucket in buckets:
                session.add(SystemHealthMetric(computed_at=computed_at, **asdict(bucket)))

            session.commit()

        except SQLAlchemyError as e:
            session.rollback()
            logger.error("metrics_refresh_failed", granularity=granularity, error=str(e))
            raise PersistenceError("Failed to store metrics snapshots", details=str(e)) from e
        finally:
            session.close()

        logger.info(
            "metrics_refreshed",
            granularity=granularity,
            scope=scope_key,
            buckets=len(buckets),
            window_start=starts[0].isoformat(),
            window_end=buckets[-1].window_end.isoformat()
        )
        return len(buckets)

    def _fetch_entries(self, start: datetime, end: datetime, scope: MetricsScope) -> list:
        session = self.session_factory()
        try:
            query = session.query(
                DualWriteLog.timestamp,
                DualWriteLog.sheets_success,
                DualWriteLog.supabase_success,
                DualWriteLog.sheets_duration_ms,
                DualWriteLog.supabase_duration_ms,
                DualWriteLog.sheets_error,
                DualWriteLog.supabase_error,
            ).filter(
                DualWriteLog.timestamp >= start,
                DualWriteLog.timestamp < end
            )

            if scope.table:
                query = query.filter(DualWriteLog.table_name == scope.table)
            if scope.batch:
                query = query.filter(DualWriteLog.batch_name == scope.batch)
            if scope.program:
                query = query.filter(DualWriteLog.program == scope.program)

            return query.order_by(DualWriteLog.timestamp.asc(), DualWriteLog.id.asc()).all()

        except SQLAlchemyError as e:
            logger.error("metrics_query_failed", error=str(e))
            raise QueryError("Failed to read dual-write log", details=str(e)) from e
        finally:
            session.close()


__all__ = [
    "MetricsAggregator",
    "MetricsBucket",
    "MetricsScope",
    "aggregate_entries",
    "floor_window",
    "summarize",
    "window_starts",
]
