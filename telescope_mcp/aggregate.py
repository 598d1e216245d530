"""Cross-entry statistics built from database aggregates.

Counts, averages and groupings arrive as rows produced by the
:class:`~telescope_mcp.queries.SummaryQuery` builders; this module folds raw
tag spellings onto their enums, derives rates and trends, and attaches the
few decoded entries a report shows in detail.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from .decoders import (
    CacheOperation,
    ExceptionEntry,
    ExceptionLevel,
    JobEntry,
    JobStatus,
    QueryEntry,
    RequestEntry,
    as_float,
    as_int,
    as_text,
    clean_file_path,
    coerce_timestamp,
)
from .queries import IGNORED_CLIENT_ERRORS, SENSITIVE_PATHS, SLOW_ACTIVITY_MS, GroupBy

Row = Mapping[str, Any]

################################################################################
# Constants                                                                    #
################################################################################

SLOW_QUERY_THRESHOLD_MS = 100
CACHE_HIT_RATE_FLOOR = 80.0
JOB_SUCCESS_RATE_FLOOR = 95.0
SLOW_REQUEST_SHARE = 10.0

NO_PEAK = "N/A"


################################################################################
# Basic statistics                                                             #
################################################################################

def rate(numerator: float, denominator: float) -> float:
    """Percentage rounded to one decimal; zero when the denominator is zero."""
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 1)


def rounded(value: Any, digits: int = 1) -> float:
    """Round a database average; NULL (no rows) reads as zero."""
    number = as_float(value)
    return round(number, digits) if number is not None else 0.0


def count(row: Row, column: str) -> int:
    return as_int(row.get(column)) or 0


def grouped(rows: Iterable[Row], label: Callable[[Any], str] = as_text) -> List[Tuple[str, int]]:
    """``(label, total)`` pairs from a grouped count, merging keys sharing a label.

    Largest first, ties in label order.
    """
    totals: Counter = Counter()
    for row in rows:
        totals[label(row.get("group_key"))] += count(row, "total")
    return sorted(totals.items(), key=lambda item: (-item[1], item[0]))


def tag_label(tag: type) -> Callable[[Any], str]:
    return lambda key: tag.parse(key).value


@dataclass(frozen=True)
class PeakHour:
    label: str
    count: int


def hour_label(hour: int) -> str:
    return f"{hour:02d}:00-{hour + 1:02d}:00"


def peak_hour(buckets: Iterable[Row]) -> PeakHour:
    """Busiest hour of day from per-hour counts; ties go to the earliest hour."""
    counts = {}
    for row in buckets:
        hour = as_int(row.get("group_key"))
        if hour is not None:
            counts[hour] = counts.get(hour, 0) + count(row, "total")
    if not counts:
        return PeakHour(NO_PEAK, 0)
    best = max(counts.values())
    hour = min(h for h, total in counts.items() if total == best)
    return PeakHour(hour_label(hour), best)


################################################################################
# Requests & user activity                                                     #
################################################################################

def suspicious_reasons(status: Optional[int], uri: Optional[str],
                       duration: Optional[float]) -> List[str]:
    """Every heuristic a request trips; empty when it looks normal."""
    reasons = []
    if status is not None and 400 <= status < 500 and status not in IGNORED_CLIENT_ERRORS:
        reasons.append(f"client error (HTTP {status})")
    for pattern in SENSITIVE_PATHS:
        if uri and pattern in uri:
            reasons.append(f"sensitive endpoint ({pattern})")
            break
    if duration is not None and duration > SLOW_ACTIVITY_MS:
        reasons.append(f"slow response ({duration:g}ms)")
    return reasons


@dataclass(frozen=True)
class RequestSummary:
    total: int
    success_count: int
    success_rate: float
    error_count: int
    error_rate: float
    avg_duration: float
    slow_count: int
    peak: PeakHour
    slowest: Tuple[RequestEntry, ...] = ()


def summarize_requests(totals: Row, hours: Iterable[Row] = (),
                       slowest: Sequence[RequestEntry] = ()) -> RequestSummary:
    total = count(totals, "total")
    success = count(totals, "successes")
    errors = count(totals, "errors")
    return RequestSummary(
        total=total,
        success_count=success,
        success_rate=rate(success, total),
        error_count=errors,
        error_rate=rate(errors, total),
        avg_duration=rounded(totals.get("avg_duration")),
        slow_count=count(totals, "slow"),
        peak=peak_hour(hours),
        slowest=tuple(slowest),
    )


@dataclass(frozen=True)
class SessionDuration:
    hours: int
    minutes: int
    seconds: int

    @property
    def formatted(self) -> str:
        parts = []
        if self.hours:
            parts.append(f"{self.hours}h")
        if self.minutes:
            parts.append(f"{self.minutes}m")
        if self.seconds or not parts:
            parts.append(f"{self.seconds}s")
        return " ".join(parts)


def session_duration(first: Optional[datetime], last: Optional[datetime]) -> SessionDuration:
    """Span between first and last activity; days are folded into hours."""
    if first is None or last is None:
        return SessionDuration(0, 0, 0)
    total = int(abs((last - first).total_seconds()))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return SessionDuration(hours, minutes, seconds)


@dataclass(frozen=True)
class ActivityStats:
    total_requests: int
    unique_ips: int
    unique_users: int
    avg_duration: float
    error_count: int
    error_rate: float
    first_activity: Optional[datetime]
    last_activity: Optional[datetime]
    top_uris: List[Tuple[str, int]]
    session: SessionDuration
    suspicious_count: int


def summarize_user_activity(totals: Row, uris: Iterable[Row] = ()) -> ActivityStats:
    total = count(totals, "total")
    errors = count(totals, "errors")
    first = coerce_timestamp(totals.get("first_seen"))
    last = coerce_timestamp(totals.get("last_seen"))
    return ActivityStats(
        total_requests=total,
        unique_ips=count(totals, "unique_ips"),
        unique_users=count(totals, "unique_users"),
        avg_duration=rounded(totals.get("avg_duration"), digits=2),
        error_count=errors,
        error_rate=rate(errors, total),
        first_activity=first,
        last_activity=last,
        top_uris=grouped(uris),
        session=session_duration(first, last),
        suspicious_count=count(totals, "suspicious"),
    )


################################################################################
# Database, queue, cache, errors                                               #
################################################################################

@dataclass(frozen=True)
class QuerySummary:
    total: int
    avg_time: float
    slow_count: int
    most_expensive: Optional[QueryEntry]
    slowest: Tuple[QueryEntry, ...] = ()


def summarize_queries(totals: Row, heaviest: Sequence[QueryEntry] = (),
                      slow_threshold_ms: float = SLOW_QUERY_THRESHOLD_MS) -> QuerySummary:
    """``heaviest`` holds the longest running queries, slowest first."""
    slow = [e for e in heaviest if e.duration is not None and e.duration > slow_threshold_ms]
    return QuerySummary(
        total=count(totals, "total"),
        avg_time=rounded(totals.get("avg_time")),
        slow_count=count(totals, "slow"),
        most_expensive=heaviest[0] if heaviest else None,
        slowest=tuple(slow),
    )


@dataclass(frozen=True)
class JobSummary:
    total: int
    success_count: int
    failed_count: int
    success_rate: float
    avg_processing_time: float
    failed_jobs: List[str]
    by_status: List[Tuple[str, int]]
    by_queue: List[Tuple[str, int]]


def summarize_jobs(totals: Row, statuses: Iterable[Row] = (), queues: Iterable[Row] = (),
                   failed: Sequence[JobEntry] = ()) -> JobSummary:
    """Processing times are stored in milliseconds and reported in seconds."""
    total = count(totals, "total")
    by_status = grouped(statuses, tag_label(JobStatus))
    per_status = dict(by_status)
    success = per_status.get(JobStatus.PROCESSED.value, 0)
    return JobSummary(
        total=total,
        success_count=success,
        failed_count=per_status.get(JobStatus.FAILED.value, 0),
        success_rate=rate(success, total),
        avg_processing_time=rounded((as_float(totals.get("avg_time")) or 0.0) / 1000),
        failed_jobs=[e.name for e in failed],
        by_status=by_status,
        by_queue=grouped(queues, lambda key: as_text(key, default="default")),
    )


@dataclass(frozen=True)
class CacheTally:
    total: int = 0
    hits: int = 0
    misses: int = 0
    writes: int = 0
    deletes: int = 0
    top_keys: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def hit_rate(self) -> float:
        return rate(self.hits, self.total)

    @property
    def miss_rate(self) -> float:
        return rate(self.misses, self.total)


def tally_cache(operations: Iterable[Row], keys: Iterable[Row] = ()) -> CacheTally:
    """Bucket cache operations; unmapped types only count toward the total."""
    buckets = dict(grouped(operations, tag_label(CacheOperation)))
    return CacheTally(
        total=sum(buckets.values()),
        hits=buckets.get(CacheOperation.HIT.value, 0),
        misses=buckets.get(CacheOperation.MISS.value, 0),
        writes=buckets.get(CacheOperation.WRITE.value, 0),
        deletes=buckets.get(CacheOperation.FORGET.value, 0),
        top_keys=grouped(keys),
    )


@dataclass(frozen=True)
class ErrorSummary:
    total: int
    critical: int
    errors: int
    warnings: int
    info: int
    critical_exceptions: List[str]


def summarize_errors(levels: Iterable[Row], critical: Sequence[ExceptionEntry] = ()) -> ErrorSummary:
    buckets = dict(grouped(levels, tag_label(ExceptionLevel)))
    return ErrorSummary(
        total=sum(buckets.values()),
        critical=buckets.get(ExceptionLevel.CRITICAL.value, 0),
        errors=buckets.get(ExceptionLevel.ERROR.value, 0),
        warnings=buckets.get(ExceptionLevel.WARNING.value, 0),
        info=buckets.get(ExceptionLevel.INFO.value, 0),
        critical_exceptions=[e.short_name for e in critical],
    )


################################################################################
# Exception grouping & patterns                                                #
################################################################################

@dataclass(frozen=True)
class ExceptionGroup:
    key: str
    count: int
    latest_occurrence: Optional[datetime]
    first_occurrence: Optional[datetime]
    representative: ExceptionEntry
    recent: int = 0
    critical: int = 0
    errors: int = 0


def group_key(value: Any, group_by: GroupBy) -> str:
    """Display label of a group, read the way the decoder reads the field."""
    label = as_text(value)
    return clean_file_path(label) if group_by is GroupBy.FILE else label


def exception_groups(rows: Iterable[Row], representatives: Mapping[int, ExceptionEntry],
                     group_by: GroupBy) -> List[ExceptionGroup]:
    """Pair grouped rows with their representative (lowest sequence) member.

    Rows keep the order the database returned them in; a group whose
    representative could not be decoded is left out.
    """
    groups = []
    for row in rows:
        representative = representatives.get(as_int(row.get("representative")))
        if representative is None:
            continue
        groups.append(ExceptionGroup(
            key=group_key(row.get("group_key"), group_by),
            count=count(row, "occurrences"),
            latest_occurrence=coerce_timestamp(row.get("latest_seen")),
            first_occurrence=coerce_timestamp(row.get("first_seen")),
            representative=representative,
            recent=count(row, "recent"),
            critical=count(row, "critical_count"),
            errors=count(row, "error_count"),
        ))
    return groups


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def pattern_trend(newer: int, older: int) -> Trend:
    """Compare occurrences in the newer half of the window with the older half."""
    if newer > older * 1.5 and newer - older >= 2:
        return Trend.INCREASING
    if older > newer * 1.5 and older - newer >= 2:
        return Trend.DECREASING
    return Trend.STABLE


def pattern_priority(occurrences: int, critical: int = 0, errors: int = 0) -> Priority:
    if critical or occurrences >= 10:
        return Priority.HIGH
    if occurrences >= 5 or (errors and occurrences >= 3):
        return Priority.MEDIUM
    return Priority.LOW


@dataclass(frozen=True)
class ExceptionPattern:
    group: ExceptionGroup
    trend: Trend
    priority: Priority
    per_hour: float


def find_patterns(groups: Iterable[ExceptionGroup], start: datetime, end: datetime) -> List[ExceptionPattern]:
    hours = max((end - start).total_seconds() / 3600, 1)
    return [
        ExceptionPattern(
            group=group,
            trend=pattern_trend(group.recent, group.count - group.recent),
            priority=pattern_priority(group.count, group.critical, group.errors),
            per_hour=round(group.count / hours, 2),
        )
        for group in groups
    ]


################################################################################
# Dashboard flags                                                              #
################################################################################

@dataclass(frozen=True)
class Flag:
    severity: str  # critical, warning, info or ok
    message: str


def performance_flags(requests: RequestSummary, database: QuerySummary, queue: JobSummary,
                      cache: CacheTally, errors: ErrorSummary, slow_threshold_ms: float,
                      error_rate_threshold: float) -> List[Flag]:
    flags = []
    if errors.critical:
        flags.append(Flag("critical", f"{errors.critical} critical exceptions recorded"))
    if requests.total and requests.error_rate > error_rate_threshold:
        flags.append(Flag(
            "critical",
            f"Request error rate {requests.error_rate}% exceeds {error_rate_threshold}%",
        ))
    if requests.total and requests.avg_duration > slow_threshold_ms:
        flags.append(Flag(
            "warning",
            f"Average response time {requests.avg_duration}ms exceeds {slow_threshold_ms}ms",
        ))
    if requests.total and rate(requests.slow_count, requests.total) > SLOW_REQUEST_SHARE:
        flags.append(Flag("warning", f"{requests.slow_count} slow requests (>{slow_threshold_ms}ms)"))
    if database.slow_count:
        flags.append(Flag("info", f"{database.slow_count} slow queries (>{SLOW_QUERY_THRESHOLD_MS}ms)"))
    if queue.total and queue.success_rate < JOB_SUCCESS_RATE_FLOOR:
        flags.append(Flag("warning", f"Job success rate {queue.success_rate}% is below {JOB_SUCCESS_RATE_FLOOR}%"))
    if cache.total and cache.hit_rate < CACHE_HIT_RATE_FLOOR:
        flags.append(Flag("info", f"Cache hit rate {cache.hit_rate}% is below {CACHE_HIT_RATE_FLOOR}%"))
    if not flags:
        flags.append(Flag("ok", "No performance issues detected"))
    return flags
