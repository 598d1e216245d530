"""Tool handlers: one function per MCP tool, each returning a text report.

Every handler takes the shared :class:`TelescopeDatabase` first and never
raises; failures are logged and reported as text starting with ``❌``.
Statistics come from database aggregates; decoded rows are only fetched for
the capped listings a report prints.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from . import aggregate, formatting, queries
from .database import TelescopeDatabase
from .decoders import EntryKind, JobStatus, decode_raw, decode_rows
from .errors import InvalidArgument, NotFound, TelescopeError

logger = logging.getLogger(__name__)

RELATED_QUERY_PREVIEW = 5
DETAIL_ROWS = 5
TOP_KEYS = 10
CRITICAL_PREVIEW = 3


def _failure(action: str, error: Exception) -> str:
    """Log a failed invocation and render it for the agent."""
    if isinstance(error, InvalidArgument):
        logger.warning("%s: invalid argument: %s", action, error)
        return formatting.failure(f"Invalid argument: {error}")
    if isinstance(error, NotFound):
        logger.warning("%s: %s", action, error)
        return formatting.failure(f"Not found: {error}")
    if isinstance(error, TelescopeError):
        logger.error("%s failed: %s", action, error, exc_info=error)
        return formatting.failure(f"Failed to {action}: {error}")
    logger.exception("Unexpected error while trying to %s", action)
    return formatting.failure(f"Failed to {action}: {error}")


def _job_summary(db: TelescopeDatabase, since: datetime, status: Optional[str] = None,
                 queue: Optional[str] = None) -> aggregate.JobSummary:
    failed = []
    if not status or JobStatus.parse(status) is JobStatus.FAILED:
        failed = decode_rows(EntryKind.JOB, db.run(queries.jobs(DETAIL_ROWS, "failed", queue, since)))
    return aggregate.summarize_jobs(
        db.one(queries.job_totals(since, status, queue)),
        db.run(queries.job_counts(queries.JOB_STATUS, since, status, queue)),
        db.run(queries.job_counts(queries.JOB_QUEUE, since, status, queue, limit=TOP_KEYS)),
        failed,
    )


def _cache_tally(db: TelescopeDatabase, since: datetime) -> aggregate.CacheTally:
    return aggregate.tally_cache(
        db.run(queries.counts_by(EntryKind.CACHE, queries.CACHE_OPERATION, since)),
        db.run(queries.counts_by(EntryKind.CACHE, queries.CACHE_KEY, since, limit=TOP_KEYS)),
    )


def _exception_groups(db: TelescopeDatabase, query: queries.SummaryQuery,
                      grouping: queries.GroupBy):
    rows = db.run(query)
    sequences = [row["representative"] for row in rows if row.get("representative") is not None]
    representatives = {}
    if sequences:
        found = decode_rows(EntryKind.EXCEPTION, db.run(queries.entries_by_sequence(EntryKind.EXCEPTION, sequences)))
        representatives = {entry.sequence: entry for entry in found}
    return aggregate.exception_groups(rows, representatives, grouping)


################################################################################
# Connectivity                                                                 #
################################################################################

def hello_world(name: str = "World") -> str:
    """Greeting used to check the server is reachable."""
    return formatting.format_hello(name)


def telescope_status(db: TelescopeDatabase) -> str:
    """Connection check with entry count and latest entry time."""
    try:
        return formatting.format_status(db.status())
    except Exception as e:
        return _failure("connect to the Telescope database", e)


def get_recent_entries(db: TelescopeDatabase, limit: int = 5) -> str:
    """Latest entries of any type, newest first."""
    try:
        query = queries.recent_entries(limit)
        entries = [decode_raw(row) for row in db.run(query)]
        return formatting.format_recent_entries(entries, query)
    except Exception as e:
        return _failure("fetch entries", e)


################################################################################
# Requests & queries                                                           #
################################################################################

def telescope_recent_requests(db: TelescopeDatabase, limit: int = 10) -> str:
    """Latest HTTP requests, newest first."""
    try:
        query = queries.recent_requests(limit)
        requests = decode_rows(EntryKind.REQUEST, db.run(query))
        return formatting.format_recent_requests(requests, query)
    except Exception as e:
        return _failure("fetch requests", e)


def telescope_slow_queries(db: TelescopeDatabase, threshold_ms: int = 100, limit: int = 10) -> str:
    """Queries slower than ``threshold_ms``, slowest first."""
    try:
        query = queries.slow_queries(threshold_ms, limit)
        slow = decode_rows(EntryKind.QUERY, db.run(query))
        return formatting.format_slow_queries(slow, threshold_ms, query)
    except Exception as e:
        return _failure("fetch slow queries", e)


def telescope_performance_summary(db: TelescopeDatabase, hours: int = 24, include_details: bool = False,
                                  slow_threshold_ms: int = 1000,
                                  error_rate_threshold_pct: float = 5.0) -> str:
    """Dashboard over requests, queries, jobs, cache and exceptions in a window."""
    try:
        queries.validate_hours(hours)
        since = db.since(hours)

        slowest = []
        if include_details:
            slowest = decode_rows(EntryKind.REQUEST, db.run(queries.slowest_requests(slow_threshold_ms, since)))
        requests = aggregate.summarize_requests(
            db.one(queries.request_totals(since, slow_threshold_ms)),
            db.run(queries.hourly_counts(EntryKind.REQUEST, since)),
            slowest,
        )
        database = aggregate.summarize_queries(
            db.one(queries.query_totals(since, aggregate.SLOW_QUERY_THRESHOLD_MS)),
            decode_rows(EntryKind.QUERY, db.run(queries.heaviest_queries(since, DETAIL_ROWS))),
        )
        queue = _job_summary(db, since)
        cache = _cache_tally(db, since)
        errors = aggregate.summarize_errors(
            db.run(queries.counts_by(EntryKind.EXCEPTION, queries.lower(queries.EXCEPTION_LEVEL), since)),
            decode_rows(EntryKind.EXCEPTION, db.run(queries.exceptions(CRITICAL_PREVIEW, "critical", since))),
        )
        flags = aggregate.performance_flags(
            requests, database, queue, cache, errors, slow_threshold_ms, error_rate_threshold_pct
        )
        return formatting.format_performance_summary(
            hours, requests, database, queue, cache, errors, flags,
            include_details=include_details,
            slow_threshold_ms=slow_threshold_ms,
            error_rate_threshold=error_rate_threshold_pct,
        )
    except Exception as e:
        return _failure("build performance summary", e)


################################################################################
# Exceptions                                                                   #
################################################################################

def telescope_exceptions(db: TelescopeDatabase, limit: int = 10, level: Optional[str] = None,
                         since: Optional[str] = None, group_by: Optional[str] = None) -> str:
    """Recent exceptions, or the most frequent exception groups with ``group_by``."""
    try:
        limit = queries.validate_limit(limit)
        grouping = queries.GroupBy.parse(group_by) if group_by else None
        cutoff = db.since(queries.parse_time_window(since)) if since else None
        if grouping is not None:
            query = queries.exception_groups(grouping, since=cutoff, level=level, limit=limit)
            groups = _exception_groups(db, query, grouping)
            return formatting.format_exception_groups(groups, grouping, limit, query)

        query = queries.exceptions(limit=limit, level=level, since=cutoff)
        exceptions = decode_rows(EntryKind.EXCEPTION, db.run(query))
        return formatting.format_exceptions(exceptions, query)
    except Exception as e:
        return _failure("fetch exceptions", e)


def telescope_exception_detail(db: TelescopeDatabase, exception_id: str, include_context: bool = True,
                               include_related: bool = True) -> str:
    """One exception with its trace, originating request and batch neighbours."""
    try:
        matches = decode_rows(EntryKind.EXCEPTION, db.run(queries.entry_by_uuid(exception_id, EntryKind.EXCEPTION)))
        exact = [m for m in matches if m.uuid == exception_id.strip()]
        if exact:
            matches = exact
        if not matches:
            raise NotFound(f"no exception with id {exception_id!r}")
        if len(matches) > 1:
            raise InvalidArgument(f"id prefix {exception_id!r} matches more than one exception")
        exc = matches[0]

        request = None
        if include_context and exc.batch_id:
            rows = db.run(queries.batch_entries(exc.batch_id, EntryKind.REQUEST, limit=1))
            decoded = decode_rows(EntryKind.REQUEST, rows)
            request = decoded[0] if decoded else None

        related_counts = []
        related_queries = []
        if include_related and exc.batch_id:
            related_counts = aggregate.grouped(db.run(queries.batch_type_counts(exc.batch_id, exc.uuid)))
            rows = db.run(queries.batch_entries(exc.batch_id, EntryKind.QUERY, limit=RELATED_QUERY_PREVIEW))
            related_queries = decode_rows(EntryKind.QUERY, rows)

        return formatting.format_exception_detail(
            exc, request, related_counts, related_queries,
            include_context=include_context, include_related=include_related,
        )
    except Exception as e:
        return _failure("fetch exception detail", e)


def telescope_exception_patterns(db: TelescopeDatabase, time_window: str = "24h", min_occurrences: int = 2,
                                 group_by: str = "class") -> str:
    """Recurring exception groups in a window with trend and priority."""
    try:
        hours = queries.parse_time_window(time_window)
        grouping = queries.GroupBy.parse(group_by)
        if min_occurrences < 1:
            raise InvalidArgument(f"min_occurrences must be at least 1, got {min_occurrences}")
        end = db.now()
        start = db.since(hours)
        query = queries.exception_groups(
            grouping, since=start, limit=queries.MAX_LIMIT,
            midpoint=start + (end - start) / 2, min_occurrences=min_occurrences,
        )
        patterns = aggregate.find_patterns(_exception_groups(db, query, grouping), start, end)
        analysed = aggregate.count(db.one(queries.exception_total(start)), "total")
        return formatting.format_exception_patterns(
            patterns, time_window, hours, grouping, min_occurrences, analysed
        )
    except Exception as e:
        return _failure("analyse exception patterns", e)


################################################################################
# Jobs, cache, users                                                           #
################################################################################

def telescope_jobs(db: TelescopeDatabase, limit: int = 10, status: Optional[str] = None,
                   queue: Optional[str] = None, hours: int = 24) -> str:
    """Queue jobs in a window with a status and queue breakdown."""
    try:
        limit = queries.validate_limit(limit)
        since = db.since(queries.validate_hours(hours))
        query = queries.jobs(limit, status=status, queue=queue, since=since)
        jobs = decode_rows(EntryKind.JOB, db.run(query))
        summary = _job_summary(db, since, status, queue) if jobs else None
        return formatting.format_jobs(jobs, summary, query)
    except Exception as e:
        return _failure("fetch jobs", e)


def telescope_cache_stats(db: TelescopeDatabase, limit: int = 50, operation: Optional[str] = None,
                          hours: int = 24, show_summary: bool = True) -> str:
    """Cache operations in a window, optionally headed by hit and miss rates."""
    try:
        limit = queries.validate_limit(limit)
        since = db.since(queries.validate_hours(hours))
        query = queries.cache_operations(limit, operation=operation, since=since)
        operations = decode_rows(EntryKind.CACHE, db.run(query))
        tally = _cache_tally(db, since) if show_summary else None
        return formatting.format_cache(operations, query, hours, tally)
    except Exception as e:
        return _failure("fetch cache operations", e)


def telescope_user_activity(db: TelescopeDatabase, user_id: Optional[int] = None, limit: int = 20,
                            hours: int = 24, include_anonymous: bool = False,
                            suspicious_only: bool = False) -> str:
    """Per-user request history with session statistics and suspicious flags."""
    try:
        limit = queries.validate_limit(limit)
        since = db.since(queries.validate_hours(hours))
        stats = aggregate.summarize_user_activity(
            db.one(queries.activity_totals(user_id, include_anonymous, since)),
            db.run(queries.activity_uris(user_id, include_anonymous, since)),
        )
        query = queries.user_activity(user_id, include_anonymous=include_anonymous, since=since,
                                      limit=limit, suspicious_only=suspicious_only)
        activities = []
        if stats.total_requests:
            for request in decode_rows(EntryKind.REQUEST, db.run(query)):
                activities.append((request, aggregate.suspicious_reasons(request.status, request.uri,
                                                                         request.duration)))
        return formatting.format_user_activity(
            activities, stats, query, limit, user_id=user_id, suspicious_only=suspicious_only
        )
    except Exception as e:
        return _failure("fetch user activity", e)
