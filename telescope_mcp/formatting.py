"""Plain-text rendering of Telescope records and statistics for the agent."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

from .aggregate import (
    ActivityStats,
    CacheTally,
    ErrorSummary,
    ExceptionGroup,
    ExceptionPattern,
    Flag,
    JobSummary,
    Priority,
    QuerySummary,
    RequestSummary,
    Trend,
)
from .database import TableStatus
from .decoders import (
    CacheEntry,
    CacheOperation,
    ExceptionEntry,
    ExceptionLevel,
    JobEntry,
    JobStatus,
    QueryEntry,
    RawEntry,
    RequestEntry,
)
from .queries import EntryQuery, FilteredQuery, GroupBy

SQL_PREVIEW_CHARS = 200
BINDINGS_PREVIEW = 5
TRACE_FRAMES = 10
MESSAGE_PREVIEW_CHARS = 150

################################################################################
# Icons                                                                        #
################################################################################

JOB_ICONS = {
    JobStatus.PROCESSED: "✅",
    JobStatus.FAILED: "❌",
    JobStatus.PENDING: "⏳",
    JobStatus.PROCESSING: "🔄",
    JobStatus.CANCELLED: "🚫",
    JobStatus.RELEASED: "↩️",
    JobStatus.UNKNOWN: "❓",
}

LEVEL_ICONS = {
    ExceptionLevel.CRITICAL: "🔴",
    ExceptionLevel.ERROR: "❌",
    ExceptionLevel.WARNING: "⚠️",
    ExceptionLevel.NOTICE: "📝",
    ExceptionLevel.INFO: "ℹ️",
    ExceptionLevel.DEBUG: "🐛",
    ExceptionLevel.UNKNOWN: "❓",
}

CACHE_ICONS = {
    CacheOperation.HIT: "🎯",
    CacheOperation.MISS: "💨",
    CacheOperation.WRITE: "💾",
    CacheOperation.FORGET: "🗑️",
    CacheOperation.UNKNOWN: "❓",
}

TREND_ICONS = {Trend.INCREASING: "📈", Trend.DECREASING: "📉", Trend.STABLE: "➡️"}
PRIORITY_ICONS = {Priority.HIGH: "🔴", Priority.MEDIUM: "🟡", Priority.LOW: "🟢"}
FLAG_ICONS = {"critical": "🚨", "warning": "⚠️", "info": "ℹ️", "ok": "✅"}


def status_icon(status: Optional[int]) -> str:
    """Icon for an HTTP status code."""
    if status is None:
        return "❓"
    if 200 <= status < 300:
        return "✅"
    if 300 <= status < 400:
        return "🔄"
    if 400 <= status < 500:
        return "⚠️"
    if status >= 500:
        return "❌"
    return "❓"


################################################################################
# Helpers                                                                      #
################################################################################

def short_id(uuid: Optional[str]) -> str:
    return f"{(uuid or '')[:8]}..."


def timestamp(moment: Optional[datetime]) -> str:
    return moment.strftime("%Y-%m-%d %H:%M:%S") if moment else "Unknown"


def truncate(text: str, limit: int) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


def number(value: Optional[float]) -> str:
    if value is None:
        return "Unknown"
    return f"{value:g}"


def _bindings(bindings: Sequence[Any]) -> str:
    return ", ".join(str(b) for b in bindings[:BINDINGS_PREVIEW])


def no_data(what: str, query: Optional[FilteredQuery] = None) -> str:
    text = f"📭 No {what} found"
    if query is not None:
        text += f" ({query.filters})"
    return text + "."


def failure(message: str) -> str:
    return f"❌ {message}"


################################################################################
# Connectivity                                                                 #
################################################################################

def format_hello(name: str) -> str:
    return f"Hello, {name}! Laravel Telescope MCP Server is running."


def format_status(status: TableStatus) -> str:
    if not status.success:
        return failure(f"Database issue: {status.message}")
    lines = [
        "✅ Database connection successful!",
        f"📊 Found {status.count} telescope entries",
        f"🔗 Connected to: {status.connection_info}",
    ]
    if status.latest_entry:
        lines.append(f"📅 Latest entry: {timestamp(status.latest_entry)}")
    return "\n".join(lines)


def format_recent_entries(entries: Sequence[RawEntry], query: EntryQuery) -> str:
    if not entries:
        return no_data("telescope entries", query)
    text = f"📊 Recent Telescope Entries (showing {len(entries)} of {query.limit}):\n\n"
    for entry in entries:
        text += f"🔸 UUID: {short_id(entry.uuid)}\n"
        text += f"   Type: {entry.type}\n"
        text += f"   Created: {timestamp(entry.created_at)}\n"
        payload = entry.payload or {}
        if payload.get("method"):
            text += f"   Method: {payload['method']}\n"
        if payload.get("uri"):
            text += f"   URI: {payload['uri']}\n"
        if entry.payload is None:
            text += "   Content: (not valid JSON)\n"
        text += "\n"
    return text.rstrip() + "\n"


################################################################################
# Requests & queries                                                           #
################################################################################

def _request_lines(request: RequestEntry) -> List[str]:
    lines = [
        f"{status_icon(request.status)} {request.method} {request.uri}",
        f"   Status: {request.status if request.status is not None else 'Unknown'}",
        f"   Time: {timestamp(request.created_at)}",
    ]
    if request.duration is not None:
        lines.append(f"   Duration: {number(request.duration)}ms")
    if request.user_id is not None:
        lines.append(f"   User ID: {request.user_id}")
    if request.ip_address:
        lines.append(f"   IP: {request.ip_address}")
    return lines


def format_recent_requests(requests: Sequence[RequestEntry], query: EntryQuery) -> str:
    if not requests:
        return no_data("requests", query)
    text = f"🌐 Recent HTTP Requests (showing {len(requests)} of {query.limit}):\n\n"
    for request in requests:
        text += "\n".join(_request_lines(request)) + "\n"
        text += f"   UUID: {short_id(request.uuid)}\n\n"
    return text.rstrip() + "\n"


def _query_lines(query: QueryEntry) -> List[str]:
    lines = [
        f"⏱️ Duration: {number(query.duration)}ms",
        f"📅 Time: {timestamp(query.created_at)}",
    ]
    if query.connection_name:
        lines.append(f"🔗 Connection: {query.connection_name}")
    lines.append(f"💾 SQL: {truncate(query.sql, SQL_PREVIEW_CHARS)}")
    if query.bindings:
        lines.append(f"🔗 Bindings: {_bindings(query.bindings)}")
    if query.file:
        lines.append(f"📁 Source: {query.file}:{query.line or '?'}")
    return lines


def format_slow_queries(queries: Sequence[QueryEntry], threshold_ms: float, query: EntryQuery) -> str:
    if not queries:
        return f"📊 No slow queries found above {threshold_ms}ms threshold ({query.filters})."
    text = f"🐌 Slow Database Queries (>{threshold_ms}ms, showing {len(queries)} of {query.limit}):\n\n"
    for entry in queries:
        text += "\n".join(_query_lines(entry)) + "\n"
        text += f"🆔 UUID: {short_id(entry.uuid)}\n\n"
    return text.rstrip() + "\n"


################################################################################
# Performance dashboard                                                        #
################################################################################

def format_performance_summary(hours: int, requests: RequestSummary, database: QuerySummary,
                               queue: JobSummary, cache: CacheTally, errors: ErrorSummary,
                               flags: Sequence[Flag], include_details: bool = False,
                               slow_threshold_ms: float = 1000,
                               error_rate_threshold: float = 5.0) -> str:
    lines = [f"📈 Performance Summary (last {hours}h)", ""]

    lines.append("🌐 HTTP Requests")
    if requests.total:
        lines += [
            f"   Total: {requests.total}",
            f"   Success rate: {requests.success_rate}% ({requests.success_count} successful)",
            f"   Error rate: {requests.error_rate}% (threshold {error_rate_threshold}%)",
            f"   Average duration: {requests.avg_duration}ms",
            f"   Slow requests (>{slow_threshold_ms}ms): {requests.slow_count}",
            f"   Peak hour: {requests.peak.label} ({requests.peak.count} requests)",
        ]
    else:
        lines.append("   No requests recorded")

    lines += ["", "💾 Database"]
    if database.total:
        lines += [
            f"   Total queries: {database.total}",
            f"   Average time: {database.avg_time}ms",
            f"   Slow queries: {database.slow_count}",
        ]
        if database.most_expensive is not None:
            lines.append(
                f"   Most expensive: {number(database.most_expensive.duration)}ms "
                f"{truncate(database.most_expensive.sql, 50)}"
            )
    else:
        lines.append("   No queries recorded")

    lines += ["", "⚙️ Queue"]
    if queue.total:
        lines += [
            f"   Total jobs: {queue.total}",
            f"   Success rate: {queue.success_rate}% ({queue.success_count} processed)",
            f"   Average processing time: {queue.avg_processing_time}s",
        ]
        if queue.failed_jobs:
            lines.append(f"   Failed: {', '.join(queue.failed_jobs)}")
    else:
        lines.append("   No jobs recorded")

    lines += ["", "🗄️ Cache"]
    if cache.total:
        lines += [
            f"   Operations: {cache.total}",
            f"   Hit rate: {cache.hit_rate}% ({cache.hits} hits)",
            f"   Miss rate: {cache.miss_rate}% ({cache.misses} misses)",
        ]
        if cache.top_keys:
            key, count = cache.top_keys[0]
            lines.append(f"   Most accessed key: {key} ({count}x)")
    else:
        lines.append("   No cache operations recorded")

    lines += ["", "🚨 Errors"]
    if errors.total:
        lines += [
            f"   Total exceptions: {errors.total}",
            f"   Critical: {errors.critical} | Errors: {errors.errors} | "
            f"Warnings: {errors.warnings} | Info: {errors.info}",
        ]
        if errors.critical_exceptions:
            lines.append(f"   Critical: {', '.join(errors.critical_exceptions)}")
    else:
        lines.append("   No exceptions recorded")

    lines += ["", "🔎 Trends"]
    lines += [f"   {FLAG_ICONS.get(flag.severity, '•')} {flag.message}" for flag in flags]

    if include_details:
        lines += ["", "📋 Details"]
        if requests.slowest:
            lines.append("   Slowest requests:")
            for request in requests.slowest:
                lines.append(
                    f"   {status_icon(request.status)} {request.method} {request.uri} "
                    f"{number(request.duration)}ms ({short_id(request.uuid)})"
                )
        if database.slowest:
            lines.append("   Slowest queries:")
            for entry in database.slowest:
                lines.append(f"   ⏱️ {number(entry.duration)}ms {truncate(entry.sql, 80)} ({short_id(entry.uuid)})")
        if queue.by_queue:
            lines.append("   Jobs per queue: " + ", ".join(f"{name} ({count})" for name, count in queue.by_queue))
        if cache.top_keys:
            lines.append("   Top cache keys: " + ", ".join(f"{key} ({count})" for key, count in cache.top_keys[:5]))
        if lines[-1] == "📋 Details":
            lines.append("   Nothing further to report")

    return "\n".join(lines) + "\n"


################################################################################
# Exceptions                                                                   #
################################################################################

def _level_label(level: ExceptionLevel, raw: str) -> str:
    return f"{LEVEL_ICONS[level]} {raw.upper()}"


def format_exceptions(exceptions: Sequence[ExceptionEntry], query: EntryQuery) -> str:
    if not exceptions:
        return no_data("exceptions", query)
    text = f"🚨 Exceptions (showing {len(exceptions)} of {query.limit}, {query.filters}):\n\n"
    for exc in exceptions:
        text += f"{_level_label(exc.level, exc.raw_level)} {exc.short_name}\n"
        text += f"   Message: {truncate(exc.message, MESSAGE_PREVIEW_CHARS)}\n"
        text += f"   Location: {exc.file}:{exc.line if exc.line is not None else '?'}\n"
        text += f"   Time: {timestamp(exc.created_at)}\n"
        text += f"   UUID: {short_id(exc.uuid)}\n\n"
    return text.rstrip() + "\n"


def format_exception_groups(groups: Sequence[ExceptionGroup], group_by: GroupBy, limit: int,
                            query: FilteredQuery) -> str:
    if not groups:
        return no_data("exceptions", query)
    text = (
        f"🚨 Exceptions grouped by {group_by.value} "
        f"(showing {len(groups)} groups of at most {limit}, {query.filters}):\n\n"
    )
    for group in groups:
        exc = group.representative
        text += f"{_level_label(exc.level, exc.raw_level)} {truncate(group.key, MESSAGE_PREVIEW_CHARS)}\n"
        text += f"   Occurrences: {group.count}\n"
        text += f"   Latest: {timestamp(group.latest_occurrence)}\n"
        text += f"   Class: {exc.short_name}\n"
        if group_by is not GroupBy.MESSAGE:
            text += f"   Message: {truncate(exc.message, MESSAGE_PREVIEW_CHARS)}\n"
        text += f"   Location: {exc.file}:{exc.line if exc.line is not None else '?'}\n"
        text += f"   Example UUID: {short_id(exc.uuid)}\n\n"
    return text.rstrip() + "\n"


def format_exception_detail(exc: ExceptionEntry, request: Optional[RequestEntry] = None,
                            related_counts: Sequence[Tuple[str, int]] = (),
                            related_queries: Sequence[QueryEntry] = (),
                            include_context: bool = True, include_related: bool = True) -> str:
    lines = [
        f"🚨 {exc.class_name}",
        "",
        f"Level: {_level_label(exc.level, exc.raw_level)}",
        f"Message: {exc.message}",
        f"Location: {exc.file}:{exc.line if exc.line is not None else '?'}",
        f"Time: {timestamp(exc.created_at)}",
        f"UUID: {exc.uuid}",
    ]
    if exc.batch_id:
        lines.append(f"Batch: {exc.batch_id}")

    lines += ["", "📚 Stack trace:"]
    if exc.trace:
        for index, frame in enumerate(exc.trace[:TRACE_FRAMES]):
            lines.append(f"   #{index} {frame.file}:{frame.line if frame.line is not None else '?'}")
        if len(exc.trace) > TRACE_FRAMES:
            lines.append(f"   ... {len(exc.trace) - TRACE_FRAMES} more frames")
    else:
        lines.append("   No trace recorded")

    if include_context:
        lines += ["", "🌐 Request context:"]
        if request is not None:
            lines += ["   " + line.strip() for line in _request_lines(request)]
            if request.controller_action:
                lines.append(f"   Controller: {request.controller_action}")
            if request.user_agent:
                lines.append(f"   User agent: {request.user_agent}")
        else:
            lines.append("   No originating request found")
        if exc.context:
            lines.append("   Exception context: " + ", ".join(f"{k}={v}" for k, v in exc.context.items()))

    if include_related:
        lines += ["", "🔗 Related entries in the same batch:"]
        if related_counts:
            lines += [f"   {kind}: {count}" for kind, count in related_counts]
            for entry in related_queries:
                lines.append(f"   💾 {number(entry.duration)}ms {truncate(entry.sql, 100)}")
        else:
            lines.append("   No related entries")

    return "\n".join(lines) + "\n"


def format_exception_patterns(patterns: Sequence[ExceptionPattern], time_window: str, hours: int,
                              group_by: GroupBy, min_occurrences: int, total_exceptions: int) -> str:
    header = (
        f"window {time_window} ({hours}h), grouped by {group_by.value}, "
        f"at least {min_occurrences} occurrences"
    )
    if not patterns:
        return (
            f"📭 No recurring exception patterns found ({header}).\n"
            f"Exceptions analysed: {total_exceptions}"
        )
    lines = [
        f"🔍 Exception Patterns ({header})",
        f"Exceptions analysed: {total_exceptions} | Patterns: {len(patterns)}",
        "",
    ]
    for pattern in patterns:
        group = pattern.group
        exc = group.representative
        lines += [
            f"{PRIORITY_ICONS[pattern.priority]} {pattern.priority.value.upper()} "
            f"{TREND_ICONS[pattern.trend]} {truncate(group.key, MESSAGE_PREVIEW_CHARS)}",
            f"   Occurrences: {group.count} ({pattern.per_hour}/hour), trend {pattern.trend.value}",
            f"   First seen: {timestamp(group.first_occurrence)}",
            f"   Last seen: {timestamp(group.latest_occurrence)}",
            f"   Example: {exc.short_name} at {exc.file}:{exc.line if exc.line is not None else '?'} "
            f"({short_id(exc.uuid)})",
            "",
        ]
    return "\n".join(lines).rstrip() + "\n"


################################################################################
# Jobs, cache, users                                                           #
################################################################################

def format_jobs(jobs: Sequence[JobEntry], summary: Optional[JobSummary], query: EntryQuery) -> str:
    if not jobs:
        return no_data("jobs", query)
    lines = [
        f"⚙️ Queue Jobs (showing {len(jobs)} of {query.limit}, {query.filters})",
        "",
        "📊 Summary: " + ", ".join(f"{status} {count}" for status, count in summary.by_status),
        f"   Success rate: {summary.success_rate}% | Failed: {summary.failed_count}",
        "   Queues: " + ", ".join(f"{name} ({count})" for name, count in summary.by_queue),
        "",
    ]
    for job in jobs:
        lines.append(f"{JOB_ICONS[job.status]} {job.name} [{job.raw_status}]")
        lines.append(f"   Queue: {job.queue}" + (f" on {job.connection}" if job.connection else ""))
        lines.append(f"   Time: {timestamp(job.created_at)}")
        if job.tries is not None or job.max_tries is not None:
            lines.append(f"   Attempts: {job.tries if job.tries is not None else '?'}/"
                         f"{job.max_tries if job.max_tries is not None else '?'}")
        if job.timeout is not None:
            lines.append(f"   Timeout: {job.timeout}s")
        if job.failed_at:
            lines.append(f"   Failed at: {job.failed_at}")
        if job.exception:
            lines.append(f"   Exception: {truncate(job.exception, MESSAGE_PREVIEW_CHARS)}")
        lines.append(f"   UUID: {short_id(job.uuid)}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def format_cache(operations: Sequence[CacheEntry], query: EntryQuery, hours: int,
                 tally: Optional[CacheTally] = None) -> str:
    lines = []
    if tally is not None:
        lines += [
            f"🗄️ Cache Summary (last {hours}h)",
            f"   Operations: {tally.total}",
            f"   Hits: {tally.hits} ({tally.hit_rate}%) | Misses: {tally.misses} ({tally.miss_rate}%)",
            f"   Writes: {tally.writes} | Deletes: {tally.deletes}",
        ]
        if tally.top_keys:
            lines.append("   Top keys: " + ", ".join(f"{key} ({count})" for key, count in tally.top_keys))
        lines.append("")

    if not operations:
        lines.append(no_data("cache operations", query))
        return "\n".join(lines) + "\n"

    lines.append(f"📋 Cache Operations (showing {len(operations)} of {query.limit}, {query.filters})")
    lines.append("")
    for op in operations:
        lines.append(f"{CACHE_ICONS[op.operation]} {op.raw_operation.upper()} {op.key}")
        lines.append(f"   Time: {timestamp(op.created_at)}")
        if op.expiration is not None:
            lines.append(f"   Expires in: {op.expiration}s")
        if op.tags:
            lines.append(f"   Tags: {', '.join(op.tags)}")
        lines.append(f"   UUID: {short_id(op.uuid)}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def format_user_activity(activities: Sequence[Tuple[RequestEntry, List[str]]], stats: ActivityStats,
                         query: EntryQuery, limit: int, user_id: Optional[Any] = None,
                         suspicious_only: bool = False) -> str:
    subject = f"User {user_id}" if user_id is not None else "All users"
    if not stats.total_requests:
        return no_data("user activity", query)

    lines = [
        f"👤 {subject} Activity ({query.filters})",
        "",
        "📊 Statistics",
        f"   Requests: {stats.total_requests}",
        f"   Unique users: {stats.unique_users} | Unique IPs: {stats.unique_ips}",
        f"   Average duration: {stats.avg_duration}ms",
        f"   Errors: {stats.error_count} ({stats.error_rate}%)",
        f"   First activity: {timestamp(stats.first_activity)}",
        f"   Last activity: {timestamp(stats.last_activity)}",
        f"   Session duration: {stats.session.formatted}",
        f"   Suspicious requests: {stats.suspicious_count}",
    ]
    if stats.top_uris:
        lines.append("   Top URIs: " + ", ".join(f"{uri} ({count})" for uri, count in stats.top_uris))
    lines.append("")

    if not activities:
        label = "suspicious activity" if suspicious_only else "user activity"
        lines.append(no_data(label, query))
        return "\n".join(lines) + "\n"

    title = "🚩 Suspicious Activity" if suspicious_only else "📋 Recent Activity"
    lines += [f"{title} (showing {len(activities)} of {limit})", ""]
    for request, reasons in activities:
        flag = "🚩 " if reasons else ""
        lines.append(flag + _request_lines(request)[0])
        lines += _request_lines(request)[1:]
        if reasons:
            lines.append(f"   Suspicious: {'; '.join(reasons)}")
        lines.append(f"   UUID: {short_id(request.uuid)}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"
