"""Parameterized statement builders for the ``telescope_entries`` table.

Every caller-supplied value travels as a bound parameter. JSON payload fields
are addressed through :class:`JsonField`, whose paths come from the fixed
constants in :mod:`telescope_mcp.decoders` and are validated before being
rendered into the statement text. Extraction only runs on rows whose
``content`` is valid JSON, so a malformed row never aborts a statement.

Two statement shapes exist: :class:`EntryQuery` returns capped lists of raw
rows for decoding, :class:`SummaryQuery` returns counts, averages and
groupings computed by the database.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, Union

from .decoders import (
    QUERY_TIME_KEYS,
    REQUEST_STATUS_KEYS,
    REQUEST_USER_KEYS,
    CacheOperation,
    EntryKind,
    ExceptionLevel,
    JobStatus,
)
from .errors import InvalidArgument

logger = logging.getLogger(__name__)

################################################################################
# Constants                                                                    #
################################################################################

TABLE = "telescope_entries"
ENTRY_COLUMNS = "sequence, uuid, batch_id, type, content, created_at"

MAX_LIMIT = 100
MAX_RECENT_ENTRIES = 50
DEFAULT_HOURS = 24

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

TIME_WINDOWS = {
    "1h": 1,
    "12h": 12,
    "24h": 24,
    "1d": 24,
    "3d": 72,
    "7d": 168,
}

# Suspicious activity heuristics, shared with the per-row check in aggregate
SENSITIVE_PATHS = ("/admin", "/api/admin", "/dashboard/admin", "/user/delete", "/config")
IGNORED_CLIENT_ERRORS = (404,)
SLOW_ACTIVITY_MS = 5000

_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*(\.[A-Za-z_][A-Za-z0-9_\-]*)*$")
_UUID_RE = re.compile(r"^[0-9A-Za-z\-]+$")


################################################################################
# Argument validation                                                          #
################################################################################

def validate_limit(limit: int, maximum: int = MAX_LIMIT) -> int:
    """Reject non-positive limits and clamp large ones to ``maximum``."""
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise InvalidArgument(f"limit must be an integer, got {limit!r}")
    if limit <= 0:
        raise InvalidArgument(f"limit must be at least 1, got {limit}")
    return min(limit, maximum)


def validate_hours(hours: int) -> int:
    if isinstance(hours, bool) or not isinstance(hours, int):
        raise InvalidArgument(f"hours must be an integer, got {hours!r}")
    if hours < 0:
        raise InvalidArgument(f"hours must not be negative, got {hours}")
    return hours


def parse_time_window(token: Optional[str]) -> int:
    """Map a window token such as ``"7d"`` to hours.

    Unrecognized tokens fall back to 24 hours instead of failing.
    """
    hours = TIME_WINDOWS.get(str(token or "").strip().lower())
    if hours is None:
        logger.warning("Unrecognized time window %r, defaulting to %dh", token, DEFAULT_HOURS)
        return DEFAULT_HOURS
    return hours


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


class GroupBy(str, Enum):
    """Closed set of exception grouping keys."""

    CLASS = "class"
    FILE = "file"
    MESSAGE = "message"

    @classmethod
    def parse(cls, value: Optional[str]) -> "GroupBy":
        token = str(value or "").strip().lower()
        if token == "type":
            return cls.CLASS
        try:
            return cls(token)
        except ValueError:
            allowed = ", ".join(["type", "class", "file", "message"])
            raise InvalidArgument(f"group_by must be one of {allowed}, got {value!r}") from None


################################################################################
# Expressions                                                                  #
################################################################################

@dataclass(frozen=True)
class DialectSql:
    """Fixed SQL text that differs between MySQL and SQLite."""

    mysql: str
    sqlite: str

    def render(self, dialect: str) -> str:
        return self.mysql if dialect == "mysql" else self.sqlite


# content decodes to a JSON object
WELL_FORMED = DialectSql(
    "CASE WHEN JSON_VALID(content) THEN JSON_TYPE(content) END = 'OBJECT'",
    "CASE WHEN JSON_VALID(content) THEN JSON_TYPE(content) END = 'object'",
)

HOUR_OF_DAY = DialectSql("HOUR(created_at)", "CAST(strftime('%H', created_at) AS INTEGER)")


@dataclass(frozen=True)
class JsonField:
    """A payload field read through an ordered fallback chain of paths."""

    paths: Tuple[str, ...]
    numeric: bool = False

    def __post_init__(self):
        for path in self.paths:
            if not _PATH_RE.match(path):
                raise ValueError(f"Unsupported JSON path: {path!r}")

    def render(self, dialect: str) -> str:
        parts = [_json_value(dialect, path, self.numeric) for path in self.paths]
        if len(parts) == 1:
            return parts[0]
        return "COALESCE({})".format(", ".join(parts))


def _json_value(dialect: str, path: str, numeric: bool) -> str:
    extract = f"CASE WHEN JSON_VALID(content) THEN JSON_EXTRACT(content, '$.{path}') END"
    if dialect == "mysql":
        unquoted = f"JSON_UNQUOTE({extract})"
        if numeric:
            return f"CAST(NULLIF({unquoted}, 'null') AS DECIMAL(14,2))"
        return f"NULLIF({unquoted}, 'null')"
    if numeric:
        return f"CAST({extract} AS REAL)"
    return f"CAST({extract} AS TEXT)"


@dataclass(frozen=True)
class Template:
    """SQL text whose ``{0}``, ``{1}`` ... slots take rendered expressions."""

    text: str
    args: Tuple["Expression", ...] = ()

    def render(self, dialect: str) -> str:
        return self.text.format(*(_render_expression(arg, dialect) for arg in self.args))


Expression = Union[str, JsonField, Template, DialectSql]


def _render_expression(expr: Expression, dialect: str) -> str:
    return expr if isinstance(expr, str) else expr.render(dialect)


def lower(expr: Expression) -> Template:
    return Template("LOWER({0})", (expr,))


def _placeholders(name: str, values: Sequence[Any]) -> Tuple[str, Dict[str, Any]]:
    names = [f"{name}_{index}" for index in range(len(values))]
    return ", ".join(f":{n}" for n in names), dict(zip(names, values))


REQUEST_STATUS = JsonField(REQUEST_STATUS_KEYS, numeric=True)
REQUEST_DURATION = JsonField(("duration",), numeric=True)
REQUEST_URI = JsonField(("uri",))
REQUEST_IP = JsonField(("ip_address",))
REQUEST_USER = JsonField(REQUEST_USER_KEYS)
QUERY_TIME = JsonField(QUERY_TIME_KEYS, numeric=True)
JOB_STATUS = JsonField(("status",))
JOB_QUEUE = JsonField(("queue",))
JOB_TIME = JsonField(("time",), numeric=True)
CACHE_OPERATION = JsonField(("type",))
CACHE_KEY = JsonField(("key",))
EXCEPTION_LEVEL = JsonField(("level",))

GROUP_FIELDS = {
    GroupBy.CLASS: JsonField(("class",)),
    GroupBy.FILE: JsonField(("file",)),
    GroupBy.MESSAGE: JsonField(("message",)),
}


@dataclass(frozen=True)
class Condition:
    lhs: Expression
    op: str
    param: Optional[str] = None

    def render(self, dialect: str) -> str:
        lhs = _render_expression(self.lhs, dialect)
        if self.param is None:
            return f"{lhs} {self.op}"
        return f"{lhs} {self.op} :{self.param}"


def _suspicious_predicate() -> Tuple[Template, Dict[str, Any]]:
    """Any of: client error other than the ignored ones, sensitive path, slow response."""
    ignored, params = _placeholders("ignored_status", IGNORED_CLIENT_ERRORS)
    sensitive, sensitive_params = _placeholders("sensitive_path", SENSITIVE_PATHS)
    params.update(sensitive_params)
    params["slow_activity"] = SLOW_ACTIVITY_MS
    paths = " OR ".join(f"INSTR({{1}}, {name}) > 0" for name in sensitive.split(", "))
    text = (
        f"(({{0}} >= 400 AND {{0}} < 500 AND {{0}} NOT IN ({ignored})) "
        f"OR {paths} OR {{2}} > :slow_activity)"
    )
    return Template(text, (REQUEST_STATUS, REQUEST_URI, REQUEST_DURATION)), params


################################################################################
# Query description                                                            #
################################################################################

@dataclass
class FilteredQuery:
    """Predicates shared by row listings and aggregates.

    Reads scoped to one kind only see rows whose content is a JSON object.
    """

    kind: Optional[EntryKind] = None
    conditions: List[Union[Condition, Template]] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)
    limit: Optional[int] = None
    description: List[str] = field(default_factory=list)

    def where(self, lhs: Expression, op: str, name: Optional[str] = None, value: Any = None):
        self.conditions.append(Condition(lhs, op, name))
        if name is not None:
            self.params[name] = value
        return self

    def require(self, predicate: Template, params: Optional[Dict[str, Any]] = None):
        self.conditions.append(predicate)
        self.params.update(params or {})
        return self

    def where_in(self, lhs: Expression, name: str, values: Sequence[Any]):
        placeholders, params = _placeholders(name, values)
        return self.require(Template(f"{{0}} IN ({placeholders})", (lhs,)), params)

    def where_tag(self, lhs: Expression, name: str, tag: Type[Enum], value: str):
        """Case-insensitive match on every stored spelling of a tag."""
        return self.where_in(lower(lhs), name, tag.spellings(value))

    def since(self, moment: Optional[datetime]):
        if moment is not None:
            self.where("created_at", ">=", "cutoff", format_timestamp(moment))
        return self

    def describe(self, text: str):
        self.description.append(text)
        return self

    @property
    def filters(self) -> str:
        """Human readable summary of the active filters."""
        return ", ".join(self.description) if self.description else "no filters"

    def _where(self, dialect: str) -> Tuple[str, Dict[str, Any]]:
        clauses = []
        params = dict(self.params)
        if self.kind is not None:
            clauses.append("type = :kind")
            params["kind"] = self.kind.value
            clauses.append(WELL_FORMED.render(dialect))
        clauses.extend(condition.render(dialect) for condition in self.conditions)
        return (" WHERE " + " AND ".join(clauses) if clauses else ""), params

    def _limit(self, params: Dict[str, Any]) -> str:
        if self.limit is None:
            return ""
        params["limit"] = self.limit
        return " LIMIT :limit"


@dataclass
class EntryQuery(FilteredQuery):
    """An ordered, capped read of raw rows for decoding."""

    order_by: List[Tuple[Expression, str]] = field(
        default_factory=lambda: [("created_at", "DESC"), ("sequence", "DESC")]
    )

    def render(self, dialect: str) -> Tuple[str, Dict[str, Any]]:
        where, params = self._where(dialect)
        sql = f"SELECT {ENTRY_COLUMNS} FROM {TABLE}{where}"
        if self.order_by:
            sql += " ORDER BY " + ", ".join(
                f"{_render_expression(expr, dialect)} {direction}" for expr, direction in self.order_by
            )
        return sql + self._limit(params), params


@dataclass
class SummaryQuery(FilteredQuery):
    """Aggregate columns, optionally grouped under the ``group_key`` column."""

    columns: List[Tuple[Expression, str]] = field(default_factory=list)
    group_by: Optional[Expression] = None
    having: Optional[str] = None
    order_by: List[str] = field(default_factory=list)

    def column(self, expr: Expression, alias: str, params: Optional[Dict[str, Any]] = None):
        self.columns.append((expr, alias))
        self.params.update(params or {})
        return self

    def render(self, dialect: str) -> Tuple[str, Dict[str, Any]]:
        where, params = self._where(dialect)
        selected = [f"{_render_expression(expr, dialect)} AS {alias}" for expr, alias in self.columns]
        if self.group_by is not None:
            selected.insert(0, f"{_render_expression(self.group_by, dialect)} AS group_key")
        sql = f"SELECT {', '.join(selected)} FROM {TABLE}{where}"
        if self.group_by is not None:
            sql += f" GROUP BY {_render_expression(self.group_by, dialect)}"
        if self.having:
            sql += f" HAVING {self.having}"
        if self.order_by:
            sql += " ORDER BY " + ", ".join(self.order_by)
        return sql + self._limit(params), params


def _count_where(predicate: str, *args: Expression) -> Template:
    return Template(f"SUM(CASE WHEN {predicate} THEN 1 ELSE 0 END)", args)


def _average(expr: Expression) -> Template:
    return Template("AVG({0})", (expr,))


################################################################################
# Listing builders                                                             #
################################################################################

def recent_entries(limit: int = 5) -> EntryQuery:
    limit = validate_limit(limit, MAX_RECENT_ENTRIES)
    return EntryQuery(limit=limit).describe(f"latest {limit} entries of any type")


def recent_requests(limit: int = 10) -> EntryQuery:
    limit = validate_limit(limit)
    return EntryQuery(kind=EntryKind.REQUEST, limit=limit).describe(f"latest {limit} requests")


def slow_queries(threshold_ms: float = 100, limit: int = 10, since: Optional[datetime] = None) -> EntryQuery:
    limit = validate_limit(limit)
    if threshold_ms < 0:
        raise InvalidArgument(f"threshold_ms must not be negative, got {threshold_ms}")
    query = EntryQuery(
        kind=EntryKind.QUERY,
        limit=limit,
        order_by=[(QUERY_TIME, "DESC"), ("sequence", "DESC")],
    )
    query.where(QUERY_TIME, ">", "threshold", threshold_ms).describe(f"duration > {threshold_ms}ms")
    return query.since(since)


def slowest_requests(threshold_ms: float, since: Optional[datetime], limit: int = 5) -> EntryQuery:
    query = EntryQuery(
        kind=EntryKind.REQUEST,
        limit=limit,
        order_by=[(REQUEST_DURATION, "DESC"), ("sequence", "DESC")],
    )
    return query.where(REQUEST_DURATION, ">", "threshold", threshold_ms).since(since)


def heaviest_queries(since: Optional[datetime], limit: int = 5) -> EntryQuery:
    query = EntryQuery(
        kind=EntryKind.QUERY,
        limit=limit,
        order_by=[(QUERY_TIME, "DESC"), ("sequence", "DESC")],
    )
    return query.where(QUERY_TIME, "IS NOT NULL").since(since)


def window(kind: EntryKind, since: Optional[datetime], limit: Optional[int] = None) -> EntryQuery:
    """Entries of one kind recorded at or after ``since``."""
    query = EntryQuery(kind=kind, limit=limit).since(since)
    if since is not None:
        query.describe(f"since {format_timestamp(since)}")
    return query


def _filter_level(query: FilteredQuery, level: Optional[str]):
    if level:
        query.where_tag(EXCEPTION_LEVEL, "level", ExceptionLevel, level).describe(f"level = {level}")
    return query


def exceptions(limit: int = 10, level: Optional[str] = None, since: Optional[datetime] = None) -> EntryQuery:
    return _filter_level(window(EntryKind.EXCEPTION, since, validate_limit(limit)), level)


def _filter_jobs(query: FilteredQuery, status: Optional[str], queue: Optional[str]):
    if status:
        query.where_tag(JOB_STATUS, "status", JobStatus, status).describe(f"status = {status}")
    if queue:
        query.where(JOB_QUEUE, "=", "queue", queue.strip()).describe(f"queue = {queue}")
    return query


def jobs(limit: int = 10, status: Optional[str] = None, queue: Optional[str] = None,
         since: Optional[datetime] = None) -> EntryQuery:
    return _filter_jobs(window(EntryKind.JOB, since, validate_limit(limit)), status, queue)


def cache_operations(limit: int = 50, operation: Optional[str] = None,
                     since: Optional[datetime] = None) -> EntryQuery:
    query = window(EntryKind.CACHE, since, validate_limit(limit))
    if operation:
        query.where_tag(CACHE_OPERATION, "operation", CacheOperation, operation).describe(
            f"operation = {operation}"
        )
    return query


def _scope_users(query: FilteredQuery, user_id: Optional[Union[int, str]], include_anonymous: bool):
    if user_id is not None:
        query.where(REQUEST_USER, "=", "user_id", str(user_id)).describe(f"user {user_id}")
    elif not include_anonymous:
        query.where(REQUEST_USER, "IS NOT NULL").describe("authenticated users only")
    else:
        query.describe("including anonymous requests")
    return query


def user_activity(user_id: Optional[Union[int, str]] = None, include_anonymous: bool = False,
                  since: Optional[datetime] = None, limit: int = 20,
                  suspicious_only: bool = False) -> EntryQuery:
    query = _scope_users(window(EntryKind.REQUEST, since, validate_limit(limit)), user_id, include_anonymous)
    if suspicious_only:
        query.require(*_suspicious_predicate()).describe("suspicious only")
    return query


def entry_by_uuid(uuid: str, kind: Optional[EntryKind] = None) -> EntryQuery:
    """Match an entry by full uuid or by the short prefix shown in reports."""
    uuid = (uuid or "").strip().rstrip(".")
    if not uuid:
        raise InvalidArgument("an entry id is required")
    if not _UUID_RE.match(uuid):
        raise InvalidArgument(f"malformed entry id: {uuid!r}")
    query = EntryQuery(kind=kind, limit=2, order_by=[("sequence", "ASC")])
    return query.where("uuid", "LIKE", "uuid_prefix", uuid + "%").describe(f"id {uuid}")


def entries_by_sequence(kind: EntryKind, sequences: Sequence[int]) -> EntryQuery:
    query = EntryQuery(kind=kind, order_by=[("sequence", "ASC")])
    return query.where_in("sequence", "sequence", list(sequences))


def batch_entries(batch_id: str, kind: Optional[EntryKind] = None,
                  limit: Optional[int] = None) -> EntryQuery:
    """Entries written while handling the same request or job."""
    query = EntryQuery(kind=kind, limit=limit, order_by=[("sequence", "ASC")])
    return query.where("batch_id", "=", "batch_id", batch_id).describe(f"batch {batch_id}")


def count_entries() -> str:
    return f"SELECT COUNT(*) FROM {TABLE}"


def latest_entry_time() -> str:
    return f"SELECT MAX(created_at) FROM {TABLE}"


################################################################################
# Aggregate builders                                                           #
################################################################################

def counts_by(kind: EntryKind, key: Expression, since: Optional[datetime] = None,
              limit: Optional[int] = None) -> SummaryQuery:
    """Row counts per distinct ``key``, largest first."""
    query = SummaryQuery(kind=kind, group_by=key, limit=limit, order_by=["total DESC", "group_key ASC"])
    return query.column("COUNT(*)", "total").since(since)


def hourly_counts(kind: EntryKind, since: Optional[datetime]) -> SummaryQuery:
    """Row counts per hour of day, days collapsed together."""
    return counts_by(kind, HOUR_OF_DAY, since)


def request_totals(since: Optional[datetime], slow_threshold_ms: float) -> SummaryQuery:
    query = SummaryQuery(kind=EntryKind.REQUEST).since(since)
    query.column("COUNT(*)", "total")
    query.column(_count_where("{0} >= 200 AND {0} < 300", REQUEST_STATUS), "successes")
    query.column(_count_where("{0} >= 400", REQUEST_STATUS), "errors")
    query.column(_average(REQUEST_DURATION), "avg_duration")
    query.column(_count_where("{0} > :slow_threshold", REQUEST_DURATION), "slow",
                 {"slow_threshold": slow_threshold_ms})
    return query


def query_totals(since: Optional[datetime], slow_threshold_ms: float) -> SummaryQuery:
    query = SummaryQuery(kind=EntryKind.QUERY).since(since)
    query.column("COUNT(*)", "total")
    query.column(_average(QUERY_TIME), "avg_time")
    query.column(_count_where("{0} > :slow_threshold", QUERY_TIME), "slow",
                 {"slow_threshold": slow_threshold_ms})
    return query


def job_totals(since: Optional[datetime], status: Optional[str] = None,
               queue: Optional[str] = None) -> SummaryQuery:
    query = SummaryQuery(kind=EntryKind.JOB).since(since)
    query.column("COUNT(*)", "total").column(_average(JOB_TIME), "avg_time")
    return _filter_jobs(query, status, queue)


def job_counts(key: Expression, since: Optional[datetime], status: Optional[str] = None,
               queue: Optional[str] = None, limit: Optional[int] = None) -> SummaryQuery:
    return _filter_jobs(counts_by(EntryKind.JOB, key, since, limit), status, queue)


def activity_totals(user_id: Optional[Union[int, str]] = None, include_anonymous: bool = False,
                    since: Optional[datetime] = None) -> SummaryQuery:
    suspicious, params = _suspicious_predicate()
    query = SummaryQuery(kind=EntryKind.REQUEST).since(since)
    query.column("COUNT(*)", "total")
    query.column(Template("COUNT(DISTINCT {0})", (REQUEST_IP,)), "unique_ips")
    query.column(Template("COUNT(DISTINCT {0})", (REQUEST_USER,)), "unique_users")
    query.column(_average(REQUEST_DURATION), "avg_duration")
    query.column(_count_where("{0} >= 400", REQUEST_STATUS), "errors")
    query.column("MIN(created_at)", "first_seen").column("MAX(created_at)", "last_seen")
    query.column(Template(f"SUM(CASE WHEN {suspicious.text} THEN 1 ELSE 0 END)", suspicious.args),
                 "suspicious", params)
    return _scope_users(query, user_id, include_anonymous)


def activity_uris(user_id: Optional[Union[int, str]] = None, include_anonymous: bool = False,
                  since: Optional[datetime] = None, limit: int = 5) -> SummaryQuery:
    return _scope_users(counts_by(EntryKind.REQUEST, REQUEST_URI, since, limit), user_id, include_anonymous)


def exception_groups(group_by: GroupBy, since: Optional[datetime] = None, level: Optional[str] = None,
                     limit: Optional[int] = None, midpoint: Optional[datetime] = None,
                     min_occurrences: Optional[int] = None) -> SummaryQuery:
    """Exceptions grouped on an allow-listed field, most frequent then most recent first.

    With ``midpoint`` the groups also count occurrences at or after it and
    occurrences at critical or error level.
    """
    query = SummaryQuery(
        kind=EntryKind.EXCEPTION,
        group_by=GROUP_FIELDS[group_by],
        limit=limit,
        order_by=["occurrences DESC", "latest_seen DESC", "group_key ASC"],
    ).since(since)
    query.column("COUNT(*)", "occurrences")
    query.column("MAX(created_at)", "latest_seen").column("MIN(created_at)", "first_seen")
    query.column("MIN(sequence)", "representative")
    if midpoint is not None:
        query.column(_count_where("created_at >= :midpoint"), "recent",
                     {"midpoint": format_timestamp(midpoint)})
        for tag in (ExceptionLevel.CRITICAL, ExceptionLevel.ERROR):
            placeholders, params = _placeholders(f"{tag.value}_level", ExceptionLevel.spellings(tag.value))
            query.column(_count_where(f"{{0}} IN ({placeholders})", lower(EXCEPTION_LEVEL)),
                         f"{tag.value}_count", params)
    if min_occurrences is not None:
        query.having = "COUNT(*) >= :min_occurrences"
        query.params["min_occurrences"] = min_occurrences
    _filter_level(query, level)
    if since is not None:
        query.describe(f"since {format_timestamp(since)}")
    return query


def exception_total(since: Optional[datetime]) -> SummaryQuery:
    return SummaryQuery(kind=EntryKind.EXCEPTION).column("COUNT(*)", "total").since(since)


def batch_type_counts(batch_id: str, exclude_uuid: str) -> SummaryQuery:
    """Per-type counts of a batch, leaving out one entry."""
    query = SummaryQuery(group_by="type", order_by=["total DESC", "group_key ASC"])
    query.column("COUNT(*)", "total")
    return query.where("batch_id", "=", "batch_id", batch_id).where("uuid", "<>", "exclude_uuid", exclude_uuid)
