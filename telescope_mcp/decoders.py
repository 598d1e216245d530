"""Decoding of stored ``telescope_entries`` rows into typed per-kind records.

Telescope writes one JSON document per entry into the ``content`` column. The
shape depends on the entry ``type`` and has drifted between Telescope and
Laravel releases, so every field is read through an ordered chain of candidate
keys (see the ``*_KEYS`` constants below). Rows whose content does not decode
to a JSON object are dropped: every count built on top of these records is
best-effort over well-formed rows.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

UNKNOWN = "UNKNOWN"

# Prefix of the application root inside Laravel Sail / Docker containers
CONTAINER_ROOT = "/var/www/html/"

################################################################################
# Field fallback chains                                                        #
################################################################################

# HTTP status: newer Telescope writes response_status, older payloads status
REQUEST_STATUS_KEYS = ("response_status", "status")
# Authenticated user: flat user_id, else the user object Telescope records
REQUEST_USER_KEYS = ("user_id", "user.id")
# Query duration in milliseconds
QUERY_TIME_KEYS = ("time", "duration")
# Job class: name for queued jobs, displayName for serialized payloads
JOB_NAME_KEYS = ("name", "displayName")
# Job failure: exception object message, else a flat string
JOB_EXCEPTION_KEYS = ("exception.message", "exception")


################################################################################
# Tags                                                                         #
################################################################################

class _LenientEnum(str, Enum):
    """String enum whose ``parse`` never fails."""

    @classmethod
    def _aliases(cls) -> Dict[str, str]:
        return {}

    @classmethod
    def parse(cls, value: Any):
        if value is None:
            return cls("unknown")
        token = str(value).strip().lower()
        token = cls._aliases().get(token, token)
        try:
            return cls(token)
        except ValueError:
            return cls("unknown")

    @classmethod
    def spellings(cls, value: Any) -> Tuple[str, ...]:
        """Stored spellings that parse to the same tag as ``value``."""
        token = str(value or "").strip().lower()
        tag = cls.parse(token)
        if tag.value == "unknown":
            return (token,)
        aliases = sorted(alias for alias, target in cls._aliases().items() if target == tag.value)
        return (tag.value, *aliases)


class EntryKind(_LenientEnum):
    REQUEST = "request"
    QUERY = "query"
    JOB = "job"
    CACHE = "cache"
    EXCEPTION = "exception"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "EntryKind":
        token = str(value or "").strip().lower()
        try:
            return cls(token)
        except ValueError:
            return cls.OTHER


class JobStatus(_LenientEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RELEASED = "released"
    UNKNOWN = "unknown"

    @classmethod
    def _aliases(cls) -> Dict[str, str]:
        return {"completed": "processed", "canceled": "cancelled"}

    @property
    def succeeded(self) -> bool:
        return self is JobStatus.PROCESSED


class ExceptionLevel(_LenientEnum):
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    NOTICE = "notice"
    INFO = "info"
    DEBUG = "debug"
    UNKNOWN = "unknown"

    @classmethod
    def _aliases(cls) -> Dict[str, str]:
        return {"emergency": "critical", "alert": "critical", "warn": "warning"}


class CacheOperation(_LenientEnum):
    HIT = "hit"
    MISS = "miss"
    WRITE = "write"
    FORGET = "forget"
    UNKNOWN = "unknown"

    @classmethod
    def _aliases(cls) -> Dict[str, str]:
        return {"missed": "miss", "put": "write", "set": "write", "delete": "forget", "flush": "forget"}


################################################################################
# Helpers                                                                      #
################################################################################

def short_class_name(name: Optional[str]) -> str:
    """Return the last segment of a namespaced PHP class name."""
    if not name:
        return UNKNOWN
    return name.rstrip("\\").rsplit("\\", 1)[-1] or name


def clean_file_path(file_path: Optional[str]) -> Optional[str]:
    """Remove the container root from file paths for readability."""
    if file_path and file_path.startswith(CONTAINER_ROOT):
        return file_path[len(CONTAINER_ROOT):]
    return file_path


def parse_payload(raw: Any) -> Optional[Dict[str, Any]]:
    """Decode a ``content`` value into a dict, or None when it is not an object.

    Top level string values that are themselves JSON encoded (Telescope
    double-encodes some payload fields) are unwrapped.
    """
    if isinstance(raw, Mapping):
        payload = dict(raw)
    else:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if not isinstance(raw, str):
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None

    for key, value in payload.items():
        if isinstance(value, str) and len(value) > 1 and value.startswith('"') and value.endswith('"'):
            try:
                payload[key] = json.loads(value)
            except ValueError:
                pass
    return payload


def lookup(payload: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path inside a payload; missing segments yield None."""
    value: Any = payload
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def first_present(payload: Mapping[str, Any], keys: Sequence[str]) -> Any:
    """Return the first non-null value along a fallback chain."""
    for key in keys:
        value = lookup(payload, key)
        if value is not None:
            return value
    return None


def as_text(value: Any, default: Optional[str] = UNKNOWN) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return default
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    return text if text != "" else default


def as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def as_int(value: Any) -> Optional[int]:
    number = as_float(value)
    return int(number) if number is not None else None


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """Normalise MySQL datetimes and SQLite text timestamps."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode()
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.strip().replace(" ", "T"))
        except ValueError:
            return None
    return None


################################################################################
# Records                                                                      #
################################################################################

@dataclass(frozen=True)
class RawEntry:
    uuid: str
    type: str
    created_at: Optional[datetime]
    batch_id: Optional[str] = None
    sequence: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None

    @property
    def kind(self) -> EntryKind:
        return EntryKind.parse(self.type)


@dataclass(frozen=True)
class RequestEntry:
    uuid: str
    created_at: Optional[datetime]
    method: str
    uri: str
    status: Optional[int]
    duration: Optional[float]
    ip_address: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    controller_action: Optional[str] = None
    memory: Optional[float] = None
    batch_id: Optional[str] = None
    sequence: Optional[int] = None


@dataclass(frozen=True)
class QueryEntry:
    uuid: str
    created_at: Optional[datetime]
    sql: str
    duration: Optional[float]
    connection_name: Optional[str] = None
    bindings: Tuple[Any, ...] = ()
    file: Optional[str] = None
    line: Optional[int] = None
    batch_id: Optional[str] = None
    sequence: Optional[int] = None


@dataclass(frozen=True)
class JobEntry:
    uuid: str
    created_at: Optional[datetime]
    name: str
    job_class: str
    queue: str
    status: JobStatus
    raw_status: str
    connection: Optional[str] = None
    tries: Optional[int] = None
    max_tries: Optional[int] = None
    timeout: Optional[int] = None
    failed_at: Optional[str] = None
    exception: Optional[str] = None
    processing_time: Optional[float] = None
    batch_id: Optional[str] = None
    sequence: Optional[int] = None


@dataclass(frozen=True)
class CacheEntry:
    uuid: str
    created_at: Optional[datetime]
    operation: CacheOperation
    raw_operation: str
    key: str
    value: Any = None
    result: Any = None
    expiration: Optional[int] = None
    tags: Tuple[str, ...] = ()
    batch_id: Optional[str] = None
    sequence: Optional[int] = None


@dataclass(frozen=True)
class TraceFrame:
    file: str
    line: Optional[int]


@dataclass(frozen=True)
class ExceptionEntry:
    uuid: str
    created_at: Optional[datetime]
    class_name: str
    message: str
    file: str
    line: Optional[int]
    level: ExceptionLevel
    raw_level: str
    trace: Tuple[TraceFrame, ...] = ()
    context: Dict[str, Any] = field(default_factory=dict)
    batch_id: Optional[str] = None
    sequence: Optional[int] = None

    @property
    def short_name(self) -> str:
        return short_class_name(self.class_name)


################################################################################
# Decoders                                                                     #
################################################################################

def _meta(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "uuid": as_text(row.get("uuid"), default=""),
        "created_at": coerce_timestamp(row.get("created_at")),
        "batch_id": as_text(row.get("batch_id"), default=None),
        "sequence": as_int(row.get("sequence")),
    }


def decode_raw(row: Mapping[str, Any]) -> RawEntry:
    """Decode metadata for any row; the payload is None when malformed."""
    meta = _meta(row)
    return RawEntry(
        uuid=meta["uuid"],
        type=as_text(row.get("type"), default=EntryKind.OTHER.value),
        created_at=meta["created_at"],
        batch_id=meta["batch_id"],
        sequence=meta["sequence"],
        payload=parse_payload(row.get("content")),
    )


def decode_request(row: Mapping[str, Any]) -> Optional[RequestEntry]:
    content = parse_payload(row.get("content"))
    if content is None:
        return None
    return RequestEntry(
        method=as_text(content.get("method")),
        uri=as_text(content.get("uri")),
        status=as_int(first_present(content, REQUEST_STATUS_KEYS)),
        duration=as_float(content.get("duration")),
        ip_address=as_text(content.get("ip_address"), default=None),
        user_id=as_text(first_present(content, REQUEST_USER_KEYS), default=None),
        user_agent=as_text(lookup(content, "headers.user-agent") or content.get("user_agent"), default=None),
        controller_action=as_text(content.get("controller_action"), default=None),
        memory=as_float(content.get("memory")),
        **_meta(row),
    )


def decode_query(row: Mapping[str, Any]) -> Optional[QueryEntry]:
    content = parse_payload(row.get("content"))
    if content is None:
        return None
    bindings = content.get("bindings") or ()
    if not isinstance(bindings, (list, tuple)):
        bindings = (bindings,)
    return QueryEntry(
        sql=as_text(content.get("sql")).strip(),
        duration=as_float(first_present(content, QUERY_TIME_KEYS)),
        connection_name=as_text(content.get("connection_name") or content.get("connection"), default=None),
        bindings=tuple(bindings),
        file=clean_file_path(as_text(content.get("file"), default=None)),
        line=as_int(content.get("line")),
        **_meta(row),
    )


def decode_job(row: Mapping[str, Any]) -> Optional[JobEntry]:
    content = parse_payload(row.get("content"))
    if content is None:
        return None
    job_class = as_text(first_present(content, JOB_NAME_KEYS))
    raw_status = as_text(content.get("status"), default="unknown")
    return JobEntry(
        name=short_class_name(job_class),
        job_class=job_class,
        queue=as_text(content.get("queue"), default="default"),
        status=JobStatus.parse(raw_status),
        raw_status=raw_status,
        connection=as_text(content.get("connection"), default=None),
        tries=as_int(content.get("tries")),
        max_tries=as_int(content.get("maxTries")),
        timeout=as_int(content.get("timeout")),
        failed_at=as_text(content.get("failed_at"), default=None),
        exception=as_text(first_present(content, JOB_EXCEPTION_KEYS), default=None),
        processing_time=as_float(content.get("time")),
        **_meta(row),
    )


def decode_cache(row: Mapping[str, Any]) -> Optional[CacheEntry]:
    content = parse_payload(row.get("content"))
    if content is None:
        return None
    raw_operation = as_text(content.get("type"), default="unknown")
    tags = content.get("tags") or ()
    if not isinstance(tags, (list, tuple)):
        tags = (tags,)
    return CacheEntry(
        operation=CacheOperation.parse(raw_operation),
        raw_operation=raw_operation,
        key=as_text(content.get("key")),
        value=content.get("value"),
        result=content.get("result"),
        expiration=as_int(content.get("expiration")),
        tags=tuple(str(tag) for tag in tags),
        **_meta(row),
    )


def _decode_trace(trace: Any) -> Tuple[TraceFrame, ...]:
    if not isinstance(trace, list):
        return ()
    frames = []
    for frame in trace:
        if isinstance(frame, Mapping):
            frames.append(TraceFrame(
                file=clean_file_path(as_text(frame.get("file"))),
                line=as_int(frame.get("line")),
            ))
        elif isinstance(frame, str):
            frames.append(TraceFrame(file=frame, line=None))
    return tuple(frames)


def decode_exception(row: Mapping[str, Any]) -> Optional[ExceptionEntry]:
    content = parse_payload(row.get("content"))
    if content is None:
        return None
    raw_level = as_text(content.get("level"), default="unknown")
    context = content.get("context")
    return ExceptionEntry(
        class_name=as_text(content.get("class")),
        message=as_text(content.get("message")),
        file=clean_file_path(as_text(content.get("file"))),
        line=as_int(content.get("line")),
        level=ExceptionLevel.parse(raw_level),
        raw_level=raw_level,
        trace=_decode_trace(content.get("trace")),
        context=dict(context) if isinstance(context, Mapping) else {},
        **_meta(row),
    )


DECODERS: Dict[EntryKind, Callable[[Mapping[str, Any]], Any]] = {
    EntryKind.REQUEST: decode_request,
    EntryKind.QUERY: decode_query,
    EntryKind.JOB: decode_job,
    EntryKind.CACHE: decode_cache,
    EntryKind.EXCEPTION: decode_exception,
}


def decode_rows(kind: EntryKind, rows: Iterable[Mapping[str, Any]]) -> List[Any]:
    """Decode rows of one kind, silently skipping malformed payloads."""
    decoder = DECODERS.get(kind)
    if decoder is None:
        return [decode_raw(row) for row in rows]
    decoded = (decoder(row) for row in rows)
    return [entry for entry in decoded if entry is not None]
