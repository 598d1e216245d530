"""Laravel Telescope MCP server for exploring application debugging data.

The server reads the ``telescope_entries`` table of a Laravel application
directly, so AI agents can inspect requests, queries, jobs, cache operations
and exceptions without going through the Telescope web UI. Every tool returns
a plain-text report.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from mcp.server.fastmcp import FastMCP

from . import tools
from .config import Settings
from .database import TelescopeDatabase

logger = logging.getLogger(__name__)


def _invoke(name: str, handler: Callable[..., str], *args: Any, **kwargs: Any) -> str:
    logger.debug("Tool %s called with %s", name, kwargs)
    return handler(*args, **kwargs)


def create_server(db: TelescopeDatabase, settings: Optional[Settings] = None) -> FastMCP:
    """Build a FastMCP server whose tools all share ``db``."""
    settings = settings or db.settings
    mcp = FastMCP(settings.server_name, dependencies=["sqlalchemy", "pymysql"])

    ############################################################################
    # Connectivity                                                             #
    ############################################################################

    @mcp.tool(name="hello_world", description="A simple hello world test")
    def hello_world(name: str = "World") -> str:
        """Greet the caller to confirm the server is reachable."""
        return _invoke("hello_world", tools.hello_world, name=name)

    @mcp.tool(name="telescope_status", description="Check Laravel Telescope database connection and status")
    def telescope_status() -> str:
        """Report connection target, entry count and latest entry time."""
        return _invoke("telescope_status", tools.telescope_status, db)

    @mcp.tool(name="get_recent_entries", description="Get recent telescope entries of any type (1-50)")
    def get_recent_entries(limit: int = 5) -> str:
        """Show the newest entries regardless of type."""
        return _invoke("get_recent_entries", tools.get_recent_entries, db, limit=limit)

    ############################################################################
    # Requests & queries                                                       #
    ############################################################################

    @mcp.tool(name="telescope_recent_requests", description="List recent HTTP requests from Laravel Telescope")
    def telescope_recent_requests(limit: int = 10) -> str:
        """List the newest HTTP requests (1-100)."""
        return _invoke("telescope_recent_requests", tools.telescope_recent_requests, db, limit=limit)

    @mcp.tool(name="telescope_slow_queries", description="Find slow database queries from Laravel Telescope")
    def telescope_slow_queries(threshold_ms: int = 100, limit: int = 10) -> str:
        """List queries slower than the threshold, slowest first."""
        return _invoke(
            "telescope_slow_queries", tools.telescope_slow_queries, db, threshold_ms=threshold_ms, limit=limit
        )

    @mcp.tool(
        name="telescope_performance_summary",
        description="Performance dashboard across requests, database, queue, cache and errors",
    )
    def telescope_performance_summary(
        hours: int = 24,
        include_details: bool = False,
        slow_threshold_ms: int = 1000,
        error_rate_threshold_pct: float = 5.0,
    ) -> str:
        """Summarize application health over the last ``hours``."""
        return _invoke(
            "telescope_performance_summary",
            tools.telescope_performance_summary,
            db,
            hours=hours,
            include_details=include_details,
            slow_threshold_ms=slow_threshold_ms,
            error_rate_threshold_pct=error_rate_threshold_pct,
        )

    ############################################################################
    # Exceptions                                                               #
    ############################################################################

    @mcp.tool(
        name="telescope_exceptions",
        description="List exceptions, optionally filtered by level and period (1h, 12h, 24h, 1d, 3d, 7d) "
                    "or grouped by type, file or message",
    )
    def telescope_exceptions(
        limit: int = 10,
        level: Optional[str] = None,
        since: Optional[str] = None,
        group_by: Optional[str] = None,
    ) -> str:
        """List or group recorded exceptions."""
        return _invoke(
            "telescope_exceptions", tools.telescope_exceptions, db,
            limit=limit, level=level, since=since, group_by=group_by,
        )

    @mcp.tool(
        name="telescope_exception_detail",
        description="Full detail for one exception: stack trace, originating request and related entries",
    )
    def telescope_exception_detail(
        exception_id: str,
        include_context: bool = True,
        include_related: bool = True,
    ) -> str:
        """Show one exception by uuid (or the 8 character prefix shown in lists)."""
        return _invoke(
            "telescope_exception_detail", tools.telescope_exception_detail, db,
            exception_id=exception_id, include_context=include_context, include_related=include_related,
        )

    @mcp.tool(
        name="telescope_exception_patterns",
        description="Find recurring exception patterns with trend and priority indicators",
    )
    def telescope_exception_patterns(
        time_window: str = "24h",
        min_occurrences: int = 2,
        group_by: str = "class",
    ) -> str:
        """Group exceptions in a window and flag the recurring ones."""
        return _invoke(
            "telescope_exception_patterns", tools.telescope_exception_patterns, db,
            time_window=time_window, min_occurrences=min_occurrences, group_by=group_by,
        )

    ############################################################################
    # Jobs, cache, users                                                       #
    ############################################################################

    @mcp.tool(name="telescope_jobs", description="Queue job status report with optional status and queue filters")
    def telescope_jobs(
        limit: int = 10,
        status: Optional[str] = None,
        queue: Optional[str] = None,
        hours: int = 24,
    ) -> str:
        """List recent queued jobs with a status summary."""
        return _invoke(
            "telescope_jobs", tools.telescope_jobs, db, limit=limit, status=status, queue=queue, hours=hours
        )

    @mcp.tool(name="telescope_cache_stats", description="Cache operations log with hit/miss summary")
    def telescope_cache_stats(
        limit: int = 50,
        operation: Optional[str] = None,
        hours: int = 24,
        show_summary: bool = True,
    ) -> str:
        """List cache operations, optionally with hit/miss statistics."""
        return _invoke(
            "telescope_cache_stats", tools.telescope_cache_stats, db,
            limit=limit, operation=operation, hours=hours, show_summary=show_summary,
        )

    @mcp.tool(
        name="telescope_user_activity",
        description="User activity report with suspicious activity detection",
    )
    def telescope_user_activity(
        user_id: Optional[int] = None,
        limit: int = 20,
        hours: int = 24,
        include_anonymous: bool = False,
        suspicious_only: bool = False,
    ) -> str:
        """Report activity for one user or all authenticated users."""
        return _invoke(
            "telescope_user_activity", tools.telescope_user_activity, db,
            user_id=user_id, limit=limit, hours=hours,
            include_anonymous=include_anonymous, suspicious_only=suspicious_only,
        )

    return mcp
