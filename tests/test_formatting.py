"""Tests for telescope_mcp/formatting.py"""

from datetime import datetime

import pytest

from telescope_mcp import formatting, queries
from telescope_mcp.database import TableStatus
from telescope_mcp.queries import GroupBy


class TestIcons:
    @pytest.mark.parametrize("status,icon", [
        (200, "✅"), (302, "🔄"), (404, "⚠️"), (503, "❌"), (None, "❓"), (102, "❓"),
    ])
    def test_status_icon(self, status, icon):
        assert formatting.status_icon(status) == icon


class TestHelpers:
    def test_short_id(self):
        assert formatting.short_id("0123456789abcdef") == "01234567..."

    def test_truncate(self):
        assert formatting.truncate("abcdef", 3) == "abc..."
        assert formatting.truncate("  abc  ", 3) == "abc"

    def test_timestamp(self):
        assert formatting.timestamp(datetime(2025, 6, 1, 9, 5)) == "2025-06-01 09:05:00"
        assert formatting.timestamp(None) == "Unknown"

    def test_number(self):
        assert formatting.number(250.0) == "250"
        assert formatting.number(12.5) == "12.5"


class TestReports:
    def test_hello(self):
        assert formatting.format_hello("Ada") == "Hello, Ada! Laravel Telescope MCP Server is running."

    def test_empty_requests_mention_filters(self):
        text = formatting.format_recent_requests([], queries.recent_requests(10))
        assert text == "📭 No requests found (latest 10 requests)."

    def test_status_failure(self):
        status = TableStatus(success=False, message="telescope_entries table not found")
        assert formatting.format_status(status) == "❌ Database issue: telescope_entries table not found"

    def test_status_success(self):
        status = TableStatus(success=True, message="ok", count=3,
                             latest_entry=datetime(2025, 6, 1, 11), connection_info="db:3306/app")
        text = formatting.format_status(status)
        assert "Found 3 telescope entries" in text
        assert "Connected to: db:3306/app" in text
        assert "Latest entry: 2025-06-01 11:00:00" in text

    def test_no_patterns(self):
        text = formatting.format_exception_patterns([], "7d", 168, GroupBy.FILE, 3, 0)
        assert text.startswith("📭 No recurring exception patterns found")
        assert "window 7d (168h), grouped by file" in text

    def test_slow_queries_empty(self):
        text = formatting.format_slow_queries([], 250, queries.slow_queries(250))
        assert "No slow queries found above 250ms" in text
