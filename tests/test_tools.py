"""End-to-end tests for the tool handlers against a SQLite copy of the table."""

from datetime import timedelta
from unittest import mock

import pytest

from telescope_mcp import tools
from telescope_mcp.config import Settings
from telescope_mcp.database import TelescopeDatabase

from .conftest import NOW


def _at(**delta):
    return NOW - timedelta(**delta)


class TestConnectivity:
    def test_hello_world(self):
        assert tools.hello_world("Ada") == "Hello, Ada! Laravel Telescope MCP Server is running."
        assert tools.hello_world() == "Hello, World! Laravel Telescope MCP Server is running."

    def test_status(self, db, db_url, entries):
        entries.add("request", {"method": "GET"}, created_at=_at(hours=3))
        entries.add("query", {"sql": "select 1"}, created_at=_at(hours=1))
        text = tools.telescope_status(db)
        assert text.startswith("✅ Database connection successful!")
        assert "Found 2 telescope entries" in text
        assert "Latest entry: 2025-06-01 11:00:00" in text
        assert f"Connected to: {db_url}" in text

    def test_missing_table(self, tmp_path):
        db = TelescopeDatabase(Settings(db_url=f"sqlite:///{tmp_path / 'empty.db'}"))
        try:
            assert tools.telescope_status(db) == "❌ Database issue: telescope_entries table not found"
        finally:
            db.dispose()

    def test_unreachable_database(self, tmp_path):
        db = TelescopeDatabase(Settings(db_url=f"sqlite:///{tmp_path / 'missing' / 'telescope.db'}"))
        text = tools.telescope_recent_requests(db)
        assert text.startswith("❌ Failed to fetch requests:")

    def test_recent_entries(self, db, entries):
        entries.add("request", {"method": "GET", "uri": "/a"}, created_at=_at(hours=3))
        entries.add("log", "{not json", created_at=_at(hours=2))
        entries.add("request", {"method": "POST", "uri": "/b"}, created_at=_at(hours=1))
        text = tools.get_recent_entries(db, limit=2)
        assert "showing 2 of 2" in text
        assert "URI: /b" in text
        assert "Content: (not valid JSON)" in text
        assert "URI: /a" not in text


class TestArgumentValidation:
    @pytest.mark.parametrize("call", [
        lambda db: tools.telescope_recent_requests(db, limit=0),
        lambda db: tools.get_recent_entries(db, limit=-3),
        lambda db: tools.telescope_slow_queries(db, limit=0),
        lambda db: tools.telescope_exceptions(db, limit=0),
        lambda db: tools.telescope_user_activity(db, limit=0),
        lambda db: tools.telescope_jobs(db, limit=0),
        lambda db: tools.telescope_cache_stats(db, limit=-1),
        lambda db: tools.telescope_exceptions(db, group_by="content"),
    ])
    def test_rejected_before_querying(self, call):
        db = mock.MagicMock(spec=TelescopeDatabase)
        text = call(db)
        assert text.startswith("❌ Invalid argument:")
        db.run.assert_not_called()

    def test_negative_hours(self, db):
        assert tools.telescope_jobs(db, hours=-1).startswith("❌ Invalid argument:")

    def test_patterns_need_positive_minimum(self, db):
        assert tools.telescope_exception_patterns(db, min_occurrences=0).startswith("❌ Invalid argument:")


class TestRequests:
    def test_recent_requests_skip_malformed_rows(self, db, entries):
        entries.add("request", {"method": "GET", "uri": "/a", "response_status": 200, "duration": 12},
                    created_at=_at(hours=1))
        entries.add("request", "{not json", created_at=_at(minutes=45))
        entries.add("request", {"method": "POST", "uri": "/b", "status": 500}, created_at=_at(minutes=30))
        entries.add("query", {"sql": "select 1"}, created_at=_at(minutes=10))
        text = tools.telescope_recent_requests(db, limit=10)
        assert "showing 2 of 10" in text
        assert text.index("❌ POST /b") < text.index("✅ GET /a")
        assert "Duration: 12ms" in text

    def test_empty_table(self, db):
        assert "no requests found" in tools.telescope_recent_requests(db).lower()

    def test_slow_queries(self, db, entries):
        entries.add("query", {"sql": "select fast", "time": 50}, created_at=_at(hours=3))
        entries.add("query", {"sql": "select medium", "time": "250.00"}, created_at=_at(hours=2))
        entries.add("query", {"sql": "select legacy", "duration": 900}, created_at=_at(hours=1))
        text = tools.telescope_slow_queries(db, threshold_ms=100)
        assert "showing 2 of 10" in text
        assert text.index("select legacy") < text.index("select medium")
        assert "select fast" not in text


@pytest.fixture
def dashboard(entries):
    entries.add("request", {"method": "GET", "uri": "/a", "response_status": 200, "duration": 100},
                created_at=NOW.replace(hour=9, minute=10))
    entries.add("request", {"method": "GET", "uri": "/b", "response_status": 200, "duration": 300},
                created_at=NOW.replace(hour=9, minute=20))
    entries.add("request", {"method": "POST", "uri": "/c", "response_status": 500, "duration": 2000},
                created_at=NOW.replace(hour=9, minute=30))
    entries.add("request", {"method": "GET", "uri": "/d", "response_status": 404, "duration": 50},
                created_at=_at(hours=22))
    entries.add("request", "{broken", created_at=_at(hours=1))
    entries.add("request", {"method": "GET", "uri": "/old", "response_status": 500, "duration": 9000},
                created_at=_at(days=3))
    entries.add("query", {"sql": "select * from orders", "time": 150}, created_at=_at(hours=2))
    entries.add("query", {"sql": "select 1", "time": 50}, created_at=_at(hours=2))
    entries.add("job", {"name": "App\\Jobs\\SendWelcome", "status": "processed", "time": 1500},
                created_at=_at(hours=4))
    entries.add("job", {"name": "App\\Jobs\\SendInvoice", "status": "failed"}, created_at=_at(hours=4))
    entries.add("cache", {"type": "hit", "key": "users:1"}, created_at=_at(hours=5))
    entries.add("cache", {"type": "hit", "key": "users:1"}, created_at=_at(hours=5))
    entries.add("cache", {"type": "miss", "key": "users:2"}, created_at=_at(hours=5))
    entries.add("cache", {"type": "put", "key": "users:3"}, created_at=_at(hours=5))
    entries.add("exception", {"class": "App\\Exceptions\\PaymentFailed", "level": "critical"},
                created_at=_at(hours=6))


class TestPerformanceSummary:
    def test_sections(self, db, dashboard):
        text = tools.telescope_performance_summary(db, hours=24)
        assert "Total: 4" in text
        assert "Success rate: 50.0% (2 successful)" in text
        assert "Error rate: 50.0% (threshold 5.0%)" in text
        assert "Average duration: 612.5ms" in text
        assert "Peak hour: 09:00-10:00 (3 requests)" in text
        assert "Total queries: 2" in text
        assert "Slow queries: 1" in text
        assert "Failed: SendInvoice" in text
        assert "Hit rate: 50.0% (2 hits)" in text
        assert "Miss rate: 25.0% (1 misses)" in text
        assert "Critical: PaymentFailed" in text
        assert "Request error rate 50.0% exceeds 5.0%" in text
        assert "📋 Details" not in text

    def test_deterministic(self, db, dashboard):
        first = tools.telescope_performance_summary(db, include_details=True)
        assert first == tools.telescope_performance_summary(db, include_details=True)
        assert "📋 Details" in first

    def test_empty_window(self, db):
        text = tools.telescope_performance_summary(db, hours=1)
        assert "No requests recorded" in text
        assert "No performance issues detected" in text


@pytest.fixture
def exceptions(entries):
    entries.add("exception", {"class": "RuntimeException", "message": "a", "level": "error"},
                created_at=NOW.replace(hour=10))
    entries.add("exception", {"class": "RuntimeException", "message": "b", "level": "error"},
                created_at=NOW.replace(hour=11))
    entries.add("exception", {"class": "LogicException", "message": "c", "level": "warning"},
                created_at=NOW.replace(hour=9))
    entries.add("exception", {"class": "RuntimeException", "message": "old", "level": "error"},
                created_at=_at(days=7))


class TestExceptions:
    def test_list(self, db, exceptions):
        text = tools.telescope_exceptions(db)
        assert "showing 4 of 10" in text

    def test_level_filter(self, db, exceptions):
        text = tools.telescope_exceptions(db, level="WARNING")
        assert "LogicException" in text
        assert "RuntimeException" not in text

    def test_grouped_by_class(self, db, exceptions):
        text = tools.telescope_exceptions(db, since="24h", group_by="type")
        assert "grouped by class" in text
        runtime = text[text.index("RuntimeException"):]
        assert "Occurrences: 2" in runtime
        assert "Latest: 2025-06-01 11:00:00" in runtime
        assert text.index("RuntimeException") < text.index("LogicException")

    def test_unknown_window_means_a_day(self, db, exceptions):
        text = tools.telescope_exceptions(db, since="bogus")
        assert "showing 3 of 10" in text

    def test_detail(self, db, entries):
        entries.add("request", {
            "method": "GET", "uri": "/checkout", "response_status": 500,
            "controller_action": "App\\Http\\Controllers\\CheckoutController@store",
        }, batch_id="batch-x")
        entries.add("query", {"sql": "select * from carts", "time": 3}, batch_id="batch-x")
        entries.add("query", {"sql": "select * from prices", "time": 4}, batch_id="batch-x")
        entries.add("exception", {
            "class": "App\\Exceptions\\PaymentFailed",
            "message": "Card declined",
            "file": "/var/www/html/app/Services/Payment.php",
            "line": 42,
            "level": "error",
            "trace": [{"file": "/var/www/html/app/Services/Payment.php", "line": 42}],
            "context": {"order": 17},
        }, uuid="deadbeef-0000-0000-0000-000000000001", batch_id="batch-x")

        text = tools.telescope_exception_detail(db, "deadbeef...")
        assert text.startswith("🚨 App\\Exceptions\\PaymentFailed")
        assert "Location: app/Services/Payment.php:42" in text
        assert "#0 app/Services/Payment.php:42" in text
        assert "GET /checkout" in text
        assert "Controller: App\\Http\\Controllers\\CheckoutController@store" in text
        assert "Exception context: order=17" in text
        assert "   query: 2" in text
        assert "   request: 1" in text
        assert "select * from carts" in text

    def test_detail_without_extras(self, db, entries):
        entries.add("exception", {"class": "RuntimeException"}, uuid="cafe0000-0000")
        text = tools.telescope_exception_detail(db, "cafe0000-0000", include_context=False,
                                                include_related=False)
        assert "Request context" not in text
        assert "Related entries" not in text

    def test_detail_not_found(self, db):
        assert tools.telescope_exception_detail(db, "ffffffff").startswith("❌ Not found:")

    def test_detail_ambiguous_prefix(self, db, entries):
        entries.add("exception", {"class": "A"}, uuid="abc10000-0000")
        entries.add("exception", {"class": "B"}, uuid="abc20000-0000")
        assert tools.telescope_exception_detail(db, "abc").startswith("❌ Invalid argument:")

    def test_patterns(self, db, entries):
        for hour in (1, 3, 5, 7):
            entries.add("exception", {"class": "App\\Exceptions\\QuotaExceeded", "level": "error"},
                        created_at=NOW.replace(hour=hour))
        entries.add("exception", {"class": "LogicException", "level": "error"}, created_at=NOW.replace(hour=2))
        text = tools.telescope_exception_patterns(db, time_window="24h")
        assert "Exceptions analysed: 5 | Patterns: 1" in text
        assert "🟡 MEDIUM 📈 App\\Exceptions\\QuotaExceeded" in text
        assert "LogicException" not in text

    def test_no_patterns(self, db, exceptions):
        text = tools.telescope_exception_patterns(db, min_occurrences=10)
        assert "No recurring exception patterns found" in text


class TestJobsAndCache:
    @pytest.fixture
    def jobs(self, entries):
        entries.add("job", {"name": "App\\Jobs\\SendWelcome", "status": "processed", "queue": "emails"},
                    created_at=NOW.replace(hour=10))
        entries.add("job", {"name": "App\\Jobs\\SendInvoice", "status": "failed",
                            "exception": {"message": "SMTP down"}}, created_at=NOW.replace(hour=11))
        entries.add("job", {"name": "App\\Jobs\\PurgeLogs", "status": "failed"}, created_at=_at(days=3))

    def test_status_filter(self, db, jobs):
        text = tools.telescope_jobs(db, status="failed")
        assert "showing 1 of 10" in text
        assert "❌ SendInvoice [failed]" in text
        assert "Exception: SMTP down" in text
        assert "SendWelcome" not in text
        assert "PurgeLogs" not in text

    def test_queue_filter(self, db, jobs):
        text = tools.telescope_jobs(db, queue="emails")
        assert "✅ SendWelcome [processed]" in text
        assert "SendInvoice" not in text

    def test_no_jobs(self, db):
        assert "No jobs found" in tools.telescope_jobs(db)

    @pytest.fixture
    def cache(self, entries):
        entries.add("cache", {"type": "hit", "key": "users:1"}, created_at=_at(hours=1))
        entries.add("cache", {"type": "hit", "key": "users:1"}, created_at=_at(hours=1))
        entries.add("cache", {"type": "miss", "key": "users:2"}, created_at=_at(hours=1))
        entries.add("cache", {"type": "put", "key": "users:3", "expiration": 60}, created_at=_at(hours=1))

    def test_cache_summary(self, db, cache):
        text = tools.telescope_cache_stats(db)
        assert "Hits: 2 (50.0%) | Misses: 1 (25.0%)" in text
        assert "Writes: 1 | Deletes: 0" in text
        assert "showing 4 of 50" in text
        assert "Expires in: 60s" in text

    def test_cache_operation_filter(self, db, cache):
        text = tools.telescope_cache_stats(db, operation="miss", show_summary=False)
        assert "Cache Summary" not in text
        assert "showing 1 of 50" in text
        assert "💨 MISS users:2" in text


class TestUserActivity:
    @pytest.fixture
    def activity(self, entries):
        entries.add("request", {"method": "GET", "uri": "/dashboard", "response_status": 200,
                                "duration": 100, "user_id": 7, "ip_address": "10.0.0.1"},
                    created_at=NOW.replace(hour=10, minute=0))
        entries.add("request", {"method": "GET", "uri": "/admin/users", "response_status": 200,
                                "duration": 100, "user_id": 7, "ip_address": "10.0.0.1"},
                    created_at=NOW.replace(hour=10, minute=5))
        entries.add("request", {"method": "GET", "uri": "/profile", "response_status": 403,
                                "duration": 100, "user_id": 7, "ip_address": "10.0.0.2"},
                    created_at=NOW.replace(hour=10, minute=10))
        entries.add("request", {"method": "GET", "uri": "/home", "response_status": 200,
                                "user": {"id": 8}}, created_at=NOW.replace(hour=10, minute=20))
        entries.add("request", {"method": "GET", "uri": "/login", "response_status": 200},
                    created_at=NOW.replace(hour=10, minute=30))

    def test_single_user(self, db, activity):
        text = tools.telescope_user_activity(db, user_id=7)
        assert "👤 User 7 Activity" in text
        assert "Requests: 3" in text
        assert "Unique users: 1 | Unique IPs: 2" in text
        assert "Session duration: 10m" in text
        assert "Suspicious requests: 2" in text

    def test_suspicious_only(self, db, activity):
        text = tools.telescope_user_activity(db, user_id=7, suspicious_only=True)
        assert "Suspicious Activity (showing 2 of 20)" in text
        assert "🚩 ✅ GET /admin/users" in text
        assert "Suspicious: sensitive endpoint (/admin)" in text
        assert "Suspicious: client error (HTTP 403)" in text
        assert "✅ GET /dashboard" not in text

    def test_authenticated_users(self, db, activity):
        text = tools.telescope_user_activity(db)
        assert "Requests: 4" in text
        assert "Unique users: 2" in text

    def test_including_anonymous(self, db, activity):
        assert "Requests: 5" in tools.telescope_user_activity(db, include_anonymous=True)

    def test_limit(self, db, activity):
        assert "Recent Activity (showing 2 of 2)" in tools.telescope_user_activity(db, limit=2)

    def test_no_activity(self, db):
        assert "No user activity found" in tools.telescope_user_activity(db, user_id=99)


class TestMalformedContent:
    @pytest.fixture
    def mixed(self, entries):
        for kind in ("request", "query", "job", "cache", "exception"):
            entries.add(kind, "{not json", created_at=_at(minutes=5))
            entries.add(kind, "[1, 2]", created_at=_at(minutes=5))
        entries.add("query", {"sql": "select slow", "time": 500}, created_at=_at(hours=1))
        entries.add("request", {"method": "GET", "uri": "/admin/users", "response_status": 200,
                                "duration": 10, "user_id": 1}, created_at=_at(hours=1))
        entries.add("job", {"name": "App\\Jobs\\SendInvoice", "status": "failed"}, created_at=_at(hours=1))
        entries.add("cache", {"type": "missed", "key": "users:1"}, created_at=_at(hours=1))
        entries.add("exception", {"class": "RuntimeException", "level": "Error"}, created_at=_at(hours=1))
        entries.add("exception", {"class": "RuntimeException", "level": "error"}, created_at=_at(hours=2))

    def test_slow_queries(self, db, mixed):
        text = tools.telescope_slow_queries(db)
        assert "showing 1 of 10" in text
        assert "select slow" in text

    def test_user_activity(self, db, mixed):
        text = tools.telescope_user_activity(db)
        assert "Requests: 1" in text
        assert "Suspicious requests: 1" in text
        assert "Suspicious Activity (showing 1 of 20)" in tools.telescope_user_activity(db, suspicious_only=True)

    def test_jobs(self, db, mixed):
        assert "❌ SendInvoice [failed]" in tools.telescope_jobs(db, status="failed")

    def test_cache(self, db, mixed):
        text = tools.telescope_cache_stats(db, operation="miss")
        assert "Misses: 1 (100.0%)" in text
        assert "💨 MISSED users:1" in text

    def test_exceptions(self, db, mixed):
        assert "showing 2 of 10" in tools.telescope_exceptions(db, level="error")
        assert "Occurrences: 2" in tools.telescope_exceptions(db, group_by="class")
        assert "Exceptions analysed: 2 | Patterns: 1" in tools.telescope_exception_patterns(db)

    def test_dashboard(self, db, mixed):
        text = tools.telescope_performance_summary(db, include_details=True)
        assert not text.startswith("❌")
        assert "Total: 1" in text
        assert "Total queries: 1" in text
        assert "Total exceptions: 2" in text


class TestTagSpellings:
    def test_cache_operation_synonyms(self, db, entries):
        for operation, key in (("put", "a"), ("set", "b"), ("write", "c"), ("forget", "d"), ("Delete", "e")):
            entries.add("cache", {"type": operation, "key": key})
        assert "showing 3 of 50" in tools.telescope_cache_stats(db, operation="write", show_summary=False)
        text = tools.telescope_cache_stats(db, operation="delete", show_summary=False)
        assert "showing 2 of 50" in text
        assert "🗑️ FORGET d" in text

    def test_job_status_case(self, db, entries):
        entries.add("job", {"name": "App\\Jobs\\SendInvoice", "status": "FAILED"})
        entries.add("job", {"name": "App\\Jobs\\SendWelcome", "status": "completed"})
        assert "❌ SendInvoice [FAILED]" in tools.telescope_jobs(db, status="Failed")
        assert "✅ SendWelcome [completed]" in tools.telescope_jobs(db, status="processed")

    def test_exception_level_case(self, db, entries):
        entries.add("exception", {"class": "RuntimeException", "level": "ERROR"})
        entries.add("exception", {"class": "PanicException", "level": "emergency"})
        assert "RuntimeException" in tools.telescope_exceptions(db, level="error")
        assert "PanicException" in tools.telescope_exceptions(db, level="critical")


class TestDashboardReads:
    def test_row_reads_are_capped(self, db, dashboard):
        with mock.patch.object(db, "fetch", wraps=db.fetch) as fetch:
            tools.telescope_performance_summary(db, include_details=True)
        statements = [call.args[0] for call in fetch.call_args_list]
        listings = [sql for sql in statements if sql.startswith("SELECT sequence, uuid")]
        assert listings
        assert all(sql.endswith("LIMIT :limit") for sql in listings)
        assert any("COUNT(*) AS total" in sql for sql in statements)


class TestHandlers:
    HANDLERS = sorted(name for name in dir(tools) if name.startswith("telescope_"))

    @pytest.mark.parametrize("name", HANDLERS + ["hello_world", "get_recent_entries"])
    def test_documented(self, name):
        assert getattr(tools, name).__doc__.strip()
