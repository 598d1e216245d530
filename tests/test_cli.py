"""Tests for telescope_mcp/cli.py"""

import logging

import pytest

from telescope_mcp import __version__, cli
from telescope_mcp.config import Settings

ENV_VARS = ("DB_HOST", "DB_PORT", "DB_DATABASE", "DB_USERNAME", "DB_PASSWORD", "DB_URL",
            "MCP_SERVER_NAME", "TELESCOPE_LOG_LEVEL", "TELESCOPE_LOG_FILE")


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


class TestMain:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            cli.main(["--version"])
        assert exc.value.code == 0
        assert f"telescope-mcp version {__version__}" in capsys.readouterr().out

    def test_deeplink(self, clean_env, capsys):
        assert cli.main(["deeplink", "--db-database", "shop", "--db-password", "secret"]) == 0
        out = capsys.readouterr().out
        assert "Database Name: shop" in out
        assert "Database Pass: ***" in out
        assert "cursor://settings/mcp?config=" in out

    def test_deeplink_reads_environment(self, clean_env, monkeypatch, capsys):
        monkeypatch.setenv("DB_HOST", "db.internal")
        cli.main(["deeplink"])
        assert "Database Host: db.internal" in capsys.readouterr().out

    def test_configuration_error(self, clean_env, monkeypatch, capsys):
        monkeypatch.setenv("DB_PORT", "not-a-port")
        assert cli.main(["deeplink"]) == 2
        assert "Configuration error" in capsys.readouterr().err


class TestLogging:
    def test_log_file(self, tmp_path):
        log_file = tmp_path / "telescope.log"
        root = logging.getLogger()
        previous = root.handlers[:], root.level
        try:
            cli.configure_logging(Settings(log_level="DEBUG", log_file=str(log_file)))
            logging.getLogger("telescope_mcp.test").debug("engine ready")
            for handler in root.handlers:
                handler.flush()
            assert "DEBUG telescope_mcp.test: engine ready" in log_file.read_text(encoding="utf-8")
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = previous[0]
            root.setLevel(previous[1])
