"""Environment-driven settings for the Telescope MCP server."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from .errors import InvalidArgument

################################################################################
# Defaults                                                                     #
################################################################################

# Local development convenience only
DEFAULT_DB_HOST = "127.0.0.1"
DEFAULT_DB_PORT = 3306
DEFAULT_DB_NAME = "laravel"
DEFAULT_DB_USER = "root"
DEFAULT_DB_PASS = ""

DEFAULT_SERVER_NAME = "Laravel Telescope MCP Server"
DEFAULT_LOG_LEVEL = "INFO"


@dataclass(frozen=True)
class Settings:
    db_host: str = DEFAULT_DB_HOST
    db_port: int = DEFAULT_DB_PORT
    db_name: str = DEFAULT_DB_NAME
    db_user: str = DEFAULT_DB_USER
    db_password: str = DEFAULT_DB_PASS
    db_url: Optional[str] = None
    server_name: str = DEFAULT_SERVER_NAME
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[str] = None

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL for the Telescope database."""
        if self.db_url:
            return self.db_url
        url = URL.create(
            "mysql+pymysql",
            username=self.db_user,
            password=self.db_password or None,
            host=self.db_host,
            port=self.db_port,
            database=self.db_name,
            query={"charset": "utf8mb4"},
        )
        return url.render_as_string(hide_password=False)

    @property
    def connection_descriptor(self) -> str:
        """Human readable target without credentials."""
        if self.db_url:
            try:
                url = make_url(self.db_url)
            except ArgumentError:
                return self.db_url.rsplit("@", 1)[-1]
            if not url.host:
                return self.db_url if url.password is None else url.render_as_string(hide_password=True)
            target = f"{url.host}:{url.port}" if url.port else url.host
            return f"{target}/{url.database}" if url.database else target
        return f"{self.db_host}:{self.db_port}/{self.db_name}"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment.

    When no mapping is given the process environment is used, after loading a
    ``.env`` file from the working directory (existing variables win).
    """
    if environ is None:
        load_dotenv(override=False)
        environ = os.environ

    raw_port = environ.get("DB_PORT", str(DEFAULT_DB_PORT))
    try:
        port = int(raw_port)
    except ValueError:
        raise InvalidArgument(f"DB_PORT must be an integer, got {raw_port!r}") from None

    return Settings(
        db_host=environ.get("DB_HOST", DEFAULT_DB_HOST),
        db_port=port,
        db_name=environ.get("DB_DATABASE", DEFAULT_DB_NAME),
        db_user=environ.get("DB_USERNAME", DEFAULT_DB_USER),
        db_password=environ.get("DB_PASSWORD", DEFAULT_DB_PASS),
        db_url=environ.get("DB_URL") or None,
        server_name=environ.get("MCP_SERVER_NAME", DEFAULT_SERVER_NAME),
        log_level=environ.get("TELESCOPE_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        log_file=environ.get("TELESCOPE_LOG_FILE") or None,
    )
