"""Read-only access to the Laravel Telescope ``telescope_entries`` table."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from . import queries
from .config import Settings
from .decoders import coerce_timestamp
from .errors import ConnectionFailure, QueryFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableStatus:
    success: bool
    message: str
    count: int = 0
    latest_entry: Optional[datetime] = None
    connection_info: Optional[str] = None


class TelescopeDatabase:
    """Lazily connected handle shared by every tool invocation.

    The engine is created on first use and pooled connections are reused for
    the lifetime of the process. ``clock`` supplies "now" for time windows.
    """

    def __init__(self, settings: Settings, engine: Optional[Engine] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.settings = settings
        self._engine = engine
        self._clock = clock

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            try:
                self._engine = create_engine(
                    self.settings.database_url, pool_pre_ping=True, pool_recycle=3600
                )
            except SQLAlchemyError as e:
                raise ConnectionFailure(f"Database connection failed: {e}") from e
            logger.info("Database engine created for %s", self.settings.connection_descriptor)
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def now(self) -> datetime:
        return self._clock()

    def since(self, hours: int) -> datetime:
        """Lower bound of a window reaching ``hours`` back from now."""
        return self.now() - timedelta(hours=hours)

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        try:
            conn = self.engine.connect()
        except SQLAlchemyError as e:
            raise ConnectionFailure(f"Database connection failed: {e}") from e
        with conn:
            yield conn

    def fetch(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Execute a SQL query and return results as list of dictionaries."""
        with self.connect() as conn:
            try:
                res = conn.execute(text(sql), params or {})
                cols = list(res.keys())
                return [dict(zip(cols, row)) for row in res]
            except SQLAlchemyError as e:
                raise QueryFailure(f"Query failed: {e}") from e

    def scalar(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Any:
        with self.connect() as conn:
            try:
                return conn.execute(text(sql), params or {}).scalar()
            except SQLAlchemyError as e:
                raise QueryFailure(f"Query failed: {e}") from e

    def run(self, query: queries.FilteredQuery) -> List[Dict[str, Any]]:
        sql, params = query.render(self.dialect)
        logger.debug("Executing %s with %s", sql, params)
        return self.fetch(sql, params)

    def one(self, query: queries.SummaryQuery) -> Dict[str, Any]:
        """First row of an ungrouped aggregate; empty when nothing came back."""
        rows = self.run(query)
        return rows[0] if rows else {}

    def table_exists(self) -> bool:
        with self.connect() as conn:
            try:
                return inspect(conn).has_table(queries.TABLE)
            except SQLAlchemyError as e:
                raise QueryFailure(f"Could not inspect schema: {e}") from e

    def status(self) -> TableStatus:
        """Connection and table accessibility summary."""
        if not self.table_exists():
            return TableStatus(success=False, message=f"{queries.TABLE} table not found")
        count = int(self.scalar(queries.count_entries()) or 0)
        latest = coerce_timestamp(self.scalar(queries.latest_entry_time()))
        return TableStatus(
            success=True,
            message="Table access successful",
            count=count,
            latest_entry=latest,
            connection_info=self.settings.connection_descriptor,
        )

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
