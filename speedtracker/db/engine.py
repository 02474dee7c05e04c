"""PostgreSQL database engine for SpeedTracker.

Manages an async connection via psycopg3 and handles schema initialization.
All queries flow through this engine; the result store builds on top.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

from speedtracker.core.config import DatabaseConfig
from speedtracker.core.exceptions import SchemaInitError, StoreUnavailable

logger = logging.getLogger("speedtracker.db")

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


class DatabaseEngine:
    """PostgreSQL engine wrapping psycopg3's AsyncConnection.

    Usage:
        engine = DatabaseEngine(config)
        await engine.connect()
        rows = await engine.fetch_all("SELECT * FROM results WHERE status = %s", ["failed"])
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._conn: Optional[psycopg.AsyncConnection] = None

    async def connect(self) -> psycopg.AsyncConnection:
        if self._conn is not None and not self._conn.closed:
            return self._conn
        try:
            self._conn = await psycopg.AsyncConnection.connect(
                self.config.connection_string,
                row_factory=dict_row,
                autocommit=True,
            )
            logger.info("Connected to PostgreSQL at %s:%s/%s",
                        self.config.host, self.config.port, self.config.dbname)
        except psycopg.OperationalError as e:
            raise StoreUnavailable(f"Failed to connect to database: {e}") from e
        return self._conn

    async def initialize_schema(self) -> None:
        """Run schema.sql to create the results table and indexes."""
        if not SCHEMA_PATH.exists():
            raise SchemaInitError(f"Schema file not found: {SCHEMA_PATH}")

        conn = await self.connect()
        try:
            await conn.execute(SCHEMA_PATH.read_text())
            logger.info("Database schema initialized successfully")
        except psycopg.Error as e:
            raise SchemaInitError(f"Failed to initialize schema: {e}") from e

    async def execute(self, query: str, params: Optional[Sequence[Any]] = None) -> None:
        """Execute a query without returning results."""
        conn = await self.connect()
        try:
            await conn.execute(query, params)
        except psycopg.Error as e:
            raise StoreUnavailable(f"Query failed: {e}") from e

    async def fetch_one(self, query: str, params: Optional[Sequence[Any]] = None) -> Optional[dict[str, Any]]:
        """Execute a query and return the first row as a dict, or None."""
        conn = await self.connect()
        try:
            cur = await conn.execute(query, params)
            return await cur.fetchone()
        except psycopg.Error as e:
            raise StoreUnavailable(f"Query failed: {e}") from e

    async def fetch_all(self, query: str, params: Optional[Sequence[Any]] = None) -> list[dict[str, Any]]:
        """Execute a query and return all rows as dicts."""
        conn = await self.connect()
        try:
            cur = await conn.execute(query, params)
            return await cur.fetchall()
        except psycopg.Error as e:
            raise StoreUnavailable(f"Query failed: {e}") from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn and not self._conn.closed:
            await self._conn.close()
            logger.info("Database connection closed")
        self._conn = None
