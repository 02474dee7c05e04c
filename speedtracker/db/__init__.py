"""Result persistence for SpeedTracker."""

from speedtracker.db.repository import (
    InMemoryResultStore,
    PostgresResultStore,
    ResultHistory,
    ResultStore,
)

__all__ = ["InMemoryResultStore", "PostgresResultStore", "ResultHistory", "ResultStore"]
