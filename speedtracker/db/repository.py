"""Result store for SpeedTracker.

All SQL queries live here. The scheduler and executor never write raw SQL;
they call ResultStore methods that take and return Pydantic models. Two
adapters share the contract: PostgreSQL for production and an in-memory
store for tests and throwaway runs.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

from psycopg.types.json import Jsonb

from speedtracker.core.exceptions import StoreUnavailable
from speedtracker.core.models import Result, ResultStatus, Target, TriggerSource
from speedtracker.db.engine import DatabaseEngine

_PageFetcher = Callable[[Optional[tuple[datetime, uuid.UUID]]], Awaitable[list[Result]]]


class ResultStore(Protocol):
    """Append-only history of results keyed by (target, profile)."""

    async def append_result(self, result: Result) -> Result: ...

    async def latest_result(self, target: Target, profile_name: str) -> Optional[Result]: ...

    def list_results(
        self,
        target: Target,
        profile_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ResultHistory: ...

    async def consecutive_failures(self, target: Target, profile_name: str) -> int: ...


class ResultHistory:
    """Lazy, restartable sequence of results ordered by timestamp ascending.

    Every ``async for`` starts a fresh keyset-paginated read, so the same
    history object can be iterated more than once.
    """

    def __init__(self, fetch_page: _PageFetcher):
        self._fetch_page = fetch_page

    def __aiter__(self) -> AsyncIterator[Result]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Result]:
        cursor: Optional[tuple[datetime, uuid.UUID]] = None
        while True:
            page = await self._fetch_page(cursor)
            if not page:
                return
            for result in page:
                yield result
            last = page[-1]
            cursor = (last.timestamp, last.id)

    async def to_list(self) -> list[Result]:
        return [r async for r in self]


def _aware(ts: datetime) -> datetime:
    # Naive datetimes are treated as UTC
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

class PostgresResultStore:
    """Result store backed by the ``results`` table."""

    def __init__(self, engine: DatabaseEngine, page_size: int = 500):
        self.engine = engine
        self.page_size = max(1, page_size)

    async def append_result(self, result: Result) -> Result:
        await self.engine.execute(
            """INSERT INTO results (id, user_name, repo, branch, profile, timestamp, status,
                                    metrics, error_detail, triggered_by, provider_test_id)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            [
                str(result.id),
                result.target.user,
                result.target.repo,
                result.target.branch,
                result.profile_name,
                result.timestamp,
                result.status.value,
                Jsonb(result.metrics),
                result.error_detail,
                result.triggered_by.value,
                result.provider_test_id,
            ],
        )
        return result

    async def latest_result(self, target: Target, profile_name: str) -> Optional[Result]:
        row = await self.engine.fetch_one(
            """SELECT * FROM results
               WHERE user_name = %s AND repo = %s AND branch = %s AND profile = %s
               ORDER BY timestamp DESC, id DESC
               LIMIT 1""",
            [target.user, target.repo, target.branch, profile_name],
        )
        if row is None:
            return None
        return _row_to_result(row)

    def list_results(
        self,
        target: Target,
        profile_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ResultHistory:
        async def fetch_page(cursor: Optional[tuple[datetime, uuid.UUID]]) -> list[Result]:
            clauses = ["user_name = %s", "repo = %s", "branch = %s", "profile = %s"]
            params: list[Any] = [target.user, target.repo, target.branch, profile_name]
            if start is not None:
                clauses.append("timestamp >= %s")
                params.append(start)
            if end is not None:
                clauses.append("timestamp < %s")
                params.append(end)
            if cursor is not None:
                clauses.append("(timestamp, id) > (%s, %s)")
                params.extend([cursor[0], str(cursor[1])])
            params.append(self.page_size)
            rows = await self.engine.fetch_all(
                f"SELECT * FROM results WHERE {' AND '.join(clauses)} "
                "ORDER BY timestamp ASC, id ASC LIMIT %s",
                params,
            )
            return [_row_to_result(r) for r in rows]

        return ResultHistory(fetch_page)

    async def consecutive_failures(self, target: Target, profile_name: str) -> int:
        """Count failed results newer than the most recent success."""
        key = [target.user, target.repo, target.branch, profile_name]
        row = await self.engine.fetch_one(
            """SELECT count(*) AS failures FROM results
               WHERE user_name = %s AND repo = %s AND branch = %s AND profile = %s
                 AND status = 'failed'
                 AND timestamp > COALESCE(
                     (SELECT max(timestamp) FROM results
                      WHERE user_name = %s AND repo = %s AND branch = %s AND profile = %s
                        AND status = 'success'),
                     '-infinity'::timestamptz)""",
            key + key,
        )
        return int(row["failures"]) if row else 0


def _row_to_result(row: dict[str, Any]) -> Result:
    return Result(
        id=row["id"] if isinstance(row["id"], uuid.UUID) else uuid.UUID(str(row["id"])),
        target=Target(user=row["user_name"], repo=row["repo"], branch=row["branch"]),
        profile_name=row["profile"],
        timestamp=_aware(row["timestamp"]),
        status=ResultStatus(row["status"]),
        metrics=row.get("metrics") or {},
        error_detail=row.get("error_detail"),
        triggered_by=TriggerSource(row.get("triggered_by") or "scheduled"),
        provider_test_id=row.get("provider_test_id"),
    )


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryResultStore:
    """Process-local result store with the same contract as the PostgreSQL one.

    ``available`` can be flipped off to simulate a medium that refuses writes.
    """

    def __init__(self, page_size: int = 500):
        self.page_size = max(1, page_size)
        self.available = True
        self._lock = asyncio.Lock()
        self._history: dict[tuple[Target, str], list[Result]] = {}

    async def append_result(self, result: Result) -> Result:
        if not self.available:
            raise StoreUnavailable("In-memory store is not accepting writes")
        async with self._lock:
            self._history.setdefault((result.target, result.profile_name), []).append(result)
        return result

    async def latest_result(self, target: Target, profile_name: str) -> Optional[Result]:
        entries = self._history.get((target, profile_name), [])
        if not entries:
            return None
        return max(entries, key=lambda r: (_aware(r.timestamp), str(r.id)))

    def list_results(
        self,
        target: Target,
        profile_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ResultHistory:
        async def fetch_page(cursor: Optional[tuple[datetime, uuid.UUID]]) -> list[Result]:
            entries = sorted(
                self._history.get((target, profile_name), []),
                key=lambda r: (_aware(r.timestamp), str(r.id)),
            )
            selected = []
            for r in entries:
                ts = _aware(r.timestamp)
                if start is not None and ts < _aware(start):
                    continue
                if end is not None and ts >= _aware(end):
                    continue
                if cursor is not None and (ts, str(r.id)) <= (_aware(cursor[0]), str(cursor[1])):
                    continue
                selected.append(r)
                if len(selected) >= self.page_size:
                    break
            return selected

        return ResultHistory(fetch_page)

    async def consecutive_failures(self, target: Target, profile_name: str) -> int:
        entries = sorted(
            self._history.get((target, profile_name), []),
            key=lambda r: (_aware(r.timestamp), str(r.id)),
        )
        count = 0
        for r in reversed(entries):
            if r.status == ResultStatus.SUCCESS:
                break
            if r.status == ResultStatus.FAILED:
                count += 1
        return count

    def count(self, target: Target, profile_name: str) -> int:
        return len(self._history.get((target, profile_name), []))
