"""Scheduler for SpeedTracker.

Owns the due-for-run decision for every managed target and is the single
admission point for jobs, scheduled or manual. A job may start only after
claiming its (target, profile) slot in the FlightRegistry; the claim is
released when the job finishes, whatever the outcome.

Next-due rules after a job completes:
  success -> now + base interval (or the profile's own interval)
  failure -> now + backoff(consecutive failures), capped
  store unavailable -> unchanged, so the next tick retries
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable, Hashable, Optional

from speedtracker.core.config import SchedulerConfig
from speedtracker.core.exceptions import (
    AlreadyRunning,
    Blocked,
    InvalidKey,
    StoreUnavailable,
)
from speedtracker.core.models import Job, Result, ResultStatus, Target, TriggerSource
from speedtracker.db.repository import ResultStore
from speedtracker.pipeline.executor import TestExecutor

logger = logging.getLogger("speedtracker.pipeline.scheduler")


def _now() -> datetime:
    return datetime.now(UTC)


def backoff_interval(consecutive_failures: int, base_seconds: float, max_seconds: float) -> float:
    """Delay in seconds after ``consecutive_failures`` failures in a row.

    Doubles with every failure and never exceeds ``max_seconds``.
    """
    if consecutive_failures <= 0:
        return 0.0
    # Cap the exponent so huge failure counts cannot overflow a float.
    exponent = min(consecutive_failures - 1, 62)
    return min(base_seconds * (2 ** exponent), max_seconds)


class FlightRegistry:
    """Compare-and-set set of in-flight job keys.

    Guarded by a threading lock so claims stay exclusive even if jobs are
    dispatched from worker threads.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._claimed: set[Hashable] = set()

    def claim(self, key: Hashable) -> bool:
        with self._lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    def release(self, key: Hashable) -> None:
        with self._lock:
            self._claimed.discard(key)

    def is_claimed(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._claimed

    def __len__(self) -> int:
        with self._lock:
            return len(self._claimed)


@dataclass
class TargetState:
    """Scheduling state for one registered target."""
    target: Target
    profile_name: str
    key: Optional[str]
    next_due: datetime
    consecutive_failures: int = 0
    last_status: Optional[ResultStatus] = None
    last_run_at: Optional[datetime] = None


class Scheduler:
    """Decides which targets are due and runs them through the executor.

    Injected dependencies:
        executor: Runs one job to one result.
        store: Result history, read on restore().
        config: Intervals and backoff bounds.
        clock: Source of "now" (UTC-aware datetimes).
    """

    def __init__(
        self,
        executor: TestExecutor,
        store: ResultStore,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = _now,
    ):
        self.executor = executor
        self.store = store
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.flights = FlightRegistry()
        self._targets: dict[Target, TargetState] = {}
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------

    def register_target(
        self,
        target: Target,
        profile_name: Optional[str] = None,
        key: Optional[str] = None,
    ) -> TargetState:
        """Start managing a target. It is due immediately.

        Registering an already managed target is a no-op and returns the
        existing state.
        """
        existing = self._targets.get(target)
        if existing is not None:
            return existing
        state = TargetState(
            target=target,
            profile_name=profile_name or self.config.default_profile,
            key=key,
            next_due=self.clock(),
        )
        self._targets[target] = state
        logger.info("Registered %s (profile=%s)", target.slug, state.profile_name)
        return state

    def deregister_target(self, target: Target) -> bool:
        """Stop managing a target. An in-flight job is left to finish."""
        state = self._targets.pop(target, None)
        if state is None:
            return False
        self.executor.profiles.invalidate(target)
        logger.info("Deregistered %s", target.slug)
        return True

    def is_registered(self, target: Target) -> bool:
        return target in self._targets

    def get_state(self, target: Target) -> Optional[TargetState]:
        return self._targets.get(target)

    @property
    def targets(self) -> list[Target]:
        return list(self._targets)

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------

    def due_targets(self) -> list[TargetState]:
        now = self.clock()
        return [
            s for s in self._targets.values()
            if s.next_due <= now and not self.flights.is_claimed((s.target, s.profile_name))
        ]

    def tick(self) -> list[asyncio.Task]:
        """Start a scheduled job for every due, idle target.

        Must be called from a running event loop. Returns the started tasks.
        """
        started: list[asyncio.Task] = []
        for state in self.due_targets():
            flight_key = (state.target, state.profile_name)
            if not self.flights.claim(flight_key):
                continue
            job = Job(
                target=state.target,
                profile_name=state.profile_name,
                requested_key=state.key,
                triggered_by=TriggerSource.SCHEDULED,
            )
            task = asyncio.create_task(self._run_scheduled(job, state))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        if started:
            logger.debug("Tick dispatched %d job(s)", len(started))
        return started

    async def run_now(self, target: Target, profile_name: str, key: Optional[str]) -> Result:
        """Run a manual test immediately.

        Raises:
            AlreadyRunning: A job for (target, profile_name) is in flight.
            Blocked, InvalidKey, StoreUnavailable: Propagated from the executor.
        """
        flight_key = (target, profile_name)
        if not self.flights.claim(flight_key):
            logger.warning("Rejected manual run for %s (%s): already running", target.slug, profile_name)
            raise AlreadyRunning(target.slug, profile_name)

        job = Job(
            target=target,
            profile_name=profile_name,
            requested_key=key,
            triggered_by=TriggerSource.MANUAL,
        )
        state = self._targets.get(target)
        if state is not None and state.profile_name != profile_name:
            state = None
        try:
            return await self._execute(job, state)
        finally:
            self.flights.release(flight_key)

    async def _run_scheduled(self, job: Job, state: TargetState) -> Optional[Result]:
        try:
            return await self._execute(job, state)
        except StoreUnavailable:
            return None
        except (Blocked, InvalidKey) as e:
            logger.warning("Scheduled job for %s rejected: %s", job.target.slug, e)
            self._apply_outcome(state, succeeded=False)
            return None
        except Exception:
            logger.exception("Scheduled job for %s crashed", job.target.slug)
            self._apply_outcome(state, succeeded=False)
            return None
        finally:
            self.flights.release(job.flight_key)

    async def _execute(self, job: Job, state: Optional[TargetState]) -> Result:
        try:
            result = await self.executor.execute(job)
        except StoreUnavailable:
            logger.error(
                "Result for %s (%s) not stored; next run stays due",
                job.target.slug, job.profile_name,
            )
            raise
        self._apply_outcome(state, succeeded=result.succeeded, result=result)
        return result

    # -------------------------------------------------------------------
    # Rescheduling
    # -------------------------------------------------------------------

    def _apply_outcome(
        self,
        state: Optional[TargetState],
        succeeded: bool,
        result: Optional[Result] = None,
    ) -> None:
        # Results from deregistered (or replaced) registrations are ignored.
        if state is None or self._targets.get(state.target) is not state:
            return

        now = self.clock()
        state.last_run_at = now
        if result is not None:
            state.last_status = result.status
        if succeeded:
            state.consecutive_failures = 0
            delay = self.success_interval(state.target, state.profile_name)
        else:
            state.consecutive_failures += 1
            delay = self.failure_interval(state.consecutive_failures)
            logger.warning(
                "%s failed %d time(s) in a row; backing off %.0fs",
                state.target.slug, state.consecutive_failures, delay,
            )
        state.next_due = now + timedelta(seconds=delay)

    def success_interval(self, target: Target, profile_name: str) -> float:
        profile = self.executor.profiles.get_fresh(target, profile_name)
        hours = profile.interval_hours if profile and profile.interval_hours else self.config.base_interval_hours
        return hours * 3600

    def failure_interval(self, consecutive_failures: int) -> float:
        return backoff_interval(
            consecutive_failures,
            self.config.backoff_base_seconds,
            self.config.backoff_max_seconds,
        )

    async def restore(self) -> None:
        """Rebuild next-due times for registered targets from stored history."""
        for state in list(self._targets.values()):
            latest = await self.store.latest_result(state.target, state.profile_name)
            if latest is None:
                continue
            state.last_status = latest.status
            state.last_run_at = latest.timestamp
            if latest.succeeded:
                state.consecutive_failures = 0
                delay = self.config.base_interval_hours * 3600
            else:
                failures = await self.store.consecutive_failures(state.target, state.profile_name)
                state.consecutive_failures = max(1, failures)
                delay = self.failure_interval(state.consecutive_failures)
            state.next_due = latest.timestamp + timedelta(seconds=delay)
            logger.debug("Restored %s: next due %s", state.target.slug, state.next_due.isoformat())

    # -------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Tick every ``tick_interval_seconds`` until ``stop_event`` is set."""
        logger.info(
            "Scheduler started (%d target(s), tick every %.0fs)",
            len(self._targets), self.config.tick_interval_seconds,
        )
        while not stop_event.is_set():
            self.tick()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.tick_interval_seconds)
            except TimeoutError:
                pass
        await self.wait_idle()
        logger.info("Scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait for all scheduled jobs and their status updates to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.executor.drain()

    def snapshot(self) -> list[dict[str, object]]:
        return [
            {
                "target": s.target.slug,
                "profile": s.profile_name,
                "next_due": s.next_due.isoformat(),
                "consecutive_failures": s.consecutive_failures,
                "last_status": s.last_status.value if s.last_status else None,
                "in_flight": self.flights.is_claimed((s.target, s.profile_name)),
            }
            for s in self._targets.values()
        ]
