"""Test executor for SpeedTracker.

Turns one Job into exactly one Result:
  block check -> profile -> key check -> measurement -> store -> commit status

Blocked and invalid-key requests are rejected before anything is written.
Profile and measurement failures are recorded as failed results, never
dropped, because scheduling backoff depends on seeing them. Store failures
propagate. Commit-status updates run in the background and never affect
the job's outcome.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Iterable, Optional

from speedtracker.core.config import ExecutorConfig, MeasurementConfig
from speedtracker.core.exceptions import (
    Blocked,
    GatewayError,
    InvalidKey,
    MeasurementFailed,
    ProfileUnavailable,
    StoreUnavailable,
)
from speedtracker.core.models import (
    CommitState,
    Job,
    Profile,
    Result,
    ResultStatus,
    TriggerSource,
)
from speedtracker.db.repository import ResultStore
from speedtracker.gateway.github import GitHubGateway
from speedtracker.measurement.provider import MeasurementProvider
from speedtracker.pipeline.profiles import ProfileCache

logger = logging.getLogger("speedtracker.pipeline.executor")

TIMEOUT_DETAIL = "timeout"


def key_matches(profile: Profile, requested_key: Optional[str]) -> bool:
    """Constant-time comparison of a requested key against the profile's key.

    A profile without a stored key matches nothing.
    """
    if not requested_key or not profile.has_key:
        return False
    if profile.key:
        return hmac.compare_digest(profile.key.encode(), requested_key.encode())
    digest = hashlib.sha256(requested_key.encode()).hexdigest()
    return hmac.compare_digest(digest, profile.key_sha256 or "")


class TestExecutor:
    """Runs a single job end to end.

    Injected dependencies:
        store: Result persistence.
        gateway: Commit-status writes.
        profiles: Profile cache (fetches through the gateway).
        provider: Measurement provider.
        blocked_users: Users whose requests are refused outright.
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        store: ResultStore,
        gateway: GitHubGateway,
        profiles: ProfileCache,
        provider: MeasurementProvider,
        blocked_users: Iterable[str] = (),
        config: Optional[ExecutorConfig] = None,
        measurement_timeout: Optional[float] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.profiles = profiles
        self.provider = provider
        self.blocked_users = frozenset(blocked_users)
        self.config = config or ExecutorConfig()
        self.measurement_timeout = (
            measurement_timeout if measurement_timeout is not None
            else MeasurementConfig().timeout_seconds
        )
        self._status_tasks: set[asyncio.Task] = set()

    def is_blocked(self, user: str) -> bool:
        return user in self.blocked_users

    async def execute(self, job: Job) -> Result:
        """Execute one job and return the written result.

        Raises:
            Blocked: The job's user is on the block list.
            InvalidKey: The requested key does not match the profile.
            StoreUnavailable: The result could not be persisted.
        """
        target = job.target
        if self.is_blocked(target.user):
            logger.warning("Request blocked for user %s", target.user)
            raise Blocked(target.user)

        started = time.monotonic()
        logger.info("Running %s test for %s (%s)", job.triggered_by.value, target.slug, job.profile_name)

        try:
            profile = await self.profiles.resolve(
                target, job.profile_name, refresh=job.triggered_by == TriggerSource.MANUAL,
            )
        except ProfileUnavailable as e:
            logger.warning("Profile %s unavailable for %s: %s", job.profile_name, target.slug, e)
            return await self._record(job, self._failed(job, str(e)))

        if not key_matches(profile, job.requested_key):
            logger.warning("Invalid key for %s (%s)", target.slug, job.profile_name)
            raise InvalidKey(f"Invalid key for profile '{job.profile_name}' on {target.slug}")

        try:
            measurement = await asyncio.wait_for(
                self.provider.measure(profile), timeout=self.measurement_timeout,
            )
        except TimeoutError:
            logger.warning("Measurement for %s timed out after %.0fs", target.slug, self.measurement_timeout)
            return await self._record(job, self._failed(job, TIMEOUT_DETAIL))
        except MeasurementFailed as e:
            logger.warning("Measurement for %s failed: %s", target.slug, e)
            return await self._record(job, self._failed(job, f"measurement: {e}"))
        except Exception as e:
            logger.exception("Measurement provider raised unexpectedly for %s", target.slug)
            return await self._record(job, self._failed(job, f"measurement: {type(e).__name__}"))

        result = Result(
            target=target,
            profile_name=job.profile_name,
            status=ResultStatus.SUCCESS,
            metrics=dict(measurement.metrics),
            triggered_by=job.triggered_by,
            provider_test_id=measurement.test_id,
        )
        result = await self._record(job, result)
        logger.info(
            "Test for %s (%s) succeeded in %.1fs",
            target.slug, job.profile_name, time.monotonic() - started,
        )
        return result

    async def drain(self) -> None:
        """Wait for every pending commit-status update."""
        while self._status_tasks:
            await asyncio.gather(*list(self._status_tasks), return_exceptions=True)

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    def _failed(self, job: Job, detail: str) -> Result:
        return Result(
            target=job.target,
            profile_name=job.profile_name,
            status=ResultStatus.FAILED,
            error_detail=detail,
            triggered_by=job.triggered_by,
        )

    async def _record(self, job: Job, result: Result) -> Result:
        try:
            await self.store.append_result(result)
        except StoreUnavailable:
            logger.exception("Could not persist result for %s (%s)", job.target.slug, job.profile_name)
            raise
        self._report_status(result)
        return result

    def _report_status(self, result: Result) -> None:
        task = asyncio.create_task(self._set_status(result))
        self._status_tasks.add(task)
        task.add_done_callback(self._status_tasks.discard)

    async def _set_status(self, result: Result) -> None:
        if result.succeeded:
            state = CommitState.SUCCESS
            load = result.metrics.get("loadTime")
            description = f"Load time {load / 1000:.2f}s" if load is not None else "Speed test passed"
        else:
            state = CommitState.FAILURE
            description = f"Speed test failed: {result.error_detail or 'unknown error'}"
        context = f"{self.gateway.config.status_context}/{result.profile_name}"

        attempts = 1 + max(0, self.config.status_retries)
        for attempt in range(attempts):
            try:
                await self.gateway.set_commit_status(result.target, state, description, context=context)
                return
            except GatewayError as e:
                if attempt == attempts - 1:
                    logger.error(
                        "Giving up on commit status for %s after %d attempts: %s",
                        result.target.slug, attempts, e,
                    )
                    return
                logger.warning("Commit status for %s failed: %s", result.target.slug, e)
                await asyncio.sleep(self.config.status_backoff_seconds * (2 ** attempt))
            except Exception:
                logger.exception("Unexpected error setting commit status for %s", result.target.slug)
                return
