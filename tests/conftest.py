"""Shared fixtures for SpeedTracker tests.

No mock libraries. HTTP goes through httpx.MockTransport (httpx's own
transport replacement), persistence through InMemoryResultStore, and
measurement through small provider classes that implement the real protocol.
Tests requiring PostgreSQL use a skip marker when it is unavailable.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import httpx
import pytest
from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from speedtracker.core.config import DatabaseConfig, ExecutorConfig, GitHubConfig, SchedulerConfig
from speedtracker.core.exceptions import MeasurementFailed
from speedtracker.core.models import Measurement, Profile, Target
from speedtracker.db.repository import InMemoryResultStore
from speedtracker.gateway.github import GitHubGateway
from speedtracker.pipeline.executor import TestExecutor
from speedtracker.pipeline.profiles import ProfileCache
from speedtracker.pipeline.scheduler import Scheduler


# ---------------------------------------------------------------------------
# Service availability checks
# ---------------------------------------------------------------------------

def _get_db_config() -> DatabaseConfig:
    """Build a DatabaseConfig from environment or defaults."""
    db_url = os.getenv("DATABASE_URL")
    if db_url and db_url.startswith("postgresql://"):
        from urllib.parse import urlparse
        parsed = urlparse(db_url)
        return DatabaseConfig(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            dbname=(parsed.path[1:] if parsed.path and len(parsed.path) > 1 else "speedtracker"),
            user=parsed.username or "speedtracker",
            password=parsed.password or "speedtracker",
        )
    return DatabaseConfig()


def _postgres_available() -> bool:
    """Check if PostgreSQL is reachable."""
    try:
        import psycopg
        conn = psycopg.connect(_get_db_config().connection_string, connect_timeout=5)
        conn.close()
        return True
    except Exception:
        return False


requires_postgres = pytest.mark.skipif(
    not _postgres_available(),
    reason="PostgreSQL not available",
)


# ---------------------------------------------------------------------------
# Fake GitHub served through httpx.MockTransport
# ---------------------------------------------------------------------------

PROFILE_KEY = "abc123"
HEAD_SHA = "0123456789abcdef0123456789abcdef01234567"


def profile_document(url: str = "https://example.com", key: Optional[str] = PROFILE_KEY,
                     interval: Optional[float] = None) -> str:
    lines = ["---", "name: Default", "parameters:", f"  url: {url}", "  location: Dulles:Chrome", "  runs: 1"]
    if key is not None:
        lines.append(f"key: {key}")
    if interval is not None:
        lines.append(f"interval: {interval}")
    lines += ["---", "", "<p>profile page</p>"]
    return "\n".join(lines)


class FakeGitHub:
    """Minimal GitHub REST API: contents, commits, statuses, invitations."""

    def __init__(self):
        self.files: dict[tuple[str, str, str, str], str] = {}
        self.requests: list[httpx.Request] = []
        self.statuses: list[dict] = []
        self.invitations: list[dict] = []
        self.accepted: list[int] = []
        self.status_failures = 0

    def add_profile(self, target: Target, name: str = "default", content: Optional[str] = None) -> None:
        self.files[(target.user, target.repo, target.branch, f"profiles/{name}.html")] = (
            content if content is not None else profile_document()
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.strip("/").split("/")

        if parts[:2] == ["user", "repository_invitations"]:
            if request.method == "GET":
                return httpx.Response(200, json=self.invitations)
            self.accepted.append(int(parts[2]))
            return httpx.Response(204)

        if parts[0] == "repos" and len(parts) >= 4:
            user, repo, kind = parts[1], parts[2], parts[3]
            if kind == "contents":
                path = "/".join(parts[4:])
                ref = request.url.params.get("ref", "")
                content = self.files.get((user, repo, ref, path))
                if content is None:
                    return httpx.Response(404, json={"message": "Not Found"})
                return httpx.Response(200, text=content)
            if kind == "commits":
                return httpx.Response(200, json={"sha": HEAD_SHA})
            if kind == "statuses":
                if self.status_failures > 0:
                    self.status_failures -= 1
                    return httpx.Response(502, json={"message": "Bad Gateway"})
                self.statuses.append(json.loads(request.content))
                return httpx.Response(201, json={"id": len(self.statuses)})

        return httpx.Response(404, json={"message": "Not Found"})


def make_gateway(handler, **config_overrides) -> GitHubGateway:
    """Create a GitHubGateway whose HTTP client uses a MockTransport."""
    config = GitHubConfig(backoff_seconds=0.001, timeout_seconds=5, **config_overrides)
    gateway = GitHubGateway(config=config, token="test-token")
    gateway._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return gateway


# ---------------------------------------------------------------------------
# Measurement providers
# ---------------------------------------------------------------------------

class StaticProvider:
    """Returns fixed metrics and counts calls."""

    def __init__(self, metrics: Optional[dict[str, float]] = None, delay: float = 0.0):
        self.metrics = metrics if metrics is not None else {"loadTime": 1234.0, "SpeedIndex": 900.0}
        self.delay = delay
        self.calls: list[Profile] = []

    async def measure(self, profile: Profile) -> Measurement:
        self.calls.append(profile)
        if self.delay:
            await asyncio.sleep(self.delay)
        return Measurement(test_id=f"T{len(self.calls)}", metrics=dict(self.metrics))


class GatedProvider(StaticProvider):
    """Blocks each measurement until ``release`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def measure(self, profile: Profile) -> Measurement:
        self.calls.append(profile)
        self.started.set()
        await self.release.wait()
        return Measurement(test_id=f"T{len(self.calls)}", metrics=dict(self.metrics))


class HangingProvider(StaticProvider):
    """Never completes within any reasonable bound."""

    async def measure(self, profile: Profile) -> Measurement:
        self.calls.append(profile)
        await asyncio.sleep(3600)
        raise AssertionError("unreachable")


class FailingProvider(StaticProvider):
    async def measure(self, profile: Profile) -> Measurement:
        self.calls.append(profile)
        raise MeasurementFailed("Test request rejected: invalid location")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def target() -> Target:
    return Target(user="octocat", repo="speedtracker-site", branch="master")


@pytest.fixture
def github(target) -> FakeGitHub:
    fake = FakeGitHub()
    fake.add_profile(target)
    return fake


@pytest.fixture
def gateway(github) -> GitHubGateway:
    return make_gateway(github.handler)


@pytest.fixture
def store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture
def provider() -> StaticProvider:
    return StaticProvider()


def build_executor(store, gateway, provider, blocked=(), timeout: float = 5.0,
                   status_retries: int = 2) -> TestExecutor:
    return TestExecutor(
        store=store,
        gateway=gateway,
        profiles=ProfileCache(gateway, ttl_seconds=300),
        provider=provider,
        blocked_users=blocked,
        config=ExecutorConfig(status_retries=status_retries, status_backoff_seconds=0.001),
        measurement_timeout=timeout,
    )


def build_scheduler(executor: TestExecutor, store, clock=None, **config_overrides) -> Scheduler:
    config = SchedulerConfig(**{
        "base_interval_hours": 12,
        "backoff_base_seconds": 60,
        "backoff_max_seconds": 3600,
        "tick_interval_seconds": 0.01,
        **config_overrides,
    })
    if clock is None:
        return Scheduler(executor=executor, store=store, config=config)
    return Scheduler(executor=executor, store=store, config=config, clock=clock)


@pytest.fixture
def executor(store, gateway, provider) -> TestExecutor:
    return build_executor(store, gateway, provider)


@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"
