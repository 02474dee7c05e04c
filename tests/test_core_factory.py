"""Tests for speedtracker/core/factory.py: wiring and startup."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from speedtracker.core.config import AppConfig, MeasurementConfig, TargetRegistration
from speedtracker.core.exceptions import ConfigError
from speedtracker.core.factory import ComponentFactory
from speedtracker.core.models import Result, ResultStatus, Target
from speedtracker.db.repository import InMemoryResultStore
from speedtracker.measurement.provider import WebPageTestProvider

from tests.conftest import PROFILE_KEY


def _config(**overrides) -> AppConfig:
    return AppConfig(
        targets=[
            TargetRegistration(target="octocat/speedtracker-site/master", key=PROFILE_KEY),
            TargetRegistration(target="octocat/speedtracker-site/gh-pages", profile="mobile"),
        ],
        block_list=["spammer"],
        **overrides,
    )


class TestCreate:
    @pytest.mark.asyncio
    async def test_registers_configured_targets(self, gateway, provider, target):
        bundle = await ComponentFactory.create(
            config=_config(), in_memory=True, provider=provider, gateway=gateway,
        )
        try:
            scheduler = bundle.scheduler
            assert isinstance(bundle.store, InMemoryResultStore)
            assert bundle.db_engine is None
            assert scheduler.is_registered(target)
            assert scheduler.get_state(target).key == PROFILE_KEY
            mobile = scheduler.get_state(Target.parse("octocat/speedtracker-site/gh-pages"))
            assert mobile.profile_name == "mobile"
            assert bundle.executor.is_blocked("spammer")
        finally:
            await ComponentFactory.close(bundle)

    @pytest.mark.asyncio
    async def test_scheduled_tick_runs_end_to_end(self, gateway, github, provider, target):
        bundle = await ComponentFactory.create(
            config=AppConfig(targets=[TargetRegistration(target=target.slug, key=PROFILE_KEY)]),
            in_memory=True, provider=provider, gateway=gateway,
        )
        try:
            bundle.scheduler.tick()
            await bundle.scheduler.wait_idle()
            assert (await bundle.store.latest_result(target, "default")).succeeded
            assert github.statuses[0]["state"] == "success"
        finally:
            await ComponentFactory.close(bundle)

    @pytest.mark.asyncio
    async def test_bad_target(self, gateway, provider):
        config = AppConfig(targets=[TargetRegistration(target="not-a-target")])
        with pytest.raises(ConfigError, match="user/repo/branch"):
            await ComponentFactory.create(config=config, in_memory=True, provider=provider, gateway=gateway)

    @pytest.mark.asyncio
    async def test_unknown_provider(self, gateway):
        config = AppConfig(measurement=MeasurementConfig(provider="lighthouse"))
        with pytest.raises(ConfigError, match="lighthouse"):
            await ComponentFactory.create(config=config, in_memory=True, gateway=gateway)

    @pytest.mark.asyncio
    async def test_default_provider_is_webpagetest(self, gateway):
        bundle = await ComponentFactory.create(config=AppConfig(), in_memory=True, gateway=gateway)
        try:
            assert isinstance(bundle.provider, WebPageTestProvider)
        finally:
            await ComponentFactory.close(bundle)

    @pytest.mark.asyncio
    async def test_loads_config_from_directory(self, config_dir, gateway, provider):
        bundle = await ComponentFactory.create(
            config_dir=config_dir, in_memory=True, provider=provider, gateway=gateway,
        )
        try:
            assert bundle.scheduler.targets == []
            assert bundle.config.scheduler.base_interval_hours == 12
        finally:
            await ComponentFactory.close(bundle)


class TestClose:
    @pytest.mark.asyncio
    async def test_closes_gateway(self, gateway, provider):
        bundle = await ComponentFactory.create(
            config=AppConfig(), in_memory=True, provider=provider, gateway=gateway,
        )
        await ComponentFactory.close(bundle)
        assert gateway._client is None


@pytest.mark.asyncio
async def test_restore_runs_on_startup(gateway, provider, target, monkeypatch):
    last = datetime.now(UTC) - timedelta(hours=1)
    original_init = InMemoryResultStore.__init__

    def seeded_init(self, page_size: int = 500):
        original_init(self, page_size)
        self._history[(target, "default")] = [
            Result(target=target, profile_name="default", timestamp=last, status=ResultStatus.SUCCESS),
        ]

    monkeypatch.setattr(InMemoryResultStore, "__init__", seeded_init)
    bundle = await ComponentFactory.create(
        config=AppConfig(targets=[TargetRegistration(target=target.slug, key=PROFILE_KEY)]),
        in_memory=True, provider=provider, gateway=gateway,
    )
    try:
        assert bundle.scheduler.get_state(target).next_due == last + timedelta(hours=12)
        assert bundle.scheduler.tick() == []
    finally:
        await ComponentFactory.close(bundle)
