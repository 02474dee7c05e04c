"""Component factory for SpeedTracker.

Creates and wires all infrastructure components (database, gateway,
measurement provider, profile cache) into an executor and scheduler.
Startup is a single awaitable step that resolves to a ready scheduler;
nothing is held in module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from speedtracker.core.config import AppConfig, load_config
from speedtracker.core.exceptions import ConfigError
from speedtracker.core.models import Target
from speedtracker.db.engine import DatabaseEngine
from speedtracker.db.repository import InMemoryResultStore, PostgresResultStore, ResultStore
from speedtracker.gateway.github import GitHubGateway
from speedtracker.measurement.provider import MeasurementProvider, WebPageTestProvider
from speedtracker.pipeline.executor import TestExecutor
from speedtracker.pipeline.profiles import ProfileCache
from speedtracker.pipeline.scheduler import Scheduler

logger = logging.getLogger("speedtracker.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; callers use ``scheduler`` for
    everything and hand the bundle back to ``ComponentFactory.close``.
    """

    config: AppConfig
    store: ResultStore
    gateway: GitHubGateway
    provider: MeasurementProvider
    profiles: ProfileCache
    executor: TestExecutor
    scheduler: Scheduler
    db_engine: Optional[DatabaseEngine] = None


class ComponentFactory:
    """Factory for creating and wiring SpeedTracker.

    Usage:
        bundle = await ComponentFactory.create(config_dir=Path("config"))
        await bundle.scheduler.run_forever(stop_event)
        await ComponentFactory.close(bundle)
    """

    @staticmethod
    async def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        config: Optional[AppConfig] = None,
        in_memory: bool = False,
        initialize_schema: bool = True,
        provider: Optional[MeasurementProvider] = None,
        gateway: Optional[GitHubGateway] = None,
    ) -> ComponentBundle:
        """Create, wire and restore all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test", "production").
            config: Ready-made config; skips loading from disk.
            in_memory: Use the in-memory result store instead of PostgreSQL.
            initialize_schema: Whether to run schema.sql on startup.
            provider: Measurement provider override. Default: WebPageTest.
            gateway: Gateway override. Default: GitHub with the configured token.

        Returns:
            ComponentBundle whose scheduler has its targets registered and
            next-due times restored from stored history.
        """
        logger.info("Initializing components...")
        config = config or load_config(config_dir=config_dir, env=env)

        # --- Store ---
        db_engine: Optional[DatabaseEngine] = None
        store: ResultStore
        if in_memory:
            store = InMemoryResultStore(page_size=config.database.page_size)
            logger.info("Using in-memory result store")
        else:
            db_engine = DatabaseEngine(config.database)
            await db_engine.connect()
            if initialize_schema:
                await db_engine.initialize_schema()
            store = PostgresResultStore(db_engine, page_size=config.database.page_size)

        # --- Remote collaborators ---
        gateway = gateway or GitHubGateway(config.github)
        if not gateway.token:
            logger.warning("No GitHub token configured; private repositories will be unreachable")
        provider = provider or _build_provider(config)

        # --- Pipeline ---
        profiles = ProfileCache(gateway, ttl_seconds=config.executor.profile_cache_ttl_seconds)
        executor = TestExecutor(
            store=store,
            gateway=gateway,
            profiles=profiles,
            provider=provider,
            blocked_users=config.blocked_users,
            config=config.executor,
            measurement_timeout=config.measurement.timeout_seconds,
        )
        scheduler = Scheduler(executor=executor, store=store, config=config.scheduler)

        for registration in config.targets:
            try:
                target = Target.parse(registration.target)
            except ValueError as e:
                raise ConfigError(str(e)) from e
            scheduler.register_target(target, profile_name=registration.profile, key=registration.key)

        await scheduler.restore()
        logger.info("Scheduler ready with %d target(s)", len(scheduler.targets))

        return ComponentBundle(
            config=config,
            store=store,
            gateway=gateway,
            provider=provider,
            profiles=profiles,
            executor=executor,
            scheduler=scheduler,
            db_engine=db_engine,
        )

    @staticmethod
    async def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        await bundle.scheduler.wait_idle()
        close_provider = getattr(bundle.provider, "close", None)
        if close_provider is not None:
            await close_provider()
        await bundle.gateway.close()
        if bundle.db_engine is not None:
            await bundle.db_engine.close()
        logger.info("All components shut down")


def _build_provider(config: AppConfig) -> MeasurementProvider:
    if config.measurement.provider != "webpagetest":
        raise ConfigError(f"Unknown measurement provider '{config.measurement.provider}'")
    return WebPageTestProvider(config.measurement)
