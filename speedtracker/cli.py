"""CLI entrypoint for SpeedTracker."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click

from speedtracker.core.models import Target


def _setup_logging(verbose: bool = False, env: Optional[str] = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    from speedtracker.core.config import load_config

    try:
        config = load_config(env=env)
        level_name = config.logging.level
        fmt = config.logging.format
    except Exception:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _parse_target(value: str) -> Target:
    try:
        return Target.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option("--env", required=False, default=None, help="Config overlay environment.")
@click.option(
    "--config-dir",
    required=False,
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory holding default.yaml and overlays.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, env: Optional[str], config_dir: Optional[Path]) -> None:
    """SpeedTracker command line interface."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["env"] = env
    ctx.obj["config_dir"] = config_dir
    _setup_logging(verbose=verbose, env=env)


@cli.command("run")
@click.option("--memory", is_flag=True, default=False, help="Keep results in memory instead of PostgreSQL.")
@click.option("--once", is_flag=True, default=False, help="Run a single tick, wait for it, and exit.")
@click.pass_context
def run(ctx: click.Context, memory: bool, once: bool) -> None:
    """Run the scheduler for every configured target."""
    from speedtracker.core.factory import ComponentFactory

    async def _main() -> None:
        bundle = await ComponentFactory.create(
            config_dir=ctx.obj["config_dir"], env=ctx.obj["env"], in_memory=memory,
        )
        try:
            if once:
                bundle.scheduler.tick()
                await bundle.scheduler.wait_idle()
            else:
                stop = asyncio.Event()
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, stop.set)
                await bundle.scheduler.run_forever(stop)
            for row in bundle.scheduler.snapshot():
                click.echo(json.dumps(row))
        finally:
            await ComponentFactory.close(bundle)

    asyncio.run(_main())


@cli.command("test")
@click.argument("user")
@click.argument("repo")
@click.argument("branch")
@click.argument("profile")
@click.option("--key", required=False, default=None, envvar="SPEEDTRACKER_KEY", help="Profile access key.")
@click.option("--memory", is_flag=True, default=False, help="Keep results in memory instead of PostgreSQL.")
@click.pass_context
def test(ctx: click.Context, user: str, repo: str, branch: str, profile: str,
         key: Optional[str], memory: bool) -> None:
    """Trigger one manual test and print the response body."""
    from speedtracker.api import TriggerRequest, handle_test_request
    from speedtracker.core.factory import ComponentFactory

    request = TriggerRequest(user=user, repo=repo, branch=branch, profile=profile, key=key)

    async def _main():
        bundle = await ComponentFactory.create(
            config_dir=ctx.obj["config_dir"], env=ctx.obj["env"], in_memory=memory,
        )
        try:
            return await handle_test_request(bundle.scheduler, request)
        finally:
            await ComponentFactory.close(bundle)

    response = asyncio.run(_main())
    click.echo(response.to_json())
    if not response.ok:
        sys.exit(1)


@cli.command("history")
@click.argument("target")
@click.argument("profile")
@click.option("--since", required=False, default=None, type=click.DateTime(), help="Inclusive lower bound.")
@click.option("--until", required=False, default=None, type=click.DateTime(), help="Exclusive upper bound.")
@click.pass_context
def history(ctx: click.Context, target: str, profile: str,
            since: Optional[datetime], until: Optional[datetime]) -> None:
    """Print stored results for TARGET (user/repo/branch) as JSON lines."""
    from speedtracker.core.config import load_config
    from speedtracker.db.engine import DatabaseEngine
    from speedtracker.db.repository import PostgresResultStore

    parsed = _parse_target(target)
    config = load_config(config_dir=ctx.obj["config_dir"], env=ctx.obj["env"])

    async def _main() -> int:
        engine = DatabaseEngine(config.database)
        store = PostgresResultStore(engine, page_size=config.database.page_size)
        count = 0
        try:
            async for result in store.list_results(parsed, profile, start=since, end=until):
                click.echo(result.model_dump_json())
                count += 1
        finally:
            await engine.close()
        return count

    count = asyncio.run(_main())
    click.echo(f"{count} result(s)", err=True)


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the results table and indexes."""
    from speedtracker.core.config import load_config
    from speedtracker.db.engine import DatabaseEngine

    config = load_config(config_dir=ctx.obj["config_dir"], env=ctx.obj["env"])

    async def _main() -> None:
        engine = DatabaseEngine(config.database)
        try:
            await engine.initialize_schema()
        finally:
            await engine.close()

    asyncio.run(_main())
    click.echo("Schema initialized")


def main() -> None:
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env")
    cli(obj={})


if __name__ == "__main__":
    main()
