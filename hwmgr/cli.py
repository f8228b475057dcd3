"""CLI interface for hwmgr.

Provides commands for:
- Starting the hardware manager server
- Loading and inspecting the hardware profile catalog
- Creating, reconciling and releasing node pools by hand
"""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click
import uvicorn
import yaml
from pydantic import ValidationError

from hwmgr import __version__
from hwmgr.config import get_settings
from hwmgr.db import NodePoolRecord, close_db, init_db
from hwmgr.errors import HwMgrError
from hwmgr.reconciler import derive_state
from hwmgr.schemas import HwProfileCatalog, NodeGroup, require_unique_group_names
from hwmgr.service import HwMgrService

T = TypeVar("T")


def _run(action: Callable[[HwMgrService], Awaitable[T]]) -> T:
    """Run ``action`` against a freshly built service and database."""

    async def _main() -> T:
        await init_db()
        try:
            return await action(HwMgrService.build(get_settings()))
        finally:
            await close_db()

    try:
        return asyncio.run(_main())
    except HwMgrError as exc:
        raise click.ClickException(exc.message) from exc


@click.group()
@click.version_option(version=__version__, prog_name="hwmgr")
def cli() -> None:
    """hwmgr - Hardware node pool manager.

    Matches node pool requests to free hardware and provisions the nodes.
    """
    pass


@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the hardware manager server."""
    settings = get_settings()

    actual_host = host or settings.host
    actual_port = port or settings.port

    click.echo(f"Starting hwmgr server on {actual_host}:{actual_port}")

    uvicorn.run(
        "hwmgr.server:app",
        host=actual_host,
        port=actual_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@cli.command()
def info() -> None:
    """Show server configuration."""
    settings = get_settings()

    click.echo("hwmgr Configuration:\n")
    click.echo(f"  Host:       {settings.host}")
    click.echo(f"  Port:       {settings.port}")
    click.echo(f"  Debug:      {settings.debug}")
    click.echo(f"  Log Level:  {settings.log_level}")
    click.echo(f"  Database:   {settings.database_url}")
    click.echo(f"  Namespace:  {settings.namespace}")
    click.echo(f"  Inventory:  {settings.inventory_record}")
    click.echo(f"  Workers:    {settings.workers}")


@cli.group()
def profiles() -> None:
    """Hardware profile catalog commands."""
    pass


@profiles.command("load")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def load_profiles(path: Path) -> None:
    """Replace the hardware profile catalog with the YAML file at PATH."""
    try:
        catalog = HwProfileCatalog.from_yaml(path.read_text())
    except (yaml.YAMLError, ValidationError) as exc:
        raise click.ClickException(f"Invalid hardware profile file {path}: {exc}") from exc

    _run(lambda service: service.store.replace_catalog(catalog))
    click.echo(f"Loaded {len(catalog.profiles)} hardware profile(s) from {path}")


@profiles.command("list")
def list_profiles() -> None:
    """List hardware profiles with their free node counts."""

    async def _list(service: HwMgrService):
        return await service.store.load()

    inventory = _run(_list)
    if not inventory.catalog.profiles:
        click.echo("No hardware profiles defined.")
        return

    click.echo(f"Hardware profiles ({len(inventory.catalog.profiles)}):\n")
    for profile in inventory.catalog.profiles:
        free = inventory.free_nodes(profile.name)
        click.echo(f"  {click.style(profile.name, fg='green', bold=True)}")
        click.echo(f"    Nodes: {', '.join(profile.nodes) or '-'}")
        click.echo(f"    Free:  {len(free)}/{len(profile.nodes)}")


@cli.group()
def pools() -> None:
    """Node pool commands."""
    pass


def _parse_group(spec: str) -> NodeGroup:
    name, _, rest = spec.partition("=")
    profile, _, size = rest.rpartition(":")
    if not name or not profile or not size.isdigit():
        raise click.BadParameter(f"expected NAME=PROFILE:SIZE, got {spec!r}", param_hint="--group")
    return NodeGroup(name=name, hw_profile=profile, size=int(size))


@pools.command("create")
@click.argument("pool_id")
@click.option(
    "--group",
    "-g",
    "groups",
    multiple=True,
    metavar="NAME=PROFILE:SIZE",
    help="Node group to request; repeat for more groups",
)
def create_pool(pool_id: str, groups: tuple[str, ...]) -> None:
    """Create node pool POOL_ID."""
    node_groups = [_parse_group(spec) for spec in groups]
    try:
        require_unique_group_names(node_groups)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--group") from exc
    pool = NodePoolRecord(
        name=pool_id,
        namespace=get_settings().namespace,
        node_groups=[g.model_dump(by_alias=True) for g in node_groups],
    )
    _run(lambda service: service.objects.create(pool))
    click.echo(f"Created node pool {pool_id} with {len(node_groups)} group(s)")


@pools.command("list")
def list_pools() -> None:
    """List node pools and their states."""

    async def _list(service: HwMgrService):
        return await service.objects.list(NodePoolRecord)

    records = _run(_list)
    if not records:
        click.echo("No node pools.")
        return

    for pool in records:
        state = derive_state(pool.conditions).value
        click.echo(
            f"  {click.style(pool.name, fg='green', bold=True)}  {state}  "
            f"generation={pool.generation} observed={pool.observed_generation}"
        )


@cli.command()
def allocations() -> None:
    """Show the nodes assigned to each pool."""

    async def _load(service: HwMgrService):
        return await service.store.load()

    inventory = _run(_load)
    if not inventory.allocated.clouds:
        click.echo("No nodes allocated.")
        return

    for cloud in inventory.allocated.clouds:
        click.echo(click.style(cloud.cloud_id, fg="green", bold=True))
        for group_name, names in cloud.nodegroups.items():
            click.echo(f"  {group_name}: {', '.join(names)}")


@cli.command()
@click.argument("pool_id")
@click.option("--until-done", is_flag=True, help="Repeat passes until the pool stops requeueing")
@click.option(
    "--max-passes",
    default=100,
    type=click.IntRange(min=1),
    show_default=True,
    help="Upper bound with --until-done",
)
def reconcile(pool_id: str, until_done: bool, max_passes: int) -> None:
    """Run reconcile passes for POOL_ID.

    With --until-done passes run back to back, without waiting out the
    requeue delay, until the pool reaches a terminal state.
    """

    async def _reconcile(service: HwMgrService):
        results = []
        for _ in range(max_passes if until_done else 1):
            result = await service.reconciler.reconcile(pool_id)
            results.append(result)
            if result.requeue_after is None:
                break
        return results

    results = _run(_reconcile)
    for index, result in enumerate(results, start=1):
        state = result.state.value if result.state else "NotFound"
        requeue = f" (requeue in {result.requeue_after}s)" if result.requeue_after else ""
        click.echo(f"Pass {index}: {state}{requeue}")

    if until_done and results[-1].requeue_after is not None:
        raise click.ClickException(f"Pool {pool_id} still in progress after {max_passes} passes")


@cli.command()
@click.argument("pool_id")
def release(pool_id: str) -> None:
    """Release every node allocated to POOL_ID."""
    released = _run(lambda service: service.engine.release(pool_id))
    if not released:
        click.echo(f"No nodes allocated to {pool_id}.")
        return
    click.echo(f"Released {len(released)} node(s) from {pool_id}: {', '.join(released)}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
