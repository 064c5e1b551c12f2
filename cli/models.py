"""CLI commands for catalog, cache and model lifecycle."""

from __future__ import annotations

import asyncio
import json
import sys
from functools import wraps

import click

from foundry_local.cache import DownloadProgress
from foundry_local.config import ManagerConfig, load_config
from foundry_local.errors import FoundryLocalError
from foundry_local.manager import LifecycleManager
from foundry_local.selector import rank_variants


def _make_manager(ctx: click.Context) -> LifecycleManager:
    obj = ctx.obj or {}
    path = obj.get("config_path")
    config = load_config(path) if path else ManagerConfig()
    return LifecycleManager(config, hardware=obj.get("hardware"))


def _run(coro_fn):
    """Run an async command body with a manager, reporting domain errors."""

    @wraps(coro_fn)
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        async def _main():
            manager = _make_manager(ctx)
            try:
                return await coro_fn(manager, *args, **kwargs)
            finally:
                await manager.shutdown(keep_service=True)

        try:
            asyncio.run(_main())
        except (FoundryLocalError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    return wrapper


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw variant records")
@_run
async def catalog(manager: LifecycleManager, as_json: bool) -> None:
    """List model aliases and their variants."""
    await manager.refresh_catalog()
    if manager.catalog.stale:
        click.echo("warning: catalog source unreachable, showing last known manifest", err=True)
    if as_json:
        click.echo(json.dumps([v.to_dict() for v in manager.catalog.variants], indent=2))
        return
    for alias in manager.catalog.aliases():
        click.echo(alias)
        ranked = rank_variants(manager.catalog.find_variants(alias), manager.hardware)
        for v in manager.catalog.find_variants(alias):
            mark = "*" if ranked and ranked[0] is v else " "
            cached = "cached" if manager.is_cached(v.variant_id) else ""
            click.echo(f"  {mark} {v.variant_id:<40} {v.hardware.value:<5} {v.total_size:>14,d}  {cached}")


@click.command()
@click.argument("alias")
@_run
async def select(manager: LifecycleManager, alias: str) -> None:
    """Show which variant of ALIAS this machine would run."""
    variant = await manager.resolve(alias)
    click.echo(variant.variant_id)


async def _show_progress(progress: DownloadProgress) -> None:
    updates = progress.__aiter__()
    try:
        done, total = await updates.__anext__()
    except StopAsyncIteration:
        return
    with click.progressbar(length=total, label="Downloading", file=sys.stderr) as bar:
        bar.update(done)
        async for done, _ in updates:
            bar.update(done - bar.pos)


@click.command()
@click.argument("alias")
@click.option("--variant", "variant_id", default=None, help="Exact variant id")
@_run
async def download(manager: LifecycleManager, alias: str, variant_id: str | None) -> None:
    """Download ALIAS into the local cache without loading it."""
    progress = DownloadProgress()
    watcher = asyncio.create_task(_show_progress(progress))
    try:
        entry = await manager.download(alias, variant_id=variant_id, progress=progress)
    finally:
        progress.finish()
        await watcher
    click.echo(f"{entry.variant_id} cached at {entry.path}")


@click.command()
@click.argument("alias")
@click.option("--variant", "variant_id", default=None, help="Exact variant id")
@_run
async def run(manager: LifecycleManager, alias: str, variant_id: str | None) -> None:
    """Download and load ALIAS, then print the OpenAI-compatible endpoint."""
    progress = DownloadProgress()
    watcher = asyncio.create_task(_show_progress(progress))
    try:
        handle = await manager.init(alias, variant_id=variant_id, progress=progress)
    finally:
        progress.finish()
        await watcher
    click.echo(json.dumps({
        **handle.to_dict(),
        "baseUrl": manager.base_url,
        "apiKey": manager.api_key,
    }, indent=2))


@click.command()
@click.argument("variant_id")
@_run
async def unload(manager: LifecycleManager, variant_id: str) -> None:
    """Ask the running service to unload VARIANT_ID."""
    endpoint = await manager.ensure_service()
    await manager.locator.service_client(endpoint).unload(variant_id)
    click.echo(f"{variant_id} unloaded")


@click.command()
@_run
async def status(manager: LifecycleManager) -> None:
    """Show the running service's endpoint and loaded model."""
    endpoint = await manager.ensure_service()
    service_status = await manager.locator.service_client(endpoint).status()
    click.echo(json.dumps({"endpoint": endpoint.to_dict(), **service_status}, indent=2))


@click.group()
def cache():
    """Inspect or prune the local model cache."""


@cache.command("list")
@_run
async def cache_list(manager: LifecycleManager) -> None:
    """List cached variants."""
    for variant_id in manager.cache.cached_variant_ids():
        click.echo(variant_id)


@cache.command("evict")
@click.argument("variant_id")
@_run
async def cache_evict(manager: LifecycleManager, variant_id: str) -> None:
    """Remove VARIANT_ID from the cache."""
    await manager.evict(variant_id)
    click.echo(f"{variant_id} evicted")
