#!/usr/bin/env python3
"""
Command line interface for kitcache.

- ``encode-key``: show the cache key a set of query parameters maps to
- ``demo``: run a scripted session against the in-memory backend
- ``show-config``: print the effective settings
"""

import asyncio
import json
import sys
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from ..backends.memory import InMemoryEntityStore, InMemoryPreferenceStore
from ..config import KitCacheSettings
from ..core.cache_store import EntityPage
from ..core.engine import CollectionCache
from ..core.errors import RateLimitedFault, ValidationFault
from ..core.interfaces import Severity
from ..core.logging import configure_logging
from ..core.mutations import Committed
from ..core.navigation import NavigationContext
from ..core.stable_keys import EntityKeys, StableKeyEncoder, format_key

console = Console()

DEMO_OWNER = "demo-user"
DEMO_STATUSES = ("wishlist", "purchased", "stash", "progress", "completed")
SEVERITY_STYLES = {
    Severity.SUCCESS: "green",
    Severity.INFO: "blue",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
}


@click.group()
@click.option("--log-level", default=None, help="Log level (defaults to settings)")
@click.option(
    "--debug-scope",
    "debug_scopes",
    multiple=True,
    help="Module to log at DEBUG, e.g. core.mutations (repeatable)",
)
@click.pass_context
def cli(ctx, log_level: str | None, debug_scopes: tuple[str, ...]):
    """kitcache: optimistic cache consistency engine."""
    settings = KitCacheSettings()
    configure_logging(
        log_level or settings.log_level,
        debug_scopes=debug_scopes or settings.debug_scopes,
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command("encode-key")
@click.argument("params")
@click.option("--kind", default="projects", show_default=True, help="Entity kind")
@click.option("--owner", default="", help="Owner id (hashed into the key)")
@click.option(
    "--ordered-field",
    "ordered_fields",
    multiple=True,
    help="Field whose array keeps its order (repeatable)",
)
def encode_key(params: str, kind: str, owner: str, ordered_fields: tuple[str, ...]):
    """Print the canonical encoding and list key for PARAMS (a JSON object)."""
    try:
        parsed = json.loads(params)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="PARAMS") from e
    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object", param_hint="PARAMS")

    encoder = StableKeyEncoder(ordered_fields=frozenset(ordered_fields))
    key = EntityKeys(kind, encoder).list(owner, parsed)
    click.echo(encoder.encode(parsed))
    click.echo(format_key(key))


@cli.command("show-config")
@click.option("--json", "as_json", is_flag=True, help="Print settings as JSON")
@click.pass_context
def show_config(ctx, as_json: bool):
    """Print the effective settings (environment and .env applied)."""
    settings: KitCacheSettings = ctx.obj["settings"]
    data = settings.model_dump(mode="json")
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    table = Table(title="kitcache settings")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="magenta")
    for name, value in data.items():
        table.add_row(name, json.dumps(value))
    console.print(table)


def _demo_projects(count: int) -> list[dict[str, Any]]:
    return [
        {
            "id": f"p{index:03d}",
            "user": DEMO_OWNER,
            "title": f"Kit {index:03d}",
            "status": DEMO_STATUSES[index % len(DEMO_STATUSES)],
            "last_updated": f"2025-01-01T00:00:{index % 60:02d}.{index:03d}Z",
            "tags": [],
        }
        for index in range(count)
    ]


def _page_table(title: str, items: list[dict[str, Any]]) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status", style="green")
    table.add_column("Completed", style="yellow")
    for item in items:
        table.add_row(
            item["id"], item["title"], item["status"], item.get("date_completed") or ""
        )
    return table


async def run_demo(count: int, page_size: int) -> None:
    """Scripted session: list, optimistic update, rollback, counts, siblings."""
    remote = InMemoryEntityStore()
    remote.seed("projects", _demo_projects(count))
    preferences = InMemoryPreferenceStore()
    notices: list[tuple[str, Severity]] = []

    async def no_wait(_seconds: float) -> None:
        return None

    settings = KitCacheSettings(
        cleanup_interval_seconds=None,
        settle_delay_seconds=0.0,
        default_page_size=page_size,
    )
    async with CollectionCache(
        remote,
        preferences=preferences,
        notify=lambda message, severity: notices.append((message, severity)),
        settings=settings,
        sleep=no_wait,
    ) as cache:
        context = NavigationContext(page_size=page_size)
        page = await cache.fetch_list("projects", DEMO_OWNER, context)
        console.print(_page_table("Page 1", list(page.items[:5])))

        target = page.items[0]["id"]
        outcome = await cache.mutations.update_status(
            "projects", target, "completed", owner_id=DEMO_OWNER
        )
        state = "committed" if isinstance(outcome, Committed) else "rolled back"
        console.print(f"Status update of {target}: [bold]{state}[/bold]")

        original = page.items[1]
        remote.fail_next("mutate_entity", ValidationFault("Title is required"))
        outcome = await cache.mutations.update_entity(
            "projects", original["id"], {"title": ""}, owner_id=DEMO_OWNER
        )
        list_key = cache.keys("projects").list(DEMO_OWNER, context.to_query_params())
        cached_page = EntityPage.from_payload(cache.store.get_value(list_key))
        index = cached_page.index_of(original["id"])
        title = cached_page.items[index]["title"] if index is not None else None
        state = "committed" if isinstance(outcome, Committed) else "rolled back"
        console.print(
            f"Rejected update of {original['id']}: [bold]{state}[/bold], "
            f"cached title {title!r}"
        )

        remote.fail_next("delete_entity", RateLimitedFault(), times=2)
        await cache.mutations.delete_entity("projects", target, owner_id=DEMO_OWNER)

        before = await cache.get_aggregate("projects", DEMO_OWNER)
        pages = max(1, -(-page.total_count // page_size))
        for number in range(2, pages + 1):
            await cache.fetch_list("projects", DEMO_OWNER, context.with_page(number))
        after = await cache.get_aggregate("projects", DEMO_OWNER)

        counts = Table(title="Status counts")
        counts.add_column("Status", style="cyan")
        counts.add_column(f"Before paging ({before.source.value})", justify="right")
        counts.add_column(f"After paging ({after.source.value})", justify="right")
        for status in after.counts:
            counts.add_row(
                status,
                str(before.counts.get(status, 0)),
                str(after.counts.get(status, 0)),
            )
        console.print(counts)
        console.print(f"Cache coverage: {after.cache_hit_rate:.0%}")

        await cache.mutations.save_navigation_preference(DEMO_OWNER, context)
        resolved, siblings = await cache.navigate(
            "projects", DEMO_OWNER, page.items[2]["id"]
        )
        console.print(
            f"Navigation from {resolved.source.value} context: "
            f"previous={siblings.previous['id'] if siblings.previous else None} "
            f"next={siblings.next['id'] if siblings.next else None} "
            f"({(siblings.current_index or 0) + 1} of {siblings.total_count})"
        )

        await cache.drain()

    for message, severity in notices:
        style = SEVERITY_STYLES[severity]
        console.print(f"[{style}]{severity.value}[/{style}] {message}")


@cli.command()
@click.option("--count", default=120, show_default=True, help="Projects to seed")
@click.option("--page-size", default=25, show_default=True, help="List page size")
def demo(count: int, page_size: int):
    """Run a scripted optimistic-update session against the in-memory backend."""
    if count < 3:
        raise click.BadParameter("at least 3 projects are needed", param_hint="--count")
    asyncio.run(run_demo(count, page_size))


def main():
    """Main CLI entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
