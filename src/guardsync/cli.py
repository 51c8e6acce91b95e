"""Command-line interface for GuardSync.

Provides commands for:
- serve: Run the HTTP server
- categories: List the rule category catalog
- platforms: List registered platforms and source types
- deliver-webhooks: Attempt every due webhook delivery once
- out-of-sync: List devices behind their child's latest policy
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from guardsync.core.config import EngineConfig


def load_config(db_path: str | None) -> EngineConfig:
    """Build the configuration from the environment, overriding the database path."""
    config = EngineConfig.from_env()
    if db_path is not None:
        config.db_path = Path(db_path)
    return config


def require_database(config: EngineConfig) -> None:
    if not config.db_path.exists():
        click.echo(f"Error: Database not found: {config.db_path}", err=True)
        click.echo("Make sure the server has been run at least once.", err=True)
        sys.exit(1)


db_path_option = click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: GUARDSYNC_DB_PATH or ./guardsync.db).",
)


@click.group()
@click.version_option(package_name="guardsync")
def cli() -> None:
    """GuardSync - child-safety policy enforcement and sync engine."""


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind.")
@click.option("--port", default=8000, show_default=True, type=int, help="Port to listen on.")
def serve(host: str, port: int) -> None:
    """Run the HTTP server.

    Configuration comes from GUARDSYNC_* environment variables.
    """
    import uvicorn

    uvicorn.run("guardsync.server.app:app_factory", factory=True, host=host, port=port)


@cli.command()
@click.option("--family", "family_filter", default=None, help="Only list one rule family.")
def categories(family_filter: str | None) -> None:
    """List the rule category catalog."""
    from guardsync.rules import CATALOG_VERSION, catalog

    entries = catalog()
    if family_filter is not None:
        entries = [e for e in entries if e["family"] == family_filter]
        if not entries:
            click.echo(f"Error: Unknown rule family: {family_filter}", err=True)
            sys.exit(1)

    click.echo(f"Catalog version {CATALOG_VERSION} ({len(entries)} categories)")
    for entry in entries:
        click.echo(f"  {entry['category']:<32} {entry['family']}")


@cli.command()
def platforms() -> None:
    """List registered platforms and source types with their capabilities."""
    from guardsync.adapters.registry import default_registry
    from guardsync.core.types import SupportLevel

    registry = default_registry()

    click.echo("Platforms:")
    for platform in sorted(registry.platforms.values(), key=lambda p: p.platform_id):
        full = sum(1 for c in platform.capabilities.values() if c.support_level == SupportLevel.FULL)
        click.echo(
            f"  {platform.platform_id:<20} {platform.category.value:<10} "
            f"{len(platform.supported())} categories ({full} full)"
        )

    click.echo("Source types:")
    for source in sorted(registry.sources.values(), key=lambda s: s.slug):
        tiers = ", ".join(
            f"{tier.value}: {len(caps)}"
            for tier, caps in sorted(source.tiers.items(), key=lambda kv: kv[0].value)
        )
        click.echo(f"  {source.slug:<20} {source.display_name:<12} ({tiers})")


@cli.command("deliver-webhooks")
@db_path_option
def deliver_webhooks(db_path: str | None) -> None:
    """Attempt every due webhook delivery once.

    Useful from cron when the server's scheduler is not running.
    """
    from guardsync.engine.engine import Engine

    config = load_config(db_path)
    require_database(config)

    engine = Engine(config)
    try:
        attempted = engine.webhooks.process_due()
        failed = engine.webhooks.list_failed()
    finally:
        engine.stop()
        engine.db.close()

    click.echo(f"Attempted {attempted} deliveries")
    if failed:
        click.echo(f"{len(failed)} deliveries have permanently failed")


@cli.command("out-of-sync")
@db_path_option
@click.option(
    "--hours",
    type=float,
    default=None,
    help="Staleness window in hours (default: GUARDSYNC_DEVICE_STALENESS_HOURS or 24).",
)
def out_of_sync(db_path: str | None, hours: float | None) -> None:
    """List devices that have not applied their latest policy in time."""
    from datetime import timedelta

    from guardsync.engine.engine import Engine

    config = load_config(db_path)
    require_database(config)
    window = timedelta(hours=hours) if hours is not None else config.staleness_window

    engine = Engine(config)
    try:
        devices = engine.devices.out_of_sync(window)
    finally:
        engine.stop()
        engine.db.close()

    if not devices:
        click.echo("All devices are in sync")
        return
    click.echo(f"{len(devices)} devices out of sync:")
    for device in devices:
        last_ack = device.last_ack_at.isoformat() if device.last_ack_at else "never"
        click.echo(
            f"  {device.id}  {device.device_name} (child {device.child_id}) "
            f"v{device.last_policy_version}, last ack {last_ack}"
        )


if __name__ == "__main__":
    cli()
