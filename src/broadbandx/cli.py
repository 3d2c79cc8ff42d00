#!/usr/bin/env python
"""
CLI management commands for BroadbandX.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import click

from broadbandx.db import create_all_tables_async, get_async_db
from broadbandx.logging import setup_logging


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    session_factory: Callable[[], Any]
    init_db: Callable[[], Awaitable[None]]
    service_factory: Callable[[Any], Any]


def _build_subscription_service(session: Any) -> Any:
    from broadbandx.billing.subscriptions.service import SubscriptionService

    return SubscriptionService(session)


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        session_factory=get_async_db,
        init_db=create_all_tables_async,
        service_factory=_build_subscription_service,
    )


@click.group()
def cli() -> None:
    """BroadbandX management CLI."""
    setup_logging()


@cli.command()
def init_database() -> None:
    """Create the plan and subscription tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    asyncio.run(deps.init_db())
    click.echo("Database initialized successfully!")


@cli.command()
@click.option(
    "--as-of",
    type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]),
    default=None,
    help="Expire subscriptions that ended on or before this UTC time (default: now)",
)
def expire_subscriptions(as_of: datetime | None) -> None:
    """Move active subscriptions past their end date to expired."""
    deps = _get_cli_dependencies()

    async def _expire() -> list[str]:
        async with deps.session_factory() as session:
            service = deps.service_factory(session)
            return await service.expire_lapsed_subscriptions(as_of)

    expired = asyncio.run(_expire())
    for subscription_id in expired:
        click.echo(f"Expired {subscription_id}")
    click.echo(f"{len(expired)} subscription(s) expired")


if __name__ == "__main__":
    cli()
