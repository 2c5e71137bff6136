"""Agents command for the bounce CLI."""

import click

from bounce_protocol.providers.registry import create_default_registry


@click.command()
def agents():
    """List the agent adapters installed on this machine."""
    registry = create_default_registry()
    available = {adapter.name for adapter in registry.discover_available()}
    for adapter in registry.list():
        status = "available" if adapter.name in available else "not found"
        click.echo(f"{adapter.name:12} {status}")
