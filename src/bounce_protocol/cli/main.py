"""Main CLI entry point for the Bounce Protocol."""

import click

from bounce_protocol.cli.commands.agents import agents
from bounce_protocol.cli.commands.append import append
from bounce_protocol.cli.commands.consensus import consensus
from bounce_protocol.cli.commands.new import new
from bounce_protocol.cli.commands.turn import turn
from bounce_protocol.cli.commands.validate import validate
from bounce_protocol.cli.commands.watch import watch
from bounce_protocol.utils.logging import setup_logging


@click.group()
@click.option("--log-level", help="Console log level (default: BOUNCE_LOG_LEVEL or WARNING)")
def cli(log_level):
    """Bounce Protocol - file-based coordination between AI agents."""
    setup_logging(log_level)


cli.add_command(validate)
cli.add_command(consensus)
cli.add_command(watch)
cli.add_command(new)
cli.add_command(append)
cli.add_command(agents)
cli.add_command(turn)


if __name__ == "__main__":
    cli()
