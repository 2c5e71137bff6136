"""Turn command for the bounce CLI."""

import click

from bounce_protocol.services.session_service import load_session
from bounce_protocol.services.turn_service import TurnCoordinator


@click.command()
@click.argument("file", type=click.Path(dir_okay=False))
def turn(file):
    """Replay a session's entries and report whose turn it is."""
    try:
        result = load_session(file)
    except OSError as e:
        raise click.ClickException(f"Cannot read {file}: {e}")

    session = result.session
    if session is None:
        raise click.ClickException(f"{file} is not a bounce session")
    if session.rules is None:
        raise click.ClickException(f"{file} has no rules section")

    # Replay only; a turn timeout would fire against wall-clock time
    coordinator = TurnCoordinator(session.rules.model_copy(update={"turn_timeout": None}))
    coordinator.start()
    coordinator.record_entries(session.entries)

    if coordinator.is_complete():
        click.echo(f"Session complete ({coordinator.completion_reason})")
        return
    click.echo(
        f"Round {coordinator.current_round} turn {coordinator.current_turn}: "
        f"{coordinator.current_agent} ({coordinator.turn_order.value})"
    )
