"""Consensus command for the bounce CLI."""

import click

from bounce_protocol.services.consensus_service import detect_consensus
from bounce_protocol.services.session_service import load_session


@click.command()
@click.argument("file", type=click.Path(dir_okay=False))
def consensus(file):
    """Report whether the latest round of a session reached consensus."""
    try:
        result = load_session(file)
    except OSError as e:
        raise click.ClickException(f"Cannot read {file}: {e}")

    session = result.session
    if session is None:
        raise click.ClickException(f"{file} is not a bounce session")
    if session.rules is None:
        raise click.ClickException(f"{file} has no rules section")

    outcome = detect_consensus(session.entries, session.rules)
    click.echo(f"Round {outcome.round}: {outcome.outcome.value} (score {outcome.score:.3f})")
    for stance in outcome.agent_stances:
        click.echo(f"  {stance.agent}: {stance.stance.value} ({stance.confidence:.2f})")
