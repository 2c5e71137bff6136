"""New-session command for the bounce CLI."""

import re
from datetime import datetime, timezone

import click

from bounce_protocol.constants import (
    DEFAULT_CONSENSUS_MODE,
    DEFAULT_CONSENSUS_THRESHOLD,
    DEFAULT_ESCALATION,
    DEFAULT_MAX_ROUNDS,
    DEFAULT_MAX_TURNS_PER_ROUND,
    DEFAULT_OUTPUT_FORMAT,
    DEFAULT_TURN_ORDER,
    DEFAULT_TURN_TIMEOUT_SECONDS,
)
from bounce_protocol.models.session import (
    ConsensusMode,
    EscalationPolicy,
    OutputFormat,
    ProtocolRules,
    TurnOrder,
)
from bounce_protocol.protocol.validator import check_rules
from bounce_protocol.services.session_service import new_session_file


def slugify(title: str) -> str:
    """Filename stem for a session title, with a UTC date prefix."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-") or "session"
    return f"{datetime.now(timezone.utc):%Y%m%d}-{slug}"


def _choices(enum_cls):
    return click.Choice([member.value for member in enum_cls])


@click.command()
@click.argument("directory", type=click.Path(file_okay=False))
@click.option("--title", required=True, help="Session title")
@click.option("--agent", "agents", multiple=True, required=True, help="Participating agent (repeatable)")
@click.option("--context", default="", help="Context text for the session")
@click.option("--filename", help="File name (default: date and title slug)")
@click.option("--turn-order", type=_choices(TurnOrder), default=DEFAULT_TURN_ORDER, show_default=True)
@click.option("--max-turns-per-round", type=int, default=DEFAULT_MAX_TURNS_PER_ROUND, show_default=True)
@click.option("--turn-timeout", type=int, default=DEFAULT_TURN_TIMEOUT_SECONDS, show_default=True)
@click.option(
    "--consensus-threshold", type=float, default=DEFAULT_CONSENSUS_THRESHOLD, show_default=True
)
@click.option(
    "--consensus-mode", type=_choices(ConsensusMode), default=DEFAULT_CONSENSUS_MODE, show_default=True
)
@click.option(
    "--escalation", type=_choices(EscalationPolicy), default=DEFAULT_ESCALATION, show_default=True
)
@click.option("--max-rounds", type=int, default=DEFAULT_MAX_ROUNDS, show_default=True)
@click.option(
    "--output-format", type=_choices(OutputFormat), default=DEFAULT_OUTPUT_FORMAT, show_default=True
)
def new(
    directory,
    title,
    agents,
    context,
    filename,
    turn_order,
    max_turns_per_round,
    turn_timeout,
    consensus_threshold,
    consensus_mode,
    escalation,
    max_rounds,
    output_format,
):
    """Create a new session file in DIRECTORY."""
    rules = ProtocolRules(
        agents=list(agents),
        turn_order=TurnOrder(turn_order),
        max_turns_per_round=max_turns_per_round,
        turn_timeout=turn_timeout,
        consensus_threshold=consensus_threshold,
        consensus_mode=ConsensusMode(consensus_mode),
        escalation=EscalationPolicy(escalation),
        max_rounds=max_rounds,
        output_format=OutputFormat(output_format),
    )

    issues = []
    check_rules(rules, issues)
    if not title.strip():
        raise click.ClickException("Title must not be empty")
    if issues:
        raise click.ClickException("; ".join(issue.message for issue in issues))

    try:
        path = new_session_file(directory, filename or slugify(title), title, rules, context)
    except FileExistsError as e:
        raise click.ClickException(f"Session file already exists: {e.filename}")
    except OSError as e:
        raise click.ClickException(f"Failed to create session: {e}")

    click.echo(f"Session created: {path}")
