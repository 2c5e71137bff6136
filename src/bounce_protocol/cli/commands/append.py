"""Append command for the bounce CLI."""

import sys
import uuid

import click

from bounce_protocol.clients.file_lock import LockTimeoutError
from bounce_protocol.models.session import EntryFields, EntryStatus, ProtocolEntry, Stance
from bounce_protocol.services.session_service import append_entry


@click.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.option("--author", required=True, help="Agent writing the entry")
@click.option("--turn", type=click.IntRange(min=0), required=True, help="Turn number")
@click.option("--round", "round_", type=click.IntRange(min=1), required=True, help="Round number")
@click.option(
    "--status",
    type=click.Choice([status.value for status in EntryStatus]),
    default=EntryStatus.YIELD.value,
    show_default=True,
)
@click.option("--stance", type=click.Choice([stance.value for stance in Stance]))
@click.option("--confidence", type=click.FloatRange(0.0, 1.0), help="Confidence in [0, 1]")
@click.option("--summary", help="One-line summary")
@click.option("--action-requested", help="Action requested from the other agents")
@click.option("--evidence", help="Supporting evidence")
@click.option("--body", default="", help="Free-form body text, or '-' to read it from stdin")
def append(
    file, author, turn, round_, status, stance, confidence, summary, action_requested, evidence, body
):
    """Append an entry to a session file under the file lock."""
    if body == "-":
        body = sys.stdin.read()

    entry = ProtocolEntry(
        entry_id=str(uuid.uuid4()),
        turn=turn,
        round=round_,
        author=author,
        status=EntryStatus(status),
        fields=EntryFields(
            stance=Stance(stance) if stance else None,
            confidence=confidence,
            summary=summary,
            action_requested=action_requested,
            evidence=evidence,
        ),
        body=body.strip("\n"),
    )

    try:
        append_entry(file, entry)
    except FileNotFoundError:
        raise click.ClickException(f"Session file not found: {file}")
    except LockTimeoutError as e:
        raise click.ClickException(str(e))
    except OSError as e:
        raise click.ClickException(f"Failed to append to {file}: {e}")

    click.echo(f"Entry appended: {entry.entry_id}")
