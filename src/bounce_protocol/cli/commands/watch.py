"""Watch command for the bounce CLI."""

import time

import click

from bounce_protocol.constants import SESSIONS_DIR
from bounce_protocol.models.events import WatcherEvent, WatcherEventType
from bounce_protocol.services.session_watcher import SessionWatcher


def describe_event(event: WatcherEvent) -> str:
    line = f"[{event.timestamp}] {event.type.value} {event.session_path}"
    if event.type == WatcherEventType.UPDATED and event.new_entries:
        authors = ", ".join(
            f"{entry.author} (turn {entry.turn}, round {entry.round})" for entry in event.new_entries
        )
        line += f": {len(event.new_entries)} new entries from {authors}"
    elif event.parse_result is not None and not event.parse_result.validation.valid:
        line += f" ({len(event.parse_result.validation.errors)} errors)"
    return line


@click.command()
@click.argument("directory", type=click.Path(file_okay=False), default=str(SESSIONS_DIR))
@click.option("--duration", type=float, help="Stop after this many seconds (default: run until Ctrl-C)")
def watch(directory, duration):
    """Print session changes in DIRECTORY as they happen."""
    watcher = SessionWatcher(directory)
    watcher.subscribe(lambda event: click.echo(describe_event(event)))

    try:
        watcher.start()
    except OSError as e:
        raise click.ClickException(f"Cannot watch {directory}: {e}")

    click.echo(f"Watching {directory}")
    deadline = time.monotonic() + duration if duration is not None else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.1)
    except KeyboardInterrupt:
        click.echo("Stopped")
    finally:
        watcher.stop()
