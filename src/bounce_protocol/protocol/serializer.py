"""Rendering of session files and entry blocks.

Output follows the session file grammar exactly, so anything rendered here
parses back to the same rules and entries.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from bounce_protocol.constants import PROTOCOL_VERSION
from bounce_protocol.models.session import ProtocolEntry, ProtocolRules, Session
from bounce_protocol.protocol.validator import FIELD_KEYS, RULE_KEYS


def iso_now() -> str:
    """Current UTC time as ISO-8601 with a ``Z`` suffix and millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _format_value(value) -> str:
    # Enum members render as their wire value
    return str(getattr(value, "value", value))


def serialize_rules(rules: ProtocolRules) -> str:
    """Render the body of the fenced rules block, without the fences."""
    lines = ["agents:"]
    for agent in rules.agents or []:
        lines.append(f"  - {agent}")
    for attr, key in RULE_KEYS.items():
        if attr == "agents":
            continue
        value = getattr(rules, attr)
        if value is not None:
            lines.append(f"{key}: {_format_value(value)}")
    return "\n".join(lines)


def create_session(
    title: str,
    rules: ProtocolRules,
    context: str,
    session_id: Optional[str] = None,
    created: Optional[str] = None,
) -> str:
    """Render a new session file with an empty Dialogue section.

    Args:
        title: Human-readable session name used in the title heading.
        rules: Protocol rules for the session.
        context: Free-form context text.
        session_id: Session UUID; generated when omitted.
        created: ISO-8601 creation timestamp; the current time when omitted.

    Returns:
        The complete file content.
    """
    lines = [
        f"<!-- bounce-protocol: {PROTOCOL_VERSION} -->",
        f"<!-- created: {created or iso_now()} -->",
        f"<!-- session-id: {session_id or str(uuid.uuid4())} -->",
        "",
        f"# Bounce Session: {title}",
        "",
        "## Protocol Rules",
        "",
        "```yaml",
        serialize_rules(rules),
        "```",
        "",
        "## Context",
        "",
        context,
        "",
        "## Dialogue",
        "",
    ]
    return "\n".join(lines)


def _entry_lines(entry: ProtocolEntry, with_yield: bool) -> List[str]:
    entry_id = entry.entry_id or str(uuid.uuid4())
    timestamp = entry.timestamp or iso_now()
    lines = [
        f"<!-- entry: {entry_id} -->",
        f"<!-- turn: {entry.turn} round: {entry.round} -->",
        f"{timestamp} [author: {entry.author}] [status: {_format_value(entry.status)}]",
    ]
    for attr, key in FIELD_KEYS.items():
        value = getattr(entry.fields, attr)
        if value is not None:
            lines.append(f"{key}: {_format_value(value)}")
    if entry.body:
        lines.append("")
        lines.append(entry.body)
        fences = sum(1 for line in entry.body.split("\n") if line.strip().startswith("```"))
        if fences % 2 == 1:
            # Close an unterminated fence so the yield marker stays visible
            lines.append("```")
    if with_yield:
        lines.append("")
        lines.append("<!-- yield -->")
    lines.append("")
    return lines


def serialize_entry(entry: ProtocolEntry) -> str:
    """Render one entry block, always terminated by a yield marker.

    A missing entry ID gets a fresh UUID and a missing timestamp gets the
    current time.
    """
    return "\n".join(_entry_lines(entry, with_yield=True))


def serialize_session(session: Session) -> str:
    """Render a parsed session back into file text.

    Entries keep their yield marker only if they had one, so a re-parse gives
    back the same entries.
    """
    header = session.header
    text = create_session(
        title=session.title or "",
        rules=session.rules or ProtocolRules(),
        context=session.context or "",
        session_id=header.session_id if header else None,
        created=header.created if header else None,
    )
    blocks = ["\n".join(_entry_lines(entry, with_yield=entry.has_yield)) for entry in session.entries]
    return text + "\n".join(blocks)
