"""Structural and semantic validation of Bounce sessions.

The check helpers append ``ValidationIssue`` objects to a caller-owned list so
the parser can run them over a freshly built session, while
``validate_session`` runs them over a session built in code.
"""

import math
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from bounce_protocol.constants import MAX_ROUNDS_LIMIT
from bounce_protocol.models.session import (
    OutputFormat,
    ProtocolEntry,
    ProtocolRules,
    Session,
    SessionHeader,
    Stance,
)
from bounce_protocol.models.validation import (
    Severity,
    ValidationCode,
    ValidationIssue,
    ValidationResult,
)

VERSION_PATTERN = re.compile(r"^\d+(\.\d+)*$")
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

# Rule attribute -> key as written in the session file, in canonical order
RULE_KEYS: Dict[str, str] = {
    "agents": "agents",
    "turn_order": "turn-order",
    "max_turns_per_round": "max-turns-per-round",
    "turn_timeout": "turn-timeout",
    "consensus_threshold": "consensus-threshold",
    "consensus_mode": "consensus-mode",
    "escalation": "escalation",
    "max_rounds": "max-rounds",
    "output_format": "output-format",
}

# Entry field attribute -> key as written in the session file
FIELD_KEYS: Dict[str, str] = {
    "stance": "stance",
    "confidence": "confidence",
    "summary": "summary",
    "action_requested": "action_requested",
    "evidence": "evidence",
}


def error(
    code: ValidationCode,
    message: str,
    line: Optional[int] = None,
    entry_id: Optional[str] = None,
) -> ValidationIssue:
    return ValidationIssue(
        severity=Severity.ERROR, code=code, message=message, line=line, entry_id=entry_id
    )


def warning(
    code: ValidationCode,
    message: str,
    line: Optional[int] = None,
    entry_id: Optional[str] = None,
) -> ValidationIssue:
    return ValidationIssue(
        severity=Severity.WARNING, code=code, message=message, line=line, entry_id=entry_id
    )


def is_valid_timestamp(value: str) -> bool:
    """Return True if value parses as an ISO-8601 datetime."""
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def check_header(header: Optional[SessionHeader], issues: List[ValidationIssue]) -> None:
    """Check presence and format of the three header values."""
    header = header or SessionHeader()

    if header.protocol_version is None:
        issues.append(
            error(ValidationCode.MISSING_PROTOCOL_VERSION, "Missing bounce-protocol header comment")
        )
    elif not VERSION_PATTERN.match(header.protocol_version):
        issues.append(
            error(
                ValidationCode.INVALID_PROTOCOL_VERSION,
                f"Invalid protocol version: '{header.protocol_version}'",
            )
        )

    if header.created is None:
        issues.append(error(ValidationCode.MISSING_CREATED, "Missing created header comment"))
    elif not is_valid_timestamp(header.created):
        issues.append(
            error(
                ValidationCode.INVALID_CREATED_FORMAT,
                f"Invalid created timestamp: '{header.created}' (expected ISO-8601)",
            )
        )

    if header.session_id is None:
        issues.append(
            error(ValidationCode.MISSING_SESSION_ID, "Missing session-id header comment")
        )
    elif not UUID_PATTERN.match(header.session_id):
        issues.append(
            error(
                ValidationCode.INVALID_SESSION_ID_FORMAT,
                f"Invalid session-id: '{header.session_id}' (expected UUID)",
            )
        )


def check_title(
    title: Optional[str], issues: List[ValidationIssue], line: Optional[int] = None
) -> None:
    if title is None:
        issues.append(
            error(ValidationCode.MISSING_TITLE, "Missing session title (# Bounce Session: ...)")
        )
    elif not title.strip():
        issues.append(error(ValidationCode.EMPTY_TITLE, "Session title is empty", line=line))


def check_rules(
    rules: Optional[ProtocolRules],
    issues: List[ValidationIssue],
    present_keys: Optional[Iterable[str]] = None,
    check_values: bool = True,
) -> None:
    """Check required rule keys, the agents list and value ranges.

    Args:
        rules: Parsed or constructed rules; None means the section is absent.
        issues: List that receives any issues found.
        present_keys: Rule attributes that appeared in the source. When given,
            only keys absent from the source are reported as missing, so a key
            whose value was rejected is not reported twice.
        check_values: Also check numeric ranges. The parser validates values
            as it reads them and turns this off.
    """
    if rules is None:
        issues.append(
            error(ValidationCode.MISSING_RULES_SECTION, "Missing ## Protocol Rules section")
        )
        return

    if present_keys is not None:
        seen = set(present_keys)
        missing = [attr for attr in RULE_KEYS if attr not in seen]
    else:
        missing = [attr for attr in RULE_KEYS if getattr(rules, attr) is None]
    for attr in missing:
        issues.append(
            error(
                ValidationCode.MISSING_REQUIRED_RULE,
                f"Missing required rule: {RULE_KEYS[attr]}",
            )
        )

    if rules.agents is not None:
        if not rules.agents:
            issues.append(error(ValidationCode.EMPTY_AGENTS_LIST, "Agents list is empty"))
        seen_agents = set()
        for agent in rules.agents:
            if not agent.strip():
                issues.append(error(ValidationCode.EMPTY_AGENTS_LIST, "Agent name is empty"))
            elif agent in seen_agents:
                issues.append(
                    error(ValidationCode.DUPLICATE_AGENT_NAME, f"Duplicate agent name: '{agent}'")
                )
            seen_agents.add(agent)

    if not check_values:
        return

    if rules.max_turns_per_round is not None and rules.max_turns_per_round < 1:
        issues.append(
            error(
                ValidationCode.INVALID_RULE_VALUE,
                f"Invalid max-turns-per-round: {rules.max_turns_per_round}",
            )
        )
    if rules.turn_timeout is not None and rules.turn_timeout < 1:
        issues.append(
            error(ValidationCode.INVALID_RULE_VALUE, f"Invalid turn-timeout: {rules.turn_timeout}")
        )
    if rules.consensus_threshold is not None and not (0.0 <= rules.consensus_threshold <= 1.0):
        issues.append(
            error(
                ValidationCode.INVALID_RULE_VALUE,
                f"consensus-threshold {rules.consensus_threshold} out of range [0.0, 1.0]",
            )
        )
    if rules.max_rounds is not None and not (1 <= rules.max_rounds <= MAX_ROUNDS_LIMIT):
        issues.append(
            error(
                ValidationCode.INVALID_RULE_VALUE,
                f"Invalid max-rounds: {rules.max_rounds} (must be 1-{MAX_ROUNDS_LIMIT})",
            )
        )


def check_confidence(
    confidence: Optional[float],
    issues: List[ValidationIssue],
    line: Optional[int] = None,
    entry_id: Optional[str] = None,
) -> None:
    if confidence is None:
        return
    if math.isnan(confidence):
        issues.append(
            error(
                ValidationCode.INVALID_CONFIDENCE,
                f"Invalid confidence value for entry {entry_id}",
                line=line,
                entry_id=entry_id,
            )
        )
    elif not (0.0 <= confidence <= 1.0):
        issues.append(
            error(
                ValidationCode.CONFIDENCE_OUT_OF_RANGE,
                f"Confidence {confidence} out of range [0.0, 1.0] for entry {entry_id}",
                line=line,
                entry_id=entry_id,
            )
        )


def check_entries(
    entries: Sequence[ProtocolEntry],
    rules: Optional[ProtocolRules],
    issues: List[ValidationIssue],
    entry_lines: Optional[Sequence[int]] = None,
    check_fields: bool = True,
) -> None:
    """Check cross-entry invariants and per-entry requirements.

    Args:
        entries: Entries in file order.
        rules: Session rules, used for the agent list and output format.
        issues: List that receives any issues found.
        entry_lines: Optional 1-based line of each entry's marker, parallel to
            ``entries``.
        check_fields: Also check stance and confidence values. The parser
            reports those while reading fields and turns this off.
    """
    agents = set(rules.agents or []) if rules else set()
    structured = rules is not None and rules.output_format == OutputFormat.STRUCTURED
    seen_ids = set()
    last_round = 0
    prev: Optional[ProtocolEntry] = None

    for index, entry in enumerate(entries):
        line = entry_lines[index] if entry_lines is not None else None
        eid = entry.entry_id or None

        if not entry.entry_id:
            if entry_lines is None:
                issues.append(error(ValidationCode.MISSING_ENTRY_ID, "Entry has no identifier"))
        elif entry.entry_id in seen_ids:
            issues.append(
                error(
                    ValidationCode.DUPLICATE_ENTRY_ID,
                    f"Duplicate entry ID: '{entry.entry_id}'",
                    line=line,
                    entry_id=eid,
                )
            )
        else:
            seen_ids.add(entry.entry_id)

        if agents and entry.author and entry.author not in agents:
            issues.append(
                warning(
                    ValidationCode.UNKNOWN_AGENT,
                    f"Entry author '{entry.author}' is not in the agents list",
                    line=line,
                    entry_id=eid,
                )
            )

        if check_fields:
            stance = entry.fields.stance
            if stance is not None and stance not in set(Stance):
                issues.append(
                    error(
                        ValidationCode.INVALID_STANCE,
                        f"Invalid stance: '{stance}'",
                        line=line,
                        entry_id=eid,
                    )
                )
            check_confidence(entry.fields.confidence, issues, line=line, entry_id=eid)

        if structured:
            for attr, key in FIELD_KEYS.items():
                if getattr(entry.fields, attr) is None:
                    issues.append(
                        error(
                            ValidationCode.MISSING_REQUIRED_FIELD,
                            f"Missing required structured field: {key}",
                            line=line,
                            entry_id=eid,
                        )
                    )

        if not entry.has_yield:
            issues.append(
                warning(
                    ValidationCode.MISSING_YIELD_MARKER,
                    f"Entry {entry.entry_id or '<unknown>'} is missing the <!-- yield --> marker",
                    line=line,
                    entry_id=eid,
                )
            )

        if entry.round > 0:
            if last_round and entry.round < last_round:
                issues.append(
                    warning(
                        ValidationCode.ROUND_NOT_MONOTONIC,
                        f"Round {entry.round} appears after round {last_round}",
                        line=line,
                        entry_id=eid,
                    )
                )
            last_round = max(last_round, entry.round)

        if (
            prev is not None
            and entry.round == prev.round
            and entry.turn > 0
            and entry.turn < prev.turn
        ):
            issues.append(
                warning(
                    ValidationCode.OUT_OF_ORDER_TURN,
                    f"Turn {entry.turn} appears after turn {prev.turn} in round {entry.round}",
                    line=line,
                    entry_id=eid,
                )
            )
        prev = entry


def validate_session(session: Session) -> ValidationResult:
    """Validate a session built in code (or a partial parse) on its own.

    Returns:
        ValidationResult; ``valid`` is False if any error-severity issue was found.
    """
    issues: List[ValidationIssue] = []
    check_header(session.header, issues)
    check_title(session.title, issues)
    check_rules(session.rules, issues)
    if session.context is None:
        issues.append(warning(ValidationCode.MISSING_CONTEXT_SECTION, "Missing ## Context section"))
    check_entries(session.entries, session.rules, issues)
    return ValidationResult.from_issues(issues)
