"""Bounce session parser.

Turns raw session text into a (possibly partial) ``Session`` plus the list of
validation issues found along the way. Parsing is a single forward scan over
the lines with an explicit section state; malformed constructs are recorded as
issues and the scan continues, so ``parse_session`` never raises.
"""

import logging
import math
import re
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple, Union

from bounce_protocol.constants import MAX_ROUNDS_LIMIT
from bounce_protocol.models.session import (
    ConsensusMode,
    EntryFields,
    EntryStatus,
    EscalationPolicy,
    OutputFormat,
    ProtocolEntry,
    ProtocolRules,
    Session,
    SessionHeader,
    Stance,
    TurnOrder,
)
from bounce_protocol.models.validation import (
    ParseResult,
    ValidationCode,
    ValidationIssue,
    ValidationResult,
)
from bounce_protocol.protocol import validator
from bounce_protocol.protocol.validator import error, warning

logger = logging.getLogger(__name__)

HEADER_PATTERN = re.compile(r"^<!--\s+(bounce-protocol|created|session-id):\s*(.*?)\s*-->$")
TITLE_PATTERN = re.compile(r"^#\s+Bounce Session:\s*(.*)$")
ENTRY_PATTERN = re.compile(r"^<!--\s+entry:\s*(\S*?)\s*-->$")
TURN_ROUND_PATTERN = re.compile(r"^<!--\s+turn:\s*(\d+)\s+round:\s*(\d+)\s*-->$")
STATUS_PATTERN = re.compile(r"^(\S+)\s+\[author:\s*([^\]]+)\]\s+\[status:\s*([^\]]+)\]$")
YIELD_PATTERN = re.compile(r"^<!--\s+yield\s*-->$")
FIELD_PATTERN = re.compile(r"^(stance|confidence|summary|action_requested|evidence):\s*(.*)$")

FENCE = "```"
RULES_HEADING = "## Protocol Rules"
CONTEXT_HEADING = "## Context"
DIALOGUE_HEADING = "## Dialogue"

# Session file key -> rule attribute
_RULE_ATTRS = {key: attr for attr, key in validator.RULE_KEYS.items()}

_EMPTY_INPUT_CODES = (
    ValidationCode.MISSING_PROTOCOL_VERSION,
    ValidationCode.MISSING_CREATED,
    ValidationCode.MISSING_SESSION_ID,
    ValidationCode.MISSING_TITLE,
)


class ScanState(str, Enum):
    """Section the scanner is currently in."""

    PREAMBLE = "preamble"
    TITLE = "title"
    RULES = "rules"
    CONTEXT = "context"
    DIALOGUE = "dialogue"
    ENTRY = "entry"


class _EntryPhase(str, Enum):
    TURN_ROUND = "turn_round"
    STATUS = "status"
    FIELDS = "fields"
    BODY = "body"


def _to_int(value: str) -> Optional[int]:
    try:
        return int(value.strip())
    except ValueError:
        return None


def _to_float(value: str) -> Optional[float]:
    try:
        return float(value.strip())
    except ValueError:
        return None


def _trim_blank_lines(lines: List[str]) -> str:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return "\n".join(lines[start:end])


class _EntryBuilder:
    """Accumulates the lines of one entry block."""

    def __init__(self, entry_id: str, line: int, issues: List[ValidationIssue]):
        self.entry_id = entry_id
        self.line = line
        self.issues = issues
        self.phase = _EntryPhase.TURN_ROUND
        self.turn = 0
        self.round = 0
        self.timestamp = ""
        self.author = ""
        self.status = EntryStatus.OPEN
        self.fields: Dict[str, object] = {}
        self.body: List[str] = []
        self.has_yield = False

    @property
    def _eid(self) -> Optional[str]:
        return self.entry_id or None

    def feed(self, raw_line: str, trimmed: str, lineno: int, in_fence: bool) -> None:
        if self.phase == _EntryPhase.TURN_ROUND:
            match = TURN_ROUND_PATTERN.match(trimmed)
            if match:
                self.turn = _to_int(match.group(1)) or 0
                self.round = _to_int(match.group(2)) or 0
                self.phase = _EntryPhase.STATUS
                return
            self._missing_turn_round(lineno)
            self.phase = _EntryPhase.STATUS

        if self.phase == _EntryPhase.STATUS:
            self.phase = _EntryPhase.FIELDS
            if self._read_status(trimmed, lineno):
                return
            self.issues.append(
                error(
                    ValidationCode.MISSING_STATUS_LINE,
                    f"Missing or malformed status line for entry {self.entry_id or '<unknown>'}",
                    line=lineno,
                    entry_id=self._eid,
                )
            )

        if not in_fence and YIELD_PATTERN.match(trimmed):
            self.has_yield = True
            return

        if self.phase == _EntryPhase.FIELDS:
            match = FIELD_PATTERN.match(trimmed)
            if match and not in_fence:
                self._read_field(match.group(1), match.group(2).strip(), lineno)
                return
            self.phase = _EntryPhase.BODY
            if not trimmed:
                return

        self.body.append(raw_line)

    def _missing_turn_round(self, lineno: int) -> None:
        self.issues.append(
            error(
                ValidationCode.MISSING_TURN_ROUND,
                f"Missing or malformed turn/round comment for entry {self.entry_id or '<unknown>'}",
                line=lineno,
                entry_id=self._eid,
            )
        )

    def _read_status(self, trimmed: str, lineno: int) -> bool:
        match = STATUS_PATTERN.match(trimmed)
        if not match:
            return False
        self.timestamp = match.group(1)
        self.author = match.group(2).strip()
        raw_status = match.group(3).strip()
        try:
            self.status = EntryStatus(raw_status)
        except ValueError:
            self.issues.append(
                error(
                    ValidationCode.INVALID_ENTRY_STATUS,
                    f"Invalid entry status: '{raw_status}' for entry {self.entry_id}",
                    line=lineno,
                    entry_id=self._eid,
                )
            )
        return True

    def _read_field(self, key: str, value: str, lineno: int) -> None:
        if key == "stance":
            try:
                self.fields["stance"] = Stance(value)
            except ValueError:
                self.issues.append(
                    error(
                        ValidationCode.INVALID_STANCE,
                        f"Invalid stance value: '{value}' for entry {self.entry_id}",
                        line=lineno,
                        entry_id=self._eid,
                    )
                )
        elif key == "confidence":
            confidence = _to_float(value)
            if confidence is None or math.isnan(confidence):
                self.issues.append(
                    error(
                        ValidationCode.INVALID_CONFIDENCE,
                        f"Invalid confidence value: '{value}' for entry {self.entry_id}",
                        line=lineno,
                        entry_id=self._eid,
                    )
                )
                return
            validator.check_confidence(confidence, self.issues, line=lineno, entry_id=self._eid)
            self.fields["confidence"] = confidence
        else:
            self.fields[key] = value

    def build(self) -> ProtocolEntry:
        # A block cut off right after its marker never reached the status line
        if self.phase == _EntryPhase.TURN_ROUND:
            self._missing_turn_round(self.line)
        if self.phase in (_EntryPhase.TURN_ROUND, _EntryPhase.STATUS):
            self.issues.append(
                error(
                    ValidationCode.MISSING_STATUS_LINE,
                    f"Entry {self.entry_id or '<unknown>'} is truncated (missing status line)",
                    line=self.line,
                    entry_id=self._eid,
                )
            )
        return ProtocolEntry(
            entry_id=self.entry_id,
            turn=self.turn,
            round=self.round,
            timestamp=self.timestamp,
            author=self.author,
            status=self.status,
            fields=EntryFields(**self.fields),
            body=_trim_blank_lines(self.body),
            has_yield=self.has_yield,
        )


def _parse_enum(enum_cls, value: str):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _parse_rule_value(attr: str, value: str):
    """Convert one rule value, returning None when it is invalid."""
    if attr == "turn_order":
        return _parse_enum(TurnOrder, value)
    if attr == "consensus_mode":
        return _parse_enum(ConsensusMode, value)
    if attr == "escalation":
        return _parse_enum(EscalationPolicy, value)
    if attr == "output_format":
        return _parse_enum(OutputFormat, value)
    if attr in ("max_turns_per_round", "turn_timeout"):
        number = _to_int(value)
        return number if number is not None and number >= 1 else None
    if attr == "max_rounds":
        number = _to_int(value)
        return number if number is not None and 1 <= number <= MAX_ROUNDS_LIMIT else None
    if attr == "consensus_threshold":
        number = _to_float(value)
        return number if number is not None and 0.0 <= number <= 1.0 else None
    return None


def _split_inline_agents(value: str) -> List[str]:
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    return [name.strip() for name in value.split(",") if name.strip()]


def parse_rules_block(
    block: List[Tuple[int, str]], issues: List[ValidationIssue]
) -> Tuple[ProtocolRules, Set[str]]:
    """Parse the fenced rules block.

    Args:
        block: (line number, line) pairs from inside the fence.
        issues: List that receives INVALID_RULE_VALUE issues.

    Returns:
        The rules built from valid values, and the rule attributes that
        appeared in the block (valid or not).
    """
    values: Dict[str, object] = {}
    present: Set[str] = set()
    agents: Optional[List[str]] = None
    in_agents = False

    for lineno, line in block:
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue

        if in_agents:
            if trimmed.startswith("-"):
                agents.append(trimmed[1:].strip())
                continue
            in_agents = False

        key, sep, value = trimmed.partition(":")
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        attr = _RULE_ATTRS.get(key)
        if attr is None:
            continue
        present.add(attr)

        if attr == "agents":
            agents = _split_inline_agents(value) if value else []
            in_agents = not value
            continue

        parsed = _parse_rule_value(attr, value)
        if parsed is None:
            issues.append(
                error(ValidationCode.INVALID_RULE_VALUE, f"Invalid {key} value: '{value}'", line=lineno)
            )
            values.pop(attr, None)
        else:
            values[attr] = parsed

    if agents is not None:
        values["agents"] = agents
    return ProtocolRules(**values), present


def _decode(raw: Union[str, bytes]) -> str:
    if isinstance(raw, bytes):
        text = raw.decode("utf-8", errors="replace")
    else:
        text = raw
    return text[1:] if text.startswith("\ufeff") else text


def parse_session(raw: Union[str, bytes]) -> ParseResult:
    """Parse raw session text into a ParseResult.

    Never raises. Empty input yields ``session=None``; any other input yields
    a best-effort partial session alongside the issues found.

    Args:
        raw: Session file content as text or UTF-8 bytes.

    Returns:
        ParseResult with the (partial) session and its validation result.
    """
    text = _decode(raw)
    if not text.strip():
        issues = [error(code, "Empty input") for code in _EMPTY_INPUT_CODES]
        return ParseResult(session=None, validation=ValidationResult.from_issues(issues))

    scan_issues: List[ValidationIssue] = []
    header_values: Dict[str, str] = {}
    title: Optional[str] = None
    title_line: Optional[int] = None
    rules_block: Optional[List[Tuple[int, str]]] = None
    rules_fence_done = False
    context_lines: Optional[List[str]] = None
    seen_dialogue = False
    entries: List[ProtocolEntry] = []
    entry_lines: List[int] = []
    current: Optional[_EntryBuilder] = None

    state = ScanState.PREAMBLE
    in_fence = False

    def finish_entry() -> None:
        nonlocal current
        if current is not None:
            entries.append(current.build())
            current = None

    for index, raw_line in enumerate(text.split("\n")):
        lineno = index + 1
        line = raw_line.rstrip("\r")
        trimmed = line.strip()
        is_fence = trimmed.startswith(FENCE)

        if not in_fence:
            if trimmed in (RULES_HEADING, CONTEXT_HEADING, DIALOGUE_HEADING):
                finish_entry()
                if trimmed == RULES_HEADING:
                    state = ScanState.RULES
                    if rules_block is None:
                        rules_block = []
                elif trimmed == CONTEXT_HEADING:
                    state = ScanState.CONTEXT
                    if context_lines is None:
                        context_lines = []
                else:
                    state = ScanState.DIALOGUE
                    seen_dialogue = True
                continue

            if state in (ScanState.PREAMBLE, ScanState.TITLE):
                match = HEADER_PATTERN.match(trimmed)
                if match:
                    header_values.setdefault(match.group(1), match.group(2))
                    continue
                match = TITLE_PATTERN.match(trimmed)
                if match and title is None:
                    title = match.group(1).strip()
                    title_line = lineno
                    state = ScanState.TITLE
                    continue

            if state in (ScanState.DIALOGUE, ScanState.ENTRY):
                match = ENTRY_PATTERN.match(trimmed)
                if match:
                    finish_entry()
                    entry_id = match.group(1)
                    if not entry_id:
                        scan_issues.append(
                            error(ValidationCode.MISSING_ENTRY_ID, "Entry marker has no identifier", line=lineno)
                        )
                    current = _EntryBuilder(entry_id, lineno, scan_issues)
                    entry_lines.append(lineno)
                    state = ScanState.ENTRY
                    continue
                if state == ScanState.DIALOGUE and TURN_ROUND_PATTERN.match(trimmed):
                    # Turn/round comment with no entry marker before it
                    scan_issues.append(
                        error(ValidationCode.MISSING_ENTRY_ID, "Entry block has no entry marker", line=lineno)
                    )
                    current = _EntryBuilder("", lineno, scan_issues)
                    entry_lines.append(lineno)
                    state = ScanState.ENTRY

        if state == ScanState.RULES:
            if is_fence:
                if in_fence:
                    rules_fence_done = True
                in_fence = not in_fence
            elif in_fence and not rules_fence_done:
                rules_block.append((lineno, line))
            continue

        if is_fence:
            in_fence = not in_fence

        if state == ScanState.CONTEXT:
            context_lines.append(line)
        elif state == ScanState.ENTRY and current is not None:
            current.feed(line, trimmed, lineno, in_fence and not is_fence)

    finish_entry()

    rules: Optional[ProtocolRules] = None
    rule_keys: Set[str] = set()
    rule_issues: List[ValidationIssue] = []
    if rules_block is not None:
        rules, rule_keys = parse_rules_block(rules_block, rule_issues)

    header = SessionHeader(
        protocol_version=header_values.get("bounce-protocol"),
        created=header_values.get("created"),
        session_id=header_values.get("session-id"),
    )

    issues: List[ValidationIssue] = []
    validator.check_header(header, issues)
    validator.check_title(title, issues, line=title_line)
    validator.check_rules(rules, issues, present_keys=rule_keys, check_values=False)
    issues.extend(rule_issues)
    if context_lines is None:
        issues.append(warning(ValidationCode.MISSING_CONTEXT_SECTION, "Missing ## Context section"))
    if not seen_dialogue:
        issues.append(warning(ValidationCode.MISSING_DIALOGUE_SECTION, "Missing ## Dialogue section"))
    issues.extend(scan_issues)
    validator.check_entries(entries, rules, issues, entry_lines=entry_lines, check_fields=False)

    session = Session(
        header=header if header_values else None,
        title=title,
        rules=rules,
        context="\n".join(context_lines).strip() if context_lines is not None else None,
        entries=entries,
        raw_source=text,
    )
    result = ParseResult(session=session, validation=ValidationResult.from_issues(issues))
    logger.debug(
        f"Parsed session: {len(entries)} entries, {len(issues)} issues, valid={result.validation.valid}"
    )
    return result
