"""Unit tests for the session serializer."""

import re
from pathlib import Path

from bounce_protocol.models.session import (
    ConsensusMode,
    EntryFields,
    EntryStatus,
    EscalationPolicy,
    OutputFormat,
    ProtocolEntry,
    ProtocolRules,
    Stance,
    TurnOrder,
)
from bounce_protocol.protocol.parser import parse_session
from bounce_protocol.protocol.serializer import (
    create_session,
    iso_now,
    serialize_entry,
    serialize_rules,
    serialize_session,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"

RULES = ProtocolRules(
    agents=["claude-code", "codex"],
    turn_order=TurnOrder.ROUND_ROBIN,
    max_turns_per_round=1,
    turn_timeout=300,
    consensus_threshold=0.8,
    consensus_mode=ConsensusMode.UNANIMOUS,
    escalation=EscalationPolicy.DEFAULT_ACTION,
    max_rounds=5,
    output_format=OutputFormat.STRUCTURED,
)


def load_fixture(filename: str) -> str:
    with open(FIXTURES_DIR / filename, "r") as f:
        return f.read()


def structured_entry(**overrides) -> ProtocolEntry:
    values = dict(
        entry_id="e-1",
        turn=1,
        round=1,
        timestamp="2026-02-10T10:00:00.000Z",
        author="claude-code",
        status=EntryStatus.YIELD,
        fields=EntryFields(
            stance=Stance.APPROVE,
            confidence=0.75,
            summary="Ship it",
            action_requested="None",
            evidence="tests pass",
        ),
        body="Details follow.\n\nSecond paragraph.",
    )
    values.update(overrides)
    return ProtocolEntry(**values)


class TestIsoNow:
    def test_format(self):
        assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$", iso_now())


class TestSerializeRules:
    def test_canonical_order_and_wire_values(self):
        assert serialize_rules(RULES).split("\n") == [
            "agents:",
            "  - claude-code",
            "  - codex",
            "turn-order: round-robin",
            "max-turns-per-round: 1",
            "turn-timeout: 300",
            "consensus-threshold: 0.8",
            "consensus-mode: unanimous",
            "escalation: default-action",
            "max-rounds: 5",
            "output-format: structured",
        ]

    def test_unset_rules_are_omitted(self):
        assert serialize_rules(ProtocolRules(agents=["a"])) == "agents:\n  - a"


class TestCreateSession:
    def test_new_session_parses_cleanly(self):
        text = create_session("Design review", RULES, "Review the cache design.")
        result = parse_session(text)

        assert result.validation.issues == []
        assert result.session.title == "Design review"
        assert result.session.rules == RULES
        assert result.session.context == "Review the cache design."
        assert result.session.entries == []

    def test_explicit_header_values(self):
        text = create_session(
            "T",
            RULES,
            "",
            session_id="0d9c8b7a-6f5e-4d3c-9b2a-1f0e9d8c7b6a",
            created="2026-01-01T00:00:00.000Z",
        )

        assert text.startswith(
            "<!-- bounce-protocol: 0.1 -->\n"
            "<!-- created: 2026-01-01T00:00:00.000Z -->\n"
            "<!-- session-id: 0d9c8b7a-6f5e-4d3c-9b2a-1f0e9d8c7b6a -->\n"
        )
        assert text.endswith("## Dialogue\n")

    def test_generated_header_values_are_valid(self):
        header = parse_session(create_session("T", RULES, "ctx")).session.header

        assert re.match(r"^[0-9a-f-]{36}$", header.session_id)
        assert header.created.endswith("Z")


class TestSerializeEntry:
    def test_entry_block_layout(self):
        block = serialize_entry(structured_entry())

        assert block.split("\n") == [
            "<!-- entry: e-1 -->",
            "<!-- turn: 1 round: 1 -->",
            "2026-02-10T10:00:00.000Z [author: claude-code] [status: yield]",
            "stance: approve",
            "confidence: 0.75",
            "summary: Ship it",
            "action_requested: None",
            "evidence: tests pass",
            "",
            "Details follow.",
            "",
            "Second paragraph.",
            "",
            "<!-- yield -->",
            "",
        ]

    def test_missing_id_and_timestamp_are_generated(self):
        block = serialize_entry(ProtocolEntry(turn=1, round=1, author="codex"))

        entry_id = re.match(r"^<!-- entry: (\S+) -->", block).group(1)
        assert len(entry_id) == 36
        assert re.search(r"^\S+Z \[author: codex\] \[status: open\]$", block, re.MULTILINE)

    def test_unset_fields_are_omitted(self):
        block = serialize_entry(ProtocolEntry(entry_id="x", turn=1, round=1, author="codex"))

        assert "stance:" not in block
        assert "confidence:" not in block
        assert block.endswith("<!-- yield -->\n")

    def test_appended_entries_parse_back(self):
        text = create_session("T", RULES, "ctx")
        text += serialize_entry(structured_entry())
        text += "\n" + serialize_entry(structured_entry(entry_id="e-2", turn=2, author="codex"))
        result = parse_session(text)

        assert result.validation.issues == []
        assert result.session.entries[0] == structured_entry(has_yield=True)
        assert result.session.entries[1].author == "codex"

    def test_unterminated_fence_in_body_is_closed(self):
        partial = structured_entry(body="Partial answer:\n```python\nprint(1)")
        block = serialize_entry(partial)

        assert block.endswith("print(1)\n```\n\n<!-- yield -->\n")

        text = create_session("T", RULES, "ctx") + block
        text += "\n" + serialize_entry(structured_entry(entry_id="e-2", turn=2, author="codex"))
        result = parse_session(text)

        [first, second] = result.session.entries
        assert first.has_yield is True
        assert "print(1)" in first.body
        assert second.entry_id == "e-2"
        assert second.has_yield is True

    def test_balanced_fences_are_left_alone(self):
        block = serialize_entry(structured_entry(body="```\ncode\n```"))

        assert "code\n```\n\n<!-- yield -->" in block
        assert "```\n```" not in block


class TestSerializeSession:
    def test_round_trip_preserves_session(self):
        for fixture in ("valid_session.md", "fenced_body_session.md"):
            original = parse_session(load_fixture(fixture)).session
            reparsed = parse_session(serialize_session(original))

            assert reparsed.validation.issues == []
            session = reparsed.session
            assert session.header == original.header
            assert session.title == original.title
            assert session.rules == original.rules
            assert session.context == original.context
            assert session.entries == original.entries

    def test_serialization_is_stable(self):
        once = serialize_session(parse_session(load_fixture("valid_session.md")).session)
        twice = serialize_session(parse_session(once).session)

        assert once == twice

    def test_entries_without_yield_keep_it_absent(self):
        text = create_session("T", RULES, "ctx") + serialize_entry(structured_entry())
        session = parse_session(text).session
        session.entries[0].has_yield = False

        reparsed = parse_session(serialize_session(session)).session

        assert reparsed.entries[0].has_yield is False
        assert reparsed.entries[0].body == "Details follow.\n\nSecond paragraph."
