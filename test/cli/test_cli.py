"""Tests for the bounce CLI commands."""

import json
import shutil
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from bounce_protocol.cli.main import cli
from bounce_protocol.services.session_service import load_session

FIXTURES_DIR = Path(__file__).parent.parent / "protocol" / "fixtures"

FULL_ENTRY = [
    "--author", "claude-code",
    "--turn", "1",
    "--round", "1",
    "--stance", "approve",
    "--confidence", "0.8",
    "--summary", "Looks right",
    "--action-requested", "none",
    "--evidence", "tests pass",
]


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("bounce_protocol.cli.main.setup_logging"):
        yield


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def valid_session(tmp_path):
    path = tmp_path / "valid_session.md"
    shutil.copy(FIXTURES_DIR / "valid_session.md", path)
    return path


def create(runner, directory, *extra):
    return runner.invoke(
        cli,
        [
            "new", str(directory),
            "--title", "Design review",
            "--agent", "claude-code",
            "--agent", "codex",
            "--context", "Pick a cache strategy.",
            *extra,
        ],
    )


class TestValidateCommand:
    def test_valid_file(self, runner, valid_session):
        result = runner.invoke(cli, ["validate", str(valid_session)])

        assert result.exit_code == 0
        assert "valid (0 errors, 0 warnings)" in result.output

    def test_invalid_file_exits_nonzero(self, runner, tmp_path):
        path = tmp_path / "broken.md"
        path.write_text("# Not a session\n")

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "MISSING_PROTOCOL_VERSION" in result.output
        assert "invalid" in result.output

    def test_json_output(self, runner, valid_session):
        result = runner.invoke(cli, ["validate", "--json", str(valid_session)])

        assert result.exit_code == 0
        assert json.loads(result.output) == {"valid": True, "issues": []}

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["validate", str(tmp_path / "absent.md")])

        assert result.exit_code == 1
        assert "Cannot read" in result.output


class TestConsensusCommand:
    def test_reached(self, runner, valid_session):
        result = runner.invoke(cli, ["consensus", str(valid_session)])

        assert result.exit_code == 0
        assert "Round 1: reached (score 0.875)" in result.output
        assert "  claude-code: approve (0.85)" in result.output

    def test_file_without_rules(self, runner, tmp_path):
        path = tmp_path / "norules.md"
        path.write_text(
            "<!-- bounce-protocol: 0.1 -->\n"
            "<!-- created: 2026-02-10T09:00:00.000Z -->\n"
            "<!-- session-id: 3f2b6c1e-8a4d-4e2b-9c7a-1d5e8f0a2b3c -->\n\n"
            "# Title\n\n## Context\n\nSomething.\n\n## Dialogue\n"
        )

        result = runner.invoke(cli, ["consensus", str(path)])

        assert result.exit_code == 1
        assert "has no rules section" in result.output


class TestNewCommand:
    def test_creates_valid_session(self, runner, tmp_path):
        result = create(runner, tmp_path, "--filename", "review")

        assert result.exit_code == 0
        path = tmp_path / "review.md"
        assert f"Session created: {path}" in result.output
        session = load_session(path)
        assert session.validation.issues == []
        assert session.session.rules.agents == ["claude-code", "codex"]
        assert session.session.rules.consensus_threshold == 0.7

    def test_default_filename_is_dated_slug(self, runner, tmp_path):
        result = create(runner, tmp_path)

        assert result.exit_code == 0
        [path] = tmp_path.iterdir()
        assert path.name.endswith("-design-review.md")

    def test_refuses_existing_file(self, runner, tmp_path):
        create(runner, tmp_path, "--filename", "review")

        result = create(runner, tmp_path, "--filename", "review")

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_duplicate_agents_rejected(self, runner, tmp_path):
        result = create(runner, tmp_path, "--agent", "codex")

        assert result.exit_code == 1
        assert "Duplicate agent name" in result.output
        assert list(tmp_path.iterdir()) == []

    def test_bad_choice(self, runner, tmp_path):
        result = create(runner, tmp_path, "--consensus-mode", "plurality")

        assert result.exit_code == 2


class TestAppendCommand:
    def test_appends_entry(self, runner, tmp_path):
        create(runner, tmp_path, "--filename", "review")
        path = tmp_path / "review.md"

        result = runner.invoke(cli, ["append", str(path), *FULL_ENTRY, "--body", "Ship it."])

        assert result.exit_code == 0
        assert "Entry appended:" in result.output
        session = load_session(path)
        assert session.validation.issues == []
        [entry] = session.session.entries
        assert entry.author == "claude-code"
        assert entry.fields.confidence == 0.8
        assert entry.body == "Ship it."

    def test_body_from_stdin(self, runner, tmp_path):
        create(runner, tmp_path, "--filename", "review")
        path = tmp_path / "review.md"

        result = runner.invoke(
            cli, ["append", str(path), *FULL_ENTRY, "--body", "-"], input="From stdin.\n"
        )

        assert result.exit_code == 0
        assert load_session(path).session.entries[0].body == "From stdin."

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["append", str(tmp_path / "absent.md"), *FULL_ENTRY])

        assert result.exit_code == 1
        assert "Session file not found" in result.output

    def test_confidence_out_of_range(self, runner, valid_session):
        before = valid_session.read_bytes()
        args = [a if a != "0.8" else "1.5" for a in FULL_ENTRY]

        result = runner.invoke(cli, ["append", str(valid_session), *args])

        assert result.exit_code == 2
        assert valid_session.read_bytes() == before


class TestAgentsCommand:
    @patch("bounce_protocol.cli.commands.agents.create_default_registry")
    def test_lists_availability(self, mock_create_registry, runner):
        installed, missing = MagicMock(), MagicMock()
        installed.name, missing.name = "claude-code", "codex"
        registry = mock_create_registry.return_value
        registry.list.return_value = [installed, missing]
        registry.discover_available.return_value = [installed]

        result = runner.invoke(cli, ["agents"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].split() == ["claude-code", "available"]
        assert lines[1].split() == ["codex", "not", "found"]


class TestWatchCommand:
    def test_reports_existing_sessions(self, runner, tmp_path, valid_session):
        result = runner.invoke(cli, ["watch", str(tmp_path), "--duration", "0.3"])

        assert result.exit_code == 0
        assert "session-created" in result.output
        assert f"Watching {tmp_path}" in result.output


class TestTurnCommand:
    def test_reports_next_agent_after_replay(self, runner, valid_session):
        result = runner.invoke(cli, ["turn", str(valid_session)])

        assert result.exit_code == 0
        assert result.output.strip() == "Round 2 turn 1: claude-code (round-robin)"

    def test_fresh_session_starts_with_first_agent(self, runner, tmp_path):
        create(runner, tmp_path, "--filename", "review")

        result = runner.invoke(cli, ["turn", str(tmp_path / "review.md")])

        assert result.exit_code == 0
        assert result.output.startswith("Round 1 turn 1: claude-code")

    def test_last_round_finished(self, runner, tmp_path):
        create(runner, tmp_path, "--filename", "review", "--max-rounds", "1")
        path = tmp_path / "review.md"
        for author in ("claude-code", "codex"):
            args = [a if a != "claude-code" else author for a in FULL_ENTRY]
            runner.invoke(cli, ["append", str(path), *args])

        result = runner.invoke(cli, ["turn", str(path)])

        assert result.exit_code == 0
        assert "Session complete (max-rounds-reached)" in result.output
