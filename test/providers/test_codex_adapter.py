"""Unit tests for the Codex adapter."""

import os
from unittest.mock import patch

import pytest

from bounce_protocol.models.adapter import AgentConfig, AgentProcess
from bounce_protocol.providers.codex import MAX_PENDING_CHARS, CodexAdapter
from bounce_protocol.providers.subprocess_adapter import _ManagedProcess


class TestCodexAdapterCommand:
    def test_identity_and_capabilities(self):
        adapter = CodexAdapter()

        assert adapter.name == "codex"
        assert adapter.capabilities.supports_conversation is False
        assert adapter.capabilities.max_context_tokens is None

    @patch.dict(os.environ, {}, clear=True)
    def test_build_command_reads_prompt_from_stdin(self):
        command = CodexAdapter().build_command(AgentConfig(args=["--json"]))

        assert command == ["codex", "exec", "-", "--json"]

    @pytest.mark.parametrize("value", ["1", "true", "YES", " on "])
    def test_full_auto_flag(self, value):
        with patch.dict(os.environ, {"BOUNCE_CODEX_FULL_AUTO": value}):
            command = CodexAdapter().build_command(AgentConfig())

        assert command == ["codex", "exec", "--full-auto", "-"]

    @patch.dict(os.environ, {"BOUNCE_CODEX_FULL_AUTO": "0"})
    def test_full_auto_disabled(self):
        assert "--full-auto" not in CodexAdapter().build_command(AgentConfig())


class TestCodexAdapterOutput:
    def test_strips_color_codes(self):
        cleaned = CodexAdapter().clean_output("\x1b[1;32mApproved\x1b[0m plan")

        assert cleaned == "Approved plan"

    def test_strips_title_sequences(self):
        cleaned = CodexAdapter().clean_output("\x1b]0;codex\x07done\x1b]2;x\x1b\\")

        assert cleaned == "done"

    def test_normalizes_line_endings(self):
        assert CodexAdapter().clean_output("a\r\nb\r\n") == "a\nb\n"

    def test_plain_text_unchanged(self):
        assert CodexAdapter().clean_output("stance: approve") == "stance: approve"


class FakeStream:
    def __init__(self, chunks):
        self.chunks = list(chunks)

    def read1(self, size):
        return self.chunks.pop(0) if self.chunks else b""


class TestCodexAdapterChunking:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("abc\x1b[3", ("abc", "\x1b[3")),
            ("abc\x1b", ("abc", "\x1b")),
            ("abc\x1b]0;ti", ("abc", "\x1b]0;ti")),
            ("abc\x1b]0;title\x1b", ("abc", "\x1b]0;title\x1b")),
            ("line\r", ("line", "\r")),
        ],
    )
    def test_partial_tail_is_held(self, text, expected):
        assert CodexAdapter().split_output(text) == expected

    @pytest.mark.parametrize(
        "text", ["done\x1b[0m", "a\r\n", "\x1b]0;codex\x07ok", "\x1b]2;x\x1b\\", "plain"]
    )
    def test_complete_text_is_ready(self, text):
        assert CodexAdapter().split_output(text) == (text, "")

    def test_long_unterminated_sequence_is_released(self):
        text = "\x1b]0;" + "x" * MAX_PENDING_CHARS

        assert CodexAdapter().split_output(text) == (text, "")

    def test_sequences_split_across_reads_are_cleaned(self):
        adapter = CodexAdapter()
        managed = _ManagedProcess(AgentProcess(id="p-1", adapter_name="codex"), None)
        received = []
        managed.listeners["test"] = received.append

        adapter._read_stream(managed, FakeStream([b"a\x1b[3", b"1mred\r", b"\n"]))

        assert "".join(received) == "ared\n"

    def test_held_tail_is_flushed_at_end_of_stream(self):
        adapter = CodexAdapter()
        managed = _ManagedProcess(AgentProcess(id="p-1", adapter_name="codex"), None)
        received = []
        managed.listeners["test"] = received.append

        adapter._read_stream(managed, FakeStream([b"last line\r"]))

        assert "".join(received) == "last line\r"
