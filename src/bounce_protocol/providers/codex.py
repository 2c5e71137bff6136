"""Codex CLI adapter implementation."""

import os
import re
from typing import List, Tuple

from bounce_protocol.models.adapter import AgentCapabilities, AgentConfig
from bounce_protocol.providers.subprocess_adapter import SubprocessAdapter

# Control sequences Codex may emit even when not attached to a terminal
ANSI_CODE_PATTERN = r"\x1b\[[0-?]*[ -/]*[@-~]"
OSC_PATTERN = r"\x1b\][^\x07]*(?:\x07|\x1b\\)"
# A control sequence or carriage return cut off at the end of a read
PARTIAL_SEQUENCE_PATTERN = re.compile(r"(?:\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*\x1b?)?|\r)\Z")
MAX_PENDING_CHARS = 256


def _is_truthy_env(name: str) -> bool:
    """Parse boolean env var using common truthy values."""
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


class CodexAdapter(SubprocessAdapter):
    """Adapter for ``codex exec``, which reads a single prompt from stdin."""

    name = "codex"
    executable = "codex"
    base_args = ["exec", "-"]
    capabilities = AgentCapabilities(
        can_read_files=True,
        can_write_files=True,
        can_execute_commands=True,
        supports_streaming=True,
        supports_conversation=False,
        max_context_tokens=None,
    )

    def build_command(self, config: AgentConfig) -> List[str]:
        command = super().build_command(config)
        if _is_truthy_env("BOUNCE_CODEX_FULL_AUTO"):
            command.insert(2, "--full-auto")
        return command

    def clean_output(self, chunk: str) -> str:
        """Strip control sequences and normalize line endings."""
        chunk = re.sub(OSC_PATTERN, "", chunk)
        chunk = re.sub(ANSI_CODE_PATTERN, "", chunk)
        return chunk.replace("\r\n", "\n")

    def split_output(self, text: str) -> Tuple[str, str]:
        """Hold back a trailing partial escape sequence or ``\\r`` until the next read."""
        match = PARTIAL_SEQUENCE_PATTERN.search(text)
        if match is None or len(text) - match.start() > MAX_PENDING_CHARS:
            return text, ""
        return text[: match.start()], text[match.start() :]
