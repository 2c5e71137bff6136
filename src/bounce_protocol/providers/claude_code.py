"""Claude Code adapter implementation."""

from typing import Dict

from bounce_protocol.models.adapter import AgentCapabilities, AgentConfig
from bounce_protocol.providers.subprocess_adapter import SubprocessAdapter


class ClaudeCodeAdapter(SubprocessAdapter):
    """Adapter for the ``claude`` CLI in non-interactive print mode."""

    name = "claude-code"
    executable = "claude"
    base_args = ["--print", "--output-format", "text"]
    capabilities = AgentCapabilities(
        can_read_files=True,
        can_write_files=True,
        can_execute_commands=True,
        supports_streaming=True,
        supports_conversation=True,
        max_context_tokens=200_000,
    )

    def build_env(self, config: AgentConfig) -> Dict[str, str]:
        env = super().build_env(config)
        # Drop CLAUDECODE so an engine launched from inside a Claude Code
        # session does not trip the nested-session guard
        env.pop("CLAUDECODE", None)
        return env
