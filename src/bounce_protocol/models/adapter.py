"""Agent adapter models."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class AgentHealth(str, Enum):
    """Health of a spawned agent process."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class AgentCapabilities(BaseModel):
    """What an agent kind can do; distinguishes adapter variants."""

    can_read_files: bool = False
    can_write_files: bool = False
    can_execute_commands: bool = False
    supports_streaming: bool = False
    supports_conversation: bool = False
    max_context_tokens: Optional[int] = None


class AgentConfig(BaseModel):
    """Configuration for spawning an agent process."""

    cwd: str = "."
    env: Dict[str, str] = Field(default_factory=dict)
    args: List[str] = Field(default_factory=list)
    session_path: Optional[str] = None


class AgentProcess(BaseModel):
    """Handle to a spawned agent process.

    The adapter that spawned it mutates the handle in place as the process
    changes state.
    """

    id: str
    adapter_name: str
    health: AgentHealth = AgentHealth.HEALTHY
    pid: Optional[int] = None
    running: bool = True
    failure_count: int = 0
    last_error: Optional[str] = None
