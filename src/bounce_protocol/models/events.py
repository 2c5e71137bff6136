"""Watcher, agent and turn event models."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from bounce_protocol.models.session import ProtocolEntry
from bounce_protocol.models.validation import ParseResult


class WatcherEventType(str, Enum):
    """Kinds of change the session watcher publishes."""

    CREATED = "session-created"
    UPDATED = "session-updated"
    DELETED = "session-deleted"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class WatcherEvent(BaseModel):
    """A meaningful change to one session file."""

    type: WatcherEventType
    session_path: str
    new_entries: Optional[List[ProtocolEntry]] = None
    parse_result: Optional[ParseResult] = None
    timestamp: str = Field(default_factory=_utc_now_iso)


class AgentEventType(str, Enum):
    """Lifecycle events published by the agent manager."""

    SPAWNED = "agent-spawned"
    STOPPED = "agent-stopped"
    CRASHED = "agent-crashed"
    HEALTH_CHANGED = "agent-health-changed"
    OUTPUT = "agent-output"


class AgentEvent(BaseModel):
    """One agent lifecycle event. ``detail`` carries the output chunk, stop reason or error."""

    type: AgentEventType
    process_id: str
    adapter_name: str
    detail: Optional[str] = None
    timestamp: str = Field(default_factory=_utc_now_iso)


class TurnState(str, Enum):
    """States of the turn coordinator."""

    IDLE = "idle"
    AGENT_ACTIVE = "agent-active"
    YIELD_RECEIVED = "yield-received"
    NEXT_AGENT = "next-agent"
    TIMEOUT = "timeout"
    ESCALATING = "escalating"
    ROUND_COMPLETE = "round-complete"
    SESSION_COMPLETE = "session-complete"


class TurnEventType(str, Enum):
    """Events published by the turn coordinator."""

    STATE_CHANGED = "state-changed"
    AGENT_TURN = "agent-turn"
    TIMEOUT = "turn-timeout"
    ESCALATION = "escalation"
    ROUND_COMPLETE = "round-complete"
    SESSION_COMPLETE = "session-complete"


class TurnEvent(BaseModel):
    """One turn coordinator event.

    ``detail`` carries the state transition (``"idle -> agent-active"``), the
    escalation reason or the session completion reason.
    """

    type: TurnEventType
    agent: Optional[str] = None
    round: int = 0
    turn: int = 0
    detail: Optional[str] = None
    timestamp: str = Field(default_factory=_utc_now_iso)
