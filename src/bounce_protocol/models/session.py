"""Session file models.

Plain data structures for a parsed Bounce session: header, rules and dialogue
entries. Every field a malformed file can omit is optional, so a partial parse
is still representable.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class TurnOrder(str, Enum):
    """How turns are assigned within a round."""

    ROUND_ROBIN = "round-robin"
    FREE_FORM = "free-form"
    SUPERVISED = "supervised"


class ConsensusMode(str, Enum):
    """Rule used to compute agreement from agent stances."""

    MAJORITY = "majority"
    WEIGHTED = "weighted"
    UNANIMOUS = "unanimous"


class EscalationPolicy(str, Enum):
    """Action taken when a turn times out or the session cannot progress."""

    HUMAN = "human"
    DEFAULT_ACTION = "default-action"
    TIMEOUT_SKIP = "timeout-skip"


class OutputFormat(str, Enum):
    """Whether entries must carry structured fields."""

    STRUCTURED = "structured"
    FREE_TEXT = "free-text"


class Stance(str, Enum):
    """An agent's declared position on the current proposal."""

    APPROVE = "approve"
    REJECT = "reject"
    NEUTRAL = "neutral"
    DEFER = "defer"


class EntryStatus(str, Enum):
    """Completion state of a single entry."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    YIELD = "yield"


class SessionHeader(BaseModel):
    """Machine-readable metadata from the header comments."""

    protocol_version: Optional[str] = None
    created: Optional[str] = None
    session_id: Optional[str] = None


class ProtocolRules(BaseModel):
    """Rules governing a session. Fixed for the session's lifetime."""

    agents: Optional[List[str]] = None
    turn_order: Optional[TurnOrder] = None
    max_turns_per_round: Optional[int] = None
    turn_timeout: Optional[int] = None
    consensus_threshold: Optional[float] = None
    consensus_mode: Optional[ConsensusMode] = None
    escalation: Optional[EscalationPolicy] = None
    max_rounds: Optional[int] = None
    output_format: Optional[OutputFormat] = None


class EntryFields(BaseModel):
    """Structured fields of an entry; required only for structured output."""

    stance: Optional[Stance] = None
    confidence: Optional[float] = None
    summary: Optional[str] = None
    action_requested: Optional[str] = None
    evidence: Optional[str] = None


class ProtocolEntry(BaseModel):
    """A single agent contribution to the dialogue."""

    entry_id: str = ""
    turn: int = 0
    round: int = 0
    timestamp: str = ""
    author: str = ""
    status: EntryStatus = EntryStatus.OPEN
    fields: EntryFields = Field(default_factory=EntryFields)
    body: str = ""
    has_yield: bool = False


class Session(BaseModel):
    """A parsed (possibly partial) session file."""

    header: Optional[SessionHeader] = None
    title: Optional[str] = None
    rules: Optional[ProtocolRules] = None
    context: Optional[str] = None
    entries: List[ProtocolEntry] = Field(default_factory=list)
    raw_source: str = ""
