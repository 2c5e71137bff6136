"""Consensus result models."""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field

from bounce_protocol.models.session import Stance


class ConsensusOutcome(str, Enum):
    """Outcome of a consensus check on the latest round."""

    REACHED = "reached"
    NOT_REACHED = "not-reached"
    DEADLOCK = "deadlock"


class AgentStance(BaseModel):
    """Stance an agent holds in the evaluated round."""

    agent: str
    stance: Stance
    confidence: float


class ConsensusResult(BaseModel):
    """Agreement outcome for one round.

    ``agent_stances`` is the per-agent snapshot and includes deferring agents;
    ``active_stances`` excludes them.
    """

    outcome: ConsensusOutcome
    score: float = 0.0
    agent_stances: List[AgentStance] = Field(default_factory=list)
    active_stances: List[AgentStance] = Field(default_factory=list)
    round: int = 0
