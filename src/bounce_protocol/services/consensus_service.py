"""Consensus detection over the latest round of a session.

Only each agent's most recent entry in the highest round present counts.
Agents that defer are left out of every denominator; if all of them defer the
round is deadlocked. Anomalies become result values, never exceptions.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from bounce_protocol.models.consensus import AgentStance, ConsensusOutcome, ConsensusResult
from bounce_protocol.models.session import ConsensusMode, ProtocolEntry, ProtocolRules, Stance

logger = logging.getLogger(__name__)

# Used when the rules carry no threshold; nothing short of full confidence passes
DEFAULT_THRESHOLD = 1.0


def get_latest_entries_per_agent(
    entries: Sequence[ProtocolEntry], round: Optional[int] = None
) -> Dict[str, ProtocolEntry]:
    """Map each author to their most recent entry, optionally within one round.

    Later file position wins when an author has several entries.
    """
    latest: Dict[str, ProtocolEntry] = {}
    for entry in entries:
        if round is not None and entry.round != round:
            continue
        latest[entry.author] = entry
    return latest


def _majority(active: List[AgentStance], threshold: float) -> Tuple[ConsensusOutcome, float]:
    approvers = [s for s in active if s.stance == Stance.APPROVE]
    if not approvers:
        return ConsensusOutcome.NOT_REACHED, 0.0
    mean = sum(s.confidence for s in approvers) / len(approvers)
    reached = len(approvers) > len(active) / 2 and mean >= threshold
    return (ConsensusOutcome.REACHED if reached else ConsensusOutcome.NOT_REACHED), mean


def _weighted(active: List[AgentStance], threshold: float) -> Tuple[ConsensusOutcome, float]:
    total = 0.0
    for s in active:
        if s.stance == Stance.APPROVE:
            total += s.confidence
        elif s.stance == Stance.REJECT:
            total -= s.confidence
    score = total / len(active)
    return (ConsensusOutcome.REACHED if score >= threshold else ConsensusOutcome.NOT_REACHED), score


def _unanimous(active: List[AgentStance], threshold: float) -> Tuple[ConsensusOutcome, float]:
    if all(s.stance == Stance.APPROVE and s.confidence >= threshold for s in active):
        return ConsensusOutcome.REACHED, min(s.confidence for s in active)
    return ConsensusOutcome.NOT_REACHED, 0.0


_MODES = {
    ConsensusMode.MAJORITY: _majority,
    ConsensusMode.WEIGHTED: _weighted,
    ConsensusMode.UNANIMOUS: _unanimous,
}


def detect_consensus(
    entries: Sequence[ProtocolEntry], rules: Optional[ProtocolRules]
) -> ConsensusResult:
    """Decide whether the latest round has reached agreement.

    Args:
        entries: All entries of the session in file order.
        rules: Session rules providing the consensus mode and threshold.

    Returns:
        ConsensusResult for the highest round present. ``agent_stances`` lists
        every agent's stance in that round; ``active_stances`` omits deferring
        agents.
    """
    latest_round = max((entry.round for entry in entries), default=0)
    if latest_round <= 0:
        return ConsensusResult(outcome=ConsensusOutcome.NOT_REACHED, score=0.0, round=0)

    stances = [
        AgentStance(
            agent=agent,
            stance=entry.fields.stance or Stance.NEUTRAL,
            confidence=entry.fields.confidence if entry.fields.confidence is not None else 0.0,
        )
        for agent, entry in get_latest_entries_per_agent(entries, latest_round).items()
    ]
    active = [s for s in stances if s.stance != Stance.DEFER]

    def result(outcome: ConsensusOutcome, score: float = 0.0) -> ConsensusResult:
        return ConsensusResult(
            outcome=outcome,
            score=score,
            agent_stances=stances,
            active_stances=active,
            round=latest_round,
        )

    if not stances:
        return result(ConsensusOutcome.NOT_REACHED)
    if not active:
        return result(ConsensusOutcome.DEADLOCK)

    mode = rules.consensus_mode if rules else None
    evaluate = _MODES.get(mode)
    if evaluate is None:
        logger.warning(f"Unknown consensus mode {mode!r}, treating round {latest_round} as not reached")
        return result(ConsensusOutcome.NOT_REACHED)

    threshold = rules.consensus_threshold
    if threshold is None:
        threshold = DEFAULT_THRESHOLD
    outcome, score = evaluate(active, threshold)
    logger.debug(f"Round {latest_round} consensus ({ConsensusMode(mode).value}): {outcome.value} score={score:.3f}")
    return result(outcome, score)
