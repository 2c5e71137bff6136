"""Turn coordinator: decides which agent may write next under a session's rules."""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set

from bounce_protocol.constants import (
    DEFAULT_ESCALATION,
    DEFAULT_MAX_ROUNDS,
    DEFAULT_MAX_TURNS_PER_ROUND,
    DEFAULT_TURN_ORDER,
)
from bounce_protocol.models.events import TurnEvent, TurnEventType, TurnState
from bounce_protocol.models.session import (
    EscalationPolicy,
    ProtocolEntry,
    ProtocolRules,
    TurnOrder,
)

logger = logging.getLogger(__name__)

TurnEventCallback = Callable[[TurnEvent], None]
TimerFactory = Callable[[float, Callable[[], None]], threading.Timer]

NO_AGENTS = "no-agents"
MAX_ROUNDS_REACHED = "max-rounds-reached"


def start_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    """Start a daemon timer that runs ``callback`` after ``delay`` seconds."""
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class TurnCoordinatorError(Exception):
    """Base class for turn coordinator errors."""

    code = "TURN_COORDINATOR_ERROR"


class InvalidTurnStateError(TurnCoordinatorError):
    code = "INVALID_TURN_STATE"


class TurnCoordinator:
    """State machine for turn-taking in one session.

    Transitions::

        idle -> agent-active
        agent-active -> yield-received -> next-agent -> agent-active | round-complete
        agent-active -> timeout -> escalating -> next-agent   (default-action, timeout-skip)
        agent-active -> timeout -> escalating                 (human: waits for force_advance)
        round-complete -> agent-active (next round) | session-complete

    ``max_turns_per_round`` caps how many turns each agent takes in one round.
    In round-robin order the agent list is cycled that many times per round.
    Turn timeouts run on timers from ``timer_factory``; a timer that fires
    after its turn has ended is ignored.
    """

    def __init__(
        self,
        rules: ProtocolRules,
        timer_factory: TimerFactory = start_timer,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.agents: List[str] = list(rules.agents or [])
        self.turn_order = rules.turn_order or TurnOrder(DEFAULT_TURN_ORDER)
        self.max_turns_per_round = max(1, rules.max_turns_per_round or DEFAULT_MAX_TURNS_PER_ROUND)
        self.max_rounds = max(1, rules.max_rounds or DEFAULT_MAX_ROUNDS)
        # None or non-positive disables timeouts
        self.turn_timeout = rules.turn_timeout
        self.escalation = rules.escalation or EscalationPolicy(DEFAULT_ESCALATION)
        self._timer_factory = timer_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._subscribers: Dict[int, TurnEventCallback] = {}
        self._next_subscriber = 0
        self._outbox: List[TurnEvent] = []

        self._state = TurnState.IDLE
        self._current_agent: Optional[str] = None
        self._round = 0
        self._turn = 0
        self._turn_started_at: Optional[float] = None
        self._completion_reason: Optional[str] = None
        self._timer: Optional[threading.Timer] = None
        self._timer_generation = 0
        self._reset_round()

    # Subscribers

    def subscribe(self, callback: TurnEventCallback) -> Callable[[], None]:
        """Receive every turn event. Returns a function that unsubscribes."""
        with self._lock:
            key = self._next_subscriber
            self._next_subscriber += 1
            self._subscribers[key] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(key, None)

        return unsubscribe

    def _queue(self, event_type: TurnEventType, agent: Optional[str] = None, detail: Optional[str] = None):
        self._outbox.append(
            TurnEvent(type=event_type, agent=agent, round=self._round, turn=self._turn, detail=detail)
        )

    def _flush(self) -> None:
        with self._lock:
            events, self._outbox = self._outbox, []
            callbacks = list(self._subscribers.values())
        for event in events:
            for callback in callbacks:
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"Turn event subscriber failed on {event.type.value}")

    # Read-only view

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def current_agent(self) -> Optional[str]:
        return self._current_agent

    @property
    def current_round(self) -> int:
        return self._round

    @property
    def current_turn(self) -> int:
        return self._turn

    @property
    def completion_reason(self) -> Optional[str]:
        return self._completion_reason

    def is_complete(self) -> bool:
        return self._state == TurnState.SESSION_COMPLETE

    def seconds_remaining(self) -> Optional[float]:
        """Time left in the active turn, or None when no timeout is running."""
        with self._lock:
            if self._state != TurnState.AGENT_ACTIVE or not self._timeout_enabled():
                return None
            elapsed = self._clock() - self._turn_started_at
            return max(0.0, self.turn_timeout - elapsed)

    def is_agent_allowed(self, agent: str) -> bool:
        """True if ``agent`` may write an entry now."""
        with self._lock:
            if self._state != TurnState.AGENT_ACTIVE:
                return False
            if self.turn_order == TurnOrder.FREE_FORM:
                return agent in self.agents and self._contributed.get(agent, 0) < self.max_turns_per_round
            return agent == self._current_agent

    # Actions

    def start(self) -> None:
        """Activate the first agent of round 1.

        Raises:
            InvalidTurnStateError: If the coordinator was already started.
        """
        with self._lock:
            if self._state != TurnState.IDLE:
                raise InvalidTurnStateError(
                    f"Cannot start: coordinator is in state '{self._state.value}', expected 'idle'"
                )
            if not self.agents:
                self._complete_session(NO_AGENTS)
            else:
                self._round = 1
                self._turn = 1
                self._reset_round()
                self._activate(self.agents[0])
        self._flush()

    def record_entry(self, entry: ProtocolEntry) -> None:
        """Note an entry written by an agent.

        In free-form order the entry counts towards the author's turns. In
        supervised order an ``action_requested`` naming another agent picks
        who goes next.
        """
        with self._lock:
            if self._state == TurnState.SESSION_COMPLETE:
                return
            author = entry.author
            if self.turn_order == TurnOrder.FREE_FORM and author in self.agents:
                self._contributed[author] = self._contributed.get(author, 0) + 1
            if self.turn_order == TurnOrder.SUPERVISED:
                requested = (entry.fields.action_requested or "").strip()
                if requested and requested.lower() != "n/a":
                    named = next((agent for agent in self.agents if agent in requested), None)
                    if named:
                        self._supervised_next = named

    def record_yield(self, agent: str) -> None:
        """Hand the turn on after ``agent`` yielded. Ignored unless a turn is active."""
        with self._lock:
            if self._state != TurnState.AGENT_ACTIVE:
                return
            self._cancel_timer()
            if self.turn_order == TurnOrder.FREE_FORM:
                self._yielded.add(agent)
            self._transition(TurnState.YIELD_RECEIVED)
            self._advance()
        self._flush()

    def record_entries(self, entries: List[ProtocolEntry]) -> None:
        """Record each entry, and its yield when it has one, in file order."""
        for entry in entries:
            self.record_entry(entry)
            if entry.has_yield:
                self.record_yield(entry.author)

    def force_advance(self) -> None:
        """Move on to the next agent, e.g. after a human resolves an escalation."""
        with self._lock:
            if self._state in (TurnState.IDLE, TurnState.SESSION_COMPLETE):
                return
            self._cancel_timer()
            self._advance()
        self._flush()

    def dispose(self) -> None:
        """Cancel the running timeout and drop all subscribers."""
        with self._lock:
            self._cancel_timer()
            self._subscribers.clear()

    # State machine

    def _reset_round(self) -> None:
        self._rr_index = 0
        self._contributed: Dict[str, int] = {}
        self._yielded: Set[str] = set()
        self._activations: Dict[str, int] = {}
        self._supervised_next: Optional[str] = None

    def _transition(self, new_state: TurnState) -> None:
        old_state = self._state
        self._state = new_state
        self._queue(TurnEventType.STATE_CHANGED, detail=f"{old_state.value} -> {new_state.value}")

    def _activate(self, agent: str) -> None:
        self._current_agent = agent
        self._activations[agent] = self._activations.get(agent, 0) + 1
        self._transition(TurnState.AGENT_ACTIVE)
        self._start_timer()
        logger.info(f"Round {self._round} turn {self._turn}: '{agent}' is active")
        self._queue(TurnEventType.AGENT_TURN, agent=agent)

    def _advance(self) -> None:
        self._transition(TurnState.NEXT_AGENT)
        if self.turn_order == TurnOrder.FREE_FORM:
            self._advance_free_form()
        elif self.turn_order == TurnOrder.SUPERVISED:
            self._advance_supervised()
        else:
            self._advance_round_robin()

    def _advance_round_robin(self) -> None:
        self._rr_index += 1
        if self._rr_index >= len(self.agents) * self.max_turns_per_round:
            self._complete_round()
            return
        self._turn += 1
        self._activate(self.agents[self._rr_index % len(self.agents)])

    def _advance_free_form(self) -> None:
        all_contributed = all(self._contributed.get(agent, 0) > 0 for agent in self.agents)
        all_yielded = all(agent in self._yielded for agent in self.agents)
        if all_contributed or all_yielded:
            self._complete_round()
            return
        waiting = next(agent for agent in self.agents if self._contributed.get(agent, 0) == 0)
        self._turn += 1
        self._activate(waiting)

    def _advance_supervised(self) -> None:
        requested, self._supervised_next = self._supervised_next, None
        if requested is None or self._activations.get(requested, 0) >= self.max_turns_per_round:
            self._complete_round()
            return
        self._turn += 1
        self._activate(requested)

    def _complete_round(self) -> None:
        self._transition(TurnState.ROUND_COMPLETE)
        self._queue(TurnEventType.ROUND_COMPLETE)
        logger.info(f"Round {self._round} complete")
        if self._round >= self.max_rounds:
            self._complete_session(MAX_ROUNDS_REACHED)
            return
        self._round += 1
        self._turn = 1
        self._reset_round()
        self._activate(self.agents[0])

    def _complete_session(self, reason: str) -> None:
        self._cancel_timer()
        self._current_agent = None
        self._completion_reason = reason
        self._transition(TurnState.SESSION_COMPLETE)
        self._queue(TurnEventType.SESSION_COMPLETE, detail=reason)
        logger.info(f"Session complete: {reason}")

    # Timeouts

    def _timeout_enabled(self) -> bool:
        return self.turn_timeout is not None and self.turn_timeout > 0

    def _start_timer(self) -> None:
        self._cancel_timer()
        self._turn_started_at = self._clock()
        if not self._timeout_enabled():
            return
        generation = self._timer_generation
        self._timer = self._timer_factory(float(self.turn_timeout), lambda: self._on_timeout(generation))

    def _cancel_timer(self) -> None:
        # Invalidates a callback that already fired but has not taken the lock yet
        self._timer_generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self, generation: int) -> None:
        with self._lock:
            if generation != self._timer_generation or self._state != TurnState.AGENT_ACTIVE:
                return
            self._timer = None
            agent = self._current_agent
            logger.warning(f"Agent '{agent}' timed out after {self.turn_timeout}s")
            self._transition(TurnState.TIMEOUT)
            self._queue(TurnEventType.TIMEOUT, agent=agent)
            self._transition(TurnState.ESCALATING)
            self._escalate(agent)
        self._flush()

    def _escalate(self, agent: Optional[str]) -> None:
        reason = f"Timeout for agent '{agent or 'unknown'}', policy: {self.escalation.value}"
        self._queue(TurnEventType.ESCALATION, agent=agent, detail=reason)
        if self.escalation == EscalationPolicy.HUMAN:
            return
        if self.turn_order == TurnOrder.FREE_FORM and agent:
            self._contributed.setdefault(agent, 1)
            self._yielded.add(agent)
        self._advance()
