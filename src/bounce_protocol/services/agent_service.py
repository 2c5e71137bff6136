"""Agent manager: spawns, tracks and stops agent processes across adapters."""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from bounce_protocol.constants import (
    CIRCUIT_BREAKER_COOLDOWN_SECONDS,
    CIRCUIT_BREAKER_FAILURE_THRESHOLD,
    HEALTH_CHECK_INTERVAL_SECONDS,
    MAX_CONCURRENT_AGENTS,
)
from bounce_protocol.models.adapter import AgentConfig, AgentHealth, AgentProcess
from bounce_protocol.models.events import AgentEvent, AgentEventType
from bounce_protocol.providers.base import (
    BaseAdapter,
    ProcessCrashedError,
    ProcessNotRunningError,
)
from bounce_protocol.providers.registry import AdapterRegistry, create_default_registry
from bounce_protocol.utils.circuit_breaker import CircuitBreaker, CircuitSnapshot

logger = logging.getLogger(__name__)

AgentEventCallback = Callable[[AgentEvent], None]


class AgentManagerError(Exception):
    """Base class for agent manager errors."""

    code = "AGENT_MANAGER_ERROR"


class UnknownAdapterError(AgentManagerError):
    code = "UNKNOWN_ADAPTER"


class AgentNotFoundError(AgentManagerError):
    code = "AGENT_NOT_FOUND"


class ConcurrencyLimitError(AgentManagerError):
    code = "CONCURRENCY_LIMIT"


class SpawnFailedError(AgentManagerError):
    code = "SPAWN_FAILED"


class ManagerShutdownError(AgentManagerError):
    code = "SHUTTING_DOWN"


class CircuitOpenError(AgentManagerError):
    """Spawning refused because the adapter's breaker is open."""

    code = "CIRCUIT_OPEN"

    def __init__(self, adapter_name: str, retry_in_seconds: float):
        super().__init__(
            f"Adapter '{adapter_name}' is unavailable (circuit open), "
            f"retry in {retry_in_seconds:.1f}s"
        )
        self.adapter_name = adapter_name
        self.retry_in_seconds = retry_in_seconds


class _ManagedAgent:
    def __init__(self, process: AgentProcess, adapter: BaseAdapter, config: AgentConfig):
        self.process = process
        self.adapter = adapter
        self.config = config
        self.output_unsubscribe: Optional[Callable[[], None]] = None
        self.last_health = process.health


class AgentManager:
    """Owns the live agent processes of one coordinating object.

    Each adapter gets its own circuit breaker: a spawn that raises or returns
    a dead handle counts as a failure, and an open breaker refuses further
    spawns until its cooldown passes.
    """

    def __init__(
        self,
        registry: Optional[AdapterRegistry] = None,
        max_concurrent: int = MAX_CONCURRENT_AGENTS,
        failure_threshold: int = CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        cooldown_seconds: float = CIRCUIT_BREAKER_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry if registry is not None else create_default_registry()
        self.max_concurrent = max_concurrent
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._agents: Dict[str, _ManagedAgent] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._subscribers: Dict[int, AgentEventCallback] = {}
        self._next_subscriber = 0
        self._lock = threading.RLock()
        self._spawn_lock = threading.Lock()
        self._shutting_down = False
        self._health_stop: Optional[threading.Event] = None
        self._health_thread: Optional[threading.Thread] = None

    # Subscribers

    def subscribe(self, callback: AgentEventCallback) -> Callable[[], None]:
        """Receive every agent event. Returns a function that unsubscribes."""
        with self._lock:
            key = self._next_subscriber
            self._next_subscriber += 1
            self._subscribers[key] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(key, None)

        return unsubscribe

    def _emit(self, event: AgentEvent) -> None:
        with self._lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Agent event subscriber failed on {event.type.value}")

    # Breakers

    def _breaker(self, adapter_name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(adapter_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    failure_threshold=self._failure_threshold,
                    cooldown_seconds=self._cooldown_seconds,
                    clock=self._clock,
                    name=adapter_name,
                )
                self._breakers[adapter_name] = breaker
            return breaker

    def circuit_snapshot(self, adapter_name: str) -> CircuitSnapshot:
        return self._breaker(adapter_name).snapshot()

    # Lifecycle

    def _running_count(self) -> int:
        with self._lock:
            return sum(1 for managed in self._agents.values() if managed.process.running)

    def spawn_agent(self, adapter_name: str, config: Optional[AgentConfig] = None) -> AgentProcess:
        """Spawn an agent with the named adapter.

        Raises:
            ManagerShutdownError: If shutdown has started.
            UnknownAdapterError: If no adapter has that name.
            ConcurrencyLimitError: If the running-agent limit is reached.
            CircuitOpenError: If the adapter's breaker refuses the request.
            SpawnFailedError: If the process died during spawn.
        """
        config = config or AgentConfig()
        if self._shutting_down:
            raise ManagerShutdownError("Agent manager is shutting down")

        adapter = self.registry.get(adapter_name)
        if adapter is None:
            raise UnknownAdapterError(f"No adapter registered with name '{adapter_name}'")

        with self._spawn_lock:
            running = self._running_count()
            if running >= self.max_concurrent:
                raise ConcurrencyLimitError(
                    f"Concurrency limit reached: {running}/{self.max_concurrent} agents running"
                )

            breaker = self._breaker(adapter_name)
            if not breaker.allow_request():
                raise CircuitOpenError(adapter_name, breaker.snapshot().retry_in_seconds)

            try:
                process = adapter.spawn(config)
            except Exception as e:
                breaker.record_failure()
                logger.error(f"Failed to spawn agent with '{adapter_name}': {e}")
                raise

            if not process.running:
                breaker.record_failure()
                try:
                    adapter.kill(process)
                except Exception as e:
                    logger.warning(f"Failed to release dead process {process.id}: {e}")
                raise SpawnFailedError(
                    f"Agent '{adapter_name}' died during spawn: {process.last_error}"
                )

            breaker.record_success()
            managed = _ManagedAgent(process, adapter, config)
            with self._lock:
                self._agents[process.id] = managed

        managed.output_unsubscribe = adapter.on_output(
            process,
            lambda chunk: self._emit(
                AgentEvent(
                    type=AgentEventType.OUTPUT,
                    process_id=process.id,
                    adapter_name=adapter_name,
                    detail=chunk,
                )
            ),
        )
        logger.info(f"Spawned agent {process.id} with adapter '{adapter_name}'")
        self._emit(
            AgentEvent(type=AgentEventType.SPAWNED, process_id=process.id, adapter_name=adapter_name)
        )
        return process

    def _get(self, process_id: str) -> _ManagedAgent:
        with self._lock:
            managed = self._agents.get(process_id)
        if managed is None:
            raise AgentNotFoundError(f"No agent found with id '{process_id}'")
        return managed

    def get_agent(self, process_id: str) -> Optional[AgentProcess]:
        with self._lock:
            managed = self._agents.get(process_id)
        return managed.process if managed else None

    def list_agents(self) -> List[AgentProcess]:
        with self._lock:
            return [managed.process for managed in self._agents.values()]

    def send_prompt(self, process_id: str, prompt: str) -> None:
        """Send a prompt to a tracked agent.

        Raises:
            AgentNotFoundError: If the agent is not tracked.
            ProcessNotRunningError: If the agent is no longer running.
            ProcessCrashedError: If the agent crashed while receiving the prompt.
        """
        managed = self._get(process_id)
        if not managed.process.running:
            raise ProcessNotRunningError(f"Agent '{process_id}' is not running", process_id)
        try:
            managed.adapter.send_prompt(managed.process, prompt)
        except ProcessCrashedError as e:
            managed.last_health = AgentHealth.UNHEALTHY
            self._emit(
                AgentEvent(
                    type=AgentEventType.CRASHED,
                    process_id=process_id,
                    adapter_name=managed.adapter.name,
                    detail=str(e),
                )
            )
            raise

    def _release(self, process_id: str, reason: str) -> None:
        with self._lock:
            managed = self._agents.pop(process_id, None)
        if managed is None:
            raise AgentNotFoundError(f"No agent found with id '{process_id}'")

        if managed.output_unsubscribe:
            managed.output_unsubscribe()
            managed.output_unsubscribe = None
        try:
            managed.adapter.kill(managed.process)
        except Exception as e:
            logger.warning(f"Adapter failed to kill agent {process_id}: {e}")
        managed.process.running = False

        logger.info(f"Stopped agent {process_id} ({reason})")
        self._emit(
            AgentEvent(
                type=AgentEventType.STOPPED,
                process_id=process_id,
                adapter_name=managed.adapter.name,
                detail=reason,
            )
        )

    def kill_agent(self, process_id: str) -> None:
        """Stop one agent. Raises AgentNotFoundError if it is not tracked."""
        self._release(process_id, "killed")

    def kill_all(self, reason: str = "killed") -> None:
        with self._lock:
            process_ids = list(self._agents)
        for process_id in process_ids:
            try:
                self._release(process_id, reason)
            except AgentNotFoundError:
                # Stopped concurrently
                continue

    # Health

    def run_health_checks(self) -> None:
        """Check every tracked agent once.

        A process that died with a failure is reported as crashed and stays
        tracked until killed. A process that exited cleanly is released.
        """
        with self._lock:
            agents = list(self._agents.items())

        for process_id, managed in agents:
            process = managed.process
            previous = managed.last_health
            alive = managed.adapter.is_alive(process)

            if alive:
                if previous != AgentHealth.HEALTHY:
                    process.health = AgentHealth.HEALTHY
                    managed.last_health = AgentHealth.HEALTHY
                    self._emit_health_change(managed, previous)
                continue

            if process.health != AgentHealth.UNHEALTHY:
                self._release(process_id, "exited")
                continue

            if previous == AgentHealth.UNHEALTHY:
                continue
            process.health = AgentHealth.UNHEALTHY
            process.running = False
            managed.last_health = AgentHealth.UNHEALTHY
            logger.warning(f"Agent {process_id} failed health check: {process.last_error}")
            self._emit_health_change(managed, previous)
            self._emit(
                AgentEvent(
                    type=AgentEventType.CRASHED,
                    process_id=process_id,
                    adapter_name=managed.adapter.name,
                    detail=process.last_error or "Health check failed: agent is not alive",
                )
            )

    def _emit_health_change(self, managed: _ManagedAgent, previous: AgentHealth) -> None:
        self._emit(
            AgentEvent(
                type=AgentEventType.HEALTH_CHANGED,
                process_id=managed.process.id,
                adapter_name=managed.adapter.name,
                detail=f"{previous.value} -> {managed.last_health.value}",
            )
        )

    def start_health_checks(self, interval_seconds: float = HEALTH_CHECK_INTERVAL_SECONDS) -> None:
        """Run health checks on a background thread until stopped."""
        if self._health_thread is not None:
            return
        stop = threading.Event()

        def loop() -> None:
            while not stop.wait(interval_seconds):
                try:
                    self.run_health_checks()
                except Exception:
                    logger.exception("Health check round failed")

        self._health_stop = stop
        self._health_thread = threading.Thread(target=loop, name="agent-health", daemon=True)
        self._health_thread.start()

    def stop_health_checks(self) -> None:
        if self._health_thread is None:
            return
        self._health_stop.set()
        if self._health_thread is not threading.current_thread():
            self._health_thread.join()
        self._health_thread = None
        self._health_stop = None

    def shutdown(self) -> None:
        """Stop every agent and refuse further spawns."""
        self._shutting_down = True
        self.stop_health_checks()
        self.kill_all(reason="shutdown")
        with self._lock:
            self._subscribers.clear()
            self._breakers.clear()
        logger.info("Agent manager shut down")
