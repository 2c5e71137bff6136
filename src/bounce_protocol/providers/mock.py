"""Mock adapter with scripted, delayed responses.

Simulates agent latency and failure modes without spawning processes. Each
response is delivered by a ``threading.Timer`` owned by the process state, so
``kill`` can cancel everything still pending.
"""

import logging
import threading
import uuid
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from bounce_protocol.constants import MOCK_RESPONSE_DELAY_SECONDS
from bounce_protocol.models.adapter import (
    AgentCapabilities,
    AgentConfig,
    AgentHealth,
    AgentProcess,
)
from bounce_protocol.providers.base import (
    BaseAdapter,
    OutputCallback,
    ProcessCrashedError,
    ProcessNotRunningError,
    UnknownProcessError,
)

logger = logging.getLogger(__name__)

MALFORMED_PREFIX = "\x00\xff\xfe GARBLED: "


def garble(text: str) -> str:
    """Produce the malformed form of a response."""
    return MALFORMED_PREFIX + text[::-1]


class MockResponse(BaseModel):
    """One scripted response, returned for one ``send_prompt`` call."""

    output: str
    # Overrides the adapter-wide delay when set (seconds)
    delay: Optional[float] = None


class MockAdapterConfig(BaseModel):
    """Scripted behaviour of a mock adapter."""

    responses: List[MockResponse] = Field(default_factory=list)
    response_delay: float = MOCK_RESPONSE_DELAY_SECONDS
    should_crash: bool = False
    crash_after_responses: Optional[int] = None
    should_timeout: bool = False
    malformed_output: bool = False


class _MockProcess:
    def __init__(self, handle: AgentProcess):
        self.handle = handle
        self.listeners: Dict[str, OutputCallback] = {}
        self.response_index = 0
        self.timers: Set[threading.Timer] = set()
        self.lock = threading.RLock()
        self.killed = False


class MockAdapter(BaseAdapter):
    """Adapter that answers prompts from a script."""

    name = "mock"
    capabilities = AgentCapabilities(supports_conversation=True)

    def __init__(self, config: Optional[MockAdapterConfig] = None, name: Optional[str] = None):
        self.config = config or MockAdapterConfig()
        if name:
            self.name = name
        self._processes: Dict[str, _MockProcess] = {}
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return True

    def spawn(self, config: AgentConfig) -> AgentProcess:
        handle = AgentProcess(id=str(uuid.uuid4()), adapter_name=self.name)
        if self.config.should_crash:
            self.mark_failed(handle, "Mock adapter configured to crash on spawn")
        # Crashed handles stay tracked so later calls report "not running"
        with self._lock:
            self._processes[handle.id] = _MockProcess(handle)
        logger.debug(f"Spawned mock process {handle.id} (healthy={handle.running})")
        return handle

    def _get(self, handle: AgentProcess) -> _MockProcess:
        with self._lock:
            managed = self._processes.get(handle.id)
        if managed is None:
            raise UnknownProcessError(f"No managed process found for id {handle.id}", handle.id)
        return managed

    def send_prompt(self, handle: AgentProcess, prompt: str) -> None:
        managed = self._get(handle)
        with managed.lock:
            if managed.killed:
                return
            if not handle.running:
                raise ProcessNotRunningError(f"Process {handle.id} is not running", handle.id)

            limit = self.config.crash_after_responses
            if limit is not None and managed.response_index >= limit:
                self.mark_failed(handle, f"Mock crash after {limit} responses")
                raise ProcessCrashedError(handle.last_error, handle.id)

            if self.config.should_timeout:
                return
            if managed.response_index >= len(self.config.responses):
                return

            response = self.config.responses[managed.response_index]
            managed.response_index += 1
            delay = response.delay if response.delay is not None else self.config.response_delay
            output = garble(response.output) if self.config.malformed_output else response.output

            timer = threading.Timer(delay, self._deliver, args=(managed, output))
            timer.daemon = True
            managed.timers.add(timer)
            timer.start()

    def _deliver(self, managed: _MockProcess, output: str) -> None:
        with managed.lock:
            managed.timers.discard(threading.current_thread())
            if managed.killed or not managed.handle.running:
                return
            for listener in list(managed.listeners.values()):
                try:
                    listener(output)
                except Exception:
                    logger.exception(f"Output listener for {managed.handle.id} failed")

    def on_output(self, handle: AgentProcess, callback: OutputCallback) -> Callable[[], None]:
        managed = self._get(handle)
        listener_id = str(uuid.uuid4())
        with managed.lock:
            managed.listeners[listener_id] = callback

        def unsubscribe() -> None:
            with managed.lock:
                managed.listeners.pop(listener_id, None)

        return unsubscribe

    def is_alive(self, handle: AgentProcess) -> bool:
        with self._lock:
            managed = self._processes.get(handle.id)
        return managed is not None and not managed.killed and handle.running

    def kill(self, handle: AgentProcess) -> None:
        with self._lock:
            managed = self._processes.pop(handle.id, None)
        if managed is None:
            return
        # Waits out a delivery already holding the lock
        with managed.lock:
            managed.killed = True
            for timer in managed.timers:
                timer.cancel()
            managed.timers.clear()
            managed.listeners.clear()
            handle.running = False
            handle.health = AgentHealth.UNKNOWN
        logger.debug(f"Killed mock process {handle.id}")
