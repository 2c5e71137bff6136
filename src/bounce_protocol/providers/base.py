"""Base adapter interface for agent processes."""

from abc import ABC, abstractmethod
from typing import Callable

from bounce_protocol.models.adapter import (
    AgentCapabilities,
    AgentConfig,
    AgentHealth,
    AgentProcess,
)

OutputCallback = Callable[[str], None]


class AdapterError(Exception):
    """Base class for adapter errors. ``code`` is stable for callers to branch on."""

    code = "ADAPTER_ERROR"

    def __init__(self, message: str, process_id: str = ""):
        super().__init__(message)
        self.process_id = process_id


class UnknownProcessError(AdapterError):
    """The handle was not spawned by this adapter instance, or was already killed."""

    code = "UNKNOWN_PROCESS"


class ProcessNotRunningError(AdapterError):
    """The process had already terminated when the prompt was sent."""

    code = "PROCESS_NOT_RUNNING"


class ProcessCrashedError(AdapterError):
    """The process crashed while a prompt was in flight."""

    code = "PROCESS_CRASHED"


class BaseAdapter(ABC):
    """Normalized wrapper around one kind of external agent program.

    Variants differ in their declared ``capabilities``. Handles returned by
    ``spawn`` are owned by the adapter and updated in place as the process
    changes state.
    """

    name: str = ""
    capabilities: AgentCapabilities = AgentCapabilities()

    @abstractmethod
    def is_available(self) -> bool:
        """Check whether the agent program can be used. Never raises."""
        pass

    @abstractmethod
    def spawn(self, config: AgentConfig) -> AgentProcess:
        """Start a new agent process and return its handle."""
        pass

    @abstractmethod
    def send_prompt(self, handle: AgentProcess, prompt: str) -> None:
        """Send a prompt to a running process.

        Raises:
            UnknownProcessError: If the handle is not known to this adapter.
            ProcessNotRunningError: If the process already terminated.
            ProcessCrashedError: If the process crashed while sending.
        """
        pass

    @abstractmethod
    def on_output(self, handle: AgentProcess, callback: OutputCallback) -> Callable[[], None]:
        """Subscribe to output chunks. Returns a function that unsubscribes."""
        pass

    @abstractmethod
    def is_alive(self, handle: AgentProcess) -> bool:
        """False for killed handles and handles unknown to this adapter."""
        pass

    @abstractmethod
    def kill(self, handle: AgentProcess) -> None:
        """Terminate the process. Idempotent; no output is delivered afterwards."""
        pass

    @staticmethod
    def mark_failed(handle: AgentProcess, message: str) -> None:
        """Record a failure on the handle."""
        handle.running = False
        handle.health = AgentHealth.UNHEALTHY
        handle.failure_count += 1
        handle.last_error = message
