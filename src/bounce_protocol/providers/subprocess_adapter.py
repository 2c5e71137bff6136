"""Adapter base for agent CLIs run as child processes with piped stdio."""

import codecs
import logging
import os
import shutil
import subprocess
import threading
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from bounce_protocol.constants import ADAPTER_KILL_GRACE_SECONDS
from bounce_protocol.models.adapter import AgentConfig, AgentHealth, AgentProcess
from bounce_protocol.providers.base import (
    BaseAdapter,
    OutputCallback,
    ProcessCrashedError,
    ProcessNotRunningError,
    UnknownProcessError,
)

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class _ManagedProcess:
    """Adapter-side state for one spawned process."""

    def __init__(self, handle: AgentProcess, popen: Optional[subprocess.Popen]):
        self.handle = handle
        self.popen = popen
        self.listeners: Dict[str, OutputCallback] = {}
        self.lock = threading.RLock()
        self.killed = False


class SubprocessAdapter(BaseAdapter):
    """Runs an agent CLI as a child process.

    Output from stdout and stderr is streamed to subscribers in chunks by one
    reader thread per stream; a monitor thread records the exit status on the
    handle. Subclasses set ``executable`` and ``base_args``.
    """

    executable: str = ""
    base_args: List[str] = []
    # Non-interactive CLIs read the whole prompt and only start once stdin closes
    close_stdin_after_prompt: bool = True

    def __init__(self, kill_grace_seconds: float = ADAPTER_KILL_GRACE_SECONDS):
        self.kill_grace_seconds = kill_grace_seconds
        self._processes: Dict[str, _ManagedProcess] = {}
        self._lock = threading.Lock()

    def build_command(self, config: AgentConfig) -> List[str]:
        return [self.executable, *self.base_args, *config.args]

    def build_env(self, config: AgentConfig) -> Dict[str, str]:
        return {**os.environ, **config.env}

    def clean_output(self, chunk: str) -> str:
        """Normalize an output chunk before it reaches subscribers."""
        return chunk

    def split_output(self, text: str) -> Tuple[str, str]:
        """Split decoded output into text ready for ``clean_output`` and a tail to
        hold back until the next read, e.g. a control sequence cut off mid-chunk.
        """
        return text, ""

    def is_available(self) -> bool:
        try:
            return shutil.which(self.executable) is not None
        except Exception as e:
            logger.debug(f"Availability check for {self.name} failed: {e}")
            return False

    def spawn(self, config: AgentConfig) -> AgentProcess:
        handle = AgentProcess(id=str(uuid.uuid4()), adapter_name=self.name)
        command = self.build_command(config)

        try:
            popen = subprocess.Popen(
                command,
                cwd=config.cwd,
                env=self.build_env(config),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {command[0]}: {e}")
            self.mark_failed(handle, f"Failed to spawn {command[0]}: {e}")
            managed = _ManagedProcess(handle, None)
        else:
            handle.pid = popen.pid
            managed = _ManagedProcess(handle, popen)
            for stream in (popen.stdout, popen.stderr):
                threading.Thread(
                    target=self._read_stream, args=(managed, stream), daemon=True
                ).start()
            threading.Thread(target=self._monitor_exit, args=(managed,), daemon=True).start()
            logger.info(f"Spawned {self.name} process {handle.id} (pid {popen.pid})")

        with self._lock:
            self._processes[handle.id] = managed
        return handle

    def _get(self, handle: AgentProcess) -> _ManagedProcess:
        with self._lock:
            managed = self._processes.get(handle.id)
        if managed is None:
            raise UnknownProcessError(f"No managed process found for id {handle.id}", handle.id)
        return managed

    def _read_stream(self, managed: _ManagedProcess, stream) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            try:
                data = stream.read1(READ_CHUNK_SIZE)
            except (OSError, ValueError):
                break
            if not data:
                break
            ready, pending = self.split_output(pending + decoder.decode(data))
            self._dispatch(managed, self.clean_output(ready))
        rest = pending + decoder.decode(b"", final=True)
        if rest:
            self._dispatch(managed, self.clean_output(rest))

    def _dispatch(self, managed: _ManagedProcess, chunk: str) -> None:
        if not chunk:
            return
        # Held through delivery so kill() returns only after in-flight output
        with managed.lock:
            if managed.killed:
                return
            for listener in list(managed.listeners.values()):
                try:
                    listener(chunk)
                except Exception:
                    logger.exception(f"Output listener for {managed.handle.id} failed")

    def _monitor_exit(self, managed: _ManagedProcess) -> None:
        returncode = managed.popen.wait()
        with managed.lock:
            if managed.killed:
                return
            if returncode != 0:
                self.mark_failed(managed.handle, f"Process exited with code {returncode}")
                logger.warning(
                    f"{self.name} process {managed.handle.id} exited with code {returncode}"
                )
            else:
                managed.handle.running = False
                logger.info(f"{self.name} process {managed.handle.id} exited")

    def send_prompt(self, handle: AgentProcess, prompt: str) -> None:
        managed = self._get(handle)
        with managed.lock:
            if managed.killed:
                return
            if not handle.running or managed.popen is None or managed.popen.poll() is not None:
                raise ProcessNotRunningError(f"Process {handle.id} is not running", handle.id)
            stdin = managed.popen.stdin
            if stdin.closed:
                raise ProcessNotRunningError(
                    f"Process {handle.id} has already received its prompt", handle.id
                )

        try:
            stdin.write((prompt + "\n").encode("utf-8"))
            stdin.flush()
            if self.close_stdin_after_prompt:
                stdin.close()
        except (OSError, ValueError) as e:
            with managed.lock:
                if managed.killed:
                    return
                self.mark_failed(handle, f"Process crashed while receiving prompt: {e}")
            raise ProcessCrashedError(handle.last_error, handle.id) from e

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
        if managed is None or managed.killed:
            return False
        return handle.running and managed.popen is not None and managed.popen.poll() is None

    def kill(self, handle: AgentProcess) -> None:
        with self._lock:
            managed = self._processes.pop(handle.id, None)
        if managed is None:
            return

        with managed.lock:
            managed.killed = True
            managed.listeners.clear()
            handle.running = False
            handle.health = AgentHealth.UNKNOWN

        popen = managed.popen
        if popen is None or popen.poll() is not None:
            return
        popen.terminate()
        try:
            popen.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(
                f"{self.name} process {handle.id} ignored SIGTERM, sending SIGKILL"
            )
            popen.kill()
            popen.wait()
        logger.info(f"Killed {self.name} process {handle.id}")
