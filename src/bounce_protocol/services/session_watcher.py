"""Session directory watcher.

Watches one directory of session files and publishes created, updated and
deleted events. Filesystem signals come from a watchdog polling observer and
are coalesced per path; a single worker thread reads a file only once it has
been quiet for the stability window, so a multi-part append is never seen
half-written. Content digests suppress events for rewrites that change nothing.
"""

import hashlib
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers.polling import PollingObserver

from bounce_protocol.constants import (
    LOCK_FILE_SUFFIX,
    SESSION_FILE_EXTENSION,
    WATCHER_DEBOUNCE_SECONDS,
    WATCHER_STABILITY_SECONDS,
)
from bounce_protocol.models.events import WatcherEvent, WatcherEventType
from bounce_protocol.models.validation import ParseResult
from bounce_protocol.protocol.parser import parse_session

logger = logging.getLogger(__name__)

Subscriber = Callable[[WatcherEvent], None]

# Observer event types that can change a session file
_RELEVANT_EVENTS = {"created", "modified", "deleted", "moved"}


def normalize_path(path: Union[str, Path]) -> str:
    """Absolute, forward-slash form used as the cache and subscription key."""
    return Path(path).resolve().as_posix()


def is_session_file(path: Union[str, Path]) -> bool:
    name = Path(path).name
    return name.endswith(SESSION_FILE_EXTENSION) and not name.endswith(LOCK_FILE_SUFFIX)


class CachedSession(BaseModel):
    """Last observed state of one session file."""

    parse_result: ParseResult
    content_hash: str
    entry_count: int


class _SignalHandler(FileSystemEventHandler):
    """Forwards raw observer events for session files to the watcher."""

    def __init__(self, watcher: "SessionWatcher"):
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RELEVANT_EVENTS:
            return
        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)
        for path in paths:
            if isinstance(path, bytes):
                path = path.decode("utf-8", errors="replace")
            if is_session_file(path):
                self._watcher.signal(path)


class SessionWatcher:
    """Maintains path -> CachedSession for a directory and publishes changes."""

    def __init__(
        self,
        sessions_dir: Union[str, Path],
        debounce_seconds: float = WATCHER_DEBOUNCE_SECONDS,
        stability_seconds: float = WATCHER_STABILITY_SECONDS,
    ):
        self.sessions_dir = Path(sessions_dir)
        self.debounce_seconds = debounce_seconds
        self.stability_seconds = stability_seconds

        self._cache: Dict[str, CachedSession] = {}
        self._subscribers: List[Tuple[Subscriber, Optional[str]]] = []
        self._subscribers_lock = threading.Lock()

        # path -> monotonic time of the latest signal
        self._pending: Dict[str, float] = {}
        self._cond = threading.Condition()

        self._observer: Optional[PollingObserver] = None
        self._worker: Optional[threading.Thread] = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start watching. Existing session files are reported as created."""
        if self._running:
            return
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self._running = True

        self._observer = PollingObserver(timeout=self.debounce_seconds)
        self._observer.schedule(_SignalHandler(self), str(self.sessions_dir), recursive=False)
        self._observer.start()

        for path in sorted(self.sessions_dir.iterdir()):
            if path.is_file() and is_session_file(path):
                self._process_safely(normalize_path(path))

        self._worker = threading.Thread(
            target=self._run, name=f"session-watcher:{self.sessions_dir.name}", daemon=True
        )
        self._worker.start()
        logger.info(f"Watching {self.sessions_dir} for session changes")

    def stop(self) -> None:
        """Stop watching and drop all cached state."""
        if not self._running:
            return
        with self._cond:
            self._running = False
            self._pending.clear()
            self._cond.notify_all()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
        if self._worker is not None and self._worker is not threading.current_thread():
            self._worker.join()
        self._worker = None
        self._cache.clear()
        logger.info(f"Stopped watching {self.sessions_dir}")

    def is_watching(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Queries and subscriptions
    # ------------------------------------------------------------------

    def get_session(self, path: Union[str, Path]) -> Optional[ParseResult]:
        """Return the last cached parse result for a path, or None."""
        cached = self._cache.get(normalize_path(path))
        return cached.parse_result if cached else None

    def subscribe(
        self, callback: Subscriber, session_path: Optional[Union[str, Path]] = None
    ) -> Callable[[], None]:
        """Register a callback for events, optionally for one session file only.

        Returns:
            Function that removes this subscription.
        """
        entry = (callback, normalize_path(session_path) if session_path is not None else None)
        with self._subscribers_lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    # ------------------------------------------------------------------
    # Signal coalescing
    # ------------------------------------------------------------------

    def signal(self, path: Union[str, Path]) -> None:
        """Note that a session file may have changed."""
        key = normalize_path(path)
        with self._cond:
            if not self._running:
                return
            self._pending[key] = time.monotonic()
            self._cond.notify_all()

    def _take_stable_paths(self) -> Optional[List[str]]:
        """Block until some pending path has been quiet long enough.

        Returns None once the watcher is stopped.
        """
        with self._cond:
            while self._running:
                now = time.monotonic()
                ready = [p for p, t in self._pending.items() if now - t >= self.stability_seconds]
                if ready:
                    for path in ready:
                        del self._pending[path]
                    return ready
                if self._pending:
                    oldest = min(self._pending.values())
                    self._cond.wait(max(0.0, oldest + self.stability_seconds - now))
                else:
                    self._cond.wait()
            return None

    def _run(self) -> None:
        while True:
            paths = self._take_stable_paths()
            if paths is None:
                return
            for path in paths:
                self._process_safely(path)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _process_safely(self, path: str) -> None:
        try:
            self._process(path)
        except Exception:
            logger.exception(f"Failed to process session file {path}")

    def _process(self, path: str) -> None:
        try:
            content = Path(path).read_bytes()
        except (FileNotFoundError, IsADirectoryError):
            self._handle_remove(path)
            return
        except OSError as e:
            logger.warning(f"Could not read session file {path}: {e}")
            return

        digest = hashlib.sha256(content).hexdigest()
        cached = self._cache.get(path)
        if cached is not None and cached.content_hash == digest:
            logger.debug(f"Ignoring unchanged write to {path}")
            return

        result = parse_session(content)
        entries = result.session.entries if result.session else []
        self._cache[path] = CachedSession(
            parse_result=result, content_hash=digest, entry_count=len(entries)
        )

        if cached is None:
            self._emit(
                WatcherEvent(
                    type=WatcherEventType.CREATED, session_path=path, parse_result=result
                )
            )
            return

        new_entries = entries[cached.entry_count :] if len(entries) > cached.entry_count else None
        logger.debug(
            f"Session {path} changed: {cached.entry_count} -> {len(entries)} entries"
        )
        self._emit(
            WatcherEvent(
                type=WatcherEventType.UPDATED,
                session_path=path,
                new_entries=new_entries,
                parse_result=result,
            )
        )

    def _handle_remove(self, path: str) -> None:
        if self._cache.pop(path, None) is None:
            return
        self._emit(WatcherEvent(type=WatcherEventType.DELETED, session_path=path))

    def _emit(self, event: WatcherEvent) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback, session_path in subscribers:
            if session_path is not None and session_path != event.session_path:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception(f"Watcher subscriber failed on {event.type.value} for {event.session_path}")
