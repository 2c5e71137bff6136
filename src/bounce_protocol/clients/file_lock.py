"""Cross-process file lock around a session file.

The lock is an exclusive OS lock, taken with portalocker, on a sidecar file
``<path>.lock``. The sidecar records the holder's pid and acquisition time and
is removed on release. A sidecar left behind by another process, for example
one that crashed while holding the lock, keeps the lock held until its
``acquired_at`` is older than ``stale_timeout``. Holders may be unrelated
processes, so no in-process synchronization is involved.
"""

import json
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar, Union

import portalocker
from pydantic import BaseModel

from bounce_protocol.constants import (
    LOCK_FILE_SUFFIX,
    LOCK_MAX_RETRY_DELAY_SECONDS,
    LOCK_RETRIES,
    LOCK_RETRY_DELAY_SECONDS,
    LOCK_RETRY_FACTOR,
    LOCK_STALE_SECONDS,
    LOCK_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockOptions(BaseModel):
    """Lock acquisition options. Times are in seconds."""

    retries: int = LOCK_RETRIES
    retry_delay: float = LOCK_RETRY_DELAY_SECONDS
    retry_factor: float = LOCK_RETRY_FACTOR
    max_retry_delay: float = LOCK_MAX_RETRY_DELAY_SECONDS
    stale_timeout: float = LOCK_STALE_SECONDS
    lock_timeout: float = LOCK_TIMEOUT_SECONDS


class LockTimeoutError(Exception):
    """Raised when the lock could not be acquired in time."""

    code = "LOCK_TIMEOUT"

    def __init__(self, path: Union[str, Path], timeout: float):
        self.path = str(path)
        self.timeout = timeout
        super().__init__(f"Lock acquisition timed out after {timeout:.1f}s for file: {path}")


def lock_path_for(path: Union[str, Path]) -> Path:
    """Return the sidecar lock path for a session file."""
    path = Path(path)
    return path.with_name(path.name + LOCK_FILE_SUFFIX)


def _read_holder(handle) -> Optional[dict]:
    handle.seek(0)
    raw = handle.read()
    if not raw.strip():
        return None
    try:
        holder = json.loads(raw)
    except ValueError:
        return None
    return holder if isinstance(holder, dict) else None


def _same_file(handle, lock_file: Path) -> bool:
    """True if the locked handle is still the file at ``lock_file``.

    A previous holder unlinks the sidecar on release; a waiter that then locks
    the orphaned inode must retry on the new file.
    """
    try:
        on_disk = os.stat(lock_file)
    except FileNotFoundError:
        return False
    held = os.fstat(handle.fileno())
    return (on_disk.st_dev, on_disk.st_ino) == (held.st_dev, held.st_ino)


def _try_acquire(lock_file: Path, options: LockOptions):
    """Attempt one non-blocking acquisition. Returns the open handle or None."""
    handle = open(lock_file, "a+", encoding="utf-8")
    try:
        portalocker.lock(handle, portalocker.LOCK_EX | portalocker.LOCK_NB)
    except portalocker.exceptions.LockException:
        handle.close()
        return None

    if not _same_file(handle, lock_file):
        portalocker.unlock(handle)
        handle.close()
        return None

    holder = _read_holder(handle)
    if holder is not None:
        acquired_at = holder.get("acquired_at")
        age = time.time() - acquired_at if isinstance(acquired_at, (int, float)) else float("inf")
        pid = holder.get("pid")
        if age > options.stale_timeout:
            logger.info(f"Reclaiming stale lock {lock_file} (holder pid {pid}, {age:.1f}s old)")
        elif pid != os.getpid():
            # A recent marker from another process counts as held until it goes stale
            logger.debug(f"Lock {lock_file} marked by pid {pid} {age:.1f}s ago, waiting")
            portalocker.unlock(handle)
            handle.close()
            return None
        else:
            logger.debug(f"Lock {lock_file} left behind by this process, reusing")

    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps({"pid": os.getpid(), "acquired_at": time.time()}))
    handle.flush()
    return handle


def _release(handle, lock_file: Path) -> None:
    # Unlink before unlocking so a waiter that grabs the old inode notices
    try:
        os.unlink(lock_file)
    except OSError as e:
        logger.debug(f"Could not remove lock file {lock_file}: {e}")
    try:
        portalocker.unlock(handle)
    except portalocker.exceptions.LockException as e:
        logger.debug(f"Could not unlock {lock_file}: {e}")
    finally:
        handle.close()


@contextmanager
def hold_lock(path: Union[str, Path], options: Optional[LockOptions] = None) -> Iterator[Path]:
    """Context manager holding the exclusive lock for ``path``.

    Raises:
        LockTimeoutError: If the lock is still contended after all retries or
            once ``lock_timeout`` has elapsed.
    """
    options = options or LockOptions()
    lock_file = lock_path_for(path)
    deadline = time.monotonic() + options.lock_timeout
    delay = options.retry_delay
    attempt = 0

    while True:
        handle = _try_acquire(lock_file, options)
        if handle is not None:
            break
        remaining = deadline - time.monotonic()
        if attempt >= options.retries or remaining <= 0:
            raise LockTimeoutError(path, options.lock_timeout)
        attempt += 1
        logger.debug(f"Lock {lock_file} busy, retry {attempt}/{options.retries} in {delay:.2f}s")
        time.sleep(min(delay, remaining))
        delay = min(delay * options.retry_factor, options.max_retry_delay)

    try:
        yield lock_file
    finally:
        _release(handle, lock_file)


def with_lock(
    path: Union[str, Path],
    operation: Callable[[], T],
    options: Optional[LockOptions] = None,
) -> T:
    """Run ``operation`` while holding the exclusive lock for ``path``.

    The operation never runs if the lock cannot be acquired. Its exceptions
    propagate after the lock is released; failures during release are logged
    and dropped.

    Args:
        path: Session file to lock.
        operation: Zero-argument callable run under the lock.
        options: Acquisition options; defaults from constants.

    Returns:
        Whatever ``operation`` returns.

    Raises:
        LockTimeoutError: If the lock could not be acquired.
    """
    with hold_lock(path, options):
        return operation()
