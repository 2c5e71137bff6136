"""Session file service.

Creates new session files and appends entries to existing ones. Appends run
under the file lock and only ever add bytes at the end of the file.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from bounce_protocol.clients.file_lock import LockOptions, with_lock
from bounce_protocol.constants import SESSION_FILE_EXTENSION
from bounce_protocol.models.session import ProtocolEntry, ProtocolRules
from bounce_protocol.models.validation import ParseResult
from bounce_protocol.protocol.parser import parse_session
from bounce_protocol.protocol.serializer import create_session, serialize_entry

logger = logging.getLogger(__name__)


def new_session_file(
    directory: Union[str, Path],
    filename: str,
    title: str,
    rules: ProtocolRules,
    context: str,
    session_id: Optional[str] = None,
    created: Optional[str] = None,
) -> Path:
    """Write a new session file.

    Args:
        directory: Directory to create the file in; created if missing.
        filename: File name; the session extension is added if absent.
        title: Session title.
        rules: Protocol rules for the session.
        context: Free-form context text.
        session_id: Optional session UUID.
        created: Optional ISO-8601 creation timestamp.

    Returns:
        Path of the new file.

    Raises:
        FileExistsError: If a file with that name already exists.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    if not filename.endswith(SESSION_FILE_EXTENSION):
        filename += SESSION_FILE_EXTENSION
    path = directory / filename

    content = create_session(title, rules, context, session_id=session_id, created=created)
    with open(path, "x", encoding="utf-8", newline="") as f:
        f.write(content)
    logger.info(f"Created session file {path}")
    return path


def append_entry(
    path: Union[str, Path],
    entry: ProtocolEntry,
    lock_options: Optional[LockOptions] = None,
) -> str:
    """Append one entry block to a session file under the file lock.

    Existing bytes are never rewritten; a newline is added first if the file
    does not already end with one.

    Returns:
        The serialized block that was appended.

    Raises:
        FileNotFoundError: If the session file does not exist.
        LockTimeoutError: If the file lock could not be acquired.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Session file not found: {path}")
    block = serialize_entry(entry)

    def append() -> None:
        with open(path, "rb") as f:
            f.seek(0, 2)
            needs_newline = f.tell() > 0
            if needs_newline:
                f.seek(-1, 2)
                needs_newline = f.read(1) != b"\n"
        with open(path, "a", encoding="utf-8", newline="") as f:
            f.write(("\n" if needs_newline else "") + block)

    with_lock(path, append, lock_options)
    logger.info(f"Appended entry by {entry.author} (turn {entry.turn}, round {entry.round}) to {path}")
    return block


def load_session(path: Union[str, Path]) -> ParseResult:
    """Read and parse a session file."""
    return parse_session(Path(path).read_bytes())
