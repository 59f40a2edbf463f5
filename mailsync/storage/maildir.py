"""
Maildir message store.

Each (account, mailbox) owns one maildir with ``tmp/``, ``new/`` and ``cur/``
subdirectories. Messages are written to ``tmp/`` and atomically renamed into
``new/`` when complete; flag changes rename the file into ``cur/`` with a
``:2,<letters>`` suffix. The base key never changes for the life of a message.
"""
import itertools
import logging
import os
import socket
import threading
import time
from pathlib import Path
from typing import BinaryIO, List, Optional, Set, Tuple, Union

from mailsync.utils.errors import CorruptionError, IoError, NotFoundError


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

SUBDIRS = ("tmp", "new", "cur")
INFO_SEPARATOR = ":2,"

# IMAP flag -> maildir info letter
FLAG_LETTERS = {
    '\\Draft': 'D',
    '\\Flagged': 'F',
    '$Forwarded': 'P',
    '\\Answered': 'R',
    '\\Seen': 'S',
    '\\Deleted': 'T',
}
LETTER_FLAGS = {letter: flag for flag, letter in FLAG_LETTERS.items()}

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def _hostname() -> str:
    host = socket.gethostname() or "localhost"
    return host.replace("/", "\\057").replace(":", "\\072")


def new_key() -> str:
    """
    Generate a base key unique within the maildir across restarts.

    Format: ``<seconds>.M<microseconds>P<pid>Q<counter>.<host>``.
    """
    now = time.time()
    seconds = int(now)
    micro = int((now - seconds) * 1_000_000)
    with _counter_lock:
        count = next(_counter)
    return f"{seconds}.M{micro}P{os.getpid()}Q{count}.{_hostname()}"


def init(directory: PathLike) -> None:
    """
    Create ``tmp/``, ``new/`` and ``cur/`` if absent. Idempotent.

    Raises:
        IoError: If a directory cannot be created.
    """
    directory = Path(directory)
    try:
        for sub in SUBDIRS:
            (directory / sub).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IoError(f"Cannot initialise maildir {directory}: {e}") from e


class MaildirWriter:
    """
    Writes one message into ``tmp/`` and publishes it into ``new/`` on close.

    Usable as a context manager: a clean exit closes (publishes) the message,
    an exception aborts it and removes the temporary file.
    """

    def __init__(self, directory: Path, key: str):
        self.directory = directory
        self.key = key
        self.tmp_path = directory / "tmp" / key
        self.final_path = directory / "new" / key
        self._closed = False
        try:
            self._file: Optional[BinaryIO] = open(self.tmp_path, "xb")
        except OSError as e:
            raise IoError(f"Cannot create {self.tmp_path}: {e}") from e

    def write(self, data: bytes) -> int:
        if self._file is None:
            raise IoError(f"Writer for {self.key} is closed")
        try:
            return self._file.write(data)
        except OSError as e:
            raise IoError(f"Cannot write {self.tmp_path}: {e}") from e

    def close(self) -> str:
        """
        Flush the message to disk and rename it into ``new/``.

        Returns:
            The base key of the published message.

        Raises:
            IoError: If flushing or renaming fails. The temporary file is removed.
        """
        if self._closed:
            return self.key
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
            self._file.close()
            self._file = None
            os.rename(self.tmp_path, self.final_path)
        except OSError as e:
            self.abort()
            raise IoError(f"Cannot publish message {self.key}: {e}") from e
        self._closed = True
        return self.key

    def abort(self) -> None:
        """Discard the partially written message."""
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                pass
            self._file = None
        try:
            self.tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temporary file {self.tmp_path}: {e}")
        self._closed = True

    def __enter__(self) -> "MaildirWriter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.abort()
        else:
            self.close()
        return False


def create(directory: PathLike) -> Tuple[str, MaildirWriter]:
    """
    Start a new message.

    Args:
        directory: The maildir root.

    Returns:
        A tuple of (key, writer). The message becomes visible only after
        ``writer.close()``.

    Raises:
        IoError: If the temporary file cannot be created.
    """
    key = new_key()
    return key, MaildirWriter(Path(directory), key)


def _matches(name: str, key: str) -> bool:
    return name == key or name.startswith(key + INFO_SEPARATOR)


def resolve_key(directory: PathLike, key: str) -> Path:
    """
    Locate the single file in ``new/`` or ``cur/`` for a base key.

    Args:
        directory: The maildir root.
        key: The base key, without flag suffix.

    Returns:
        The path of the message file.

    Raises:
        NotFoundError: If no file matches.
        CorruptionError: If more than one file matches.
        IoError: If a directory cannot be listed.
    """
    directory = Path(directory)
    found: List[Path] = []
    for sub in ("new", "cur"):
        try:
            names = os.listdir(directory / sub)
        except FileNotFoundError:
            continue
        except OSError as e:
            raise IoError(f"Cannot list {directory / sub}: {e}") from e
        found.extend(directory / sub / name for name in names if _matches(name, key))

    if not found:
        raise NotFoundError(f"No message with key {key} in {directory}")
    if len(found) > 1:
        raise CorruptionError(f"Key {key} matches {len(found)} files in {directory}")
    return found[0]


def flag_suffix(flags: Set[str]) -> str:
    """Return the canonical (sorted) maildir info letters for a set of IMAP flags."""
    return "".join(sorted({FLAG_LETTERS[f] for f in flags if f in FLAG_LETTERS}))


def flags_of(path: PathLike) -> Set[str]:
    """Return the IMAP flags encoded in a maildir filename."""
    name = Path(path).name
    if INFO_SEPARATOR not in name:
        return set()
    letters = name.split(INFO_SEPARATOR, 1)[1]
    return {LETTER_FLAGS[c] for c in letters if c in LETTER_FLAGS}


def base_key(name: str) -> str:
    return name.split(INFO_SEPARATOR, 1)[0]


def set_flags(directory: PathLike, key: str, flags: Set[str]) -> Path:
    """
    Rename a message so its name encodes ``flags``, moving it into ``cur/``.

    Args:
        directory: The maildir root.
        key: The base key.
        flags: The complete set of IMAP flags the message should carry.

    Returns:
        The new path of the message.

    Raises:
        NotFoundError: If the key does not resolve.
        IoError: If the rename fails.
    """
    directory = Path(directory)
    current = resolve_key(directory, key)
    target = directory / "cur" / f"{key}{INFO_SEPARATOR}{flag_suffix(flags)}"
    if current == target:
        return target
    try:
        os.replace(current, target)
    except OSError as e:
        raise IoError(f"Cannot rename {current} to {target}: {e}") from e
    logger.debug(f"Renamed {current.name} -> {target.name}")
    return target


def delete(directory: PathLike, key: str) -> None:
    """
    Remove the message for ``key``. Deleting a missing key is not an error.

    Raises:
        IoError: If the file exists but cannot be removed.
    """
    try:
        path = resolve_key(directory, key)
    except NotFoundError:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        raise IoError(f"Cannot delete {path}: {e}") from e


def list_keys(directory: PathLike) -> List[str]:
    """Return the base keys of every published message in ``new/`` and ``cur/``."""
    directory = Path(directory)
    keys = []
    for sub in ("new", "cur"):
        try:
            names = os.listdir(directory / sub)
        except FileNotFoundError:
            continue
        except OSError as e:
            raise IoError(f"Cannot list {directory / sub}: {e}") from e
        keys.extend(base_key(name) for name in names if not name.startswith("."))
    return keys


def open_message(directory: PathLike, key: str) -> bytes:
    """
    Read the raw RFC 5322 bytes of a message.

    Raises:
        NotFoundError: If the key does not resolve.
        IoError: If the file cannot be read.
    """
    path = resolve_key(directory, key)
    try:
        return path.read_bytes()
    except OSError as e:
        raise IoError(f"Cannot read {path}: {e}") from e
