"""
Cache index persistence for one (account, mailbox).

The index is a JSON array of CacheData entries in insertion order. It is the
display-time list of messages and the baseline for the next delta sync.
Every change rewrites the whole file through a temporary file and
``os.replace`` so a crash leaves either the old or the new array on disk.
"""
import json
import logging
import os
import re
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional, Set, Union

from mailsync.models import CacheData
from mailsync.utils.errors import CorruptionError, IoError


logger = logging.getLogger(__name__)

CACHE_FILE_NAME = "cached-messages.json"

PathLike = Union[str, Path]


_LITERALS = ("null", "true", "false")
_UNICODE_ESCAPE = re.compile(r'\\u[0-9a-fA-F]{0,3}$')


def _is_truncated(text: str, error: json.JSONDecodeError) -> bool:
    """True if decoding failed only because ``text`` stops early."""
    text = text.rstrip()
    if error.pos >= len(text) or error.msg.startswith("Unterminated string"):
        return True
    rest = text[error.pos:]
    if any(literal.startswith(rest) and rest != literal for literal in _LITERALS):
        return True
    if error.msg.startswith("Invalid \\uXXXX escape"):
        return bool(_UNICODE_ESCAPE.search(text))
    return False


def load_entries(path: PathLike) -> List[CacheData]:
    """
    Read the entries stored at ``path``.

    A missing, empty or truncated file is the trace of an interrupted earlier
    sync and yields an empty list; the messages are simply fetched again.

    Raises:
        CorruptionError: If the file holds malformed JSON that is not merely
            cut short, or JSON of the wrong shape.
        IoError: If the file cannot be read.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError) as e:
        raise IoError(f"Cannot read cache index {path}: {e}") from e

    if not text.strip():
        return []

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        if _is_truncated(text, e):
            logger.warning(f"Cache index {path} is truncated; starting empty")
            return []
        raise CorruptionError(f"Malformed cache index {path}: {e}") from e

    if not isinstance(data, list):
        raise CorruptionError(f"Cache index {path} is not a JSON array")
    try:
        return [CacheData.from_dict(item) for item in data]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise CorruptionError(f"Malformed entry in cache index {path}: {e}") from e


def save_entries(path: PathLike, entries: Iterable[CacheData]) -> None:
    """
    Atomically replace the file at ``path`` with ``entries``.

    Raises:
        IoError: If writing or renaming fails. The previous file is left intact.
    """
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    payload = json.dumps([entry.to_dict() for entry in entries], ensure_ascii=False, indent=1)
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise IoError(f"Cannot save cache index {path}: {e}") from e


def quarantine(path: PathLike) -> Optional[Path]:
    """Move an unreadable index aside as ``<name>.corrupt.<timestamp>``."""
    path = Path(path)
    target = path.with_name(f"{path.name}.corrupt.{int(time.time())}")
    try:
        os.replace(path, target)
    except OSError as e:
        logger.error(f"Could not move corrupt cache index {path} aside: {e}")
        return None
    logger.warning(f"Corrupt cache index moved to {target}")
    return target


class CacheIndex:
    """
    In-memory mirror of one ``cached-messages.json`` file.

    Writers (the sync engine and the mutation API) and readers (display
    snapshots) may be on different threads; all access goes through an
    internal lock and readers only ever receive copies.
    """

    def __init__(self, path: PathLike, entries: Optional[List[CacheData]] = None):
        self.path = Path(path)
        self._entries: List[CacheData] = list(entries or [])
        self._lock = threading.RLock()

    @classmethod
    def load(cls, path: PathLike) -> "CacheIndex":
        """
        Load the index stored at ``path``.

        Corrupt files are quarantined and replaced by an empty index, which
        makes the next sync download the whole mailbox again.

        Raises:
            IoError: If the file exists but cannot be read.
        """
        try:
            entries = load_entries(path)
        except CorruptionError as e:
            logger.warning(str(e))
            quarantine(path)
            entries = []

        # Keep the first entry for any uid repeated on disk
        seen: Set[int] = set()
        unique = []
        for entry in entries:
            if entry.uid not in seen:
                seen.add(entry.uid)
                unique.append(entry)
        return cls(path, unique)

    def _persist(self, previous: List[CacheData]) -> None:
        try:
            save_entries(self.path, self._entries)
        except IoError:
            self._entries = previous
            raise

    def append(self, entry: CacheData) -> bool:
        """
        Append ``entry`` and persist the index.

        Returns:
            False if an entry with the same uid already exists (nothing changes).

        Raises:
            IoError: If the rewrite fails; the in-memory index is rolled back.
        """
        with self._lock:
            if any(e.uid == entry.uid for e in self._entries):
                return False
            previous = list(self._entries)
            self._entries.append(entry)
            self._persist(previous)
            return True

    def remove_by_uid(self, uid: int) -> Optional[CacheData]:
        """
        Remove the entry for ``uid`` and persist the index.

        Returns:
            The removed entry, or None if there was none.
        """
        with self._lock:
            for i, entry in enumerate(self._entries):
                if entry.uid == uid:
                    previous = list(self._entries)
                    del self._entries[i]
                    self._persist(previous)
                    return entry
            return None

    def update_flags(self, uid: int, flags: Set[str]) -> bool:
        """
        Replace the flags of the entry for ``uid`` and persist the index.

        Returns:
            False if there is no such entry.
        """
        with self._lock:
            for i, entry in enumerate(self._entries):
                if entry.uid == uid:
                    previous = list(self._entries)
                    updated = entry.copy()
                    updated.flags = set(flags)
                    self._entries[i] = updated
                    self._persist(previous)
                    return True
            return False

    def clear(self) -> None:
        """Drop every entry and persist the empty index."""
        with self._lock:
            previous = list(self._entries)
            self._entries = []
            self._persist(previous)

    def save(self) -> None:
        with self._lock:
            save_entries(self.path, self._entries)

    def snapshot(self) -> List[CacheData]:
        """Return a copy of the entries, in insertion order."""
        with self._lock:
            return [entry.copy() for entry in self._entries]

    def get(self, uid: int) -> Optional[CacheData]:
        with self._lock:
            for entry in self._entries:
                if entry.uid == uid:
                    return entry.copy()
            return None

    def uids(self) -> Set[int]:
        with self._lock:
            return {entry.uid for entry in self._entries}

    def filenames(self) -> Set[str]:
        with self._lock:
            return {entry.filename for entry in self._entries}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
