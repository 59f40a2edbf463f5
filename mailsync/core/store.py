"""
Mail store facade.

Owns the on-disk layout under the data directory and the registry of loaded
cache indexes shared by the sync engine, the mutation API and display
readers::

    <data_dir>/mail/<b32(email)>/<b32(mailbox)>/{tmp,new,cur}/
    <data_dir>/caching/<b32(email)>/<b32(mailbox)>/cached-messages.json
    <data_dir>/caching/<b32(email)>/<b32(mailbox)>/mailbox-state.json
    <data_dir>/auth/<b32(email)>/<provider>-token.json
"""
import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from mailsync import config
from mailsync.models import CacheData, MailboxRef
from mailsync.storage import maildir, pathenc
from mailsync.storage.cache_index import CACHE_FILE_NAME, CacheIndex
from mailsync.utils.errors import EncodingError, IoError, MailSyncError


logger = logging.getLogger(__name__)

STATE_FILE_NAME = "mailbox-state.json"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(entry: CacheData) -> datetime:
    date = entry.envelope.date
    if date is None:
        return _EPOCH
    if date.tzinfo is None:
        return date.replace(tzinfo=timezone.utc)
    return date


class MailStore:
    """Path layout plus the process-wide registry of CacheIndex objects."""

    def __init__(self, data_dir: Optional[Union[str, Path]] = None):
        self.data_dir = Path(data_dir) if data_dir is not None else Path(config.DATA_DIR)
        self._indexes: Dict[MailboxRef, CacheIndex] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def account_mail_dir(self, account: str) -> Path:
        return self.data_dir / "mail" / pathenc.encode(account)

    def account_cache_dir(self, account: str) -> Path:
        return self.data_dir / "caching" / pathenc.encode(account)

    def maildir_path(self, ref: MailboxRef) -> Path:
        return self.account_mail_dir(ref.account) / pathenc.encode(ref.mailbox)

    def cache_dir(self, ref: MailboxRef) -> Path:
        return self.account_cache_dir(ref.account) / pathenc.encode(ref.mailbox)

    def cache_path(self, ref: MailboxRef) -> Path:
        return self.cache_dir(ref) / CACHE_FILE_NAME

    def state_path(self, ref: MailboxRef) -> Path:
        return self.cache_dir(ref) / STATE_FILE_NAME

    def token_path(self, email: str, provider: str) -> Path:
        return self.data_dir / "auth" / pathenc.encode(email) / f"{provider}-token.json"

    def prepare(self, ref: MailboxRef) -> None:
        """
        Create the maildir and caching directories of a mailbox.

        Raises:
            IoError: If a directory cannot be created.
        """
        maildir.init(self.maildir_path(ref))
        try:
            self.cache_dir(ref).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IoError(f"Cannot create {self.cache_dir(ref)}: {e}") from e

    # ------------------------------------------------------------------
    # Index registry
    # ------------------------------------------------------------------

    def index(self, ref: MailboxRef) -> CacheIndex:
        """
        Return the shared CacheIndex for a mailbox, loading it on first use.

        Raises:
            IoError: If the index file exists but cannot be read.
        """
        with self._lock:
            index = self._indexes.get(ref)
            if index is None:
                index = CacheIndex.load(self.cache_path(ref))
                self._indexes[ref] = index
                logger.debug(f"Loaded cache index for {ref.account}/{ref.mailbox}: {len(index)} entries")
            return index

    def forget_account(self, account: str) -> None:
        """Drop the in-memory indexes of an account; files stay on disk."""
        with self._lock:
            for ref in [r for r in self._indexes if r.account == account]:
                del self._indexes[ref]

    def snapshot(self, ref: MailboxRef) -> List[CacheData]:
        """Copy of the mailbox's entries in insertion order. Never raises."""
        try:
            return self.index(ref).snapshot()
        except MailSyncError as e:
            logger.error(f"Cannot read cache index for {ref.account}/{ref.mailbox}: {e}")
            return []

    def mailbox_index(self, ref: MailboxRef) -> List[CacheData]:
        """Entries for display, newest first. Never raises."""
        return sorted(self.snapshot(ref), key=_sort_key, reverse=True)

    def read_message(self, ref: MailboxRef, uid: int) -> Optional[bytes]:
        """
        Return the raw RFC 5322 bytes of a cached message.

        Returns:
            The message bytes, or None if the message is not cached.
        """
        try:
            entry = self.index(ref).get(uid)
            if entry is None:
                return None
            return maildir.open_message(self.maildir_path(ref), entry.filename)
        except MailSyncError as e:
            logger.warning(f"Cannot read message {uid} in {ref.account}/{ref.mailbox}: {e}")
            return None

    # ------------------------------------------------------------------
    # Mailbox state
    # ------------------------------------------------------------------

    def load_uidvalidity(self, ref: MailboxRef) -> Optional[int]:
        """Return the UIDVALIDITY recorded for a mailbox, or None."""
        path = self.state_path(ref)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable mailbox state {path}: {e}")
            return None
        value = data.get("uidvalidity") if isinstance(data, dict) else None
        return value if isinstance(value, int) else None

    def save_uidvalidity(self, ref: MailboxRef, uidvalidity: int) -> None:
        """
        Record the UIDVALIDITY of a mailbox.

        Raises:
            IoError: If the state file cannot be written.
        """
        path = self.state_path(ref)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"uidvalidity": uidvalidity}, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise IoError(f"Cannot save mailbox state {path}: {e}") from e

    def reset_mailbox(self, ref: MailboxRef) -> None:
        """
        Discard every cached message of a mailbox (index entries and files).

        Raises:
            IoError: If the index cannot be rewritten or a file cannot be removed.
        """
        index = self.index(ref)
        directory = self.maildir_path(ref)
        for entry in index.snapshot():
            maildir.delete(directory, entry.filename)
        index.clear()
        logger.info(f"Reset cache for {ref.account}/{ref.mailbox}")

    # ------------------------------------------------------------------
    # Account-level helpers
    # ------------------------------------------------------------------

    def cached_mailboxes(self, account: str) -> List[str]:
        """Names of the mailboxes with a cache directory on disk, sorted."""
        root = self.account_cache_dir(account)
        try:
            tokens = [p.name for p in root.iterdir() if p.is_dir()]
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"Cannot list {root}: {e}")
            return []

        names = []
        for token in tokens:
            try:
                names.append(pathenc.decode(token))
            except EncodingError:
                logger.warning(f"Ignoring unexpected directory {root / token}")
        return sorted(names)

    def collect_orphans(self, account: str) -> int:
        """
        Delete maildir files whose base key appears in no cache index.

        Such files are left behind when a sync is interrupted between writing
        a message and appending it to the index.

        Returns:
            The number of files removed.
        """
        root = self.account_mail_dir(account)
        try:
            tokens = [p.name for p in root.iterdir() if p.is_dir()]
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.warning(f"Cannot list {root}: {e}")
            return 0

        removed = 0
        for token in tokens:
            try:
                mailbox = pathenc.decode(token)
            except EncodingError:
                continue
            ref = MailboxRef(account, mailbox)
            try:
                referenced = self.index(ref).filenames()
                directory = self.maildir_path(ref)
                for key in maildir.list_keys(directory):
                    if key not in referenced:
                        maildir.delete(directory, key)
                        removed += 1
            except MailSyncError as e:
                logger.warning(f"Orphan collection skipped {account}/{mailbox}: {e}")
        if removed:
            logger.info(f"Removed {removed} orphaned message files for {account}")
        return removed
