"""
User-initiated changes to mirrored messages.

Moves and flag changes run on a background executor, never on the caller's
thread. Each one takes the account session lock for its whole duration: the
server command first, then the local cache index and maildir changes.
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, Optional, Set

from mailsync.core.events import EventQueue, MailboxIndexChanged, SyncFailed
from mailsync.core.session import AccountSession
from mailsync.core.store import MailStore
from mailsync.core.sync_manager import SyncManager
from mailsync.models import CacheData, MailboxRef
from mailsync.storage import maildir
from mailsync.utils.errors import IoError, MailSyncError


logger = logging.getLogger(__name__)

SEEN = "\\Seen"
FLAGGED = "\\Flagged"


class MutationManager:
    """Runs move and flag operations against the sessions of a SyncManager."""

    def __init__(
        self,
        sync_manager: SyncManager,
        store: Optional[MailStore] = None,
        events: Optional[EventQueue] = None,
        max_workers: int = 2,
    ):
        self.sync_manager = sync_manager
        self.store = store or sync_manager.store
        self.events = events or sync_manager.events
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mailsync-mutation")

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def move(self, ref: MailboxRef, uid: int, target: str) -> Future:
        """
        Move a message to another mailbox of the same account.

        On success the entry leaves the source index and its maildir file is
        deleted. The message shows up in ``target`` on that mailbox's next sync.

        Returns:
            A Future resolving to None, or to the error raised.
        """
        return self._submit(ref, self._move, ref, uid, target)

    def mark_read(self, ref: MailboxRef, uid: int, read: bool = True) -> Future:
        if read:
            return self.set_flags(ref, uid, add={SEEN})
        return self.set_flags(ref, uid, remove={SEEN})

    def mark_flagged(self, ref: MailboxRef, uid: int, flagged: bool = True) -> Future:
        if flagged:
            return self.set_flags(ref, uid, add={FLAGGED})
        return self.set_flags(ref, uid, remove={FLAGGED})

    def set_flags(self, ref: MailboxRef, uid: int, add: Iterable[str] = (), remove: Iterable[str] = ()) -> Future:
        """
        Add and remove flags on a message, on the server and locally.

        A server failure changes nothing locally. A local failure rolls the
        index back and reverts the server change, so both sides keep agreeing.

        Returns:
            A Future resolving to the message's new flags (None when the
            message is not cached locally), or to the error raised.
        """
        add = set(add)
        remove = set(remove) - add
        return self._submit(ref, self._set_flags, ref, uid, add, remove)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _submit(self, ref: MailboxRef, func: Callable, *args) -> Future:
        return self._executor.submit(self._run, ref, func, *args)

    def _run(self, ref: MailboxRef, func: Callable, *args):
        try:
            return func(*args)
        except MailSyncError as e:
            logger.error(f"{func.__name__.lstrip('_')} failed for {ref.account}/{ref.mailbox}: {e}")
            self.events.emit(SyncFailed(ref.account, e, ref.mailbox))
            raise

    def _move(self, ref: MailboxRef, uid: int, target: str) -> None:
        session = self.sync_manager.open_session(ref.account)
        index = session.cache(ref.mailbox)
        with session.lock:
            entry = index.get(uid)
            session.move(ref.mailbox, uid, target)
            logger.info(f"Moved UID {uid} from {ref.account}/{ref.mailbox} to {target}")
            if entry is None:
                return
            index.remove_by_uid(uid)
            maildir.delete(self.store.maildir_path(ref), entry.filename)
        self.events.emit(MailboxIndexChanged(ref.account, ref.mailbox))

    def _set_flags(self, ref: MailboxRef, uid: int, add: Set[str], remove: Set[str]) -> Optional[Set[str]]:
        session = self.sync_manager.open_session(ref.account)
        index = session.cache(ref.mailbox)
        directory = self.store.maildir_path(ref)
        with session.lock:
            entry = index.get(uid)
            session.store_flags(ref.mailbox, uid, add, remove)
            if entry is None:
                logger.debug(f"UID {uid} not cached in {ref.account}/{ref.mailbox}; server updated only")
                return None

            new_flags = (entry.flags | add) - remove
            try:
                index.update_flags(uid, new_flags)
            except IoError:
                self._revert_server(session, ref, uid, entry, add, remove)
                raise

            try:
                maildir.set_flags(directory, entry.filename, new_flags)
            except MailSyncError as e:
                self._restore_index(index, entry)
                self._revert_server(session, ref, uid, entry, add, remove)
                if isinstance(e, IoError):
                    raise
                raise IoError(f"Cannot rename message {entry.filename}: {e}") from e

        self.events.emit(MailboxIndexChanged(ref.account, ref.mailbox))
        return new_flags

    @staticmethod
    def _restore_index(index, entry: CacheData) -> None:
        try:
            index.update_flags(entry.uid, entry.flags)
        except IoError as e:
            logger.error(f"Could not restore flags of UID {entry.uid}: {e}")

    @staticmethod
    def _revert_server(session: AccountSession, ref: MailboxRef, uid: int, entry: CacheData,
                       add: Set[str], remove: Set[str]) -> None:
        try:
            session.store_flags(ref.mailbox, uid, add=remove & entry.flags, remove=add - entry.flags)
        except MailSyncError as e:
            logger.error(f"Could not revert server flags of UID {uid} in {ref.account}/{ref.mailbox}: {e}")
