"""
Synchronization manager for mailsync.

This module orchestrates synchronization between remote mailboxes (via the
account sessions) and the local mirror (maildir files plus cache indexes).
Each account is synced on its own background thread; progress and failures
are reported as events, never raised to the caller.
"""
import logging
import threading
from contextlib import closing
from typing import Callable, Dict, Iterable, List, Optional, Set

from mailsync import config
from mailsync.core.events import (
    EventQueue,
    MailboxIndexChanged,
    MailboxListChanged,
    MailboxSyncComplete,
    SyncFailed,
    SyncState,
    SyncStateChanged,
)
from mailsync.core.session import AccountSession, ClientFactory
from mailsync.core.settings import Settings
from mailsync.core.store import MailStore
from mailsync.models import CacheData, FetchedMessage, MailboxRef, SelectInfo
from mailsync.storage import maildir
from mailsync.utils.errors import (
    AuthError,
    CorruptionError,
    IoError,
    MailSyncError,
    NetworkError,
    ProtocolError,
    SyncCancelled,
)
from mailsync.utils.mailbox_names import should_skip


logger = logging.getLogger(__name__)

# (email, provider) -> bearer token
TokenProvider = Callable[[str, str], str]


class SyncManager:
    """
    Manages synchronization of every configured account.

    One thread per account task; an account that is already syncing is not
    started a second time. Sessions are kept open between runs and shared
    with the mutation API.
    """

    def __init__(
        self,
        store: MailStore,
        token_provider: TokenProvider,
        events: Optional[EventQueue] = None,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
        batch_size: Optional[int] = None,
    ):
        """
        Initialize the sync manager.

        Args:
            store: The mail store (paths and shared cache indexes).
            token_provider: Returns a bearer token for (email, provider).
            events: Queue receiving progress events.
            settings: Configured accounts and their providers.
            client_factory: Builds ImapClient objects; injected in tests.
            batch_size: UIDs per FETCH. Defaults to config.FETCH_BATCH_SIZE.
        """
        self.store = store
        self.token_provider = token_provider
        self.events = events or EventQueue()
        self.settings = settings or Settings()
        self.client_factory = client_factory
        self.batch_size = batch_size

        self._lock = threading.Lock()
        self._sync_in_progress: Set[str] = set()
        self._sessions: Dict[str, AccountSession] = {}
        self._open_locks: Dict[str, threading.Lock] = {}
        self._states: Dict[str, SyncState] = {}
        self._threads: List[threading.Thread] = []
        self._cancel_event = threading.Event()

    # ------------------------------------------------------------------
    # Account tasks
    # ------------------------------------------------------------------

    def sync_all(self, accounts: Optional[Iterable[str]] = None) -> List[threading.Thread]:
        """
        Start one background sync task per account.

        Args:
            accounts: Accounts to sync. Defaults to every configured account.

        Returns:
            The threads started. Accounts already syncing are skipped.
        """
        accounts = list(accounts if accounts is not None else self.settings.accounts)
        cancel_event = self._cancel_event
        threads = []
        for email in accounts:
            if not self._claim(email):
                logger.info(f"Sync already in progress for {email}; skipping")
                continue
            thread = threading.Thread(
                target=self._run_claimed,
                args=(email, cancel_event),
                name=f"sync-{email}",
                daemon=True,
            )
            with self._lock:
                self._threads = [t for t in self._threads if t.is_alive()]
                self._threads.append(thread)
            thread.start()
            threads.append(thread)
        return threads

    def sync_account(self, email: str) -> bool:
        """
        Sync one account on the calling thread.

        Errors are reported as events, not raised.

        Returns:
            False if the account was already syncing, True otherwise.
        """
        if not self._claim(email):
            logger.info(f"Sync already in progress for {email}; skipping")
            return False
        self._run_claimed(email, self._cancel_event)
        return True

    def _claim(self, email: str) -> bool:
        with self._lock:
            if email in self._sync_in_progress:
                return False
            self._sync_in_progress.add(email)
            return True

    def _run_claimed(self, email: str, cancel_event: threading.Event) -> None:
        try:
            self._sync_account(email, cancel_event)
        except Exception as e:
            logger.exception(f"Unexpected error while syncing {email}")
            self._fail(email, e)
        finally:
            with self._lock:
                self._sync_in_progress.discard(email)

    def _sync_account(self, email: str, cancel_event: threading.Event) -> None:
        try:
            self._check_cancelled(cancel_event)
            session = self._open_session(email)

            self._check_cancelled(cancel_event)
            self._set_state(email, SyncState.LISTING)
            mailboxes = session.list_mailboxes()
            self.events.emit(MailboxListChanged(email))

            for info in mailboxes:
                self._check_cancelled(cancel_event)
                if should_skip(info):
                    logger.debug(f"Not mirroring {email}/{info.name}")
                    continue
                self._set_state(email, SyncState.SYNCING_MAILBOX, mailbox=info.name)
                try:
                    self.sync_mailbox(session, info.name, cancel_event=cancel_event)
                except ProtocolError as e:
                    logger.warning(f"Skipping mailbox {email}/{info.name}: {e}")
                except (IoError, CorruptionError) as e:
                    logger.error(f"Sync of {email}/{info.name} aborted: {e}")
                    self.events.emit(SyncFailed(email, e, info.name))

            self._set_state(email, SyncState.IDLE)
            logger.info(f"Sync finished for {email}")
        except SyncCancelled:
            logger.info(f"Sync cancelled for {email}")
            self._set_state(email, SyncState.IDLE)
        except (NetworkError, AuthError) as e:
            logger.error(f"Sync failed for {email}: {e}")
            self._drop_session(email)
            self._fail(email, e)
        except MailSyncError as e:
            logger.error(f"Sync failed for {email}: {e}")
            self._fail(email, e)

    def _open_session(self, email: str) -> AccountSession:
        with self._open_lock(email):
            with self._lock:
                session = self._sessions.get(email)
            if session is not None and session.is_open:
                try:
                    session.noop()
                    return session
                except NetworkError as e:
                    logger.info(f"Session of {email} was disconnected ({e}); reconnecting")
            if session is not None:
                self._drop_session(email)

            self._set_state(email, SyncState.AUTHENTICATING)
            provider = self.settings.provider_for(email)
            token = self.token_provider(email, provider)
            session = AccountSession.open(email, token, self.store, provider, self.client_factory)
            with self._lock:
                self._sessions[email] = session
            return session

    def _open_lock(self, email: str) -> threading.Lock:
        with self._lock:
            return self._open_locks.setdefault(email, threading.Lock())

    # ------------------------------------------------------------------
    # Mailbox sync
    # ------------------------------------------------------------------

    def sync_mailbox(
        self,
        session: AccountSession,
        mailbox: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        """
        Mirror the messages of ``mailbox`` that are not cached yet.

        Every fetched message is written to the maildir, appended to the
        cache index (persisted immediately) and announced with
        MailboxIndexChanged, in the order the server returned them.

        Returns:
            The number of messages appended.

        Raises:
            NetworkError, AuthError: The account task must stop.
            ProtocolError: The mailbox should be skipped.
            IoError: Local storage failed; the mailbox sync is aborted.
            SyncCancelled: The sync was cancelled.
        """
        cancel_event = cancel_event or self._cancel_event
        ref = session.ref(mailbox)
        self.store.prepare(ref)
        index = session.cache(mailbox)

        with session.lock:
            info = session.select(mailbox)
            self._check_uidvalidity(ref, info)
        known = index.uids()

        directory = self.store.maildir_path(ref)
        appended = 0
        with closing(session.fetch_delta(mailbox, known, self.batch_size or config.FETCH_BATCH_SIZE)) as stream:
            for message in stream:
                self._check_cancelled(cancel_event)
                key = self._write_message(directory, message)
                entry = CacheData(envelope=message.envelope, uid=message.uid, filename=key, flags=set())
                if not index.append(entry):
                    maildir.delete(directory, key)
                    continue
                appended += 1
                logger.debug(f"{session.email}/{mailbox}: cached UID {message.uid} as {key}")
                self.events.emit(MailboxIndexChanged(session.email, mailbox))

        logger.info(f"{session.email}/{mailbox}: {appended} message(s) added")
        self.events.emit(MailboxSyncComplete(session.email, mailbox))
        return appended

    def _check_uidvalidity(self, ref: MailboxRef, info: SelectInfo) -> None:
        if info.uidvalidity is None:
            return
        stored = self.store.load_uidvalidity(ref)
        if stored is not None and stored != info.uidvalidity:
            logger.warning(
                f"UIDVALIDITY of {ref.account}/{ref.mailbox} changed "
                f"({stored} -> {info.uidvalidity}); discarding cached messages"
            )
            self.store.reset_mailbox(ref)
        if stored != info.uidvalidity:
            self.store.save_uidvalidity(ref, info.uidvalidity)

    @staticmethod
    def _write_message(directory, message: FetchedMessage) -> str:
        key, writer = maildir.create(directory)
        with writer:
            writer.write(message.raw)
        return key

    # ------------------------------------------------------------------
    # State and lifecycle
    # ------------------------------------------------------------------

    def _set_state(self, email: str, state: SyncState, mailbox: Optional[str] = None,
                   error: Optional[Exception] = None) -> None:
        with self._lock:
            self._states[email] = state
        self.events.emit(SyncStateChanged(email, state, mailbox=mailbox, error=error))

    def _fail(self, email: str, error: Exception) -> None:
        self._set_state(email, SyncState.FAILED, error=error)
        self.events.emit(SyncFailed(email, error))
        self._set_state(email, SyncState.IDLE)

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise SyncCancelled("Sync cancelled")

    def _drop_session(self, email: str) -> None:
        with self._lock:
            session = self._sessions.pop(email, None)
        if session is not None:
            session.close()

    def cancel(self) -> None:
        """Stop every running account task at its next suspension point."""
        with self._lock:
            event, self._cancel_event = self._cancel_event, threading.Event()
        event.set()
        logger.info("Sync cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the account tasks started by sync_all.

        Returns:
            True if every task finished within ``timeout``.
        """
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
        return not any(t.is_alive() for t in threads)

    def is_syncing(self, email: str) -> bool:
        with self._lock:
            return email in self._sync_in_progress

    def state(self, email: str) -> SyncState:
        with self._lock:
            return self._states.get(email, SyncState.IDLE)

    def session(self, email: str) -> Optional[AccountSession]:
        """The open session of an account, if any."""
        with self._lock:
            session = self._sessions.get(email)
        if session is not None and session.is_open:
            return session
        return None

    def open_session(self, email: str) -> AccountSession:
        """
        Return the session of an account, opening one if needed.

        Raises:
            NetworkError, AuthError, ProtocolError
        """
        return self._open_session(email)

    def logout(self, email: str) -> None:
        """Close the session of an account. Cached data stays on disk."""
        self._drop_session(email)
        with self._lock:
            self._states.pop(email, None)
        self.store.forget_account(email)

    def close(self, timeout: Optional[float] = None) -> None:
        """Cancel running tasks, wait for them and close every session."""
        self.cancel()
        self.wait(timeout)
        with self._lock:
            emails = list(self._sessions)
        for email in emails:
            self._drop_session(email)
