"""
Per-account IMAP session.

An AccountSession owns one authenticated ImapClient and a re-entrant lock.
Every IMAP command of the account runs while the lock is held, so at most
one command is in flight on the connection at any time.
"""
import logging
import threading
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from mailsync import config
from mailsync.core.store import MailStore
from mailsync.models import FetchedMessage, MailboxInfo, MailboxRef, SelectInfo
from mailsync.network.imap_client import ImapClient
from mailsync.storage.cache_index import CacheIndex
from mailsync.utils.errors import ProtocolError


logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str], ImapClient]


class AccountSession:
    """
    An authenticated connection for one account plus its cache indexes.

    Attributes:
        email: The account address.
        client: The IMAP client; touched only while ``lock`` is held.
        lock: Serialises IMAP commands and index writes for the account.
        caches: Mailbox name -> CacheIndex, shared with the MailStore registry.
        selected: The currently selected mailbox, if any.
    """

    def __init__(self, email: str, client: ImapClient, store: MailStore, provider: str = config.DEFAULT_PROVIDER):
        self.email = email
        self.client = client
        self.store = store
        self.provider = provider
        self.lock = threading.RLock()
        self.caches: Dict[str, CacheIndex] = {}
        self.selected: Optional[str] = None

    @classmethod
    def open(
        cls,
        email: str,
        access_token: str,
        store: MailStore,
        provider: str = config.DEFAULT_PROVIDER,
        client_factory: Optional[ClientFactory] = None,
    ) -> "AccountSession":
        """
        Connect and authenticate an account.

        Args:
            email: The account address.
            access_token: OAuth2 bearer token.
            store: The mail store whose indexes the session shares.
            provider: Provider key in config.PROVIDER_CONFIGS.
            client_factory: Builds the ImapClient from (email, host).

        Returns:
            An open AccountSession.

        Raises:
            NetworkError: If the server cannot be reached.
            AuthError: If the token is rejected.
            ProtocolError: If the provider is unknown.
        """
        try:
            host = config.get_imap_host(provider)
        except KeyError as e:
            raise ProtocolError(f"Unknown provider '{provider}' for {email}") from e

        factory = client_factory or ImapClient
        client = factory(email, host)
        client.connect(access_token)
        logger.info(f"Opened session for {email} ({provider})")
        return cls(email, client, store, provider)

    @property
    def is_open(self) -> bool:
        return self.client.is_connected

    def close(self) -> None:
        """Log out. Idempotent."""
        with self.lock:
            self.client.close()
            self.selected = None

    def ref(self, mailbox: str) -> MailboxRef:
        return MailboxRef(self.email, mailbox)

    def cache(self, mailbox: str) -> CacheIndex:
        """Return the CacheIndex of ``mailbox``, loading it on first use."""
        index = self.store.index(self.ref(mailbox))
        self.caches[mailbox] = index
        return index

    def noop(self) -> None:
        with self.lock:
            self.client.noop()

    def list_mailboxes(self) -> List[MailboxInfo]:
        with self.lock:
            return self.client.list_mailboxes()

    def select(self, mailbox: str) -> SelectInfo:
        """
        SELECT ``mailbox`` unconditionally.

        Raises:
            NetworkError, ProtocolError
        """
        with self.lock:
            self.selected = None
            info = self.client.select(mailbox)
            self.selected = mailbox
            return info

    def _ensure_selected(self, mailbox: str) -> None:
        if self.selected != mailbox:
            self.select(mailbox)

    def fetch_delta(
        self,
        mailbox: str,
        known_uids: Iterable[int],
        batch_size: Optional[int] = None,
    ) -> Iterator[FetchedMessage]:
        """
        Yield the messages of ``mailbox`` whose UID is not in ``known_uids``.

        One UID SEARCH computes the delta; the UIDs are then fetched in
        batches of ``batch_size``. The session lock is held while a batch is
        fetched and while its messages are consumed, so the consumer's index
        writes are serialised with mutations. The mailbox is reselected before
        a batch if another command selected a different one in between.
        Duplicate UIDs in the server's answers are yielded once.

        Callers that may stop early should close the generator
        (``contextlib.closing``) so the lock is released promptly.

        Raises:
            NetworkError, ProtocolError
        """
        batch_size = max(1, batch_size or config.FETCH_BATCH_SIZE)
        known = set(known_uids)

        with self.lock:
            self._ensure_selected(mailbox)
            found = self.client.search_new_uids(known)

        pending: List[int] = []
        for uid in found:
            if uid not in known:
                known.add(uid)
                pending.append(uid)
        logger.info(f"{self.email}/{mailbox}: {len(pending)} new message(s)")

        yielded = set()
        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            with self.lock:
                self._ensure_selected(mailbox)
                messages = list(self.client.fetch_messages(batch))
                for message in messages:
                    if message.uid in yielded:
                        logger.debug(f"{self.email}/{mailbox}: dropping duplicate UID {message.uid}")
                        continue
                    yielded.add(message.uid)
                    yield message

    def move(self, mailbox: str, uid: int, target: str) -> None:
        with self.lock:
            self._ensure_selected(mailbox)
            self.client.move(uid, target)

    def store_flags(self, mailbox: str, uid: int, add: Iterable[str] = (), remove: Iterable[str] = ()) -> None:
        with self.lock:
            self._ensure_selected(mailbox)
            self.client.store_flags(uid, add, remove)
