"""
High-level IMAP client wrapper.

This module provides a clean, high-level interface for the IMAP operations the
sync core needs, hiding the complexity of imaplib and mapping its failures onto
the mailsync error hierarchy:

- socket, TLS, timeout and connection-abort failures -> NetworkError
- NO/BAD completions and malformed responses -> ProtocolError
- rejected XOAUTH2 exchanges -> AuthError

The client is not thread-safe; AccountSession serialises access to it.
"""
import imaplib
import logging
from typing import Callable, Iterable, Iterator, List, Optional, Set

from mailsync import config
from mailsync.models import FetchedMessage, MailboxInfo, SelectInfo
from mailsync.network import imap_parser
from mailsync.network.xoauth2 import MECHANISM, Xoauth2Responder
from mailsync.utils.errors import AuthError, NetworkError, ProtocolError


logger = logging.getLogger(__name__)

FETCH_ITEMS = "(UID ENVELOPE BODY.PEEK[HEADER] BODY.PEEK[TEXT])"


def _default_connection_factory(host: str, port: int, timeout: Optional[float]) -> imaplib.IMAP4:
    return imaplib.IMAP4_SSL(host, port, timeout=timeout)


class ImapClient:
    """
    High-level IMAP client wrapper.

    Authenticates with XOAUTH2 over TLS and exposes the mirror-oriented
    operations: list, select, delta search, fetch, move and flag store.
    """

    def __init__(
        self,
        email: str,
        host: str,
        port: int = config.DEFAULT_IMAP_PORT,
        timeout: Optional[float] = None,
        connection_factory: Optional[Callable[[str, int, Optional[float]], imaplib.IMAP4]] = None,
    ):
        """
        Initialize the IMAP client.

        Args:
            email: The account address, used as the XOAUTH2 user.
            host: IMAP server hostname.
            port: IMAP server port (TLS).
            timeout: Network idle timeout in seconds. Defaults to config.IMAP_TIMEOUT.
            connection_factory: Callable returning an imaplib-compatible
                connection; defaults to imaplib.IMAP4_SSL.
        """
        self.email = email
        self.host = host
        self.port = port
        self.timeout = timeout if timeout is not None else config.IMAP_TIMEOUT
        self._connection_factory = connection_factory or _default_connection_factory
        self.connection: Optional[imaplib.IMAP4] = None
        self._capabilities: Optional[Set[str]] = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    def connect(self, access_token: str) -> None:
        """
        Dial the server over TLS and authenticate with XOAUTH2.

        Args:
            access_token: OAuth2 bearer token for the account.

        Raises:
            NetworkError: If the server cannot be reached.
            AuthError: If the token is rejected.
        """
        if self.connection is not None:
            return

        responder = Xoauth2Responder(self.email, access_token)

        try:
            connection = self._connection_factory(self.host, self.port, self.timeout)
        except (OSError, imaplib.IMAP4.error) as e:
            raise NetworkError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        try:
            result, data = connection.authenticate(MECHANISM, responder)
        except imaplib.IMAP4.abort as e:
            self._shutdown(connection)
            raise NetworkError(f"Connection lost during authentication: {e}") from e
        except imaplib.IMAP4.error as e:
            self._shutdown(connection)
            if responder.error is not None:
                raise responder.error from e
            raise AuthError(f"IMAP authentication error: {e}") from e
        except OSError as e:
            self._shutdown(connection)
            raise NetworkError(f"Network error during authentication: {e}") from e

        if result != 'OK':
            self._shutdown(connection)
            raise responder.error or AuthError(f"XOAUTH2 authentication failed: {result}")

        self.connection = connection
        self._capabilities = None
        logger.info(f"Authenticated {self.email} on {self.host}")

    @staticmethod
    def _shutdown(connection: imaplib.IMAP4) -> None:
        try:
            connection.shutdown()
        except (OSError, imaplib.IMAP4.error, AttributeError):
            pass

    def close(self) -> None:
        """Send LOGOUT and close the connection. Idempotent."""
        connection, self.connection = self.connection, None
        self._capabilities = None
        if connection is None:
            return
        try:
            connection.logout()
        except (OSError, imaplib.IMAP4.error) as e:
            logger.debug(f"LOGOUT for {self.email} failed: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _call(self, description: str, func: Callable, *args) -> list:
        """Run one imaplib command and map its failures."""
        if self.connection is None:
            raise NetworkError(f"{description}: not connected")
        try:
            result, data = func(*args)
        except imaplib.IMAP4.readonly as e:
            raise ProtocolError(f"{description}: {e}") from e
        except imaplib.IMAP4.abort as e:
            self.close()
            raise NetworkError(f"{description}: connection aborted: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ProtocolError(f"{description}: {e}") from e
        except (OSError, EOFError) as e:
            self.close()
            raise NetworkError(f"{description}: {e}") from e

        if result != 'OK':
            detail = imap_parser.to_text(data[-1]) if data else ""
            raise ProtocolError(f"{description} failed: {result} {detail}".strip())
        return data

    def noop(self) -> None:
        """
        Send NOOP to check that the connection is still alive.

        Raises:
            NetworkError: If the server dropped the connection; the client
                is closed.
        """
        if self.connection is None:
            raise NetworkError("NOOP: not connected")
        self._call("NOOP", self.connection.noop)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    @property
    def capabilities(self) -> Set[str]:
        """Capabilities advertised after authentication, probed once per connection."""
        if self._capabilities is None:
            data = self._call("CAPABILITY", self.connection.capability)
            caps: Set[str] = set()
            for item in data:
                caps.update(imap_parser.to_text(item).upper().split())
            self._capabilities = caps
            logger.debug(f"Capabilities for {self.email}: {sorted(caps)}")
        return self._capabilities

    def has_capability(self, name: str) -> bool:
        return name.upper() in self.capabilities

    # ------------------------------------------------------------------
    # Mailboxes
    # ------------------------------------------------------------------

    def list_mailboxes(self) -> List[MailboxInfo]:
        """
        List all mailboxes on the server (``LIST "" "*"``).

        When LIST-EXTENDED and SPECIAL-USE are advertised, special-use
        attributes (\\Sent, \\Trash, ...) are requested too.

        Raises:
            NetworkError, ProtocolError
        """
        pattern = '"*"'
        if self.has_capability("LIST-EXTENDED") and self.has_capability("SPECIAL-USE"):
            pattern = '"*" RETURN (SPECIAL-USE)'
        data = self._call("LIST", self.connection.list, '""', pattern)
        return imap_parser.parse_list_response(data)

    def select(self, mailbox: str) -> SelectInfo:
        """
        Select a mailbox.

        Returns:
            SelectInfo with the EXISTS count and UIDVALIDITY.

        Raises:
            NetworkError, ProtocolError
        """
        data = self._call(f"SELECT {mailbox}", self.connection.select, imap_parser.quote_mailbox(mailbox))
        exists = 0
        if data and data[0]:
            try:
                exists = int(imap_parser.to_text(data[0]))
            except ValueError:
                exists = 0

        uidvalidity = None
        try:
            _, values = self.connection.response('UIDVALIDITY')
        except (OSError, imaplib.IMAP4.error) as e:
            raise ProtocolError(f"Reading UIDVALIDITY for {mailbox}: {e}") from e
        if values and values[-1]:
            try:
                uidvalidity = int(imap_parser.to_text(values[-1]))
            except ValueError:
                uidvalidity = None
        return SelectInfo(name=mailbox, exists=exists, uidvalidity=uidvalidity)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def search_new_uids(self, known_uids: Iterable[int]) -> List[int]:
        """
        Search the selected mailbox for UIDs not in ``known_uids``.

        Issues ``UID SEARCH ALL`` when nothing is known yet and
        ``UID SEARCH NOT UID <set>`` otherwise.

        Returns:
            UIDs in the order the server returned them.
        """
        known = set(known_uids)
        if known:
            data = self._call("UID SEARCH", self.connection.uid, 'SEARCH', 'NOT', 'UID',
                              imap_parser.format_uid_set(known))
        else:
            data = self._call("UID SEARCH", self.connection.uid, 'SEARCH', 'ALL')
        return [uid for uid in imap_parser.parse_search_response(data) if uid not in known]

    def fetch_messages(self, uids: List[int]) -> Iterator[FetchedMessage]:
        """
        Fetch envelope, header and text for ``uids`` with one UID FETCH.

        BODY.PEEK keeps the server from setting \\Seen.

        Yields:
            FetchedMessage objects in the order the server returned them.

        Raises:
            NetworkError, ProtocolError
        """
        if not uids:
            return
        wanted = set(uids)
        data = self._call("UID FETCH", self.connection.uid, 'FETCH',
                          imap_parser.format_uid_set(uids), FETCH_ITEMS)
        for seq, items in imap_parser.parse_fetch_response(data):
            uid_value = items.get("UID")
            if uid_value is None or "ENVELOPE" not in items:
                # Unsolicited FETCH (e.g. a flag update) for another message
                continue
            try:
                uid = int(imap_parser.to_text(uid_value))
            except ValueError as e:
                raise ProtocolError(f"Invalid UID in FETCH response: {uid_value!r}") from e
            if uid not in wanted:
                continue
            header = items.get("BODY[HEADER]") or b""
            text = items.get("BODY[TEXT]") or b""
            if isinstance(header, str):
                header = header.encode("utf-8")
            if isinstance(text, str):
                text = text.encode("utf-8")
            yield FetchedMessage(
                uid=uid,
                envelope=imap_parser.parse_envelope(items["ENVELOPE"]),
                header=header,
                text=text,
            )

    def move(self, uid: int, target: str) -> None:
        """
        Move a message of the selected mailbox to ``target``.

        Uses UID MOVE when advertised, otherwise UID COPY, UID STORE
        +FLAGS.SILENT (\\Deleted) and UID EXPUNGE (UIDPLUS) or EXPUNGE.

        Raises:
            NetworkError, ProtocolError
        """
        uid_str = str(uid)
        target_arg = imap_parser.quote_mailbox(target)
        if self.has_capability("MOVE"):
            self._call(f"UID MOVE {uid}", self.connection.uid, 'MOVE', uid_str, target_arg)
            return

        self._call(f"UID COPY {uid}", self.connection.uid, 'COPY', uid_str, target_arg)
        self._call(f"UID STORE {uid}", self.connection.uid, 'STORE', uid_str,
                   '+FLAGS.SILENT', '(\\Deleted)')
        if self.has_capability("UIDPLUS"):
            self._call(f"UID EXPUNGE {uid}", self.connection.uid, 'EXPUNGE', uid_str)
        else:
            self._call("EXPUNGE", self.connection.expunge)

    def store_flags(self, uid: int, add: Iterable[str] = (), remove: Iterable[str] = ()) -> None:
        """
        Add and/or remove flags on a message of the selected mailbox.

        Raises:
            NetworkError, ProtocolError
        """
        add = sorted(set(add))
        remove = sorted(set(remove))
        if add:
            self._call(f"UID STORE {uid}", self.connection.uid, 'STORE', str(uid),
                       '+FLAGS.SILENT', f"({' '.join(add)})")
        if remove:
            self._call(f"UID STORE {uid}", self.connection.uid, 'STORE', str(uid),
                       '-FLAGS.SILENT', f"({' '.join(remove)})")
