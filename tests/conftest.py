"""Shared fixtures: an in-memory IMAP server speaking imaplib's data shapes."""

import imaplib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import pytest

from mailsync.core.events import EventQueue
from mailsync.core.settings import Settings
from mailsync.core.store import MailStore
from mailsync.network.imap_client import ImapClient


def quote(value: Optional[str]) -> str:
    if value is None:
        return "NIL"
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def format_address_list(addresses) -> str:
    if not addresses:
        return "NIL"
    parts = []
    for name, address in addresses:
        mailbox, _, host = address.partition("@")
        parts.append(f"({quote(name)} NIL {quote(mailbox)} {quote(host)})")
    return "(" + "".join(parts) + ")"


def format_envelope(
    subject: str = "Hello",
    date: str = "Tue, 14 Nov 2023 22:13:20 +0000",
    from_=(("Alice", "alice@example.com"),),
    to=(("Bob", "bob@example.com"),),
    cc=(),
    in_reply_to: Optional[str] = None,
    message_id: str = "<msg@example.com>",
) -> str:
    """Render an ENVELOPE list the way a server sends it."""
    return "({} {} {} {} {} {} {} NIL {} {})".format(
        quote(date),
        quote(subject),
        format_address_list(from_),
        format_address_list(from_),
        format_address_list(from_),
        format_address_list(to),
        format_address_list(cc),
        quote(in_reply_to),
        quote(message_id),
    )


@dataclass
class FakeMessage:
    uid: int
    envelope: str
    header: bytes
    text: bytes
    flags: Set[str] = field(default_factory=set)


@dataclass
class FakeMailbox:
    name: str
    uidvalidity: int = 1
    attributes: str = "\\HasNoChildren"
    messages: Dict[int, FakeMessage] = field(default_factory=dict)
    next_uid: int = 1


def parse_uid_set(text: str) -> Set[int]:
    uids = set()
    for part in text.split(","):
        if ":" in part:
            low, high = part.split(":")
            uids.update(range(int(low), int(high) + 1))
        else:
            uids.add(int(part))
    return uids


def unquote(arg: str) -> str:
    if len(arg) >= 2 and arg[0] == '"' and arg[-1] == '"':
        return arg[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return arg


class FakeImapServer:
    """
    Server state shared by every connection made through ``connect``.

    ``fail_next`` maps an upper-case command name (``FETCH``, ``STORE``,
    ``SELECT``, ...) to an exception to raise or an (typ, data) tuple to
    return the next time that command runs.
    """

    def __init__(self, capabilities=("IMAP4rev1", "MOVE", "UIDPLUS")):
        self.capabilities = list(capabilities)
        self.mailboxes: Dict[str, FakeMailbox] = {}
        self.valid_tokens = {"good-token"}
        self.auth_challenge: Optional[bytes] = None
        self.commands: List[str] = []
        self.auth_responses: List[bytes] = []
        self.connections: List["FakeImapConnection"] = []
        self.fail_next: Dict[str, object] = {}

    def add_mailbox(self, name: str, uidvalidity: int = 1, attributes: str = "\\HasNoChildren") -> FakeMailbox:
        mailbox = FakeMailbox(name=name, uidvalidity=uidvalidity, attributes=attributes)
        self.mailboxes[name] = mailbox
        return mailbox

    def add_message(self, mailbox: str, uid: Optional[int] = None, subject: str = "Hello",
                    date: str = "Tue, 14 Nov 2023 22:13:20 +0000", body: bytes = b"Body text\r\n",
                    flags=()) -> FakeMessage:
        box = self.mailboxes[mailbox]
        if uid is None:
            uid = box.next_uid
        box.next_uid = max(box.next_uid, uid + 1)
        header = (
            f"From: Alice <alice@example.com>\r\nSubject: {subject}\r\n"
            f"Message-ID: <{uid}@example.com>\r\n\r\n"
        ).encode("utf-8")
        message = FakeMessage(
            uid=uid,
            envelope=format_envelope(subject=subject, date=date, message_id=f"<{uid}@example.com>"),
            header=header,
            text=body,
            flags=set(flags),
        )
        box.messages[uid] = message
        return message

    def connect(self, host: str, port: int, timeout: Optional[float]) -> "FakeImapConnection":
        failure = self.fail_next.pop("CONNECT", None)
        if isinstance(failure, BaseException):
            raise failure
        conn = FakeImapConnection(self, host, port, timeout)
        self.connections.append(conn)
        return conn

    def commands_starting(self, prefix: str) -> List[str]:
        return [c for c in self.commands if c.startswith(prefix)]


class FakeImapConnection:
    """Implements the subset of imaplib.IMAP4 used by ImapClient."""

    error = imaplib.IMAP4.error
    abort = imaplib.IMAP4.abort

    def __init__(self, server: FakeImapServer, host: str, port: int, timeout: Optional[float]):
        self.server = server
        self.host = host
        self.port = port
        self.timeout = timeout
        self.selected: Optional[str] = None
        self.untagged: Dict[str, list] = {}
        self.logged_out = False

    def _record(self, text: str) -> Optional[tuple]:
        if self.logged_out:
            raise imaplib.IMAP4.abort("connection closed")
        self.server.commands.append(text)
        name = text.split()[1] if text.startswith("UID ") else text.split()[0]
        failure = self.server.fail_next.pop(name, None)
        if isinstance(failure, BaseException):
            raise failure
        return failure

    def authenticate(self, mechanism, authobject):
        self._record(f"AUTHENTICATE {mechanism}")
        response = authobject(b"")
        self.server.auth_responses.append(response)
        if self.server.auth_challenge is not None:
            authobject(self.server.auth_challenge)
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials (Failure)")
        token = response.split(b"auth=Bearer ", 1)[-1].split(b"\x01", 1)[0].decode()
        if token not in self.server.valid_tokens:
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials")
        return "OK", [b"Success"]

    def noop(self):
        override = self._record("NOOP")
        if override:
            return override
        return "OK", [b"NOOP completed"]

    def capability(self):
        self._record("CAPABILITY")
        return "OK", [" ".join(self.server.capabilities).encode()]

    def list(self, directory='""', pattern="*"):
        override = self._record(f"LIST {directory} {pattern}")
        if override:
            return override
        lines = [
            f'({box.attributes}) "/" {quote(box.name)}'.encode()
            for box in self.server.mailboxes.values()
        ]
        return "OK", lines

    def select(self, mailbox="INBOX", readonly=False):
        override = self._record(f"SELECT {mailbox}")
        if override:
            return override
        name = unquote(mailbox)
        box = self.server.mailboxes.get(name)
        if box is None:
            self.selected = None
            return "NO", [b"[NONEXISTENT] Unknown Mailbox"]
        self.selected = name
        self.untagged = {"UIDVALIDITY": [str(box.uidvalidity).encode()]}
        return "OK", [str(len(box.messages)).encode()]

    def response(self, code):
        return code, self.untagged.pop(code.upper(), [None])

    def uid(self, command, *args):
        command = command.upper()
        parts = [a for a in args if a is not None]
        override = self._record(" ".join(["UID", command] + parts))
        if override:
            return override
        box = self.server.mailboxes[self.selected]
        handler = getattr(self, f"_uid_{command.lower()}")
        return handler(box, parts)

    def _uid_search(self, box, parts):
        uids = sorted(box.messages)
        if parts[:2] == ["NOT", "UID"]:
            excluded = parse_uid_set(parts[2])
            uids = [u for u in uids if u not in excluded]
        return "OK", [" ".join(str(u) for u in uids).encode()]

    def _uid_fetch(self, box, parts):
        wanted = parse_uid_set(parts[0])
        data = []
        for seq, uid in enumerate(sorted(box.messages), start=1):
            if uid not in wanted:
                continue
            msg = box.messages[uid]
            data.append((
                f"{seq} (UID {uid} ENVELOPE {msg.envelope} BODY[HEADER] {{{len(msg.header)}}}".encode(),
                msg.header,
            ))
            data.append((f" BODY[TEXT] {{{len(msg.text)}}}".encode(), msg.text))
            data.append(b")")
        return "OK", data

    def _uid_store(self, box, parts):
        uid_text, mode, flag_list = parts
        flags = set(flag_list.strip("()").split())
        for uid in parse_uid_set(uid_text):
            msg = box.messages.get(uid)
            if msg is None:
                continue
            if mode.startswith("+"):
                msg.flags |= flags
            else:
                msg.flags -= flags
        return "OK", [None]

    def _copy_to(self, box, uid_text, target):
        target_box = self.server.mailboxes.get(unquote(target))
        if target_box is None:
            return False
        for uid in sorted(parse_uid_set(uid_text)):
            msg = box.messages.get(uid)
            if msg is None:
                continue
            new_uid = target_box.next_uid
            target_box.next_uid += 1
            target_box.messages[new_uid] = FakeMessage(
                uid=new_uid, envelope=msg.envelope, header=msg.header, text=msg.text, flags=set(msg.flags)
            )
        return True

    def _uid_copy(self, box, parts):
        if not self._copy_to(box, parts[0], parts[1]):
            return "NO", [b"[TRYCREATE] No such mailbox"]
        return "OK", [b"Copied"]

    def _uid_move(self, box, parts):
        if not self._copy_to(box, parts[0], parts[1]):
            return "NO", [b"[TRYCREATE] No such mailbox"]
        for uid in parse_uid_set(parts[0]):
            box.messages.pop(uid, None)
        return "OK", [b"Moved"]

    def _uid_expunge(self, box, parts):
        for uid in parse_uid_set(parts[0]):
            msg = box.messages.get(uid)
            if msg is not None and "\\Deleted" in msg.flags:
                del box.messages[uid]
        return "OK", [None]

    def expunge(self):
        self._record("EXPUNGE")
        box = self.server.mailboxes[self.selected]
        for uid in [u for u, m in box.messages.items() if "\\Deleted" in m.flags]:
            del box.messages[uid]
        return "OK", [None]

    def logout(self):
        self.server.commands.append("LOGOUT")
        self.logged_out = True
        return "BYE", [b"Logging out"]

    def shutdown(self):
        self.logged_out = True


@pytest.fixture
def server():
    srv = FakeImapServer()
    srv.add_mailbox("INBOX")
    return srv


@pytest.fixture
def client_factory(server):
    def factory(email, host):
        return ImapClient(email, host, connection_factory=server.connect)
    return factory


@pytest.fixture
def store(tmp_path):
    return MailStore(tmp_path / "data")


@pytest.fixture
def events():
    return EventQueue()


@pytest.fixture
def settings():
    return Settings(accounts=["user@example.com"], providers={"user@example.com": "google"})


@pytest.fixture
def token_provider():
    calls = []

    def provide(email, provider):
        calls.append((email, provider))
        return "good-token"

    provide.calls = calls
    return provide
