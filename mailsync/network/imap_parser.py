"""
Parsing helpers for IMAP responses as returned by imaplib.

imaplib hands back untagged response data as a list whose items are either
plain ``bytes`` lines or ``(prefix, literal)`` tuples, where ``prefix`` ends
with the ``{N}`` marker of the literal that follows. The helpers here flatten
that shape into a token stream and parse it into nested Python values:

- parenthesised lists -> ``list``
- quoted strings and literals -> ``bytes``
- atoms and numbers -> ``str``
- ``NIL`` -> ``None``
"""
import base64
import email.header
import email.utils
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from mailsync.models import Address, Envelope, MailboxInfo
from mailsync.utils.errors import ProtocolError


LPAREN = "("
RPAREN = ")"
ATOM = "atom"
STRING = "string"

Token = Tuple[str, Any]

_LITERAL_MARKER = re.compile(rb"\{(\d+)\+?\}\s*$")
_ATOM_STOP = b' ()"\r\n\t'
_NEEDS_QUOTING = re.compile(r'[\s(){%*"\\\x00-\x1f\x7f]')
_MSG_ID = re.compile(r"<([^>]*)>")


def _lex(text: bytes) -> Iterable[Token]:
    i, n = 0, len(text)
    while i < n:
        c = text[i:i + 1]
        if c in b" \r\n\t":
            i += 1
        elif c == b"(":
            yield (LPAREN, None)
            i += 1
        elif c == b")":
            yield (RPAREN, None)
            i += 1
        elif c == b'"':
            i += 1
            buf = bytearray()
            while i < n:
                ch = text[i]
                if ch == 0x5C and i + 1 < n:  # backslash escape
                    buf.append(text[i + 1])
                    i += 2
                    continue
                i += 1
                if ch == 0x22:
                    break
                buf.append(ch)
            yield (STRING, bytes(buf))
        else:
            start = i
            depth = 0
            while i < n:
                c = text[i:i + 1]
                if c == b"[":
                    depth += 1
                elif c == b"]":
                    depth = max(0, depth - 1)
                elif depth == 0 and c in _ATOM_STOP:
                    break
                i += 1
            yield (ATOM, text[start:i].decode("utf-8", errors="replace"))


def tokenize(data: Sequence[Any]) -> List[Token]:
    """Flatten imaplib response data into a single token list."""
    tokens: List[Token] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            prefix = item[0] or b""
            literal = item[1] if len(item) > 1 else b""
            match = _LITERAL_MARKER.search(prefix)
            if match:
                prefix = prefix[:match.start()]
            tokens.extend(_lex(prefix))
            tokens.append((STRING, bytes(literal or b"")))
        elif isinstance(item, (bytes, bytearray)):
            tokens.extend(_lex(bytes(item)))
        else:
            tokens.extend(_lex(str(item).encode("utf-8")))
    return tokens


def _parse_value(tokens: List[Token], pos: int) -> Tuple[Any, int]:
    if pos >= len(tokens):
        raise ProtocolError("Truncated IMAP response")
    kind, value = tokens[pos]
    if kind == LPAREN:
        items = []
        pos += 1
        while True:
            if pos >= len(tokens):
                raise ProtocolError("Unbalanced parenthesis in IMAP response")
            if tokens[pos][0] == RPAREN:
                return items, pos + 1
            item, pos = _parse_value(tokens, pos)
            items.append(item)
    if kind == RPAREN:
        raise ProtocolError("Unexpected ')' in IMAP response")
    if kind == ATOM:
        return (None if value.upper() == "NIL" else value), pos + 1
    return value, pos + 1


def parse_values(data: Sequence[Any]) -> List[Any]:
    """
    Parse imaplib response data into a flat list of top-level values.

    Raises:
        ProtocolError: If the data is not well-formed.
    """
    tokens = tokenize(data)
    values = []
    pos = 0
    while pos < len(tokens):
        value, pos = _parse_value(tokens, pos)
        values.append(value)
    return values


def to_text(value: Any) -> str:
    """Convert a parsed string/atom/NIL to text."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def decode_header_value(value: str) -> str:
    """Decode RFC 2047 encoded words in a header value."""
    if not value:
        return ""
    try:
        result = ""
        for part, charset in email.header.decode_header(value):
            if isinstance(part, bytes):
                result += part.decode(charset or "utf-8", errors="replace")
            else:
                result += part
        return result
    except (LookupError, ValueError):
        return value


def _parse_date(value: Any) -> Optional[datetime]:
    text = to_text(value).strip()
    if not text:
        return None
    try:
        return email.utils.parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None


def _parse_addresses(value: Any) -> List[Address]:
    if not isinstance(value, list):
        return []
    addresses = []
    for item in value:
        if not isinstance(item, list) or len(item) < 4:
            continue
        name, _adl, mailbox, host = item[:4]
        # Group syntax markers: (NIL NIL "group" NIL) ... (NIL NIL NIL NIL)
        if host is None:
            continue
        mailbox_text = to_text(mailbox)
        host_text = to_text(host)
        address = f"{mailbox_text}@{host_text}" if host_text else mailbox_text
        addresses.append(Address(name=decode_header_value(to_text(name)), address=address))
    return addresses


def _parse_msg_ids(value: Any) -> List[str]:
    text = to_text(value).strip()
    if not text:
        return []
    ids = _MSG_ID.findall(text)
    return ids if ids else [text]


def parse_envelope(value: Any) -> Envelope:
    """
    Build an Envelope from a parsed ENVELOPE list.

    Field order (RFC 3501): date, subject, from, sender, reply-to, to, cc,
    bcc, in-reply-to, message-id.

    Raises:
        ProtocolError: If the value is not an envelope list.
    """
    if not isinstance(value, list) or len(value) < 10:
        raise ProtocolError(f"Malformed ENVELOPE: {value!r}")
    message_ids = _parse_msg_ids(value[9])
    return Envelope(
        date=_parse_date(value[0]),
        subject=decode_header_value(to_text(value[1])),
        from_=_parse_addresses(value[2]),
        sender=_parse_addresses(value[3]),
        reply_to=_parse_addresses(value[4]),
        to=_parse_addresses(value[5]),
        cc=_parse_addresses(value[6]),
        bcc=_parse_addresses(value[7]),
        in_reply_to=_parse_msg_ids(value[8]),
        message_id=message_ids[0] if message_ids else "",
    )


def parse_fetch_response(data: Sequence[Any]) -> List[Tuple[int, Dict[str, Any]]]:
    """
    Parse the data of a (UID) FETCH command.

    Returns:
        A list of (sequence number, attributes) in server order. Attribute
        names are upper-cased, e.g. ``UID``, ``ENVELOPE``, ``BODY[HEADER]``.

    Raises:
        ProtocolError: If the data is not well-formed.
    """
    values = parse_values(data)
    results = []
    i = 0
    while i < len(values):
        seq = values[i]
        attrs = values[i + 1] if i + 1 < len(values) else None
        if isinstance(seq, str) and seq.isdigit() and isinstance(attrs, list):
            if len(attrs) % 2:
                raise ProtocolError(f"Odd FETCH attribute list for message {seq}")
            items = {}
            for j in range(0, len(attrs), 2):
                items[to_text(attrs[j]).upper()] = attrs[j + 1]
            results.append((int(seq), items))
            i += 2
        else:
            i += 1
    return results


def parse_list_response(data: Sequence[Any]) -> List[MailboxInfo]:
    """
    Parse the data of a LIST command.

    Each mailbox is ``(attributes) delimiter name``; the name may arrive as a
    quoted string, an atom or a literal.

    Raises:
        ProtocolError: If the data is not well-formed.
    """
    values = parse_values([item for item in data if item])
    mailboxes = []
    i = 0
    while i + 2 < len(values):
        attrs, delimiter, name = values[i], values[i + 1], values[i + 2]
        if not isinstance(attrs, list):
            i += 1
            continue
        mailboxes.append(MailboxInfo(
            name=to_text(name),
            delimiter=to_text(delimiter) if delimiter is not None else None,
            attributes=tuple(to_text(a) for a in attrs if not isinstance(a, list)),
        ))
        i += 3
    return mailboxes


def parse_search_response(data: Sequence[Any]) -> List[int]:
    """Parse the data of a (UID) SEARCH command into a list of numbers."""
    uids = []
    for item in data:
        if not item:
            continue
        if isinstance(item, tuple):
            item = item[0]
        for part in to_text(item).split():
            if part.isdigit():
                uids.append(int(part))
    return uids


def format_uid_set(uids: Iterable[int]) -> str:
    """
    Format UIDs as an IMAP sequence set.

    Runs of three or more consecutive UIDs collapse to ``a:b``; shorter runs
    stay comma separated, e.g. ``[12, 13, 17]`` -> ``12,13,17``.
    """
    ordered = sorted(set(uids))
    parts = []
    i = 0
    while i < len(ordered):
        j = i
        while j + 1 < len(ordered) and ordered[j + 1] == ordered[j] + 1:
            j += 1
        if j - i >= 2:
            parts.append(f"{ordered[i]}:{ordered[j]}")
        else:
            parts.extend(str(u) for u in ordered[i:j + 1])
        i = j + 1
    return ",".join(parts)


def decode_modified_utf7(name: str) -> str:
    """Decode an IMAP modified UTF-7 mailbox name (RFC 3501 section 5.1.3)."""
    result = []
    i = 0
    while i < len(name):
        c = name[i]
        if c != "&":
            result.append(c)
            i += 1
            continue
        end = name.find("-", i + 1)
        if end == -1:
            result.append(name[i:])
            break
        chunk = name[i + 1:end]
        if not chunk:
            result.append("&")
        else:
            b64 = chunk.replace(",", "/")
            b64 += "=" * (-len(b64) % 4)
            try:
                result.append(base64.b64decode(b64).decode("utf-16-be"))
            except (ValueError, UnicodeDecodeError):
                result.append(name[i:end + 1])
        i = end + 1
    return "".join(result)


def encode_modified_utf7(name: str) -> str:
    """Encode a mailbox name in IMAP modified UTF-7."""
    result = []
    pending = []

    def flush():
        if pending:
            raw = "".join(pending).encode("utf-16-be")
            result.append("&" + base64.b64encode(raw).decode("ascii").rstrip("=").replace("/", ",") + "-")
            pending.clear()

    for c in name:
        if 0x20 <= ord(c) <= 0x7E:
            flush()
            result.append("&-" if c == "&" else c)
        else:
            pending.append(c)
    flush()
    return "".join(result)


def quote_mailbox(name: str) -> str:
    """
    Prepare a mailbox name for use as a command argument.

    Non-ASCII names are encoded to modified UTF-7; names containing spaces or
    IMAP specials are quoted, e.g. "Sent Mail" -> '"Sent Mail"'.
    """
    if any(ord(c) > 0x7E for c in name):
        name = encode_modified_utf7(name)
    if not name or _NEEDS_QUOTING.search(name):
        escaped = name.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return name
