"""Tests for IMAP response parsing."""

from datetime import datetime, timezone

import pytest

from mailsync.network import imap_parser
from mailsync.utils.errors import ProtocolError

from conftest import format_envelope


def test_parse_values_handles_nesting_strings_and_nil():
    values = imap_parser.parse_values([b'(A "b c" NIL (1 2)) "esc\\"aped" BODY[HEADER.FIELDS (TO)]'])
    assert values == [["A", b"b c", None, ["1", "2"]], b'esc"aped', "BODY[HEADER.FIELDS (TO)]"]


def test_unbalanced_parenthesis_raises():
    with pytest.raises(ProtocolError):
        imap_parser.parse_values([b"(A (B)"])
    with pytest.raises(ProtocolError):
        imap_parser.parse_values([b"A)"])


def test_parse_envelope():
    raw = format_envelope(
        subject="=?UTF-8?B?SGVsbG8gV8O2cmxk?=",
        from_=(("Alice Example", "alice@example.com"),),
        to=(("", "bob@example.com"), ("Carol", "carol@example.org")),
        in_reply_to="<parent@example.com>",
        message_id="<child@example.com>",
    )
    envelope = imap_parser.parse_envelope(imap_parser.parse_values([raw.encode()])[0])
    assert envelope.subject == "Hello Wörld"
    assert envelope.date == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert [a.address for a in envelope.from_] == ["alice@example.com"]
    assert envelope.from_[0].name == "Alice Example"
    assert [a.address for a in envelope.to] == ["bob@example.com", "carol@example.org"]
    assert envelope.cc == []
    assert envelope.in_reply_to == ["parent@example.com"]
    assert envelope.message_id == "child@example.com"


def test_parse_envelope_skips_group_markers_and_bad_dates():
    raw = (
        b'("not a date" NIL ((NIL NIL "undisclosed" NIL)(NIL NIL NIL NIL)) NIL NIL '
        b'(("Bob" NIL "bob" "example.com")) NIL NIL NIL NIL)'
    )
    envelope = imap_parser.parse_envelope(imap_parser.parse_values([raw])[0])
    assert envelope.date is None
    assert envelope.subject == ""
    assert envelope.from_ == []
    assert envelope.to[0].address == "bob@example.com"
    assert envelope.message_id == ""


def test_parse_envelope_rejects_short_list():
    with pytest.raises(ProtocolError):
        imap_parser.parse_envelope(["a", "b"])


def test_parse_fetch_response_with_literals():
    envelope = format_envelope(subject="Hi")
    header = b"Subject: Hi\r\n\r\n"
    text = b"Hello (with parens) and \"quotes\"\r\n"
    data = [
        (f"1 (UID 12 ENVELOPE {envelope} BODY[HEADER] {{{len(header)}}}".encode(), header),
        (f" BODY[TEXT] {{{len(text)}}}".encode(), text),
        b")",
        b"2 (UID 13 FLAGS (\\Seen))",
    ]
    results = imap_parser.parse_fetch_response(data)
    assert [seq for seq, _ in results] == [1, 2]
    first = results[0][1]
    assert first["UID"] == "12"
    assert first["BODY[HEADER]"] == header
    assert first["BODY[TEXT]"] == text
    assert imap_parser.parse_envelope(first["ENVELOPE"]).subject == "Hi"
    assert results[1][1]["FLAGS"] == ["\\Seen"]


def test_parse_list_response():
    data = [
        b'(\\HasNoChildren) "/" "INBOX"',
        b'(\\HasChildren \\Noselect) "/" "[Gmail]"',
        (b'(\\HasNoChildren) "/" {9}', b"Sent Mail"),
        b'(\\HasNoChildren) NIL Archive',
        None,
    ]
    mailboxes = imap_parser.parse_list_response(data)
    assert [m.name for m in mailboxes] == ["INBOX", "[Gmail]", "Sent Mail", "Archive"]
    assert mailboxes[1].has_attribute("\\NOSELECT")
    assert mailboxes[0].delimiter == "/"
    assert mailboxes[3].delimiter is None


def test_parse_search_response():
    assert imap_parser.parse_search_response([b"12 13 17"]) == [12, 13, 17]
    assert imap_parser.parse_search_response([b""]) == []
    assert imap_parser.parse_search_response([None]) == []


@pytest.mark.parametrize(
    "uids,expected",
    [
        ([12, 13, 17], "12,13,17"),
        ([1, 2, 3, 4, 9], "1:4,9"),
        ([5, 3, 4, 3], "3:5"),
        ([7], "7"),
        ([], ""),
    ],
)
def test_format_uid_set(uids, expected):
    assert imap_parser.format_uid_set(uids) == expected


@pytest.mark.parametrize(
    "encoded,decoded",
    [
        ("INBOX", "INBOX"),
        ("Entw&APw-rfe", "Entwürfe"),
        ("&ZeVnLIqe-", "日本語"),
        ("Tom &- Jerry", "Tom & Jerry"),
    ],
)
def test_modified_utf7(encoded, decoded):
    assert imap_parser.decode_modified_utf7(encoded) == decoded
    assert imap_parser.encode_modified_utf7(decoded) == encoded


def test_quote_mailbox():
    assert imap_parser.quote_mailbox("Archive") == "Archive"
    assert imap_parser.quote_mailbox("Sent Mail") == '"Sent Mail"'
    assert imap_parser.quote_mailbox("[Gmail]/All Mail") == '"[Gmail]/All Mail"'
    assert imap_parser.quote_mailbox('a"b') == '"a\\"b"'
    assert imap_parser.quote_mailbox("Entwürfe") == "Entw&APw-rfe"
