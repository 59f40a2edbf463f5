"""Tests for filesystem-safe name encoding."""

import pytest

from mailsync.storage import pathenc
from mailsync.utils.errors import EncodingError


@pytest.mark.parametrize(
    "name,token",
    [
        ("", ""),
        ("f", "MY"),
        ("fo", "MZXQ"),
        ("foo", "MZXW6"),
        ("foob", "MZXW6YQ"),
        ("fooba", "MZXW6YTB"),
        ("foobar", "MZXW6YTBOI"),
    ],
)
def test_encode_matches_rfc4648_vectors_without_padding(name, token):
    assert pathenc.encode(name) == token


@pytest.mark.parametrize(
    "name",
    ["INBOX", "[Gmail]/Sent Mail", "user@example.com", "Entwürfe", "受信トレイ", "a/b\\c:d*e"],
)
def test_decode_inverts_encode(name):
    token = pathenc.encode(name)
    assert "=" not in token
    assert token == token.upper()
    assert pathenc.decode(token) == name


def test_slashes_never_reach_the_filesystem():
    assert "/" not in pathenc.encode("[Gmail]/All Mail")


def test_decode_rejects_padding():
    with pytest.raises(EncodingError):
        pathenc.decode("MY======")


@pytest.mark.parametrize("token", ["M", "MZX", "MZXW6Y"])
def test_decode_rejects_impossible_lengths(token):
    with pytest.raises(EncodingError):
        pathenc.decode(token)


def test_decode_rejects_foreign_alphabet():
    with pytest.raises(EncodingError):
        pathenc.decode("mzxw6")


def test_decode_rejects_non_utf8_payload():
    # base32 of b"\xff"
    with pytest.raises(EncodingError):
        pathenc.decode("74")
