"""
Filesystem-safe names for accounts and mailboxes.

Mailbox names (modified UTF-7, containing '/' and other reserved characters)
and email addresses become directory names through unpadded RFC 4648 base32
of their UTF-8 bytes. The alphabet is upper-case letters and digits only, so
the mapping is collision-free on case-insensitive filesystems too.
"""
import base64
import binascii

from mailsync.utils.errors import EncodingError


def encode(name: str) -> str:
    """
    Encode a name as an unpadded base32 token.

    Args:
        name: Any string (account address or mailbox name).

    Returns:
        The base32 token without '=' padding.
    """
    return base64.b32encode(name.encode("utf-8")).decode("ascii").rstrip("=")


def decode(token: str) -> str:
    """
    Decode a token produced by :func:`encode`.

    Args:
        token: Unpadded base32 text.

    Returns:
        The original name.

    Raises:
        EncodingError: If the token is not valid unpadded base32 or does not
            decode to UTF-8.
    """
    if "=" in token:
        raise EncodingError(f"Padded base32 token: {token!r}")
    # Unpadded base32 lengths are never 1, 3 or 6 modulo 8
    if len(token) % 8 in (1, 3, 6):
        raise EncodingError(f"Invalid base32 token length: {token!r}")
    padded = token + "=" * (-len(token) % 8)
    try:
        raw = base64.b32decode(padded, casefold=False)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"Invalid base32 token {token!r}: {e}") from e
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EncodingError(f"Token {token!r} does not decode to UTF-8") from e
