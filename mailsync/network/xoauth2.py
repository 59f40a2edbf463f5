"""
XOAUTH2 SASL mechanism.

Implements the client side described in
https://developers.google.com/gmail/imap/xoauth2-protocol: the initial client
response carries the bearer token; any non-empty server challenge is a JSON
error object, which is turned into an AuthError.
"""
import json
from typing import Optional

from mailsync.utils.errors import AuthError


MECHANISM = "XOAUTH2"


def build_initial_response(email: str, access_token: str) -> bytes:
    """
    Build the XOAUTH2 client response as raw bytes.

    Format: user=email\\x01auth=Bearer access_token\\x01\\x01

    imaplib base64-encodes the returned bytes itself.

    Raises:
        AuthError: If no access token is available.
    """
    if not access_token:
        raise AuthError("No access token available for XOAUTH2")
    # Strip whitespace from email to prevent XOAUTH2 authentication failures
    email = email.strip()
    return f"user={email}\x01auth=Bearer {access_token}\x01\x01".encode("utf-8")


def parse_error_challenge(challenge: bytes) -> AuthError:
    """
    Interpret a non-empty server challenge as an XOAUTH2 error.

    Example challenge::

        {"status":"401","schemes":"Bearer","scope":"https://mail.google.com/"}
    """
    text = challenge.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return AuthError(f"XOAUTH2 authentication error: {text}")
    if not isinstance(data, dict):
        return AuthError(f"XOAUTH2 authentication error: {text}")
    status = data.get("status")
    return AuthError(
        f"XOAUTH2 authentication error ({status})",
        status=str(status) if status is not None else None,
        schemes=data.get("schemes"),
        scope=data.get("scope"),
    )


class Xoauth2Responder:
    """
    Callable passed to ``imaplib.IMAP4.authenticate``.

    The first (empty) challenge is answered with the initial response. A
    non-empty challenge is recorded as ``error`` and answered with an empty
    response, after which the server completes the command with NO.
    """

    def __init__(self, email: str, access_token: str):
        self._initial = build_initial_response(email, access_token)
        self._sent = False
        self.error: Optional[AuthError] = None

    def __call__(self, challenge: bytes) -> bytes:
        if challenge or self._sent:
            self.error = parse_error_challenge(challenge or b"")
            return b""
        self._sent = True
        return self._initial
