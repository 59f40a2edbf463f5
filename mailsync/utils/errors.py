"""
Centralized error hierarchy for mailsync.

This module provides a base exception class and specific error types
for the different layers of the sync core, along with a helper for
converting technical errors to user-friendly messages.
"""
from typing import Optional, Union


class MailSyncError(Exception):
    """
    Base exception class for all mailsync errors.

    All application-specific exceptions inherit from this class so that
    background tasks can report them uniformly.
    """
    pass


class EncodingError(MailSyncError):
    """Raised when a filesystem token is not valid unpadded base32."""
    pass


class NetworkError(MailSyncError):
    """Raised on socket, TLS or read-timeout failures."""
    pass


class AuthError(MailSyncError):
    """
    Raised when authentication fails or the bearer token is rejected.

    When the server answered the XOAUTH2 exchange with a JSON error
    challenge, its ``status``, ``schemes`` and ``scope`` fields are kept.
    """

    def __init__(
        self,
        message: str = "Authentication failed",
        status: Optional[str] = None,
        schemes: Optional[str] = None,
        scope: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.schemes = schemes
        self.scope = scope


class ProtocolError(MailSyncError):
    """Raised on an unexpected server response or a missing capability."""
    pass


class IoError(MailSyncError):
    """Raised when a local filesystem operation fails."""
    pass


class CorruptionError(MailSyncError):
    """Raised when on-disk state cannot be interpreted."""
    pass


class NotFoundError(MailSyncError):
    """Raised by the maildir store when a key resolves to no file."""
    pass


class SyncCancelled(MailSyncError):
    """Raised inside an account task when its sync was cancelled."""
    pass


def human_friendly_message(exc: Union[MailSyncError, Exception]) -> str:
    """
    Convert technical error exceptions to user-friendly messages.

    Args:
        exc: The exception to convert.

    Returns:
        A user-friendly error message string.
    """
    error_msg = str(exc) if str(exc) else ""

    if isinstance(exc, AuthError):
        if exc.status == "401":
            return (
                "Your account session has expired. Please sign in again.\n\n"
                "The mail server rejected the saved access token."
            )
        if exc.scope:
            return (
                "The mail server requires additional permissions "
                f"({exc.scope}). Please remove and re-add the account."
            )
        return (
            "Could not sign in to your email account. Please try signing in again."
        )
    elif isinstance(exc, NetworkError):
        if "timeout" in error_msg.lower() or "timed out" in error_msg.lower():
            return (
                "The connection to the email server timed out. This might be "
                "due to a slow internet connection or server issues. Please try again."
            )
        return (
            "Could not connect to the email server. Please check:\n\n"
            "• Your internet connection\n"
            "• Whether the email service is temporarily unavailable"
        )
    elif isinstance(exc, ProtocolError):
        return (
            "The email server sent a response that could not be handled. "
            "Some mailboxes may not have been updated."
        )
    elif isinstance(exc, IoError):
        return (
            "Could not write mail to disk. Please check that the data directory "
            "is writable and has free space."
        )
    elif isinstance(exc, CorruptionError):
        return (
            "Some locally cached mail data was damaged and will be downloaded again."
        )
    elif isinstance(exc, MailSyncError):
        if error_msg:
            return f"An error occurred: {error_msg}"
        return "An unexpected error occurred. Please try again."
    elif isinstance(exc, ConnectionError):
        return (
            "Could not connect to the server. Please check your internet "
            "connection and try again."
        )
    elif isinstance(exc, TimeoutError):
        return (
            "The operation timed out. This might be due to a slow connection "
            "or server issues. Please try again."
        )
    elif isinstance(exc, PermissionError):
        return (
            "Permission denied. Please check that you have the necessary "
            "permissions to perform this operation."
        )

    error_msg = error_msg or "Unknown error"
    return f"An error occurred: {error_msg}"
