"""
Global settings and constants for mailsync.

This module provides configuration constants and helpers for the sync core.
It is framework-agnostic and designed to be easily unit-testable.
"""
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


APP_NAME = "mailsync"

# Default port constants
DEFAULT_IMAP_PORT: int = 993

# Network idle timeout for IMAP reads, in seconds
IMAP_TIMEOUT: float = 30.0

# Number of UIDs requested per UID FETCH command
FETCH_BATCH_SIZE: int = 20

# Debug logging toggle
LOG_DEBUG: bool = False

# OAuth client credentials, only used to refresh stored tokens
GMAIL_CLIENT_ID: Optional[str] = None
GMAIL_CLIENT_SECRET: Optional[str] = None
OUTLOOK_CLIENT_ID: Optional[str] = None
OUTLOOK_CLIENT_SECRET: Optional[str] = None

# Provider configuration mapping
PROVIDER_CONFIGS = {
    "google": {
        "imap_host": "imap.gmail.com",
        "token_uri": "https://oauth2.googleapis.com/token",
    },
    "outlook": {
        "imap_host": "outlook.office365.com",
        "token_uri": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
    },
    "yahoo": {
        "imap_host": "imap.mail.yahoo.com",
        "token_uri": "https://api.login.yahoo.com/oauth2/get_token",
    },
}

DEFAULT_PROVIDER = "google"

# Gmail exposes these as mailboxes, but every message in them also lives in
# a real mailbox, so mirroring them would only duplicate data.
SKIP_MAILBOXES = frozenset({
    "[Gmail]",
    "[Gmail]/All Mail",
    "[Gmail]/Important",
    "[Gmail]/Starred",
})


def default_data_dir() -> Path:
    """
    Return the operating system's per-user application-data directory for mailsync.

    Example:
        >>> default_data_dir()
        PosixPath('/home/username/.local/share/mailsync')
    """
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA")
        root = Path(base) if base else Path.home() / "AppData" / "Roaming"
    elif sys.platform == "darwin":
        root = Path.home() / "Library" / "Application Support"
    else:
        xdg = os.environ.get("XDG_DATA_HOME")
        root = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return root / APP_NAME


DATA_DIR: Path = default_data_dir()


def load_env() -> None:
    """
    Load environment variables and apply sensible defaults.

    Reads a ``.env`` file when present, then picks up the data directory
    override, network tuning and OAuth client credentials. It should be
    called once at application startup.
    """
    global DATA_DIR, IMAP_TIMEOUT, FETCH_BATCH_SIZE, LOG_DEBUG
    global GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET, OUTLOOK_CLIENT_ID, OUTLOOK_CLIENT_SECRET

    load_dotenv()

    data_dir_env = os.environ.get("MAILSYNC_DATA_DIR")
    DATA_DIR = Path(data_dir_env).expanduser() if data_dir_env else default_data_dir()

    timeout_env = os.environ.get("MAILSYNC_IMAP_TIMEOUT")
    if timeout_env:
        try:
            IMAP_TIMEOUT = float(timeout_env)
        except ValueError:
            pass

    batch_env = os.environ.get("MAILSYNC_FETCH_BATCH_SIZE")
    if batch_env:
        try:
            FETCH_BATCH_SIZE = max(1, int(batch_env))
        except ValueError:
            pass

    LOG_DEBUG = os.environ.get("MAILSYNC_LOG_DEBUG", "").lower() in ("1", "true", "yes")

    GMAIL_CLIENT_ID = os.environ.get("GMAIL_CLIENT_ID")
    GMAIL_CLIENT_SECRET = os.environ.get("GMAIL_CLIENT_SECRET")
    OUTLOOK_CLIENT_ID = os.environ.get("OUTLOOK_CLIENT_ID")
    OUTLOOK_CLIENT_SECRET = os.environ.get("OUTLOOK_CLIENT_SECRET")

    DATA_DIR.mkdir(parents=True, exist_ok=True)


def get_imap_host(provider: str) -> str:
    """
    Get the IMAP host for a provider.

    Args:
        provider: The provider name (e.g., 'google', 'outlook', 'yahoo').

    Returns:
        The IMAP hostname.

    Raises:
        KeyError: If the provider is not recognized.
    """
    config = PROVIDER_CONFIGS.get(provider.lower())
    if not config:
        raise KeyError(f"Unknown provider: {provider}")
    return config["imap_host"]
