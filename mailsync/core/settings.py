"""
Application settings management.

This module provides the process-wide settings (the configured accounts and
their providers) persisted as JSON in ``<data_dir>/settings.json``.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from mailsync import config
from mailsync.utils.errors import IoError


logger = logging.getLogger(__name__)

SETTINGS_FILE_NAME = "settings.json"


@dataclass
class Settings:
    """Configured accounts, in the order they were added."""
    accounts: List[str] = field(default_factory=list)
    providers: Dict[str, str] = field(default_factory=dict)

    def provider_for(self, email: str) -> str:
        return self.providers.get(email, config.DEFAULT_PROVIDER)


def default_settings_path() -> Path:
    return Path(config.DATA_DIR) / SETTINGS_FILE_NAME


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """
    Load settings from disk.

    Args:
        path: The settings file. Defaults to ``<data_dir>/settings.json``.

    Returns:
        Settings object. Returns default settings if none are stored or the
        file cannot be parsed.
    """
    path = Path(path) if path is not None else default_settings_path()
    try:
        settings_dict = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return Settings()
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable settings file {path}: {e}")
        return Settings()

    if not isinstance(settings_dict, dict):
        return Settings()

    accounts = [a for a in settings_dict.get("accounts") or [] if isinstance(a, str)]
    providers = settings_dict.get("providers") or {}
    if not isinstance(providers, dict):
        providers = {}
    return Settings(
        accounts=list(dict.fromkeys(accounts)),
        providers={k: v for k, v in providers.items() if isinstance(k, str) and isinstance(v, str)},
    )


def save_settings(settings: Settings, path: Optional[Union[str, Path]] = None) -> None:
    """
    Save settings to disk, replacing the file atomically.

    Raises:
        IoError: If the file cannot be written.
    """
    path = Path(path) if path is not None else default_settings_path()
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(asdict(settings), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        raise IoError(f"Cannot save settings {path}: {e}") from e


def add_account(settings: Settings, email: str, provider: str = config.DEFAULT_PROVIDER) -> bool:
    """
    Add an account. Returns False if it was already configured.

    Raises:
        KeyError: If the provider is unknown.
    """
    config.get_imap_host(provider)
    email = email.strip()
    settings.providers[email] = provider
    if email in settings.accounts:
        return False
    settings.accounts.append(email)
    return True


def remove_account(settings: Settings, email: str) -> bool:
    """Remove an account. Returns False if it was not configured."""
    settings.providers.pop(email, None)
    if email not in settings.accounts:
        return False
    settings.accounts.remove(email)
    return True
