"""
Stored OAuth2 tokens.

Interactive token acquisition happens outside the sync core. The auth
collaborator writes one JSON file per account and provider::

    <data_dir>/auth/<b32(email)>/<provider>-token.json

with ``access_token``, ``refresh_token``, ``expiry`` (ISO 8601),
``token_uri``, ``client_id``, ``client_secret`` and ``token_type``. This module
reads those files and refreshes the access token when it is about to expire.
"""
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailsync import config
from mailsync.storage import pathenc
from mailsync.utils.errors import AuthError, IoError, NetworkError


logger = logging.getLogger(__name__)

# Refresh tokens that expire within this window
EXPIRY_MARGIN = timedelta(minutes=5)

OUTLOOK_SCOPES = [
    "https://outlook.office.com/IMAP.AccessAsUser.All",
    "offline_access",
]


def _parse_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        expiry = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry


class TokenStore:
    """Reads, refreshes and saves the stored token of each account."""

    def __init__(self, data_dir: Optional[Union[str, Path]] = None, session: Optional[requests.Session] = None):
        self.data_dir = Path(data_dir) if data_dir is not None else Path(config.DATA_DIR)
        self._http = session or requests.Session()

    def token_path(self, email: str, provider: str) -> Path:
        return self.data_dir / "auth" / pathenc.encode(email) / f"{provider}-token.json"

    def load(self, email: str, provider: str) -> Dict[str, Any]:
        """
        Read the stored token of an account.

        Raises:
            AuthError: If no usable token file exists.
        """
        path = self.token_path(email, provider)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise AuthError(f"No stored token for {email} ({provider})") from e
        except (OSError, ValueError) as e:
            raise AuthError(f"Unreadable token file {path}: {e}") from e
        if not isinstance(data, dict):
            raise AuthError(f"Unreadable token file {path}")
        return data

    def save(self, email: str, provider: str, data: Dict[str, Any]) -> None:
        """
        Atomically write the token of an account.

        Raises:
            IoError: If the file cannot be written.
        """
        path = self.token_path(email, provider)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as e:
            raise IoError(f"Cannot save token file {path}: {e}") from e

    def access_token(self, email: str, provider: str = config.DEFAULT_PROVIDER) -> str:
        """
        Return a bearer token for an account, refreshing it if needed.

        Args:
            email: The account address.
            provider: Provider key in config.PROVIDER_CONFIGS.

        Returns:
            The access token.

        Raises:
            AuthError: If there is no token or it cannot be refreshed.
            NetworkError: If the token endpoint cannot be reached.
        """
        data = self.load(email, provider)
        token = data.get("access_token") or data.get("token")
        expiry = _parse_expiry(data.get("expiry"))

        needs_refresh = not token or (
            expiry is not None and expiry - datetime.now(timezone.utc) < EXPIRY_MARGIN
        )
        if not needs_refresh:
            return token

        if not data.get("refresh_token"):
            raise AuthError(f"Access token for {email} expired and no refresh token is stored")

        logger.info(f"Refreshing access token for {email} ({provider})")
        if provider == "google":
            data = self._refresh_google(data)
        else:
            data = self._refresh_generic(provider, data)
        self.save(email, provider, data)
        return data["access_token"]

    def _refresh_google(self, data: Dict[str, Any]) -> Dict[str, Any]:
        creds = Credentials(
            token=data.get("access_token") or data.get("token"),
            refresh_token=data.get("refresh_token"),
            token_uri=data.get("token_uri") or config.PROVIDER_CONFIGS["google"]["token_uri"],
            client_id=data.get("client_id") or config.GMAIL_CLIENT_ID,
            client_secret=data.get("client_secret") or config.GMAIL_CLIENT_SECRET,
        )
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise AuthError(f"Google token refresh rejected: {e}") from e
        except TransportError as e:
            raise NetworkError(f"Google token refresh failed: {e}") from e

        refreshed = dict(data)
        refreshed["access_token"] = creds.token
        refreshed.pop("token", None)
        if creds.expiry is not None:
            # google-auth reports naive UTC datetimes
            refreshed["expiry"] = creds.expiry.replace(tzinfo=timezone.utc).isoformat()
        return refreshed

    def _refresh_generic(self, provider: str, data: Dict[str, Any]) -> Dict[str, Any]:
        provider_config = config.PROVIDER_CONFIGS.get(provider, {})
        token_url = data.get("token_uri") or provider_config.get("token_uri")
        if not token_url:
            raise AuthError(f"No token endpoint known for provider {provider}")

        token_data = {
            "client_id": data.get("client_id") or (config.OUTLOOK_CLIENT_ID if provider == "outlook" else None),
            "client_secret": data.get("client_secret") or (config.OUTLOOK_CLIENT_SECRET if provider == "outlook" else None),
            "refresh_token": data.get("refresh_token"),
            "grant_type": "refresh_token",
        }
        if provider == "outlook":
            token_data["scope"] = " ".join(OUTLOOK_SCOPES)
        token_data = {k: v for k, v in token_data.items() if v}

        try:
            response = self._http.post(token_url, data=token_data, timeout=config.IMAP_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Token refresh request failed: {e}") from e

        if response.status_code != 200:
            raise AuthError(
                f"Token refresh rejected by {provider}: HTTP {response.status_code}",
                status=str(response.status_code),
            )
        try:
            token_response = response.json()
        except ValueError as e:
            raise AuthError(f"Invalid token refresh response from {provider}") from e
        if not token_response.get("access_token"):
            raise AuthError(f"Token refresh response from {provider} has no access token")

        refreshed = dict(data)
        refreshed["access_token"] = token_response["access_token"]
        if token_response.get("refresh_token"):
            refreshed["refresh_token"] = token_response["refresh_token"]
        if token_response.get("token_type"):
            refreshed["token_type"] = token_response["token_type"]
        expires_in = token_response.get("expires_in")
        if expires_in:
            refreshed["expiry"] = (datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))).isoformat()
        return refreshed
