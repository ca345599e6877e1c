"""
Gmail REST client.

Thin wrapper over the Gmail v1 API with requests. Every call uses the
credential installed by set_credential; CredentialGuard owns refresh and
retry, this client only classifies failures:

- 401 -> AuthorizationError
- 409 -> ProviderError(status_code=409) ("already exists")
- other non-2xx, timeouts, transport errors -> ProviderError
"""

import logging
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import requests

from .base import MailProvider, MessageMetadata, MessagePage, ProviderLabel
from ..core.errors import AuthorizationError, ProviderError
from ..core.models import Credential, utcnow
from ..utils.secrets import get_oauth_client_secret

logger = logging.getLogger(__name__)

GMAIL_MAX_PAGE_SIZE = 500
DEFAULT_QUERY = "in:inbox"
METADATA_HEADERS = ("Subject", "From", "To", "Date")


def parse_header_date(value: Optional[str]) -> datetime:
    """RFC 2822 Date header to an aware UTC datetime; fetch time if unusable."""
    if not value:
        return utcnow()
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return utcnow()
    if parsed is None:
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class GmailProvider(MailProvider):
    """
    Gmail mailbox client.

    Usage:
        gmail = GmailProvider(config["gmail"])
        gmail.set_credential(credential)
        page = gmail.list_messages("in:inbox", None, 50)
    """

    BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

    def __init__(self, config: Optional[Dict] = None):
        """
        Args:
            config: Gmail configuration with:
                - token_uri: OAuth token endpoint
                - client_id: OAuth client id
                - client_secret: OAuth client secret (or keyring / GOOGLE_CLIENT_SECRET)
                - timeout: Request timeout in seconds (default: 15)
        """
        config = config or {}
        self.base_url = config.get("base_url", self.BASE_URL)
        self.token_uri = config.get("token_uri", "https://oauth2.googleapis.com/token")
        self.client_id = config.get("client_id", "")
        self.client_secret = config.get("client_secret") or get_oauth_client_secret()
        self.timeout = config.get("timeout", 15)
        self._credential: Optional[Credential] = None

    def set_credential(self, credential: Credential) -> None:
        self._credential = credential

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if self._credential is None:
            raise AuthorizationError("no credential installed")

        headers = {"Authorization": f"Bearer {self._credential.access_token}"}
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.exceptions.Timeout as e:
            raise ProviderError(f"Gmail {method} {path} timed out") from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Gmail transport error: {e}") from e

        if response.status_code == 401:
            raise AuthorizationError("Gmail rejected the access token", status_code=401)
        if response.status_code == 409:
            raise ProviderError("Gmail resource already exists", status_code=409)
        if not 200 <= response.status_code < 300:
            raise ProviderError(
                f"Gmail {method} {path} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Gmail returned invalid JSON for {path}") from e

    def list_messages(
        self, query: Optional[str], page_token: Optional[str], page_size: int
    ) -> MessagePage:
        params: Dict[str, Any] = {
            "q": query or DEFAULT_QUERY,
            "maxResults": max(1, min(int(page_size), GMAIL_MAX_PAGE_SIZE)),
        }
        if page_token:
            params["pageToken"] = page_token

        data = self._request("GET", "/messages", params=params)
        return MessagePage(
            message_ids=[m["id"] for m in data.get("messages", []) if "id" in m],
            next_page_token=data.get("nextPageToken"),
        )

    def get_message_metadata(self, message_id: str) -> MessageMetadata:
        data = self._request(
            "GET",
            f"/messages/{message_id}",
            params={"format": "metadata", "metadataHeaders": list(METADATA_HEADERS)},
        )
        headers = {
            h.get("name", "").lower(): h.get("value", "")
            for h in data.get("payload", {}).get("headers", [])
        }
        return MessageMetadata(
            provider_id=data.get("id", message_id),
            thread_id=data.get("threadId"),
            subject=headers.get("subject") or "No Subject",
            sender=headers.get("from") or "Unknown",
            recipient=headers.get("to", ""),
            snippet=data.get("snippet", ""),
            timestamp=parse_header_date(headers.get("date")),
        )

    def create_label(self, name: str) -> ProviderLabel:
        data = self._request(
            "POST",
            "/labels",
            json={
                "name": name,
                "labelListVisibility": "labelShow",
                "messageListVisibility": "show",
            },
        )
        logger.info(f"Created Gmail label: {name}")
        return ProviderLabel(label_id=data["id"], name=data.get("name", name))

    def list_labels(self) -> List[ProviderLabel]:
        data = self._request("GET", "/labels")
        return [
            ProviderLabel(label_id=item["id"], name=item["name"], type=item.get("type", "user"))
            for item in data.get("labels", [])
            if "id" in item and "name" in item
        ]

    def modify_message_labels(self, message_id: str, add_label_ids: List[str]) -> None:
        self._request(
            "POST",
            f"/messages/{message_id}/modify",
            json={"addLabelIds": list(add_label_ids)},
        )

    def refresh_credential(self, refresh_token: str) -> Credential:
        if not refresh_token:
            raise AuthorizationError("no refresh token available", status_code=None)

        try:
            response = requests.post(
                self.token_uri,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret or "",
                },
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise AuthorizationError(f"token refresh failed: {e}", status_code=None) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200 or "access_token" not in data:
            reason = data.get("error", f"HTTP {response.status_code}")
            raise AuthorizationError(f"token refresh rejected: {reason}", status_code=response.status_code)

        expiry = None
        if data.get("expires_in"):
            expiry = utcnow() + timedelta(seconds=int(data["expires_in"]))

        logger.info("Refreshed Gmail access token")
        return Credential(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expiry=expiry,
        )

    def get_name(self) -> str:
        return "gmail"
