"""
Secrets management for SmartMail using the system keyring.

Holds the classification API key and the OAuth client secret used to
refresh mail-provider credentials. Uses the `keyring` library which
supports:
- Windows Credential Manager
- macOS Keychain
- Linux Secret Service (GNOME Keyring, KWallet)

Headless deployments without a keyring backend can provide the same values
through environment variables (GEMINI_API_KEY, GOOGLE_CLIENT_SECRET).
"""

import logging
import os
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

# Service name for keyring entries
SERVICE_NAME = "smartmail"

# Environment fallbacks, keyed by keyring entry name
_ENV_FALLBACKS = {
    "gemini_api_key": "GEMINI_API_KEY",
    "oauth_client_secret": "GOOGLE_CLIENT_SECRET",
}


def _get_secret(entry: str) -> Optional[str]:
    try:
        value = keyring.get_password(SERVICE_NAME, entry)
        if value:
            logger.debug(f"Retrieved {entry} from keyring")
            return value
    except KeyringError as e:
        logger.warning(f"Keyring lookup failed for {entry}: {e}")

    env_name = _ENV_FALLBACKS.get(entry)
    if env_name:
        return os.environ.get(env_name) or None
    return None


def get_api_key(provider: str) -> Optional[str]:
    """
    Retrieve API key for a classification provider.

    Args:
        provider: Provider name (e.g., 'gemini')

    Returns:
        API key string or None if not found
    """
    return _get_secret(f"{provider}_api_key")


def set_api_key(provider: str, api_key: str) -> bool:
    """
    Store API key for a provider in secure storage.

    Returns:
        True if successful, False otherwise
    """
    try:
        keyring.set_password(SERVICE_NAME, f"{provider}_api_key", api_key)
        logger.info(f"Stored API key for {provider} in keyring")
        return True
    except KeyringError as e:
        logger.error(f"Failed to store API key for {provider}: {e}")
        return False


def delete_api_key(provider: str) -> bool:
    """Remove API key for a provider from secure storage."""
    try:
        keyring.delete_password(SERVICE_NAME, f"{provider}_api_key")
        logger.info(f"Deleted API key for {provider} from keyring")
        return True
    except PasswordDeleteError:
        logger.warning(f"No API key found for {provider} to delete")
        return False
    except KeyringError as e:
        logger.error(f"Failed to delete API key for {provider}: {e}")
        return False


def get_oauth_client_secret() -> Optional[str]:
    """OAuth client secret used for refresh-token grants."""
    return _get_secret("oauth_client_secret")


def set_oauth_client_secret(secret: str) -> bool:
    try:
        keyring.set_password(SERVICE_NAME, "oauth_client_secret", secret)
        logger.info("Stored OAuth client secret in keyring")
        return True
    except KeyringError as e:
        logger.error(f"Failed to store OAuth client secret: {e}")
        return False
