"""
Credential guard for mail provider calls.

Wraps a provider call with the user's credential. On an authorization
failure the credential is refreshed once, persisted, reinstalled, and the
call retried once. There is no loop: a second authorization failure, or a
failed refresh, becomes RequiresReauthError.
"""

import logging
from typing import Callable, Dict, Optional, TypeVar

from .errors import AuthorizationError, ProviderError, RequiresReauthError
from .models import Credential
from ..providers.base import MailProvider
from ..storage.base import PersistentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CredentialGuard:
    """
    Bounded refresh-and-retry around MailProvider calls.

    The guard keeps the latest credential per user for the lifetime of one
    batch execution, so a refresh earlier in the batch is reused by every
    later call instead of refreshing again.

    Usage:
        guard = CredentialGuard(gmail, store)
        page = guard.with_credential(user_id, credential,
                                     lambda: gmail.list_messages(q, None, 50))
    """

    def __init__(self, provider: MailProvider, store: PersistentStore):
        self.provider = provider
        self.store = store
        self._current: Dict[str, Credential] = {}

    def current_credential(self, user_id: str, fallback: Optional[Credential] = None) -> Optional[Credential]:
        return self._current.get(user_id, fallback)

    def with_credential(
        self,
        user_id: str,
        credential: Credential,
        operation: Callable[[], T],
    ) -> T:
        """
        Run operation with the credential installed.

        Args:
            user_id: Owner of the credential
            credential: Credential supplied by the caller
            operation: Zero-argument provider call

        Returns:
            Whatever operation returns

        Raises:
            RequiresReauthError: refresh failed or the retry was still unauthorized
            Exception: any non-authorization failure, unchanged
        """
        credential = self._current.get(user_id, credential)
        self.provider.set_credential(credential)

        try:
            return operation()
        except AuthorizationError as e:
            logger.info(f"Authorization failed for user {user_id} ({e}), refreshing credential")

        refreshed = self._refresh(user_id, credential)
        self.provider.set_credential(refreshed)

        try:
            return operation()
        except AuthorizationError as e:
            logger.error(f"Authorization failed again after refresh for user {user_id}")
            raise RequiresReauthError(
                f"authorization still rejected after refresh: {e}"
            ) from e

    def _refresh(self, user_id: str, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise RequiresReauthError("credential has no refresh token")

        try:
            refreshed = self.provider.refresh_credential(credential.refresh_token)
        except (AuthorizationError, ProviderError) as e:
            logger.error(f"Credential refresh rejected for user {user_id}: {e}")
            raise RequiresReauthError(f"credential refresh failed: {e}") from e

        self.store.save_credential(user_id, refreshed)
        self._current[user_id] = refreshed
        logger.info(f"Credential refreshed and saved for user {user_id}")
        return refreshed
