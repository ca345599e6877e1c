"""
Category label -> provider label id resolution.

Labels are upserted on (user_id, name). Two batches racing to create the
same label end with one provider label: the loser either sees the
winner's store record, or gets "already exists" from the provider and
re-reads after syncing the provider's label list.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from .credential_guard import CredentialGuard
from .errors import ProviderError, StepError
from .models import Credential, LabelRecord
from ..storage.base import PersistentStore
from ..utils.sanitize import is_valid_label, sanitize_label

logger = logging.getLogger(__name__)


class LabelResolver:
    """
    Resolve label names to provider label ids, creating labels on demand.

    The memo cache is read-through only: it is filled from store reads and
    never consulted for writes, so the store stays the source of truth.
    """

    def __init__(self, store: PersistentStore, guard: CredentialGuard):
        self.store = store
        self.guard = guard
        self._cache: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def _remember(self, user_id: str, name: str, label_id: str) -> str:
        with self._lock:
            self._cache[(user_id, name)] = label_id
        return label_id

    def lookup(self, user_id: str, name: str) -> Optional[str]:
        """Provider label id for an existing label, without creating one."""
        name = sanitize_label(name)
        with self._lock:
            cached = self._cache.get((user_id, name))
        if cached:
            return cached

        record = self.store.get_label_by_name(user_id, name)
        if record is None:
            return None
        return self._remember(user_id, name, record.provider_label_id)

    def resolve(self, user_id: str, name: str, credential: Credential) -> Tuple[str, bool]:
        """
        Resolve a label, creating it on the provider if needed.

        Returns:
            (provider_label_id, created) where created is True only when this
            call created the provider label

        Raises:
            RequiresReauthError: credential could not be refreshed
            ProviderError: provider failure other than "already exists"
        """
        name = sanitize_label(name)
        existing = self.lookup(user_id, name)
        if existing:
            return existing, False

        try:
            label = self.guard.with_credential(
                user_id, credential, lambda: self.guard.provider.create_label(name)
            )
        except ProviderError as e:
            if not e.already_exists:
                raise
            logger.info(f"Label '{name}' already exists on provider, re-reading")
            self.sync_provider_labels(user_id, credential)
            record = self.store.get_label_by_name(user_id, name)
            if record is None:
                raise StepError(f"label '{name}' exists on provider but could not be found") from e
            return self._remember(user_id, name, record.provider_label_id), False

        stored = self.store.upsert_label(
            LabelRecord(user_id=user_id, name=name, provider_label_id=label.label_id, is_auto=True)
        )
        if stored.provider_label_id != label.label_id:
            # Another batch stored this name first; its id wins
            logger.warning(
                f"Label '{name}' was stored concurrently; using {stored.provider_label_id}"
            )
            return self._remember(user_id, name, stored.provider_label_id), False

        logger.info(f"Created label '{name}' for user {user_id}")
        return self._remember(user_id, name, stored.provider_label_id), True

    def sync_provider_labels(self, user_id: str, credential: Credential) -> List[LabelRecord]:
        """
        Import the provider's user labels into the store.

        Labels already known keep their stored id. Returns the user's
        stored labels after the sync.
        """
        labels = self.guard.with_credential(user_id, credential, self.guard.provider.list_labels)
        imported = 0
        for label in labels:
            if label.type != "user":
                continue
            if not is_valid_label(label.name):
                # Lookups sanitize names first, so this label could never match
                logger.debug(f"Skipping provider label '{label.name}' outside the label character set")
                continue
            stored = self.store.upsert_label(
                LabelRecord(
                    user_id=user_id,
                    name=label.name,
                    provider_label_id=label.label_id,
                    is_auto=False,
                )
            )
            self._remember(user_id, stored.name, stored.provider_label_id)
            imported += 1
        logger.info(f"Synced {imported} provider labels for user {user_id}")
        return self.store.list_labels(user_id)
