"""
Unit tests for LabelResolver upsert semantics.
"""

import pytest

from conftest import FakeMailProvider
from smartmail.core.credential_guard import CredentialGuard
from smartmail.core.errors import ProviderError
from smartmail.core.label_resolver import LabelResolver
from smartmail.core.models import LabelRecord


@pytest.fixture
def provider():
    return FakeMailProvider()


@pytest.fixture
def resolver(provider, store):
    return LabelResolver(store, CredentialGuard(provider, store))


class TestLabelResolver:
    def test_creates_missing_label(self, resolver, provider, store, credential):
        label_id, created = resolver.resolve("user1", "Banking", credential)

        assert created is True
        assert provider.labels == {"Banking": label_id}
        record = store.get_label_by_name("user1", "Banking")
        assert record.provider_label_id == label_id
        assert record.is_auto is True

    def test_repeated_resolve_is_idempotent(self, resolver, provider, credential):
        first = resolver.resolve("user1", "Work", credential)
        second = resolver.resolve("user1", "Work", credential)

        assert first[0] == second[0]
        assert second[1] is False
        assert provider.calls.count("create_label") == 1

    def test_new_resolver_reads_store(self, provider, store, credential):
        label_id, _ = LabelResolver(store, CredentialGuard(provider, store)).resolve("user1", "Work", credential)

        other = LabelResolver(store, CredentialGuard(provider, store))

        assert other.resolve("user1", "Work", credential) == (label_id, False)
        assert provider.calls.count("create_label") == 1

    def test_names_are_sanitized(self, resolver, credential):
        label_id, _ = resolver.resolve("user1", "Bills & Receipts!", credential)

        assert resolver.lookup("user1", "Bills Receipts") == label_id

    def test_already_exists_rereads_instead_of_failing(self, resolver, provider, store, credential):
        # Another client created the label on the provider; our store has no record
        provider.create_conflicts.add("Shopping")

        label_id, created = resolver.resolve("user1", "Shopping", credential)

        assert created is False
        assert label_id == provider.labels["Shopping"]
        assert store.get_label_by_name("user1", "Shopping").is_auto is False

    def test_concurrent_store_winner_is_used(self, resolver, provider, store, credential):
        class RacingStore:
            """Simulates another batch storing the label between lookup and upsert."""

            def __init__(self, inner):
                self.inner = inner

            def __getattr__(self, name):
                return getattr(self.inner, name)

            def upsert_label(self, record):
                self.inner.upsert_label(LabelRecord("user1", record.name, "Label_winner"))
                return self.inner.upsert_label(record)

        racing = LabelResolver(RacingStore(store), CredentialGuard(provider, store))

        label_id, created = racing.resolve("user1", "Personal", credential)

        assert (label_id, created) == ("Label_winner", False)

    def test_other_provider_errors_propagate(self, resolver, provider, credential):
        def failing_create(name):
            raise ProviderError("quota exceeded", status_code=403)

        provider.create_label = failing_create

        with pytest.raises(ProviderError):
            resolver.resolve("user1", "Work", credential)

    def test_sync_provider_labels_skips_system_labels(self, resolver, provider, store, credential):
        provider.labels = {"Receipts": "Label_9"}

        labels = resolver.sync_provider_labels("user1", credential)

        assert [(label.name, label.provider_label_id, label.is_auto) for label in labels] == [
            ("Receipts", "Label_9", False)
        ]
        assert store.get_label_by_name("user1", "INBOX") is None
        assert resolver.lookup("user1", "Receipts") == "Label_9"

    def test_sync_skips_names_outside_label_charset(self, resolver, provider, store, credential):
        provider.labels = {"Receipts": "Label_9", "To-Do": "Label_10"}

        labels = resolver.sync_provider_labels("user1", credential)

        assert [label.name for label in labels] == ["Receipts"]
        assert store.get_label_by_name("user1", "To-Do") is None
