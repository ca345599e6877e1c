"""
Persistent store interface.

Every method is atomic at single-record granularity. That atomicity is the
only thing concurrent batches rely on: there are no process-wide locks in
the orchestration layer.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from ..core.models import BatchJob, ClassificationResult, Credential, LabelRecord, MessageRecord


class PersistentStore(ABC):
    """Durable storage for jobs, messages, labels, rate windows and credentials."""

    # Jobs

    @abstractmethod
    def create_job(self, job: BatchJob) -> None:
        """Insert a new job. batch_id must be unused."""

    @abstractmethod
    def update_job(self, batch_id: str, **changes: Any) -> BatchJob:
        """
        Apply a partial update to a job and return the updated snapshot.

        Raises:
            NotFoundError: if the job does not exist
        """

    @abstractmethod
    def append_job_errors(self, batch_id: str, messages: List[str]) -> None:
        """Append diagnostics to a job's error list (append-only)."""

    @abstractmethod
    def get_job(self, batch_id: str) -> Optional[BatchJob]:
        pass

    @abstractmethod
    def list_jobs(self, user_id: str, limit: int = 20) -> List[BatchJob]:
        """Most recent jobs for a user, newest first."""

    # Messages

    @abstractmethod
    def upsert_message(self, record: MessageRecord) -> MessageRecord:
        """
        Insert or refresh a message keyed by (provider_id, user_id).

        Refreshing updates the provider metadata only; processed, synced and
        analysis survive a re-fetch.
        """

    @abstractmethod
    def query_messages(
        self,
        user_id: str,
        processed: Optional[bool] = None,
        synced: Optional[bool] = None,
        category: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[MessageRecord]:
        """Messages matching every given filter, newest first. limit=None means all."""

    @abstractmethod
    def mark_message_analyzed(
        self, user_id: str, provider_id: str, analysis: ClassificationResult
    ) -> None:
        pass

    @abstractmethod
    def mark_message_synced(self, user_id: str, provider_id: str) -> None:
        pass

    @abstractmethod
    def message_stats(self, user_id: str) -> Dict[str, int]:
        """Totals: total_emails, processed_emails, synced_emails."""

    @abstractmethod
    def category_breakdown(self, user_id: str) -> List[Tuple[str, int]]:
        """(category, count) pairs for analyzed messages, largest first."""

    # Labels

    @abstractmethod
    def upsert_label(self, record: LabelRecord) -> LabelRecord:
        """
        Insert a label unless (user_id, name) already exists.

        Returns whichever record is stored afterwards, so a losing concurrent
        writer learns the winner's provider_label_id.
        """

    @abstractmethod
    def get_label_by_name(self, user_id: str, name: str) -> Optional[LabelRecord]:
        pass

    @abstractmethod
    def list_labels(self, user_id: str) -> List[LabelRecord]:
        pass

    @abstractmethod
    def increment_label_usage(self, user_id: str, name: str, count: int = 1) -> None:
        pass

    # Rate windows

    @abstractmethod
    def rate_limit_check_and_record(
        self, user_id: str, tag: str, max_calls: int, window_seconds: float, now: float
    ) -> bool:
        """
        Count calls for (user_id, tag) newer than now - window_seconds.

        Returns False without recording when the count already meets
        max_calls; otherwise records a call at `now` and returns True.
        """

    # Credentials

    @abstractmethod
    def save_credential(self, user_id: str, credential: Credential) -> None:
        pass

    @abstractmethod
    def get_credential(self, user_id: str) -> Optional[Credential]:
        pass

    def close(self) -> None:
        """Release backend resources."""
