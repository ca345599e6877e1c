"""
In-process store.

Default backend for single-process deployments and tests. A single lock
guards every operation, which gives the same per-record atomicity the
SQLite backend gets from transactions. Records are copied on the way in
and out so callers never hold references into the store.
"""

import copy
import logging
import threading
from collections import Counter, defaultdict, deque
from dataclasses import replace
from typing import Any, Deque, Dict, List, Optional, Tuple

from ..core.errors import NotFoundError
from ..core.models import (
    BatchJob,
    ClassificationResult,
    Credential,
    LabelRecord,
    MessageRecord,
    utcnow,
)
from .base import PersistentStore

logger = logging.getLogger(__name__)

_JOB_FIELDS = {
    "status", "emails_processed", "emails_total", "labels_created", "labels_used",
    "errors", "result", "start_time", "end_time", "options",
}


class InMemoryStore(PersistentStore):
    """Dict-backed PersistentStore."""

    def __init__(self):
        self._jobs: Dict[str, BatchJob] = {}
        self._messages: Dict[Tuple[str, str], MessageRecord] = {}
        self._labels: Dict[Tuple[str, str], LabelRecord] = {}
        self._rate_windows: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self._credentials: Dict[str, Credential] = {}
        self._lock = threading.Lock()

    # Jobs

    def create_job(self, job: BatchJob) -> None:
        with self._lock:
            if job.batch_id in self._jobs:
                raise ValueError(f"Duplicate batch id {job.batch_id}")
            self._jobs[job.batch_id] = copy.deepcopy(job)

    def update_job(self, batch_id: str, **changes: Any) -> BatchJob:
        unknown = set(changes) - _JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        with self._lock:
            job = self._jobs.get(batch_id)
            if job is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            for name, value in changes.items():
                setattr(job, name, copy.deepcopy(value))
            job.updated_at = utcnow()
            return copy.deepcopy(job)

    def append_job_errors(self, batch_id: str, messages: List[str]) -> None:
        with self._lock:
            job = self._jobs.get(batch_id)
            if job is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            job.errors.extend(messages)
            job.updated_at = utcnow()

    def get_job(self, batch_id: str) -> Optional[BatchJob]:
        with self._lock:
            job = self._jobs.get(batch_id)
            return copy.deepcopy(job) if job else None

    def list_jobs(self, user_id: str, limit: int = 20) -> List[BatchJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.user_id == user_id]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [copy.deepcopy(j) for j in jobs[:limit]]

    # Messages

    def upsert_message(self, record: MessageRecord) -> MessageRecord:
        with self._lock:
            existing = self._messages.get(record.key)
            if existing is None:
                stored = copy.deepcopy(record)
            else:
                stored = replace(
                    existing,
                    subject=record.subject,
                    sender=record.sender,
                    recipient=record.recipient,
                    snippet=record.snippet,
                    timestamp=record.timestamp,
                    thread_id=record.thread_id,
                )
            stored.updated_at = utcnow()
            self._messages[record.key] = stored
            return copy.deepcopy(stored)

    def query_messages(
        self,
        user_id: str,
        processed: Optional[bool] = None,
        synced: Optional[bool] = None,
        category: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[MessageRecord]:
        with self._lock:
            matches = []
            for record in self._messages.values():
                if record.user_id != user_id:
                    continue
                if processed is not None and record.processed != processed:
                    continue
                if synced is not None and record.synced != synced:
                    continue
                if category is not None and (
                    record.analysis is None or record.analysis.category != category
                ):
                    continue
                matches.append(record)

            matches.sort(key=lambda r: r.timestamp, reverse=True)
            if limit is not None:
                matches = matches[:limit]
            return [copy.deepcopy(r) for r in matches]

    def mark_message_analyzed(
        self, user_id: str, provider_id: str, analysis: ClassificationResult
    ) -> None:
        with self._lock:
            record = self._messages.get((provider_id, user_id))
            if record is None:
                raise NotFoundError(f"Message {provider_id} not found")
            record.analysis = copy.deepcopy(analysis)
            record.processed = True
            record.updated_at = utcnow()

    def mark_message_synced(self, user_id: str, provider_id: str) -> None:
        with self._lock:
            record = self._messages.get((provider_id, user_id))
            if record is None:
                raise NotFoundError(f"Message {provider_id} not found")
            if not record.processed:
                raise ValueError(f"Message {provider_id} cannot be synced before it is processed")
            record.synced = True
            record.updated_at = utcnow()

    def message_stats(self, user_id: str) -> Dict[str, int]:
        with self._lock:
            records = [r for r in self._messages.values() if r.user_id == user_id]
            return {
                "total_emails": len(records),
                "processed_emails": sum(1 for r in records if r.processed),
                "synced_emails": sum(1 for r in records if r.synced),
            }

    def category_breakdown(self, user_id: str) -> List[Tuple[str, int]]:
        with self._lock:
            counts = Counter(
                r.analysis.category
                for r in self._messages.values()
                if r.user_id == user_id and r.analysis is not None
            )
            return counts.most_common()

    # Labels

    def upsert_label(self, record: LabelRecord) -> LabelRecord:
        key = (record.user_id, record.name)
        with self._lock:
            existing = self._labels.get(key)
            if existing is not None:
                return copy.deepcopy(existing)
            stored = copy.deepcopy(record)
            stored.updated_at = utcnow()
            self._labels[key] = stored
            return copy.deepcopy(stored)

    def get_label_by_name(self, user_id: str, name: str) -> Optional[LabelRecord]:
        with self._lock:
            label = self._labels.get((user_id, name))
            return copy.deepcopy(label) if label else None

    def list_labels(self, user_id: str) -> List[LabelRecord]:
        with self._lock:
            labels = [label for label in self._labels.values() if label.user_id == user_id]
            return [copy.deepcopy(label) for label in sorted(labels, key=lambda label: label.name)]

    def increment_label_usage(self, user_id: str, name: str, count: int = 1) -> None:
        with self._lock:
            label = self._labels.get((user_id, name))
            if label is not None:
                label.email_count += count
                label.updated_at = utcnow()

    # Rate windows

    def rate_limit_check_and_record(
        self, user_id: str, tag: str, max_calls: int, window_seconds: float, now: float
    ) -> bool:
        with self._lock:
            window = self._rate_windows[(user_id, tag)]
            cutoff = now - window_seconds
            # Entries are appended in time order, so expired ones sit at the left
            while window and window[0] <= cutoff:
                window.popleft()
            if len(window) >= max_calls:
                return False
            window.append(now)
            return True

    # Credentials

    def save_credential(self, user_id: str, credential: Credential) -> None:
        with self._lock:
            self._credentials[user_id] = copy.deepcopy(credential)

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._lock:
            credential = self._credentials.get(user_id)
            return copy.deepcopy(credential) if credential else None
