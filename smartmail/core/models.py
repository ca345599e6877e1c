"""
Data model for SmartMail batch processing.

Plain dataclasses shared by the orchestrator, the storage backends and the
providers. Storage backends copy records in and out; nothing here is shared
mutable state between batches.
"""

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Closed category taxonomy; order is presentation order
CATEGORIES = (
    "Finance/Investments",
    "Finance/Banking",
    "Finance/E-commerce",
    "Finance/Billing",
    "Finance/General",
    "Work",
    "Shopping",
    "Personal",
    "Promotions",
    "Other",
)
DEFAULT_CATEGORY = "Other"

SENTIMENTS = ("positive", "negative", "neutral")
DEFAULT_SENTIMENT = "neutral"

COUNTER_FIELDS = ("emails_processed", "emails_total", "labels_created", "labels_used")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobStatus(Enum):
    """Batch job lifecycle states."""
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Operation(Enum):
    """Operations a batch job can run. Values are the public operation names."""
    FETCH_EMAILS = "fetchEmails"
    ANALYZE_EMAILS = "analyzeEmails"
    CREATE_LABELS = "createLabels"
    ASSIGN_LABELS = "assignLabels"
    ORGANIZE_LABELS = "organizeLabels"
    FULL_PROCESS = "fullProcess"


def generate_batch_id() -> str:
    return f"batch_{int(utcnow().timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class Credential:
    """Access/refresh token pair for one user's mailbox."""
    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None

    @property
    def expired(self) -> bool:
        if self.expiry is None:
            return False
        return utcnow() >= self.expiry - timedelta(seconds=60)

    def __repr__(self) -> str:
        # Tokens stay out of logs and tracebacks
        return f"Credential(expiry={self.expiry!r})"


@dataclass
class ClassificationResult:
    """
    Validated classification of one message.

    Instances built by ClassificationEngine always satisfy the field
    constraints (closed category set, sentiment set, sanitized label).

    Attributes:
        category: Member of CATEGORIES
        summary: One-line summary
        sentiment: positive, negative or neutral
        suggested_label: Provider label name derived from the category
        purpose: Short purpose string
        source: "ai" or "rules"
    """
    category: str = DEFAULT_CATEGORY
    summary: str = "No summary available"
    sentiment: str = DEFAULT_SENTIMENT
    suggested_label: str = "General"
    purpose: str = "Unknown purpose"
    source: str = "rules"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationResult":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class MessageRecord:
    """One provider message known to the system, keyed by (provider_id, user_id)."""
    provider_id: str
    user_id: str
    subject: str = "No Subject"
    sender: str = "Unknown"
    recipient: str = ""
    snippet: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    thread_id: Optional[str] = None
    processed: bool = False
    synced: bool = False
    analysis: Optional[ClassificationResult] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self):
        return (self.provider_id, self.user_id)


@dataclass
class LabelRecord:
    """Mapping of a (user_id, name) pair to the provider's label id."""
    user_id: str
    name: str
    provider_label_id: str
    is_auto: bool = True
    email_count: int = 0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class BatchJob:
    """One tracked execution of an operation for one user."""
    batch_id: str
    user_id: str
    operation: Operation
    options: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.CREATED
    emails_processed: int = 0
    emails_total: int = 0
    labels_created: int = 0
    labels_used: int = 0
    errors: List[str] = field(default_factory=list)
    result: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def counters(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in COUNTER_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe snapshot, camelCase keys as exposed to API callers."""
        return {
            "batchId": self.batch_id,
            "userId": self.user_id,
            "operation": self.operation.value,
            "options": dict(self.options),
            "status": self.status.value,
            "emailsProcessed": self.emails_processed,
            "emailsTotal": self.emails_total,
            "labelsCreated": self.labels_created,
            "labelsUsed": self.labels_used,
            "errors": list(self.errors),
            "result": dict(self.result),
            "createdAt": _iso(self.created_at),
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "updatedAt": _iso(self.updated_at),
        }
