"""
SQLite-backed PersistentStore.

One connection in WAL mode, shared across worker threads behind a lock.
Each public method is one transaction, which is the per-record atomicity
the orchestrator relies on. Unique indexes on (provider_id, user_id),
(user_id, name) and batch_id back the upsert semantics.
"""

import json
import logging
import os
import random
import sqlite3
import threading
import time
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from ..core.errors import NotFoundError
from ..core.models import (
    BatchJob,
    ClassificationResult,
    Credential,
    JobStatus,
    LabelRecord,
    MessageRecord,
    Operation,
    utcnow,
)
from .base import PersistentStore

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SCHEMA = """
CREATE TABLE IF NOT EXISTS batch_jobs (
    batch_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    options TEXT NOT NULL,
    status TEXT NOT NULL,
    emails_processed INTEGER NOT NULL DEFAULT 0,
    emails_total INTEGER NOT NULL DEFAULT 0,
    labels_created INTEGER NOT NULL DEFAULT 0,
    labels_used INTEGER NOT NULL DEFAULT 0,
    errors TEXT NOT NULL DEFAULT '[]',
    result TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    start_time TEXT,
    end_time TEXT,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_batch_jobs_user ON batch_jobs (user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS messages (
    provider_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    thread_id TEXT,
    subject TEXT NOT NULL,
    sender TEXT NOT NULL,
    recipient TEXT NOT NULL,
    snippet TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    synced INTEGER NOT NULL DEFAULT 0,
    analysis TEXT,
    category TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE (provider_id, user_id)
);
CREATE INDEX IF NOT EXISTS idx_messages_user_time ON messages (user_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_messages_processed ON messages (user_id, processed, synced);

CREATE TABLE IF NOT EXISTS labels (
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    provider_label_id TEXT NOT NULL,
    is_auto INTEGER NOT NULL DEFAULT 1,
    email_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, name)
);

CREATE TABLE IF NOT EXISTS rate_limits (
    user_id TEXT NOT NULL,
    tag TEXT NOT NULL,
    called_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rate_limits_key ON rate_limits (user_id, tag, called_at);

CREATE TABLE IF NOT EXISTS credentials (
    user_id TEXT PRIMARY KEY,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    expiry TEXT,
    updated_at TEXT NOT NULL
);
"""

_JOB_COLUMNS = {
    "status", "emails_processed", "emails_total", "labels_created", "labels_used",
    "errors", "result", "start_time", "end_time", "options",
}


def retry_on_db_lock(max_retries: int = 5, base_delay: float = 0.05, max_delay: float = 1.0) -> Callable[[F], F]:
    """
    Retry on SQLITE_BUSY / "database is locked" with jittered exponential backoff.

    Another process may hold the write lock on the same file.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    message = str(e).lower()
                    if "locked" not in message and "busy" not in message:
                        raise
                    if attempt >= max_retries:
                        logger.error("Database lock retry exhausted after %d attempts: %s", max_retries, e)
                        raise
                    delay = min(base_delay * (2 ** attempt), max_delay)
                    sleep_time = delay + random.uniform(0, delay * 0.1)
                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.2fs",
                        attempt + 1, max_retries, sleep_time,
                    )
                    time.sleep(sleep_time)
            raise RuntimeError("unreachable")

        return wrapper  # type: ignore[return-value]

    return decorator


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _encode_job_value(name: str, value: Any) -> Any:
    if name == "status":
        return value.value
    if name in ("errors", "result", "options"):
        return json.dumps(value)
    if name in ("start_time", "end_time"):
        return _dt(value)
    return value


class SQLiteStore(PersistentStore):
    """PersistentStore on a single SQLite file (or ':memory:')."""

    def __init__(self, path: str = ":memory:", timeout: float = 10.0):
        if path != ":memory:":
            path = os.path.expanduser(path)
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self.path = path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, timeout=timeout, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        with self._conn:
            self._conn.executescript(SCHEMA)
        logger.info(f"SQLite store opened at {path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Row mapping

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> BatchJob:
        return BatchJob(
            batch_id=row["batch_id"],
            user_id=row["user_id"],
            operation=Operation(row["operation"]),
            options=json.loads(row["options"]),
            status=JobStatus(row["status"]),
            emails_processed=row["emails_processed"],
            emails_total=row["emails_total"],
            labels_created=row["labels_created"],
            labels_used=row["labels_used"],
            errors=json.loads(row["errors"]),
            result=json.loads(row["result"]),
            created_at=_parse_dt(row["created_at"]),
            start_time=_parse_dt(row["start_time"]),
            end_time=_parse_dt(row["end_time"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> MessageRecord:
        analysis = json.loads(row["analysis"]) if row["analysis"] else None
        return MessageRecord(
            provider_id=row["provider_id"],
            user_id=row["user_id"],
            thread_id=row["thread_id"],
            subject=row["subject"],
            sender=row["sender"],
            recipient=row["recipient"],
            snippet=row["snippet"],
            timestamp=_parse_dt(row["timestamp"]),
            processed=bool(row["processed"]),
            synced=bool(row["synced"]),
            analysis=ClassificationResult.from_dict(analysis) if analysis else None,
            updated_at=_parse_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_label(row: sqlite3.Row) -> LabelRecord:
        return LabelRecord(
            user_id=row["user_id"],
            name=row["name"],
            provider_label_id=row["provider_label_id"],
            is_auto=bool(row["is_auto"]),
            email_count=row["email_count"],
            updated_at=_parse_dt(row["updated_at"]),
        )

    # Jobs

    @retry_on_db_lock()
    def create_job(self, job: BatchJob) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT INTO batch_jobs (batch_id, user_id, operation, options, status,
                   emails_processed, emails_total, labels_created, labels_used, errors, result,
                   created_at, start_time, end_time, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    job.batch_id, job.user_id, job.operation.value, json.dumps(job.options),
                    job.status.value, job.emails_processed, job.emails_total,
                    job.labels_created, job.labels_used, json.dumps(job.errors),
                    json.dumps(job.result), _dt(job.created_at), _dt(job.start_time),
                    _dt(job.end_time), _dt(job.updated_at),
                ),
            )

    @retry_on_db_lock()
    def update_job(self, batch_id: str, **changes: Any) -> BatchJob:
        unknown = set(changes) - _JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        assignments = [f"{name} = ?" for name in changes] + ["updated_at = ?"]
        params = [_encode_job_value(name, value) for name, value in changes.items()]
        params += [_dt(utcnow()), batch_id]

        with self._lock, self._conn:
            cursor = self._conn.execute(
                f"UPDATE batch_jobs SET {', '.join(assignments)} WHERE batch_id = ?", params
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Batch {batch_id} not found")
            row = self._conn.execute(
                "SELECT * FROM batch_jobs WHERE batch_id = ?", (batch_id,)
            ).fetchone()
        return self._row_to_job(row)

    @retry_on_db_lock()
    def append_job_errors(self, batch_id: str, messages: List[str]) -> None:
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT errors FROM batch_jobs WHERE batch_id = ?", (batch_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            errors = json.loads(row["errors"]) + list(messages)
            self._conn.execute(
                "UPDATE batch_jobs SET errors = ?, updated_at = ? WHERE batch_id = ?",
                (json.dumps(errors), _dt(utcnow()), batch_id),
            )

    def get_job(self, batch_id: str) -> Optional[BatchJob]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM batch_jobs WHERE batch_id = ?", (batch_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, user_id: str, limit: int = 20) -> List[BatchJob]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM batch_jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    # Messages

    @retry_on_db_lock()
    def upsert_message(self, record: MessageRecord) -> MessageRecord:
        now = _dt(utcnow())
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT INTO messages (provider_id, user_id, thread_id, subject, sender,
                   recipient, snippet, timestamp, processed, synced, analysis, category, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (provider_id, user_id) DO UPDATE SET
                       thread_id = excluded.thread_id,
                       subject = excluded.subject,
                       sender = excluded.sender,
                       recipient = excluded.recipient,
                       snippet = excluded.snippet,
                       timestamp = excluded.timestamp,
                       updated_at = excluded.updated_at""",
                (
                    record.provider_id, record.user_id, record.thread_id, record.subject,
                    record.sender, record.recipient, record.snippet, _dt(record.timestamp),
                    int(record.processed), int(record.synced),
                    json.dumps(record.analysis.to_dict()) if record.analysis else None,
                    record.analysis.category if record.analysis else None,
                    now,
                ),
            )
            row = self._conn.execute(
                "SELECT * FROM messages WHERE provider_id = ? AND user_id = ?",
                (record.provider_id, record.user_id),
            ).fetchone()
        return self._row_to_message(row)

    def query_messages(
        self,
        user_id: str,
        processed: Optional[bool] = None,
        synced: Optional[bool] = None,
        category: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[MessageRecord]:
        clauses = ["user_id = ?"]
        params: List[Any] = [user_id]
        if processed is not None:
            clauses.append("processed = ?")
            params.append(int(processed))
        if synced is not None:
            clauses.append("synced = ?")
            params.append(int(synced))
        if category is not None:
            clauses.append("category = ?")
            params.append(category)

        sql = f"SELECT * FROM messages WHERE {' AND '.join(clauses)} ORDER BY timestamp DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_message(row) for row in rows]

    @retry_on_db_lock()
    def mark_message_analyzed(
        self, user_id: str, provider_id: str, analysis: ClassificationResult
    ) -> None:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                """UPDATE messages SET analysis = ?, category = ?, processed = 1, updated_at = ?
                   WHERE provider_id = ? AND user_id = ?""",
                (json.dumps(analysis.to_dict()), analysis.category, _dt(utcnow()), provider_id, user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Message {provider_id} not found")

    @retry_on_db_lock()
    def mark_message_synced(self, user_id: str, provider_id: str) -> None:
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT processed FROM messages WHERE provider_id = ? AND user_id = ?",
                (provider_id, user_id),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Message {provider_id} not found")
            if not row["processed"]:
                raise ValueError(f"Message {provider_id} cannot be synced before it is processed")
            self._conn.execute(
                "UPDATE messages SET synced = 1, updated_at = ? WHERE provider_id = ? AND user_id = ?",
                (_dt(utcnow()), provider_id, user_id),
            )

    def message_stats(self, user_id: str) -> Dict[str, int]:
        with self._lock:
            row = self._conn.execute(
                """SELECT COUNT(*) AS total, COALESCE(SUM(processed), 0) AS processed,
                   COALESCE(SUM(synced), 0) AS synced FROM messages WHERE user_id = ?""",
                (user_id,),
            ).fetchone()
        return {
            "total_emails": row["total"],
            "processed_emails": row["processed"],
            "synced_emails": row["synced"],
        }

    def category_breakdown(self, user_id: str) -> List[Tuple[str, int]]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT category, COUNT(*) AS n FROM messages
                   WHERE user_id = ? AND category IS NOT NULL
                   GROUP BY category ORDER BY n DESC, category""",
                (user_id,),
            ).fetchall()
        return [(row["category"], row["n"]) for row in rows]

    # Labels

    @retry_on_db_lock()
    def upsert_label(self, record: LabelRecord) -> LabelRecord:
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT OR IGNORE INTO labels (user_id, name, provider_label_id, is_auto,
                   email_count, updated_at) VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    record.user_id, record.name, record.provider_label_id,
                    int(record.is_auto), record.email_count, _dt(utcnow()),
                ),
            )
            row = self._conn.execute(
                "SELECT * FROM labels WHERE user_id = ? AND name = ?",
                (record.user_id, record.name),
            ).fetchone()
        return self._row_to_label(row)

    def get_label_by_name(self, user_id: str, name: str) -> Optional[LabelRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM labels WHERE user_id = ? AND name = ?", (user_id, name)
            ).fetchone()
        return self._row_to_label(row) if row else None

    def list_labels(self, user_id: str) -> List[LabelRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM labels WHERE user_id = ? ORDER BY name", (user_id,)
            ).fetchall()
        return [self._row_to_label(row) for row in rows]

    @retry_on_db_lock()
    def increment_label_usage(self, user_id: str, name: str, count: int = 1) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """UPDATE labels SET email_count = email_count + ?, updated_at = ?
                   WHERE user_id = ? AND name = ?""",
                (count, _dt(utcnow()), user_id, name),
            )

    # Rate windows

    @retry_on_db_lock()
    def rate_limit_check_and_record(
        self, user_id: str, tag: str, max_calls: int, window_seconds: float, now: float
    ) -> bool:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM rate_limits WHERE expires_at <= ?", (now,))
            (count,) = self._conn.execute(
                "SELECT COUNT(*) FROM rate_limits WHERE user_id = ? AND tag = ? AND called_at > ?",
                (user_id, tag, now - window_seconds),
            ).fetchone()
            if count >= max_calls:
                return False
            self._conn.execute(
                "INSERT INTO rate_limits (user_id, tag, called_at, expires_at) VALUES (?, ?, ?, ?)",
                (user_id, tag, now, now + window_seconds),
            )
            return True

    # Credentials

    @retry_on_db_lock()
    def save_credential(self, user_id: str, credential: Credential) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """INSERT INTO credentials (user_id, access_token, refresh_token, expiry, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT (user_id) DO UPDATE SET
                       access_token = excluded.access_token,
                       refresh_token = excluded.refresh_token,
                       expiry = excluded.expiry,
                       updated_at = excluded.updated_at""",
                (
                    user_id, credential.access_token, credential.refresh_token,
                    _dt(credential.expiry), _dt(utcnow()),
                ),
            )

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM credentials WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return Credential(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expiry=_parse_dt(row["expiry"]),
        )
