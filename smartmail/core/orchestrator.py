"""
Batch orchestrator - owns the BatchJob lifecycle.

Turns an (operation, options) request into a tracked run:

    create -> execute -> {completed | failed}

Each operation is a fixed sequence of remote calls made through
CredentialGuard (mail provider) or ClassificationEngine (AI backend),
throttled in chunks and checkpointed to the store after every page or
chunk. Item failures are recorded on the job and counted; only step
failures and RequiresReauthError end a run early.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .classifier import ClassificationEngine
from .credential_guard import CredentialGuard
from .errors import NotFoundError, RequiresReauthError, StepError, ValidationError
from .label_resolver import LabelResolver
from .models import (
    COUNTER_FIELDS,
    BatchJob,
    Credential,
    JobStatus,
    MessageRecord,
    Operation,
    generate_batch_id,
    utcnow,
)
from ..providers.base import MailProvider
from ..storage.base import PersistentStore
from ..utils.sanitize import sanitize_label

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZES = {
    Operation.FETCH_EMAILS.value: 500,
    Operation.ANALYZE_EMAILS.value: 200,
    Operation.ASSIGN_LABELS.value: 200,
    Operation.FULL_PROCESS.value: 200,
}

FULL_PROCESS_STEPS = (
    Operation.FETCH_EMAILS,
    Operation.ANALYZE_EMAILS,
    Operation.CREATE_LABELS,
    Operation.ASSIGN_LABELS,
)


def _zero_counters() -> Dict[str, int]:
    return {name: 0 for name in COUNTER_FIELDS}


@dataclass
class _Run:
    """Per-execution state. Never shared between batches."""
    job: BatchJob
    credential: Credential
    mail: Optional[MailProvider] = None
    guard: Optional[CredentialGuard] = None
    resolver: Optional[LabelResolver] = None
    step: str = ""
    base: Dict[str, int] = field(default_factory=_zero_counters)
    pending_errors: List[str] = field(default_factory=list)
    result: Dict[str, Any] = field(default_factory=dict)
    calls: int = 0

    @property
    def user_id(self) -> str:
        return self.job.user_id

    @property
    def options(self) -> Dict[str, Any]:
        return self.job.options

    def item_error(self, item: str, error: Any) -> None:
        message = f"{self.step}: {item}: {error}"
        logger.warning(message)
        self.pending_errors.append(message)

    def call(self, operation: Callable[[], Any]) -> Any:
        """Provider call with bounded refresh-and-retry."""
        return self.guard.with_credential(self.user_id, self.credential, operation)


class BatchOrchestrator:
    """
    Creates and executes batch jobs.

    Usage:
        orchestrator = BatchOrchestrator(store, lambda: GmailProvider(cfg), engine)
        batch_id = orchestrator.create("user1", "fullProcess", {"batchSize": 50})
        counters = orchestrator.execute(batch_id, credential)
    """

    def __init__(
        self,
        store: PersistentStore,
        mail_provider_factory: Callable[[], MailProvider],
        classifier: ClassificationEngine,
        config: Optional[Dict] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize orchestrator.

        Args:
            store: Durable job/message/label storage
            mail_provider_factory: Builds one mail client per execution, so
                concurrent batches never share an installed credential
            classifier: Classification engine (AI with rules fallback)
            config: Batch configuration with:
                - chunk_size: Remote calls per chunk (default: 5)
                - chunk_delay: Seconds paused between chunks (default: 2.0)
                - page_size: Provider listing page size (default: 50)
                - max_batch_sizes: Per-operation batchSize ceilings
                - default_batch_size: batchSize when omitted (default: 100)
            sleep: Pause function (injectable for tests)
        """
        config = config or {}
        self.store = store
        self.mail_provider_factory = mail_provider_factory
        self.classifier = classifier
        self.chunk_size = max(1, int(config.get("chunk_size", 5)))
        self.chunk_delay = float(config.get("chunk_delay", 2.0))
        self.page_size = max(1, int(config.get("page_size", 50)))
        self.max_batch_sizes = dict(DEFAULT_MAX_BATCH_SIZES)
        self.max_batch_sizes.update(config.get("max_batch_sizes", {}))
        self.default_batch_size = int(config.get("default_batch_size", 100))
        self._sleep = sleep
        self._start_lock = threading.Lock()

        self._handlers = {
            Operation.FETCH_EMAILS: self._fetch_emails,
            Operation.ANALYZE_EMAILS: self._analyze_emails,
            Operation.CREATE_LABELS: self._create_labels,
            Operation.ASSIGN_LABELS: self._assign_labels,
            Operation.ORGANIZE_LABELS: self._organize_labels,
            Operation.FULL_PROCESS: self._full_process,
        }

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    def create(self, user_id: str, operation: str, options: Optional[Dict[str, Any]] = None) -> str:
        """
        Validate a request and persist a new job in `created`.

        Returns:
            The new batch id

        Raises:
            ValidationError: unknown operation, bad batchSize/limit/query
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("userId is required")
        try:
            op = Operation(operation)
        except ValueError:
            valid = ", ".join(o.value for o in Operation)
            raise ValidationError(f"Unknown operation: {operation!r}. Valid: {valid}") from None

        options = dict(options or {})
        batch_size = options.get("batchSize", self.default_batch_size)
        if isinstance(batch_size, bool) or not isinstance(batch_size, int):
            raise ValidationError(f"batchSize must be an integer, got {batch_size!r}")
        if batch_size < 1:
            raise ValidationError("batchSize must be at least 1")
        ceiling = self.max_batch_sizes.get(op.value)
        if ceiling is not None and batch_size > ceiling:
            raise ValidationError(f"batchSize {batch_size} exceeds the {op.value} maximum of {ceiling}")

        if "limit" in options:
            limit = options["limit"]
            if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
                raise ValidationError(f"limit must be a positive integer, got {limit!r}")
        if options.get("query") is not None and not isinstance(options["query"], str):
            raise ValidationError("query must be a string")

        options["batchSize"] = batch_size
        options["userId"] = user_id

        job = BatchJob(
            batch_id=generate_batch_id(),
            user_id=user_id,
            operation=op,
            options=options,
        )
        self.store.create_job(job)
        logger.info(f"Created batch {job.batch_id}: {op.value} for user {user_id} (batchSize={batch_size})")
        return job.batch_id

    def execute(self, batch_id: str, credential: Credential) -> Dict[str, int]:
        """
        Run a created job to completion or failure.

        Returns:
            Final counters (the job's errors list may still hold item errors)

        Raises:
            NotFoundError: unknown batch id
            ValidationError: job is not in `created`
            RequiresReauthError: credential refresh failed; job is `failed`
            Exception: any other unrecovered error; job is `failed`
        """
        job = self._start(batch_id)
        run = _Run(job=job, credential=credential, step=job.operation.value)
        start = time.time()

        try:
            # Everything after _start must end in completed or failed
            run.mail = self.mail_provider_factory()
            run.guard = CredentialGuard(run.mail, self.store)
            run.resolver = LabelResolver(self.store, run.guard)

            handler = self._handlers.get(job.operation)
            if handler is None:
                raise StepError(f"No handler for operation {job.operation.value}")
            counters = handler(run)
            self._flush_errors(run)
            self._update(run, status=JobStatus.COMPLETED, end_time=utcnow(), result=run.result, **counters)
        except Exception as e:
            self._fail(run, e)
            raise

        logger.info(
            f"Batch {batch_id} completed in {time.time() - start:.1f}s: "
            + ", ".join(f"{k}={v}" for k, v in counters.items())
        )
        return counters

    async def execute_async(self, batch_id: str, credential: Credential) -> Dict[str, int]:
        """Run execute on a worker thread; independent batches run concurrently."""
        return await asyncio.to_thread(self.execute, batch_id, credential)

    def status(self, batch_id: str) -> BatchJob:
        job = self.store.get_job(batch_id)
        if job is None:
            raise NotFoundError(f"Batch not found: {batch_id}")
        return job

    def history(self, user_id: str, limit: int = 20) -> List[BatchJob]:
        """Most recent jobs for a user, newest first."""
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer")
        return self.store.list_jobs(user_id, limit)

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def _start(self, batch_id: str) -> BatchJob:
        with self._start_lock:
            job = self.store.get_job(batch_id)
            if job is None:
                raise NotFoundError(f"Batch not found: {batch_id}")
            if job.status != JobStatus.CREATED:
                raise ValidationError(f"Batch {batch_id} is {job.status.value}, cannot execute")
            job = self.store.update_job(batch_id, status=JobStatus.RUNNING, start_time=utcnow())
        logger.info(f"Batch {batch_id} running: {job.operation.value}")
        return job

    def _update(self, run: _Run, **changes: Any) -> BatchJob:
        try:
            run.job = self.store.update_job(run.job.batch_id, **changes)
        except NotFoundError as e:
            raise StepError(f"Batch {run.job.batch_id} vanished mid-run") from e
        return run.job

    def _flush_errors(self, run: _Run) -> None:
        if run.pending_errors:
            errors, run.pending_errors = run.pending_errors, []
            try:
                self.store.append_job_errors(run.job.batch_id, errors)
            except NotFoundError as e:
                raise StepError(f"Batch {run.job.batch_id} vanished mid-run") from e

    def _checkpoint(self, run: _Run, step_counters: Dict[str, int]) -> None:
        """Persist progress: counters of finished steps plus the current step's."""
        self._flush_errors(run)
        self._update(run, **self._merged(run.base, step_counters))

    @staticmethod
    def _merged(base: Dict[str, int], step_counters: Dict[str, int]) -> Dict[str, int]:
        return {name: base.get(name, 0) + step_counters.get(name, 0) for name in COUNTER_FIELDS}

    def _fail(self, run: _Run, error: Exception) -> None:
        prefix = "requires reauthentication" if isinstance(error, RequiresReauthError) else f"{run.step} failed"
        run.pending_errors.append(f"{prefix}: {error}")
        try:
            self._flush_errors(run)
            self._update(run, status=JobStatus.FAILED, end_time=utcnow(), result=run.result)
        except StepError:
            logger.error(f"Batch {run.job.batch_id} could not be marked failed (record missing)")
        logger.error(f"Batch {run.job.batch_id} failed during {run.step}: {error}")

    def _throttle(self, run: _Run) -> None:
        """Pause before every chunk of remote calls after the first."""
        if run.calls and run.calls % self.chunk_size == 0 and self.chunk_delay > 0:
            self._sleep(self.chunk_delay)
        run.calls += 1

    def _at_chunk_end(self, index: int, total: int) -> bool:
        return (index + 1) % self.chunk_size == 0 or index + 1 == total

    def _batch_size(self, run: _Run) -> int:
        return int(run.options.get("batchSize", self.default_batch_size))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _fetch_emails(self, run: _Run) -> Dict[str, int]:
        """Page through the listing, upserting metadata until batchSize ids are seen."""
        batch_size = self._batch_size(run)
        query = run.options.get("query")
        page_size = min(batch_size, self.page_size)
        counters = _zero_counters()
        page_token = None
        seen = 0

        while seen < batch_size:
            want = min(page_size, batch_size - seen)
            page = run.call(lambda: run.mail.list_messages(query, page_token, want))
            ids = page.message_ids[: batch_size - seen]

            for message_id in ids:
                self._throttle(run)
                try:
                    meta = run.call(lambda: run.mail.get_message_metadata(message_id))
                    self.store.upsert_message(
                        MessageRecord(
                            provider_id=meta.provider_id,
                            user_id=run.user_id,
                            subject=meta.subject,
                            sender=meta.sender,
                            recipient=meta.recipient,
                            snippet=meta.snippet,
                            timestamp=meta.timestamp or utcnow(),
                            thread_id=meta.thread_id,
                        )
                    )
                    counters["emails_processed"] += 1
                except RequiresReauthError:
                    raise
                except Exception as e:
                    run.item_error(message_id, e)

            seen += len(ids)
            counters["emails_total"] = seen
            self._checkpoint(run, counters)
            logger.info(f"Fetched page: {counters['emails_processed']}/{seen} stored")

            page_token = page.next_page_token
            if not page_token or not ids:
                break

        failed = counters["emails_total"] - counters["emails_processed"]
        if failed:
            run.pending_errors.append(f"{failed} emails failed fetch")
        return counters

    def _analyze_emails(self, run: _Run) -> Dict[str, int]:
        """Classify unprocessed messages; classification itself cannot fail."""
        limit = run.options.get("limit") or self._batch_size(run)
        records = self.store.query_messages(run.user_id, processed=False, limit=limit)
        counters = _zero_counters()
        counters["emails_total"] = len(records)
        failed = 0

        for index, record in enumerate(records):
            # Rules-only classification makes no remote calls
            if self.classifier.ai_enabled:
                self._throttle(run)
            try:
                result = self.classifier.classify(record.subject, record.sender, record.snippet, run.user_id)
                self.store.mark_message_analyzed(run.user_id, record.provider_id, result)
                counters["emails_processed"] += 1
                logger.debug(f"Analyzed '{record.subject[:50]}': {result.category} ({result.source})")
            except Exception as e:
                failed += 1
                run.item_error(record.provider_id, e)

            if self._at_chunk_end(index, len(records)):
                self._checkpoint(run, counters)

        if failed:
            run.pending_errors.append(f"{failed} emails failed analysis")
        return counters

    def _create_labels(self, run: _Run) -> Dict[str, int]:
        """Resolve every distinct suggested label of processed messages."""
        names: List[str] = []
        for record in self.store.query_messages(run.user_id, processed=True, limit=None):
            if record.analysis is None:
                continue
            name = sanitize_label(record.analysis.suggested_label)
            if name not in names:
                names.append(name)

        counters = _zero_counters()
        existing = 0
        for index, name in enumerate(names):
            self._throttle(run)
            try:
                _label_id, created = run.resolver.resolve(run.user_id, name, run.credential)
                if created:
                    counters["labels_created"] += 1
                else:
                    existing += 1
            except RequiresReauthError:
                raise
            except Exception as e:
                run.item_error(name, e)

            if self._at_chunk_end(index, len(names)):
                self._checkpoint(run, counters)

        run.result["labelsExisting"] = run.result.get("labelsExisting", 0) + existing
        logger.info(f"Labels: {counters['labels_created']} created, {existing} already existed")
        return counters

    def _assign_labels(self, run: _Run) -> Dict[str, int]:
        """Apply resolved labels to processed-but-unsynced messages."""
        records = self.store.query_messages(
            run.user_id, processed=True, synced=False, limit=self._batch_size(run)
        )
        counters = _zero_counters()
        counters["emails_total"] = len(records)
        used = set()
        failed = 0

        for index, record in enumerate(records):
            name = sanitize_label(record.analysis.suggested_label) if record.analysis else None
            try:
                label_id = run.resolver.lookup(run.user_id, name) if name else None
                if not label_id:
                    raise LookupError(f"no label '{name}'")
                self._throttle(run)
                run.call(lambda: run.mail.modify_message_labels(record.provider_id, [label_id]))
                self.store.mark_message_synced(run.user_id, record.provider_id)
                self.store.increment_label_usage(run.user_id, name)
                counters["emails_processed"] += 1
                used.add(name)
            except RequiresReauthError:
                raise
            except Exception as e:
                failed += 1
                run.item_error(record.provider_id, e)

            counters["labels_used"] = len(used)
            if self._at_chunk_end(index, len(records)):
                self._checkpoint(run, counters)

        if failed:
            run.pending_errors.append(f"{failed} emails failed labeling")
        return counters

    def _organize_labels(self, run: _Run) -> Dict[str, int]:
        """Store AI label-organization suggestions; nothing is applied."""
        labels = [label.name for label in self.store.list_labels(run.user_id)]
        breakdown = self.store.category_breakdown(run.user_id)
        suggestions = self.classifier.suggest_label_organization(run.user_id, labels, breakdown)
        run.result["suggestions"] = suggestions
        logger.info(
            f"Label organization for {run.user_id}: "
            + ", ".join(f"{k}={len(v)}" for k, v in suggestions.items())
        )
        return _zero_counters()

    def _full_process(self, run: _Run) -> Dict[str, int]:
        """fetch -> analyze -> createLabels -> assignLabels; first failure aborts."""
        completed = []
        for op in FULL_PROCESS_STEPS:
            run.step = op.value
            step_counters = self._handlers[op](run)
            run.base = self._merged(run.base, step_counters)
            completed.append(op.value)
            run.result["completedSteps"] = list(completed)
            self._checkpoint(run, _zero_counters())
        return dict(run.base)
