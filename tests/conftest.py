import atexit
import faulthandler
import os
import sys
import threading
import time
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _start_watchdog(timeout_seconds: int) -> Optional[threading.Timer]:
    if timeout_seconds <= 0:
        return None

    def _kill() -> None:
        try:
            faulthandler.dump_traceback(file=sys.stderr, all_threads=True)
        except Exception:
            pass
        # Hard exit: guarantees CI can't hang forever.
        os._exit(2)

    timer = threading.Timer(timeout_seconds, _kill)
    timer.daemon = True
    timer.start()
    return timer


def pytest_sessionstart(session) -> None:  # noqa: ANN001
    # Always enable faulthandler for better diagnostics on timeouts/hangs.
    try:
        faulthandler.enable(all_threads=True)
    except Exception:
        pass

    # Absolute upper bound for the whole test run.
    # Default: 20 minutes (matches "never hang" requirement but leaves room for CI slowness).
    watchdog_seconds = _env_int("PYTEST_WATCHDOG_TIMEOUT_SECONDS", 20 * 60)
    timer = _start_watchdog(watchdog_seconds)

    if timer is not None:
        atexit.register(timer.cancel)

    # Minor guardrail: if a test suite is extremely slow, at least dump stacks periodically.
    # This doesn't stop execution, but helps debug if the watchdog triggers.
    dump_every = _env_int("PYTEST_DUMP_STACK_EVERY_SECONDS", 0)
    if dump_every > 0:
        _start_periodic_dump(dump_every)


def _start_periodic_dump(every_seconds: int) -> None:
    def _loop() -> None:
        while True:
            time.sleep(every_seconds)
            try:
                faulthandler.dump_traceback(file=sys.stderr, all_threads=True)
            except Exception:
                pass

    t = threading.Thread(target=_loop, daemon=True)
    t.start()


# ----------------------------------------------------------------------
# Shared fakes
# ----------------------------------------------------------------------

import tempfile

# Keep test runs out of the user's real log directory
os.environ.setdefault("SMARTMAIL_LOG_DIR", os.path.join(tempfile.gettempdir(), "smartmail-test-logs"))

import pytest

from smartmail.core.classifier import ClassificationEngine
from smartmail.core.errors import AuthorizationError, ClassificationError, ProviderError
from smartmail.core.models import Credential
from smartmail.core.rate_limiter import RateLimiter
from smartmail.providers.base import (
    ClassificationProvider,
    MailProvider,
    MessageMetadata,
    MessagePage,
    ProviderLabel,
)
from smartmail.storage.memory_store import InMemoryStore


class FakeMailProvider(MailProvider):
    """
    In-memory mailbox with N messages.

    auth_failures: number of upcoming calls (any method) that raise
        AuthorizationError before calls start succeeding
    valid_tokens: access tokens accepted once auth_failures is exhausted;
        None accepts any token
    """

    def __init__(self, count: int = 0, subjects=None, senders=None):
        self.messages = {}
        for i in range(count):
            pid = f"msg{i:03d}"
            self.messages[pid] = MessageMetadata(
                provider_id=pid,
                thread_id=f"thr{i:03d}",
                subject=(subjects or {}).get(i, f"Message {i}"),
                sender=(senders or {}).get(i, f"sender{i}@example.com"),
                recipient="me@example.com",
                snippet=f"snippet {i}",
            )
        self.labels = {}
        self.applied = {}
        self.credential = None
        self.auth_failures = 0
        self.refresh_error = None
        self.refresh_calls = 0
        self.metadata_errors = set()
        self.modify_errors = set()
        self.create_conflicts = set()
        self.calls = []
        self._next_label = 1

    def _check_auth(self, name):
        self.calls.append(name)
        if self.auth_failures > 0:
            self.auth_failures -= 1
            raise AuthorizationError("token expired")

    def set_credential(self, credential):
        self.credential = credential

    def list_messages(self, query, page_token, page_size):
        self._check_auth("list_messages")
        ids = sorted(self.messages)
        start = int(page_token or 0)
        page = ids[start : start + page_size]
        next_token = str(start + page_size) if start + page_size < len(ids) else None
        return MessagePage(message_ids=page, next_page_token=next_token)

    def get_message_metadata(self, message_id):
        self._check_auth("get_message_metadata")
        if message_id in self.metadata_errors:
            raise ProviderError(f"metadata unavailable for {message_id}", status_code=500)
        return self.messages[message_id]

    def create_label(self, name):
        self._check_auth("create_label")
        if name in self.create_conflicts:
            self.create_conflicts.discard(name)
            label_id = f"Label_{self._next_label}"
            self._next_label += 1
            self.labels[name] = label_id
            raise ProviderError("Label name exists or conflicts", status_code=409)
        if name in self.labels:
            raise ProviderError("Label name exists or conflicts", status_code=409)
        label_id = f"Label_{self._next_label}"
        self._next_label += 1
        self.labels[name] = label_id
        return ProviderLabel(label_id=label_id, name=name)

    def list_labels(self):
        self._check_auth("list_labels")
        system = [ProviderLabel(label_id="INBOX", name="INBOX", type="system")]
        return system + [ProviderLabel(label_id=i, name=n) for n, i in self.labels.items()]

    def modify_message_labels(self, message_id, add_label_ids):
        self._check_auth("modify_message_labels")
        if message_id in self.modify_errors:
            raise ProviderError(f"cannot modify {message_id}", status_code=500)
        self.applied.setdefault(message_id, []).extend(add_label_ids)

    def refresh_credential(self, refresh_token):
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return Credential(access_token=f"refreshed-{self.refresh_calls}", refresh_token=refresh_token)


class FakeClassificationProvider(ClassificationProvider):
    """Returns scripted responses in order; an Exception entry is raised."""

    def __init__(self, responses=None, default=None):
        self.responses = list(responses or [])
        self.default = default
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        if response is None:
            raise ClassificationError("no scripted response")
        return response

    def get_name(self):
        return "fake"

    @property
    def is_local(self):
        return True


AI_JSON = (
    '{"purpose": "Bank alert", "category": "Finance/Banking", '
    '"summary": "Account statement", "sentiment": "neutral", '
    '"suggestedLabel": "Banking"}'
)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def credential():
    return Credential(access_token="access-1", refresh_token="refresh-1")


@pytest.fixture
def mail():
    return FakeMailProvider(count=25)


@pytest.fixture
def ai():
    return FakeClassificationProvider(default=AI_JSON)


@pytest.fixture
def engine(store, ai):
    return ClassificationEngine(ai, RateLimiter(store, {"max_calls": 1000, "window_seconds": 60}))


@pytest.fixture
def rules_engine_only():
    return ClassificationEngine(None, ai_enabled=False)
