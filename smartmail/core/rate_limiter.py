"""
Per-user sliding-window rate limiting for classification calls.

Prevents API cost explosion and respects the classification provider's
quota. Windows are owned by the PersistentStore, keyed by
(user_id, operation_tag), so concurrent batches for the same user share
one budget without any in-process lock.

Availability over strictness: if the store cannot be reached, the call is
allowed (fail-open). A limiter outage degrades cost control, it does not
stall every running batch.
"""

import logging
import time
from typing import Callable, Dict, Optional

from ..storage.base import PersistentStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_CALLS = 10
DEFAULT_WINDOW_SECONDS = 60.0

CLASSIFY_TAG = "classify"


class RateLimiter:
    """
    Sliding-window call limiter.

    The ceiling is checked before the call is recorded, so exactly
    max_calls calls succeed per window and a denied call records nothing.

    Usage:
        limiter = RateLimiter(store, {"max_calls": 10, "window_seconds": 60})
        if limiter.allow(user_id, "classify"):
            ...
    """

    def __init__(
        self,
        store: PersistentStore,
        config: Optional[Dict] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rate limiter.

        Args:
            store: Store holding the call windows
            config: Configuration with:
                - max_calls: Calls allowed per window (default: 10)
                - window_seconds: Window length (default: 60)
            clock: Time source in epoch seconds (injectable for tests)
        """
        config = config or {}
        self.store = store
        self.max_calls = int(config.get("max_calls", DEFAULT_MAX_CALLS))
        self.window_seconds = float(config.get("window_seconds", DEFAULT_WINDOW_SECONDS))
        self._clock = clock

        if self.max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

    def allow(self, user_id: str, operation_tag: str = CLASSIFY_TAG) -> bool:
        """
        Check and record one call for (user_id, operation_tag).

        Returns:
            True if the call may proceed, False if the window is full
        """
        try:
            allowed = self.store.rate_limit_check_and_record(
                user_id,
                operation_tag,
                self.max_calls,
                self.window_seconds,
                self._clock(),
            )
        except Exception as e:
            # Fail-open, see module docstring
            logger.error(f"Rate limiter store unavailable, allowing call: {e}")
            return True

        if not allowed:
            logger.warning(
                f"Rate limit reached for user {user_id} ({operation_tag}): "
                f"{self.max_calls} calls per {self.window_seconds:.0f}s"
            )
        return allowed

    def get_status(self) -> Dict:
        """Configured limits, for health/status reporting."""
        return {
            "max_calls": self.max_calls,
            "window_seconds": self.window_seconds,
        }
