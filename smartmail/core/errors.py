"""
Exception types for SmartMail.

Item-scoped failures (one message, one label) are never raised out of a
step's item loop; they are logged, counted and appended to the job's
error list. Everything here is what does escape.
"""

from typing import Optional


class SmartMailError(Exception):
    """Base class for all SmartMail errors."""


class ValidationError(SmartMailError):
    """Malformed or out-of-range batch request. No job is created."""


class NotFoundError(SmartMailError):
    """Referenced batch does not exist."""


class ProviderError(SmartMailError):
    """
    Non-authorization failure reported by the mail provider.

    status_code is None for transport failures (timeout, connection reset).
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def already_exists(self) -> bool:
        return self.status_code == 409


class AuthorizationError(SmartMailError):
    """The provider rejected the credential (expired or revoked token)."""

    def __init__(self, message: str = "authorization failed", status_code: Optional[int] = 401):
        super().__init__(message)
        self.status_code = status_code


class RequiresReauthError(SmartMailError):
    """Credential refresh failed, or the retried call was still unauthorized."""

    requires_reauth = True


class StepError(SmartMailError):
    """A step cannot continue at all; aborts the whole batch."""


class ClassificationError(SmartMailError):
    """AI classification path failed. Never escapes ClassificationEngine.classify."""
