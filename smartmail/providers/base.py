"""
Provider interfaces.

MailProvider is the mailbox API (message listing, metadata, labels,
token refresh). ClassificationProvider is the text-generation backend used
by ClassificationEngine; it promises nothing about the shape of its
output beyond "some text".
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..core.models import Credential


@dataclass
class MessagePage:
    """One page of a message listing."""
    message_ids: List[str] = field(default_factory=list)
    next_page_token: Optional[str] = None


@dataclass
class MessageMetadata:
    """Header-level view of a provider message."""
    provider_id: str
    thread_id: Optional[str] = None
    subject: str = "No Subject"
    sender: str = "Unknown"
    recipient: str = ""
    snippet: str = ""
    timestamp: Optional[datetime] = None


@dataclass
class ProviderLabel:
    """A label as the provider reports it."""
    label_id: str
    name: str
    type: str = "user"


class MailProvider(ABC):
    """
    Mailbox API client.

    Implementations raise AuthorizationError when the installed credential
    is rejected and ProviderError for every other failure (ProviderError
    with status 409 when a label already exists).
    """

    @abstractmethod
    def set_credential(self, credential: Credential) -> None:
        """Install the credential used by subsequent calls."""

    @abstractmethod
    def list_messages(
        self, query: Optional[str], page_token: Optional[str], page_size: int
    ) -> MessagePage:
        pass

    @abstractmethod
    def get_message_metadata(self, message_id: str) -> MessageMetadata:
        pass

    @abstractmethod
    def create_label(self, name: str) -> ProviderLabel:
        pass

    @abstractmethod
    def list_labels(self) -> List[ProviderLabel]:
        pass

    @abstractmethod
    def modify_message_labels(self, message_id: str, add_label_ids: List[str]) -> None:
        pass

    @abstractmethod
    def refresh_credential(self, refresh_token: str) -> Credential:
        """
        Exchange a refresh token for a new credential.

        Raises:
            AuthorizationError: the refresh token is invalid or revoked
        """

    def get_name(self) -> str:
        return self.__class__.__name__


class ClassificationProvider(ABC):
    """Text-generation backend (Model Agnostic)."""

    @abstractmethod
    def generate(self, prompt: str) -> str:
        """
        Return the raw text response for a prompt.

        Raises:
            ClassificationError: on any transport or protocol failure
        """

    @abstractmethod
    def get_name(self) -> str:
        """Provider identifier for logging and circuit breaking."""

    @property
    @abstractmethod
    def is_local(self) -> bool:
        """Whether provider runs locally (no cloud costs)."""
