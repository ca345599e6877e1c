from .base import (
    ClassificationProvider,
    MailProvider,
    MessageMetadata,
    MessagePage,
    ProviderLabel,
)
from .factory import ProviderFactory
from .gemini_provider import GeminiProvider
from .gmail_provider import GmailProvider
from .ollama_provider import OllamaProvider

__all__ = [
    "ClassificationProvider",
    "MailProvider",
    "MessageMetadata",
    "MessagePage",
    "ProviderLabel",
    "ProviderFactory",
    "GeminiProvider",
    "GmailProvider",
    "OllamaProvider",
]
