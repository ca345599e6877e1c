"""
Provider factory for classification provider instantiation.

Single entry point to instantiate a text-generation backend by name,
using a registry of provider classes.
"""

import logging
from typing import Dict, Optional, Type

from .base import ClassificationProvider

logger = logging.getLogger(__name__)


class ProviderFactory:
    """
    Registry of classification provider classes.

    Instances are not cached: each orchestrator owns the provider it was
    built with.
    """

    _providers: Dict[str, Type[ClassificationProvider]] = {}

    @classmethod
    def register(cls, name: str, provider_class: Type[ClassificationProvider]) -> None:
        cls._providers[name] = provider_class
        logger.debug(f"Registered provider: {name}")

    @classmethod
    def create(cls, name: str, config: Optional[Dict] = None) -> ClassificationProvider:
        """
        Create a provider instance.

        Raises:
            ValueError: If provider name is unknown or it cannot be configured
        """
        if name not in cls._providers:
            available = list(cls._providers.keys())
            raise ValueError(f"Unknown provider: '{name}'. Available: {available}")

        try:
            instance = cls._providers[name](config or {})
        except Exception as e:
            logger.error(f"Failed to create provider '{name}': {e}")
            raise

        logger.info(f"Created provider instance: {name}")
        return instance

    @classmethod
    def from_config(cls, config: Dict) -> Optional[ClassificationProvider]:
        """
        Build the configured provider, or None when AI is disabled or the
        provider cannot be configured (classification then runs on rules).
        """
        if not config.get("ai_enabled", False):
            return None
        name = config.get("provider", "gemini")
        try:
            return cls.create(name, config.get("providers", {}).get(name, {}))
        except ValueError as e:
            logger.warning(f"AI provider '{name}' unavailable, using rules only: {e}")
            return None


def _auto_register_providers():
    from .gemini_provider import GeminiProvider
    from .ollama_provider import OllamaProvider

    ProviderFactory.register("gemini", GeminiProvider)
    ProviderFactory.register("ollama", OllamaProvider)


_auto_register_providers()
