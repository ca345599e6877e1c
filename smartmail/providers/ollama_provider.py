"""
Ollama provider for local text generation.

Zero cloud cost; useful for self-hosted deployments and development.
"""

import logging
from typing import Dict, Optional

import requests

from .base import ClassificationProvider
from ..core.errors import ClassificationError

logger = logging.getLogger(__name__)


class OllamaProvider(ClassificationProvider):
    """Ollama /api/generate client (non-streaming)."""

    def __init__(self, config: Optional[Dict] = None):
        """
        Args:
            config: Provider configuration dict with:
                - base_url: Ollama API URL (default: http://localhost:11434)
                - model: Model name (default: llama3)
                - timeout: Request timeout in seconds (default: 30)
        """
        config = config or {}
        self.base_url = config.get("base_url", "http://localhost:11434")
        self.model = config.get("model", "llama3")
        self.timeout = config.get("timeout", 30)
        self.api_endpoint = f"{self.base_url}/api/generate"

    def get_name(self) -> str:
        return "ollama"

    @property
    def is_local(self) -> bool:
        return True

    def generate(self, prompt: str) -> str:
        try:
            response = requests.post(
                self.api_endpoint,
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "stream": False,
                    "format": "json",
                    "options": {"temperature": 0.1},
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ClassificationError("Ollama request timed out") from e
        except requests.exceptions.ConnectionError as e:
            raise ClassificationError(f"Cannot connect to Ollama at {self.base_url}") from e
        except requests.exceptions.RequestException as e:
            raise ClassificationError(f"Ollama transport error: {e}") from e

        if response.status_code != 200:
            raise ClassificationError(f"Ollama HTTP {response.status_code}")

        try:
            return str(response.json()["response"]).strip()
        except (ValueError, KeyError, TypeError) as e:
            raise ClassificationError("Invalid Ollama response structure") from e
