"""
Google Gemini provider for cloud text generation.

Returns the raw text of the first candidate; parsing and validation belong
to ClassificationEngine.
"""

import logging
import time
from typing import Dict, Optional

import requests

from .base import ClassificationProvider
from ..core.errors import ClassificationError
from ..utils.secrets import get_api_key

logger = logging.getLogger(__name__)


class GeminiProvider(ClassificationProvider):
    """
    Google Gemini provider.

    Cost Optimization:
    - Uses gemini-2.0-flash by default (cheapest Gemini model)
    - Low max_tokens for classification
    - Low temperature for consistent structured output
    """

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize Gemini provider.

        Args:
            config: Provider configuration with:
                - model: Model name (default: gemini-2.0-flash)
                - api_key: API key (or retrieved from keyring / GEMINI_API_KEY)
                - timeout: Request timeout in seconds (default: 10)
                - max_tokens: Maximum response tokens (default: 400)
        """
        config = config or {}
        self.model = config.get("model", "gemini-2.0-flash")
        self.api_key = config.get("api_key") or get_api_key("gemini")
        self.timeout = config.get("timeout", 10)
        self.max_tokens = config.get("max_tokens", 400)
        self.base_url = config.get("base_url", self.BASE_URL)

        if not self.api_key:
            raise ValueError(
                "Gemini API key not configured. Set GEMINI_API_KEY or store it via keyring: "
                "python -c \"from smartmail.utils.secrets import set_api_key; set_api_key('gemini', 'AIza...')\""
            )

    def get_name(self) -> str:
        return "gemini"

    @property
    def is_local(self) -> bool:
        return False

    def generate(self, prompt: str) -> str:
        start_time = time.time()
        endpoint = f"{self.base_url}/models/{self.model}:generateContent"

        try:
            response = requests.post(
                endpoint,
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json={
                    "contents": [{"parts": [{"text": prompt}]}],
                    "generationConfig": {
                        "maxOutputTokens": self.max_tokens,
                        "temperature": 0.1,
                    },
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ClassificationError("Gemini request timed out") from e
        except requests.exceptions.RequestException as e:
            raise ClassificationError(f"Gemini transport error: {e}") from e

        latency_ms = int((time.time() - start_time) * 1000)

        if response.status_code == 429:
            raise ClassificationError("Gemini rate limit exceeded")
        if response.status_code != 200:
            raise ClassificationError(f"Gemini HTTP {response.status_code}")

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ClassificationError("Invalid Gemini response structure") from e

        usage = data.get("usageMetadata", {})
        logger.debug(
            f"Gemini responded in {latency_ms}ms "
            f"({usage.get('promptTokenCount', 0) + usage.get('candidatesTokenCount', 0)} tokens)"
        )
        return str(text).strip()
