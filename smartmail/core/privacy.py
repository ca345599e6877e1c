"""
Privacy guard - PII redaction before message text leaves for the AI backend.

Only what classification needs is sent: sender, subject and the provider
snippet, with contact and payment identifiers masked.
"""

import logging
import re
from typing import Dict

logger = logging.getLogger(__name__)


class PrivacyGuard:
    """Regex-based PII masking for prompt text."""

    PATTERNS = {
        "email": (r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+", "<EMAIL_REDACTED>"),
        "credit_card": (r"\b(?:\d{4}[-\s]?){3}\d{4}\b", "<CARD_REDACTED>"),
        "iban": (r"\b[A-Z]{2}\d{2}[A-Z0-9]{4}\d{7}([A-Z0-9]?){0,16}\b", "<IBAN_REDACTED>"),
        "phone": (r"\b(?:\+?(\d{1,3}))?[-. (]*(\d{3})[-. )]*(\d{3})[-. ]*(\d{4})\b", "<PHONE_REDACTED>"),
        "ip": (r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b", "<IP_REDACTED>"),
    }

    def __init__(self, max_length: int = 1000):
        self.max_length = max_length
        # Card numbers before phones: a card would otherwise be eaten as a phone
        self._compiled = [
            (name, re.compile(pattern), replacement)
            for name, (pattern, replacement) in self.PATTERNS.items()
        ]

    def sanitize(self, text: str) -> str:
        """
        Mask PII and truncate.

        Args:
            text: Raw text

        Returns:
            Text with PII replaced by placeholders
        """
        if not text:
            return ""

        truncated = len(text) > self.max_length
        if truncated:
            text = text[: self.max_length]

        for _name, pattern, replacement in self._compiled:
            text = pattern.sub(replacement, text)

        if truncated:
            text += "... [TRUNCATED]"
        return text

    def sender_domain(self, sender: str) -> str:
        """
        Reduce a sender to its domain.

        "Alice <alice@bank.com>" -> "bank.com". The domain is the useful
        classification signal; the mailbox name is not needed.
        """
        match = re.search(r"@([a-zA-Z0-9.-]+)", sender or "")
        return match.group(1).lower().rstrip(".") if match else (sender or "").strip()

    def get_pii_stats(self, text: str) -> Dict:
        """Count PII matches without modifying text (auditing)."""
        if not text:
            return {"entities_found": 0, "entity_types": []}

        count = 0
        types = []
        for name, pattern, _ in self._compiled:
            matches = pattern.findall(text)
            if matches:
                count += len(matches)
                types.append(name)
        return {"entities_found": count, "entity_types": types}
