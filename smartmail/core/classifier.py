"""
Classification engine: AI backend first, deterministic rules as fallback.

Decision order for every message:
    feature flag -> rate limit -> circuit breaker -> AI call -> rules

Whatever path runs, the result goes through validate_analysis before it
is returned, so every ClassificationResult leaving this module satisfies
the field constraints. classify() never raises.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import rules_engine
from .circuit_breaker import CircuitBreaker
from .errors import ClassificationError
from .models import (
    CATEGORIES,
    DEFAULT_CATEGORY,
    DEFAULT_SENTIMENT,
    SENTIMENTS,
    ClassificationResult,
)
from .privacy import PrivacyGuard
from .prompt_engine import PromptEngine
from .rate_limiter import CLASSIFY_TAG, RateLimiter
from ..providers.base import ClassificationProvider
from ..utils.sanitize import (
    MAX_LABEL_LENGTH,
    sanitize_label,
    sanitize_sender,
    sanitize_snippet,
    sanitize_subject,
)

logger = logging.getLogger(__name__)

ORGANIZE_TAG = "organize"
SUGGESTION_KEYS = ("mergeSuggestions", "hierarchySuggestions", "renameSuggestions", "newLabels")


def extract_json_payload(text: Any) -> Optional[Any]:
    """
    Decode the first balanced {...} region of a model response.

    Models wrap JSON in prose or code fences; braces inside string literals
    (and escaped quotes) do not count toward the balance.

    Returns:
        The decoded value, or None if no region decodes
    """
    if not isinstance(text, str):
        return None

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(text[start : i + 1])
                    except ValueError:
                        break
        # Unbalanced or undecodable; try the next opening brace
        start = text.find("{", start + 1)
    return None


def _clean_str(value: Any, default: str, max_length: int) -> str:
    if not isinstance(value, str):
        return default
    value = " ".join(value.split())
    return value[:max_length] if value else default


def validate_analysis(analysis: Dict[str, Any], source: str) -> ClassificationResult:
    """
    Normalize a raw analysis dict into a ClassificationResult.

    Off-set categories become "Other", off-set sentiments "neutral", and the
    label is reduced to the allowed character set and length.
    """
    category = analysis.get("category")
    if category not in CATEGORIES:
        category = DEFAULT_CATEGORY

    sentiment = analysis.get("sentiment")
    if isinstance(sentiment, str):
        sentiment = sentiment.strip().lower()
    if sentiment not in SENTIMENTS:
        sentiment = DEFAULT_SENTIMENT

    label = analysis.get("suggestedLabel", analysis.get("suggested_label"))
    return ClassificationResult(
        category=category,
        summary=_clean_str(analysis.get("summary"), "No summary available", 200),
        sentiment=sentiment,
        suggested_label=sanitize_label(label if isinstance(label, str) else "", MAX_LABEL_LENGTH),
        purpose=_clean_str(analysis.get("purpose"), "Unknown purpose", 100),
        source=source,
    )


def validate_suggestions(payload: Any) -> Dict[str, List[Any]]:
    """Keep only the four known suggestion lists; anything else becomes []."""
    if not isinstance(payload, dict):
        payload = {}
    result = {}
    for key in SUGGESTION_KEYS:
        value = payload.get(key)
        result[key] = [item for item in value if isinstance(item, dict)] if isinstance(value, list) else []
    return result


def empty_suggestions() -> Dict[str, List[Any]]:
    return {key: [] for key in SUGGESTION_KEYS}


class ClassificationEngine:
    """
    Primary/fallback classifier.

    Usage:
        engine = ClassificationEngine(provider, rate_limiter, ai_enabled=True)
        result = engine.classify(subject, sender, snippet, user_id)
    """

    def __init__(
        self,
        provider: Optional[ClassificationProvider],
        rate_limiter: Optional[RateLimiter] = None,
        ai_enabled: bool = True,
        circuit_breaker: Optional[CircuitBreaker] = None,
        prompt_engine: Optional[PromptEngine] = None,
        privacy_guard: Optional[PrivacyGuard] = None,
    ):
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.ai_enabled = ai_enabled and provider is not None
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.prompt_engine = prompt_engine or PromptEngine()
        self.privacy_guard = privacy_guard or PrivacyGuard()

    @property
    def backend_name(self) -> str:
        return self.provider.get_name() if self.provider else "none"

    def _ai_permitted(self, user_id: str, tag: str) -> Tuple[bool, str]:
        if not self.ai_enabled:
            return False, "ai disabled"
        if self.rate_limiter is not None and not self.rate_limiter.allow(user_id, tag):
            return False, "rate limited"
        # Checked after the rate limiter; an open circuit does not refund the slot
        if not self.circuit_breaker.allow_request(self.backend_name):
            return False, f"circuit open for {self.backend_name}"
        return True, ""

    def _call_ai(self, build_prompt: Callable[[], str]) -> Any:
        """
        Render, generate and decode. Every permitted call records an outcome
        on the breaker, so a half-open trial call always reports back.
        """
        try:
            raw = self.provider.generate(build_prompt())
            payload = extract_json_payload(raw)
            if not isinstance(payload, dict):
                raise ClassificationError("no JSON object in model response")
        except Exception as e:
            self.circuit_breaker.record_failure(self.backend_name)
            if isinstance(e, ClassificationError):
                raise
            raise ClassificationError(str(e)) from e
        self.circuit_breaker.record_success(self.backend_name)
        return payload

    def classify(self, subject: str, sender: str, snippet: str, user_id: str) -> ClassificationResult:
        """
        Classify one message. Always returns a valid result.
        """
        subject = sanitize_subject(subject)
        sender = sanitize_sender(sender)
        snippet = sanitize_snippet(snippet)

        permitted, reason = self._ai_permitted(user_id, CLASSIFY_TAG)
        if permitted:
            try:
                return self._classify_ai(subject, sender, snippet)
            except Exception as e:
                logger.warning(f"AI classification failed, using rules: {e}")
        else:
            logger.debug(f"Skipping AI classification: {reason}")

        return self.classify_rules(subject, sender, snippet)

    def _classify_ai(self, subject: str, sender: str, snippet: str) -> ClassificationResult:
        payload = self._call_ai(
            lambda: self.prompt_engine.render_classify(
                self.privacy_guard.sanitize(subject),
                self.privacy_guard.sender_domain(sender),
                self.privacy_guard.sanitize(snippet),
            )
        )
        if not isinstance(payload.get("category"), str):
            raise ClassificationError("model response has no category")

        result = validate_analysis(payload, source="ai")
        logger.info(f"AI classified '{subject[:50]}' as {result.category}")
        return result

    def classify_rules(self, subject: str, sender: str, snippet: str) -> ClassificationResult:
        category, rule = rules_engine.explain(subject, sender, snippet)
        logger.debug(f"Rules matched {category} by {rule}")

        result = rules_engine.classify(subject, sender, snippet)
        return validate_analysis(
            {
                "category": result.category,
                "summary": result.summary,
                "sentiment": result.sentiment,
                "suggestedLabel": result.suggested_label,
                "purpose": result.purpose,
            },
            source="rules",
        )

    def suggest_label_organization(
        self,
        user_id: str,
        labels: List[str],
        breakdown: List[Tuple[str, int]],
    ) -> Dict[str, List[Any]]:
        """
        Ask the AI backend for label organization suggestions.

        Disabled AI, a denied rate check, an open circuit or any AI failure
        yields the empty suggestion set. Never raises.
        """
        permitted, reason = self._ai_permitted(user_id, ORGANIZE_TAG)
        if not permitted:
            logger.info(f"Label organization skipped: {reason}")
            return empty_suggestions()

        try:
            return validate_suggestions(
                self._call_ai(lambda: self.prompt_engine.render_organize_labels(labels, breakdown))
            )
        except Exception as e:
            logger.warning(f"Label organization suggestions failed: {e}")
            return empty_suggestions()
