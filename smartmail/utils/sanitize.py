"""
Input sanitization utilities for SmartMail.

Protects the classification prompt against injection and bounds the size
of provider-supplied text, and normalizes label names before they reach
the mail provider.
"""

import re
import logging
import unicodedata

logger = logging.getLogger(__name__)

# Maximum lengths to prevent resource exhaustion
MAX_SUBJECT_LENGTH = 500
MAX_SNIPPET_LENGTH = 1000
MAX_SENDER_LENGTH = 200
MAX_LABEL_LENGTH = 30

DEFAULT_LABEL = "General"

# Patterns that could be used for prompt injection
INJECTION_PATTERNS = [
    # Instruction override attempts
    r'(?i)ignore\s+(previous|all|above)\s+(instructions?|prompts?)',
    r'(?i)disregard\s+(previous|all|above)',
    r'(?i)forget\s+(everything|all|previous)',
    r'(?i)new\s+instructions?:',
    r'(?i)system\s*:\s*',
    r'(?i)assistant\s*:\s*',
    # Role manipulation
    r'(?i)you\s+are\s+now',
    r'(?i)pretend\s+(to\s+be|you\s+are)',
    # Delimiter injection
    r'```system',
    r'<\|im_start\|>',
    r'<\|im_end\|>',
    r'\[INST\]',
    r'\[/INST\]',
]

_compiled_patterns = [re.compile(p) for p in INJECTION_PATTERNS]

# Labels keep alphanumerics, spaces and the hierarchy separator only
_LABEL_DISALLOWED = re.compile(r'[^a-zA-Z0-9\s/]')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')


def sanitize_text(text, max_length: int = MAX_SNIPPET_LENGTH) -> str:
    """
    Sanitize text input for safe LLM processing.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    if not isinstance(text, str):
        text = str(text)

    # Remove null bytes and control characters (except newlines and tabs)
    text = _CONTROL_CHARS.sub('', text)

    # Normalize unicode to prevent homograph attacks
    text = unicodedata.normalize('NFKC', text)

    if len(text) > max_length:
        text = text[:max_length] + "..."
        logger.debug(f"Text truncated to {max_length} characters")

    injection_found = False
    for pattern in _compiled_patterns:
        if pattern.search(text):
            injection_found = True
            text = pattern.sub('[FILTERED]', text)

    if injection_found:
        logger.warning("Potential prompt injection detected and neutralized")

    return text


def sanitize_subject(subject) -> str:
    """Sanitize email subject line."""
    return sanitize_text(subject, MAX_SUBJECT_LENGTH)


def sanitize_snippet(snippet) -> str:
    """Sanitize message snippet."""
    return sanitize_text(snippet, MAX_SNIPPET_LENGTH)


def sanitize_sender(sender) -> str:
    """Email addresses only get control-character stripping and a length cap."""
    if not sender:
        return ""
    return _CONTROL_CHARS.sub('', str(sender))[:MAX_SENDER_LENGTH]


def sanitize_label(name, max_length: int = MAX_LABEL_LENGTH) -> str:
    """
    Normalize a suggested label name.

    Keeps alphanumerics, whitespace and '/', trims, caps the length and
    falls back to DEFAULT_LABEL when nothing survives.

    Args:
        name: Raw label name (may be any type)
        max_length: Length cap

    Returns:
        A label name that satisfies the allowed character set
    """
    if not isinstance(name, str):
        name = "" if name is None else str(name)

    name = _LABEL_DISALLOWED.sub('', name).strip()[:max_length].strip()
    # Collapse runs of whitespace left over from removed characters
    name = re.sub(r'\s+', ' ', name)

    return name or DEFAULT_LABEL


def is_valid_label(name: str, max_length: int = MAX_LABEL_LENGTH) -> bool:
    """Check a label name against the allowed character set and length cap."""
    if not name or len(name) > max_length:
        return False
    return _LABEL_DISALLOWED.search(name) is None
