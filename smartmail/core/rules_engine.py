"""
Deterministic rule-based classification.

Fallback path for ClassificationEngine: pure, total, and fast. Category
precedence is sender domain, then subject keywords (finance also looks at
the snippet), then "Other".
"""

import re
from typing import Dict, Iterable, Optional, Tuple

from .models import CATEGORIES, DEFAULT_CATEGORY, ClassificationResult

# Sender domain suffix -> category
SENDER_DOMAINS: Dict[str, str] = {
    # Brokers and fund houses
    "zerodha.com": "Finance/Investments",
    "groww.in": "Finance/Investments",
    "vanguard.com": "Finance/Investments",
    "fidelity.com": "Finance/Investments",
    "robinhood.com": "Finance/Investments",
    "camsonline.com": "Finance/Investments",
    # Banks and card issuers
    "hdfcbank.net": "Finance/Banking",
    "icicibank.com": "Finance/Banking",
    "sbi.co.in": "Finance/Banking",
    "chase.com": "Finance/Banking",
    "bankofamerica.com": "Finance/Banking",
    "americanexpress.com": "Finance/Banking",
    # Payment processors
    "paypal.com": "Finance/E-commerce",
    "stripe.com": "Finance/E-commerce",
    "razorpay.com": "Finance/E-commerce",
    # Utilities and subscriptions billing
    "billing.microsoft.com": "Finance/Billing",
    "airtel.in": "Finance/Billing",
    "verizon.com": "Finance/Billing",
    # Retail
    "amazon.com": "Shopping",
    "amazon.in": "Shopping",
    "flipkart.com": "Shopping",
    "ebay.com": "Shopping",
    "etsy.com": "Shopping",
    # Marketing platforms
    "mailchimp.com": "Promotions",
    "mailchimpapp.net": "Promotions",
    "sendgrid.net": "Promotions",
    "hubspotemail.net": "Promotions",
    # Work tools
    "slack.com": "Work",
    "atlassian.net": "Work",
    "github.com": "Work",
    "zoom.us": "Work",
}

FINANCE_KEYWORDS = (
    "invoice", "payment", "bill", "transaction", "amount", "due",
    "statement", "credit card", "bank", "account",
)
INVESTMENT_KEYWORDS = (
    "sip", "mutual fund", "stock", "portfolio", "investment", "trading", "demat",
)
BILLING_KEYWORDS = ("invoice", "bill", "due", "subscription", "renewal")
WORK_KEYWORDS = (
    "meeting", "project", "deadline", "report", "presentation", "office", "work",
)
PERSONAL_KEYWORDS = ("family", "friend", "personal", "weekend", "trip", "vacation")
SHOPPING_KEYWORDS = ("order", "delivery", "purchase", "buy", "shop", "cart", "shipment")
PROMOTION_KEYWORDS = (
    "sale", "% off", "discount", "offer", "deal", "coupon", "newsletter", "unsubscribe",
)

POSITIVE_WORDS = ("congratulations", "thank you", "great", "excellent", "success", "approved")
NEGATIVE_WORDS = ("urgent", "overdue", "failed", "error", "problem", "issue", "cancelled")

PURPOSES: Dict[str, str] = {
    "Finance/Investments": "Investment notification",
    "Finance/Banking": "Financial transaction",
    "Finance/E-commerce": "Payment confirmation",
    "Finance/Billing": "Bill or invoice",
    "Finance/General": "Financial information",
    "Work": "Work related",
    "Shopping": "Shopping related",
    "Personal": "Personal communication",
    "Promotions": "Marketing or promotion",
    "Other": "General communication",
}

SUMMARY_MAX_LENGTH = 100

_DOMAIN_RE = re.compile(r"@([a-zA-Z0-9.-]+)")


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    # Word-boundary match so "sip" does not fire on "gossip"
    return any(re.search(r"(?<![a-z])" + re.escape(k) + r"(?![a-z])", text) for k in keywords)


def sender_domain(sender: str) -> Optional[str]:
    match = _DOMAIN_RE.search(sender or "")
    return match.group(1).lower().rstrip(".") if match else None


def match_sender_domain(sender: str) -> Optional[str]:
    """Category for the sender's domain or any parent domain, if listed."""
    domain = sender_domain(sender)
    if not domain:
        return None
    parts = domain.split(".")
    for i in range(len(parts) - 1):
        category = SENDER_DOMAINS.get(".".join(parts[i:]))
        if category:
            return category
    return None


def match_keywords(subject: str, snippet: str) -> str:
    """Keyword category, in fixed precedence order."""
    subject_lower = (subject or "").lower()
    snippet_lower = (snippet or "").lower()

    if _contains_any(subject_lower, FINANCE_KEYWORDS) or _contains_any(snippet_lower, FINANCE_KEYWORDS):
        if _contains_any(subject_lower, INVESTMENT_KEYWORDS):
            return "Finance/Investments"
        if _contains_any(subject_lower, BILLING_KEYWORDS):
            return "Finance/Billing"
        return "Finance/Banking"
    if _contains_any(subject_lower, WORK_KEYWORDS):
        return "Work"
    if _contains_any(subject_lower, PERSONAL_KEYWORDS):
        return "Personal"
    if _contains_any(subject_lower, SHOPPING_KEYWORDS):
        return "Shopping"
    if _contains_any(subject_lower, PROMOTION_KEYWORDS):
        return "Promotions"
    return DEFAULT_CATEGORY


def detect_sentiment(subject: str) -> str:
    subject_lower = (subject or "").lower()
    if _contains_any(subject_lower, POSITIVE_WORDS):
        return "positive"
    if _contains_any(subject_lower, NEGATIVE_WORDS):
        return "negative"
    return "neutral"


def label_for_category(category: str) -> str:
    """Leaf segment of the category; "Other" maps to "General"."""
    if category == DEFAULT_CATEGORY or category not in CATEGORIES:
        return "General"
    return category.rsplit("/", 1)[-1].replace("-", "")


def summarize(subject: str) -> str:
    subject = (subject or "").strip()
    if not subject:
        return "No summary available"
    if len(subject) > SUMMARY_MAX_LENGTH:
        return subject[: SUMMARY_MAX_LENGTH - 3] + "..."
    return subject


def classify(subject: str, sender: str, snippet: str) -> ClassificationResult:
    """
    Classify with lookup tables only. Never raises for str inputs.

    Returns:
        ClassificationResult with source="rules"
    """
    category = match_sender_domain(sender) or match_keywords(subject, snippet)
    return ClassificationResult(
        category=category,
        summary=summarize(subject),
        sentiment=detect_sentiment(subject),
        suggested_label=label_for_category(category),
        purpose=PURPOSES.get(category, PURPOSES[DEFAULT_CATEGORY]),
        source="rules",
    )


def explain(subject: str, sender: str, snippet: str) -> Tuple[str, str]:
    """(category, rule) pair showing which table decided, for debugging."""
    by_domain = match_sender_domain(sender)
    if by_domain:
        return by_domain, f"sender domain {sender_domain(sender)}"
    category = match_keywords(subject, snippet)
    if category == DEFAULT_CATEGORY:
        return category, "default"
    return category, "keyword"
