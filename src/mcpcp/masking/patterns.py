"""
Built-in PII patterns.

Patterns are immutable and matching is functional: ``find_matches`` returns
spans and never mutates the pattern, so one pattern object can be shared by
any number of concurrent masking passes.

List order is the masking priority order. High-confidence, type-specific
patterns run first; later patterns see the text with earlier matches already
replaced by placeholders, so the same substring is never masked twice.
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Iterable, Optional

CONFIDENCE_RANK = {"low": 1, "medium": 2, "high": 3}

# Placeholder labels per category, used for `[EMAIL_1]`-style tokens.
CATEGORY_LABELS = {
    "email": "EMAIL",
    "ssn": "SSN",
    "phone": "PHONE",
    "credit_card": "CREDIT_CARD",
    "ip_address": "IP",
    "date_of_birth": "DOB",
    "passport": "PASSPORT",
    "driver_license": "DL",
}
LABEL_CATEGORIES = {label: category for category, label in CATEGORY_LABELS.items()}


@dataclass(frozen=True)
class PIIPattern:
    category: str
    regex: re.Pattern
    replacement: str
    confidence: str
    name: Optional[str] = None

    @property
    def label(self) -> str:
        if self.category in CATEGORY_LABELS:
            return CATEGORY_LABELS[self.category]
        token = self.replacement.strip("[]").removesuffix("_REDACTED")
        token = re.sub(r"[^A-Za-z0-9]+", "_", token).strip("_").upper()
        return token or (self.name or "CUSTOM").upper()


_DATE = (
    r"(?:(?:0?[1-9]|1[0-2])[-/](?:0?[1-9]|[12][0-9]|3[01])[-/](?:19|20)\d{2}"
    r"|(?:19|20)\d{2}[-/](?:0?[1-9]|1[0-2])[-/](?:0?[1-9]|[12][0-9]|3[01]))"
)
_DOB_KEYWORD = r"(?:DOB|birth(?:\s*date|day)?|bday|born(?:\s+on)?|d\.?o\.?b\.?)"

BUILTIN_PATTERNS: tuple[PIIPattern, ...] = (
    # high
    PIIPattern(
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[EMAIL_REDACTED]",
        "high",
    ),
    # Visa
    PIIPattern("credit_card", re.compile(r"\b4[0-9]{12}(?:[0-9]{3})?\b"), "[CREDIT_CARD_REDACTED]", "high"),
    # Mastercard
    PIIPattern("credit_card", re.compile(r"\b5[1-5][0-9]{14}\b"), "[CREDIT_CARD_REDACTED]", "high"),
    # Amex
    PIIPattern("credit_card", re.compile(r"\b3[47][0-9]{13}\b"), "[CREDIT_CARD_REDACTED]", "high"),
    # Discover
    PIIPattern("credit_card", re.compile(r"\b6(?:011|5[0-9]{2})[0-9]{12}\b"), "[CREDIT_CARD_REDACTED]", "high"),
    PIIPattern(
        "ip_address",
        re.compile(
            r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
            r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
        ),
        "[IP_REDACTED]",
        "high",
    ),
    PIIPattern(
        "ip_address",
        re.compile(r"\b(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}\b"),
        "[IP_REDACTED]",
        "high",
    ),
    # keyword before the date: only the `value` group is masked
    PIIPattern(
        "date_of_birth",
        re.compile(rf"\b{_DOB_KEYWORD}\s*[:\-\s]*(?P<value>\b{_DATE})\b", re.IGNORECASE),
        "[DOB_REDACTED]",
        "high",
    ),
    # keyword after the date, e.g. "01/15/1990 (birth date)"
    PIIPattern(
        "date_of_birth",
        re.compile(
            rf"\b{_DATE}\b(?=\s*[,(\-]?\s*\(?(?:DOB|birth(?:day)?|bday|d\.?o\.?b\.?)\b)",
            re.IGNORECASE,
        ),
        "[DOB_REDACTED]",
        "high",
    ),
    # medium
    PIIPattern("credit_card", re.compile(r"\b(?:\d{4}[-\s]){3}\d{4}\b"), "[CREDIT_CARD_REDACTED]", "medium"),
    PIIPattern("ssn", re.compile(r"\b\d{3}[-.\s]?\d{2}[-.\s]?\d{4}\b"), "[SSN_REDACTED]", "medium"),
    PIIPattern(
        "phone",
        re.compile(r"\b(?:\+?1[-.\s]?)?(?:\(?[0-9]{3}\)?[-.\s]?)?[0-9]{3}[-.\s]?[0-9]{4}\b"),
        "[PHONE_REDACTED]",
        "medium",
    ),
    # low
    PIIPattern("passport", re.compile(r"\b[A-Z][0-9]{8}\b"), "[PASSPORT_REDACTED]", "low"),
    PIIPattern("driver_license", re.compile(r"\b[A-Z]{1,2}[0-9]{5,8}\b"), "[DL_REDACTED]", "low"),
)


def get_patterns_for_types(pii_types: Iterable[str]) -> list[PIIPattern]:
    """Built-in patterns for the given categories, in priority order."""
    wanted = set(pii_types)
    return [p for p in BUILTIN_PATTERNS if p.category in wanted]


def create_custom_pattern(name: str, regex: str, replacement: str) -> PIIPattern:
    """User-defined patterns are trusted: category ``custom``, confidence ``high``."""
    return PIIPattern(
        category="custom",
        regex=re.compile(regex),
        replacement=replacement,
        confidence="high",
        name=name,
    )


def clone_pattern(pattern: PIIPattern) -> PIIPattern:
    """Independent copy with a freshly compiled matcher."""
    return PIIPattern(
        category=pattern.category,
        regex=re.compile(pattern.regex.pattern, pattern.regex.flags),
        replacement=pattern.replacement,
        confidence=pattern.confidence,
        name=pattern.name,
    )


def find_matches(pattern: PIIPattern, text: str) -> list[tuple[int, int, str]]:
    """
    Non-overlapping ``(start, end, value)`` spans of ``pattern`` in ``text``.

    Patterns with a ``value`` group report only that group, which lets the
    keyword-anchored date pattern match the keyword without masking it.
    """
    use_group = "value" in pattern.regex.groupindex
    spans = []
    for match in pattern.regex.finditer(text):
        if use_group:
            start, end = match.span("value")
        else:
            start, end = match.span()
        if end > start:
            spans.append((start, end, text[start:end]))
    return spans


def confidence_rank(confidence: Optional[str]) -> int:
    return CONFIDENCE_RANK.get(confidence, 0) if confidence else 0
