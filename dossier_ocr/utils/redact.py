"""Scrub personal data from diagnostic payloads before they leave the process.

Dossiers carry names, birth dates, addresses and bank details. Anything that
ends up in a log record or a client-facing ``log`` event goes through here.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

DEFAULT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE),  # email
    re.compile(r"\b[A-Z]{2}\d{2}(?:\s?[A-Z0-9]{4}){3,7}\b"),  # IBAN
    re.compile(r"\b\d{1,2}\.\d{1,2}\.(?:19|20)\d{2}\b"),  # dd.mm.yyyy dates
    re.compile(r"(?<!\w)\+?\d[\d\s/-]{7,}\d\b"),  # phone / long numeric ids
)

REDACTION_TOKEN = "[REDACTED]"


def redact_text(
    value: str,
    *,
    patterns: Iterable[re.Pattern[str]] | None = None,
    replacement: str = REDACTION_TOKEN,
) -> str:
    compiled = tuple(patterns or DEFAULT_PATTERNS)
    scrubbed = value
    for pattern in compiled:
        scrubbed = pattern.sub(replacement, scrubbed)
    return scrubbed


def redact_mapping(
    payload: Mapping[str, Any],
    *,
    patterns: Iterable[re.Pattern[str]] | None = None,
    replacement: str = REDACTION_TOKEN,
) -> dict[str, Any]:
    """Recursively redact string values; keys and non-string scalars are kept."""
    compiled = tuple(patterns or DEFAULT_PATTERNS)
    return {key: _redact_value(value, compiled, replacement) for key, value in payload.items()}


def _redact_value(value: Any, patterns: tuple[re.Pattern[str], ...], replacement: str) -> Any:
    if isinstance(value, str):
        return redact_text(value, patterns=patterns, replacement=replacement)
    if isinstance(value, Mapping):
        return {k: _redact_value(v, patterns, replacement) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, patterns, replacement) for item in value]
    return value


__all__ = ["redact_text", "redact_mapping", "REDACTION_TOKEN"]
