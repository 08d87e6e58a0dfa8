"""Redaction helpers applied to audit payloads."""

from __future__ import annotations

import re
from typing import Any, Final

SECRET_PATTERNS: tuple[tuple[str, str], ...] = (
    ("openai_api_key", r"sk-[A-Za-z0-9_-]{20,}"),
    ("github_token", r"gh[pousr]_[A-Za-z0-9]{20,}"),
    ("aws_access_key_id", r"AKIA[0-9A-Z]{16}"),
    ("private_key_block", r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"),
    ("bearer_token", r"(?i)bearer\s+[A-Za-z0-9._-]{16,}"),
)

SENSITIVE_KEYWORDS: Final[tuple[str, ...]] = (
    "token",
    "secret",
    "password",
    "api_key",
    "apikey",
    "private_key",
)

_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)(\b[A-Za-z0-9_.-]*(?:token|secret|api[_-]?key|password)[A-Za-z0-9_.-]*\b)"
    r"(\s*[:=]\s*)(\"[^\"]*\"|'[^']*'|[^\s,;]+)"
)
_URL_CREDENTIALS_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)(https?://[^:\s/]+:)[^@\s/]+@")


def is_probably_sensitive_key(key: str) -> bool:
    """Return whether a dictionary key likely holds secret material."""
    lowered = key.lower()
    return any(keyword in lowered for keyword in SENSITIVE_KEYWORDS)


def redact_sensitive_text(text: str) -> str:
    """Replace secret-like values with redaction placeholders."""
    redacted = text
    for label, pattern in SECRET_PATTERNS:
        redacted = re.sub(pattern, f"[REDACTED:{label}]", redacted)
    redacted = _ASSIGNMENT_PATTERN.sub(r"\1\2[REDACTED:value]", redacted)
    return _URL_CREDENTIALS_PATTERN.sub(r"\1[REDACTED:value]@", redacted)


def sanitize(value: Any) -> Any:
    """Recursively redact strings and sensitive keys in a JSON-like value."""
    if isinstance(value, str):
        return redact_sensitive_text(value)
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    if isinstance(value, dict):
        output: dict[str, Any] = {}
        for key, item in value.items():
            name = str(key)
            if is_probably_sensitive_key(name) and isinstance(item, str):
                output[name] = "[REDACTED:value]"
            else:
                output[name] = sanitize(item)
        return output
    return value
