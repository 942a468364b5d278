"""
Error Formatter
Normalizes store errors into short, redacted strings before they are logged
"""

import json
import re
from typing import Any, Optional

TRUNCATION_SUFFIX = "... (truncated)"

_REDACTIONS = [
    # Email addresses
    (re.compile(r"[a-zA-Z0-9._-]+@[a-zA-Z0-9._-]+\.[a-zA-Z0-9_-]+"), "[EMAIL_REDACTED]"),
    # Google service account credentials (before the generic key pattern eats them)
    (re.compile(r'"private_key":\s*"[^"]+"', re.IGNORECASE), '"private_key": "[REDACTED]"'),
    (re.compile(r'"client_email":\s*"[^"]+"', re.IGNORECASE), '"client_email": "[REDACTED]"'),
    # Bearer tokens
    (re.compile(r"Bearer\s+[^\s\"',}]+", re.IGNORECASE), "Bearer [REDACTED]"),
    # API keys, tokens, secrets, passwords
    (re.compile(r"(api[_-]?key|token|secret|password)[\"\s:=]+([^\s\"',}]+)", re.IGNORECASE), r"\1=[REDACTED]"),
]


def sanitize_error(text: str) -> str:
    """Remove email addresses and credentials from an error string."""
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def format_error(error: Any, max_length: int = 1000) -> Optional[str]:
    """
    Format an error reported by a caller for storage.

    Args:
        error: Exception, string, mapping/list (API error payloads) or anything else
        max_length: Maximum length of the stored text

    Returns:
        Redacted string, or None when there is no error
    """
    if error is None or error == "" or error is False:
        return None

    if isinstance(error, BaseException):
        formatted = f"{type(error).__name__}: {error}"
    elif isinstance(error, str):
        formatted = error
    elif isinstance(error, (dict, list, tuple)):
        formatted = json.dumps(error, indent=2, default=str, sort_keys=True)
    else:
        formatted = str(error)

    formatted = sanitize_error(formatted)

    if len(formatted) > max_length:
        formatted = formatted[:max_length] + TRUNCATION_SUFFIX

    return formatted
