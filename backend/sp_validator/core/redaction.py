"""
Redaction utilities for logging.

Ensures tested credentials are NEVER logged in clear text.

CRITICAL: This module is security-sensitive. Changes require careful review.
"""
import re
from typing import Any, Dict, List, Set

REDACTED = "[REDACTED]"

# Keys in JSON payloads that should be redacted
SENSITIVE_KEYS: Set[str] = {
    "password",
    "secret",
    "client_secret",
    "tenant_id",
    "client_id",
    "token",
    "access_token",
    "refresh_token",
    "api_key",
    "apikey",
    "x_api_key",
    "credentials",
    "authorization",
    "cookie",
    "encryption_key",
    "master_key",
}

# Fragments that mark a key as sensitive wherever they appear in the key name
SENSITIVE_FRAGMENTS = ("password", "secret", "token", "api_key", "auth", "credential")

# Patterns for sensitive data in strings
SENSITIVE_PATTERNS = [
    # JWT tokens
    (re.compile(r'eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+'), '[REDACTED_JWT]'),
    # Bearer tokens in strings
    (re.compile(r'Bearer\s+[A-Za-z0-9_\-\.~+/=]+', re.IGNORECASE), 'Bearer [REDACTED]'),
    # Basic auth
    (re.compile(r'Basic\s+[A-Za-z0-9+/=]+', re.IGNORECASE), 'Basic [REDACTED]'),
    # Secrets passed as query parameters (fallback webhook transport)
    (re.compile(r'(client_secret=)[^&\s]+', re.IGNORECASE), r'\1[REDACTED]'),
]


def redact_string(value: str) -> str:
    """
    Redact sensitive patterns from a string.

    Args:
        value: String to redact

    Returns:
        Redacted string
    """
    if not value:
        return value

    result = value
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def is_sensitive_key(key: str) -> bool:
    """
    Check if a key name indicates sensitive data.

    Args:
        key: Key name to check

    Returns:
        True if the key is sensitive
    """
    key_lower = str(key).lower().replace('-', '_')
    return key_lower in SENSITIVE_KEYS or any(fragment in key_lower for fragment in SENSITIVE_FRAGMENTS)


def redact_dict(data: Dict[str, Any], max_depth: int = 5) -> Dict[str, Any]:
    """
    Recursively redact sensitive values from a dictionary.

    Args:
        data: Dictionary to redact
        max_depth: Maximum recursion depth (prevent infinite loops)

    Returns:
        Redacted copy of the dictionary
    """
    if max_depth <= 0:
        return {"_truncated": "max_depth_exceeded"}

    result = {}
    for key, value in data.items():
        if is_sensitive_key(key):
            result[key] = REDACTED
        elif isinstance(value, dict):
            result[key] = redact_dict(value, max_depth - 1)
        elif isinstance(value, list):
            result[key] = redact_list(value, max_depth - 1)
        elif isinstance(value, str):
            result[key] = redact_string(value)
        else:
            result[key] = value
    return result


def redact_list(data: List[Any], max_depth: int = 5) -> List[Any]:
    """
    Recursively redact sensitive values from a list.

    Args:
        data: List to redact
        max_depth: Maximum recursion depth

    Returns:
        Redacted copy of the list
    """
    if max_depth <= 0:
        return ["_truncated"]

    result = []
    for item in data:
        if isinstance(item, dict):
            result.append(redact_dict(item, max_depth - 1))
        elif isinstance(item, list):
            result.append(redact_list(item, max_depth - 1))
        elif isinstance(item, str):
            result.append(redact_string(item))
        else:
            result.append(item)
    return result


def redact_sensitive_data(data: Any) -> Any:
    """
    Main entry point for redacting sensitive data.

    Handles dictionaries, lists, and strings.

    Args:
        data: Data to redact (dict, list, str, or other)

    Returns:
        Redacted copy of the data
    """
    if data is None:
        return None

    if isinstance(data, dict):
        return redact_dict(data)
    elif isinstance(data, list):
        return redact_list(data)
    elif isinstance(data, str):
        return redact_string(data)
    else:
        return data


def mask_identifier(value: str, visible: int = 4) -> str:
    """Show only the trailing characters of an identifier (e.g. a client id) for log correlation."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return f"{'*' * 4}{value[-visible:]}"
