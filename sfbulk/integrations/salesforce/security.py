"""
Sanitizing helpers for data that crosses the Salesforce boundary.

SECURITY: Server error bodies can echo session ids or access tokens back.
They pass through sanitize_error_message before being attached to
exceptions or written to logs.
"""

import re

MAX_ERROR_MESSAGE_LENGTH = 500
TOKEN_PREFIX_LENGTH = 5

# Access tokens start with the 15 char org id followed by "!" and the secret
_TOKEN_PATTERN = re.compile(r"00[A-Za-z0-9]{13,}![A-Za-z0-9_.]+")
_SESSION_PATTERN = re.compile(r"sid=[A-Za-z0-9]{20,}")
_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def sanitize_error_message(message: str) -> str:
    """Redact tokens and session ids and truncate to a safe length."""
    sanitized = _TOKEN_PATTERN.sub("[REDACTED_TOKEN]", message)
    sanitized = _SESSION_PATTERN.sub("sid=[REDACTED]", sanitized)

    if len(sanitized) > MAX_ERROR_MESSAGE_LENGTH:
        sanitized = sanitized[:MAX_ERROR_MESSAGE_LENGTH] + "...[truncated]"

    return sanitized


def redact_token(token: str) -> str:
    """Show only a fixed, non-secret prefix of a bearer token."""
    if not token:
        return "[EMPTY]"
    return f"{token[:TOKEN_PREFIX_LENGTH]}...[REDACTED]"


def is_safe_sobject_name(name: str) -> bool:
    """
    Check that an sObject name is a plain API identifier.

    Custom objects (``Invoice__c``) and namespaced objects
    (``ns__Thing__c``) pass; anything with spaces, dots or quotes does not.
    """
    return bool(name) and bool(_IDENTIFIER_PATTERN.match(name))
