"""Input validation helpers for identifiers and guest data."""
from __future__ import annotations
import uuid

from crossadmin.core.azure.exceptions import ConfigurationError


def is_guid(value: object) -> bool:
    """Return True if ``value`` parses as a GUID."""
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


def require_guid(value: object, label: str) -> str:
    """Validate a platform object id.

    Args:
        value: Candidate id
        label: Description for error messages (e.g., "access package id")

    Returns:
        The id as a string

    Raises:
        ConfigurationError: If the id is missing or not a GUID
    """
    if not value or not is_guid(value):
        raise ConfigurationError(f"Invalid {label}: {value!r} is not a GUID")
    return str(value)


def validate_email(email: str) -> str:
    """Validate a guest email address.

    Args:
        email: Email address to validate

    Returns:
        Trimmed email address (case preserved; lookups are case-insensitive)

    Raises:
        ValueError: If email is invalid
    """
    email = (email or "").strip()
    if not email or "@" not in email:
        raise ValueError("Invalid email format")

    local, domain = email.rsplit("@", 1)
    if not local or not domain or "." not in domain:
        raise ValueError("Invalid email format")
    if len(email) > 254:
        raise ValueError("Email exceeds maximum length")
    if any(char.isspace() for char in email):
        raise ValueError("Email must not contain whitespace")

    return email


def validate_display_name(name: str, field: str = "displayName") -> str:
    """Validate a guest display name.

    Raises:
        ValueError: If name is empty or too long
    """
    name = (name or "").strip()
    if not name:
        raise ValueError(f"{field} is required")
    if len(name) > 256:
        raise ValueError(f"{field} exceeds maximum length")
    return name
