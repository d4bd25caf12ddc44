"""Key conventions: the ALL sentinel and validation of real record keys."""

from .errors import InvalidKeyError
from .models import ALL


def is_all(value: str) -> bool:
    """True when value is the ALL sentinel."""
    return value == ALL


def require_owner(owner: str) -> str:
    """Return owner or raise InvalidKeyError when it is empty."""
    if not owner:
        raise InvalidKeyError("owner must be a non-empty principal id")
    return owner


def require_real_key(value: str, field: str) -> str:
    """
    Return value when it can identify a real record.

    Raises InvalidKeyError for an empty value or the ALL sentinel (reserved for
    bulk reads and deletes).
    """
    if not value:
        raise InvalidKeyError(f"{field} must be non-empty")
    if is_all(value):
        raise InvalidKeyError(f"{field}={ALL!r} is reserved and cannot be stored")
    return value


def require_lookup_key(value: str, field: str) -> str:
    """Return value (a real key or ALL) or raise InvalidKeyError when it is empty."""
    if not value:
        raise InvalidKeyError(f"{field} must be non-empty (use {ALL!r} for every record)")
    return value
