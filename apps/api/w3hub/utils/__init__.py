"""Utility functions package."""
from w3hub.utils.helpers import (
    format_amount,
    shorten,
    age_seconds,
)
from w3hub.utils.validators import (
    validate_chain_id,
    validate_admin_key,
)

__all__ = [
    "format_amount",
    "shorten",
    "age_seconds",
    "validate_chain_id",
    "validate_admin_key",
]
