"""Input validation utilities."""
import re

from fastapi import HTTPException, status


CHAIN_ID_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_-]{0,49}$')


def validate_chain_id(chain: str) -> str:
    """
    Validate and normalize a chain identifier.

    Args:
        chain: Chain id such as "ethereum" or "base"

    Returns:
        Normalized (lowercase) chain id

    Raises:
        ValueError: If the chain id is malformed
    """
    normalized = (chain or "").strip().lower()
    if not CHAIN_ID_PATTERN.match(normalized):
        raise ValueError(f"Invalid chain id '{chain}'")
    return normalized


def validate_admin_key(api_key: str, expected_key: str) -> bool:
    """
    Validate admin API key.

    Args:
        api_key: Provided API key
        expected_key: Expected API key

    Returns:
        True if valid

    Raises:
        HTTPException: If key is invalid or no key is configured
    """
    if not expected_key or not api_key or api_key != expected_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing admin API key"
        )
    return True
