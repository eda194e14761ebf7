"""Helper utility functions."""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def format_amount(value: Any, signed: bool = False, max_decimals: int = 8) -> str:
    """
    Format an exact decimal amount for display.

    Args:
        value: Decimal, int or numeric string
        signed: Whether to include + sign for positive values
        max_decimals: Decimal places kept before trailing zeros are stripped

    Returns:
        Formatted amount string
    """
    if value is None:
        return "N/A"
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return str(value)

    text = f"{amount:,.{max_decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("-0", ""):
        text = "0"
    if signed and amount > 0:
        return f"+{text}"
    return text


def shorten(address: str, head: int = 6, tail: int = 4) -> str:
    """
    Shorten an address or hash for display, e.g. 0x1234...abcd.

    Args:
        address: Address or transaction hash
        head: Characters kept at the start
        tail: Characters kept at the end

    Returns:
        Shortened string
    """
    if not address:
        return ""
    if len(address) <= head + tail + 3:
        return address
    return f"{address[:head]}...{address[-tail:]}"


def age_seconds(dt: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds elapsed since ``dt`` (naive UTC)."""
    if dt is None:
        return None
    return ((now or datetime.utcnow()) - dt).total_seconds()
