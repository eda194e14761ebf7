"""Common schemas used across the application."""
from typing import Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Error body returned for every mapped W3HubError."""

    success: bool = False
    error: str
    detail: Optional[str] = None
