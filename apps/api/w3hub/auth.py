"""Admin authorization for tracking management endpoints."""
import logging
from typing import Optional

from fastapi import Depends, Header

from w3hub.config import Settings, get_settings
from w3hub.utils.validators import validate_admin_key

logger = logging.getLogger(__name__)


async def require_admin(
    x_admin_key: Optional[str] = Header(default=None, description="Admin API key"),
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Require the ``X-Admin-Key`` header to match ``ADMIN_API_KEY``.

    With no key configured every admin request is rejected.
    """
    if not settings.admin_api_key:
        logger.warning("Admin endpoint called but ADMIN_API_KEY is not configured")
    return validate_admin_key(x_admin_key, settings.admin_api_key)
