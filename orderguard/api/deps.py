"""
Shared route dependencies.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException

from orderguard.config import get_settings
from orderguard.exceptions import OrderGuardError

logger = logging.getLogger(__name__)


async def require_internal_token(
    x_internal_token: Optional[str] = Header(default=None),
) -> None:
    """Internal routes are called by trusted services holding INTERNAL_API_TOKEN."""
    expected = get_settings().internal_api_token
    if not expected:
        logger.error("INTERNAL_API_TOKEN not set - internal routes are disabled")
        raise HTTPException(status_code=503, detail="Internal API not configured")
    if not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        raise HTTPException(status_code=401, detail="Invalid internal token")


def to_http_error(error: OrderGuardError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)
