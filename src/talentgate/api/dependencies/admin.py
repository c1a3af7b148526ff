"""Admin token check for the administrative routes."""

import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from talentgate.core.config import Settings, get_settings
from talentgate.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_TOKEN_HEADER = "X-Admin-Token"


async def require_admin(
    settings: Annotated[Settings, Depends(get_settings)],
    x_admin_token: Annotated[str | None, Header(alias=ADMIN_TOKEN_HEADER)] = None,
) -> None:
    """Reject requests without a matching admin token.

    Raises:
        HTTPException: 401 if the header is missing, 403 if it does not match
    """
    if not x_admin_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required",
        )
    if not secrets.compare_digest(x_admin_token, settings.admin_api_token):
        logger.warning("admin_token_rejected")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )
