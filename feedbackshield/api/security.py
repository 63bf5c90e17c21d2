"""
API token dependency.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from feedbackshield.config import settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name=settings.api_token_header, auto_error=False)


async def verify_api_token(
    request: Request,
    api_key: Optional[str] = Security(api_key_header),
):
    """
    Verify the API token from the configured header.

    With no token configured (dev mode) every request passes.
    """
    if not settings.api_token:
        if settings.is_production:
            logger.warning("API token not configured in production mode!")
        return None

    client_host = request.client.host if request.client else "unknown"
    if not api_key:
        logger.warning(f"Missing API key from {client_host}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing API key. Provide {settings.api_token_header} header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if api_key != settings.api_token:
        logger.warning(f"Invalid API key attempt from {client_host}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return api_key
