"""
API key check for endpoints that change coordinator state.

Submitting a transfer broadcasts a transaction, and tracking one starts a
monitoring task that lives until the transfer is terminal, so both are
guarded. Read-only endpoints (health, proofs, fee quotes, lookups) stay open.

With no API_TOKEN configured every request is let through; the key is only
read from the X-API-Key header.
"""

import secrets
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from .config import Settings, get_settings

logger = structlog.get_logger()

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _reject(request: Request, reason: str, detail: str) -> HTTPException:
    logger.warning(
        "api_key_rejected",
        reason=reason,
        method=request.method,
        path=request.url.path,
    )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "X-API-Key"},
    )


async def verify_api_token(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Raises:
        HTTPException: 401 if a token is configured and the header is
            missing or does not match
    """
    if not settings.api_token:
        return
    if not api_key:
        raise _reject(request, "missing", "API key required in X-API-Key header")
    if not secrets.compare_digest(api_key.encode(), settings.api_token.encode()):
        raise _reject(request, "mismatch", "Invalid API key")


# Attach to every route that submits or tracks transfers.
STATE_CHANGING = [Depends(verify_api_token)]
