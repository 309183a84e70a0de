"""
Operator authentication for the Verdict API.

Mutating resolution endpoints accept the operator credential either as a
Bearer token or in the X-Resolution-Key header (what cron jobs send).
Used as a FastAPI dependency on all protected routes.
"""

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import structlog

from verdict.infrastructure.config import get_settings
from verdict.infrastructure.exceptions import NotConfiguredError

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def _get_operator_key() -> str:
    """Get the operator credential from settings."""
    return get_settings().resolution_key or ""


def _check_key(candidate: str) -> bool:
    expected = _get_operator_key()
    if not expected or not candidate:
        return False
    return secrets.compare_digest(candidate.encode(), expected.encode())


async def require_operator(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    x_resolution_key: Optional[str] = Header(default=None),
) -> str:
    """
    FastAPI dependency that enforces the operator credential.

    Usage:
        @router.post("/run")
        async def run(_: str = Depends(require_operator)):
            ...
    """
    if not _get_operator_key():
        raise NotConfiguredError("VERDICT_RESOLUTION_KEY")

    candidate = x_resolution_key or (credentials.credentials if credentials else None)

    if not candidate:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing operator credential",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not _check_key(candidate):
        logger.warning("auth_rejected", path=request.url.path, method=request.method)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid operator credential",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return candidate
