"""
Operator authentication.

Provides:
- require_operator: FastAPI dependency guarding the operator endpoints.
"""
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

from billing_engine.core.config import settings

logger = logging.getLogger(__name__)


def require_operator(x_operator_key: Optional[str] = Header(None)) -> None:
    """
    Verify the X-Operator-Key header.

    Open when no operator key is configured (local development).

    Raises:
        HTTPException: 401 Unauthorized if the key is missing or wrong
    """
    expected = settings.operator_api_key
    if not expected:
        return

    if not x_operator_key or not secrets.compare_digest(x_operator_key, expected):
        logger.warning("Rejected operator request with missing or invalid key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Valid X-Operator-Key header required",
        )
