"""
Endpoint Dependencies

Shared dependencies for billing API endpoints.
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request

from energy_backend.src.billing.container import BillingServices

logger = logging.getLogger(__name__)


def get_billing_services(request: Request) -> BillingServices:
    """Services built at app registration time."""
    return request.app.state.billing


async def get_current_user_id(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    services: BillingServices = Depends(get_billing_services)
) -> str:
    """
    Extract and verify user ID from the hosted store's JWT.

    This is a dependency that can be overridden in tests.
    """
    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization header"
        )

    token = authorization
    if authorization.startswith("Bearer "):
        token = authorization[7:]

    settings = services.settings
    try:
        decoded = jwt.decode(
            token,
            settings.TOKEN_SECRET_KEY,
            algorithms=[settings.TOKEN_ALGORITHM],
            options={"verify_aud": False}
        )
    except jwt.InvalidTokenError as e:
        logger.warning(f"[AUTH] Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = decoded.get('sub') or decoded.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    return str(user_id)
