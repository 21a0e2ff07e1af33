"""
Request dependencies: caller identity and admin key checks.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.errors import FunnelFlowError
from app.funnel.states import AccessLevel
from app.services.user_context_service import AuthenticatedUser, UserContextService

logger = logging.getLogger(__name__)


async def get_current_user(
    x_whop_user_id: Optional[str] = Header(None, alias="X-Whop-User-Id"),
    x_whop_experience_id: Optional[str] = Header(None, alias="X-Whop-Experience-Id"),
    x_whop_company_id: Optional[str] = Header(None, alias="X-Whop-Company-Id"),
    x_whop_access_level: Optional[str] = Header(None, alias="X-Whop-Access-Level"),
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedUser:
    """
    Resolve the Whop identity headers forwarded by the iframe proxy.
    """
    if not x_whop_user_id or not x_whop_experience_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Whop identity headers",
        )

    access_level = x_whop_access_level
    if access_level and access_level not in {a.value for a in AccessLevel}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid access level")

    user = await UserContextService(db).get_user_context(
        whop_user_id=x_whop_user_id,
        whop_experience_id=x_whop_experience_id,
        whop_company_id=x_whop_company_id or "",
        access_level=access_level,
    )
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    if not user.has_access:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return user


async def get_admin_user(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> str:
    """
    Validate the Admin Key header.
    Returns the key if valid, raises 401 otherwise.
    """
    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Admin Key",
        )

    if not settings.admin_api_key or x_admin_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Admin Key",
        )

    return x_admin_key


def http_error(exc: FunnelFlowError) -> HTTPException:
    """Translate a domain error into an HTTPException."""
    return HTTPException(status_code=exc.status_code, detail=exc.message)
