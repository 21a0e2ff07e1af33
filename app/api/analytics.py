"""
Analytics Endpoints.
"""

import logging
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, http_error
from app.database import get_db
from app.errors import FunnelFlowError
from app.services.analytics_service import AnalyticsService
from app.services.user_context_service import AuthenticatedUser

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
async def basic_analytics(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    metrics = await AnalyticsService(db).get_basic_analytics(user, start_date, end_date)
    return {"status": "success", **metrics}


@router.get("/funnels/{funnel_id}")
async def funnel_metrics(
    funnel_id: uuid.UUID,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        metrics = await AnalyticsService(db).get_funnel_basic_metrics(user, funnel_id, start_date, end_date)
        return {"status": "success", **metrics}
    except FunnelFlowError as e:
        raise http_error(e)
