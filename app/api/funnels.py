"""
Funnel Endpoints.
CRUD, deployment, AI regeneration and resource assignment.
"""

import logging
import uuid
from datetime import date
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, http_error
from app.database import get_db
from app.errors import FunnelFlowError
from app.services.funnel_service import FunnelService
from app.services.user_context_service import AuthenticatedUser

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateFunnelRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    resource_ids: List[uuid.UUID] = []
    whop_product_id: Optional[str] = None


class UpdateFunnelRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    flow: Optional[Dict[str, Any]] = None
    resource_ids: Optional[List[uuid.UUID]] = None


class AssignResourcesRequest(BaseModel):
    resource_ids: List[uuid.UUID]


class TrackingLinkRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)
    block_id: str = Field(..., min_length=1)


@router.get("")
async def list_funnels(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await FunnelService(db).list_funnels(user, page=page, limit=limit, search=search)
        return {"status": "success", **result}
    except FunnelFlowError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Listing funnels failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("", status_code=201)
async def create_funnel(
    request: CreateFunnelRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        service = FunnelService(db)
        funnel = await service.create_funnel(
            user,
            name=request.name,
            description=request.description,
            resource_ids=request.resource_ids,
            whop_product_id=request.whop_product_id,
        )
        resources = await service.get_funnel_resources(funnel.id)
        return {"status": "success", "funnel": funnel.to_dict(resources)}
    except FunnelFlowError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Funnel creation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{funnel_id}")
async def get_funnel(
    funnel_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return {"status": "success", "funnel": await FunnelService(db).get_funnel(user, funnel_id)}
    except FunnelFlowError as e:
        raise http_error(e)


@router.patch("/{funnel_id}")
async def update_funnel(
    funnel_id: uuid.UUID,
    request: UpdateFunnelRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        service = FunnelService(db)
        funnel = await service.update_funnel(
            user,
            funnel_id,
            name=request.name,
            description=request.description,
            flow=request.flow,
            resource_ids=request.resource_ids,
        )
        resources = await service.get_funnel_resources(funnel.id)
        return {"status": "success", "funnel": funnel.to_dict(resources)}
    except FunnelFlowError as e:
        raise http_error(e)


@router.delete("/{funnel_id}")
async def delete_funnel(
    funnel_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        await FunnelService(db).delete_funnel(user, funnel_id)
        return {"status": "success"}
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("/{funnel_id}/deploy")
async def deploy_funnel(
    funnel_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        funnel = await FunnelService(db).deploy_funnel(user, funnel_id)
        return {"status": "success", "funnel": funnel.to_dict()}
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("/{funnel_id}/undeploy")
async def undeploy_funnel(
    funnel_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        funnel = await FunnelService(db).undeploy_funnel(user, funnel_id)
        return {"status": "success", "funnel": funnel.to_dict()}
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("/{funnel_id}/regenerate")
async def regenerate_funnel(
    funnel_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Generate a fresh flow with the AI. Costs one credit on success.
    """
    try:
        funnel = await FunnelService(db).regenerate_funnel_flow(user, funnel_id)
        return {"status": "success", "funnel": funnel.to_dict()}
    except FunnelFlowError as e:
        # Keep the "failed" generation status
        await db.commit()
        raise http_error(e)
    except Exception as e:
        await db.commit()
        logger.error(f"Funnel regeneration failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{funnel_id}/analytics")
async def funnel_analytics(
    funnel_id: uuid.UUID,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        stats = await FunnelService(db).get_funnel_analytics(user, funnel_id, start_date, end_date)
        return {"status": "success", **stats}
    except FunnelFlowError as e:
        raise http_error(e)


@router.get("/{funnel_id}/offers")
async def funnel_offers(
    funnel_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Offers reachable from every block."""
    try:
        offers = await FunnelService(db).get_available_offers(user, funnel_id)
        return {"status": "success", "offers": offers}
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("/{funnel_id}/tracking-links", status_code=201)
async def create_tracking_link(
    funnel_id: uuid.UUID,
    request: TrackingLinkRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Attribute sales on a Whop plan to one OFFER block."""
    try:
        link = await FunnelService(db).create_tracking_link(user, funnel_id, request.plan_id, request.block_id)
        return {"status": "success", "tracking_link": link}
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("/{funnel_id}/resources/{resource_id}")
async def add_resource(
    funnel_id: uuid.UUID,
    resource_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        await FunnelService(db).add_resource_to_funnel(user, funnel_id, resource_id)
        return {"status": "success"}
    except FunnelFlowError as e:
        raise http_error(e)
    except TimeoutError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.delete("/{funnel_id}/resources/{resource_id}")
async def remove_resource(
    funnel_id: uuid.UUID,
    resource_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        await FunnelService(db).remove_resource_from_funnel(user, funnel_id, resource_id)
        return {"status": "success"}
    except FunnelFlowError as e:
        raise http_error(e)


@router.put("/{funnel_id}/resources")
async def assign_resources(
    funnel_id: uuid.UUID,
    request: AssignResourcesRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        service = FunnelService(db)
        funnel = await service.assign_resources_to_funnel(user, funnel_id, request.resource_ids)
        resources = await service.get_funnel_resources(funnel.id)
        return {"status": "success", "funnel": funnel.to_dict(resources)}
    except FunnelFlowError as e:
        raise http_error(e)
