"""
Resource Endpoints.
"""

import logging
import uuid
from typing import Optional, List

from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, http_error
from app.database import get_db
from app.errors import FunnelFlowError
from app.funnel.states import ResourceCategory, ResourceType
from app.services.resource_service import ResourceService
from app.services.user_context_service import AuthenticatedUser

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateResourceRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: ResourceType
    category: ResourceCategory
    link: str = Field(..., min_length=1)
    code: Optional[str] = None
    description: Optional[str] = None
    whop_product_id: Optional[str] = None


class UpdateResourceRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[ResourceType] = None
    category: Optional[ResourceCategory] = None
    link: Optional[str] = None
    code: Optional[str] = None
    description: Optional[str] = None
    whop_product_id: Optional[str] = None


class BulkDeleteRequest(BaseModel):
    resource_ids: List[uuid.UUID] = []


@router.get("")
async def list_resources(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    type: Optional[ResourceType] = None,
    category: Optional[ResourceCategory] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await ResourceService(db).list_resources(
            user, page=page, limit=limit, search=search, type=type, category=category,
        )
        return {"status": "success", **result}
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("", status_code=201)
async def create_resource(
    request: CreateResourceRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        resource = await ResourceService(db).create_resource(user, **request.model_dump())
        return {"status": "success", "resource": resource.to_dict()}
    except FunnelFlowError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Resource creation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/bulk-delete")
async def bulk_delete_resources(
    request: BulkDeleteRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await ResourceService(db).bulk_delete_resources(user, request.resource_ids)
        return {"status": "success", **result}
    except FunnelFlowError as e:
        raise http_error(e)


@router.get("/{resource_id}")
async def get_resource(
    resource_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return {"status": "success", "resource": await ResourceService(db).get_resource(user, resource_id)}
    except FunnelFlowError as e:
        raise http_error(e)


@router.patch("/{resource_id}")
async def update_resource(
    resource_id: uuid.UUID,
    request: UpdateResourceRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        resource = await ResourceService(db).update_resource(
            user, resource_id, **request.model_dump(exclude_none=True)
        )
        return {"status": "success", "resource": resource.to_dict()}
    except FunnelFlowError as e:
        raise http_error(e)


@router.delete("/{resource_id}")
async def delete_resource(
    resource_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        await ResourceService(db).delete_resource(user, resource_id)
        return {"status": "success"}
    except FunnelFlowError as e:
        raise http_error(e)
