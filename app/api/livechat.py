"""
Live Chat Endpoints.
Owner inbox over funnel conversations.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, http_error
from app.database import get_db
from app.errors import FunnelFlowError
from app.services.livechat_service import LiveChatService
from app.services.user_context_service import AuthenticatedUser

router = APIRouter()
logger = logging.getLogger(__name__)


class OwnerMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)


class ManageConversationRequest(BaseModel):
    status: Optional[str] = None
    notes: Optional[str] = None
    archive: Optional[bool] = None
    assign_to: Optional[str] = None


@router.get("/conversations")
async def list_conversations(
    status: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await LiveChatService(db).get_conversation_list(
            user, status=status, search=search, sort_by=sort_by, page=page, limit=limit,
        )
        return {"status": "success", **result}
    except FunnelFlowError as e:
        raise http_error(e)


@router.get("/unread")
async def unread_counts(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"status": "success", **(await LiveChatService(db).get_unread_counts(user))}


@router.get("/conversations/{conversation_id}")
async def conversation_details(
    conversation_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        details = await LiveChatService(db).get_conversation_details(user, conversation_id)
        return {"status": "success", "conversation": details}
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("/conversations/{conversation_id}/messages")
async def send_owner_message(
    conversation_id: uuid.UUID,
    request: OwnerMessageRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        message = await LiveChatService(db).send_owner_message(user, conversation_id, request.content)
        return {"status": "success", "message": message.to_dict()}
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("/conversations/{conversation_id}/read")
async def mark_as_read(
    conversation_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        await LiveChatService(db).mark_as_read(user, conversation_id)
        return {"status": "success"}
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("/conversations/{conversation_id}/resolve")
async def resolve_conversation(
    conversation_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        conversation = await LiveChatService(db).resolve_conversation(user, conversation_id)
        return {"status": "success", "controlled_by": conversation.controlled_by}
    except FunnelFlowError as e:
        raise http_error(e)


@router.patch("/conversations/{conversation_id}")
async def manage_conversation(
    conversation_id: uuid.UUID,
    request: ManageConversationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        conversation = await LiveChatService(db).manage_conversation(
            user,
            conversation_id,
            status=request.status,
            notes=request.notes,
            archive=request.archive,
            assign_to=request.assign_to,
        )
        return {
            "status": "success",
            "conversation_status": conversation.status,
            "metadata": conversation.meta or {},
        }
    except FunnelFlowError as e:
        raise http_error(e)


@router.get("/conversations/{conversation_id}/analytics")
async def conversation_analytics(
    conversation_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        analytics = await LiveChatService(db).get_conversation_analytics(user, conversation_id)
        return {"status": "success", "analytics": analytics}
    except FunnelFlowError as e:
        raise http_error(e)
