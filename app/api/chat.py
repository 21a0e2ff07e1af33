"""
Customer Chat Endpoints.
Start a funnel conversation and send messages through the engine.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, http_error
from app.database import get_db
from app.errors import FunnelFlowError
from app.funnel.machine import FunnelMachine
from app.models.experience import Experience
from app.models.funnel import Funnel
from app.services.user_context_service import AuthenticatedUser

router = APIRouter()
logger = logging.getLogger(__name__)


class StartConversationRequest(BaseModel):
    # Defaults to the experience's live funnel
    funnel_id: Optional[uuid.UUID] = None


class CustomerMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)


@router.post("/conversations", status_code=201)
async def start_conversation(
    request: StartConversationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        query = select(Funnel).where(
            Funnel.experience_id == user.experience_id,
            Funnel.is_deployed.is_(True),
        )
        if request.funnel_id:
            query = query.where(Funnel.id == request.funnel_id)
        result = await db.execute(query.order_by(Funnel.updated_at.desc()).limit(1))
        funnel = result.scalar_one_or_none()
        if not funnel:
            raise HTTPException(status_code=404, detail="No live funnel found")

        experience = await db.get(Experience, user.experience_id)
        conversation = await FunnelMachine(db).start_conversation(experience, funnel, user.whop_user_id)

        return {
            "status": "success",
            "conversation_id": str(conversation.id),
            "current_block_id": conversation.current_block_id,
        }
    except FunnelFlowError as e:
        raise http_error(e)


@router.post("/conversations/{conversation_id}/messages")
async def send_customer_message(
    conversation_id: uuid.UUID,
    request: CustomerMessageRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        machine = FunnelMachine(db)
        conversation = await machine.get_conversation(conversation_id, user.experience_id)
        if conversation.whop_user_id != user.whop_user_id and not user.is_admin:
            raise HTTPException(status_code=403, detail="Access denied")

        result = await machine.process_user_message(conversation_id, user.experience_id, request.content)
        return {"status": "success" if result.success else "error", **result.to_dict()}
    except FunnelFlowError as e:
        raise http_error(e)
