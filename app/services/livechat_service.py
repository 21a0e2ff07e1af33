"""
Live Chat Service - owner inbox over funnel conversations.

Owners read conversations, reply by hand (taking control away from the
bot), hand control back, and annotate conversations with notes.
"""

import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from sqlalchemy import select, func, or_, exists
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AccessDeniedError, NotFoundError, ValidationError
from app.funnel.states import ConversationStatus, ControlledBy, LIVECHAT_STATUS_MAP, MessageType
from app.models.conversation import Conversation
from app.models.funnel import Funnel
from app.models.funnel_interaction import FunnelInteraction
from app.models.message import Message
from app.services import realtime_service
from app.services.user_context_service import AuthenticatedUser

logger = logging.getLogger(__name__)

SORT_OPTIONS = ("newest", "oldest", "most_messages", "least_messages")

# Interactions counted as a full walk through a funnel
FULL_FUNNEL_INTERACTIONS = 10


def _ms_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


class LiveChatService:
    """Service for the owner live-chat inbox."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _visibility_filters(self, user: AuthenticatedUser) -> List[Any]:
        filters = [Conversation.experience_id == user.experience_id]
        if not user.is_admin:
            filters.append(Conversation.funnel_id.in_(
                select(Funnel.id).where(Funnel.user_id == user.id)
            ))
        return filters

    async def _get_conversation(self, user: AuthenticatedUser, conversation_id: uuid.UUID) -> Conversation:
        conversation = await self.db.get(Conversation, conversation_id)
        if not conversation or conversation.experience_id != user.experience_id:
            raise NotFoundError("Conversation not found")
        if not user.is_admin:
            funnel = await self.db.get(Funnel, conversation.funnel_id)
            if not funnel or funnel.user_id != user.id:
                raise AccessDeniedError("Access denied: You can only access conversations of your own funnels")
        return conversation

    async def _messages(self, conversation_id: uuid.UUID) -> List[Message]:
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at, Message.id)
        )
        return list(result.scalars().all())

    async def get_conversation_list(
        self,
        user: AuthenticatedUser,
        status: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "newest",
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        if sort_by not in SORT_OPTIONS:
            raise ValidationError(f"Invalid sort option: {sort_by}")

        page = max(page, 1)
        offset = (page - 1) * limit
        filters = self._visibility_filters(user)

        if status and status != "all":
            filters.append(Conversation.status == LIVECHAT_STATUS_MAP.get(status, status))

        if search:
            pattern = f"%{search}%"
            filters.append(or_(
                Funnel.name.ilike(pattern),
                exists().where(
                    Message.conversation_id == Conversation.id,
                    Message.content.ilike(pattern),
                ),
            ))

        message_counts = (
            select(Message.conversation_id, func.count(Message.id).label("message_count"))
            .group_by(Message.conversation_id)
            .subquery()
        )
        message_count = func.coalesce(message_counts.c.message_count, 0)

        base = (
            select(Conversation, Funnel.name, message_count)
            .join(Funnel, Funnel.id == Conversation.funnel_id)
            .outerjoin(message_counts, message_counts.c.conversation_id == Conversation.id)
            .where(*filters)
        )

        order = {
            "newest": Conversation.updated_at.desc(),
            "oldest": Conversation.created_at.asc(),
            "most_messages": message_count.desc(),
            "least_messages": message_count.asc(),
        }[sort_by]

        total = await self.db.scalar(
            select(func.count())
            .select_from(Conversation)
            .join(Funnel, Funnel.id == Conversation.funnel_id)
            .where(*filters)
        )
        result = await self.db.execute(base.order_by(order, Conversation.id).offset(offset).limit(limit))

        conversations = []
        for conversation, funnel_name, count in result.all():
            last = await self.db.execute(
                select(Message)
                .where(Message.conversation_id == conversation.id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(1)
            )
            last_message = last.scalar_one_or_none()
            conversations.append({
                "id": str(conversation.id),
                "funnel_id": str(conversation.funnel_id),
                "funnel_name": funnel_name,
                "whop_user_id": conversation.whop_user_id,
                "status": conversation.status,
                "controlled_by": conversation.controlled_by,
                "current_block_id": conversation.current_block_id,
                "unread_count": conversation.unread_count_admin,
                "message_count": count,
                "last_message": last_message.to_dict() if last_message else None,
                "metadata": conversation.meta or {},
                "created_at": conversation.created_at.isoformat(),
                "updated_at": conversation.updated_at.isoformat(),
            })

        total = total or 0
        return {
            "conversations": conversations,
            "total": total,
            "page": page,
            "limit": limit,
            "has_more": offset + limit < total,
        }

    async def get_conversation_details(self, user: AuthenticatedUser, conversation_id: uuid.UUID) -> Dict[str, Any]:
        conversation = await self._get_conversation(user, conversation_id)
        funnel = await self.db.get(Funnel, conversation.funnel_id)
        messages = await self._messages(conversation.id)
        return {
            "id": str(conversation.id),
            "funnel": {"id": str(funnel.id), "name": funnel.name} if funnel else None,
            "whop_user_id": conversation.whop_user_id,
            "status": conversation.status,
            "controlled_by": conversation.controlled_by,
            "current_block_id": conversation.current_block_id,
            "user_path": conversation.user_path or [],
            "unread_count_admin": conversation.unread_count_admin,
            "unread_count_user": conversation.unread_count_user,
            "metadata": conversation.meta or {},
            "messages": [m.to_dict() for m in messages],
            "created_at": conversation.created_at.isoformat(),
            "updated_at": conversation.updated_at.isoformat(),
        }

    async def send_owner_message(
        self,
        user: AuthenticatedUser,
        conversation_id: uuid.UUID,
        content: str,
    ) -> Message:
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")

        conversation = await self._get_conversation(user, conversation_id)

        message = Message(
            conversation_id=conversation.id,
            type=MessageType.BOT.value,
            content=content.strip(),
            meta={"senderId": user.whop_user_id, "senderType": "owner"},
        )
        self.db.add(message)

        conversation.controlled_by = ControlledBy.ADMIN.value
        conversation.unread_count_user = (conversation.unread_count_user or 0) + 1
        conversation.updated_at = datetime.now(timezone.utc)
        await self.db.flush()

        logger.info(f"Owner {user.whop_user_id} replied in conversation {conversation.id}")
        await realtime_service.publish(
            user.experience_id,
            "message.created",
            {"conversation_id": str(conversation.id), "message": message.to_dict()},
        )
        return message

    async def mark_as_read(
        self,
        user: AuthenticatedUser,
        conversation_id: uuid.UUID,
        side: str = "admin",
    ) -> Conversation:
        conversation = await self._get_conversation(user, conversation_id)
        now = datetime.now(timezone.utc)
        if side == "admin":
            conversation.unread_count_admin = 0
            conversation.admin_last_read_at = now
        elif side == "user":
            conversation.unread_count_user = 0
            conversation.user_last_read_at = now
        else:
            raise ValidationError(f"Invalid side: {side}")
        await self.db.flush()
        return conversation

    async def resolve_conversation(self, user: AuthenticatedUser, conversation_id: uuid.UUID) -> Conversation:
        """Hand the conversation back to the bot."""
        conversation = await self._get_conversation(user, conversation_id)
        conversation.controlled_by = ControlledBy.BOT.value
        self.db.add(Message(
            conversation_id=conversation.id,
            type=MessageType.SYSTEM.value,
            content="Conversation handed back to the assistant.",
            meta={"senderId": user.whop_user_id, "senderType": "owner"},
        ))
        conversation.updated_at = datetime.now(timezone.utc)
        await self.db.flush()

        await realtime_service.publish(
            user.experience_id, "conversation.resolved", {"conversation_id": str(conversation.id)}
        )
        return conversation

    async def manage_conversation(
        self,
        user: AuthenticatedUser,
        conversation_id: uuid.UUID,
        status: Optional[str] = None,
        notes: Optional[str] = None,
        archive: Optional[bool] = None,
        assign_to: Optional[str] = None,
    ) -> Conversation:
        conversation = await self._get_conversation(user, conversation_id)

        if status is not None:
            mapped = LIVECHAT_STATUS_MAP.get(status, status)
            if mapped not in {s.value for s in ConversationStatus}:
                raise ValidationError(f"Invalid status: {status}")
            conversation.status = mapped
        if notes is not None:
            conversation.set_meta("notes", notes)
        if archive is not None:
            conversation.set_meta("isArchived", archive)
        if assign_to is not None:
            conversation.set_meta("assignedTo", assign_to)

        conversation.updated_at = datetime.now(timezone.utc)
        await self.db.flush()
        return conversation

    async def get_conversation_analytics(self, user: AuthenticatedUser, conversation_id: uuid.UUID) -> Dict[str, Any]:
        conversation = await self._get_conversation(user, conversation_id)
        messages = await self._messages(conversation.id)

        user_messages = [m for m in messages if m.type == MessageType.USER.value]
        bot_messages = [m for m in messages if m.type == MessageType.BOT.value]

        # Pair each user message with the first bot reply after it
        response_times = []
        for index, message in enumerate(messages):
            if message.type != MessageType.USER.value:
                continue
            reply = next((m for m in messages[index + 1:] if m.type == MessageType.BOT.value), None)
            if reply:
                response_times.append(_ms_between(message.created_at, reply.created_at))

        interactions = await self.db.scalar(
            select(func.count(FunnelInteraction.id)).where(
                FunnelInteraction.conversation_id == conversation.id
            )
        ) or 0

        progress = min(100.0, interactions / FULL_FUNNEL_INTERACTIONS * 100)
        engagement = min(100.0, len(user_messages) * 10 + progress * 0.5)
        duration = _ms_between(messages[0].created_at, messages[-1].created_at) if messages else 0

        return {
            "conversation_id": str(conversation.id),
            "total_messages": len(messages),
            "user_messages": len(user_messages),
            "bot_messages": len(bot_messages),
            "average_response_time_ms": (
                int(sum(response_times) / len(response_times)) if response_times else 0
            ),
            "duration_ms": duration,
            "funnel_progress": progress,
            "engagement_score": engagement,
            "interactions": interactions,
        }

    async def get_unread_counts(self, user: AuthenticatedUser) -> Dict[str, int]:
        filters = self._visibility_filters(user)
        total = await self.db.scalar(
            select(func.coalesce(func.sum(Conversation.unread_count_admin), 0)).where(*filters)
        )
        with_unread = await self.db.scalar(
            select(func.count(Conversation.id)).where(*filters, Conversation.unread_count_admin > 0)
        )
        return {
            "total_unread": int(total or 0),
            "conversations_with_unread": int(with_unread or 0),
        }
