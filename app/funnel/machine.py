"""
Funnel conversation engine.

Walks a customer through a deployed funnel: every customer message is
matched against the options of the current block, a match moves the
conversation to the next block, a miss escalates step by step until the
customer is told to contact the owner.
"""

import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from redis.asyncio.client import Redis
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import BusinessRuleError, NotFoundError
from app.funnel.flow import (
    LINK_PLACEHOLDER,
    detect_conversation_phase,
    format_block_message,
    format_options,
    is_offer_block,
    match_option,
)
from app.funnel.states import ConversationStatus, ControlledBy, MessageType
from app.models.conversation import Conversation
from app.models.experience import Experience
from app.models.funnel import Funnel
from app.models.funnel_interaction import FunnelInteraction
from app.models.message import Message
from app.models.resource import Resource
from app.redis import RedisClient, namespaced
from app.services import realtime_service
from app.services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)

MAX_ESCALATION_LEVEL = 3
ESCALATION_TTL_SECONDS = 24 * 60 * 60

ESCALATION_OWNER_NOTIFIED = "I'll inform the Whop owner about your request. Please wait for assistance."
ESCALATION_GIVE_UP = "I'm unable to help you further. Please contact the Whop owner directly."

RESOURCE_NOT_FOUND = "[Resource not found]"
LINK_NOT_AVAILABLE = "[Link not available]"


class EscalationStore:
    """Per-conversation escalation level kept in Redis for a day."""

    def __init__(self, client: Optional[Redis] = None):
        self._client = client

    @property
    def client(self) -> Redis:
        return self._client or RedisClient.get_client()

    @staticmethod
    def key(conversation_id: Any) -> str:
        return namespaced("escalation", conversation_id)

    async def get(self, conversation_id: Any) -> int:
        try:
            value = await self.client.get(self.key(conversation_id))
        except Exception as e:
            logger.warning(f"Could not read escalation level for {conversation_id}: {e}")
            return 0
        return int(value) if value else 0

    async def set(self, conversation_id: Any, level: int) -> None:
        try:
            await self.client.set(self.key(conversation_id), level, ex=ESCALATION_TTL_SECONDS)
        except Exception as e:
            logger.warning(f"Could not store escalation level for {conversation_id}: {e}")

    async def reset(self, conversation_id: Any) -> None:
        try:
            await self.client.delete(self.key(conversation_id))
        except Exception as e:
            logger.warning(f"Could not reset escalation level for {conversation_id}: {e}")


@dataclass
class ProcessResult:
    success: bool
    bot_message: Optional[str] = None
    next_block_id: Optional[str] = None
    phase_transition: Optional[Dict[str, str]] = None
    escalation_level: int = 0
    completed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "bot_message": self.bot_message,
            "next_block_id": self.next_block_id,
            "phase_transition": self.phase_transition,
            "escalation_level": self.escalation_level,
            "completed": self.completed,
            "error": self.error,
        }


def escalation_message(level: int, block: Dict[str, Any]) -> str:
    options = format_options(block.get("options") or [])
    if level >= 3:
        return ESCALATION_GIVE_UP
    if level == 2:
        return ESCALATION_OWNER_NOTIFIED
    if level == 1:
        return f"Please choose from the provided options above:\n{options}"
    return f"Please select one of the following options:\n{options}"


def with_app_param(link: str, whop_experience_id: str) -> str:
    """Tag a purchase link with the experience, unless it already carries a tag."""
    if not whop_experience_id or "app=" in link or "ref=" in link:
        return link
    separator = "&" if "?" in link else "?"
    return f"{link}{separator}app={whop_experience_id}"


def app_link(whop_experience_id: str) -> str:
    return f"https://whop.com/experiences/{whop_experience_id}"


class FunnelMachine:
    """Conversation engine bound to one database session."""

    def __init__(self, db: AsyncSession, escalations: Optional[EscalationStore] = None):
        self.db = db
        self.escalations = escalations or EscalationStore()
        self.analytics = AnalyticsService(db)

    async def get_conversation(self, conversation_id: uuid.UUID, experience_id: uuid.UUID) -> Conversation:
        conversation = await self.db.get(Conversation, conversation_id)
        if not conversation or conversation.experience_id != experience_id:
            raise NotFoundError("Conversation not found")
        return conversation

    async def _add_message(
        self,
        conversation: Conversation,
        message_type: MessageType,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Message:
        message = Message(
            conversation_id=conversation.id,
            type=message_type.value,
            content=content,
            meta=meta or {},
        )
        self.db.add(message)
        if message_type == MessageType.BOT:
            conversation.unread_count_user = (conversation.unread_count_user or 0) + 1
        conversation.updated_at = datetime.now(timezone.utc)
        await self.db.flush()
        return message

    async def resolve_links(
        self,
        flow: Dict[str, Any],
        block_id: str,
        text: str,
        experience_id: uuid.UUID,
    ) -> str:
        """Replace [LINK] with the offered resource's link or the app link."""
        if LINK_PLACEHOLDER not in text:
            return text

        experience = await self.db.get(Experience, experience_id)
        whop_experience_id = experience.whop_experience_id if experience else ""
        block = (flow.get("blocks") or {}).get(block_id) or {}
        resource_name = block.get("resourceName")

        if is_offer_block(flow, block_id) and resource_name:
            result = await self.db.execute(
                select(Resource).where(
                    Resource.experience_id == experience_id,
                    Resource.name == resource_name,
                ).limit(1)
            )
            resource = result.scalar_one_or_none()
            if not resource:
                logger.warning(f"Offer block {block_id} references missing resource '{resource_name}'")
                return text.replace(LINK_PLACEHOLDER, RESOURCE_NOT_FOUND)
            return text.replace(LINK_PLACEHOLDER, with_app_param(resource.link, whop_experience_id))

        if not whop_experience_id:
            return text.replace(LINK_PLACEHOLDER, LINK_NOT_AVAILABLE)
        return text.replace(LINK_PLACEHOLDER, app_link(whop_experience_id))

    async def render_block(self, flow: Dict[str, Any], block_id: str, experience_id: uuid.UUID) -> str:
        block = flow["blocks"][block_id]
        message = await self.resolve_links(flow, block_id, block.get("message") or "", experience_id)
        return format_block_message(block, message)

    async def _complete(self, conversation: Conversation) -> None:
        conversation.status = ConversationStatus.COMPLETED.value
        await self.db.flush()
        await self.analytics.record_funnel_event(conversation.funnel_id, conversation.experience_id, "completions")
        logger.info(
            f"Conversation {conversation.id} completed",
            extra={"conversation_id": conversation.id, "funnel_id": conversation.funnel_id},
        )

    async def start_conversation(
        self,
        experience: Experience,
        funnel: Funnel,
        whop_user_id: str,
    ) -> Conversation:
        """Open a conversation at the funnel's start block and send its first message."""
        if not funnel.flow:
            raise BusinessRuleError("Cannot start a conversation on a funnel without a flow")

        start_block_id = funnel.flow.get("startBlockId")
        if start_block_id not in (funnel.flow.get("blocks") or {}):
            raise BusinessRuleError("Funnel flow has no start block")

        # One active conversation per customer and experience
        await self.db.execute(
            update(Conversation)
            .where(
                Conversation.experience_id == experience.id,
                Conversation.whop_user_id == whop_user_id,
                Conversation.status == ConversationStatus.ACTIVE.value,
            )
            .values(status=ConversationStatus.CLOSED.value)
        )

        conversation = Conversation(
            experience_id=experience.id,
            funnel_id=funnel.id,
            whop_user_id=whop_user_id,
            status=ConversationStatus.ACTIVE.value,
            current_block_id=start_block_id,
            user_path=[start_block_id],
            controlled_by=ControlledBy.BOT.value,
            meta={},
        )
        self.db.add(conversation)
        await self.db.flush()

        text = await self.render_block(funnel.flow, start_block_id, experience.id)
        await self._add_message(conversation, MessageType.BOT, text, {"blockId": start_block_id})

        funnel.sends = (funnel.sends or 0) + 1
        await self.db.flush()
        await self.analytics.record_funnel_event(funnel.id, experience.id, "starts")

        logger.info(
            f"Started conversation {conversation.id} for {whop_user_id} on funnel {funnel.id}",
            extra={"conversation_id": conversation.id, "funnel_id": funnel.id, "whop_user_id": whop_user_id},
        )
        await realtime_service.publish(
            experience.id, "conversation.started",
            {"conversation_id": str(conversation.id), "funnel_id": str(funnel.id)},
        )
        return conversation

    async def navigate_to_next_block(
        self,
        conversation_id: uuid.UUID,
        next_block_id: Optional[str],
        experience_id: uuid.UUID,
        selected_option_text: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move the conversation along one edge.

        A None target ends the conversation. Returns the phase change, if any.
        """
        conversation = await self.get_conversation(conversation_id, experience_id)
        funnel = await self.db.get(Funnel, conversation.funnel_id)
        flow = (funnel.flow if funnel else None) or {}
        blocks = flow.get("blocks") or {}

        if next_block_id is not None and next_block_id not in blocks:
            raise BusinessRuleError(f"Block {next_block_id} does not exist in this funnel")

        previous_block_id = conversation.current_block_id
        self.db.add(FunnelInteraction(
            conversation_id=conversation.id,
            block_id=previous_block_id or "",
            option_text=selected_option_text,
            next_block_id=next_block_id,
        ))

        old_phase = detect_conversation_phase(previous_block_id, flow)
        new_phase = detect_conversation_phase(next_block_id, flow)

        if next_block_id is None:
            await self._complete(conversation)
        else:
            conversation.current_block_id = next_block_id
            conversation.append_path(next_block_id)
            conversation.updated_at = datetime.now(timezone.utc)
            await self.db.flush()

        phase_transition = None
        if old_phase != new_phase:
            phase_transition = {"from": old_phase.value, "to": new_phase.value}
            logger.info(f"Conversation {conversation.id} phase {old_phase.value} -> {new_phase.value}")

        return {
            "success": True,
            "next_block_id": next_block_id,
            "phase_transition": phase_transition,
            "completed": next_block_id is None,
        }

    async def process_user_message(
        self,
        conversation_id: uuid.UUID,
        experience_id: uuid.UUID,
        content: str,
    ) -> ProcessResult:
        conversation = await self.get_conversation(conversation_id, experience_id)
        if conversation.status != ConversationStatus.ACTIVE.value:
            return ProcessResult(success=False, error="Conversation is not active")

        await self._add_message(conversation, MessageType.USER, content)
        conversation.unread_count_admin = (conversation.unread_count_admin or 0) + 1
        await self.db.flush()

        await realtime_service.publish(
            experience_id, "message.created",
            {"conversation_id": str(conversation.id), "type": MessageType.USER.value},
        )

        # Owner is answering by hand
        if conversation.controlled_by == ControlledBy.ADMIN.value:
            return ProcessResult(success=True, next_block_id=conversation.current_block_id)

        funnel = await self.db.get(Funnel, conversation.funnel_id)
        flow = funnel.flow if funnel else None
        block = ((flow or {}).get("blocks") or {}).get(conversation.current_block_id)
        if not flow or not block:
            logger.warning(f"Conversation {conversation.id} has no current block")
            return ProcessResult(success=False, error="Conversation has no current block")

        option = match_option(block, content)
        if option is None:
            return await self._escalate(conversation, block)

        await self.escalations.reset(conversation.id)
        next_block_id = option.get("nextBlockId")
        nav = await self.navigate_to_next_block(conversation.id, next_block_id, experience_id, option.get("text"))

        if next_block_id is None:
            return ProcessResult(
                success=True,
                phase_transition=nav["phase_transition"],
                completed=True,
            )

        text = await self.render_block(flow, next_block_id, experience_id)
        await self._add_message(conversation, MessageType.BOT, text, {"blockId": next_block_id})

        completed = not (flow["blocks"][next_block_id].get("options") or [])
        if completed:
            await self._complete(conversation)

        return ProcessResult(
            success=True,
            bot_message=text,
            next_block_id=next_block_id,
            phase_transition=nav["phase_transition"],
            completed=completed,
        )

    async def _escalate(self, conversation: Conversation, block: Dict[str, Any]) -> ProcessResult:
        level = await self.escalations.get(conversation.id)
        text = escalation_message(level, block)
        new_level = min(level + 1, MAX_ESCALATION_LEVEL)
        await self.escalations.set(conversation.id, new_level)

        await self._add_message(conversation, MessageType.BOT, text, {"escalationLevel": new_level})
        logger.info(f"Conversation {conversation.id} escalated to level {new_level}")

        if level == 2:
            await realtime_service.publish(
                conversation.experience_id, "conversation.escalated",
                {"conversation_id": str(conversation.id)},
            )

        return ProcessResult(
            success=True,
            bot_message=text,
            next_block_id=conversation.current_block_id,
            escalation_level=new_level,
        )
