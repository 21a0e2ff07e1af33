"""
Tests for the funnel conversation engine.
"""

import pytest
from sqlalchemy import select

from app.errors import BusinessRuleError
from app.funnel.machine import (
    ESCALATION_GIVE_UP,
    ESCALATION_OWNER_NOTIFIED,
    FunnelMachine,
    app_link,
    escalation_message,
    with_app_param,
)
from app.funnel.states import ControlledBy, ConversationStatus, ResourceCategory
from app.models.conversation import Conversation
from app.models.funnel_analytics import FunnelAnalytics
from app.models.funnel_interaction import FunnelInteraction
from app.models.message import Message

from conftest import make_funnel, make_resource, make_user, sample_flow


class FakeEscalationStore:
    """In-memory stand-in for the Redis escalation store."""

    def __init__(self):
        self.levels = {}

    async def get(self, conversation_id):
        return self.levels.get(conversation_id, 0)

    async def set(self, conversation_id, level):
        self.levels[conversation_id] = level

    async def reset(self, conversation_id):
        self.levels.pop(conversation_id, None)


async def _setup(db, experience):
    owner = await make_user(db, experience)
    await make_resource(db, owner, "Free Guide", ResourceCategory.FREE_VALUE)
    await make_resource(
        db, owner, "Pro Course", ResourceCategory.PAID, link="https://whop.com/checkout/plan_1",
    )
    funnel = await make_funnel(db, owner, flow=sample_flow(), is_deployed=True)
    machine = FunnelMachine(db, escalations=FakeEscalationStore())
    return machine, funnel


async def _messages(db, conversation_id):
    result = await db.execute(
        select(Message).where(Message.conversation_id == conversation_id).order_by(Message.created_at)
    )
    return result.scalars().all()


class TestHelpers:
    """Tests for message and link helpers."""

    def test_escalation_messages_by_level(self):
        block = sample_flow()["blocks"]["welcome_1"]
        assert escalation_message(0, block).startswith("Please select one of the following options:\n1. Trading")
        assert escalation_message(1, block).startswith("Please choose from the provided options above:")
        assert escalation_message(2, block) == ESCALATION_OWNER_NOTIFIED
        assert escalation_message(3, block) == ESCALATION_GIVE_UP

    def test_with_app_param(self):
        assert with_app_param("https://x.com/p", "exp_1") == "https://x.com/p?app=exp_1"
        assert with_app_param("https://x.com/p?a=1", "exp_1") == "https://x.com/p?a=1&app=exp_1"
        assert with_app_param("https://x.com/p?ref=me", "exp_1") == "https://x.com/p?ref=me"

    def test_app_link(self):
        assert app_link("exp_1") == "https://whop.com/experiences/exp_1"


class TestStartConversation:
    """Tests for opening conversations."""

    @pytest.mark.asyncio
    async def test_start_sends_first_block(self, db, experience, no_realtime):
        machine, funnel = await _setup(db, experience)

        conversation = await machine.start_conversation(experience, funnel, "cust_1")

        assert conversation.current_block_id == "welcome_1"
        assert conversation.user_path == ["welcome_1"]
        assert conversation.unread_count_user == 1
        assert funnel.sends == 1

        messages = await _messages(db, conversation.id)
        assert len(messages) == 1
        assert messages[0].content.endswith("1. Trading\n2. Just exploring for now")
        assert ("conversation.started", {"conversation_id": str(conversation.id), "funnel_id": str(funnel.id)}) in no_realtime

        row = (await db.execute(select(FunnelAnalytics))).scalar_one()
        assert row.starts == 1

    @pytest.mark.asyncio
    async def test_start_closes_previous_active(self, db, experience):
        machine, funnel = await _setup(db, experience)

        first = await machine.start_conversation(experience, funnel, "cust_1")
        second = await machine.start_conversation(experience, funnel, "cust_1")
        await db.refresh(first)

        assert first.status == ConversationStatus.CLOSED.value
        assert second.status == ConversationStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_start_requires_flow(self, db, experience):
        owner = await make_user(db, experience)
        funnel = await make_funnel(db, owner, flow=None)
        machine = FunnelMachine(db, escalations=FakeEscalationStore())

        with pytest.raises(BusinessRuleError):
            await machine.start_conversation(experience, funnel, "cust_1")


class TestProcessUserMessage:
    """Tests for walking a conversation through the funnel."""

    @pytest.mark.asyncio
    async def test_matching_option_advances(self, db, experience):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")

        result = await machine.process_user_message(conversation.id, experience.id, "Trading")

        assert result.success
        assert result.next_block_id == "value_1"
        assert result.phase_transition == {"from": "PHASE1", "to": "PHASE2"}
        assert result.bot_message.startswith("Here is the guide.")
        assert conversation.user_path == ["welcome_1", "value_1"]
        assert conversation.unread_count_admin == 1

        interaction = (await db.execute(select(FunnelInteraction))).scalar_one()
        assert interaction.block_id == "welcome_1"
        assert interaction.next_block_id == "value_1"
        assert interaction.option_text == "Trading"

    @pytest.mark.asyncio
    async def test_numeric_reply(self, db, experience):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")

        result = await machine.process_user_message(conversation.id, experience.id, "1")

        assert result.next_block_id == "value_1"

    @pytest.mark.asyncio
    async def test_null_next_block_completes(self, db, experience):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")

        result = await machine.process_user_message(conversation.id, experience.id, "just exploring")

        assert result.completed
        assert conversation.status == ConversationStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_full_walk_resolves_offer_link(self, db, experience):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")

        for reply in ("Trading", "done"):
            await machine.process_user_message(conversation.id, experience.id, reply)
        messages = await _messages(db, conversation.id)
        assert any("https://whop.com/experiences/exp_test" in m.content for m in messages)

        for reply in ("Continue", "Beginner"):
            await machine.process_user_message(conversation.id, experience.id, reply)
        result = await machine.process_user_message(conversation.id, experience.id, "Risk")

        assert result.next_block_id == "offer_1"
        assert "https://whop.com/checkout/plan_1?app=exp_test" in result.bot_message
        assert result.completed
        assert conversation.status == ConversationStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_missing_offer_resource(self, db, experience):
        owner = await make_user(db, experience)
        funnel = await make_funnel(db, owner, flow=sample_flow(), is_deployed=True)
        machine = FunnelMachine(db, escalations=FakeEscalationStore())

        text = await machine.render_block(funnel.flow, "offer_1", experience.id)

        assert text == "Get the course here: [Resource not found]"

    @pytest.mark.asyncio
    async def test_escalation_ladder(self, db, experience, no_realtime):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")

        levels = []
        texts = []
        for _ in range(4):
            result = await machine.process_user_message(conversation.id, experience.id, "pizza")
            levels.append(result.escalation_level)
            texts.append(result.bot_message)

        assert levels == [1, 2, 3, 3]
        assert texts[2] == ESCALATION_OWNER_NOTIFIED
        assert texts[3] == ESCALATION_GIVE_UP
        assert conversation.current_block_id == "welcome_1"
        assert [e for e, _ in no_realtime].count("conversation.escalated") == 1

    @pytest.mark.asyncio
    async def test_match_resets_escalation(self, db, experience):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")

        await machine.process_user_message(conversation.id, experience.id, "pizza")
        assert machine.escalations.levels[conversation.id] == 1

        await machine.process_user_message(conversation.id, experience.id, "Trading")
        assert conversation.id not in machine.escalations.levels

    @pytest.mark.asyncio
    async def test_admin_controlled_skips_bot(self, db, experience):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")
        conversation.controlled_by = ControlledBy.ADMIN.value

        result = await machine.process_user_message(conversation.id, experience.id, "Trading")

        assert result.success
        assert result.bot_message is None
        assert conversation.current_block_id == "welcome_1"

    @pytest.mark.asyncio
    async def test_inactive_conversation(self, db, experience):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")
        conversation.status = ConversationStatus.COMPLETED.value

        result = await machine.process_user_message(conversation.id, experience.id, "Trading")

        assert not result.success
        assert result.error == "Conversation is not active"


class TestNavigate:
    """Tests for direct navigation."""

    @pytest.mark.asyncio
    async def test_unknown_block_rejected(self, db, experience):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")

        with pytest.raises(BusinessRuleError):
            await machine.navigate_to_next_block(conversation.id, "ghost", experience.id)

    @pytest.mark.asyncio
    async def test_navigate_records_path(self, db, experience):
        machine, funnel = await _setup(db, experience)
        conversation = await machine.start_conversation(experience, funnel, "cust_1")

        nav = await machine.navigate_to_next_block(conversation.id, "experience_1", experience.id)

        assert nav["success"]
        assert nav["phase_transition"] == {"from": "PHASE1", "to": "COMPLETED"}
        refreshed = await db.get(Conversation, conversation.id)
        assert refreshed.user_path == ["welcome_1", "experience_1"]
