"""
Tests for AnalyticsService.
"""

from decimal import Decimal

import pytest

from app.errors import NotFoundError
from app.funnel.states import ConversationStatus
from app.models.conversation import Conversation
from app.models.funnel import Funnel
from app.services import analytics_service
from app.services.analytics_service import AnalyticsService, cache_key, invalidate_analytics_cache

from conftest import as_context, make_funnel, make_user, random_id


async def _conversation(db, experience, funnel, status):
    conversation = Conversation(
        experience_id=experience.id,
        funnel_id=funnel.id,
        whop_user_id="cust",
        status=status,
        user_path=[],
        meta={},
    )
    db.add(conversation)
    await db.flush()
    return conversation


class TestRecordFunnelEvent:
    """Tests for daily counters."""

    @pytest.mark.asyncio
    async def test_creates_then_increments(self, db, experience):
        owner = await make_user(db, experience)
        funnel = await make_funnel(db, owner)
        service = AnalyticsService(db)

        assert await service.record_funnel_event(funnel.id, experience.id, "starts")
        assert await service.record_funnel_event(funnel.id, experience.id, "starts")
        assert await service.record_funnel_event(
            funnel.id, experience.id, "conversions", revenue=Decimal("49.99"),
        )

        stats = await service.get_daily_funnel_stats(as_context(owner, experience), funnel.id)

        assert len(stats["daily"]) == 1
        assert stats["totals"]["starts"] == 2
        assert stats["totals"]["conversions"] == 1
        assert stats["totals"]["revenue"] == pytest.approx(49.99)

    @pytest.mark.asyncio
    async def test_failed_write_keeps_session_usable(self, db, experience):
        owner = await make_user(db, experience)
        funnel = await make_funnel(db, owner)

        # experience_id is NOT NULL, so the insert fails
        assert not await AnalyticsService(db).record_funnel_event(funnel.id, None, "starts")

        funnel.sends = 3
        await db.flush()
        assert (await db.get(Funnel, funnel.id)).sends == 3

    @pytest.mark.asyncio
    async def test_unknown_field(self, db, experience):
        with pytest.raises(ValueError):
            await AnalyticsService(db).record_funnel_event(random_id(), experience.id, "likes")

    @pytest.mark.asyncio
    async def test_write_invalidates_cache(self, db, experience):
        owner = await make_user(db, experience)
        funnel = await make_funnel(db, owner)
        service = AnalyticsService(db)
        user = as_context(owner, experience)

        before = await service.get_daily_funnel_stats(user, funnel.id)
        await service.record_funnel_event(funnel.id, experience.id, "views")
        after = await service.get_daily_funnel_stats(user, funnel.id)

        assert before["totals"]["views"] == 0
        assert after["totals"]["views"] == 1


class TestMetrics:
    """Tests for conversation metrics."""

    @pytest.mark.asyncio
    async def test_basic_analytics(self, db, experience):
        owner = await make_user(db, experience)
        funnel = await make_funnel(db, owner)
        await _conversation(db, experience, funnel, ConversationStatus.COMPLETED.value)
        await _conversation(db, experience, funnel, ConversationStatus.ACTIVE.value)
        await _conversation(db, experience, funnel, ConversationStatus.ACTIVE.value)
        await _conversation(db, experience, funnel, ConversationStatus.COMPLETED.value)

        metrics = await AnalyticsService(db).get_basic_analytics(as_context(owner, experience))

        assert metrics["total_conversations"] == 4
        assert metrics["completed_conversations"] == 2
        assert metrics["active_conversations"] == 2
        assert metrics["completion_rate"] == 50.0

    @pytest.mark.asyncio
    async def test_funnel_metrics(self, db, experience):
        owner = await make_user(db, experience)
        funnel = await make_funnel(db, owner, name="Tracked")
        other = await make_funnel(db, owner, name="Other")
        await _conversation(db, experience, funnel, ConversationStatus.COMPLETED.value)
        await _conversation(db, experience, other, ConversationStatus.ACTIVE.value)

        metrics = await AnalyticsService(db).get_funnel_basic_metrics(as_context(owner, experience), funnel.id)

        assert metrics["total_conversations"] == 1
        assert metrics["completion_rate"] == 100.0
        assert metrics["funnel_name"] == "Tracked"

    @pytest.mark.asyncio
    async def test_unknown_funnel(self, db, experience):
        owner = await make_user(db, experience)

        with pytest.raises(NotFoundError):
            await AnalyticsService(db).get_funnel_basic_metrics(as_context(owner, experience), random_id())


class TestCacheHelpers:
    """Tests for cache keys and invalidation."""

    def test_invalidate_by_substring(self):
        analytics_service._analytics_cache.set(cache_key("daily", "exp-1", "f1"), {})
        analytics_service._analytics_cache.set(cache_key("daily", "exp-2", "f2"), {})

        assert invalidate_analytics_cache("exp-1") == 1
        assert len(analytics_service._analytics_cache) == 1
