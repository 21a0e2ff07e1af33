"""
Analytics Service - conversation and funnel metrics.

Reads are cached in-process for a few minutes; every write through
record_funnel_event drops the cached entries of its experience.
"""

import uuid
import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import NotFoundError, AccessDeniedError
from app.funnel.states import ConversationStatus
from app.models.conversation import Conversation
from app.models.funnel import Funnel
from app.models.funnel_analytics import FunnelAnalytics
from app.models.funnel_interaction import FunnelInteraction
from app.services.ttl_cache import TTLCache
from app.services.user_context_service import AuthenticatedUser

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ("views", "starts", "completions", "conversions")

_analytics_cache = TTLCache(settings.analytics_cache_ttl_seconds)


def cache_key(
    kind: str,
    experience_id: Any,
    funnel_id: Any = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> str:
    return f"{kind}:{experience_id}:{funnel_id or ''}:{start or ''}:{end or ''}"


def invalidate_analytics_cache(substring: str) -> int:
    """Delete every cached entry whose key contains substring."""
    removed = _analytics_cache.delete_matching(substring)
    if removed:
        logger.debug(f"Invalidated {removed} analytics cache entries matching {substring!r}")
    return removed


def cleanup_expired_cache() -> int:
    return _analytics_cache.cleanup_expired()


def _start_of(day: Optional[date]) -> Optional[datetime]:
    return datetime.combine(day, time.min, tzinfo=timezone.utc) if day else None


def _end_of(day: Optional[date]) -> Optional[datetime]:
    return datetime.combine(day, time.max, tzinfo=timezone.utc) if day else None


class AnalyticsService:
    """Service for dashboard metrics."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _conversation_filters(
        self,
        user: AuthenticatedUser,
        funnel_id: Optional[uuid.UUID],
        start_date: Optional[date],
        end_date: Optional[date],
    ) -> List[Any]:
        filters = [Conversation.experience_id == user.experience_id]
        if funnel_id:
            filters.append(Conversation.funnel_id == funnel_id)
        if not user.is_admin:
            filters.append(Conversation.funnel_id.in_(
                select(Funnel.id).where(Funnel.user_id == user.id)
            ))
        if start_date:
            filters.append(Conversation.created_at >= _start_of(start_date))
        if end_date:
            filters.append(Conversation.created_at <= _end_of(end_date))
        return filters

    async def _conversation_metrics(self, filters: List[Any]) -> Dict[str, Any]:
        result = await self.db.execute(
            select(Conversation.status, func.count(Conversation.id))
            .where(*filters)
            .group_by(Conversation.status)
        )
        by_status = {status: count for status, count in result.all()}
        total = sum(by_status.values())
        completed = by_status.get(ConversationStatus.COMPLETED.value, 0)
        active = by_status.get(ConversationStatus.ACTIVE.value, 0)

        interactions = await self.db.scalar(
            select(func.count(FunnelInteraction.id))
            .join(Conversation, Conversation.id == FunnelInteraction.conversation_id)
            .where(*filters)
        )

        return {
            "total_conversations": total,
            "completed_conversations": completed,
            "active_conversations": active,
            "completion_rate": round(completed / total * 100, 2) if total else 0,
            "total_interactions": interactions or 0,
        }

    async def get_basic_analytics(
        self,
        user: AuthenticatedUser,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        key = cache_key(f"basic-{user.id}", user.experience_id, None, start_date, end_date)
        cached = _analytics_cache.get(key)
        if cached is not None:
            return cached

        metrics = await self._conversation_metrics(
            self._conversation_filters(user, None, start_date, end_date)
        )
        _analytics_cache.set(key, metrics)
        return metrics

    async def _get_visible_funnel(self, user: AuthenticatedUser, funnel_id: uuid.UUID) -> Funnel:
        funnel = await self.db.get(Funnel, funnel_id)
        if not funnel or funnel.experience_id != user.experience_id:
            raise NotFoundError("Funnel not found")
        if not user.is_admin and funnel.user_id != user.id:
            raise AccessDeniedError("Access denied: You can only view analytics of your own funnels")
        return funnel

    async def get_funnel_basic_metrics(
        self,
        user: AuthenticatedUser,
        funnel_id: uuid.UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        funnel = await self._get_visible_funnel(user, funnel_id)

        key = cache_key("funnel", user.experience_id, funnel_id, start_date, end_date)
        cached = _analytics_cache.get(key)
        if cached is not None:
            return cached

        metrics = await self._conversation_metrics(
            self._conversation_filters(user, funnel_id, start_date, end_date)
        )
        metrics["funnel_id"] = str(funnel.id)
        metrics["funnel_name"] = funnel.name
        metrics["sends"] = funnel.sends
        metrics["is_deployed"] = funnel.is_deployed

        _analytics_cache.set(key, metrics)
        return metrics

    async def get_daily_funnel_stats(
        self,
        user: AuthenticatedUser,
        funnel_id: uuid.UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Daily rows in range plus summed totals."""
        await self._get_visible_funnel(user, funnel_id)

        key = cache_key("daily", user.experience_id, funnel_id, start_date, end_date)
        cached = _analytics_cache.get(key)
        if cached is not None:
            return cached

        query = select(FunnelAnalytics).where(FunnelAnalytics.funnel_id == funnel_id)
        if start_date:
            query = query.where(FunnelAnalytics.date >= start_date)
        if end_date:
            query = query.where(FunnelAnalytics.date <= end_date)
        result = await self.db.execute(query.order_by(FunnelAnalytics.date))
        rows = result.scalars().all()

        totals: Dict[str, Any] = {field: 0 for field in COUNTER_FIELDS}
        totals["revenue"] = Decimal("0")
        daily = []
        for row in rows:
            day = {field: getattr(row, field) for field in COUNTER_FIELDS}
            day["revenue"] = float(row.revenue or 0)
            day["date"] = row.date.isoformat()
            daily.append(day)
            for field in COUNTER_FIELDS:
                totals[field] += getattr(row, field)
            totals["revenue"] += row.revenue or Decimal("0")
        totals["revenue"] = float(totals["revenue"])

        stats = {"funnel_id": str(funnel_id), "daily": daily, "totals": totals}
        _analytics_cache.set(key, stats)
        return stats

    async def record_funnel_event(
        self,
        funnel_id: uuid.UUID,
        experience_id: uuid.UUID,
        field: str,
        amount: int = 1,
        revenue: Decimal = Decimal("0"),
    ) -> bool:
        """
        Bump one counter on today's analytics row, creating the row if needed.
        Best effort: failures are logged and reported as False.
        """
        if field not in COUNTER_FIELDS:
            raise ValueError(f"Unknown analytics field: {field}")

        today = datetime.now(timezone.utc).date()
        try:
            # A failed write must not poison the caller's transaction
            async with self.db.begin_nested():
                result = await self.db.execute(
                    select(FunnelAnalytics).where(
                        FunnelAnalytics.funnel_id == funnel_id,
                        FunnelAnalytics.date == today,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = FunnelAnalytics(
                        funnel_id=funnel_id,
                        experience_id=experience_id,
                        date=today,
                        views=0,
                        starts=0,
                        completions=0,
                        conversions=0,
                        revenue=Decimal("0"),
                    )
                    self.db.add(row)

                setattr(row, field, (getattr(row, field) or 0) + amount)
                if revenue:
                    row.revenue = (row.revenue or Decimal("0")) + Decimal(str(revenue))
                await self.db.flush()
        except Exception as e:
            logger.warning(f"Failed to record {field} for funnel {funnel_id}: {e}")
            return False

        invalidate_analytics_cache(str(experience_id))
        return True
