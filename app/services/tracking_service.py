"""
Tracking Service - attributes Whop plans (and so payments) to funnel blocks.

A sale can be traced back in three ways, tried in order:
1. our own tracking_links row for the plan
2. the plan's internal_notes, holding a structured name
3. the plan's metadata with funnelId / blockId / productId
"""

import logging
import re
from typing import Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tracking_link import TrackingLink
from app.services.whop_service import WhopService

logger = logging.getLogger(__name__)

TRACKING_NAME_RE = re.compile(r"^funnel_(?P<funnel_id>[^_]+)_block_(?P<block_id>.+?)_product_(?P<product_id>.+)$")


def build_tracking_name(funnel_id: Any, block_id: str, product_id: str) -> str:
    return f"funnel_{funnel_id}_block_{block_id}_product_{product_id}"


def parse_funnel_context_from_notes(notes: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse "funnel_{f}_block_{b}_product_{p}".

    Funnel ids are UUIDs, so only block and product ids may hold
    underscores. The first "_product_" after the block id ends it.
    """
    if not notes:
        return None
    match = TRACKING_NAME_RE.match(notes.strip())
    if not match:
        return None
    return match.groupdict()


class TrackingService:
    def __init__(self, db: AsyncSession, whop: Optional[WhopService] = None):
        self.db = db
        self.whop = whop or WhopService()

    async def create_tracking_link(
        self,
        plan_id: str,
        funnel_id: Any,
        block_id: str,
        product_id: str,
        experience_id: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Store the plan -> funnel block mapping and return its structured name."""
        name = build_tracking_name(funnel_id, block_id, product_id)

        result = await self.db.execute(
            select(TrackingLink).where(TrackingLink.plan_id == plan_id)
        )
        link = result.scalar_one_or_none()
        if link is None:
            link = TrackingLink(plan_id=plan_id)
            self.db.add(link)

        link.funnel_id = str(funnel_id)
        link.block_id = block_id
        link.product_id = product_id
        link.experience_id = str(experience_id) if experience_id else None
        link.meta = {**(metadata or {}), "name": name}
        await self.db.flush()

        logger.info(f"Tracking link for plan {plan_id}: {name}")
        return name

    async def get_funnel_context(
        self,
        plan_id: str,
        plan: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, str]]:
        """Resolve {funnel_id, block_id, product_id} for a plan, or None."""
        if not plan_id:
            return None

        # Strategy 1: our own table
        result = await self.db.execute(
            select(TrackingLink).where(TrackingLink.plan_id == plan_id)
        )
        link = result.scalar_one_or_none()
        if link:
            return {
                "funnel_id": link.funnel_id,
                "block_id": link.block_id,
                "product_id": link.product_id,
                "source": "database",
            }

        if plan is None:
            plan = await self.whop.get_plan(plan_id)
        if not plan:
            logger.info(f"No plan data for {plan_id}, cannot attribute")
            return None

        # Strategy 2: structured name in internal notes
        parsed = parse_funnel_context_from_notes(plan.get("internal_notes"))
        if parsed:
            return {**parsed, "source": "internal_notes"}

        # Strategy 3: plan metadata
        metadata = plan.get("metadata") or {}
        if all(metadata.get(key) for key in ("funnelId", "blockId", "productId")):
            return {
                "funnel_id": str(metadata["funnelId"]),
                "block_id": str(metadata["blockId"]),
                "product_id": str(metadata["productId"]),
                "source": "metadata",
            }

        logger.info(f"Plan {plan_id} has no funnel context")
        return None
