"""
Funnel Service - funnel CRUD, deployment, and AI regeneration.
"""

import uuid
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

from sqlalchemy import select, func, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import (
    AccessDeniedError,
    BusinessRuleError,
    ConflictError,
    InsufficientCreditsError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from app.funnel.flow import (
    annotate_available_offers,
    is_offer_block,
    validate_and_repair_flow,
    validate_resource_placement,
)
from app.funnel.states import GenerationStatus, GLOBAL_LIMITS, PRODUCT_LIMITS, ResourceCategory
from app.models.funnel import Funnel
from app.models.funnel_resource import FunnelResource
from app.models.resource import Resource
from app.models.user import User
from app.services import realtime_service
from app.services.ai_service import AIService
from app.services.analytics_service import AnalyticsService
from app.services.resource_queue import ResourceAssignmentQueue, assignment_queue
from app.services.tracking_service import TrackingService
from app.services.user_context_service import AuthenticatedUser, UserContextService

logger = logging.getLogger(__name__)

REGENERATION_COST = 1


def check_product_limits(resources: List[Resource]) -> None:
    """Raise when a funnel would hold too many resources of one category."""
    paid = sum(1 for r in resources if r.category == ResourceCategory.PAID.value)
    free = sum(1 for r in resources if r.category == ResourceCategory.FREE_VALUE.value)
    if paid > PRODUCT_LIMITS.PAID:
        raise LimitExceededError(
            f"Cannot add paid product: limit reached (max {PRODUCT_LIMITS.PAID} paid products per funnel)"
        )
    if free > PRODUCT_LIMITS.FREE_VALUE:
        raise LimitExceededError(
            f"Cannot add free product: limit reached (max {PRODUCT_LIMITS.FREE_VALUE} free products per funnel)"
        )


class FunnelService:
    """Service for funnel management."""

    def __init__(
        self,
        db: AsyncSession,
        ai_service: Optional[AIService] = None,
        queue: Optional[ResourceAssignmentQueue] = None,
    ):
        self.db = db
        self.ai = ai_service or AIService()
        self.queue = queue or assignment_queue

    # --- Lookups ---

    async def _get_funnel(self, user: AuthenticatedUser, funnel_id: uuid.UUID, action: str = "access") -> Funnel:
        funnel = await self.db.get(Funnel, funnel_id)
        if not funnel or funnel.experience_id != user.experience_id:
            raise NotFoundError("Funnel not found")
        if not user.is_admin and funnel.user_id != user.id:
            raise AccessDeniedError(f"Access denied: You can only {action} your own funnels")
        return funnel

    async def get_funnel_resources(self, funnel_id: uuid.UUID) -> List[Resource]:
        result = await self.db.execute(
            select(Resource)
            .join(FunnelResource, FunnelResource.resource_id == Resource.id)
            .where(FunnelResource.funnel_id == funnel_id)
            .order_by(FunnelResource.created_at)
        )
        return list(result.scalars().all())

    async def _load_resources(self, user: AuthenticatedUser, resource_ids: List[uuid.UUID]) -> List[Resource]:
        unique_ids = list(dict.fromkeys(resource_ids))
        if not unique_ids:
            return []
        result = await self.db.execute(
            select(Resource).where(
                Resource.id.in_(unique_ids),
                Resource.experience_id == user.experience_id,
            )
        )
        resources = list(result.scalars().all())
        if len(resources) != len(unique_ids):
            raise NotFoundError("Resource not found")
        return resources

    async def _replace_links(self, funnel_id: uuid.UUID, resources: List[Resource]) -> None:
        await self.db.execute(delete(FunnelResource).where(FunnelResource.funnel_id == funnel_id))
        for resource in resources:
            self.db.add(FunnelResource(funnel_id=funnel_id, resource_id=resource.id))
        await self.db.flush()

    # --- CRUD ---

    async def create_funnel(
        self,
        user: AuthenticatedUser,
        name: str,
        description: Optional[str] = None,
        resource_ids: Optional[List[uuid.UUID]] = None,
        whop_product_id: Optional[str] = None,
    ) -> Funnel:
        owned = await self.db.scalar(
            select(func.count(Funnel.id)).where(
                Funnel.user_id == user.id,
                Funnel.experience_id == user.experience_id,
            )
        )
        if (owned or 0) >= GLOBAL_LIMITS.FUNNELS:
            raise LimitExceededError(
                f"Cannot create funnel: limit reached (max {GLOBAL_LIMITS.FUNNELS} funnels per account)"
            )

        resources = await self._load_resources(user, resource_ids or [])
        check_product_limits(resources)

        funnel = Funnel(
            experience_id=user.experience_id,
            user_id=user.id,
            name=name,
            description=description,
            flow=None,
            generation_status=GenerationStatus.IDLE.value,
            whop_product_id=whop_product_id or None,
        )
        self.db.add(funnel)
        await self.db.flush()

        for resource in resources:
            self.db.add(FunnelResource(funnel_id=funnel.id, resource_id=resource.id))
        await self.db.flush()

        logger.info(f"Created funnel {funnel.id} '{name}' with {len(resources)} resources")
        return funnel

    async def get_funnel(self, user: AuthenticatedUser, funnel_id: uuid.UUID) -> Dict[str, Any]:
        funnel = await self._get_funnel(user, funnel_id)
        resources = await self.get_funnel_resources(funnel.id)
        return funnel.to_dict(resources)

    async def list_funnels(
        self,
        user: AuthenticatedUser,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        filters = [Funnel.experience_id == user.experience_id]
        if not user.is_admin:
            filters.append(Funnel.user_id == user.id)
        if search:
            filters.append(Funnel.name.ilike(f"%{search}%"))

        total = await self.db.scalar(select(func.count(Funnel.id)).where(*filters))
        result = await self.db.execute(
            select(Funnel)
            .where(*filters)
            .order_by(Funnel.updated_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        funnels = result.scalars().all()

        return {
            "funnels": [f.to_dict() for f in funnels],
            "total": total or 0,
            "page": page,
            "limit": limit,
        }

    async def update_funnel(
        self,
        user: AuthenticatedUser,
        funnel_id: uuid.UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        flow: Optional[Dict[str, Any]] = None,
        resource_ids: Optional[List[uuid.UUID]] = None,
    ) -> Funnel:
        funnel = await self._get_funnel(user, funnel_id, "update")

        if name is not None:
            funnel.name = name
        if description is not None:
            funnel.description = description
        if flow is not None:
            repaired = validate_and_repair_flow(flow)
            if repaired is None:
                raise ValidationError("Invalid funnel flow")
            funnel.flow = repaired
        if resource_ids is not None:
            resources = await self._load_resources(user, resource_ids)
            check_product_limits(resources)
            await self._replace_links(funnel.id, resources)

        await self.db.flush()
        return funnel

    async def delete_funnel(self, user: AuthenticatedUser, funnel_id: uuid.UUID) -> bool:
        funnel = await self._get_funnel(user, funnel_id, "delete")
        await self.db.delete(funnel)
        await self.db.flush()
        logger.info(f"Deleted funnel {funnel_id}")
        return True

    # --- Deployment ---

    async def check_for_other_live_funnels(
        self,
        user: AuthenticatedUser,
        product_id: str,
        exclude_funnel_id: Optional[uuid.UUID] = None,
    ) -> Optional[Funnel]:
        query = select(Funnel).where(
            Funnel.experience_id == user.experience_id,
            Funnel.whop_product_id == product_id,
            Funnel.is_deployed.is_(True),
        )
        if exclude_funnel_id:
            query = query.where(Funnel.id != exclude_funnel_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def check_for_any_live_funnels(
        self,
        user: AuthenticatedUser,
        exclude_funnel_id: Optional[uuid.UUID] = None,
    ) -> Optional[Funnel]:
        query = select(Funnel).where(
            Funnel.experience_id == user.experience_id,
            Funnel.is_deployed.is_(True),
        )
        if exclude_funnel_id:
            query = query.where(Funnel.id != exclude_funnel_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def deploy_funnel(self, user: AuthenticatedUser, funnel_id: uuid.UUID) -> Funnel:
        funnel = await self._get_funnel(user, funnel_id, "deploy")
        if not funnel.flow:
            raise BusinessRuleError("Cannot deploy funnel without a flow")

        if funnel.whop_product_id:
            live = await self.check_for_other_live_funnels(user, funnel.whop_product_id, funnel.id)
            if live:
                raise ConflictError(f'Funnel "{live.name}" is currently live for this product.')

        funnel.is_deployed = True
        funnel.was_ever_deployed = True
        await self.db.flush()

        logger.info(f"Deployed funnel {funnel.id}")
        await realtime_service.publish(user.experience_id, "funnel.deployed", {"funnel_id": str(funnel.id)})
        return funnel

    async def undeploy_funnel(self, user: AuthenticatedUser, funnel_id: uuid.UUID) -> Funnel:
        funnel = await self._get_funnel(user, funnel_id, "undeploy")
        funnel.is_deployed = False
        await self.db.flush()

        logger.info(f"Undeployed funnel {funnel.id}")
        await realtime_service.publish(user.experience_id, "funnel.undeployed", {"funnel_id": str(funnel.id)})
        return funnel

    # --- Generation ---

    async def regenerate_funnel_flow(self, user: AuthenticatedUser, funnel_id: uuid.UUID) -> Funnel:
        """
        Generate a new flow with the AI and charge one credit.

        Nothing changes when the user cannot pay. A failed generation marks
        the funnel failed and re-raises without charging.
        """
        if not user.is_admin:
            raise AccessDeniedError("Access denied: Only admins can regenerate funnels")

        funnel = await self._get_funnel(user, funnel_id, "regenerate")

        owner = await self.db.get(User, user.id)
        credits = owner.credits if owner else user.credits
        if credits < REGENERATION_COST:
            raise InsufficientCreditsError("Insufficient credits: Regeneration requires 1 credit")

        funnel.generation_status = GenerationStatus.GENERATING.value
        await self.db.flush()
        await realtime_service.publish(user.experience_id, "generation.started", {"funnel_id": str(funnel.id)})

        resources = await self.get_funnel_resources(funnel.id)

        try:
            flow = await self.ai.generate_funnel_flow(resources)
            violations = validate_resource_placement(flow, resources)
            if violations:
                raise ValidationError("Generated funnel breaks resource rules: " + "; ".join(violations))
        except Exception as e:
            funnel.generation_status = GenerationStatus.FAILED.value
            await self.db.flush()
            logger.error(f"Generation failed for funnel {funnel.id}: {e}")
            await realtime_service.publish(
                user.experience_id,
                "generation.failed",
                {"funnel_id": str(funnel.id), "error": str(e)},
            )
            raise

        funnel.flow = flow
        funnel.generation_status = GenerationStatus.COMPLETED.value
        funnel.is_deployed = False
        await self.db.flush()

        try:
            await UserContextService(self.db).update_user_credits(
                user.whop_user_id, user.experience_id, REGENERATION_COST, "subtract"
            )
        except Exception as e:
            logger.warning(f"Credit deduction failed for {user.whop_user_id}: {e}")

        await realtime_service.publish(user.experience_id, "generation.completed", {"funnel_id": str(funnel.id)})
        return funnel

    async def reset_stuck_generations(self, max_age_minutes: int = 15) -> int:
        """Mark generations older than max_age_minutes as failed."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)
        result = await self.db.execute(
            update(Funnel)
            .where(
                Funnel.generation_status == GenerationStatus.GENERATING.value,
                Funnel.updated_at < cutoff,
            )
            .values(generation_status=GenerationStatus.FAILED.value)
        )
        count = result.rowcount or 0
        if count:
            logger.warning(f"Marked {count} stuck generations as failed")
        return count

    # --- Analytics / offers ---

    async def get_funnel_analytics(
        self,
        user: AuthenticatedUser,
        funnel_id: uuid.UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        await self._get_funnel(user, funnel_id, "view")
        return await AnalyticsService(self.db).get_daily_funnel_stats(user, funnel_id, start_date, end_date)

    async def get_available_offers(self, user: AuthenticatedUser, funnel_id: uuid.UUID) -> Dict[str, List[str]]:
        funnel = await self._get_funnel(user, funnel_id, "view")
        if not funnel.flow:
            return {}
        return annotate_available_offers(funnel.flow)

    async def create_tracking_link(
        self,
        user: AuthenticatedUser,
        funnel_id: uuid.UUID,
        plan_id: str,
        block_id: str,
    ) -> Dict[str, Any]:
        """
        Map a Whop plan to an OFFER block so payments on that plan are
        attributed to this funnel.
        """
        if not user.is_admin:
            raise AccessDeniedError("Access denied: Only admins can create tracking links")

        funnel = await self._get_funnel(user, funnel_id, "track")
        flow = funnel.flow or {}
        block = (flow.get("blocks") or {}).get(block_id)
        if not block or not is_offer_block(flow, block_id):
            raise ValidationError(f"Block {block_id} is not an OFFER block of this funnel")

        resources = await self.get_funnel_resources(funnel.id)
        resource = next((r for r in resources if r.name == block.get("resourceName")), None)
        product_id = (resource.whop_product_id if resource else None) or funnel.whop_product_id or ""

        name = await TrackingService(self.db).create_tracking_link(
            plan_id, funnel.id, block_id, product_id, experience_id=user.experience_id
        )
        return {"plan_id": plan_id, "block_id": block_id, "product_id": product_id, "name": name}

    # --- Resource assignment ---

    async def add_resource_to_funnel(
        self,
        user: AuthenticatedUser,
        funnel_id: uuid.UUID,
        resource_id: uuid.UUID,
    ) -> Funnel:
        """Link one resource. Serialised per user so limit checks cannot race."""

        async def job() -> Funnel:
            funnel = await self._get_funnel(user, funnel_id, "modify")
            resource = await self.db.get(Resource, resource_id)
            if not resource or resource.experience_id != user.experience_id:
                raise NotFoundError("Resource not found")
            if not user.is_admin and resource.user_id != user.id:
                raise AccessDeniedError("Access denied: You can only use your own resources")

            current = await self.get_funnel_resources(funnel.id)
            if any(r.id == resource.id for r in current):
                raise ConflictError("Resource is already in this funnel")
            check_product_limits(current + [resource])

            self.db.add(FunnelResource(funnel_id=funnel.id, resource_id=resource.id))
            await self.db.flush()
            logger.info(f"Added resource {resource.id} to funnel {funnel.id}")
            return funnel

        return await self.queue.enqueue(user.id, user.experience_id, job)

    async def remove_resource_from_funnel(
        self,
        user: AuthenticatedUser,
        funnel_id: uuid.UUID,
        resource_id: uuid.UUID,
    ) -> bool:
        funnel = await self._get_funnel(user, funnel_id, "modify")
        result = await self.db.execute(
            delete(FunnelResource).where(
                FunnelResource.funnel_id == funnel.id,
                FunnelResource.resource_id == resource_id,
            )
        )
        if not result.rowcount:
            raise NotFoundError("Resource is not in this funnel")
        await self.db.flush()
        return True

    async def assign_resources_to_funnel(
        self,
        user: AuthenticatedUser,
        funnel_id: uuid.UUID,
        resource_ids: List[uuid.UUID],
    ) -> Funnel:
        funnel = await self._get_funnel(user, funnel_id, "modify")
        resources = await self._load_resources(user, resource_ids)
        check_product_limits(resources)
        await self._replace_links(funnel.id, resources)
        return funnel
