"""
Resource Service - CRUD for the products funnels offer.
"""

import uuid
import logging
from typing import Optional, List, Dict, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AccessDeniedError, BusinessRuleError, LimitExceededError, NotFoundError, ValidationError
from app.funnel.states import GLOBAL_LIMITS, ResourceCategory, ResourceType
from app.models.funnel import Funnel
from app.models.funnel_resource import FunnelResource
from app.models.resource import Resource
from app.services.user_context_service import AuthenticatedUser

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"name", "type", "category", "link", "code", "description", "whop_product_id", "whop_membership_id"}

IN_USE_MESSAGE = "Cannot delete resource: It is currently used in deployed funnels"


def _enum_value(enum_cls, value: Any) -> str:
    """Accept enum members or raw strings; reject unknown values."""
    try:
        return enum_cls(getattr(value, "value", value)).value
    except ValueError:
        raise ValidationError(f"Invalid {enum_cls.__name__}: {value}")


class ResourceService:
    """Service for resource management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_resource(self, user: AuthenticatedUser, resource_id: uuid.UUID, action: str = "access") -> Resource:
        resource = await self.db.get(Resource, resource_id)
        if not resource or resource.experience_id != user.experience_id:
            raise NotFoundError("Resource not found")
        if not user.is_admin and resource.user_id != user.id:
            raise AccessDeniedError(f"Access denied: You can only {action} your own resources")
        return resource

    async def _deployed_funnels_using(self, resource_ids: List[uuid.UUID]) -> List[Funnel]:
        result = await self.db.execute(
            select(Funnel)
            .join(FunnelResource, FunnelResource.funnel_id == Funnel.id)
            .where(
                FunnelResource.resource_id.in_(resource_ids),
                Funnel.is_deployed.is_(True),
            )
        )
        return list(result.scalars().unique().all())

    async def create_resource(
        self,
        user: AuthenticatedUser,
        name: str,
        type: str,
        category: str,
        link: str,
        code: Optional[str] = None,
        description: Optional[str] = None,
        whop_product_id: Optional[str] = None,
        whop_membership_id: Optional[str] = None,
    ) -> Resource:
        owned = await self.db.scalar(
            select(func.count(Resource.id)).where(
                Resource.user_id == user.id,
                Resource.experience_id == user.experience_id,
            )
        )
        if (owned or 0) >= GLOBAL_LIMITS.PRODUCTS:
            raise LimitExceededError(
                f"Cannot create resource: limit reached (max {GLOBAL_LIMITS.PRODUCTS} products per account)"
            )

        resource_type = _enum_value(ResourceType, type)
        if resource_type == ResourceType.MY_PRODUCTS.value and not (whop_product_id or "").strip():
            raise ValidationError("WHOP product ID cannot be empty")

        resource = Resource(
            experience_id=user.experience_id,
            user_id=user.id,
            name=name,
            type=resource_type,
            category=_enum_value(ResourceCategory, category),
            link=link,
            code=code or None,
            description=description,
            whop_product_id=(whop_product_id or "").strip() or None,
            whop_membership_id=whop_membership_id,
        )
        self.db.add(resource)
        await self.db.flush()

        logger.info(f"Created resource {resource.id} '{name}' ({resource.category})")
        return resource

    async def get_resource(self, user: AuthenticatedUser, resource_id: uuid.UUID) -> Dict[str, Any]:
        resource = await self._get_resource(user, resource_id)
        result = await self.db.execute(
            select(Funnel)
            .join(FunnelResource, FunnelResource.funnel_id == Funnel.id)
            .where(FunnelResource.resource_id == resource.id)
        )
        data = resource.to_dict()
        data["funnels"] = [
            {"id": str(f.id), "name": f.name, "is_deployed": f.is_deployed}
            for f in result.scalars().all()
        ]
        return data

    async def list_resources(
        self,
        user: AuthenticatedUser,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        type: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        filters = [Resource.experience_id == user.experience_id]
        if not user.is_admin:
            filters.append(Resource.user_id == user.id)
        if search:
            filters.append(Resource.name.ilike(f"%{search}%"))
        if type:
            filters.append(Resource.type == _enum_value(ResourceType, type))
        if category:
            filters.append(Resource.category == _enum_value(ResourceCategory, category))

        total = await self.db.scalar(select(func.count(Resource.id)).where(*filters))
        result = await self.db.execute(
            select(Resource)
            .where(*filters)
            .order_by(Resource.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )

        return {
            "resources": [r.to_dict() for r in result.scalars().all()],
            "total": total or 0,
            "page": page,
            "limit": limit,
        }

    async def update_resource(self, user: AuthenticatedUser, resource_id: uuid.UUID, **fields: Any) -> Resource:
        resource = await self._get_resource(user, resource_id, "update")

        for key, value in fields.items():
            if key not in UPDATABLE_FIELDS or value is None:
                continue
            if key == "type":
                value = _enum_value(ResourceType, value)
            elif key == "category":
                value = _enum_value(ResourceCategory, value)
            setattr(resource, key, value)

        if resource.type == ResourceType.MY_PRODUCTS.value and not (resource.whop_product_id or "").strip():
            raise ValidationError("WHOP product ID cannot be empty")

        await self.db.flush()
        return resource

    async def delete_resource(self, user: AuthenticatedUser, resource_id: uuid.UUID) -> bool:
        resource = await self._get_resource(user, resource_id, "delete")
        if await self._deployed_funnels_using([resource.id]):
            raise BusinessRuleError(IN_USE_MESSAGE)

        await self.db.delete(resource)
        await self.db.flush()
        logger.info(f"Deleted resource {resource_id}")
        return True

    async def bulk_delete_resources(self, user: AuthenticatedUser, resource_ids: List[uuid.UUID]) -> Dict[str, Any]:
        """All-or-nothing delete."""
        unique_ids = list(dict.fromkeys(resource_ids))
        if not unique_ids:
            return {"deleted": 0, "errors": []}

        resources = [await self._get_resource(user, rid, "delete") for rid in unique_ids]

        in_use = await self._deployed_funnels_using(unique_ids)
        if in_use:
            raise BusinessRuleError(IN_USE_MESSAGE)

        for resource in resources:
            await self.db.delete(resource)
        await self.db.flush()

        logger.info(f"Bulk deleted {len(resources)} resources")
        return {"deleted": len(resources), "errors": []}
