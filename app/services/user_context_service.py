"""
User Context Service - resolves Whop identity headers into a local user.

Experiences and users are created on first sight. Resolved contexts are
cached in-process for a few minutes, keyed by Whop user and experience id.
"""

import uuid
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.funnel.states import AccessLevel
from app.models.experience import Experience
from app.models.user import User
from app.services.ttl_cache import TTLCache
from app.services.whop_service import WhopService

logger = logging.getLogger(__name__)

DEFAULT_EXPERIENCE_NAME = "App Installation"
PLACEHOLDER_USER_NAME = "Unknown User"

_context_cache = TTLCache(settings.user_context_ttl_seconds)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Snapshot of the caller, detached from any session."""

    id: uuid.UUID
    whop_user_id: str
    experience_id: uuid.UUID
    whop_experience_id: str
    whop_company_id: str
    name: str
    email: str
    access_level: str
    credits: int
    products_synced: bool = False

    @property
    def is_admin(self) -> bool:
        return self.access_level == AccessLevel.ADMIN.value

    @property
    def has_access(self) -> bool:
        return self.access_level != AccessLevel.NO_ACCESS.value

    @classmethod
    def from_models(cls, user: User, experience: Experience) -> "AuthenticatedUser":
        return cls(
            id=user.id,
            whop_user_id=user.whop_user_id,
            experience_id=experience.id,
            whop_experience_id=experience.whop_experience_id,
            whop_company_id=experience.whop_company_id,
            name=user.name,
            email=user.email,
            access_level=user.access_level,
            credits=user.credits,
            products_synced=user.products_synced,
        )


def _cache_key(whop_user_id: str, whop_experience_id: str) -> str:
    return f"{whop_user_id}:{whop_experience_id}"


def invalidate_user_context(whop_user_id: str, whop_experience_id: Optional[str] = None) -> int:
    """Drop cached contexts of a user (one experience, or all of them)."""
    if whop_experience_id:
        return int(_context_cache.delete(_cache_key(whop_user_id, whop_experience_id)))
    return _context_cache.delete_matching(f"{whop_user_id}:")


def cleanup_expired_cache() -> int:
    removed = _context_cache.cleanup_expired()
    if removed:
        logger.debug(f"Removed {removed} expired user contexts")
    return removed


def clear_user_context_cache() -> None:
    _context_cache.clear()


class UserContextService:
    """Get-or-create experiences and users, and manage credits."""

    def __init__(self, db: AsyncSession, whop: Optional[WhopService] = None):
        self.db = db
        self.whop = whop or WhopService()

    async def get_user_context(
        self,
        whop_user_id: str,
        whop_experience_id: str,
        whop_company_id: str = "",
        access_level: Optional[str] = None,
        force_refresh: bool = False,
    ) -> Optional[AuthenticatedUser]:
        if not whop_user_id or not whop_experience_id:
            return None

        key = _cache_key(whop_user_id, whop_experience_id)
        if not force_refresh:
            cached = _context_cache.get(key)
            if cached and (access_level is None or cached.access_level == access_level):
                return cached

        experience, fresh_install = await self._get_or_create_experience(
            whop_experience_id, whop_company_id
        )
        user, created = await self._get_or_create_user(
            whop_user_id, experience, access_level, fresh_install
        )

        context = AuthenticatedUser.from_models(user, experience)
        # Rows created here vanish if the request rolls back
        if not (fresh_install or created):
            _context_cache.set(key, context)
        return context

    async def get_experience_by_whop_id(self, whop_experience_id: str) -> Optional[Experience]:
        result = await self.db.execute(
            select(Experience).where(Experience.whop_experience_id == whop_experience_id)
        )
        return result.scalar_one_or_none()

    async def get_experience_by_company(self, whop_company_id: str) -> Optional[Experience]:
        result = await self.db.execute(
            select(Experience)
            .where(Experience.whop_company_id == whop_company_id)
            .order_by(Experience.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_experience(
        self,
        whop_experience_id: str,
        whop_company_id: str,
    ) -> Tuple[Experience, bool]:
        experience = await self.get_experience_by_whop_id(whop_experience_id)
        if experience:
            if whop_company_id and not experience.whop_company_id:
                experience.whop_company_id = whop_company_id
            return experience, False

        name = DEFAULT_EXPERIENCE_NAME
        company_id = whop_company_id
        remote = await self.whop.get_experience(whop_experience_id)
        if remote:
            name = remote.get("name") or name
            company_id = company_id or (remote.get("company") or {}).get("id") or remote.get("company_id") or ""

        experience = Experience(
            whop_experience_id=whop_experience_id,
            whop_company_id=company_id or "",
            name=name,
        )
        self.db.add(experience)
        await self.db.flush()

        logger.info(f"Created experience {whop_experience_id} (company={company_id or 'unknown'})")
        return experience, True

    async def _get_or_create_user(
        self,
        whop_user_id: str,
        experience: Experience,
        access_level: Optional[str],
        fresh_install: bool,
    ) -> Tuple[User, bool]:
        result = await self.db.execute(
            select(User).where(
                User.whop_user_id == whop_user_id,
                User.experience_id == experience.id,
            )
        )
        user = result.scalar_one_or_none()

        if user:
            if access_level and access_level != user.access_level:
                logger.info(f"User {whop_user_id} access: {user.access_level} -> {access_level}")
                user.access_level = access_level
            return user, False

        level = access_level
        if not level:
            level = await self.whop.check_access(whop_user_id, experience.whop_experience_id)
        level = level or AccessLevel.CUSTOMER.value

        profile = await self.whop.get_user(whop_user_id) or {}
        credits = settings.initial_admin_credits if (fresh_install and level == AccessLevel.ADMIN.value) else 0

        user = User(
            whop_user_id=whop_user_id,
            experience_id=experience.id,
            email=profile.get("email") or "",
            name=profile.get("name") or profile.get("username") or PLACEHOLDER_USER_NAME,
            avatar=profile.get("profile_pic_url"),
            access_level=level,
            credits=credits,
        )
        self.db.add(user)
        await self.db.flush()

        logger.info(f"Created user {whop_user_id} in {experience.whop_experience_id} as {level} with {credits} credits")
        return user, True

    async def get_user(self, whop_user_id: str, experience_id: uuid.UUID) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(
                User.whop_user_id == whop_user_id,
                User.experience_id == experience_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_admin(self, experience_id: uuid.UUID) -> Optional[User]:
        """First admin of an experience."""
        result = await self.db.execute(
            select(User)
            .where(
                User.experience_id == experience_id,
                User.access_level == AccessLevel.ADMIN.value,
            )
            .order_by(User.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update_user_credits(
        self,
        whop_user_id: str,
        experience_id: uuid.UUID,
        amount: int,
        operation: str = "add",
    ) -> Optional[int]:
        """Add or subtract credits, never going below zero. Returns the new balance."""
        if operation not in ("add", "subtract"):
            raise ValueError(f"Unknown credit operation: {operation}")

        user = await self.get_user(whop_user_id, experience_id)
        if not user:
            logger.warning(f"Credit update for unknown user {whop_user_id}")
            return None

        if operation == "add":
            user.credits = user.credits + amount
        else:
            user.credits = max(0, user.credits - amount)

        await self.db.flush()
        invalidate_user_context(whop_user_id)
        logger.info(f"Credits for {whop_user_id}: {operation} {amount} -> {user.credits}")
        return user.credits
