"""
Pytest configuration and fixtures.
"""

import sys
import os
import uuid
from typing import AsyncGenerator

# Settings are read at import time
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("DATABASE_URL", "")
os.environ.setdefault("OPENAI_API_KEY", "sk-live-unit")
os.environ.setdefault("WHOP_API_KEY", "")
os.environ.setdefault("WHOP_WEBHOOK_SECRET", "")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Add app to path
sys.path.append(os.getcwd())

from app.database import Base
import app.models  # noqa: F401
from app.funnel.states import AccessLevel, ResourceCategory, ResourceType
from app.models.experience import Experience
from app.models.funnel import Funnel
from app.models.resource import Resource
from app.models.user import User
from app.services import analytics_service, user_context_service
from app.services.user_context_service import AuthenticatedUser

# Use in-memory SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def test_engine():
    """Create async engine for tests; one connection so the memory db survives."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async_session = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def clear_caches():
    """In-process caches are module level; keep tests independent."""
    user_context_service.clear_user_context_cache()
    analytics_service._analytics_cache.clear()
    yield
    user_context_service.clear_user_context_cache()
    analytics_service._analytics_cache.clear()


@pytest.fixture(autouse=True)
def no_realtime(monkeypatch):
    """Realtime events go to a list instead of Redis."""
    published = []

    async def fake_publish(experience_id, event_type, payload=None):
        published.append((event_type, payload or {}))
        return True

    monkeypatch.setattr("app.services.realtime_service.publish", fake_publish)
    return published


@pytest_asyncio.fixture
async def experience(db) -> Experience:
    exp = Experience(
        whop_experience_id="exp_test",
        whop_company_id="biz_test",
        name="Test Experience",
    )
    db.add(exp)
    await db.flush()
    return exp


async def make_user(
    db: AsyncSession,
    experience: Experience,
    whop_user_id: str = "user_admin",
    access_level: str = AccessLevel.ADMIN.value,
    credits: int = 5,
) -> User:
    user = User(
        whop_user_id=whop_user_id,
        experience_id=experience.id,
        email=f"{whop_user_id}@example.com",
        name=whop_user_id,
        access_level=access_level,
        credits=credits,
    )
    db.add(user)
    await db.flush()
    return user


def as_context(user: User, experience: Experience) -> AuthenticatedUser:
    return AuthenticatedUser.from_models(user, experience)


async def make_resource(
    db: AsyncSession,
    user: User,
    name: str,
    category: ResourceCategory = ResourceCategory.FREE_VALUE,
    link: str = "https://example.com/item",
) -> Resource:
    resource = Resource(
        experience_id=user.experience_id,
        user_id=user.id,
        name=name,
        type=ResourceType.AFFILIATE.value,
        category=category.value,
        link=link,
    )
    db.add(resource)
    await db.flush()
    return resource


def sample_flow() -> dict:
    """Two-funnel flow: welcome gate into a strategy session ending on an offer."""
    return {
        "startBlockId": "welcome_1",
        "stages": [
            {"id": "s1", "name": "WELCOME", "explanation": "", "blockIds": ["welcome_1"]},
            {"id": "s2", "name": "VALUE_DELIVERY", "explanation": "", "blockIds": ["value_1"]},
            {"id": "s3", "name": "TRANSITION", "explanation": "", "blockIds": ["transition_1"]},
            {"id": "s4", "name": "EXPERIENCE_QUALIFICATION", "explanation": "", "blockIds": ["experience_1"]},
            {"id": "s5", "name": "PAIN_POINT_QUALIFICATION", "explanation": "", "blockIds": ["pain_1"]},
            {"id": "s6", "name": "OFFER", "explanation": "", "blockIds": ["offer_1"]},
        ],
        "blocks": {
            "welcome_1": {
                "id": "welcome_1",
                "message": "Welcome! What brings you here?",
                "options": [
                    {"text": "Trading", "nextBlockId": "value_1"},
                    {"text": "Just exploring for now", "nextBlockId": None},
                ],
            },
            "value_1": {
                "id": "value_1",
                "message": "Here is the guide. Reply done.",
                "resourceName": "Free Guide",
                "options": [{"text": "done", "nextBlockId": "transition_1"}],
            },
            "transition_1": {
                "id": "transition_1",
                "message": "Great! Continue in the app: [LINK]",
                "options": [{"text": "Continue", "nextBlockId": "experience_1"}],
            },
            "experience_1": {
                "id": "experience_1",
                "message": "How experienced are you?",
                "options": [{"text": "Beginner", "nextBlockId": "pain_1"}],
            },
            "pain_1": {
                "id": "pain_1",
                "message": "Biggest challenge?",
                "options": [{"text": "Risk", "nextBlockId": "offer_1"}],
            },
            "offer_1": {
                "id": "offer_1",
                "message": "Get the course here: [LINK]",
                "resourceName": "Pro Course",
                "options": [],
            },
        },
    }


async def make_funnel(
    db: AsyncSession,
    user: User,
    name: str = "Main Funnel",
    flow: dict = None,
    is_deployed: bool = False,
    whop_product_id: str = None,
) -> Funnel:
    funnel = Funnel(
        experience_id=user.experience_id,
        user_id=user.id,
        name=name,
        flow=flow,
        is_deployed=is_deployed,
        whop_product_id=whop_product_id,
    )
    db.add(funnel)
    await db.flush()
    return funnel


def random_id() -> uuid.UUID:
    return uuid.uuid4()
