"""
Whop Webhook Handler.
Verifies signatures and processes install, membership, product and payment events.
"""

import hmac
import hashlib
import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any

from fastapi import APIRouter, Request, HTTPException, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.funnel.machine import FunnelMachine
from app.funnel.states import GLOBAL_LIMITS, ResourceCategory, ResourceType
from app.models.experience import Experience
from app.models.funnel import Funnel
from app.models.resource import Resource
from app.models.user import User
from app.models.webhook_event import WebhookEvent
from app.services.analytics_service import AnalyticsService
from app.services.funnel_service import FunnelService
from app.services.tracking_service import TrackingService
from app.services.user_context_service import AuthenticatedUser, UserContextService
from app.services.whop_service import WhopService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/whop")
async def whop_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Handle Whop webhook events.

    Key events:
    - app.installed: import the company's products as free resources
    - membership.created / membership.went_valid: paid resource + funnel start
    - product.created: new resource, paid when priced
    - payment.succeeded: credit packs and funnel sale attribution
    """
    try:
        body = await request.body()

        signature = request.headers.get("X-Whop-Signature", "")
        if not verify_whop_signature(body, signature):
            logger.error("Invalid Whop webhook signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        payload = await request.json()
        header_experience_id = request.headers.get("X-Whop-Experience-Id")
        return await process_whop_event(db, payload, header_experience_id)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error processing Whop webhook: {e}", exc_info=True)
        # Return 200 to prevent excessive retries
        return {"status": "error", "message": str(e)}


HANDLED_ACTIONS = (
    "app.installed",
    "membership.created",
    "membership.went_valid",
    "product.created",
    "payment.succeeded",
)


async def process_whop_event(
    db: AsyncSession,
    payload: Dict[str, Any],
    header_experience_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Dedupe and dispatch one event.

    The dedupe row and the handler's writes share a savepoint, so a failed
    event is not recorded and the next delivery processes it again.
    """
    action = payload.get("action") or payload.get("type") or ""
    if action == "app_installed":
        action = "app.installed"
    data = payload.get("data") or {}

    logger.info(f"Whop webhook received: {action}")

    if action not in HANDLED_ACTIONS:
        logger.info(f"Unhandled Whop event: {action}")
        return {"status": "ok"}

    event_id = payload.get("id") or (f"{action}:{data['id']}" if data.get("id") else None)

    try:
        async with db.begin_nested():
            if event_id and await is_duplicate_event(db, event_id, action):
                logger.info(f"Duplicate event {event_id} ignored")
                return {"status": "duplicate"}

            experience = await resolve_experience(db, payload, header_experience_id)

            if action == "app.installed":
                await handle_app_installed(db, experience)
            elif action == "product.created":
                await handle_product_created(db, experience, data)
            elif action == "payment.succeeded":
                await handle_payment_succeeded(db, experience, data)
            else:
                await handle_membership_created(db, experience, data)
    except Exception as e:
        logger.error(
            f"Error processing Whop event {event_id or action}: {e}",
            exc_info=True,
            extra={"event_id": event_id},
        )
        # Return 200 to prevent excessive retries
        return {"status": "error", "message": str(e)}

    return {"status": "ok"}


def verify_whop_signature(payload: bytes, signature: str) -> bool:
    """
    Verify Whop webhook signature using HMAC SHA256.
    """
    if not settings.whop_webhook_secret:
        logger.warning("Whop webhook secret not configured")
        return True  # Skip verification in development

    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    expected_signature = hmac.new(
        settings.whop_webhook_secret.encode(),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected_signature, signature)


async def is_duplicate_event(db: AsyncSession, event_id: str, action: str) -> bool:
    """Record the event id; True when it was already seen."""
    result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
    if result.scalar_one_or_none():
        return True
    db.add(WebhookEvent(event_id=event_id, action=action))
    await db.flush()
    return False


async def resolve_experience(
    db: AsyncSession,
    payload: Dict[str, Any],
    header_experience_id: Optional[str] = None,
) -> Optional[Experience]:
    """Experience from an explicit id, else the company's first experience."""
    data = payload.get("data") or {}
    contexts = UserContextService(db)

    whop_experience_id = data.get("experience_id") or payload.get("experience_id") or header_experience_id
    if whop_experience_id:
        experience = await contexts.get_experience_by_whop_id(whop_experience_id)
        if experience:
            return experience

    company_id = data.get("company_id") or data.get("page_id") or payload.get("company_id")
    if company_id:
        return await contexts.get_experience_by_company(company_id)
    return None


def product_link(company_id: str, product_id: str, whop_experience_id: str) -> str:
    return f"https://whop.com/hub/{company_id}/products/{product_id}?ref={whop_experience_id}"


async def create_product_resource(
    db: AsyncSession,
    experience: Experience,
    owner: User,
    product_id: str,
    name: str,
    category: ResourceCategory,
) -> Optional[Resource]:
    """Create a MY_PRODUCTS resource for a Whop product unless one exists."""
    result = await db.execute(
        select(Resource).where(
            Resource.experience_id == experience.id,
            Resource.whop_product_id == product_id,
        ).limit(1)
    )
    if result.scalar_one_or_none():
        logger.info(f"Resource for product {product_id} already exists")
        return None

    owned = await db.execute(
        select(Resource.id).where(
            Resource.experience_id == experience.id,
            Resource.user_id == owner.id,
        )
    )
    if len(owned.all()) >= GLOBAL_LIMITS.PRODUCTS:
        logger.warning(f"Product limit reached for {experience.whop_experience_id}, skipping {product_id}")
        return None

    resource = Resource(
        experience_id=experience.id,
        user_id=owner.id,
        name=name,
        type=ResourceType.MY_PRODUCTS.value,
        category=category.value,
        link=product_link(experience.whop_company_id, product_id, experience.whop_experience_id),
        whop_product_id=product_id,
    )
    db.add(resource)
    await db.flush()
    logger.info(f"Created {category.value} resource '{name}' for product {product_id}")
    return resource


def _product_name(data: Dict[str, Any], product_id: str) -> str:
    product = data.get("product") or {}
    return data.get("title") or data.get("name") or product.get("title") or product.get("name") or f"Product {product_id}"


def _amount(value: Any) -> Decimal:
    try:
        return Decimal(str(value or 0))
    except InvalidOperation:
        return Decimal("0")


async def handle_app_installed(db: AsyncSession, experience: Optional[Experience]) -> None:
    """One-time import of the company's products as free resources."""
    if not experience:
        logger.warning("app.installed for unknown experience")
        return

    owner = await UserContextService(db).get_admin(experience.id)
    if not owner:
        logger.info(f"No admin yet for {experience.whop_experience_id}, product sync deferred")
        return
    if owner.products_synced:
        return

    products = await WhopService().list_company_products(experience.whop_company_id)
    for product in products:
        product_id = product.get("id")
        if not product_id:
            continue
        await create_product_resource(
            db, experience, owner, product_id, _product_name(product, product_id), ResourceCategory.FREE_VALUE,
        )

    owner.products_synced = True
    await db.flush()
    logger.info(f"Synced {len(products)} products for {experience.whop_experience_id}")


async def handle_membership_created(
    db: AsyncSession,
    experience: Optional[Experience],
    data: Dict[str, Any],
) -> None:
    if not experience:
        logger.warning("Membership event for unknown experience")
        return

    product_id = data.get("product_id") or (data.get("product") or {}).get("id")
    member_id = data.get("user_id") or (data.get("user") or {}).get("id")
    if not product_id:
        logger.error(f"No product_id in membership event: {data.get('id')}")
        return

    owner = await UserContextService(db).get_admin(experience.id)
    if not owner:
        logger.warning(f"No admin for {experience.whop_experience_id}, membership {data.get('id')} skipped")
        return

    await create_product_resource(
        db, experience, owner, product_id, _product_name(data, product_id), ResourceCategory.PAID,
    )

    if not member_id:
        return

    # The product's own funnel wins, else whatever is live in the experience
    context = AuthenticatedUser.from_models(owner, experience)
    funnels = FunnelService(db)
    funnel = await funnels.check_for_other_live_funnels(context, product_id)
    if funnel is None:
        funnel = await funnels.check_for_any_live_funnels(context)
    if funnel and funnel.flow:
        await FunnelMachine(db).start_conversation(experience, funnel, member_id)


async def handle_product_created(
    db: AsyncSession,
    experience: Optional[Experience],
    data: Dict[str, Any],
) -> None:
    if not experience:
        logger.warning("product.created for unknown experience")
        return

    product_id = data.get("id")
    owner = await UserContextService(db).get_admin(experience.id)
    if not product_id or not owner:
        return

    price = _amount(data.get("price") or data.get("initial_price"))
    category = ResourceCategory.PAID if price > 0 else ResourceCategory.FREE_VALUE
    await create_product_resource(db, experience, owner, product_id, _product_name(data, product_id), category)


async def handle_payment_succeeded(
    db: AsyncSession,
    experience: Optional[Experience],
    data: Dict[str, Any],
) -> None:
    metadata = data.get("metadata") or {}

    if metadata.get("type") == "credit_pack":
        user_id = data.get("user_id") or metadata.get("user_id")
        credits = int(metadata.get("credits") or 0)
        if not experience or not user_id or credits <= 0:
            logger.error(f"Credit pack payment {data.get('id')} missing user, experience or credits")
            return
        await UserContextService(db).update_user_credits(user_id, experience.id, credits, "add")
        logger.info(f"Added {credits} credits to {user_id}")
        return

    plan_id = data.get("plan_id") or (data.get("plan") or {}).get("id")
    context = await TrackingService(db).get_funnel_context(plan_id)
    if not context:
        logger.info(f"Payment {data.get('id')} not attributable to a funnel")
        return

    try:
        funnel = await db.get(Funnel, uuid.UUID(context["funnel_id"]))
    except ValueError:
        funnel = None
    if not funnel:
        logger.warning(f"Payment {data.get('id')} references unknown funnel {context['funnel_id']}")
        return

    revenue = _amount(data.get("final_amount") or data.get("subtotal") or data.get("amount"))
    await AnalyticsService(db).record_funnel_event(
        funnel.id, funnel.experience_id, "conversions", revenue=revenue,
    )
    logger.info(f"Attributed payment {data.get('id')} to funnel {funnel.id} via {context['source']}")
