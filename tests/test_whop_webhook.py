"""
Tests for the Whop webhook handler.
"""

import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from app.api.webhooks.whop import (
    handle_app_installed,
    handle_membership_created,
    handle_payment_succeeded,
    handle_product_created,
    is_duplicate_event,
    process_whop_event,
    resolve_experience,
    verify_whop_signature,
)
from app.config import settings
from app.database import get_db
from app.funnel.states import ResourceCategory
from app.main import app
from app.models.conversation import Conversation
from app.models.funnel_analytics import FunnelAnalytics
from app.models.resource import Resource
from app.models.user import User
from app.services.tracking_service import TrackingService

from conftest import make_funnel, make_user, sample_flow

SECRET = "whsec_test"


def _sign(body: bytes) -> str:
    return hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()


class TestSignature:
    """Tests for HMAC verification."""

    def test_valid_signature(self, monkeypatch):
        monkeypatch.setattr(settings, "whop_webhook_secret", SECRET)
        body = b'{"action": "x"}'
        assert verify_whop_signature(body, _sign(body))
        assert verify_whop_signature(body, "sha256=" + _sign(body))

    def test_invalid_signature(self, monkeypatch):
        monkeypatch.setattr(settings, "whop_webhook_secret", SECRET)
        assert not verify_whop_signature(b"{}", "deadbeef")

    def test_skipped_without_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "whop_webhook_secret", "")
        assert verify_whop_signature(b"{}", "")


class TestWebhookEndpoint:
    """Tests for the HTTP endpoint."""

    @pytest.fixture
    def client(self, monkeypatch):
        async def no_db():
            yield None

        monkeypatch.setattr(settings, "whop_webhook_secret", SECRET)
        app.dependency_overrides[get_db] = no_db
        yield TestClient(app)
        app.dependency_overrides.clear()

    def test_rejects_bad_signature(self, client):
        response = client.post("/webhooks/whop", content=b'{"action": "x"}', headers={"X-Whop-Signature": "bad"})
        assert response.status_code == 401

    def test_unhandled_event_ok(self, client):
        body = json.dumps({"action": "something.else", "data": {}}).encode()
        response = client.post("/webhooks/whop", content=body, headers={"X-Whop-Signature": _sign(body)})
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_processing_error_still_200(self, client):
        body = json.dumps({"id": "evt_1", "action": "payment.succeeded", "data": {}}).encode()
        response = client.post("/webhooks/whop", content=body, headers={"X-Whop-Signature": _sign(body)})
        assert response.status_code == 200
        assert response.json()["status"] == "error"


class TestHandlers:
    """Tests for event handlers against the database."""

    @pytest.mark.asyncio
    async def test_duplicate_events(self, db):
        assert not await is_duplicate_event(db, "evt_1", "payment.succeeded")
        assert await is_duplicate_event(db, "evt_1", "payment.succeeded")

    @pytest.mark.asyncio
    async def test_failed_event_processed_on_redelivery(self, db, experience):
        await make_user(db, experience)
        payload = {
            "id": "evt_retry",
            "action": "product.created",
            "data": {"id": "prod_r", "company_id": "biz_test", "title": "Course", "price": "9.00"},
        }

        with patch(
            "app.api.webhooks.whop.handle_product_created",
            new=AsyncMock(side_effect=RuntimeError("store unavailable")),
        ):
            first = await process_whop_event(db, payload)
        second = await process_whop_event(db, payload)
        third = await process_whop_event(db, payload)

        assert first["status"] == "error"
        assert second == {"status": "ok"}
        assert third == {"status": "duplicate"}
        resource = (await db.execute(select(Resource))).scalar_one()
        assert resource.whop_product_id == "prod_r"

    @pytest.mark.asyncio
    async def test_unknown_action_not_recorded(self, db):
        assert await process_whop_event(db, {"id": "evt_x", "action": "something.else"}) == {"status": "ok"}
        assert not await is_duplicate_event(db, "evt_x", "something.else")

    @pytest.mark.asyncio
    async def test_resolve_experience(self, db, experience):
        assert (await resolve_experience(db, {"data": {"experience_id": "exp_test"}})).id == experience.id
        assert (await resolve_experience(db, {"data": {"company_id": "biz_test"}})).id == experience.id
        assert (await resolve_experience(db, {}, "exp_test")).id == experience.id
        assert await resolve_experience(db, {"data": {}}) is None

    @pytest.mark.asyncio
    async def test_app_installed_syncs_once(self, db, experience):
        owner = await make_user(db, experience)
        products = [{"id": "prod_1", "title": "Starter Pack"}, {"id": "prod_2", "name": "Guide"}]

        with patch(
            "app.api.webhooks.whop.WhopService.list_company_products",
            new=AsyncMock(return_value=products),
        ) as listing:
            await handle_app_installed(db, experience)
            await handle_app_installed(db, experience)

        resources = (await db.execute(select(Resource).order_by(Resource.name))).scalars().all()
        assert [r.name for r in resources] == ["Guide", "Starter Pack"]
        assert all(r.category == ResourceCategory.FREE_VALUE.value for r in resources)
        assert resources[1].link == "https://whop.com/hub/biz_test/products/prod_1?ref=exp_test"
        assert owner.products_synced
        assert listing.await_count == 1

    @pytest.mark.asyncio
    async def test_membership_starts_funnel(self, db, experience):
        owner = await make_user(db, experience)
        await make_funnel(db, owner, flow=sample_flow(), is_deployed=True, whop_product_id="prod_1")

        await handle_membership_created(
            db, experience, {"id": "mem_1", "product_id": "prod_1", "user_id": "cust_9", "title": "VIP"},
        )

        resource = (await db.execute(select(Resource))).scalar_one()
        assert resource.category == ResourceCategory.PAID.value
        conversation = (await db.execute(select(Conversation))).scalar_one()
        assert conversation.whop_user_id == "cust_9"
        assert conversation.current_block_id == "welcome_1"

    @pytest.mark.asyncio
    async def test_membership_falls_back_to_any_live_funnel(self, db, experience):
        owner = await make_user(db, experience)
        funnel = await make_funnel(db, owner, flow=sample_flow(), is_deployed=True)

        await handle_membership_created(db, experience, {"id": "mem_2", "product_id": "prod_other", "user_id": "cust_7"})

        conversation = (await db.execute(select(Conversation))).scalar_one()
        assert conversation.funnel_id == funnel.id
        assert conversation.whop_user_id == "cust_7"

    @pytest.mark.asyncio
    async def test_product_created_by_price(self, db, experience):
        await make_user(db, experience)

        await handle_product_created(db, experience, {"id": "prod_free", "title": "Freebie", "price": 0})
        await handle_product_created(db, experience, {"id": "prod_paid", "title": "Course", "price": "19.00"})

        rows = (await db.execute(select(Resource.whop_product_id, Resource.category))).all()
        assert dict(rows) == {"prod_free": "FREE_VALUE", "prod_paid": "PAID"}

    @pytest.mark.asyncio
    async def test_credit_pack_payment(self, db, experience):
        owner = await make_user(db, experience, credits=1)

        await handle_payment_succeeded(
            db, experience, {"id": "pay_1", "user_id": owner.whop_user_id, "metadata": {"type": "credit_pack", "credits": "5"}},
        )

        assert (await db.get(User, owner.id)).credits == 6

    @pytest.mark.asyncio
    async def test_funnel_sale_attributed(self, db, experience):
        owner = await make_user(db, experience)
        funnel = await make_funnel(db, owner, flow=sample_flow(), is_deployed=True)
        await TrackingService(db).create_tracking_link("plan_1", funnel.id, "offer_1", "prod_1")

        await handle_payment_succeeded(
            db, experience, {"id": "pay_2", "plan_id": "plan_1", "final_amount": "25.50"},
        )

        row = (await db.execute(select(FunnelAnalytics))).scalar_one()
        assert row.conversions == 1
        assert Decimal(str(row.revenue)) == Decimal("25.50")
