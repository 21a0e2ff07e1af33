"""
Tests for ResourceService.
"""

import pytest

from app.errors import AccessDeniedError, BusinessRuleError, LimitExceededError, NotFoundError, ValidationError
from app.funnel.states import AccessLevel, ResourceCategory, ResourceType, GLOBAL_LIMITS
from app.models.funnel_resource import FunnelResource
from app.models.resource import Resource
from app.services.resource_service import IN_USE_MESSAGE, ResourceService

from conftest import as_context, make_funnel, make_resource, make_user, random_id


async def _link(db, funnel, resource):
    db.add(FunnelResource(funnel_id=funnel.id, resource_id=resource.id))
    await db.flush()


class TestCreateResource:
    """Tests for resource creation rules."""

    @pytest.mark.asyncio
    async def test_create_affiliate(self, db, experience):
        owner = await make_user(db, experience)

        resource = await ResourceService(db).create_resource(
            as_context(owner, experience),
            name="Partner Course",
            type=ResourceType.AFFILIATE,
            category="PAID",
            link="https://partner.example.com",
            code="SAVE20",
        )

        assert resource.type == "AFFILIATE"
        assert resource.category == "PAID"
        assert resource.code == "SAVE20"

    @pytest.mark.asyncio
    async def test_my_products_needs_whop_id(self, db, experience):
        owner = await make_user(db, experience)

        with pytest.raises(ValidationError) as exc:
            await ResourceService(db).create_resource(
                as_context(owner, experience),
                name="Own",
                type="MY_PRODUCTS",
                category="PAID",
                link="https://whop.com/x",
                whop_product_id="  ",
            )
        assert exc.value.message == "WHOP product ID cannot be empty"

    @pytest.mark.asyncio
    async def test_unknown_category(self, db, experience):
        owner = await make_user(db, experience)

        with pytest.raises(ValidationError):
            await ResourceService(db).create_resource(
                as_context(owner, experience), name="X", type="AFFILIATE", category="GOLD", link="https://x",
            )

    @pytest.mark.asyncio
    async def test_product_limit(self, db, experience):
        owner = await make_user(db, experience)
        for i in range(GLOBAL_LIMITS.PRODUCTS):
            await make_resource(db, owner, f"R{i}")

        with pytest.raises(LimitExceededError):
            await ResourceService(db).create_resource(
                as_context(owner, experience), name="Extra", type="AFFILIATE", category="PAID", link="https://x",
            )


class TestReadUpdate:
    """Tests for reading and updating resources."""

    @pytest.mark.asyncio
    async def test_get_lists_funnels(self, db, experience):
        owner = await make_user(db, experience)
        resource = await make_resource(db, owner, "Free Guide")
        funnel = await make_funnel(db, owner, name="Uses guide")
        await _link(db, funnel, resource)

        data = await ResourceService(db).get_resource(as_context(owner, experience), resource.id)

        assert data["funnels"] == [{"id": str(funnel.id), "name": "Uses guide", "is_deployed": False}]

    @pytest.mark.asyncio
    async def test_list_filters(self, db, experience):
        owner = await make_user(db, experience)
        await make_resource(db, owner, "Free Guide")
        await make_resource(db, owner, "Pro Course", ResourceCategory.PAID)

        listing = await ResourceService(db).list_resources(as_context(owner, experience), category="PAID")

        assert listing["total"] == 1
        assert listing["resources"][0]["name"] == "Pro Course"

    @pytest.mark.asyncio
    async def test_update_fields(self, db, experience):
        owner = await make_user(db, experience)
        resource = await make_resource(db, owner, "Old")

        updated = await ResourceService(db).update_resource(
            as_context(owner, experience), resource.id, name="New", category="PAID", id="ignored",
        )

        assert updated.name == "New"
        assert updated.category == "PAID"

    @pytest.mark.asyncio
    async def test_customer_cannot_touch_others(self, db, experience):
        owner = await make_user(db, experience)
        customer = await make_user(db, experience, "user_cust", AccessLevel.CUSTOMER.value)
        resource = await make_resource(db, owner, "Owner's")

        with pytest.raises(AccessDeniedError):
            await ResourceService(db).update_resource(as_context(customer, experience), resource.id, name="Mine")

    @pytest.mark.asyncio
    async def test_missing_resource(self, db, experience):
        owner = await make_user(db, experience)

        with pytest.raises(NotFoundError):
            await ResourceService(db).get_resource(as_context(owner, experience), random_id())


class TestDeleteResource:
    """Tests for delete and bulk delete."""

    @pytest.mark.asyncio
    async def test_delete_unused(self, db, experience):
        owner = await make_user(db, experience)
        resource = await make_resource(db, owner, "Free Guide")

        assert await ResourceService(db).delete_resource(as_context(owner, experience), resource.id)
        assert await db.get(Resource, resource.id) is None

    @pytest.mark.asyncio
    async def test_delete_in_deployed_funnel(self, db, experience):
        owner = await make_user(db, experience)
        resource = await make_resource(db, owner, "Free Guide")
        funnel = await make_funnel(db, owner, is_deployed=True)
        await _link(db, funnel, resource)

        with pytest.raises(BusinessRuleError) as exc:
            await ResourceService(db).delete_resource(as_context(owner, experience), resource.id)
        assert exc.value.message == IN_USE_MESSAGE

    @pytest.mark.asyncio
    async def test_bulk_delete_all_or_nothing(self, db, experience):
        owner = await make_user(db, experience)
        free = await make_resource(db, owner, "Free Guide")
        used = await make_resource(db, owner, "Pro Course", ResourceCategory.PAID)
        funnel = await make_funnel(db, owner, is_deployed=True)
        await _link(db, funnel, used)

        with pytest.raises(BusinessRuleError):
            await ResourceService(db).bulk_delete_resources(as_context(owner, experience), [free.id, used.id])

        assert await db.get(Resource, free.id) is not None

    @pytest.mark.asyncio
    async def test_bulk_delete(self, db, experience):
        owner = await make_user(db, experience)
        ids = [(await make_resource(db, owner, f"R{i}")).id for i in range(3)]

        result = await ResourceService(db).bulk_delete_resources(as_context(owner, experience), ids + ids[:1])

        assert result == {"deleted": 3, "errors": []}
