"""
Tests for AIService generation and JSON repair.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from app.errors import AIError, AIErrorType, ValidationError
from app.services.ai_service import (
    AIService,
    UNREPAIRABLE_MESSAGE,
    build_generation_prompt,
    categorize_error,
    parse_flow,
    strip_code_fence,
    validate_and_fix_funnel,
)

from conftest import sample_flow

RESOURCES = [
    {"id": "r1", "name": "Free Guide", "category": "FREE_VALUE", "type": "AFFILIATE", "code": ""},
    {"id": "r2", "name": "Pro Course", "category": "PAID", "type": "MY_PRODUCTS", "code": "SAVE10"},
]


class TestHelpers:
    """Tests for prompt building and parsing helpers."""

    def test_categorize_error(self):
        assert categorize_error(Exception("Invalid API key")).type == AIErrorType.AUTHENTICATION
        assert categorize_error(Exception("Rate limit hit")).type == AIErrorType.RATE_LIMIT
        assert categorize_error(Exception("network down")).type == AIErrorType.NETWORK
        assert categorize_error(Exception("bad response")).type == AIErrorType.CONTENT
        assert categorize_error(Exception("boom")).type == AIErrorType.UNKNOWN

    def test_categorize_keeps_ai_errors(self):
        error = AIError("x", AIErrorType.NETWORK)
        assert categorize_error(error) is error

    def test_strip_code_fence(self):
        assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fence('```\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fence(' {"a": 1} ') == '{"a": 1}'

    def test_prompt_lists_resources(self):
        prompt = build_generation_prompt(RESOURCES)
        assert "- Free Guide (ID: r1, Category: Free Value, Type: AFFILIATE)" in prompt
        assert "Category: Paid Product" in prompt
        assert "[Promo Code: SAVE10]" in prompt
        assert '"startBlockId": "welcome_1"' in prompt

    def test_parse_flow_rejects_unusable(self):
        with pytest.raises(ValueError):
            parse_flow('{"startBlockId": "x", "stages": [], "blocks": {}}')
        with pytest.raises(json.JSONDecodeError):
            parse_flow("not json")

    def test_fix_missing_resource_name_from_message(self):
        flow = sample_flow()
        flow["blocks"]["offer_1"]["resourceName"] = "Wrong"
        flow["blocks"]["offer_1"]["message"] = "Join Pro Course now: [LINK]"
        fixed = validate_and_fix_funnel(flow, RESOURCES)
        assert fixed["blocks"]["offer_1"]["resourceName"] == "Pro Course"


class TestGenerateFunnelFlow:
    """Tests for the generate and repair paths."""

    @pytest.mark.asyncio
    async def test_generates_valid_flow(self):
        service = AIService(client=AsyncMock())
        service._complete = AsyncMock(return_value=json.dumps(sample_flow()))

        flow = await service.generate_funnel_flow(RESOURCES)

        assert flow["startBlockId"] == "welcome_1"
        service._complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_response_is_content_error(self):
        service = AIService(client=AsyncMock())
        service._complete = AsyncMock(return_value="")

        with pytest.raises(AIError) as exc:
            await service.generate_funnel_flow(RESOURCES)
        assert exc.value.type == AIErrorType.CONTENT

    @pytest.mark.asyncio
    async def test_api_failure_skips_repair(self):
        service = AIService(client=AsyncMock())
        service._complete = AsyncMock(side_effect=Exception("Rate limit exceeded"))

        with pytest.raises(AIError) as exc:
            await service.generate_funnel_flow(RESOURCES)
        assert exc.value.type == AIErrorType.RATE_LIMIT
        assert service._complete.await_count == 1

    @pytest.mark.asyncio
    async def test_broken_json_repaired(self):
        service = AIService(client=AsyncMock(), retry_base_delay=0)
        service._complete = AsyncMock(side_effect=["{broken", json.dumps(sample_flow())])

        flow = await service.generate_funnel_flow(RESOURCES)

        assert "offer_1" in flow["blocks"]
        assert service._complete.await_count == 2

    @pytest.mark.asyncio
    async def test_repair_gives_up(self):
        service = AIService(client=AsyncMock(), max_repair_tries=3, retry_base_delay=1.0)
        service._complete = AsyncMock(return_value="{still broken")

        with patch("app.services.ai_service.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(AIError) as exc:
                await service.generate_funnel_flow(RESOURCES)

        assert exc.value.message == UNREPAIRABLE_MESSAGE
        # One generation plus three repair attempts
        assert service._complete.await_count == 4
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_placeholder_key_rejected(self):
        service = AIService(client=AsyncMock())
        with patch("app.services.ai_service.settings.openai_api_key", "your_openai_api_key_here"):
            with pytest.raises(ValidationError):
                await service.generate_funnel_flow(RESOURCES)
