"""
AI Service - funnel flow generation and JSON repair via OpenAI.

The model is asked for one raw FunnelFlow JSON document. When that
document does not parse, a cheaper repair prompt is tried a few times
with exponential backoff before giving up.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from openai import AsyncOpenAI

from app.config import settings
from app.errors import AIError, AIErrorType, ValidationError
from app.funnel.flow import get_block_stage, validate_and_repair_flow
from app.funnel.states import ResourceCategory, StageName

logger = logging.getLogger(__name__)

PLACEHOLDER_API_KEY = "your_openai_api_key_here"

UNREPAIRABLE_MESSAGE = (
    "The AI returned an invalid response that could not be repaired. "
    "Please try generating again."
)


# --- Pure helpers ---

def _field(resource: Any, key: str) -> Any:
    if isinstance(resource, dict):
        return resource.get(key)
    return getattr(resource, key, None)


def _value(value: Any) -> Any:
    return getattr(value, "value", value)


def categorize_error(exc: Exception) -> AIError:
    """Map any exception onto an AIError by looking at its text."""
    if isinstance(exc, AIError):
        return exc

    text = str(exc)
    lowered = text.lower()

    if "api key" in lowered or "authentication" in lowered:
        return AIError(f"Authentication failed: {text}", AIErrorType.AUTHENTICATION)
    if "rate limit" in lowered or "quota" in lowered:
        return AIError(f"Rate limit exceeded: {text}", AIErrorType.RATE_LIMIT)
    if "network" in lowered or "fetch" in lowered:
        return AIError(f"Network error: {text}", AIErrorType.NETWORK)
    if "content" in lowered or "response" in lowered:
        return AIError(f"Content error: {text}", AIErrorType.CONTENT)
    return AIError(f"Unexpected error: {text}", AIErrorType.UNKNOWN)


def strip_code_fence(text: str) -> str:
    """Remove a ```json ... ``` (or bare ```) wrapper around model output."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:-3].strip()
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:-3].strip()
    return cleaned


def build_resource_list(resources: Iterable[Any]) -> str:
    lines = []
    for resource in resources:
        category = ResourceCategory(_value(_field(resource, "category")))
        line = (
            f"- {_field(resource, 'name')} (ID: {_field(resource, 'id')}, "
            f"Category: {category.prompt_label}, Type: {_value(_field(resource, 'type'))})"
        )
        code = _field(resource, "code")
        if code:
            line += f" [Promo Code: {code}]"
        lines.append(line)
    return "\n".join(lines)


GENERATION_PROMPT = """
You are an expert marketing funnel strategist. Build a branching chatbot
conversation as ONE raw JSON object (no markdown) with the keys
"startBlockId", "stages" and "blocks".

The conversation is a two-part funnel combined in a single document:

FUNNEL 1, the welcome gate: WELCOME -> VALUE_DELIVERY -> TRANSITION
- WELCOME greets the user and asks what they are interested in. The start
  block MUST include an escape option such as "Just exploring for now"
  with "nextBlockId": null.
- VALUE_DELIVERY hands over one Free Value resource and asks the user to
  reply "done". Each such block has exactly one option ("done") pointing
  at its TRANSITION block.
- TRANSITION congratulates the user and links to the private session with
  [LINK_TO_PRIVATE_CHAT]. It has one option pointing at the matching
  EXPERIENCE_QUALIFICATION block.

FUNNEL 2, the strategy session:
EXPERIENCE_QUALIFICATION -> PAIN_POINT_QUALIFICATION -> OFFER
- EXPERIENCE_QUALIFICATION asks about skill level, referring to the free
  resource the user just received. One per VALUE_DELIVERY path.
- PAIN_POINT_QUALIFICATION asks for the biggest challenge.
- OFFER presents exactly one Paid Product, ends with [LINK] where the
  purchase link goes, and has an empty "options" list.

RESOURCES:
{resource_list}

RULES FOR "resourceName":
- Every VALUE_DELIVERY block has a "resourceName" equal to the exact name
  of one Free Value resource above.
- Every OFFER block has a "resourceName" equal to the exact name of one
  Paid Product above.
- Each Free Value resource appears in exactly one VALUE_DELIVERY block and
  each Paid Product in exactly one OFFER block. Never repeat a name, never
  invent a name.

FORMAT:
- "stages" is a list of {{"id", "name", "explanation", "blockIds"}} with the
  six stage names above.
- "blocks" maps block id to {{"id", "message", "options", "resourceName"?}}.
- Each option is {{"text", "nextBlockId"}} where nextBlockId is an existing
  block id or null.
- Do not write the numbered options into "message"; they are rendered
  from "options".

Example:
{{
  "startBlockId": "welcome_1",
  "stages": [
    {{"id": "stage-welcome", "name": "WELCOME", "explanation": "Greeting", "blockIds": ["welcome_1"]}},
    {{"id": "stage-value", "name": "VALUE_DELIVERY", "explanation": "Free value", "blockIds": ["value_guide"]}},
    {{"id": "stage-transition", "name": "TRANSITION", "explanation": "Move to session", "blockIds": ["transition_1"]}},
    {{"id": "stage-experience", "name": "EXPERIENCE_QUALIFICATION", "explanation": "Skill level", "blockIds": ["experience_1"]}},
    {{"id": "stage-pain", "name": "PAIN_POINT_QUALIFICATION", "explanation": "Challenge", "blockIds": ["pain_1"]}},
    {{"id": "stage-offer", "name": "OFFER", "explanation": "Paid product", "blockIds": ["offer_course"]}}
  ],
  "blocks": {{
    "welcome_1": {{"id": "welcome_1", "message": "Welcome! What brings you here?", "options": [
      {{"text": "Trading", "nextBlockId": "value_guide"}},
      {{"text": "Just exploring for now", "nextBlockId": null}}
    ]}},
    "value_guide": {{"id": "value_guide", "message": "Here is our free guide. Reply 'done' when ready.", "resourceName": "Free Trading Guide",
      "options": [{{"text": "done", "nextBlockId": "transition_1"}}]}},
    "transition_1": {{"id": "transition_1", "message": "Great work! Continue here: [LINK_TO_PRIVATE_CHAT]",
      "options": [{{"text": "Continue", "nextBlockId": "experience_1"}}]}},
    "experience_1": {{"id": "experience_1", "message": "How experienced are you?", "options": [
      {{"text": "Beginner", "nextBlockId": "pain_1"}}
    ]}},
    "pain_1": {{"id": "pain_1", "message": "What is your biggest challenge?", "options": [
      {{"text": "Managing risk", "nextBlockId": "offer_course"}}
    ]}},
    "offer_course": {{"id": "offer_course", "message": "Our course solves exactly that. Get it here: [LINK]",
      "resourceName": "Trading Course", "options": []}}
  }}
}}

Before answering, check that every OFFER and VALUE_DELIVERY block names a
resource from the list exactly once, and that every nextBlockId exists.
"""


REPAIR_PROMPT = """
The following text was meant to be a FunnelFlow JSON object but it does
not parse. Fix it and return ONLY the corrected raw JSON, no markdown.

Keep the content. Repair syntax (quotes, commas, brackets), make sure the
top level has "startBlockId", "stages" and "blocks", and that every option
is {{"text": ..., "nextBlockId": <block id or null>}}.

Compact example of the expected shape:
{{"startBlockId": "welcome_1",
 "stages": [{{"id": "stage-welcome", "name": "WELCOME", "explanation": "", "blockIds": ["welcome_1"]}}],
 "blocks": {{"welcome_1": {{"id": "welcome_1", "message": "Hi!", "options": [{{"text": "Just exploring", "nextBlockId": null}}]}}}}}}

Broken JSON:
{bad_json}
"""


def build_generation_prompt(resources: Iterable[Any]) -> str:
    return GENERATION_PROMPT.format(resource_list=build_resource_list(resources))


def build_repair_prompt(bad_json: str) -> str:
    return REPAIR_PROMPT.format(bad_json=bad_json)


def validate_and_fix_funnel(flow: Dict[str, Any], resources: List[Any]) -> Dict[str, Any]:
    """
    Fill in missing or wrong resourceName on VALUE_DELIVERY and OFFER blocks.

    A block is fixed with the first resource whose name appears in its
    message. Blocks with no such match are left as they are.
    """
    names = [_field(r, "name") for r in resources]
    exact = set(names)
    checked_stages = {StageName.VALUE_DELIVERY.value, StageName.OFFER.value}

    for block_id, block in (flow.get("blocks") or {}).items():
        if get_block_stage(flow, block_id) not in checked_stages:
            continue
        if block.get("resourceName") in exact:
            continue

        message = (block.get("message") or "").lower()
        match = next((name for name in names if name and name.lower() in message), None)
        if match:
            logger.info(f"Fixed resourceName on block {block_id}: {block.get('resourceName')!r} -> {match!r}")
            block["resourceName"] = match
        else:
            logger.warning(f"Block {block_id} has no usable resourceName")

    return flow


def parse_flow(text: str) -> Dict[str, Any]:
    """Strip fences, parse, and structurally sanitise a flow."""
    data = json.loads(strip_code_fence(text))
    flow = validate_and_repair_flow(data)
    if flow is None:
        raise ValueError("Invalid funnel structure in AI response")
    return flow


class AIService:
    """Generates FunnelFlow documents with the configured OpenAI model."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        max_repair_tries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
    ):
        self._client = client
        self.max_repair_tries = max_repair_tries or settings.ai_max_repair_tries
        self.retry_base_delay = (
            settings.ai_retry_base_delay if retry_base_delay is None else retry_base_delay
        )

    @property
    def model(self) -> str:
        return settings.openai_model or "gpt-4o-mini"

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    def validate_environment(self) -> None:
        key = (settings.openai_api_key or "").strip()
        if not key:
            raise ValidationError("OPENAI_API_KEY is not configured")
        if key == PLACEHOLDER_API_KEY or "test-key" in key:
            raise ValidationError("OPENAI_API_KEY is a placeholder, set a real key")

    async def _complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": "You output only valid JSON."},
                {"role": "user", "content": prompt},
            ],
            max_tokens=8000,
            temperature=0.7,
        )
        return (response.choices[0].message.content or "").strip()

    async def generate_funnel_flow(self, resources: List[Any]) -> Dict[str, Any]:
        """
        Generate a flow for the given resources.

        The repair path only runs when the first response came back but
        could not be used.
        """
        self.validate_environment()
        prompt = build_generation_prompt(resources)
        text = ""

        try:
            text = await self._complete(prompt)
            if not text:
                raise AIError("API responded with empty content.", AIErrorType.CONTENT)
            flow = parse_flow(text)
            return validate_and_fix_funnel(flow, resources)

        except Exception as e:
            error = categorize_error(e)
            logger.error(f"Funnel generation failed ({error.type.value}): {error.message}")

            if not text:
                raise error from e

            try:
                flow = await self.repair_funnel_json(text)
            except Exception as repair_error:
                logger.error(f"Funnel repair failed: {repair_error}")
                raise AIError(UNREPAIRABLE_MESSAGE, AIErrorType.CONTENT) from repair_error

            return validate_and_fix_funnel(flow, resources)

    async def repair_funnel_json(
        self,
        bad_json: str,
        max_tries: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Ask the model to fix broken JSON, backing off between attempts."""
        tries = max_tries or self.max_repair_tries
        last_error: Optional[AIError] = None

        for attempt in range(tries):
            try:
                text = await self._complete(build_repair_prompt(bad_json))
                if not text:
                    raise AIError("API responded with empty content.", AIErrorType.CONTENT)
                flow = parse_flow(text)
                logger.info(f"Funnel JSON repaired on attempt {attempt + 1}")
                return flow
            except Exception as e:
                last_error = categorize_error(e)
                logger.warning(f"Repair attempt {attempt + 1}/{tries} failed: {last_error.message}")
                if attempt < tries - 1:
                    await asyncio.sleep(self.retry_base_delay * (2 ** attempt))

        raise last_error or AIError(UNREPAIRABLE_MESSAGE, AIErrorType.CONTENT)
