"""
FunnelFlow graph helpers.

A flow is stored as plain JSON:

    {
        "startBlockId": "welcome_1",
        "stages": [{"id", "name", "explanation", "blockIds": [...]}],
        "blocks": {
            "welcome_1": {
                "id": "welcome_1",
                "message": "...",
                "options": [{"text": "...", "nextBlockId": "value_1" | None}],
                "resourceName": "optional exact resource name",
            },
        },
    }

Stages partition block ids into named phases, options are the edges.
Cycles are not excluded by the model, so every traversal keeps a visited set.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from app.funnel.states import ConversationPhase, StageName

logger = logging.getLogger(__name__)

LINK_PLACEHOLDER = "[LINK]"


def get_block_stage(flow: Dict[str, Any], block_id: Optional[str]) -> Optional[str]:
    """Name of the first stage listing block_id."""
    if not block_id:
        return None
    for stage in flow.get("stages") or []:
        if block_id in (stage.get("blockIds") or []):
            return stage.get("name")
    return None


def is_offer_block(flow: Dict[str, Any], block_id: Optional[str]) -> bool:
    return get_block_stage(flow, block_id) == StageName.OFFER.value


def reachable_block_ids(flow: Dict[str, Any], start_block_id: Optional[str]) -> List[str]:
    """Block ids reachable from start_block_id (inclusive), discovery order."""
    blocks = flow.get("blocks") or {}
    order: List[str] = []
    visited = set()
    stack = [start_block_id] if start_block_id else []

    while stack:
        block_id = stack.pop()
        if block_id in visited or block_id not in blocks:
            continue
        visited.add(block_id)
        order.append(block_id)
        options = blocks[block_id].get("options") or []
        # Reverse so the first option is explored first
        for option in reversed(options):
            next_id = option.get("nextBlockId")
            if next_id and next_id not in visited:
                stack.append(next_id)

    return order


def available_offers(flow: Dict[str, Any], block_id: str) -> List[str]:
    """
    Distinct resourceName values of OFFER blocks reachable from block_id.

    The block itself counts when it is an OFFER block. Terminates on
    cyclic graphs.
    """
    blocks = flow.get("blocks") or {}
    offers: List[str] = []
    seen_names = set()

    for reachable_id in reachable_block_ids(flow, block_id):
        if not is_offer_block(flow, reachable_id):
            continue
        name = blocks[reachable_id].get("resourceName")
        if name and name not in seen_names:
            seen_names.add(name)
            offers.append(name)

    return offers


def annotate_available_offers(flow: Dict[str, Any]) -> Dict[str, List[str]]:
    """Map every block id to its available offers."""
    return {
        block_id: available_offers(flow, block_id)
        for block_id in (flow.get("blocks") or {})
    }


def detect_conversation_phase(
    block_id: Optional[str],
    flow: Optional[Dict[str, Any]],
) -> ConversationPhase:
    """WELCOME -> PHASE1, VALUE_DELIVERY -> PHASE2, anything else COMPLETED."""
    if not block_id or not flow:
        return ConversationPhase.COMPLETED

    stage = get_block_stage(flow, block_id)
    if stage == StageName.WELCOME.value:
        return ConversationPhase.PHASE1
    if stage == StageName.VALUE_DELIVERY.value:
        return ConversationPhase.PHASE2
    return ConversationPhase.COMPLETED


def format_options(options: Iterable[Dict[str, Any]]) -> str:
    return "\n".join(
        f"{index}. {option.get('text', '')}"
        for index, option in enumerate(options, start=1)
    )


def format_block_message(block: Dict[str, Any], message: Optional[str] = None) -> str:
    """Block message followed by its numbered options."""
    text = message if message is not None else (block.get("message") or "")
    options = block.get("options") or []
    if options:
        return f"{text}\n\n{format_options(options)}"
    return text


def match_option(block: Dict[str, Any], content: str) -> Optional[Dict[str, Any]]:
    """
    Find the option a user picked.

    Text match first (equal, or either contains the other, case-insensitive),
    then a bare number selecting the n-th option.
    """
    options = block.get("options") or []
    search = (content or "").lower().strip()
    if not search:
        return None

    for option in options:
        option_text = (option.get("text") or "").lower().strip()
        if not option_text:
            continue
        if option_text == search or search in option_text or option_text in search:
            return option

    if search.isdigit():
        index = int(search) - 1
        if 0 <= index < len(options):
            return options[index]

    return None


# --- Structural validation ---

def _is_valid_string(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _clean_option(option: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(option, dict):
        return None
    text = option.get("text")
    next_id = option.get("nextBlockId")
    if not _is_valid_string(text):
        return None
    if next_id is not None and not _is_valid_string(next_id):
        return None
    return {"text": text, "nextBlockId": next_id}


def _clean_block(block_id: str, block: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(block, dict):
        return None
    message = block.get("message")
    options = block.get("options")
    if not _is_valid_string(message):
        return None
    if options is None:
        options = []
    if not isinstance(options, list):
        return None

    cleaned_options = [o for o in (_clean_option(opt) for opt in options) if o]
    # A block that had options but lost them all is broken; an empty list is terminal
    if options and not cleaned_options:
        return None

    cleaned = {
        "id": block.get("id") if _is_valid_string(block.get("id")) else block_id,
        "message": message,
        "options": cleaned_options,
    }
    if _is_valid_string(block.get("resourceName")):
        cleaned["resourceName"] = block["resourceName"]
    return cleaned


def _clean_stage(stage: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(stage, dict):
        return None
    block_ids = stage.get("blockIds")
    if not all(_is_valid_string(stage.get(key)) for key in ("id", "name")):
        return None
    if not isinstance(block_ids, list):
        return None
    valid_ids = [b for b in block_ids if _is_valid_string(b)]
    if not valid_ids:
        return None
    return {
        "id": stage["id"],
        "name": stage["name"],
        "explanation": stage.get("explanation") or "",
        "blockIds": valid_ids,
    }


def validate_and_repair_flow(data: Any) -> Optional[Dict[str, Any]]:
    """
    Sanitise a flow document.

    Drops malformed options, blocks and stages, stages referencing unknown
    blocks, and options pointing at unknown blocks. Returns None when nothing
    usable is left or the start block is missing.
    """
    if not isinstance(data, dict):
        return None

    start_block_id = data.get("startBlockId")
    if not _is_valid_string(start_block_id):
        return None

    raw_stages = data.get("stages")
    raw_blocks = data.get("blocks")
    if not isinstance(raw_stages, list) or not isinstance(raw_blocks, dict):
        return None

    blocks: Dict[str, Dict[str, Any]] = {}
    for block_id, block in raw_blocks.items():
        cleaned = _clean_block(block_id, block)
        if cleaned:
            blocks[block_id] = cleaned

    if start_block_id not in blocks:
        return None

    # Dropping a block can leave options elsewhere dangling, so prune to a fixed point
    changed = True
    while changed:
        changed = False
        for block_id, block in list(blocks.items()):
            had_options = bool(block["options"])
            kept = [
                o for o in block["options"]
                if o["nextBlockId"] is None or o["nextBlockId"] in blocks
            ]
            if len(kept) == len(block["options"]):
                continue
            changed = True
            block["options"] = kept
            if had_options and not kept:
                logger.debug(f"Dropping block {block_id}: all options dangle")
                del blocks[block_id]

    if start_block_id not in blocks:
        return None

    stages = [s for s in (_clean_stage(stage) for stage in raw_stages) if s]
    stages = [s for s in stages if all(b in blocks for b in s["blockIds"])]
    if not stages:
        return None

    return {
        "startBlockId": start_block_id,
        "stages": stages,
        "blocks": blocks,
    }


# --- Business rules ---

def validate_resource_placement(
    flow: Dict[str, Any],
    resources: Iterable[Any],
) -> List[str]:
    """
    List violations of the resource placement rules.

    Resources may be dicts or objects with name/category. Only blocks
    reachable from the start block are checked.
    """
    by_name: Dict[str, str] = {}
    for resource in resources:
        name = resource["name"] if isinstance(resource, dict) else resource.name
        category = resource["category"] if isinstance(resource, dict) else resource.category
        by_name[name] = getattr(category, "value", category)

    blocks = flow.get("blocks") or {}
    violations: List[str] = []
    used: Dict[str, Dict[str, str]] = {}

    for block_id in reachable_block_ids(flow, flow.get("startBlockId")):
        stage_name = get_block_stage(flow, block_id)
        try:
            stage = StageName(stage_name) if stage_name else None
        except ValueError:
            stage = None
        expected = stage.expected_category if stage else None
        if expected is None:
            continue

        resource_name = blocks[block_id].get("resourceName")
        if not resource_name:
            violations.append(f"{stage.value} block {block_id} has no resourceName")
            continue
        if resource_name not in by_name:
            violations.append(
                f"{stage.value} block {block_id} references unknown resource '{resource_name}'"
            )
            continue
        if by_name[resource_name] != expected.value:
            violations.append(
                f"{stage.value} block {block_id} uses '{resource_name}' "
                f"which is not a {expected.value} resource"
            )
            continue

        stage_used = used.setdefault(stage.value, {})
        if resource_name in stage_used:
            violations.append(
                f"Resource '{resource_name}' used by both {stage_used[resource_name]} and {block_id}"
            )
        else:
            stage_used[resource_name] = block_id

    return violations
