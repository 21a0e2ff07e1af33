"""
Funnel domain enums and limits.
"""

from enum import Enum


class StageName(str, Enum):
    """
    Stage names of a generated funnel.
    The first three form the public welcome gate, the rest the private
    strategy session.
    """

    WELCOME = "WELCOME"
    VALUE_DELIVERY = "VALUE_DELIVERY"
    TRANSITION = "TRANSITION"
    EXPERIENCE_QUALIFICATION = "EXPERIENCE_QUALIFICATION"
    PAIN_POINT_QUALIFICATION = "PAIN_POINT_QUALIFICATION"
    OFFER = "OFFER"

    @property
    def expected_category(self) -> "ResourceCategory | None":
        """Resource category a block of this stage must reference."""
        if self is StageName.OFFER:
            return ResourceCategory.PAID
        if self is StageName.VALUE_DELIVERY:
            return ResourceCategory.FREE_VALUE
        return None


class ResourceType(str, Enum):
    AFFILIATE = "AFFILIATE"
    MY_PRODUCTS = "MY_PRODUCTS"


class ResourceCategory(str, Enum):
    PAID = "PAID"
    FREE_VALUE = "FREE_VALUE"

    @property
    def prompt_label(self) -> str:
        """Label used when listing resources to the LLM."""
        return "Paid Product" if self is ResourceCategory.PAID else "Free Value"


class GenerationStatus(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CLOSED = "closed"
    ABANDONED = "abandoned"


class MessageType(str, Enum):
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"


class AccessLevel(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"
    NO_ACCESS = "no_access"


class ControlledBy(str, Enum):
    """Who answers the customer: the funnel bot or the owner in live chat."""

    BOT = "bot"
    ADMIN = "admin"


class ConversationPhase(str, Enum):
    PHASE1 = "PHASE1"
    PHASE2 = "PHASE2"
    COMPLETED = "COMPLETED"


# Live-chat filter vocabulary -> stored conversation status
LIVECHAT_STATUS_MAP = {
    "open": ConversationStatus.ACTIVE.value,
    "closed": ConversationStatus.COMPLETED.value,
}


class GLOBAL_LIMITS:
    """Per user, per experience."""

    FUNNELS = 10
    PRODUCTS = 20


class PRODUCT_LIMITS:
    """Per funnel, by resource category."""

    PAID = 5
    FREE_VALUE = 5

    @classmethod
    def for_category(cls, category: str) -> int:
        return cls.PAID if category == ResourceCategory.PAID.value else cls.FREE_VALUE
