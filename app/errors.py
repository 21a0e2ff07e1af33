"""
Domain errors raised by services and mapped to HTTP responses by the API layer.
"""

from enum import Enum


class FunnelFlowError(Exception):
    """Base class for expected business errors."""

    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(FunnelFlowError):
    status_code = 404


class AccessDeniedError(FunnelFlowError):
    status_code = 403


class LimitExceededError(FunnelFlowError):
    status_code = 409


class ConflictError(FunnelFlowError):
    status_code = 409


class InsufficientCreditsError(FunnelFlowError):
    status_code = 402


class BusinessRuleError(FunnelFlowError):
    status_code = 400


class ValidationError(FunnelFlowError):
    """Invalid configuration or an unusable funnel flow."""

    status_code = 422


class AIErrorType(str, Enum):
    """Closed set of AI failure kinds."""

    AUTHENTICATION = "AUTHENTICATION"
    NETWORK = "NETWORK"
    CONTENT = "CONTENT"
    RATE_LIMIT = "RATE_LIMIT"
    UNKNOWN = "UNKNOWN"


class AIError(FunnelFlowError):
    """Failure while generating or repairing a funnel with the LLM."""

    status_code = 502

    def __init__(self, message: str, error_type: AIErrorType = AIErrorType.UNKNOWN):
        super().__init__(message)
        self.type = error_type

    def __repr__(self) -> str:
        return f"<AIError {self.type.value}: {self.message}>"
