"""
Error Taxonomy

Exceptions raised by the EduTwin services.

Lookup failures (unknown student, no active conversation) and lifecycle
conflicts propagate to the caller. Everything under ``LLMError`` is caught at
the AI-assisted call site and turned into a deterministic fallback.
"""

from enum import Enum
from typing import Optional


class EduTwinError(Exception):
    """Base exception for all service errors."""
    pass


class StudentNotFoundError(EduTwinError):
    """Raised when an operation references a student without a profile."""

    def __init__(self, student_id: str):
        self.student_id = student_id
        super().__init__(f"Student profile not found: {student_id}")


class ConversationNotFoundError(EduTwinError):
    """Raised when a student has no active conversation."""

    def __init__(self, student_id: str):
        self.student_id = student_id
        super().__init__(f"No active conversation found for student: {student_id}")


class ConversationConflictError(EduTwinError):
    """Raised when starting a conversation while another one is still active."""

    def __init__(self, student_id: str, conversation_id: str):
        self.student_id = student_id
        self.conversation_id = conversation_id
        super().__init__(
            f"Student {student_id} already has an active conversation ({conversation_id}); end it first"
        )


class SamplerSessionActiveError(EduTwinError):
    """Raised when a behavior sampling session is already running."""

    def __init__(self, student_id: str):
        self.student_id = student_id
        super().__init__(f"Analysis session already in progress for student: {student_id}")


class TransportErrorKind(str, Enum):
    """Classified failure kinds for a remote model call."""
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"

    @classmethod
    def from_status(cls, status_code: Optional[int]) -> "TransportErrorKind":
        if status_code == 401:
            return cls.UNAUTHORIZED
        if status_code == 429:
            return cls.RATE_LIMITED
        if status_code == 403:
            return cls.FORBIDDEN
        if status_code is not None and status_code >= 500:
            return cls.SERVICE_UNAVAILABLE
        return cls.UNKNOWN


class LLMError(EduTwinError):
    """Base class for failures talking to the hosted model."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{message} (operation: {operation})")


class LLMUnavailableError(LLMError):
    """Raised when the gateway was not configured with a usable credential."""

    def __init__(self, operation: str):
        super().__init__(
            operation,
            "OpenAI client not available. Please check your API key configuration"
        )


class LLMTransportError(LLMError):
    """Raised when a single attempt against the model endpoint fails."""

    _MESSAGES = {
        TransportErrorKind.UNAUTHORIZED: "OpenAI API authentication failed. Please verify your API key is correct and active",
        TransportErrorKind.RATE_LIMITED: "OpenAI API rate limit exceeded. Please try again later",
        TransportErrorKind.FORBIDDEN: "OpenAI API access forbidden. Check your account permissions and billing status",
        TransportErrorKind.SERVICE_UNAVAILABLE: "OpenAI service temporarily unavailable. Please try again later",
    }

    def __init__(
        self,
        operation: str,
        kind: TransportErrorKind,
        status_code: Optional[int] = None,
        detail: Optional[str] = None
    ):
        self.kind = kind
        self.status_code = status_code
        self.detail = detail
        message = self._MESSAGES.get(kind) or f"OpenAI API error: {detail or 'Unknown error occurred'}"
        super().__init__(operation, message)


class LLMParseError(LLMError):
    """Raised when a structured response is not valid JSON for its schema."""

    def __init__(self, operation: str, detail: str):
        self.detail = detail
        super().__init__(operation, f"Malformed structured response: {detail}")
