"""Failure types raised across the pipeline.

Every failure carries two messages: a short ``user_message`` that is safe to
show to end users, and an ``internal_message`` with diagnostic detail for
logs. ``str(error)`` only ever yields the user message.
"""

from datetime import datetime
from enum import Enum


class SecurityFailureKind(str, Enum):
    """Reason a piece of content was rejected by the security gate."""

    MALICIOUS_CONTENT = "malicious_content"
    MALFORMED_RESPONSE = "malformed_response"
    SIZE_LIMIT_EXCEEDED = "size_limit_exceeded"
    SUSPICIOUS_CONTENT = "suspicious_content"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class CardPipelineError(Exception):
    """Base class for all pipeline failures."""

    default_user_message = "Something went wrong. Please try again."

    def __init__(self, internal_message: str = "", user_message: str | None = None):
        self.user_message = user_message or self.default_user_message
        self.internal_message = internal_message or self.user_message
        super().__init__(self.user_message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        return self.user_message


class ValidationFailure(CardPipelineError):
    """A structured field failed validation."""

    default_user_message = "Some information is not in a valid format."

    def __init__(self, field: str, internal_message: str = "", user_message: str | None = None):
        self.field = field
        super().__init__(internal_message, user_message)


class SecurityFailure(CardPipelineError):
    """Content rejected by the security gate. Retrying unmodified input will fail again."""

    default_user_message = "The content could not be processed for security reasons."

    def __init__(
        self,
        kind: SecurityFailureKind,
        internal_message: str = "",
        user_message: str | None = None,
    ):
        self.security_kind = kind
        super().__init__(internal_message, user_message)

    @property
    def kind(self) -> str:
        return self.security_kind.value


class DataSourceFailure(CardPipelineError):
    """Cache or vault storage fault."""

    default_user_message = "Stored data could not be accessed."


class CacheMiss(DataSourceFailure):
    """No cache entry exists for the requested key."""

    default_user_message = "No cached result is available."


class ResultNotFound(DataSourceFailure):
    """No history entry exists for the requested id."""

    default_user_message = "The requested result could not be found."


class CredentialNotFound(DataSourceFailure):
    """No credential is stored for the requested service."""

    default_user_message = "No API key is configured for this service."


class IntegrityCheckFailed(CardPipelineError):
    """A stored credential failed authentication. The record must not be used."""

    default_user_message = "Stored data failed an integrity check."


class VaultConfigError(CardPipelineError):
    """The credential vault is missing required configuration."""

    default_user_message = "Secure storage is not configured."


class ServiceUnavailableFailure(CardPipelineError):
    """An external service cannot serve the request right now."""

    default_user_message = "The service is temporarily unavailable."


class AIServiceError(ServiceUnavailableFailure):
    """Base class for failures reported by the AI parsing service."""

    default_user_message = "AI parsing is temporarily unavailable."


class AIUnavailable(AIServiceError):
    """AI service is down, unreachable, or timed out."""

    pass


class AIRateLimited(AIServiceError):
    """AI service rejected the request because of rate limiting."""

    default_user_message = "Too many requests. Please wait a moment."

    def __init__(
        self,
        internal_message: str = "",
        user_message: str | None = None,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(internal_message, user_message)


class AIQuotaExceeded(AIServiceError):
    """AI service quota is used up."""

    default_user_message = "The AI usage quota has been reached."

    def __init__(
        self,
        internal_message: str = "",
        user_message: str | None = None,
        reset_time: datetime | None = None,
    ):
        self.reset_time = reset_time
        super().__init__(internal_message, user_message)


class AIInvalidInput(AIServiceError):
    """AI service refused the submitted text."""

    default_user_message = "The text could not be parsed."

    def __init__(self, internal_message: str = "", user_message: str | None = None, field: str | None = None):
        self.field = field
        super().__init__(internal_message, user_message)
