"""Interface for AI card parsing services."""

from typing import Protocol, runtime_checkable

from ..models import ParsedCardData, ParseHints


@runtime_checkable
class AIParser(Protocol):
    """
    Interface for AI-backed card text parsing.

    Implementations raise one of the ``AIServiceError`` subclasses
    (AIUnavailable, AIRateLimited, AIQuotaExceeded, AIInvalidInput) on
    failure, or ``SecurityFailure`` if the service response is unsafe.
    """

    # Vault service name holding this parser's API key
    credential_service: str

    async def parse(self, text: str, hints: ParseHints | None = None) -> ParsedCardData:
        """
        Parse business card text into structured fields.

        Args:
            text: Raw OCR text
            hints: Optional language/country/industry context

        Returns:
            ParsedCardData with ``source=ai``
        """
        ...
