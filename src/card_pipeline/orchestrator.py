"""
Extraction orchestration: AI parsing with local fallback.

Per-request flow (each step is recorded on the outcome):

    START -> AI_ATTEMPT -> AI_SUCCESS | AI_FAILED -> LOCAL_FALLBACK? -> VALIDATE -> DONE
                                                                            \\-> REJECTED

AI is attempted only when a parser is configured, its credential is in the
vault, the text passed the security gate and the circuit breaker allows it.
Any AI failure falls back to the local heuristic extractor.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from .ai import AIParser
from .circuit_breaker import CircuitBreaker
from .config import Settings, get_settings
from .errors import (
    AIServiceError,
    CardPipelineError,
    DataSourceFailure,
    SecurityFailure,
    ValidationFailure,
)
from .extraction import LocalHeuristicExtractor
from .models import (
    BatchFailure,
    BusinessCard,
    OCRResult,
    ParsedCardData,
    ParseHints,
    ParseSource,
)
from .security import SecurityGate
from .validation import FieldValidator
from .vault import CredentialVault

logger = logging.getLogger(__name__)

MAX_TEXT_FIELD_LENGTH = 255
MAX_NOTES_LENGTH = 1000

# Fields the hybrid merge may fill from local extraction
HYBRID_FIELDS = ("name", "email", "phone", "mobile")


class ExtractionState(str, Enum):
    START = "start"
    AI_ATTEMPT = "ai_attempt"
    AI_SUCCESS = "ai_success"
    AI_FAILED = "ai_failed"
    LOCAL_FALLBACK = "local_fallback"
    VALIDATE = "validate"
    DONE = "done"
    REJECTED = "rejected"


class FieldWarning(BaseModel):
    """A field dropped during validation, or a note about the whole outcome."""

    field: str
    message: str


class ExtractionOutcome(BaseModel):
    """Result of extracting one card."""

    parsed: ParsedCardData
    warnings: list[FieldWarning] = Field(default_factory=list)
    states: list[ExtractionState] = Field(default_factory=list)
    ai_error: str | None = None  # kind of the AI failure that caused fallback
    index: int | None = None  # position in a batch

    @property
    def used_fallback(self) -> bool:
        return ExtractionState.LOCAL_FALLBACK in self.states


class BatchExtractionResult(BaseModel):
    """Outcome of a batch. Items are independent; ``skipped`` lists cancelled indices."""

    successful: list[ExtractionOutcome] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)
    skipped: list[int] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.successful)

    @property
    def failure_count(self) -> int:
        return len(self.failed)


class CardCreationResult(BaseModel):
    card: BusinessCard
    outcome: ExtractionOutcome
    saved: bool


@runtime_checkable
class CardWriter(Protocol):
    """Persistence interface for finished cards."""

    async def save_card(self, card: BusinessCard) -> BusinessCard:
        """
        Persist a card.

        Returns:
            The stored card (implementations may assign ids or timestamps)
        """
        ...


class ExtractionOrchestrator:
    """Turns OCR output into validated ParsedCardData."""

    def __init__(
        self,
        local_extractor: LocalHeuristicExtractor | None = None,
        ai_parser: AIParser | None = None,
        vault: CredentialVault | None = None,
        gate: SecurityGate | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        card_writer: CardWriter | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self.local_extractor = local_extractor or LocalHeuristicExtractor()
        self.ai_parser = ai_parser
        self.vault = vault
        self.gate = gate or SecurityGate(self._settings)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self._settings.ai_failure_threshold,
            timeout_seconds=self._settings.ai_recovery_seconds,
        )
        self.card_writer = card_writer

    # =========================================================================
    # Single extraction
    # =========================================================================

    async def extract(
        self,
        ocr_result: OCRResult | str,
        hints: ParseHints | None = None,
    ) -> ExtractionOutcome:
        """
        Extract card fields from OCR output.

        Raises:
            ValidationFailure: If the raw text is blank
            SecurityFailure: If the text is rejected by the security gate
            IntegrityCheckFailed: If the stored AI credential is corrupt
            DataSourceFailure: If the vault cannot be read
        """
        text = ocr_result if isinstance(ocr_result, str) else ocr_result.raw_text
        states = [ExtractionState.START]

        if not text or not text.strip():
            raise ValidationFailure("raw_text", "OCR raw text is blank", "No text was recognized on the card.")

        try:
            self.gate.validate_content(text)
        except SecurityFailure as e:
            states.append(ExtractionState.REJECTED)
            logger.warning(f"Rejected OCR text: {e.kind}")
            raise

        parsed: ParsedCardData | None = None
        ai_error: str | None = None
        if await self._should_attempt_ai():
            states.append(ExtractionState.AI_ATTEMPT)
            try:
                parsed = await self.circuit_breaker.call(self._parse_with_ai, text, hints)
                states.append(ExtractionState.AI_SUCCESS)
            except (AIServiceError, SecurityFailure, asyncio.TimeoutError) as e:
                states.append(ExtractionState.AI_FAILED)
                ai_error = e.kind if isinstance(e, CardPipelineError) else "timeout"
                detail = e.internal_message if isinstance(e, CardPipelineError) else "AI call timed out"
                logger.warning(f"AI parsing failed ({ai_error}), using local extraction: {self.gate.mask_sensitive(detail)}")

        if parsed is None:
            states.append(ExtractionState.LOCAL_FALLBACK)
            parsed = await asyncio.to_thread(self.local_extractor.parse, text)
        elif self._settings.enable_hybrid_merge:
            parsed = await self._merge_hybrid(parsed, text)

        states.append(ExtractionState.VALIDATE)
        parsed, warnings = self._validate(parsed)
        warnings.extend(self._confidence_warnings(ocr_result, parsed))
        states.append(ExtractionState.DONE)

        return ExtractionOutcome(parsed=parsed, warnings=warnings, states=states, ai_error=ai_error)

    async def _should_attempt_ai(self) -> bool:
        if self.ai_parser is None:
            return False
        if self.vault is not None and not await self.vault.has(self.ai_parser.credential_service):
            logger.debug(f"No credential for {self.ai_parser.credential_service}; skipping AI")
            return False
        if not self.circuit_breaker.allow_request():
            logger.info("AI circuit breaker is open; skipping AI")
            return False
        return True

    async def _parse_with_ai(self, text: str, hints: ParseHints | None) -> ParsedCardData:
        parsed = await asyncio.wait_for(
            self.ai_parser.parse(text, hints),
            timeout=self._settings.ai_timeout_seconds,
        )
        self.gate.validate_api_response(parsed.model_dump_json())
        return parsed

    async def _merge_hybrid(self, ai_parsed: ParsedCardData, text: str) -> ParsedCardData:
        """Fill missing name, email or phone numbers from local extraction."""
        missing_phone = ai_parsed.phone is None and ai_parsed.mobile is None
        if ai_parsed.name and ai_parsed.email and not missing_phone:
            return ai_parsed

        local = await asyncio.to_thread(self.local_extractor.parse, text)
        updates: dict = {}
        for field in HYBRID_FIELDS:
            if field in ("phone", "mobile") and not missing_phone:
                continue
            if getattr(ai_parsed, field) is None and getattr(local, field) is not None:
                updates[field] = getattr(local, field)

        if not updates:
            return ai_parsed

        field_confidence = dict(ai_parsed.field_confidence)
        for field in updates:
            field_confidence[field] = local.confidence
        logger.debug(f"Hybrid merge filled {', '.join(sorted(updates))} from local extraction")
        return ai_parsed.model_copy(
            update={**updates, "field_confidence": field_confidence, "source": ParseSource.HYBRID}
        )

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate(self, parsed: ParsedCardData) -> tuple[ParsedCardData, list[FieldWarning]]:
        """Re-validate every present field. Failing fields are dropped with a warning."""
        updates: dict = {}
        warnings: list[FieldWarning] = []

        for field, value in parsed.field_values().items():
            try:
                cleaned = self._validate_field(field, value)
            except ValidationFailure as e:
                logger.warning(f"Dropped invalid field {field}")
                warnings.append(FieldWarning(field=field, message=e.user_message))
                cleaned = None
            if cleaned != value:
                updates[field] = cleaned

        if not updates:
            return parsed, warnings

        dropped = {field for field, value in updates.items() if value is None}
        field_confidence = {k: v for k, v in parsed.field_confidence.items() if k not in dropped}
        return parsed.model_copy(update={**updates, "field_confidence": field_confidence}), warnings

    def _validate_field(self, field: str, value: str) -> str:
        if field == "name":
            return FieldValidator.name(value)
        if field == "company":
            return FieldValidator.company_name(value)
        if field == "email":
            return FieldValidator.email(value)
        if field in ("phone", "mobile", "fax"):
            return FieldValidator.phone(value)
        if field == "website":
            return FieldValidator.url(with_scheme(value.strip()))

        cleaned = self.gate.sanitize(value)
        maximum = MAX_NOTES_LENGTH if field == "notes" else MAX_TEXT_FIELD_LENGTH
        return FieldValidator.length_range(cleaned, 1, maximum, field)

    def _confidence_warnings(self, ocr_result: OCRResult | str, parsed: ParsedCardData) -> list[FieldWarning]:
        threshold = self._settings.low_confidence_threshold
        warnings = []
        if isinstance(ocr_result, OCRResult) and ocr_result.confidence < threshold:
            warnings.append(
                FieldWarning(field="ocr_confidence", message=f"Low OCR confidence ({ocr_result.confidence:.0%})")
            )
        if parsed.confidence < threshold:
            warnings.append(
                FieldWarning(field="confidence", message=f"Low extraction confidence ({parsed.confidence:.0%})")
            )
        return warnings

    # =========================================================================
    # Batch
    # =========================================================================

    async def extract_batch(
        self,
        items: list[OCRResult | str],
        hints: ParseHints | None = None,
        concurrency: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchExtractionResult:
        """
        Extract several cards. One item's failure never affects the others.

        Args:
            items: OCR results (or raw texts) to extract
            concurrency: Items processed at once. Defaults to
                ``batch_concurrency`` and is capped at ``max_batch_concurrency``.
            cancel_event: When set, items that have not started are skipped.
                In-flight items complete.
        """
        limit = concurrency or self._settings.batch_concurrency
        limit = max(1, min(limit, self._settings.max_batch_concurrency))
        semaphore = asyncio.Semaphore(limit)
        skipped = object()

        async def run(index: int, item: OCRResult | str):
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return skipped
                try:
                    return await self.extract(item, hints)
                except Exception as e:
                    logger.warning(f"Batch item {index} failed: {type(e).__name__}")
                    return BatchFailure(index=index, error=e, original_input=item)

        outcomes = await asyncio.gather(*(run(i, item) for i, item in enumerate(items)))

        result = BatchExtractionResult()
        for index, outcome in enumerate(outcomes):
            if outcome is skipped:
                result.skipped.append(index)
            elif isinstance(outcome, BatchFailure):
                result.failed.append(outcome)
            else:
                result.successful.append(outcome.model_copy(update={"index": index}))

        logger.info(
            f"Batch finished: {result.success_count} succeeded, "
            f"{result.failure_count} failed, {len(result.skipped)} skipped"
        )
        return result

    # =========================================================================
    # Card creation
    # =========================================================================

    async def create_card(
        self,
        ocr_result: OCRResult,
        *,
        hints: ParseHints | None = None,
        dry_run: bool = False,
        card_id: str | None = None,
    ) -> CardCreationResult:
        """
        Extract a card from OCR output and save it through the card writer.

        Args:
            dry_run: Build and validate the card without saving it

        Raises:
            ValidationFailure: If no valid name could be extracted
            DataSourceFailure: If the card writer fails
        """
        outcome = await self.extract(ocr_result, hints)
        card = BusinessCard.from_parsed(outcome.parsed, card_id or f"temp-{uuid.uuid4().hex}")

        if dry_run:
            return CardCreationResult(card=card, outcome=outcome, saved=False)

        if self.card_writer is None:
            raise DataSourceFailure("no card writer configured", "Cards cannot be saved right now.")

        try:
            saved = await self.card_writer.save_card(card)
        except CardPipelineError:
            raise
        except Exception as e:
            raise DataSourceFailure(
                f"card writer failed: {type(e).__name__}: {e}",
                "The card could not be saved.",
            ) from e
        return CardCreationResult(card=saved, outcome=outcome, saved=True)


def with_scheme(url: str) -> str:
    """Give a bare host an ``http://`` scheme. URLs that already carry a scheme are unchanged."""
    if "://" in url or url.lower().startswith(("javascript:", "data:", "vbscript:", "file:", "mailto:")):
        return url
    return f"http://{url}"
