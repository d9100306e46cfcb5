"""Data models for OCR results, parsed card data and business cards."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ValidationFailure
from .validation import FieldValidator

HIGH_CONFIDENCE_THRESHOLD = 0.8


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# OCR
# =============================================================================


class BoundingBox(BaseModel):
    """Text fragment bounding box in pixels."""

    model_config = ConfigDict(frozen=True)

    left: float
    top: float
    width: float = Field(ge=0)
    height: float = Field(ge=0)


class DetectedText(BaseModel):
    """A single text fragment detected by the OCR engine."""

    model_config = ConfigDict(frozen=True)

    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    bounding_box: BoundingBox
    language_code: str | None = None

    @property
    def is_high_confidence(self) -> bool:
        return self.confidence >= HIGH_CONFIDENCE_THRESHOLD


class OCRResult(BaseModel):
    """OCR results for a single image.

    Immutable once produced. Use ``model_copy(update=...)`` to derive a
    variant (e.g. with a different engine label or without image bytes).
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    raw_text: str
    detected_texts: tuple[DetectedText, ...] = ()
    confidence: float = Field(ge=0.0, le=1.0)
    image_data: bytes | None = None
    image_width: int | None = Field(default=None, gt=0)
    image_height: int | None = Field(default=None, gt=0)
    processing_time_ms: int | None = Field(default=None, ge=0)
    ocr_engine: str | None = None
    processed_at: datetime = Field(default_factory=utc_now)

    @field_validator("processed_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def has_text(self) -> bool:
        return bool(self.raw_text.strip())

    def without_image(self) -> "OCRResult":
        """Return a copy that carries no image bytes."""
        if self.image_data is None:
            return self
        return self.model_copy(update={"image_data": None})


class RecognitionOptions(BaseModel):
    """Options passed to an OCR backend."""

    language: str = "zh-TW"
    preprocess: bool = True
    save_result: bool = True
    max_dimension: int | None = None


class EngineHealth(BaseModel):
    """Health report for an OCR engine."""

    engine_id: str
    is_healthy: bool
    checked_at: datetime = Field(default_factory=utc_now)
    response_time_ms: float | None = None
    error: str | None = None


class AIServiceStatus(BaseModel):
    """Availability and rate-limit report for an AI service."""

    service: str
    is_available: bool
    checked_at: datetime = Field(default_factory=utc_now)
    response_time_ms: float | None = None
    remaining_requests: int | None = None
    reset_time: datetime | None = None
    error: str | None = None


class OCRStatistics(BaseModel):
    """Aggregate statistics over the OCR history."""

    total_processed: int = 0
    average_confidence: float = 0.0
    average_processing_time_ms: float = 0.0
    engine_usage: dict[str, int] = Field(default_factory=dict)
    language_confidence: dict[str, float] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utc_now)


# =============================================================================
# Parsed card data
# =============================================================================


class ParseSource(str, Enum):
    """Which extraction strategy produced a ParsedCardData."""

    AI = "ai"
    LOCAL = "local"
    MANUAL = "manual"
    HYBRID = "hybrid"


class ParseHints(BaseModel):
    """Optional context for the AI parser."""

    language: str | None = None
    country: str | None = None
    card_type: str | None = None
    industry: str | None = None


CARD_TEXT_FIELDS = (
    "name",
    "name_english",
    "company",
    "company_english",
    "job_title",
    "job_title_english",
    "department",
    "email",
    "phone",
    "mobile",
    "fax",
    "address",
    "address_english",
    "website",
    "notes",
)


class ParsedCardData(BaseModel):
    """Structured fields parsed from business card text."""

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    name_english: str | None = None
    company: str | None = None
    company_english: str | None = None
    job_title: str | None = None
    job_title_english: str | None = None
    department: str | None = None
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    fax: str | None = None
    address: str | None = None
    address_english: str | None = None
    website: str | None = None
    notes: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    field_confidence: dict[str, float] = Field(default_factory=dict)
    source: ParseSource = ParseSource.LOCAL
    parsed_at: datetime = Field(default_factory=utc_now)

    @field_validator(*CARD_TEXT_FIELDS, mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("field_confidence")
    @classmethod
    def _check_field_confidence(cls, value: dict[str, float]) -> dict[str, float]:
        for field, score in value.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"field confidence for {field} must be in [0, 1], got {score}")
        return value

    def filled_fields(self) -> list[str]:
        """Names of the text fields that carry a value."""
        return [field for field in CARD_TEXT_FIELDS if getattr(self, field) is not None]

    def field_values(self) -> dict[str, str]:
        return {field: getattr(self, field) for field in self.filled_fields()}

    @property
    def primary_phone(self) -> str | None:
        return self.phone or self.mobile

    def to_business_card(self, card_id: str) -> "BusinessCard":
        """Build a BusinessCard from this data. Raises ValidationFailure if name is missing."""
        return BusinessCard.from_parsed(self, card_id)


# =============================================================================
# Business card
# =============================================================================


class BusinessCard(BaseModel):
    """A finished business card record handed to the persistence layer."""

    id: str = Field(min_length=1)
    name: str | None = None  # Required; enforced by _validate_fields
    job_title: str | None = None
    company: str | None = None
    department: str | None = None
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    fax: str | None = None
    address: str | None = None
    website: str | None = None
    notes: str | None = None
    image_path: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None

    @field_validator(
        "name", "job_title", "company", "department", "email", "phone",
        "mobile", "fax", "address", "website", "notes",
        mode="before",
    )
    @classmethod
    def _clean_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = " ".join(value.split())
            return value or None
        return value

    @model_validator(mode="after")
    def _validate_fields(self) -> "BusinessCard":
        self.name = FieldValidator.name(self.name or "")
        if self.email is not None:
            self.email = FieldValidator.email(self.email)
        if self.phone is not None:
            self.phone = FieldValidator.phone(self.phone)
        if self.website is not None:
            self.website = FieldValidator.url(self.website)
        return self

    @classmethod
    def from_parsed(cls, parsed: ParsedCardData, card_id: str) -> "BusinessCard":
        """Create a card from parsed data. An invalid website is dropped rather than failing."""
        website = parsed.website
        if website is not None:
            try:
                website = FieldValidator.url(website)
            except ValidationFailure:
                website = None

        if not parsed.name:
            raise ValidationFailure("name", "Cannot build a card without a name")

        return cls(
            id=card_id,
            name=parsed.name,
            job_title=parsed.job_title,
            company=parsed.company,
            department=parsed.department,
            email=parsed.email,
            phone=parsed.primary_phone,
            mobile=parsed.mobile,
            fax=parsed.fax,
            address=parsed.address,
            website=website,
            notes=parsed.notes,
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.name and self.company and (self.email or self.phone))

    @property
    def has_contact_info(self) -> bool:
        return bool(self.email or self.phone or self.mobile)

    @property
    def display_name(self) -> str:
        if self.job_title:
            return f"{self.name} ({self.job_title})"
        return self.name


# =============================================================================
# Batch results
# =============================================================================


class BatchFailure(BaseModel):
    """One failed item of a batch. Other items are unaffected."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    index: int = Field(ge=0)
    error: Exception
    original_input: Any = None

    @property
    def error_kind(self) -> str:
        return getattr(self.error, "kind", type(self.error).__name__)

    @property
    def message(self) -> str:
        return str(self.error)


class BatchRecognitionResult(BaseModel):
    """Outcome of recognizing several images."""

    successful: list[OCRResult] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.successful)

    @property
    def failure_count(self) -> int:
        return len(self.failed)
