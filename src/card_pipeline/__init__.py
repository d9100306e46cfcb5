"""Business card extraction pipeline.

Turns OCR output from photographed business cards into validated,
structured contact data. AI parsing is used when configured and falls back
to local heuristics when the AI service is unavailable.

Typical usage:
    from card_pipeline import (
        CredentialVault,
        ExtractionOrchestrator,
        OpenAICardParser,
        RecognitionService,
    )

    recognition = RecognitionService()  # backend from OCR_BACKEND
    ocr_result = await recognition.recognize(image_bytes)

    vault = CredentialVault()  # master key from CREDENTIAL_MASTER_KEY
    await vault.store("openai", api_key)
    orchestrator = ExtractionOrchestrator(ai_parser=OpenAICardParser(vault), vault=vault)
    outcome = await orchestrator.extract(ocr_result)

Environment variables (see config.Settings):
    OCR_BACKEND: 'google_vision' (default) or 'tesseract'
    CREDENTIAL_MASTER_KEY: Secret used to derive the vault encryption key
"""

from .ai import AIParser, OpenAICardParser
from .backends import GoogleVisionBackend, OCRBackend, TesseractBackend, get_backend, preprocess_image
from .cache import ResultCacheStore
from .circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState
from .config import Settings, get_settings
from .errors import (
    AIInvalidInput,
    AIQuotaExceeded,
    AIRateLimited,
    AIServiceError,
    AIUnavailable,
    CacheMiss,
    CardPipelineError,
    CredentialNotFound,
    DataSourceFailure,
    IntegrityCheckFailed,
    ResultNotFound,
    SecurityFailure,
    SecurityFailureKind,
    ServiceUnavailableFailure,
    ValidationFailure,
    VaultConfigError,
)
from .extraction import LocalHeuristicExtractor, PatternTables, default_pattern_tables, score_confidence
from .models import (
    BatchFailure,
    BatchRecognitionResult,
    BoundingBox,
    BusinessCard,
    DetectedText,
    AIServiceStatus,
    EngineHealth,
    OCRResult,
    OCRStatistics,
    ParsedCardData,
    ParseHints,
    ParseSource,
    RecognitionOptions,
)
from .orchestrator import (
    BatchExtractionResult,
    CardCreationResult,
    CardWriter,
    ExtractionOrchestrator,
    ExtractionOutcome,
    ExtractionState,
    FieldWarning,
)
from .recognition import RecognitionService
from .security import SecurityGate
from .validation import FieldValidator
from .vault import CredentialVault, FileSecureStorage, InMemorySecureStorage, SecureStorage

__all__ = [
    # Models
    "BoundingBox",
    "DetectedText",
    "OCRResult",
    "RecognitionOptions",
    "EngineHealth",
    "AIServiceStatus",
    "OCRStatistics",
    "ParsedCardData",
    "ParseHints",
    "ParseSource",
    "BusinessCard",
    "BatchFailure",
    "BatchRecognitionResult",
    # Errors
    "CardPipelineError",
    "ValidationFailure",
    "SecurityFailure",
    "SecurityFailureKind",
    "DataSourceFailure",
    "CacheMiss",
    "ResultNotFound",
    "CredentialNotFound",
    "IntegrityCheckFailed",
    "VaultConfigError",
    "ServiceUnavailableFailure",
    "AIServiceError",
    "AIUnavailable",
    "AIRateLimited",
    "AIQuotaExceeded",
    "AIInvalidInput",
    # Config
    "Settings",
    "get_settings",
    # Security and validation
    "SecurityGate",
    "FieldValidator",
    # Extraction
    "LocalHeuristicExtractor",
    "PatternTables",
    "default_pattern_tables",
    "score_confidence",
    # Storage
    "ResultCacheStore",
    "CredentialVault",
    "SecureStorage",
    "InMemorySecureStorage",
    "FileSecureStorage",
    # Backends
    "OCRBackend",
    "GoogleVisionBackend",
    "TesseractBackend",
    "get_backend",
    "preprocess_image",
    "RecognitionService",
    # AI
    "AIParser",
    "OpenAICardParser",
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitState",
    # Orchestration
    "ExtractionOrchestrator",
    "ExtractionOutcome",
    "ExtractionState",
    "FieldWarning",
    "BatchExtractionResult",
    "CardCreationResult",
    "CardWriter",
]
