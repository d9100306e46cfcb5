"""Pytest fixtures for card pipeline tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from io import BytesIO

import pytest
from PIL import Image

from card_pipeline.backends import OCRBackend
from card_pipeline.cache import ResultCacheStore
from card_pipeline.config import Settings
from card_pipeline.extraction import LocalHeuristicExtractor
from card_pipeline.models import (
    BoundingBox,
    DetectedText,
    EngineHealth,
    OCRResult,
    ParsedCardData,
    ParseSource,
    RecognitionOptions,
)
from card_pipeline.security import SecurityGate
from card_pipeline.vault import CredentialVault, InMemorySecureStorage

TEST_MASTER_KEY = "test-master-key-for-unit-tests"
TEST_API_KEY = "sk-test1234567890abcdef"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests with no external services")
    config.addinivalue_line("markers", "security: Security-focused tests")


# =============================================================================
# Configuration and Clocks
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, credential_master_key=TEST_MASTER_KEY)


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Core Components
# =============================================================================


@pytest.fixture
def gate(settings: Settings) -> SecurityGate:
    return SecurityGate(settings)


@pytest.fixture
def extractor() -> LocalHeuristicExtractor:
    return LocalHeuristicExtractor()


@pytest.fixture
def cache(settings: Settings, clock: FakeClock) -> ResultCacheStore:
    """Small cache driven by the fake clock."""
    return ResultCacheStore(settings, capacity=3, clock=clock)


@pytest.fixture
def storage() -> InMemorySecureStorage:
    return InMemorySecureStorage()


@pytest.fixture
def vault(storage: InMemorySecureStorage, gate: SecurityGate, settings: Settings) -> CredentialVault:
    return CredentialVault(storage=storage, master_key=TEST_MASTER_KEY, gate=gate, settings=settings)


@pytest.fixture
async def vault_with_key(vault: CredentialVault) -> CredentialVault:
    """Vault holding an OpenAI key."""
    await vault.store("openai", TEST_API_KEY)
    return vault


# =============================================================================
# OCR Fixtures
# =============================================================================


def make_ocr_result(raw_text: str, confidence: float = 0.95, **kwargs) -> OCRResult:
    """Build an OCRResult with sensible defaults."""
    kwargs.setdefault("processed_at", datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))
    return OCRResult(raw_text=raw_text, confidence=confidence, ocr_engine="fake", **kwargs)


@pytest.fixture
def chinese_card_text() -> str:
    return "王小明\n經理\nwang@abc.com\n0912-345-678"


@pytest.fixture
def english_card_text() -> str:
    return (
        "John Smith\n"
        "Senior Software Engineer\n"
        "Acme Technologies Inc.\n"
        "Tel: (02) 2345-6789\n"
        "Mobile: 0912-345-678\n"
        "Email: john.smith@acme.com\n"
        "www.acme.com\n"
        "Address: 5F, No. 7, Xinyi Rd., Taipei City"
    )


@pytest.fixture
def png_bytes() -> bytes:
    """Small white PNG."""
    buffer = BytesIO()
    Image.new("RGB", (120, 80), color=(255, 255, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def other_png_bytes() -> bytes:
    """PNG with different content (and therefore a different cache key)."""
    buffer = BytesIO()
    Image.new("RGB", (120, 80), color=(10, 20, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeBackend(OCRBackend):
    """In-process backend returning canned text. Counts calls."""

    engine_id = "fake"

    def __init__(self, raw_text: str = "王小明\n0912-345-678", error: Exception | None = None):
        self.raw_text = raw_text
        self.error = error
        self.recognize_calls = 0
        self.preprocess_calls = 0

    def get_constraints(self) -> dict:
        return {"max_image_height": 4000, "max_image_width": 4000, "max_file_size_bytes": 1024 * 1024}

    def recognize(self, image_bytes: bytes, options: RecognitionOptions) -> OCRResult:
        self.recognize_calls += 1
        if self.error is not None:
            raise self.error
        return OCRResult(
            raw_text=self.raw_text,
            detected_texts=(
                DetectedText(
                    text=self.raw_text,
                    confidence=0.9,
                    bounding_box=BoundingBox(left=0, top=0, width=10, height=10),
                ),
            ),
            confidence=0.9,
            image_data=image_bytes,
            image_width=120,
            image_height=80,
            processing_time_ms=5,
            ocr_engine=self.engine_id,
        )

    def preprocess(self, image_bytes: bytes, options: RecognitionOptions) -> bytes:
        self.preprocess_calls += 1
        return super().preprocess(image_bytes, options)

    def health(self) -> EngineHealth:
        return EngineHealth(engine_id=self.engine_id, is_healthy=self.error is None)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


# =============================================================================
# AI Fixtures
# =============================================================================


class FakeAIParser:
    """AIParser double. Returns ``result`` or raises ``error``."""

    credential_service = "openai"

    def __init__(self, result: ParsedCardData | None = None, error: Exception | None = None, delay: float = 0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: list[str] = []

    async def parse(self, text, hints=None):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def ai_card() -> ParsedCardData:
    """A complete AI parse result."""
    return ParsedCardData(
        name="王小明",
        company="台灣科技股份有限公司",
        job_title="經理",
        email="wang@abc.com",
        phone="02-2345-6789",
        mobile="0912-345-678",
        website="https://www.abc.com",
        confidence=0.92,
        field_confidence={"name": 0.95, "email": 0.9},
        source=ParseSource.AI,
    )


@pytest.fixture
def make_ai_parser():
    """Factory for FakeAIParser instances."""
    return FakeAIParser


@pytest.fixture
def make_ocr():
    """Factory for OCRResult instances."""
    return make_ocr_result


@pytest.fixture
def make_backend():
    """Factory for FakeBackend instances."""
    return FakeBackend


@pytest.fixture
def api_key() -> str:
    return TEST_API_KEY
