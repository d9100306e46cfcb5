"""
Tests for the extraction orchestrator.

Test Coverage:
- Local-only extraction and state trail
- Blank input and security gate rejection
- AI success, AI failure fallback (service errors, unsafe output, timeout)
- AI skipped without credentials or while the circuit breaker is open
- Hybrid merge of missing fields from local extraction
- Field validation warnings and website scheme coercion
- Low confidence warnings
- Batch isolation, ordering, cancellation and concurrency limits
- Card creation (dry run, writer, failures)
"""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from card_pipeline.circuit_breaker import CircuitBreaker
from card_pipeline.errors import (
    AIQuotaExceeded,
    AIUnavailable,
    DataSourceFailure,
    IntegrityCheckFailed,
    SecurityFailure,
    SecurityFailureKind,
    ValidationFailure,
)
from card_pipeline.models import ParsedCardData, ParseSource
from card_pipeline.orchestrator import ExtractionOrchestrator, ExtractionState, with_scheme


@pytest.fixture
def local_only(gate, settings) -> ExtractionOrchestrator:
    return ExtractionOrchestrator(gate=gate, settings=settings)


@pytest.mark.unit
class TestLocalExtraction:
    """Extraction without an AI parser."""

    async def test_local_fallback(self, local_only, chinese_card_text):
        outcome = await local_only.extract(chinese_card_text)

        assert outcome.parsed.source == ParseSource.LOCAL
        assert outcome.parsed.name == "王小明"
        assert outcome.states == [
            ExtractionState.START,
            ExtractionState.LOCAL_FALLBACK,
            ExtractionState.VALIDATE,
            ExtractionState.DONE,
        ]
        assert outcome.ai_error is None

    async def test_accepts_ocr_result(self, local_only, make_ocr, english_card_text):
        outcome = await local_only.extract(make_ocr(english_card_text))
        assert outcome.parsed.company == "Acme Technologies Inc."
        assert outcome.parsed.website == "http://www.acme.com"

    @pytest.mark.parametrize("text", ["", "   \n "])
    async def test_blank_text(self, local_only, text):
        with pytest.raises(ValidationFailure) as exc_info:
            await local_only.extract(text)
        assert exc_info.value.field == "raw_text"

    @pytest.mark.security
    async def test_rejected_content(self, local_only, settings):
        with pytest.raises(SecurityFailure) as exc_info:
            await local_only.extract("a" * (settings.max_content_size + 1))
        assert exc_info.value.security_kind == SecurityFailureKind.SIZE_LIMIT_EXCEEDED

    async def test_low_confidence_warnings(self, local_only, make_ocr):
        outcome = await local_only.extract(make_ocr("王小明", confidence=0.5))

        fields = {warning.field for warning in outcome.warnings}
        assert fields == {"ocr_confidence", "confidence"}


@pytest.mark.unit
class TestAIPath:
    """Extraction with an AI parser."""

    async def test_ai_success(self, vault_with_key, gate, settings, make_ai_parser, ai_card, chinese_card_text):
        parser = make_ai_parser(result=ai_card)
        orchestrator = ExtractionOrchestrator(ai_parser=parser, vault=vault_with_key, gate=gate, settings=settings)

        outcome = await orchestrator.extract(chinese_card_text)

        assert outcome.parsed.source == ParseSource.AI
        assert outcome.parsed.company == "台灣科技股份有限公司"
        assert ExtractionState.AI_SUCCESS in outcome.states
        assert not outcome.used_fallback
        assert parser.calls == [chinese_card_text]

    async def test_skipped_without_credential(self, vault, gate, settings, make_ai_parser, ai_card, chinese_card_text):
        parser = make_ai_parser(result=ai_card)
        orchestrator = ExtractionOrchestrator(ai_parser=parser, vault=vault, gate=gate, settings=settings)

        outcome = await orchestrator.extract(chinese_card_text)

        assert parser.calls == []
        assert ExtractionState.AI_ATTEMPT not in outcome.states
        assert outcome.parsed.source == ParseSource.LOCAL

    @pytest.mark.parametrize(
        "error",
        [
            AIQuotaExceeded("quota"),
            AIUnavailable("down"),
            SecurityFailure(SecurityFailureKind.MALICIOUS_CONTENT, "script in response"),
        ],
    )
    async def test_ai_failure_falls_back(
        self, vault_with_key, gate, settings, make_ai_parser, chinese_card_text, error
    ):
        orchestrator = ExtractionOrchestrator(
            ai_parser=make_ai_parser(error=error), vault=vault_with_key, gate=gate, settings=settings
        )

        outcome = await orchestrator.extract(chinese_card_text)

        assert outcome.states == [
            ExtractionState.START,
            ExtractionState.AI_ATTEMPT,
            ExtractionState.AI_FAILED,
            ExtractionState.LOCAL_FALLBACK,
            ExtractionState.VALIDATE,
            ExtractionState.DONE,
        ]
        assert outcome.parsed.source == ParseSource.LOCAL
        assert outcome.parsed.name == "王小明"
        assert outcome.ai_error == error.kind

    async def test_ai_timeout_falls_back(self, vault_with_key, gate, settings, make_ai_parser, ai_card):
        fast = settings.model_copy(update={"ai_timeout_seconds": 0.01})
        orchestrator = ExtractionOrchestrator(
            ai_parser=make_ai_parser(result=ai_card, delay=1.0), vault=vault_with_key, gate=gate, settings=fast
        )

        outcome = await orchestrator.extract("王小明\n0912-345-678")

        assert outcome.ai_error == "timeout"
        assert outcome.parsed.source == ParseSource.LOCAL

    async def test_integrity_failure_propagates(self, vault_with_key, gate, settings, make_ai_parser):
        orchestrator = ExtractionOrchestrator(
            ai_parser=make_ai_parser(error=IntegrityCheckFailed("tampered")),
            vault=vault_with_key,
            gate=gate,
            settings=settings,
        )
        with pytest.raises(IntegrityCheckFailed):
            await orchestrator.extract("王小明")

    async def test_open_breaker_skips_ai(self, vault_with_key, gate, settings, make_ai_parser):
        parser = make_ai_parser(error=AIUnavailable("down"))
        orchestrator = ExtractionOrchestrator(
            ai_parser=parser,
            vault=vault_with_key,
            gate=gate,
            circuit_breaker=CircuitBreaker(failure_threshold=1, timeout_seconds=300),
            settings=settings,
        )

        await orchestrator.extract("王小明")
        second = await orchestrator.extract("王小明")

        assert len(parser.calls) == 1
        assert ExtractionState.AI_ATTEMPT not in second.states

    async def test_failure_log_is_masked(self, vault_with_key, gate, settings, make_ai_parser, caplog):
        error = AIUnavailable("upstream rejected key sk-secretvalue123")
        orchestrator = ExtractionOrchestrator(
            ai_parser=make_ai_parser(error=error), vault=vault_with_key, gate=gate, settings=settings
        )

        with caplog.at_level(logging.WARNING, logger="card_pipeline.orchestrator"):
            await orchestrator.extract("王小明")

        assert "AIUnavailable" in caplog.text
        assert "sk-secretvalue123" not in caplog.text


@pytest.mark.unit
class TestHybridMerge:
    """Filling AI gaps from local extraction."""

    @pytest.fixture
    def partial_ai(self) -> ParsedCardData:
        return ParsedCardData(name="王小明", job_title="經理", confidence=0.85, source=ParseSource.AI)

    async def test_fills_missing_contact_fields(
        self, vault_with_key, gate, settings, make_ai_parser, partial_ai, chinese_card_text
    ):
        orchestrator = ExtractionOrchestrator(
            ai_parser=make_ai_parser(result=partial_ai), vault=vault_with_key, gate=gate, settings=settings
        )

        parsed = (await orchestrator.extract(chinese_card_text)).parsed

        assert parsed.source == ParseSource.HYBRID
        assert parsed.email == "wang@abc.com"
        assert parsed.mobile == "0912-345-678"
        assert parsed.confidence == 0.85
        assert parsed.field_confidence["email"] == pytest.approx(4 / 7 + 0.2)
        assert "name" not in parsed.field_confidence

    async def test_disabled(self, vault_with_key, gate, settings, make_ai_parser, partial_ai, chinese_card_text):
        no_merge = settings.model_copy(update={"enable_hybrid_merge": False})
        orchestrator = ExtractionOrchestrator(
            ai_parser=make_ai_parser(result=partial_ai), vault=vault_with_key, gate=gate, settings=no_merge
        )

        parsed = (await orchestrator.extract(chinese_card_text)).parsed

        assert parsed.source == ParseSource.AI
        assert parsed.email is None


@pytest.mark.unit
class TestValidation:
    """Post-extraction field validation."""

    async def test_invalid_fields_dropped_with_warnings(self, vault_with_key, gate, settings, make_ai_parser):
        ai_result = ParsedCardData(
            name="王小明",
            email="not-an-email",
            phone="123",
            website="acme.com",
            confidence=0.9,
            field_confidence={"email": 0.8, "name": 0.9},
            source=ParseSource.AI,
        )
        orchestrator = ExtractionOrchestrator(
            ai_parser=make_ai_parser(result=ai_result), vault=vault_with_key, gate=gate, settings=settings
        )

        outcome = await orchestrator.extract("王小明")

        assert outcome.parsed.email is None
        assert outcome.parsed.phone is None
        assert outcome.parsed.website == "http://acme.com"
        assert outcome.parsed.field_confidence == {"name": 0.9}
        assert {warning.field for warning in outcome.warnings} == {"email", "phone"}

    @pytest.mark.security
    async def test_unsafe_ai_output_falls_back(self, vault_with_key, gate, settings, make_ai_parser):
        """AI output is re-checked by the security gate before use."""
        ai_result = ParsedCardData(
            name="王小明", website="javascript:alert(1)", confidence=0.9, source=ParseSource.AI,
        )
        orchestrator = ExtractionOrchestrator(
            ai_parser=make_ai_parser(result=ai_result), vault=vault_with_key, gate=gate, settings=settings
        )

        outcome = await orchestrator.extract("王小明")

        assert outcome.ai_error == "malicious_content"
        assert outcome.parsed.source == ParseSource.LOCAL
        assert outcome.parsed.website is None

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("acme.com", "http://acme.com"),
            ("www.acme.com/about", "http://www.acme.com/about"),
            ("https://acme.com", "https://acme.com"),
            ("javascript:alert(1)", "javascript:alert(1)"),
        ],
    )
    def test_with_scheme(self, url, expected):
        assert with_scheme(url) == expected


@pytest.mark.unit
class TestBatch:
    """Batch extraction."""

    async def test_failures_are_isolated(self, local_only, chinese_card_text, english_card_text):
        result = await local_only.extract_batch([chinese_card_text, "", english_card_text])

        assert result.success_count == 2
        assert result.failure_count == 1
        assert result.success_count + result.failure_count == 3
        assert [outcome.index for outcome in result.successful] == [0, 2]

        failure = result.failed[0]
        assert failure.index == 1
        assert failure.original_input == ""
        assert isinstance(failure.error, ValidationFailure)
        assert failure.error_kind == "ValidationFailure"

    async def test_empty_batch(self, local_only):
        result = await local_only.extract_batch([])
        assert result.success_count == 0
        assert result.failure_count == 0

    async def test_cancelled_before_start(self, local_only, chinese_card_text):
        cancel = asyncio.Event()
        cancel.set()

        result = await local_only.extract_batch([chinese_card_text] * 3, cancel_event=cancel)

        assert result.skipped == [0, 1, 2]
        assert result.success_count == 0

    async def test_cancel_lets_in_flight_item_finish(self, vault_with_key, gate, settings, ai_card):
        cancel = asyncio.Event()

        class CancellingParser:
            credential_service = "openai"

            async def parse(self, text, hints=None):
                cancel.set()
                return ai_card

        orchestrator = ExtractionOrchestrator(
            ai_parser=CancellingParser(), vault=vault_with_key, gate=gate, settings=settings
        )
        result = await orchestrator.extract_batch(["王小明"] * 3, cancel_event=cancel)

        assert result.success_count == 1
        assert result.skipped == [1, 2]

    @pytest.mark.parametrize("requested,expected", [(None, 1), (2, 2), (10, 3)])
    async def test_concurrency_limit(self, vault_with_key, gate, settings, ai_card, requested, expected):
        active = 0
        peak = 0

        class SlowParser:
            credential_service = "openai"

            async def parse(self, text, hints=None):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return ai_card

        orchestrator = ExtractionOrchestrator(
            ai_parser=SlowParser(), vault=vault_with_key, gate=gate, settings=settings
        )
        result = await orchestrator.extract_batch(["王小明"] * 6, concurrency=requested)

        assert result.success_count == 6
        assert peak == expected


@pytest.mark.unit
class TestCreateCard:
    """Card creation through the card writer."""

    async def test_dry_run(self, gate, settings, make_ocr, chinese_card_text):
        writer = AsyncMock()
        orchestrator = ExtractionOrchestrator(card_writer=writer, gate=gate, settings=settings)

        result = await orchestrator.create_card(make_ocr(chinese_card_text), dry_run=True)

        assert result.saved is False
        assert result.card.name == "王小明"
        assert result.card.phone == "0912-345-678"
        writer.save_card.assert_not_called()

    async def test_saves_card(self, gate, settings, make_ocr, chinese_card_text):
        writer = AsyncMock()
        writer.save_card.side_effect = lambda card: card.model_copy(update={"id": "card-1"})
        orchestrator = ExtractionOrchestrator(card_writer=writer, gate=gate, settings=settings)

        result = await orchestrator.create_card(make_ocr(chinese_card_text))

        assert result.saved is True
        assert result.card.id == "card-1"
        writer.save_card.assert_awaited_once()

    async def test_missing_name(self, gate, settings, make_ocr):
        orchestrator = ExtractionOrchestrator(card_writer=AsyncMock(), gate=gate, settings=settings)
        with pytest.raises(ValidationFailure) as exc_info:
            await orchestrator.create_card(make_ocr("0912-345-678"))
        assert exc_info.value.field == "name"

    async def test_writer_failure_wrapped(self, gate, settings, make_ocr, chinese_card_text):
        writer = AsyncMock()
        writer.save_card.side_effect = RuntimeError("db locked")
        orchestrator = ExtractionOrchestrator(card_writer=writer, gate=gate, settings=settings)

        with pytest.raises(DataSourceFailure) as exc_info:
            await orchestrator.create_card(make_ocr(chinese_card_text))
        assert "db locked" not in str(exc_info.value)

    async def test_no_writer(self, gate, settings, make_ocr, chinese_card_text):
        orchestrator = ExtractionOrchestrator(gate=gate, settings=settings)
        with pytest.raises(DataSourceFailure):
            await orchestrator.create_card(make_ocr(chinese_card_text))
