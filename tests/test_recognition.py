"""
Tests for RecognitionService.

Test Coverage:
- Cache hits skip the backend
- Stale entries are recognized again
- Saved results get ids and appear in history
- Preprocessing toggle and original image retention
- Empty input, backend constraints and backend errors
- Cache faults are tolerated
- Batch recognition with per-image failures
- Health and preprocess delegation
"""

from datetime import datetime, timedelta, timezone
from io import BytesIO
from unittest.mock import patch

import pytest
from PIL import Image

from card_pipeline.errors import DataSourceFailure
from card_pipeline.models import RecognitionOptions
from card_pipeline.recognition import RecognitionService


@pytest.fixture
def service(fake_backend, cache, settings) -> RecognitionService:
    return RecognitionService(backend=fake_backend, cache=cache, settings=settings)


@pytest.mark.unit
class TestRecognize:
    """Test single-image recognition."""

    async def test_returns_backend_result(self, service, png_bytes):
        result = await service.recognize(png_bytes)

        assert result.raw_text == "王小明\n0912-345-678"
        assert result.ocr_engine == "fake"
        assert result.image_data == png_bytes

    async def test_cache_hit_skips_backend(self, service, fake_backend, png_bytes):
        first = await service.recognize(png_bytes)
        second = await service.recognize(png_bytes)

        assert fake_backend.recognize_calls == 1
        assert second == first

    async def test_different_images_are_recognized_separately(self, service, fake_backend, png_bytes, other_png_bytes):
        await service.recognize(png_bytes)
        await service.recognize(other_png_bytes)
        assert fake_backend.recognize_calls == 2

    async def test_stale_entry_is_recognized_again(self, service, fake_backend, clock, png_bytes):
        await service.recognize(png_bytes)
        clock.now = datetime.now(timezone.utc) + timedelta(hours=25)

        await service.recognize(png_bytes)

        assert fake_backend.recognize_calls == 2

    async def test_saved_result_has_id_and_history_entry(self, service, cache, png_bytes):
        result = await service.recognize(png_bytes)

        assert result.id is not None
        assert cache.get_by_id(result.id).raw_text == result.raw_text
        assert cache.get(cache.key(png_bytes)).id == result.id

    async def test_save_disabled(self, service, cache, png_bytes):
        result = await service.recognize(png_bytes, RecognitionOptions(save_result=False))

        assert result.id is None
        assert cache.history() == []
        assert len(cache) == 1

    async def test_preprocess_toggle(self, service, fake_backend, png_bytes, other_png_bytes):
        await service.recognize(png_bytes)
        assert fake_backend.preprocess_calls == 1

        await service.recognize(other_png_bytes, RecognitionOptions(preprocess=False))
        assert fake_backend.preprocess_calls == 1

    async def test_empty_image(self, service):
        with pytest.raises(ValueError):
            await service.recognize(b"")

    async def test_oversized_image(self, service, fake_backend):
        buffer = BytesIO()
        Image.new("L", (5000, 10), color=255).save(buffer, format="PNG")

        with pytest.raises(ValueError):
            await service.recognize(buffer.getvalue())
        assert fake_backend.recognize_calls == 0

    async def test_backend_error_propagates(self, make_backend, cache, settings, png_bytes):
        service = RecognitionService(backend=make_backend(error=RuntimeError("engine crashed")), cache=cache, settings=settings)
        with pytest.raises(RuntimeError):
            await service.recognize(png_bytes)
        assert len(cache) == 0

    async def test_cache_fault_is_ignored(self, service, cache, fake_backend, png_bytes):
        with patch.object(cache, "lookup", side_effect=DataSourceFailure("cache offline")):
            result = await service.recognize(png_bytes)

        assert result.raw_text
        assert fake_backend.recognize_calls == 1


@pytest.mark.unit
class TestBatch:
    """Test batch recognition."""

    async def test_failures_recorded_by_index(self, service, png_bytes, other_png_bytes):
        batch = await service.recognize_batch([png_bytes, b"", other_png_bytes])

        assert batch.success_count == 2
        assert batch.failure_count == 1
        failure = batch.failed[0]
        assert failure.index == 1
        assert isinstance(failure.error, ValueError)
        assert failure.original_input is None

    async def test_failure_keeps_image_hash(self, make_backend, cache, settings, png_bytes):
        service = RecognitionService(backend=make_backend(error=RuntimeError("boom")), cache=cache, settings=settings)
        batch = await service.recognize_batch([png_bytes])

        assert batch.failed[0].original_input == cache.key(png_bytes)
        assert batch.failed[0].error_kind == "RuntimeError"


@pytest.mark.unit
class TestDelegation:
    """Test health and preprocess passthroughs."""

    async def test_health(self, service):
        health = await service.health()
        assert health.engine_id == "fake"
        assert health.is_healthy is True

    async def test_unhealthy(self, make_backend, cache, settings):
        service = RecognitionService(backend=make_backend(error=RuntimeError("down")), cache=cache, settings=settings)
        assert (await service.health()).is_healthy is False

    async def test_preprocess(self, service, fake_backend, png_bytes):
        processed = await service.preprocess(png_bytes)

        with Image.open(BytesIO(processed)) as img:
            assert img.format == "PNG"
            assert img.mode == "L"
        assert fake_backend.preprocess_calls == 1
