"""
Image recognition with a content-addressed result cache.

RecognitionService sits between callers and an OCRBackend: identical image
bytes are recognized once per validity window, and every fresh result can
be saved to the history for later review.
"""

import asyncio
import logging

from .backends import OCRBackend, get_backend
from .cache import ResultCacheStore
from .config import Settings, get_settings
from .errors import DataSourceFailure
from .models import (
    BatchFailure,
    BatchRecognitionResult,
    EngineHealth,
    OCRResult,
    RecognitionOptions,
)

logger = logging.getLogger(__name__)


class RecognitionService:
    """Runs OCR through a backend, consulting and filling the result cache."""

    def __init__(
        self,
        backend: OCRBackend | None = None,
        cache: ResultCacheStore | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self.backend = backend or get_backend(settings=self._settings)
        self.cache = cache or ResultCacheStore(self._settings)

    def _options(self, options: RecognitionOptions | None) -> RecognitionOptions:
        options = options or RecognitionOptions(language=self._settings.ocr_language)
        if options.max_dimension is None:
            options = options.model_copy(update={"max_dimension": self._settings.preprocess_max_dimension})
        return options

    async def recognize(self, image_bytes: bytes, options: RecognitionOptions | None = None) -> OCRResult:
        """
        Recognize text in one image.

        A valid cached result for the same bytes is returned without calling
        the backend. Cache faults are logged and otherwise ignored.

        Raises:
            ValueError: If the image is empty or exceeds backend limits
            RuntimeError: If the OCR engine reports an error
        """
        if not image_bytes:
            raise ValueError("image_bytes is empty")

        options = self._options(options)
        key = ResultCacheStore.key(image_bytes)

        try:
            cached = self.cache.lookup(key)
        except DataSourceFailure as e:
            logger.warning(f"Cache lookup failed: {e.internal_message}")
            cached = None
        if cached is not None:
            logger.debug(f"Cache hit for {key[:16]}")
            return cached

        self.backend.check_constraints(image_bytes)
        prepared = image_bytes
        if options.preprocess:
            prepared = await asyncio.to_thread(self.backend.preprocess, image_bytes, options)

        result = await asyncio.to_thread(self.backend.recognize, prepared, options)
        # Keep the caller's original image, not the preprocessed one
        result = result.model_copy(update={"image_data": image_bytes})

        try:
            if options.save_result:
                result = self.cache.save(result)
            self.cache.put(key, result)
        except DataSourceFailure as e:
            logger.warning(f"Could not cache OCR result: {e.internal_message}")

        return result

    async def recognize_batch(
        self,
        images: list[bytes],
        options: RecognitionOptions | None = None,
    ) -> BatchRecognitionResult:
        """Recognize images one at a time. A failing image is recorded and the rest continue."""
        batch = BatchRecognitionResult()
        for index, image_bytes in enumerate(images):
            try:
                batch.successful.append(await self.recognize(image_bytes, options))
            except Exception as e:
                logger.warning(f"Recognition failed for image {index}: {type(e).__name__}")
                batch.failed.append(
                    BatchFailure(
                        index=index,
                        error=e,
                        original_input=ResultCacheStore.key(image_bytes) if image_bytes else None,
                    )
                )
        return batch

    async def health(self) -> EngineHealth:
        return await asyncio.to_thread(self.backend.health)

    async def preprocess(self, image_bytes: bytes, options: RecognitionOptions | None = None) -> bytes:
        return await asyncio.to_thread(self.backend.preprocess, image_bytes, self._options(options))
