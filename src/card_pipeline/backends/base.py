"""Abstract base class for OCR backends."""

import time
from abc import ABC, abstractmethod
from io import BytesIO

from PIL import Image

from ..models import EngineHealth, OCRResult, RecognitionOptions
from .preprocessing import preprocess_image


class OCRBackend(ABC):
    """Abstract base class for OCR backends. Backends process SINGLE images and are synchronous."""

    engine_id: str = ""

    @abstractmethod
    def get_constraints(self) -> dict:
        """Return backend constraints for input validation.

        Returns dict with keys like: max_image_height, max_image_width, max_file_size_bytes
        """
        ...

    @abstractmethod
    def recognize(self, image_bytes: bytes, options: RecognitionOptions) -> OCRResult:
        """Recognize text in a single image.

        Raises:
            RuntimeError: If the engine reports an error
        """
        ...

    def preprocess(self, image_bytes: bytes, options: RecognitionOptions) -> bytes:
        """Prepare an image for recognition. Backends may override for engine-specific tuning."""
        return preprocess_image(image_bytes, max_dimension=options.max_dimension)

    def health(self) -> EngineHealth:
        """Check the engine by recognizing a small blank image."""
        sample = BytesIO()
        Image.new("L", (64, 32), color=255).save(sample, format="PNG")

        start = time.perf_counter()
        try:
            self.recognize(sample.getvalue(), RecognitionOptions(preprocess=False, save_result=False))
        except Exception as e:
            return EngineHealth(engine_id=self.engine_id, is_healthy=False, error=f"{type(e).__name__}: {e}")
        elapsed_ms = (time.perf_counter() - start) * 1000
        return EngineHealth(engine_id=self.engine_id, is_healthy=True, response_time_ms=elapsed_ms)

    def check_constraints(self, image_bytes: bytes) -> None:
        """Raise ValueError if the image exceeds this backend's limits."""
        constraints = self.get_constraints()
        max_bytes = constraints.get("max_file_size_bytes")
        if max_bytes is not None and len(image_bytes) > max_bytes:
            raise ValueError(f"Image is {len(image_bytes)} bytes, {self.engine_id} accepts at most {max_bytes}")

        with Image.open(BytesIO(image_bytes)) as img:
            width, height = img.size
        if width > constraints.get("max_image_width", width) or height > constraints.get("max_image_height", height):
            raise ValueError(f"Image {width}x{height} exceeds {self.engine_id} dimension limits")
