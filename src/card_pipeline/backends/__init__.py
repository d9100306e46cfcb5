"""OCR backends behind a single capability interface.

Backend selection priority:
1. Explicit name passed to ``get_backend``
2. ``OCR_BACKEND`` setting (``google_vision`` or ``tesseract``)
"""

import logging

from ..config import Settings, get_settings
from .base import OCRBackend
from .preprocessing import preprocess_image

logger = logging.getLogger(__name__)

# Optional backend imports - these may not be available in all environments
try:
    from .google_vision import GoogleVisionBackend
except ImportError:
    GoogleVisionBackend = None  # type: ignore

try:
    from .tesseract import TesseractBackend
except ImportError:
    TesseractBackend = None  # type: ignore


def get_backend(backend_name: str | None = None, settings: Settings | None = None) -> OCRBackend:
    """Get an OCR backend instance by explicit name or configuration.

    Args:
        backend_name: Optional explicit backend name ('google_vision' or 'tesseract')

    Returns:
        Instantiated OCRBackend

    Raises:
        ValueError: If the backend is unknown or its library is not installed
    """
    settings = settings or get_settings()
    backend_name = (backend_name or settings.ocr_backend).lower()

    if backend_name == "google_vision":
        if GoogleVisionBackend is None:
            raise ValueError(
                "GoogleVisionBackend not available. Install google-cloud-vision: "
                "pip install 'card-pipeline[google]'"
            )
        backend = GoogleVisionBackend(settings=settings)
    elif backend_name == "tesseract":
        if TesseractBackend is None:
            raise ValueError(
                "TesseractBackend not available. Install pytesseract: "
                "pip install 'card-pipeline[tesseract]'"
            )
        backend = TesseractBackend(settings=settings)
    else:
        raise ValueError(f"Unknown backend: {backend_name}. Available: 'google_vision', 'tesseract'")

    logger.info(f"Using OCR backend: {backend_name}")
    return backend


__all__ = [
    "OCRBackend",
    "GoogleVisionBackend",
    "TesseractBackend",
    "get_backend",
    "preprocess_image",
]
