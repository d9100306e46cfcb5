"""Google Cloud Vision API backend for OCR processing."""

import json
import time

from google.cloud import vision
from google.oauth2 import service_account

from ..config import Settings, get_settings
from ..models import BoundingBox, DetectedText, OCRResult, RecognitionOptions
from .base import OCRBackend
from .preprocessing import image_size


class GoogleVisionBackend(OCRBackend):
    """Google Vision API backend. Credentials come from ``service_account_json`` or the environment."""

    engine_id = "google_vision"

    def __init__(self, credentials_json: str | None = None, settings: Settings | None = None):
        """Initialize with credentials.

        Args:
            credentials_json: JSON string with service account credentials.
                            If not provided, uses settings.service_account_json.
        """
        if credentials_json is None:
            credentials_json = (settings or get_settings()).service_account_json

        if credentials_json:
            service_account_info = json.loads(credentials_json)
            credentials = service_account.Credentials.from_service_account_info(service_account_info)
            self.client = vision.ImageAnnotatorClient(credentials=credentials)
        else:
            # Fall back to default credentials (GOOGLE_APPLICATION_CREDENTIALS)
            self.client = vision.ImageAnnotatorClient()

    def get_constraints(self) -> dict:
        """Return Google Vision API constraints."""
        return {
            "max_image_height": 50000,
            "max_image_width": 50000,
            "max_file_size_bytes": 20 * 1024 * 1024,  # 20MB
        }

    def recognize(self, image_bytes: bytes, options: RecognitionOptions) -> OCRResult:
        """Run document_text_detection and return block-level detected texts."""
        start = time.perf_counter()
        image = vision.Image(content=image_bytes)
        image_context = {"language_hints": [options.language]}
        response = self.client.document_text_detection(image=image, image_context=image_context)

        if response.error.message:
            raise RuntimeError(f"Google Vision API error: {response.error.message}")

        detected: list[DetectedText] = []
        annotation = response.full_text_annotation
        if annotation:
            for page in annotation.pages:
                for block in page.blocks:
                    text = _block_text(block)
                    if not text:
                        continue
                    languages = block.property.detected_languages if block.property else []
                    detected.append(
                        DetectedText(
                            text=text,
                            confidence=min(max(block.confidence, 0.0), 1.0),
                            bounding_box=_bounding_box(block.bounding_box.vertices),
                            language_code=languages[0].language_code if languages else None,
                        )
                    )

        raw_text = annotation.text.strip() if annotation else ""
        confidence = sum(d.confidence for d in detected) / len(detected) if detected else 0.0
        width, height = image_size(image_bytes)

        return OCRResult(
            raw_text=raw_text,
            detected_texts=tuple(detected),
            confidence=confidence,
            image_data=image_bytes,
            image_width=width,
            image_height=height,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
            ocr_engine=self.engine_id,
        )


def _block_text(block) -> str:
    lines = []
    for paragraph in block.paragraphs:
        words = ["".join(symbol.text for symbol in word.symbols) for word in paragraph.words]
        lines.append(" ".join(words))
    return "\n".join(line for line in lines if line).strip()


def _bounding_box(vertices) -> BoundingBox:
    x = min(v.x for v in vertices)
    y = min(v.y for v in vertices)
    return BoundingBox(
        left=x,
        top=y,
        width=max(v.x for v in vertices) - x,
        height=max(v.y for v in vertices) - y,
    )
