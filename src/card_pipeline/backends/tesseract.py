"""Tesseract backend via pytesseract."""

import logging
import time
from io import BytesIO

import pytesseract
from PIL import Image

from ..config import Settings, get_settings
from ..models import BoundingBox, DetectedText, EngineHealth, OCRResult, RecognitionOptions
from .base import OCRBackend

logger = logging.getLogger(__name__)

# Tesseract traineddata names for the language codes callers pass
LANGUAGE_MAP = {
    "zh-TW": "chi_tra+eng",
    "zh-Hant": "chi_tra+eng",
    "zh-CN": "chi_sim+eng",
    "zh-Hans": "chi_sim+eng",
    "ja": "jpn+eng",
    "ko": "kor+eng",
    "en": "eng",
}

TESSERACT_CONFIG = r"--oem 3 --psm 6"


class TesseractBackend(OCRBackend):
    """Local Tesseract OCR. Groups words into lines by (block, paragraph, line)."""

    engine_id = "tesseract"

    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()
        if settings.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = settings.tesseract_cmd

    def get_constraints(self) -> dict:
        return {
            "max_image_height": 32767,
            "max_image_width": 32767,
            "max_file_size_bytes": 50 * 1024 * 1024,
        }

    def health(self) -> EngineHealth:
        """Check that the tesseract binary is installed and runnable."""
        start = time.perf_counter()
        try:
            version = pytesseract.get_tesseract_version()
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            return EngineHealth(engine_id=self.engine_id, is_healthy=False, error=f"{type(e).__name__}: {e}")
        logger.debug(f"tesseract {version} available")
        elapsed_ms = (time.perf_counter() - start) * 1000
        return EngineHealth(engine_id=self.engine_id, is_healthy=True, response_time_ms=elapsed_ms)

    def recognize(self, image_bytes: bytes, options: RecognitionOptions) -> OCRResult:
        start = time.perf_counter()
        lang = LANGUAGE_MAP.get(options.language, "eng")

        with Image.open(BytesIO(image_bytes)) as img:
            width, height = img.size
            data = pytesseract.image_to_data(
                img, lang=lang, config=TESSERACT_CONFIG, output_type=pytesseract.Output.DICT
            )

        detected = group_lines(data, options.language)
        confidence = sum(d.confidence for d in detected) / len(detected) if detected else 0.0

        return OCRResult(
            raw_text="\n".join(d.text for d in detected),
            detected_texts=tuple(detected),
            confidence=confidence,
            image_data=image_bytes,
            image_width=width,
            image_height=height,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
            ocr_engine=self.engine_id,
        )


def group_lines(data: dict, language_code: str | None = None) -> list[DetectedText]:
    """Merge word-level ``image_to_data`` output into one DetectedText per line, top to bottom."""
    lines: dict[tuple[int, int, int], dict] = {}
    for i in range(len(data["text"])):
        word = str(data["text"][i]).strip()
        conf = float(data["conf"][i])
        if not word or conf < 0:
            continue

        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        x, y, w, h = data["left"][i], data["top"][i], data["width"][i], data["height"][i]
        if key not in lines:
            lines[key] = {"words": [], "confs": [], "box": [x, y, x + w, y + h]}
        else:
            box = lines[key]["box"]
            box[0] = min(box[0], x)
            box[1] = min(box[1], y)
            box[2] = max(box[2], x + w)
            box[3] = max(box[3], y + h)
        lines[key]["words"].append(word)
        lines[key]["confs"].append(conf)

    detected = []
    for line in sorted(lines.values(), key=lambda v: (v["box"][1], v["box"][0])):
        x1, y1, x2, y2 = line["box"]
        detected.append(
            DetectedText(
                text=" ".join(line["words"]),
                confidence=min(sum(line["confs"]) / len(line["confs"]) / 100.0, 1.0),
                bounding_box=BoundingBox(left=x1, top=y1, width=x2 - x1, height=y2 - y1),
                language_code=language_code,
            )
        )
    return detected
