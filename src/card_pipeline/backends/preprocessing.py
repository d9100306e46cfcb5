"""Image preparation before OCR."""

from io import BytesIO

from PIL import Image, ImageFilter, ImageOps


def image_size(image_bytes: bytes) -> tuple[int, int]:
    """Return (width, height) of an encoded image."""
    with Image.open(BytesIO(image_bytes)) as img:
        return img.size


def downscale(img: Image.Image, max_dimension: int) -> Image.Image:
    """Shrink so the longest side is at most max_dimension. Never upscales."""
    width, height = img.size
    if max(width, height) <= max_dimension:
        return img
    scale = max_dimension / max(width, height)
    new_size = (max(1, int(width * scale)), max(1, int(height * scale)))
    return img.resize(new_size, Image.Resampling.LANCZOS)


def preprocess_image(image_bytes: bytes, max_dimension: int | None = None) -> bytes:
    """Normalize a photographed card for OCR.

    Steps: apply EXIF orientation, convert to grayscale, stretch contrast,
    downscale to max_dimension (if given), sharpen.

    Args:
        image_bytes: Encoded image (any format Pillow reads)
        max_dimension: Optional cap on the longest side in pixels

    Returns:
        PNG-encoded bytes
    """
    with Image.open(BytesIO(image_bytes)) as img:
        img = ImageOps.exif_transpose(img)
        img = img.convert("L")
        img = ImageOps.autocontrast(img)
        if max_dimension:
            img = downscale(img, max_dimension)
        img = img.filter(ImageFilter.SHARPEN)

        buffer = BytesIO()
        img.save(buffer, format="PNG")
    return buffer.getvalue()
