from __future__ import annotations

import pytesseract
from PIL import Image

from tfl_expenses.core.config import settings


def recognize_image(image: Image.Image) -> str:
    if image.mode not in {"RGB", "L"}:
        image = image.convert("RGB")
    return pytesseract.image_to_string(image, lang=settings.tesseract_lang) or ""


def ocr_pdf_page(page) -> str:
    """OCR the largest embedded image of a scanned PDF page."""
    best_image = None
    best_area = 0
    for image_file in page.images:
        image = image_file.image
        if image is None:
            continue
        area = image.width * image.height
        if area > best_area:
            best_area = area
            best_image = image

    if best_image is None:
        return ""
    return recognize_image(best_image)
