"""Text-extraction dependency boundary.

`Extractor` is the contract the pipeline consumes: an image reference in,
text plus a 0-1 confidence out. `TesseractExtractor` implements it with
Tesseract OCR over an OpenCV-preprocessed page image.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
import pytesseract
from PIL import Image

from medsafe.models import ExtractionResult


class Extractor(ABC):
    """Extracts text from a stored document image."""

    @abstractmethod
    async def extract(self, source_ref: str) -> ExtractionResult:
        """Return extracted text and confidence, or raise on failure."""


class ImageNotReadable(Exception):
    """The referenced image could not be opened."""


def preprocess_for_ocr(image: np.ndarray) -> np.ndarray:
    """Grayscale and binarize an image to improve OCR quality.

    Args:
        image: BGR or grayscale image.

    Returns:
        Binarized grayscale image.
    """
    if len(image.shape) == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

    # Binarization using Otsu's method
    _, binary = cv2.threshold(
        image,
        0,
        255,
        cv2.THRESH_BINARY + cv2.THRESH_OTSU,
    )
    return binary


def summarize_ocr_data(data: dict) -> tuple[str, float]:
    """Join Tesseract word data into text and a mean 0-1 confidence.

    Args:
        data: Output of `pytesseract.image_to_data(..., output_type=DICT)`.

    Returns:
        Tuple of (text, confidence). Lines are kept as newlines.
    """
    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences = []

    for i in range(len(data["text"])):
        text = data["text"][i].strip()
        conf = float(data["conf"][i])

        # Skip empty or non-word boxes
        if not text or conf < 0:
            continue

        confidences.append(conf / 100.0)
        line_key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(line_key, []).append(text)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return text, min(1.0, max(0.0, confidence))


class TesseractExtractor(Extractor):
    """Extractor using Tesseract over local image files."""

    def __init__(
        self,
        language: str = "eng",
        psm: int = 6,
        oem: int = 3,
        config: Optional[str] = None,
    ):
        """Initialize Tesseract extractor.

        Args:
            language: Tesseract language code(s), e.g., 'eng', 'eng+spa'.
            psm: Page segmentation mode (6 = assume uniform block of text).
            oem: OCR Engine mode (3 = default, based on what's available).
            config: Additional Tesseract config string.
        """
        self.language = language
        self.psm = psm
        self.oem = oem
        self.config = config or ""

    def _build_config(self) -> str:
        """Build Tesseract configuration string."""
        config_parts = [
            f"--psm {self.psm}",
            f"--oem {self.oem}",
        ]
        if self.config:
            config_parts.append(self.config)
        return " ".join(config_parts)

    async def extract(self, source_ref: str) -> ExtractionResult:
        return await asyncio.to_thread(self.extract_sync, source_ref)

    def extract_sync(self, source_ref: str) -> ExtractionResult:
        image = cv2.imread(str(Path(source_ref)))
        if image is None:
            raise ImageNotReadable(f"Cannot read image: {source_ref}")

        pil_image = Image.fromarray(preprocess_for_ocr(image))
        data = pytesseract.image_to_data(
            pil_image,
            lang=self.language,
            config=self._build_config(),
            output_type=pytesseract.Output.DICT,
        )
        text, confidence = summarize_ocr_data(data)

        return ExtractionResult(text=text, confidence=confidence, engine="tesseract")
