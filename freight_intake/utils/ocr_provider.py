#!/usr/bin/env python3
"""Text extraction for PDFs and images.

PDFs are read through their native text layer with PyMuPDF first.  When that
yields less than ``ocr_min_text_length`` characters the PDF is treated as a
scan: pages are rasterized with ``pdftoppm`` (bounded by ``ocr_max_pages``)
into a temporary directory, each page is run through ``tesseract``, and the
cleaned page texts are joined with page markers.  Images go straight to OCR.

OCR failures never propagate.  A failed rasterizer or OCR binary is logged
and produces an empty string, which callers treat as "nothing extracted".
The one exception is :class:`~freight_intake.exceptions.RateLimitExceeded`,
raised when OCR call volume exceeds the per-minute cap.
"""

import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import fitz

from freight_intake.config import settings
from freight_intake.models import Document
from freight_intake.utils.document_conversion import detect_mime_type, is_image, is_pdf
from freight_intake.utils.external_tool import ExternalTool, SubprocessTool
from freight_intake.utils.rate_limit import SlidingWindowRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

#: Characters tesseract commonly emits for rules, table borders and noise.
_OCR_ARTIFACTS = re.compile(r"[|¦§¬~`^_=<>{}\[\]\\•·■□▪●○◦\x00-\x08\x0b\x0c\x0e-\x1f]+")
_PAGE_IMAGE_NUMBER = re.compile(r"-(\d+)\.\w+$")

UNKNOWN_TEXT_LAYER_POLICIES = ("inspect", "assume_text", "assume_scanned")


class OCRResult:
    """Output of one OCR run.

    Attributes:
        provider: Name of the OCR provider, e.g. ``"tesseract"``.
        text: The cleaned extracted text (empty on failure).
        pages: Number of page images processed.
        metadata: Provider-specific details, e.g. the tool error on failure.
    """

    def __init__(self, provider: str, text: str, pages: int = 0, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.provider = provider
        self.text = text
        self.pages = pages
        self.metadata = metadata or {}

    @property
    def confidence(self) -> int:
        return compute_confidence(self.text)

    def __repr__(self) -> str:
        return f"OCRResult(provider={self.provider!r}, chars={len(self.text)}, pages={self.pages})"


class OCRProvider(ABC):
    """Abstract base class for OCR engines."""

    name: str = "unknown"

    @abstractmethod
    def process(self, file_path: str) -> OCRResult:
        """Run OCR on a PDF or image at *file_path*.

        Raises:
            RateLimitExceeded: If the provider's call budget is exhausted.
        """


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def clean_ocr_text(text: str) -> str:
    """Strip OCR artifact characters and collapse runs of whitespace."""
    text = _OCR_ARTIFACTS.sub(" ", text or "")
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def compute_confidence(text: str) -> int:
    """Heuristic 0-100 score of how readable *text* is.

    Starts at 100 and subtracts 30 for fewer than 50 characters, 20 when more
    than 30% of characters are neither word characters nor whitespace, and 25
    when more than half the whitespace-separated tokens are two characters or
    shorter.  Empty text scores 0.
    """
    if not text or not text.strip():
        return 0

    score = 100
    if len(text) < 50:
        score -= 30

    non_word = len(re.findall(r"[^\w\s]", text))
    if non_word / len(text) > 0.3:
        score -= 20

    tokens = text.split()
    short = sum(1 for token in tokens if len(token) <= 2)
    if tokens and short / len(tokens) > 0.5:
        score -= 25

    return max(score, 0)


def extract_native_pdf_text(file_path: str) -> str:
    """Return the PDF's embedded text layer, or ``""`` if it cannot be read."""
    try:
        pdf_doc = fitz.open(file_path)
    except Exception as exc:
        logger.warning(f"Could not open PDF {file_path} for text extraction: {exc}")
        return ""
    try:
        return "\n".join(page.get_text("text") for page in pdf_doc).strip()
    finally:
        pdf_doc.close()


# ---------------------------------------------------------------------------
# Tesseract via subprocess
# ---------------------------------------------------------------------------


class TesseractOCRProvider(OCRProvider):
    """OCR via the ``tesseract`` binary, rasterizing PDFs with ``pdftoppm``.

    Config knobs (from :class:`~freight_intake.config.Settings`):
    - ``tesseract_cmd`` / ``pdftoppm_cmd`` – binaries to invoke.
    - ``tesseract_language`` – language set, e.g. ``"eng"`` or ``"eng+nld"``.
    - ``ocr_dpi`` / ``ocr_max_pages`` – rasterization resolution and page cap.
    - ``ocr_timeout_seconds`` – per-subprocess timeout.
    """

    name = "tesseract"

    def __init__(
        self,
        tesseract: Optional[ExternalTool] = None,
        rasterizer: Optional[ExternalTool] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        languages: Optional[str] = None,
        dpi: Optional[int] = None,
        max_pages: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.timeout = timeout or settings.ocr_timeout_seconds
        self.tesseract = tesseract or SubprocessTool(settings.tesseract_cmd, default_timeout=self.timeout)
        self.rasterizer = rasterizer or SubprocessTool(settings.pdftoppm_cmd, default_timeout=self.timeout)
        self.rate_limiter = rate_limiter or get_rate_limiter("ocr", settings.ocr_rate_limit_per_minute)
        self.languages = languages or settings.tesseract_language
        self.dpi = dpi or settings.ocr_dpi
        self.max_pages = max_pages or settings.ocr_max_pages

    def process(self, file_path: str) -> OCRResult:
        self.rate_limiter.acquire()
        mime_type = detect_mime_type(file_path)
        logger.info(f"[TesseractOCR] Processing {os.path.basename(file_path)} (lang={self.languages})")
        if is_pdf(mime_type):
            return self._process_pdf(file_path)

        text = self._ocr_image(file_path)
        return OCRResult(provider=self.name, text=clean_ocr_text(text), pages=1 if text else 0)

    def _ocr_image(self, image_path: str) -> str:
        result = self.tesseract.run([image_path, "stdout", "-l", self.languages], timeout=self.timeout)
        if not result.ok:
            logger.error(f"[TesseractOCR] OCR failed for {image_path}: {result.error.strip()}")
            return ""
        return result.stdout.strip()

    def _process_pdf(self, pdf_path: str) -> OCRResult:
        with tempfile.TemporaryDirectory(prefix="freight_ocr_") as tmp_dir:
            result = self.rasterizer.run(
                ["-jpeg", "-r", str(self.dpi), "-f", "1", "-l", str(self.max_pages), pdf_path, os.path.join(tmp_dir, "page")],
                timeout=self.timeout,
            )
            if not result.ok:
                logger.error(f"[TesseractOCR] PDF rasterization failed for {pdf_path}: {result.error.strip()}")
                return OCRResult(provider=self.name, text="", metadata={"error": result.error})

            page_images = self._sorted_page_images(tmp_dir)
            texts: List[str] = []
            for number, image_path in enumerate(page_images, start=1):
                page_text = clean_ocr_text(self._ocr_image(image_path))
                logger.debug(f"[TesseractOCR] Page {number}: {len(page_text)} chars")
                if page_text:
                    texts.append(f"--- Page {number} ---\n{page_text}")

        text = "\n\n".join(texts)
        logger.info(f"[TesseractOCR] Extracted {len(text)} chars from {len(page_images)} pages")
        return OCRResult(provider=self.name, text=text, pages=len(page_images))

    @staticmethod
    def _sorted_page_images(directory: str) -> List[str]:
        # pdftoppm zero-pads page numbers depending on page count
        def page_number(name: str) -> int:
            match = _PAGE_IMAGE_NUMBER.search(name)
            return int(match.group(1)) if match else 0

        names = [n for n in os.listdir(directory) if n.startswith("page") and n.lower().endswith((".jpg", ".jpeg"))]
        return [os.path.join(directory, n) for n in sorted(names, key=page_number)]


# ---------------------------------------------------------------------------
# Text extraction engine
# ---------------------------------------------------------------------------


class TextExtractionEngine:
    """Chooses between the native PDF text layer and OCR for a file."""

    def __init__(
        self,
        ocr_provider: Optional[OCRProvider] = None,
        min_text_length: Optional[int] = None,
        unknown_text_layer_policy: Optional[str] = None,
    ) -> None:
        self.ocr_provider = ocr_provider or TesseractOCRProvider()
        self.min_text_length = min_text_length if min_text_length is not None else settings.ocr_min_text_length
        policy = unknown_text_layer_policy or settings.ocr_unknown_text_layer_policy
        if policy not in UNKNOWN_TEXT_LAYER_POLICIES:
            raise ValueError(
                f"Invalid unknown text layer policy '{policy}'. Expected one of {', '.join(UNKNOWN_TEXT_LAYER_POLICIES)}"
            )
        self.unknown_text_layer_policy = policy

    def extract_text(self, file_path: str) -> str:
        mime_type = detect_mime_type(file_path)
        if is_pdf(mime_type):
            native = extract_native_pdf_text(file_path)
            if len(native) >= self.min_text_length:
                logger.info(f"Using native text layer of {os.path.basename(file_path)} ({len(native)} chars)")
                return native
            logger.info(
                f"Native text of {os.path.basename(file_path)} is {len(native)} chars "
                f"(< {self.min_text_length}); falling back to OCR"
            )
            ocr_text = self.ocr_provider.process(file_path).text
            return ocr_text or native

        if is_image(mime_type):
            return self.ocr_provider.process(file_path).text

        logger.warning(f"No text extraction available for {os.path.basename(file_path)} ({mime_type})")
        return ""

    def detect_text_layer(self, file_path: str) -> bool:
        """True when the PDF's native text is long enough to skip OCR."""
        return len(extract_native_pdf_text(file_path)) >= self.min_text_length

    def needs_ocr(self, document: Document, file_path: str) -> bool:
        """Decide whether *document* must be OCRed.

        Images always need OCR and emails never do.  For PDFs an explicit
        ``has_text_layer`` wins; an uninspected one is resolved by the
        configured policy (``inspect`` checks the file and records the result
        on the document).
        """
        mime_type = detect_mime_type(file_path, document.mime_type, document.filename)
        if is_image(mime_type):
            return True
        if not is_pdf(mime_type):
            return False

        if document.has_text_layer is not None:
            return not document.has_text_layer
        if self.unknown_text_layer_policy == "assume_text":
            return False
        if self.unknown_text_layer_policy == "assume_scanned":
            return True

        document.has_text_layer = self.detect_text_layer(file_path)
        return not document.has_text_layer

    def confidence(self, text: str) -> int:
        return compute_confidence(text)
