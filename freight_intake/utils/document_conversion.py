#!/usr/bin/env python3
"""Format normalization: turn an ingested document into an uploadable, OCR-able artifact.

Dispatch is by detected type:

* email (``message/rfc822`` / ``.eml``) – returned as-is; rendering to PDF is
  left to whoever needs it.
* HEIC/HEIF – converted to JPEG; on converter failure the original bytes are
  copied to the converted location unchanged.
* other images – EXIF stripped, then optionally rendered onto an A4 PDF page.
* PDF – passed through untouched.
* anything else – passed through with a warning.

Every call to the image converter degrades to the previous-stage artifact on
failure; :meth:`DocumentConverter.normalize` never raises for these paths.
"""

import logging
import mimetypes
import os
import shutil
from dataclasses import dataclass
from typing import Optional

import filetype
import puremagic

from freight_intake.config import settings
from freight_intake.models import Document
from freight_intake.utils.external_tool import ExternalTool, SubprocessTool
from freight_intake.utils.file_operations import is_usable_file, remove_file
from freight_intake.utils.storage import LocalStorage

logger = logging.getLogger(__name__)

EMAIL_MIME_TYPES = {"message/rfc822", "application/vnd.ms-outlook"}
HEIC_MIME_TYPES = {"image/heic", "image/heif", "image/heic-sequence", "image/heif-sequence"}
HEIC_EXTENSIONS = {".heic", ".heif"}

# Source tags describing how the artifact was produced
TAG_ORIGINAL = "original"
TAG_PDF_NO_TEXT = "original:pdf_no_text"
TAG_HEIC_TO_JPEG = "converted:heic_to_jpeg"
TAG_PASSTHROUGH = "converted:passthrough"
TAG_IMAGE_STRIPPED = "converted:image_stripped"
TAG_IMAGE_TO_PDF = "converted:image_to_pdf"
TAG_PROCESSED = "processed"


@dataclass
class UploadArtifact:
    path: str
    filename: str
    mime_type: str
    size: int
    source_tag: str

    @property
    def is_converted(self) -> bool:
        """True when the file at :attr:`path` was written by the conversion step."""
        return self.source_tag.startswith("converted:")


# ---------------------------------------------------------------------------
# Type detection
# ---------------------------------------------------------------------------


def _detect_mime_type_from_magic(file_path: str) -> Optional[str]:
    """Sniff the MIME type from file content with puremagic, then filetype."""
    try:
        matches = puremagic.magic_file(file_path)
        for match in matches:
            if match.mime_type:
                return match.mime_type
    except (puremagic.PureError, ValueError, OSError) as exc:
        logger.debug(f"puremagic could not identify {file_path}: {exc}")

    try:
        kind = filetype.guess(file_path)
    except OSError as exc:
        logger.debug(f"filetype could not read {file_path}: {exc}")
        return None
    return kind.mime if kind else None


def detect_mime_type(file_path: str, declared: Optional[str] = None, filename: Optional[str] = None) -> str:
    """Return the real MIME type of *file_path*.

    Email is recognised from the declared type or the ``.eml`` extension first,
    since raw RFC-822 text has no magic bytes.  Otherwise content sniffing wins
    over the declared type, which wins over the filename extension.
    """
    name = filename or os.path.basename(file_path)
    ext = os.path.splitext(name)[1].lower()
    if (declared or "").lower() in EMAIL_MIME_TYPES or ext == ".eml":
        return "message/rfc822"
    if ext in HEIC_EXTENSIONS:
        return "image/heic"

    sniffed = _detect_mime_type_from_magic(file_path) if os.path.isfile(file_path) else None
    if sniffed:
        return sniffed
    if declared:
        return declared.lower()
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


def is_email(mime_type: Optional[str]) -> bool:
    mime = (mime_type or "").lower()
    return mime in EMAIL_MIME_TYPES or mime.startswith("message/")


def is_heic(mime_type: Optional[str]) -> bool:
    return (mime_type or "").lower() in HEIC_MIME_TYPES


def is_image(mime_type: Optional[str]) -> bool:
    return (mime_type or "").lower().startswith("image/")


def is_pdf(mime_type: Optional[str]) -> bool:
    return (mime_type or "").lower() == "application/pdf"


# ---------------------------------------------------------------------------
# Converter
# ---------------------------------------------------------------------------


class DocumentConverter:
    """Produces an :class:`UploadArtifact` for a :class:`Document`."""

    def __init__(
        self,
        storage: Optional[LocalStorage] = None,
        convert_tool: Optional[ExternalTool] = None,
        output_dir: Optional[str] = None,
        convert_images_to_pdf: Optional[bool] = None,
        jpeg_quality: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.storage = storage or LocalStorage()
        self.convert_tool = convert_tool or SubprocessTool(
            settings.imagemagick_convert_cmd, default_timeout=settings.image_conversion_timeout
        )
        self.output_dir = output_dir or os.path.join(settings.workdir, "tmp")
        self.convert_images_to_pdf = (
            settings.convert_images_to_pdf if convert_images_to_pdf is None else convert_images_to_pdf
        )
        self.jpeg_quality = jpeg_quality or settings.jpeg_quality
        self.timeout = timeout or settings.image_conversion_timeout

    # -- public ------------------------------------------------------------

    def source_path(self, document: Document) -> str:
        return self.storage.path(document.storage_disk, document.file_path)

    def normalize(self, document: Document) -> UploadArtifact:
        original_path = self.source_path(document)
        mime_type = detect_mime_type(original_path, document.mime_type, document.filename)
        logger.info(
            f"Normalizing document {document.id} ({document.filename}, {mime_type}, "
            f"text layer: {document.has_text_layer if document.has_text_layer is not None else 'unknown'})"
        )

        if is_email(mime_type):
            path, tag = original_path, TAG_ORIGINAL
        elif is_heic(mime_type):
            path, tag = self.convert_heic_to_jpeg(original_path, document)
        elif is_image(mime_type):
            path, tag = self._prepare_image(original_path, document)
        elif is_pdf(mime_type):
            path = original_path
            tag = TAG_PDF_NO_TEXT if document.has_text_layer is False else TAG_ORIGINAL
        else:
            logger.warning(f"Unknown file type for document {document.id}: {mime_type}; passing through unchanged")
            path, tag = original_path, TAG_PROCESSED

        if path != original_path and not is_usable_file(path):
            logger.warning(f"Converted artifact missing or empty for document {document.id}: {path}; using original")
            path, tag = original_path, TAG_ORIGINAL

        return self._build_artifact(document, original_path, path, tag)

    def convert_heic_to_jpeg(self, heic_path: str, document: Document) -> tuple[str, str]:
        output_path = self.converted_path(document, "jpg")
        result = self.convert_tool.run(
            [heic_path, "-quality", str(self.jpeg_quality), "-auto-orient", output_path],
            timeout=self.timeout,
        )
        if result.ok and is_usable_file(output_path):
            logger.info(f"HEIC converted to JPEG: {heic_path} -> {output_path}")
            return output_path, TAG_HEIC_TO_JPEG

        logger.warning(f"HEIC conversion failed for document {document.id}, copying original bytes: {result.error}")
        return self._copy_through(heic_path, output_path), TAG_PASSTHROUGH

    def strip_exif(self, image_path: str, document: Document) -> str:
        ext = os.path.splitext(image_path)[1].lstrip(".") or "img"
        output_path = self.converted_path(document, ext)
        result = self.convert_tool.run([image_path, "-strip", output_path], timeout=self.timeout)
        if result.ok and is_usable_file(output_path):
            return output_path

        logger.warning(f"EXIF stripping failed for document {document.id}, copying original bytes: {result.error}")
        return self._copy_through(image_path, output_path)

    def convert_image_to_pdf(self, image_path: str, document: Document) -> Optional[str]:
        """Render *image_path* onto one A4 page. Returns ``None`` on failure."""
        output_path = self.converted_path(document, "pdf")
        result = self.convert_tool.run(
            [image_path, "-page", "A4", "-resize", "595x842", "-gravity", "center", output_path],
            timeout=self.timeout,
        )
        if result.ok and is_usable_file(output_path):
            return output_path
        logger.warning(f"Image to PDF conversion failed for document {document.id}: {result.error}")
        return None

    def converted_path(self, document: Document, ext: str) -> str:
        os.makedirs(self.output_dir, exist_ok=True)
        return os.path.join(self.output_dir, f"{document.id}-{self.upload_filename(document, ext)}")

    @staticmethod
    def upload_filename(document: Document, ext: str) -> str:
        stem = os.path.splitext(document.filename)[0] or "document"
        return f"{stem}-converted.{ext}"

    # -- internals ---------------------------------------------------------

    def _prepare_image(self, image_path: str, document: Document) -> tuple[str, str]:
        clean_path = self.strip_exif(image_path, document)
        if self.convert_images_to_pdf:
            pdf_path = self.convert_image_to_pdf(clean_path, document)
            if pdf_path:
                if clean_path != image_path:
                    remove_file(clean_path)
                return pdf_path, TAG_IMAGE_TO_PDF
        return clean_path, TAG_IMAGE_STRIPPED

    @staticmethod
    def _copy_through(src: str, dest: str) -> str:
        try:
            shutil.copyfile(src, dest)
            return dest
        except OSError as exc:
            logger.error(f"Could not copy {src} to {dest}: {exc}")
            return src

    def _build_artifact(self, document: Document, original_path: str, path: str, tag: str) -> UploadArtifact:
        if path == original_path:
            filename = document.filename
            mime_type = detect_mime_type(path, document.mime_type, document.filename)
            if tag.startswith("converted:"):
                tag = TAG_ORIGINAL
        else:
            ext = os.path.splitext(path)[1].lstrip(".")
            filename = self.upload_filename(document, ext)
            mime_type = detect_mime_type(path, None, filename)
        size = os.path.getsize(path) if os.path.isfile(path) else 0
        return UploadArtifact(path=path, filename=filename, mime_type=mime_type, size=size, source_tag=tag)
