#!/usr/bin/env python3
"""Orchestrates ingestion, per-document processing and intake aggregation.

The Celery tasks in :mod:`freight_intake.tasks` are thin wrappers around
:class:`IntakePipeline`; everything here runs synchronously against the
session it is given, so it can be exercised without a worker.
"""

import logging
import mimetypes
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from freight_intake.config import settings
from freight_intake.exceptions import DocumentNotFoundError, RateLimitExceeded
from freight_intake.models import Document, Intake
from freight_intake.schemas import AggregatedRecord, ExtractionData, ExtractionResult
from freight_intake.utils.aggregation import aggregate_intake, source_type_for
from freight_intake.utils.deduplication import check_ingestion_duplicate
from freight_intake.utils.document_conversion import (
    TAG_HEIC_TO_JPEG,
    DocumentConverter,
    detect_mime_type,
    is_email,
    is_image,
    is_pdf,
)
from freight_intake.utils.email_fingerprint import (
    extract_attachments,
    extract_plain_body,
    extract_sender_email,
    fingerprint,
    parse_headers,
)
from freight_intake.utils.extraction_strategy import ExtractionStrategySelector
from freight_intake.utils.file_operations import remove_file
from freight_intake.utils.logging import log_task_progress, step_logging
from freight_intake.utils.ocr_provider import TextExtractionEngine
from freight_intake.utils.storage import LocalStorage

logger = logging.getLogger(__name__)


def _with_sender_email(data: ExtractionData, from_header: Optional[str]) -> ExtractionData:
    if data.contact.email:
        return data
    sender = extract_sender_email(from_header)
    if not sender:
        return data
    return data.model_copy(update={"contact": data.contact.model_copy(update={"email": sender})})


class IntakePipeline:
    def __init__(
        self,
        storage: Optional[LocalStorage] = None,
        converter: Optional[DocumentConverter] = None,
        text_engine: Optional[TextExtractionEngine] = None,
        selector: Optional[ExtractionStrategySelector] = None,
        task_id: Optional[str] = None,
    ) -> None:
        self.storage = storage or LocalStorage()
        self.converter = converter or DocumentConverter(storage=self.storage)
        self._text_engine = text_engine
        self.selector = selector or ExtractionStrategySelector()
        self.task_id = task_id

    @property
    def text_engine(self) -> TextExtractionEngine:
        if self._text_engine is None:
            self._text_engine = TextExtractionEngine()
        return self._text_engine

    # ------------------------------------------------------------------
    # Email ingestion
    # ------------------------------------------------------------------

    def ingest_stored_email(
        self,
        db: Session,
        disk: str,
        path: str,
        intake_id: int,
        filename: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Ingest a raw email already written to storage.

        Returns a ``status="duplicate"`` result without creating a row when the
        email was seen before; otherwise creates and extracts the Document.

        Raises:
            DocumentNotFoundError: If the stored file or the intake does not exist.
        """
        if not self.storage.exists(disk, path):
            raise DocumentNotFoundError(f"Stored email not found: {disk}:{path}")

        raw = self.storage.get(disk, path)
        headers = parse_headers(raw)
        body = extract_plain_body(raw)
        fp = fingerprint(raw, headers, body)

        match = check_ingestion_duplicate(db, fp, intake_id)
        if match:
            logger.info(f"{match.message}: {path} matches document {match.document.id} ({match.matched_on})")
            log_task_progress(
                self.task_id,
                "ingest_email",
                "skipped",
                match.message,
                document_id=match.document.id,
                intake_id=intake_id,
                db=db,
            )
            db.commit()
            return match.to_result()

        intake = db.get(Intake, intake_id)
        if intake is None:
            raise DocumentNotFoundError(f"Intake {intake_id} not found")

        document = Document(
            intake_id=intake.id,
            filename=filename or os.path.basename(path),
            mime_type="message/rfc822",
            storage_disk=disk,
            file_path=path,
            file_size=len(raw),
            has_text_layer=False,
            processing_status="pending",
            source_message_id=fp.message_id,
            source_content_sha=fp.content_sha,
        )
        intake.documents.append(document)
        try:
            db.flush()
        except IntegrityError:
            # Lost a race against a concurrent ingest of the same email
            db.rollback()
            match = check_ingestion_duplicate(db, fp, intake_id)
            if match is None:
                raise
            logger.info(f"{match.message}: concurrent ingest of {path} resolved to document {match.document.id}")
            return match.to_result()

        logger.info(f"Created email document {document.id} in intake {intake.id} (Message-ID: {fp.message_id})")

        with step_logging("extract", self.task_id, document_id=document.id, intake_id=intake.id, db=db):
            result = self.selector.extract(body, "email")
        self._store_extraction(document, _with_sender_email(result.data, headers.get("from")), result)

        attachment_ids: List[int] = []
        if settings.email_extract_attachments:
            attachment_ids = self._store_attachments(db, intake, document, raw)

        self._refresh_counters(intake)
        db.commit()

        return {
            "status": "success",
            "skipped_as_duplicate": False,
            "document": document,
            "document_id": document.id,
            "extraction_data": document.extraction_data,
            "fingerprint": fp,
            "headers": headers,
            "attachment_document_ids": attachment_ids,
        }

    def _store_attachments(self, db: Session, intake: Intake, email_document: Document, raw: bytes) -> List[int]:
        created = []
        stored_names = set()
        folder = os.path.join(os.path.dirname(email_document.file_path), "attachments", str(email_document.id))
        for index, (filename, declared, payload) in enumerate(extract_attachments(raw), start=1):
            name = os.path.basename(filename.replace("\\", "/")) or "attachment"
            mime_type = declared if declared != "application/octet-stream" else None
            mime_type = mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
            if not (is_pdf(mime_type) or is_image(mime_type)):
                logger.debug(f"Skipping attachment {name} ({mime_type}) of document {email_document.id}")
                continue

            # Parts can share a filename
            stored_name = name
            while stored_name in stored_names:
                stored_name = f"{index}-{stored_name}"
            stored_names.add(stored_name)

            path = self.storage.put(email_document.storage_disk, os.path.join(folder, stored_name), payload)
            attachment = Document(
                intake_id=intake.id,
                filename=name,
                mime_type=mime_type,
                storage_disk=email_document.storage_disk,
                file_path=path,
                file_size=len(payload),
                processing_status="pending",
            )
            intake.documents.append(attachment)
            db.flush()
            created.append(attachment.id)
            logger.info(f"Stored attachment {name} of document {email_document.id} as document {attachment.id}")
        return created

    # ------------------------------------------------------------------
    # Document processing
    # ------------------------------------------------------------------

    def _read_text(self, db: Session, document: Document) -> str:
        original_path = self.converter.source_path(document)
        mime_type = detect_mime_type(original_path, document.mime_type, document.filename)
        document.mime_type = document.mime_type or mime_type

        if is_email(mime_type):
            return extract_plain_body(self.storage.get(document.storage_disk, document.file_path))

        with step_logging("normalize", self.task_id, document_id=document.id, intake_id=document.intake_id, db=db):
            artifact = self.converter.normalize(document)
        try:
            # OCR reads the original unless it is HEIC, which tesseract cannot open
            path = artifact.path if artifact.source_tag == TAG_HEIC_TO_JPEG else original_path

            with step_logging(
                "text_extraction", self.task_id, document_id=document.id, intake_id=document.intake_id, db=db
            ):
                if self.text_engine.needs_ocr(document, path):
                    return self.text_engine.ocr_provider.process(path).text
                return self.text_engine.extract_text(path)
        finally:
            if artifact.is_converted:
                remove_file(artifact.path)

    def _store_extraction(self, document: Document, data: ExtractionData, result: ExtractionResult) -> None:
        document.extraction_data = data.to_payload()
        document.extraction_confidence = result.metadata.confidence
        document.extraction_method = result.metadata.method
        document.extracted_at = datetime.now(timezone.utc)
        document.processing_status = "completed"

    @staticmethod
    def _mark_failed(document: Document) -> None:
        document.extraction_data = {}
        document.extraction_confidence = None
        document.extraction_method = None
        document.extracted_at = datetime.now(timezone.utc)
        document.processing_status = "failed"

    def process_document(self, db: Session, document: Document) -> Document:
        """Normalize, read text from and extract *document*.

        Any failure leaves the Document ``failed`` with empty extraction data.
        :class:`RateLimitExceeded` propagates with the Document still pending
        so that the caller can retry later.
        """
        logger.info(f"Processing document {document.id} ({document.filename})")
        try:
            text = self._read_text(db, document)
            source_type = source_type_for(document.mime_type)
            with step_logging("extract", self.task_id, document_id=document.id, intake_id=document.intake_id, db=db):
                result = self.selector.extract(text, source_type)
            self._store_extraction(document, result.data, result)
            logger.info(
                f"Document {document.id} extracted via {result.metadata.method} "
                f"(confidence {result.metadata.confidence})"
            )
        except RateLimitExceeded:
            raise
        except Exception as exc:
            logger.exception(f"Processing document {document.id} failed: {exc}")
            self._mark_failed(document)
        db.commit()
        return document

    # ------------------------------------------------------------------
    # Intake processing
    # ------------------------------------------------------------------

    @staticmethod
    def _refresh_counters(intake: Intake) -> None:
        intake.total_documents = len(intake.documents)
        intake.processed_documents = sum(1 for d in intake.documents if d.processing_status != "pending")
        intake.is_multi_document = intake.total_documents > 1

    def process_intake(self, db: Session, intake: Intake) -> AggregatedRecord:
        """Process every pending Document of *intake* in id order, then aggregate.

        The intake ends ``failed`` when no Document produced extraction data,
        ``completed`` otherwise.
        """
        intake.status = "processing"
        db.commit()

        for document in [d for d in intake.documents if d.processing_status == "pending"]:
            self.process_document(db, document)
            self._refresh_counters(intake)
            db.commit()

        self._refresh_counters(intake)
        with step_logging("aggregate", self.task_id, intake_id=intake.id, db=db):
            record = aggregate_intake(db, intake)

        intake.status = "completed" if record.metadata.sources else "failed"
        db.commit()
        logger.info(
            f"Intake {intake.id} {intake.status}: {intake.processed_documents}/{intake.total_documents} documents processed"
        )
        return record
