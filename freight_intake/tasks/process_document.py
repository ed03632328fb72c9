#!/usr/bin/env python3

import logging

from freight_intake.celery_app import celery
from freight_intake.database import SessionLocal
from freight_intake.exceptions import DocumentNotFoundError
from freight_intake.models import Document
from freight_intake.tasks.retry_config import OcrTaskWithRetry
from freight_intake.utils import log_task_progress
from freight_intake.utils.intake_pipeline import IntakePipeline

logger = logging.getLogger(__name__)


@celery.task(base=OcrTaskWithRetry, bind=True, dont_autoretry_for=(DocumentNotFoundError,))
def process_document(self, document_id: int):
    """
    Normalize, OCR (when needed) and extract a single Document.

    Extraction failures are recorded on the Document as ``failed``; only rate
    limiting makes the task retry.
    """
    task_id = self.request.id
    with SessionLocal() as db:
        document = db.get(Document, document_id)
        if document is None:
            log_task_progress(task_id, "process_document", "failure", f"Document {document_id} not found")
            raise DocumentNotFoundError(f"Document {document_id} not found")

        log_task_progress(
            task_id, "process_document", "in_progress", document.filename, document_id=document.id, intake_id=document.intake_id
        )
        document = IntakePipeline(task_id=task_id).process_document(db, document)
        log_task_progress(
            task_id,
            "process_document",
            "success" if document.processing_status == "completed" else "failure",
            f"Document {document.id} {document.processing_status}",
            document_id=document.id,
            intake_id=document.intake_id,
        )
        return {
            "document_id": document.id,
            "status": document.processing_status,
            "method": document.extraction_method,
            "confidence": document.extraction_confidence,
        }
