#!/usr/bin/env python3

import logging

from freight_intake.celery_app import celery
from freight_intake.config import settings
from freight_intake.database import SessionLocal
from freight_intake.exceptions import DocumentNotFoundError
from freight_intake.tasks.retry_config import OcrTaskWithRetry
from freight_intake.utils import log_task_progress
from freight_intake.utils.intake_pipeline import IntakePipeline

logger = logging.getLogger(__name__)


@celery.task(base=OcrTaskWithRetry, bind=True, dont_autoretry_for=(DocumentNotFoundError,))
def ingest_stored_email(self, path: str, intake_id: int, disk: str | None = None, filename: str | None = None):
    """
    Ingest a raw email that was written to storage.

    Returns a JSON-safe summary: ``status`` is ``"success"`` or ``"duplicate"``.
    """
    task_id = self.request.id
    disk = disk or settings.storage_disk
    with SessionLocal() as db:
        result = IntakePipeline(task_id=task_id).ingest_stored_email(db, disk, path, intake_id, filename)

        if result["status"] == "duplicate":
            return result

        log_task_progress(
            task_id,
            "ingest_email",
            "success",
            f"Email {path} ingested as document {result['document_id']}",
            document_id=result["document_id"],
            intake_id=intake_id,
        )
        return {
            "status": result["status"],
            "skipped_as_duplicate": False,
            "document_id": result["document_id"],
            "extraction_data": result["extraction_data"],
            "message_id": result["fingerprint"].message_id,
            "content_sha": result["fingerprint"].content_sha,
            "attachment_document_ids": result["attachment_document_ids"],
        }
