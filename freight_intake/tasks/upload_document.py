#!/usr/bin/env python3

import logging

from freight_intake.celery_app import celery
from freight_intake.database import SessionLocal
from freight_intake.exceptions import DocumentNotFoundError, UploadError
from freight_intake.models import Document
from freight_intake.tasks.retry_config import UploadTaskWithRetry
from freight_intake.utils import log_task_progress
from freight_intake.utils.upload_idempotency import UploadIdempotencyManager

logger = logging.getLogger(__name__)


@celery.task(base=UploadTaskWithRetry, bind=True, dont_autoretry_for=(DocumentNotFoundError, UploadError))
def upload_document(self, document_id: int, offer_id: int):
    """Upload a Document's artifact to a CRM offer at most once.

    The manager already retries server errors, so upload errors are final
    here; the task-level retry only covers infrastructure failures.
    """
    task_id = self.request.id
    with SessionLocal() as db:
        document = db.get(Document, document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")

        try:
            result = UploadIdempotencyManager().ensure_uploaded_once(document, offer_id)
        except UploadError as exc:
            db.commit()
            log_task_progress(
                task_id, "upload_document", "failure", str(exc), document_id=document.id, intake_id=document.intake_id
            )
            raise

        db.commit()
        log_task_progress(
            task_id,
            "upload_document",
            "skipped" if result.skipped else "success",
            f"Offer {offer_id}: {result.status} ({result.key})",
            document_id=document.id,
            intake_id=document.intake_id,
        )
        return {"document_id": document.id, "offer_id": offer_id, "status": result.status, "key": result.key}
