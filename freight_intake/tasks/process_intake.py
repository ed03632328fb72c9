#!/usr/bin/env python3

import logging

from freight_intake.celery_app import celery
from freight_intake.database import SessionLocal
from freight_intake.exceptions import DocumentNotFoundError
from freight_intake.models import Intake
from freight_intake.tasks.retry_config import OcrTaskWithRetry
from freight_intake.utils import log_task_progress
from freight_intake.utils.intake_pipeline import IntakePipeline

logger = logging.getLogger(__name__)


@celery.task(base=OcrTaskWithRetry, bind=True, dont_autoretry_for=(DocumentNotFoundError,))
def process_intake(self, intake_id: int):
    """Process all pending documents of an intake and store the aggregated record."""
    task_id = self.request.id
    with SessionLocal() as db:
        intake = db.get(Intake, intake_id)
        if intake is None:
            log_task_progress(task_id, "process_intake", "failure", f"Intake {intake_id} not found", intake_id=intake_id)
            raise DocumentNotFoundError(f"Intake {intake_id} not found")

        record = IntakePipeline(task_id=task_id).process_intake(db, intake)
        log_task_progress(
            task_id,
            "process_intake",
            "success" if intake.status == "completed" else "failure",
            f"{intake.processed_documents}/{intake.total_documents} documents, status {intake.status}",
            intake_id=intake.id,
        )
        return {
            "intake_id": intake.id,
            "status": intake.status,
            "aggregated_extraction_data": record.model_dump(mode="json"),
        }
