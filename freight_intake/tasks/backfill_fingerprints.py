#!/usr/bin/env python3

import logging
from dataclasses import asdict

from freight_intake.celery_app import celery
from freight_intake.database import SessionLocal
from freight_intake.tasks.retry_config import BaseTaskWithRetry
from freight_intake.utils import log_task_progress
from freight_intake.utils.deduplication import backfill_fingerprints

logger = logging.getLogger(__name__)


@celery.task(base=BaseTaskWithRetry, bind=True)
def backfill_email_fingerprints(self, chunk_size: int = 50, dry_run: bool = False):
    """Fill in Message-ID and content hash for stored emails that lack them."""
    with SessionLocal() as db:
        report = backfill_fingerprints(db, chunk_size=chunk_size, dry_run=dry_run)
    if dry_run:
        logger.info("Dry run: no fingerprints were written")

    log_task_progress(
        self.request.id,
        "backfill_fingerprints",
        "success",
        f"processed={report.processed} updated={report.updated} skipped={report.skipped} errors={report.errors}",
        detail=f"conflicts={report.conflicts}" if report.conflicts else None,
    )
    return asdict(report)
