#!/usr/bin/env python3
"""Worker entry point: ``celery -A freight_intake.celery_worker worker``."""

from freight_intake.celery_app import celery  # noqa: F401
from freight_intake.database import init_db

# Register tasks
from freight_intake.tasks.backfill_fingerprints import backfill_email_fingerprints  # noqa: F401
from freight_intake.tasks.ingest_email import ingest_stored_email  # noqa: F401
from freight_intake.tasks.process_document import process_document  # noqa: F401
from freight_intake.tasks.process_intake import process_intake  # noqa: F401
from freight_intake.tasks.upload_document import upload_document  # noqa: F401

init_db()
