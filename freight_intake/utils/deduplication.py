#!/usr/bin/env python3
"""Duplicate detection for ingested emails.

Lookups go by Message-ID first, then by content hash, both scoped to an
intake when one is given.  On ingestion a three-tier guard applies:

1. Message-ID match within the intake,
2. content-hash match within the intake,
3. content-hash match in any intake (``dedup_global_content_guard``).

A duplicate is a normal outcome, not an error: no row is created and the
caller gets the original document's id and extraction data.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from freight_intake.config import settings
from freight_intake.models import Document, Intake
from freight_intake.schemas import Fingerprint
from freight_intake.utils.email_fingerprint import extract_plain_body, fingerprint, parse_headers
from freight_intake.utils.storage import LocalStorage

logger = logging.getLogger(__name__)

MATCHED_ON_MESSAGE_ID = "message_id"
MATCHED_ON_CONTENT_SHA = "content_sha"


@dataclass
class DuplicateMatch:
    document: Document
    matched_on: Optional[str]
    message: str

    def to_result(self) -> Dict[str, Any]:
        return {
            "status": "duplicate",
            "skipped_as_duplicate": True,
            "message": self.message,
            "document_id": self.document.id,
            "original_extraction": self.document.extraction_data,
            "matched_on": self.matched_on,
        }


def _matched_on(document: Document, fp: Fingerprint) -> Optional[str]:
    if fp.message_id and document.source_message_id == fp.message_id:
        return MATCHED_ON_MESSAGE_ID
    if document.source_content_sha == fp.content_sha:
        return MATCHED_ON_CONTENT_SHA
    return None


def find_existing_document(db: Session, fp: Fingerprint, intake_id: Optional[int] = None) -> Optional[Document]:
    """Return the earliest document with the same Message-ID, else the same content hash."""
    if fp.message_id:
        query = db.query(Document).filter(Document.source_message_id == fp.message_id)
        if intake_id is not None:
            query = query.filter(Document.intake_id == intake_id)
        existing = query.order_by(Document.id).first()
        if existing:
            return existing

    query = db.query(Document).filter(Document.source_content_sha == fp.content_sha)
    if intake_id is not None:
        query = query.filter(Document.intake_id == intake_id)
    return query.order_by(Document.id).first()


def is_duplicate(db: Session, fp: Fingerprint, intake_id: Optional[int] = None) -> Dict[str, Any]:
    """Check without ingesting. Reports the matching document and what matched."""
    existing = find_existing_document(db, fp, intake_id)
    return {
        "is_duplicate": existing is not None,
        "document_id": existing.id if existing else None,
        "document": existing,
        "matched_on": _matched_on(existing, fp) if existing else None,
        "fingerprint": fp,
    }


def check_ingestion_duplicate(
    db: Session,
    fp: Fingerprint,
    intake_id: Optional[int],
    global_guard: Optional[bool] = None,
) -> Optional[DuplicateMatch]:
    """Apply the three-tier guard. Returns ``None`` when the email is new."""
    if fp.message_id:
        existing = (
            db.query(Document)
            .filter(Document.intake_id == intake_id, Document.source_message_id == fp.message_id)
            .order_by(Document.id)
            .first()
        )
        if existing:
            return DuplicateMatch(existing, MATCHED_ON_MESSAGE_ID, "Email already processed in this intake")

    existing = (
        db.query(Document)
        .filter(Document.intake_id == intake_id, Document.source_content_sha == fp.content_sha)
        .order_by(Document.id)
        .first()
    )
    if existing:
        return DuplicateMatch(existing, MATCHED_ON_CONTENT_SHA, "Email already processed in this intake (by content hash)")

    global_guard = settings.dedup_global_content_guard if global_guard is None else global_guard
    if global_guard:
        existing = (
            db.query(Document).filter(Document.source_content_sha == fp.content_sha).order_by(Document.id).first()
        )
        if existing:
            return DuplicateMatch(
                existing, MATCHED_ON_CONTENT_SHA, "Email already processed in another intake (by content hash)"
            )
    return None


# ---------------------------------------------------------------------------
# Maintenance operations
# ---------------------------------------------------------------------------


@dataclass
class BackfillReport:
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    conflicts: List[int] = field(default_factory=list)


def _is_email_document(document: Document) -> bool:
    return (
        document.mime_type == "message/rfc822"
        or (document.filename or "").lower().endswith(".eml")
        or (document.file_path or "").lower().endswith(".eml")
    )


def backfill_fingerprints(
    db: Session,
    storage: Optional[LocalStorage] = None,
    chunk_size: int = 50,
    dry_run: bool = False,
) -> BackfillReport:
    """Compute fingerprints for stored emails that were ingested before fingerprinting existed."""
    storage = storage or LocalStorage()
    report = BackfillReport()
    last_id = 0

    while True:
        batch = (
            db.query(Document)
            .filter(Document.source_content_sha.is_(None), Document.id > last_id)
            .order_by(Document.id)
            .limit(chunk_size)
            .all()
        )
        if not batch:
            break
        last_id = batch[-1].id

        for document in batch:
            if not _is_email_document(document):
                continue
            report.processed += 1
            if not storage.exists(document.storage_disk, document.file_path):
                logger.error(f"File not found for document {document.id}: {document.file_path}")
                report.skipped += 1
                continue

            try:
                raw = storage.get(document.storage_disk, document.file_path)
                fp = fingerprint(raw, parse_headers(raw), extract_plain_body(raw))
            except (OSError, ValueError) as exc:
                logger.error(f"Fingerprinting document {document.id} failed: {exc}")
                report.errors += 1
                continue

            clash = (
                db.query(Document)
                .filter(
                    Document.intake_id == document.intake_id,
                    Document.source_content_sha == fp.content_sha,
                    Document.id != document.id,
                )
                .first()
            )
            if clash:
                logger.warning(f"Document {document.id} duplicates document {clash.id} in intake {document.intake_id}")
                report.conflicts.append(document.id)
                report.skipped += 1
                continue

            if not dry_run:
                document.source_message_id = fp.message_id
                document.source_content_sha = fp.content_sha
                document.processing_status = document.processing_status or "pending"
                db.flush()
            report.updated += 1
            logger.debug(f"Fingerprinted document {document.id}: {fp.message_id or 'no Message-ID'} {fp.content_sha[:16]}")

    if not dry_run:
        db.commit()
    logger.info(
        f"Fingerprint backfill: processed={report.processed} updated={report.updated} "
        f"skipped={report.skipped} errors={report.errors}"
    )
    return report


def remove_duplicate_documents(db: Session, intake: Intake) -> List[int]:
    """Delete later copies of the same email within *intake*, keeping the earliest row.

    Extraction data from a removed copy is carried onto the kept row when the
    kept row has none.  Returns the removed document ids.
    """
    kept: Dict[str, Document] = {}
    removed: List[int] = []
    for document in sorted(intake.documents, key=lambda d: d.id):
        keys = [k for k in (document.source_message_id, document.source_content_sha) if k]
        original = next((kept[k] for k in keys if k in kept), None)
        if original is None:
            for key in keys:
                kept[key] = document
            continue

        if not original.extraction_data and document.extraction_data:
            original.extraction_data = document.extraction_data
            original.extraction_confidence = document.extraction_confidence
            original.extraction_method = document.extraction_method
        removed.append(document.id)
        intake.documents.remove(document)
        db.delete(document)

    if removed:
        intake.total_documents = len(intake.documents)
        intake.processed_documents = min(intake.processed_documents or 0, intake.total_documents)
        intake.is_multi_document = intake.total_documents > 1
        db.commit()
        logger.info(f"Removed duplicate documents {removed} from intake {intake.id}")
    return removed
