#!/usr/bin/env python3
"""Merge the extraction data of every Document in an Intake into one record.

Documents are visited in source-priority order (email, then PDF, then image,
then anything else; ties by ascending document id) and each leaf is taken
from the first document that has a non-empty value for it.  The result is
deterministic, so aggregating the same documents twice yields the same
record.
"""

import logging
from statistics import mean
from typing import List, Optional

from sqlalchemy.orm import Session

from freight_intake.models import Document, Intake
from freight_intake.schemas import AggregatedRecord, AggregationMetadata, ExtractionData, SourceEntry, merge_if_empty
from freight_intake.utils.document_conversion import is_email, is_image, is_pdf

logger = logging.getLogger(__name__)

PRIORITIES = {"email": 100, "pdf": 50, "image": 25, "unknown": 0}


def source_type_for(mime_type: Optional[str]) -> str:
    if is_email(mime_type):
        return "email"
    if is_pdf(mime_type):
        return "pdf"
    if is_image(mime_type):
        return "image"
    return "unknown"


def _ordered(documents: List[Document]) -> List[Document]:
    return sorted(documents, key=lambda d: (-PRIORITIES[source_type_for(d.mime_type)], d.id))


def merge_documents(documents: List[Document]) -> AggregatedRecord:
    """Build the aggregated record without touching the database."""
    merged = ExtractionData()
    sources: List[SourceEntry] = []
    confidences: List[float] = []

    for document in _ordered(documents):
        if not document.extraction_data:
            logger.debug(f"Skipping document {document.id}: no extraction data")
            continue
        source_type = source_type_for(document.mime_type)
        merged = merge_if_empty(merged, ExtractionData.from_payload(document.extraction_data))
        sources.append(
            SourceEntry(
                document_id=document.id,
                filename=document.filename,
                type=source_type,
                priority=PRIORITIES[source_type],
            )
        )
        if document.extraction_confidence is not None:
            confidences.append(document.extraction_confidence)

    confidence = round(mean(confidences), 2) if confidences else 0.0
    return AggregatedRecord(
        **{name: getattr(merged, name) for name in type(merged).model_fields},
        metadata=AggregationMetadata(sources=sources, confidence=confidence),
    )


def aggregate_intake(db: Session, intake: Intake) -> AggregatedRecord:
    """Aggregate *intake* and persist the record to ``aggregated_extraction_data``."""
    record = merge_documents(list(intake.documents))
    intake.aggregated_extraction_data = record.model_dump(mode="json")
    db.commit()
    logger.info(
        f"Aggregated intake {intake.id} from {len(record.metadata.sources)} document(s), "
        f"confidence {record.metadata.confidence}"
    )
    return record
