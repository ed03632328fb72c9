# freight_intake/models.py
#!/usr/bin/env python3

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from freight_intake.database import Base


class Intake(Base):
    """One shipping/quotation request, made of one or more documents."""

    __tablename__ = "intakes"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(String, nullable=False, default="pending")  # pending / processing / completed / failed
    source = Column(String)  # "email", "upload", ...
    is_multi_document = Column(Boolean, nullable=False, default=False)
    total_documents = Column(Integer, nullable=False, default=0)
    processed_documents = Column(Integer, nullable=False, default=0)
    aggregated_extraction_data = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    documents = relationship(
        "Document",
        back_populates="intake",
        order_by="Document.id",
        cascade="all, delete-orphan",
    )


class Document(Base):
    __tablename__ = "intake_documents"
    __table_args__ = (UniqueConstraint("intake_id", "source_content_sha", name="uq_intake_content_sha"),)

    id = Column(Integer, primary_key=True, index=True)
    intake_id = Column(Integer, ForeignKey("intakes.id"), nullable=False, index=True)

    filename = Column(String, nullable=False)
    mime_type = Column(String)
    storage_disk = Column(String, nullable=False, default="documents")
    file_path = Column(String, nullable=False)
    file_size = Column(Integer)

    # None means the text layer was never inspected
    has_text_layer = Column(Boolean, nullable=True)

    extraction_data = Column(JSON)
    extraction_confidence = Column(Float)
    extraction_method = Column(String)
    extracted_at = Column(DateTime(timezone=True))

    # Email identity (null for non-email documents)
    source_message_id = Column(String, index=True)
    source_content_sha = Column(String(64), index=True)

    processing_status = Column(String, nullable=False, default="pending")  # pending / completed / failed
    upload_status = Column(String)
    upload_error = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    intake = relationship("Intake", back_populates="documents")


class ProcessingLog(Base):
    __tablename__ = "processing_logs"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(String, index=True)
    intake_id = Column(Integer, ForeignKey("intakes.id"), nullable=True)
    document_id = Column(Integer, ForeignKey("intake_documents.id"), nullable=True)
    step_name = Column(String)  # e.g. "normalize", "ocr", "extract", "aggregate"
    status = Column(String)  # "in_progress" / "success" / "failure" / "skipped"
    message = Column(String)
    detail = Column(Text)
    timestamp = Column(DateTime(timezone=True), server_default=func.now())
