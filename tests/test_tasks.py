"""
Tests for the Celery task wrappers. The pipeline is mocked; these check
session handling, progress logging and the JSON-safe task results.
"""

from contextlib import contextmanager
from unittest.mock import patch

import pytest

from freight_intake.exceptions import DocumentNotFoundError, UploadClientError
from freight_intake.schemas import AggregatedRecord, AggregationMetadata, Fingerprint, SourceEntry, VehicleInfo
from freight_intake.tasks.backfill_fingerprints import backfill_email_fingerprints
from freight_intake.tasks.ingest_email import ingest_stored_email
from freight_intake.tasks.process_document import process_document
from freight_intake.tasks.process_intake import process_intake
from freight_intake.tasks.upload_document import upload_document
from freight_intake.utils.deduplication import BackfillReport
from freight_intake.utils.upload_idempotency import UploadResult


@contextmanager
def task_env(module, db_session, *extra):
    """Patch SessionLocal and log_task_progress in a task module, plus any *extra* names."""
    base = f"freight_intake.tasks.{module}"
    with patch(f"{base}.SessionLocal") as mock_session_local, patch(f"{base}.log_task_progress") as mock_log:
        mock_session_local.return_value.__enter__.return_value = db_session
        mock_session_local.return_value.__exit__.return_value = None
        mocks = {"log": mock_log}
        patchers = [patch(f"{base}.{name}") for name in extra]
        try:
            for name, patcher in zip(extra, patchers):
                mocks[name] = patcher.start()
            yield mocks
        finally:
            for patcher in patchers:
                patcher.stop()


@pytest.mark.unit
@pytest.mark.requires_db
class TestProcessDocumentTask:
    def test_success(self, db_session, make_intake, make_document):
        document = make_document(make_intake())

        def fake_process(db, doc):
            doc.processing_status = "completed"
            doc.extraction_method = "pattern"
            doc.extraction_confidence = 0.42
            return doc

        with task_env("process_document", db_session, "IntakePipeline") as mocks:
            mocks["IntakePipeline"].return_value.process_document.side_effect = fake_process
            result = process_document.run(document.id)

        assert result == {"document_id": document.id, "status": "completed", "method": "pattern", "confidence": 0.42}
        assert mocks["log"].call_args.args[2] == "success"

    def test_failed_extraction_is_reported_not_raised(self, db_session, make_intake, make_document):
        document = make_document(make_intake())

        def fake_process(db, doc):
            doc.processing_status = "failed"
            return doc

        with task_env("process_document", db_session, "IntakePipeline") as mocks:
            mocks["IntakePipeline"].return_value.process_document.side_effect = fake_process
            result = process_document.run(document.id)

        assert result["status"] == "failed"
        assert mocks["log"].call_args.args[2] == "failure"

    def test_missing_document(self, db_session):
        with task_env("process_document", db_session, "IntakePipeline") as mocks:
            with pytest.raises(DocumentNotFoundError):
                process_document.run(12345)
        mocks["IntakePipeline"].assert_not_called()
        assert mocks["log"].call_args.args[1:3] == ("process_document", "failure")


@pytest.mark.unit
@pytest.mark.requires_db
class TestProcessIntakeTask:
    def test_success(self, db_session, make_intake):
        intake = make_intake()
        record = AggregatedRecord(
            vehicle=VehicleInfo(vin="1HGCM82633A123456"),
            metadata=AggregationMetadata(
                sources=[SourceEntry(document_id=1, filename="mail.eml", type="email", priority=100)],
                confidence=0.5,
            ),
        )

        def fake_process(db, target):
            target.status = "completed"
            return record

        with task_env("process_intake", db_session, "IntakePipeline") as mocks:
            mocks["IntakePipeline"].return_value.process_intake.side_effect = fake_process
            result = process_intake.run(intake.id)

        assert result["status"] == "completed"
        assert result["aggregated_extraction_data"]["vehicle"]["vin"] == "1HGCM82633A123456"
        assert result["aggregated_extraction_data"]["metadata"]["sources"][0]["type"] == "email"
        assert mocks["log"].call_args.args[2] == "success"

    def test_missing_intake(self, db_session):
        with task_env("process_intake", db_session, "IntakePipeline"):
            with pytest.raises(DocumentNotFoundError):
                process_intake.run(999)


@pytest.mark.unit
@pytest.mark.requires_db
class TestIngestEmailTask:
    def test_success_summary_is_json_safe(self, db_session):
        fp = Fingerprint(message_id="<abc@x>", content_sha="f" * 64)
        with task_env("ingest_email", db_session, "IntakePipeline") as mocks:
            mocks["IntakePipeline"].return_value.ingest_stored_email.return_value = {
                "status": "success",
                "skipped_as_duplicate": False,
                "document": object(),
                "document_id": 5,
                "extraction_data": {"vehicle": {"vin": "X"}},
                "fingerprint": fp,
                "headers": {},
                "attachment_document_ids": [6],
            }
            result = ingest_stored_email.run("intakes/1/mail.eml", 1)

        mocks["IntakePipeline"].return_value.ingest_stored_email.assert_called_once_with(
            db_session, "documents", "intakes/1/mail.eml", 1, None
        )
        assert result == {
            "status": "success",
            "skipped_as_duplicate": False,
            "document_id": 5,
            "extraction_data": {"vehicle": {"vin": "X"}},
            "message_id": "<abc@x>",
            "content_sha": "f" * 64,
            "attachment_document_ids": [6],
        }
        assert mocks["log"].call_args.args[1:3] == ("ingest_email", "success")

    def test_duplicate_is_returned_unchanged(self, db_session):
        duplicate = {
            "status": "duplicate",
            "skipped_as_duplicate": True,
            "message": "Email already processed in this intake",
            "document_id": 5,
            "original_extraction": {},
            "matched_on": "message_id",
        }
        with task_env("ingest_email", db_session, "IntakePipeline") as mocks:
            mocks["IntakePipeline"].return_value.ingest_stored_email.return_value = duplicate
            result = ingest_stored_email.run("intakes/1/mail.eml", 1, disk="inbox", filename="fwd.eml")

        assert result == duplicate
        mocks["log"].assert_not_called()
        mocks["IntakePipeline"].return_value.ingest_stored_email.assert_called_once_with(
            db_session, "inbox", "intakes/1/mail.eml", 1, "fwd.eml"
        )


@pytest.mark.unit
@pytest.mark.requires_db
class TestUploadDocumentTask:
    def test_upload(self, db_session, make_intake, make_document):
        document = make_document(make_intake())
        with task_env("upload_document", db_session, "UploadIdempotencyManager") as mocks:
            mocks["UploadIdempotencyManager"].return_value.ensure_uploaded_once.return_value = UploadResult(
                status="uploaded", key="upload:1:77:abcdef12", attempts=1
            )
            result = upload_document.run(document.id, 77)

        assert result == {"document_id": document.id, "offer_id": 77, "status": "uploaded", "key": "upload:1:77:abcdef12"}
        assert mocks["log"].call_args.args[2] == "success"

    def test_skipped_upload_is_logged_as_skipped(self, db_session, make_intake, make_document):
        document = make_document(make_intake())
        with task_env("upload_document", db_session, "UploadIdempotencyManager") as mocks:
            mocks["UploadIdempotencyManager"].return_value.ensure_uploaded_once.return_value = UploadResult(
                status="skipped", key="upload:1:77:abcdef12"
            )
            result = upload_document.run(document.id, 77)

        assert result["status"] == "skipped"
        assert mocks["log"].call_args.args[2] == "skipped"

    def test_rejected_upload_is_committed_and_raised(self, db_session, make_intake, make_document):
        document = make_document(make_intake())

        def reject(doc, offer_id):
            doc.upload_status = "failed"
            doc.upload_error = "Upload rejected with HTTP 422"
            raise UploadClientError(422, "closed")

        with task_env("upload_document", db_session, "UploadIdempotencyManager") as mocks:
            mocks["UploadIdempotencyManager"].return_value.ensure_uploaded_once.side_effect = reject
            with pytest.raises(UploadClientError):
                upload_document.run(document.id, 77)

        db_session.expire_all()
        assert document.upload_status == "failed"
        assert mocks["log"].call_args.args[2] == "failure"

    def test_missing_document(self, db_session):
        with task_env("upload_document", db_session, "UploadIdempotencyManager"):
            with pytest.raises(DocumentNotFoundError):
                upload_document.run(404, 77)


@pytest.mark.unit
def test_backfill_task_returns_report(db_session):
    with task_env("backfill_fingerprints", db_session, "backfill_fingerprints") as mocks:
        mocks["backfill_fingerprints"].return_value = BackfillReport(processed=3, updated=2, skipped=1, conflicts=[7])
        result = backfill_email_fingerprints.run(chunk_size=10, dry_run=True)

    mocks["backfill_fingerprints"].assert_called_once_with(db_session, chunk_size=10, dry_run=True)
    assert result == {"processed": 3, "updated": 2, "skipped": 1, "errors": 0, "conflicts": [7]}
    assert mocks["log"].call_args.args[1:3] == ("backfill_fingerprints", "success")
    assert mocks["log"].call_args.kwargs["detail"] == "conflicts=[7]"
