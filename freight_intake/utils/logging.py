import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.orm import Session

from freight_intake.database import SessionLocal
from freight_intake.models import ProcessingLog

logger = logging.getLogger(__name__)


def log_task_progress(
    task_id: Optional[str],
    step_name: str,
    status: str,
    message: str | None = None,
    document_id: int | None = None,
    intake_id: int | None = None,
    detail: str | None = None,
    db: Session | None = None,
) -> None:
    """
    Records the outcome of a pipeline step as a ProcessingLog row.

    Args:
        task_id: The Celery task ID (``None`` when run outside a worker)
        step_name: Name of the processing step, e.g. ``"ocr"``
        status: One of in_progress, success, failure, skipped
        message: Short summary message
        document_id: Optional associated Document id
        intake_id: Optional associated Intake id
        detail: Optional verbose output for diagnostics
        db: Session to write through; a short-lived session is opened when omitted
    """
    entry = ProcessingLog(
        task_id=task_id,
        step_name=step_name,
        status=status,
        message=message,
        document_id=document_id,
        intake_id=intake_id,
        detail=detail,
    )
    if db is not None:
        db.add(entry)
        db.flush()
        return

    with SessionLocal() as session:
        session.add(entry)
        session.commit()


@contextmanager
def step_logging(
    step_name: str,
    task_id: Optional[str] = None,
    document_id: int | None = None,
    intake_id: int | None = None,
    db: Session | None = None,
) -> Iterator[None]:
    """Log ``in_progress`` on entry and ``success`` or ``failure`` on exit.

    Exceptions are recorded and re-raised.
    """
    log_task_progress(task_id, step_name, "in_progress", document_id=document_id, intake_id=intake_id, db=db)
    try:
        yield
    except Exception as exc:
        logger.error(f"[{task_id}] Step {step_name} failed: {exc}")
        log_task_progress(
            task_id,
            step_name,
            "failure",
            message=str(exc)[:500],
            document_id=document_id,
            intake_id=intake_id,
            db=db,
        )
        raise
    log_task_progress(task_id, step_name, "success", document_id=document_id, intake_id=intake_id, db=db)
