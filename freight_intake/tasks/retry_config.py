#!/usr/bin/env python3
"""Retry policies for intake Celery tasks.

All tasks retry with exponential backoff and optional ±20 % jitter through
:class:`BaseTaskWithRetry`.  Policy subclasses differ only in their delays
and in which errors are final:

* :class:`BaseTaskWithRetry` – default policy (3 retries: 60 s, 300 s, 900 s)
* :class:`OcrTaskWithRetry` – OCR and AI extraction; longer waits so that
  provider rate-limit windows can clear
* :class:`UploadTaskWithRetry` – CRM uploads; client (4xx) errors are final

A :class:`~freight_intake.exceptions.RateLimitExceeded` never retries sooner
than its ``retry_after``.

Usage::

    @celery.task(base=OcrTaskWithRetry, bind=True)
    def process_document(self, document_id):
        ...
"""

import logging
import math
import random
from typing import Any

from celery import Task

from freight_intake.exceptions import RateLimitExceeded, UploadClientError

logger = logging.getLogger(__name__)

#: Default per-retry countdowns in seconds (1 min, 5 min, 15 min).
DEFAULT_RETRY_DELAYS: list[int] = [60, 300, 900]


def parse_delay_string(value: str) -> list[int]:
    """Parse ``"60,300,900"`` into ``[60, 300, 900]``."""
    return [int(v.strip()) for v in value.split(",") if v.strip()]


def compute_countdown(
    retries: int,
    base_delays: list[int] | None = None,
    jitter: bool = True,
) -> int:
    """Compute the countdown in seconds before retry number *retries* (0-based).

    Past the end of *base_delays* the last delay doubles for each extra
    attempt.  The result is never below 1 s.

    Examples::

        >>> compute_countdown(0, [1, 2, 4], jitter=False)
        1
        >>> compute_countdown(2, [1, 2, 4], jitter=False)
        4
        >>> compute_countdown(3, [1, 2, 4], jitter=False)
        8
    """
    delays = base_delays if base_delays is not None else DEFAULT_RETRY_DELAYS

    if not delays:
        base = 60
    elif retries < len(delays):
        base = delays[retries]
    else:
        base = delays[-1] * (2 ** (retries - len(delays) + 1))

    if jitter:
        base = int(base * (1.0 + random.uniform(-0.2, 0.2)))  # noqa: S311

    return max(base, 1)


class BaseTaskWithRetry(Task):
    """Celery task base with backoff derived from :attr:`retry_delays`.

    ``retry_delays = None`` reads ``TASK_RETRY_DELAYS`` from settings and
    falls back to :data:`DEFAULT_RETRY_DELAYS`.
    """

    autoretry_for = (Exception,)
    dont_autoretry_for: tuple = ()
    max_retries: int = 3
    retry_kwargs: dict = {"max_retries": 3}
    retry_delays: list[int] | None = None
    retry_jitter: bool = True

    def retry(
        self,
        args: Any = None,
        kwargs: Any = None,
        exc: BaseException | None = None,
        throw: bool = True,
        eta: Any = None,
        countdown: int | None = None,
        max_retries: int | None = None,
        **options: Any,
    ) -> Any:
        if countdown is None and eta is None:
            countdown = compute_countdown(
                retries=self.request.retries,
                base_delays=self.effective_retry_delays(),
                jitter=self.retry_jitter,
            )
            if isinstance(exc, RateLimitExceeded):
                countdown = max(countdown, math.ceil(exc.retry_after))
            logger.debug(
                "Retry %d/%d for task %s in %d s",
                self.request.retries + 1,
                max_retries if max_retries is not None else self.max_retries,
                self.name,
                countdown,
            )

        return super().retry(
            args=args,
            kwargs=kwargs,
            exc=exc,
            throw=throw,
            eta=eta,
            countdown=countdown,
            max_retries=max_retries,
            **options,
        )

    def effective_retry_delays(self) -> list[int]:
        """Class attribute first, then the ``task_retry_delays`` setting, then the default."""
        if self.retry_delays is not None:
            return self.retry_delays

        from freight_intake.config import settings  # noqa: PLC0415

        raw = settings.task_retry_delays
        if raw:
            return parse_delay_string(raw)
        return DEFAULT_RETRY_DELAYS


class OcrTaskWithRetry(BaseTaskWithRetry):
    """OCR and AI extraction tasks: 120 s, 600 s, 1800 s."""

    retry_delays: list[int] = [120, 600, 1800]


class UploadTaskWithRetry(BaseTaskWithRetry):
    """CRM upload tasks. A rejected upload (4xx) fails immediately."""

    dont_autoretry_for = (UploadClientError,)
