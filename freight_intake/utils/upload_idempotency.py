#!/usr/bin/env python3
"""At-most-once upload of a Document's artifact to a CRM offer.

An upload is identified by ``upload:<document id>:<offer id>:<sha[:8]>``,
where ``sha`` is the SHA-256 of the stored original.  A marker under that
key is written after a successful upload and kept for
``upload_marker_ttl`` seconds; while it exists the upload is skipped.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from freight_intake.config import settings
from freight_intake.exceptions import UploadClientError, UploadServerError
from freight_intake.models import Document
from freight_intake.tasks.retry_config import compute_countdown
from freight_intake.utils.cache import RedisStore
from freight_intake.utils.document_conversion import DocumentConverter, UploadArtifact
from freight_intake.utils.file_operations import hash_file, remove_file

logger = logging.getLogger(__name__)


class CrmFileUploader:
    """Posts an artifact as a multipart file to ``<crm_base_url>/offers/<offer id>/files``."""

    def __init__(self, base_url: Optional[str] = None, api_token: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = (base_url or settings.crm_base_url or "").rstrip("/")
        self.api_token = api_token or settings.crm_api_token
        self.timeout = timeout or settings.upload_timeout_seconds

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def upload(self, artifact: UploadArtifact, offer_id: int) -> Dict[str, Any]:
        if not self.base_url:
            raise UploadClientError(0, "CRM base URL is not configured")

        url = f"{self.base_url}/offers/{offer_id}/files"
        try:
            with open(artifact.path, "rb") as f:
                resp = requests.post(
                    url,
                    headers=self._headers(),
                    files={"file": (artifact.filename, f, artifact.mime_type)},
                    timeout=self.timeout,
                )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            raise UploadServerError(f"Upload to {url} failed: {exc}") from exc

        if 400 <= resp.status_code < 500:
            raise UploadClientError(resp.status_code, resp.text[:200])
        if resp.status_code >= 500:
            raise UploadServerError(f"CRM returned HTTP {resp.status_code}", status_code=resp.status_code)

        try:
            return resp.json()
        except ValueError:
            return {}


@dataclass
class UploadResult:
    status: str  # "uploaded" / "skipped"
    key: str
    attempts: int = 0
    response: Optional[Dict[str, Any]] = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"


class UploadIdempotencyManager:
    def __init__(
        self,
        converter: Optional[DocumentConverter] = None,
        uploader: Optional[CrmFileUploader] = None,
        store: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.converter = converter or DocumentConverter()
        self.uploader = uploader or CrmFileUploader()
        self.store = store if store is not None else RedisStore(prefix="upload_markers:")
        self._sleep = sleep

    @staticmethod
    def idempotency_key(document_id: int, offer_id: int, sha: str) -> str:
        return f"upload:{document_id}:{offer_id}:{sha[:8]}"

    def ensure_uploaded_once(self, document: Document, offer_id: int) -> UploadResult:
        """Upload *document* to *offer_id* unless the same file was already uploaded.

        The key hashes the stored original, so a re-run skips before any
        conversion happens.  Sets ``document.upload_status`` / ``upload_error``;
        committing is up to the caller.

        Raises:
            UploadClientError: The CRM rejected the upload (never retried).
            UploadServerError: Server errors persisted through every retry.
        """
        key = self.idempotency_key(document.id, offer_id, hash_file(self.converter.source_path(document)))

        if self.store.has(key):
            logger.info(f"Upload of document {document.id} to offer {offer_id} already done ({key}); skipping")
            return UploadResult(status="skipped", key=key)

        artifact = self.converter.normalize(document)
        response, attempts = self._upload_with_retry(document, artifact, offer_id)

        self.store.put(
            key,
            {"document_id": document.id, "offer_id": offer_id, "filename": artifact.filename},
            ttl=settings.upload_marker_ttl,
        )
        document.upload_status = "uploaded"
        document.upload_error = None
        self._cleanup(artifact)
        logger.info(f"Uploaded document {document.id} to offer {offer_id} as {artifact.filename} ({key})")
        return UploadResult(status="uploaded", key=key, attempts=attempts, response=response)

    def _upload_with_retry(self, document: Document, artifact: UploadArtifact, offer_id: int):
        max_retries = settings.upload_max_retries
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.uploader.upload(artifact, offer_id), attempt
            except UploadClientError as exc:
                logger.error(f"Upload of document {document.id} rejected: {exc}")
                self._mark_failed(document, str(exc))
                raise
            except UploadServerError as exc:
                if attempt > max_retries:
                    logger.error(f"Upload of document {document.id} failed after {attempt} attempts: {exc}")
                    self._mark_failed(document, str(exc))
                    raise UploadServerError(
                        f"Upload failed after {attempt} attempts: {exc}", status_code=exc.status_code
                    ) from exc
                delay = compute_countdown(attempt - 1, settings.upload_retry_delays, jitter=False)
                logger.warning(f"Upload of document {document.id} failed ({exc}); retrying in {delay}s")
                self._sleep(delay)

    @staticmethod
    def _mark_failed(document: Document, error: str) -> None:
        document.upload_status = "failed"
        document.upload_error = error

    @staticmethod
    def _cleanup(artifact: UploadArtifact) -> None:
        # Only converted temporaries; the stored original is never touched.
        if artifact.is_converted and remove_file(artifact.path):
            logger.debug(f"Removed converted artifact {artifact.path}")
