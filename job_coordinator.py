"""
Lifecycle coordination for video generation jobs.

This module defines the ``JobCoordinator`` class. It ties together the job
store, the external generation service, the asset relocator and the live
event registry. A job moves through the following steps:

1. **Upload** – the reference video URL handed over by the upload widget is
   re-hosted on durable storage. A ``processing`` job record is created
   against the relocated URL. Source URLs are unique, so one asset cannot
   back two jobs.
2. **Submission** – the prompt and source URL go to the generation service
   along with a fixed set of generation parameters and a webhook callback.
   The external handle it returns is attached to the job exactly once. An
   upstream rejection is returned to the caller as is and does not fail the
   job. A record that exists without a handle can simply be resubmitted.
3. **Completion** – the generation service calls the webhook. A successful
   result is relocated to durable storage before the job is marked
   ``completed``. Every other outcome marks the job ``failed``, including a
   successful generation whose output cannot be relocated. Terminal states
   are sticky. ``JobStore.transition`` is a compare-and-swap on
   ``processing``, so duplicate or late notifications become no-ops.
4. **Status** – callers can pull the vendor status for a handle directly.
   This read-only path never mutates the store.

Jobs carry no expiry. A job whose webhook never arrives stays
``processing`` until somebody resolves it through the status path.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from asset_relocator import AssetRelocator
from errors import (
    ConfigurationError,
    DuplicateAssetError,
    Forbidden,
    NotFound,
    PersistenceError,
    ServiceError,
    ValidationError,
)
from generation_client import FalClient, GenerationRequest, StatusReport, parse_notification
from job_storage import Job, JobState, JobStore
from notifications import SubscriberRegistry

logger = logging.getLogger(__name__)

MISSING_RESULT_ASSET = "missing result asset"


def aspect_hint_for(width: Optional[int], height: Optional[int]) -> str:
    """Landscape sources generate at 16:9, everything else at 9:16."""
    width = width or 1920
    height = height or 1080
    return "16:9" if width / height > 1 else "9:16"


def _require_http_url(value: str, field_name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"{field_name} must be an http(s) URL")


@dataclass
class SubmissionResult:
    job_id: str
    external_job_handle: str


@dataclass
class Acknowledgement:
    """Response to a completion notification.

    ``outcome`` is one of ``completed``, ``failed``, ``ignored`` or
    ``invalid``. The webhook never exposes anything beyond it.
    """

    status_code: int
    outcome: str
    job_id: Optional[str] = None


class JobCoordinator:
    """Owns every write to job records after creation."""

    def __init__(
        self,
        store: JobStore,
        generation_client: FalClient,
        relocator: AssetRelocator,
        events: SubscriberRegistry,
        settings,
    ) -> None:
        self.store = store
        self.generation_client = generation_client
        self.relocator = relocator
        self.events = events
        self.settings = settings

    async def register_upload(
        self,
        owner_id: str,
        source_url: str,
        prompt_text: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> Tuple[Job, str]:
        """Re-host an uploaded reference video and create its job record.

        Returns the new ``processing`` job together with the aspect ratio the
        generation should use.
        """
        prompt_text = (prompt_text or "").strip()
        source_url = (source_url or "").strip()
        if not prompt_text or not source_url:
            raise ValidationError("Missing required fields: promptText or sourceUrl")
        _require_http_url(source_url, "sourceUrl")

        asset = await self.relocator.relocate(source_url, folder="sources")
        hint = aspect_hint_for(width or asset.width, height or asset.height)
        job = self.store.create(
            Job(
                owner_id=owner_id,
                prompt_text=prompt_text,
                source_asset_url=asset.secure_url,
                aspect_hint=hint,
            )
        )
        logger.info("[Upload] Created job %s for %s", job.id, job.source_asset_url)
        return job, hint

    async def submit(
        self,
        owner_id: str,
        prompt_text: Optional[str],
        source_asset_url: Optional[str],
        callback_url: str,
        job_id: Optional[str] = None,
        aspect_hint: Optional[str] = None,
    ) -> SubmissionResult:
        """Send a job to the generation service and record its handle.

        ``job_id`` is advisory. When it names a job owned by the caller,
        the handle is attached to that record, and ``source_asset_url`` must
        be the source that record was created with. Otherwise a new record is
        created. Exactly one upstream call is made, and the store is only
        written once that call has succeeded.
        """
        prompt_text = (prompt_text or "").strip()
        source_asset_url = (source_asset_url or "").strip()
        if not prompt_text or not source_asset_url:
            raise ValidationError("Missing required fields: promptText or sourceAssetUrl")
        _require_http_url(source_asset_url, "sourceAssetUrl")
        if not self.generation_client.configured:
            raise ConfigurationError("Server configuration error: Missing API key")

        existing = self.store.get(job_id) if job_id else None
        if existing is not None and existing.owner_id != owner_id:
            logger.warning("[Submit] Job %s is not owned by %s; ignoring jobId", job_id, owner_id)
            existing = None
        if existing is not None and existing.external_job_handle:
            raise ValidationError("Job has already been submitted")
        if existing is not None and existing.source_asset_url != source_asset_url:
            raise ValidationError("sourceAssetUrl does not match the job's source asset")
        if existing is None and self.store.find_by_source(source_asset_url) is not None:
            raise DuplicateAssetError("A job already exists for this source asset")

        aspect_ratio = aspect_hint or (existing.aspect_hint if existing else None) or self.settings.default_aspect_ratio
        logger.info("[Submit] Generation request received (job %s, owner %s)", job_id or "new", owner_id)
        handle = await self.generation_client.submit(
            GenerationRequest(
                prompt_text=prompt_text,
                source_asset_url=source_asset_url,
                callback_url=callback_url,
                aspect_ratio=aspect_ratio,
            )
        )

        if existing is not None:
            job = self.store.attach_handle(existing.id, handle)
        else:
            job = self.store.create(
                Job(
                    owner_id=owner_id,
                    prompt_text=prompt_text,
                    source_asset_url=source_asset_url,
                    external_job_handle=handle,
                    aspect_hint=aspect_ratio,
                )
            )
        logger.info("[Submit] Job %s submitted with handle %s", job.id, handle)
        return SubmissionResult(job_id=job.id, external_job_handle=handle)

    async def handle_completion(self, body, token: Optional[str] = None) -> Acknowledgement:
        """Apply a completion notification from the generation service.

        Rejected or irrelevant notifications are still acknowledged with a
        2xx so the vendor does not keep retrying. Only a store failure
        surfaces as an error (``PersistenceError``), leaving the vendor free
        to redeliver.
        """
        secret = self.settings.webhook_secret
        if secret and not hmac.compare_digest(token or "", secret):
            logger.warning("[Webhook] Rejected notification with invalid token")
            return Acknowledgement(200, "ignored")

        try:
            notification = parse_notification(body)
        except ValidationError as exc:
            logger.error("[Webhook] Invalid notification: %s", exc.detail)
            return Acknowledgement(202, "invalid")

        handle = notification.handle
        job = self.store.find_by_handle(handle)
        if job is None:
            logger.warning("[Webhook] Notification for unknown handle %s", handle)
            return Acknowledgement(200, "ignored")
        if job.state is not JobState.processing:
            logger.info("[Webhook] Job %s already %s; ignoring %s", job.id, job.state.value, handle)
            return Acknowledgement(200, "ignored", job.id)

        logger.info("[Webhook] Job %s (handle %s) reported status %s", job.id, handle, notification.raw_status)

        if notification.state is not JobState.completed:
            detail = notification.error or f"Generation ended with status {notification.raw_status}"
            return self._finish(job, JobState.failed, error_detail=detail, status_code=202)

        if not notification.result_url:
            logger.error("[Webhook] No result asset in payload for job %s", job.id)
            return self._finish(job, JobState.failed, error_detail=MISSING_RESULT_ASSET)

        try:
            asset = await self.relocator.relocate(notification.result_url, folder=job.owner_id)
        except PersistenceError:
            raise
        except Exception as exc:
            reason = exc.detail if isinstance(exc, ServiceError) else (str(exc) or type(exc).__name__)
            logger.error("[Webhook] Relocation failed for job %s: %s", job.id, reason)
            return self._finish(job, JobState.failed, error_detail=f"Result asset relocation failed: {reason}")

        return self._finish(job, JobState.completed, result_asset_url=asset.secure_url)

    def _finish(
        self,
        job: Job,
        state: JobState,
        result_asset_url: Optional[str] = None,
        error_detail: Optional[str] = None,
        status_code: int = 200,
    ) -> Acknowledgement:
        try:
            updated = self.store.transition(
                job.id, state, result_asset_url=result_asset_url, error_detail=error_detail
            )
        except PersistenceError:
            logger.error("[Webhook] Could not persist %s for job %s", state.value, job.id)
            raise
        if updated is None:
            logger.info("[Webhook] Job %s was finalised concurrently; ignoring", job.id)
            return Acknowledgement(200, "ignored", job.id)

        logger.info("[Webhook] Job %s is now %s", updated.id, updated.state.value)
        self.events.publish(updated.owner_id, {"type": "job.updated", "job": updated.to_dict()})
        return Acknowledgement(status_code, updated.state.value, updated.id)

    async def check_status(self, handle: Optional[str]) -> StatusReport:
        """Pull the vendor's view of a job. Never mutates the store."""
        if not handle:
            raise ValidationError("Missing externalJobHandle")
        return await self.generation_client.status(handle)

    def list_jobs(self, owner_id: str) -> List[Job]:
        return self.store.list_by_owner(owner_id)

    def get_job(self, owner_id: str, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise NotFound("Job not found")
        if job.owner_id != owner_id:
            raise Forbidden("You don't have permission to access this job")
        return job

    def delete_job(self, owner_id: str, job_id: str) -> None:
        """Delete a job in any state; only its owner may do so."""
        job = self.store.get(job_id)
        if job is None:
            logger.error("[Delete] Job not found with ID: %s", job_id)
            raise NotFound("Job not found")
        if job.owner_id != owner_id:
            logger.error("[Delete] User %s attempted to delete job %s owned by %s", owner_id, job_id, job.owner_id)
            raise Forbidden("You don't have permission to delete this job")
        self.store.delete(job_id)
        logger.info("[Delete] Deleted job %s", job_id)
