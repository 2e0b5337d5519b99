"""
Client for the asynchronous video generation service (fal queue API).

Three operations are exposed:

* ``submit`` queues a video-to-video job with a webhook callback and returns
  the vendor's request id, which the rest of the system calls the external
  job handle.
* ``status`` pulls the current status of a queued job. It serves as the manual
  fallback when a webhook is late or lost.
* ``parse_notification`` turns a webhook body into a
  ``CompletionNotification``.

The vendor reports status with several spellings and casings ("OK",
"COMPLETED", "completed", "IN_PROGRESS", ...). ``normalize_status`` collapses
them into ``JobState`` here so nothing past this module sees raw vendor
strings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from errors import ConfigurationError, UpstreamError, ValidationError
from job_storage import JobState

logger = logging.getLogger(__name__)


_COMPLETED = {"ok", "completed", "complete", "success", "succeeded"}
_FAILED = {"error", "failed", "failure", "cancelled", "canceled"}


def normalize_status(value: Optional[str]) -> JobState:
    """Map a vendor status string onto the three internal states.

    Anything that is neither a known success nor a known failure
    (``IN_QUEUE``, ``IN_PROGRESS``, ``PENDING``, unknown values) counts as
    still processing.
    """
    status = (value or "").strip().lower()
    if status in _COMPLETED:
        return JobState.completed
    if status in _FAILED:
        return JobState.failed
    return JobState.processing


@dataclass
class GenerationRequest:
    prompt_text: str
    source_asset_url: str
    callback_url: str
    aspect_ratio: str


@dataclass
class StatusReport:
    """Pulled status of one external job."""

    handle: str
    state: JobState
    progress_fraction: float = 0.0
    result: Optional[Dict[str, Any]] = None
    error: Optional[Any] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "externalJobHandle": self.handle,
            "status": self.state.value,
            "progressFraction": self.progress_fraction,
            "result": self.result,
            "error": self.error,
            "response": self.raw,
        }


@dataclass
class CompletionNotification:
    handle: str
    state: JobState
    raw_status: str
    result_url: Optional[str] = None
    error: Optional[str] = None


def _result_url(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("resultAsset", "video"):
        asset = payload.get(key)
        if isinstance(asset, dict) and asset.get("url"):
            return asset["url"]
    return None


def _error_text(body: dict) -> Optional[str]:
    error = body.get("error")
    if error is None and isinstance(body.get("payload"), dict):
        error = body["payload"].get("error") or body["payload"].get("detail")
    if error is None:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("detail") or error)
    return str(error)


def parse_notification(body: Any) -> CompletionNotification:
    """Validate a webhook body.

    Accepts the internal shape (``externalJobHandle``,
    ``payload.resultAsset.url``) as well as the vendor's own
    (``request_id``, ``payload.video.url``).
    """
    if not isinstance(body, dict):
        raise ValidationError("Notification body must be a JSON object")
    handle = body.get("externalJobHandle") or body.get("request_id")
    raw_status = body.get("status")
    if not handle or not raw_status:
        raise ValidationError("Notification is missing externalJobHandle or status")
    return CompletionNotification(
        handle=str(handle),
        state=normalize_status(str(raw_status)),
        raw_status=str(raw_status),
        result_url=_result_url(body.get("payload")),
        error=_error_text(body),
    )


def _upstream_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"Generation service returned HTTP {response.status_code}"
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("error") or data.get("message")
        if detail:
            return detail if isinstance(detail, str) else str(detail)
    return str(data)


class FalClient:
    """Thin async wrapper around the fal queue REST endpoints."""

    def __init__(self, settings, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self.api_key: str | None = settings.fal_key
        self.app_id = settings.fal_app_id.strip("/")
        self.queue_url = settings.fal_queue_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("Server configuration error: Missing API key")
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @property
    def _requests_root(self) -> str:
        # Status and result live under owner/alias, without the endpoint path
        owner_alias = "/".join(self.app_id.split("/")[:2])
        return f"{self.queue_url}/{owner_alias}/requests"

    async def submit(self, request: GenerationRequest) -> str:
        """Queue a generation job and return its external handle."""
        headers = self._headers()
        payload = {
            "prompt": request.prompt_text,
            "video_url": request.source_asset_url,
            "num_inference_steps": self.settings.inference_steps,
            "aspect_ratio": request.aspect_ratio,
            "resolution": self.settings.resolution,
            "enable_safety_checker": self.settings.safety_checker,
            "strength": self.settings.strength,
        }
        logger.info("[Generation] Submitting job for %s", request.source_asset_url)
        try:
            res = await self._http.post(
                f"{self.queue_url}/{self.app_id}",
                params={"fal_webhook": request.callback_url},
                headers=headers,
                json=payload,
            )
        except httpx.HTTPError as exc:
            logger.error("[Generation] Submit request failed: %s", exc)
            raise UpstreamError(f"Generation service unreachable: {exc}", 502) from exc

        if res.is_error:
            message = _upstream_message(res)
            logger.error("[Generation] Submit rejected (%s): %s", res.status_code, message)
            raise UpstreamError(message, res.status_code)

        handle = res.json().get("request_id")
        if not handle:
            raise UpstreamError("Generation service did not return a request id", 502)
        logger.info("[Generation] Submitted, external handle %s", handle)
        return handle

    async def status(self, handle: str) -> StatusReport:
        """Pull the status of an external job, with its result once complete."""
        if not handle:
            raise ValidationError("Missing externalJobHandle")
        headers = self._headers()
        try:
            res = await self._http.get(
                f"{self._requests_root}/{handle}/status",
                params={"logs": 1},
                headers=headers,
            )
            if res.is_error:
                message = _upstream_message(res)
                logger.error("[Generation] Status for %s failed (%s): %s", handle, res.status_code, message)
                raise UpstreamError(message, res.status_code)
            raw = res.json()
            state = normalize_status(raw.get("status"))
            result = None
            if state is JobState.completed:
                result_res = await self._http.get(f"{self._requests_root}/{handle}", headers=headers)
                if result_res.is_error:
                    raise UpstreamError(_upstream_message(result_res), result_res.status_code)
                result = result_res.json()
        except httpx.HTTPError as exc:
            logger.error("[Generation] Status request for %s failed: %s", handle, exc)
            raise UpstreamError(f"Generation service unreachable: {exc}", 502) from exc

        logs = raw.get("logs")
        progress = 0.0
        if isinstance(logs, dict):
            progress = float(logs.get("progress") or 0.0)
        if state is JobState.completed:
            progress = 1.0
        error = raw.get("error")
        if error:
            state = JobState.failed
        logger.info("[Generation] Status for %s: %s (%d%%)", handle, state.value, round(progress * 100))
        return StatusReport(
            handle=handle,
            state=state,
            progress_fraction=max(0.0, min(progress, 1.0)),
            result=result,
            error=error,
            raw=raw,
        )

    async def aclose(self) -> None:
        await self._http.aclose()
