"""
FastAPI application for prompt-driven video restyling jobs.

This service exposes the job lifecycle endpoints:

* **POST /uploads** – re-hosts a reference video handed over by the upload
  widget and creates a ``processing`` job record for it.
* **POST /jobs** – submits a prompt and reference video to the generation
  service and records the returned external job handle.
* **POST /jobs/webhook** – receives the generation service's completion
  notification. It always answers with an acknowledgement, except for a
  body that is not JSON at all.
* **POST /jobs/status** – pulls the generation service's status for a
  handle directly, as a fallback when a webhook is late.
* **GET /jobs**, **GET /jobs/{id}**, **DELETE /jobs/{id}** – list, read and
  delete the caller's jobs.
* **GET /jobs/events** – server-sent events carrying job updates as they
  are finalised.

Lifecycle rules live in ``JobCoordinator`` (``job_coordinator.py``). This
file holds the API layer and builds the shared resources. Those resources
(job store, vendor client, relocator, event registry) are created in
``create_app`` and held on ``app.state``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlencode

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from asset_relocator import AssetRelocator
from auth import HeaderIdentityProvider, optional_owner, require_owner
from config import Settings
from errors import PersistenceError, ServiceError
from generation_client import FalClient
from job_coordinator import JobCoordinator
from job_storage import JobStore, create_job_store
from notifications import SubscriberRegistry, format_sse

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

router = APIRouter()

_KEEPALIVE_SECONDS = 15.0


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadRequest(ApiModel):
    """Request payload for ``POST /uploads``.

    * ``source_url`` – URL of the video the upload widget stored.
    * ``prompt_text`` – instruction describing the desired restyle.
    * ``width``/``height`` – source dimensions, used for the aspect hint.
    """

    source_url: Optional[str] = None
    prompt_text: Optional[str] = None
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)


class SubmitRequest(ApiModel):
    """Request payload for ``POST /jobs``."""

    prompt_text: Optional[str] = None
    source_asset_url: Optional[str] = None
    job_id: Optional[str] = None
    aspect_hint: Optional[str] = None


class SubmitResponse(ApiModel):
    job_id: str
    external_job_handle: str


class StatusRequest(ApiModel):
    external_job_handle: Optional[str] = None


def get_coordinator(request: Request) -> JobCoordinator:
    return request.app.state.coordinator


def _callback_url(request: Request, settings: Settings) -> str:
    base = settings.public_base_url
    if base:
        if not base.startswith("http"):
            base = f"https://{base}"
        url = f"{base.rstrip('/')}/jobs/webhook"
    else:
        url = str(request.url_for("job_webhook"))
    if settings.webhook_secret:
        url = f"{url}?{urlencode({'token': settings.webhook_secret})}"
    return url


@router.get("/health")
async def health(request: Request) -> dict:
    store: JobStore = request.app.state.store
    connected = store.ping()
    return {
        "status": "ok" if connected else "degraded",
        "store": store.backend,
        "dbStatus": "Connected" if connected else "Disconnected",
    }


@router.post("/uploads")
async def upload_source(
    req: UploadRequest,
    owner_id: str = Depends(require_owner),
    coordinator: JobCoordinator = Depends(get_coordinator),
) -> dict:
    """Re-host an uploaded reference video and create its job record.

    Returns the created job and the aspect ratio the client should pass back
    as ``aspectHint`` when submitting.
    """
    job, hint = await coordinator.register_upload(
        owner_id, req.source_url, req.prompt_text, width=req.width, height=req.height
    )
    return {"message": "Video uploaded successfully", "job": job.to_dict(), "aspectHint": hint}


@router.post("/jobs", response_model=SubmitResponse)
async def submit_job(
    req: SubmitRequest,
    request: Request,
    owner_id: str = Depends(require_owner),
    coordinator: JobCoordinator = Depends(get_coordinator),
) -> SubmitResponse:
    """Submit a job to the generation service.

    Upstream rejections are returned with the upstream status code and
    message so the client can show them. The job is not marked failed in
    that case.
    """
    result = await coordinator.submit(
        owner_id,
        req.prompt_text,
        req.source_asset_url,
        callback_url=_callback_url(request, request.app.state.settings),
        job_id=req.job_id,
        aspect_hint=req.aspect_hint,
    )
    return SubmitResponse(job_id=result.job_id, external_job_handle=result.external_job_handle)


@router.post("/jobs/webhook", name="job_webhook")
async def job_webhook(
    request: Request,
    token: Optional[str] = None,
    coordinator: JobCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Receive a completion notification from the generation service."""
    try:
        body = await request.json()
    except ValueError:
        logger.error("[Webhook] Error parsing webhook JSON data")
        return JSONResponse({"detail": "Invalid JSON payload"}, status_code=400)

    try:
        ack = await coordinator.handle_completion(body, token=token)
    except PersistenceError:
        return JSONResponse({"acknowledged": False}, status_code=500)
    return JSONResponse({"acknowledged": True, "outcome": ack.outcome}, status_code=ack.status_code)


@router.post("/jobs/status")
async def job_status(
    req: StatusRequest,
    owner_id: Optional[str] = Depends(optional_owner),
    coordinator: JobCoordinator = Depends(get_coordinator),
) -> dict:
    """Return the generation service's current status for a handle."""
    logger.info("[Status] Status check for %s (caller %s)", req.external_job_handle, owner_id or "anonymous")
    report = await coordinator.check_status(req.external_job_handle)
    return report.to_dict()


@router.get("/jobs")
async def list_jobs(
    owner_id: str = Depends(require_owner),
    coordinator: JobCoordinator = Depends(get_coordinator),
) -> dict:
    """Return the caller's jobs, most recently updated first."""
    return {"jobs": [job.to_dict() for job in coordinator.list_jobs(owner_id)]}


@router.get("/jobs/events")
async def job_events(request: Request, owner_id: str = Depends(require_owner)) -> StreamingResponse:
    """Stream job updates for the caller as server-sent events."""
    registry: SubscriberRegistry = request.app.state.events
    subscriber = registry.subscribe(owner_id)

    async def stream():
        try:
            while not await request.is_disconnected():
                try:
                    event = await subscriber.next_event(timeout=_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(event)
        finally:
            registry.unsubscribe(subscriber)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    owner_id: str = Depends(require_owner),
    coordinator: JobCoordinator = Depends(get_coordinator),
) -> dict:
    return coordinator.get_job(owner_id, job_id).to_dict()


@router.delete("/jobs/{job_id}")
async def delete_job(
    job_id: str,
    owner_id: str = Depends(require_owner),
    coordinator: JobCoordinator = Depends(get_coordinator),
) -> dict:
    coordinator.delete_job(owner_id, job_id)
    return {"message": "Job deleted successfully"}


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request body", "errors": jsonable_encoder(exc.errors())},
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[JobStore] = None,
    generation_client: Optional[FalClient] = None,
    relocator: Optional[AssetRelocator] = None,
    identity: Optional[HeaderIdentityProvider] = None,
) -> FastAPI:
    """Build the application and the resources its handlers share."""
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    store = store or create_job_store(settings)
    generation_client = generation_client or FalClient(settings)
    relocator = relocator or AssetRelocator(settings)
    events = SubscriberRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("[App] Job store backend: %s", store.backend)
        if not generation_client.configured:
            logger.warning("[App] FAL_KEY is not set; submissions will fail")
        yield
        await generation_client.aclose()
        await relocator.aclose()
        store.close()

    app = FastAPI(title="Video Restyle Jobs", version="1.0.0", lifespan=lifespan)

    # Add CORS middleware to allow frontend access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.events = events
    app.state.identity = identity or HeaderIdentityProvider(settings.identity_header)
    app.state.coordinator = JobCoordinator(store, generation_client, relocator, events, settings)

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()
