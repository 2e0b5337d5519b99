"""
Persistent job storage.

Generation jobs are stored in Redis when ``REDIS_URL`` is configured and in
process memory otherwise. Both stores expose the same operations. Terminal
state changes only happen through ``transition``, a compare-and-swap that
applies while the job is still ``processing``; a duplicate or late webhook
delivery therefore loses the race at the storage layer instead of
overwriting an earlier decision.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional
from urllib.parse import urlparse

import redis

from errors import DuplicateAssetError, NotFound, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """Enumeration of possible job states."""

    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.processing


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """One video generation request and its lifecycle record."""

    owner_id: str
    prompt_text: str
    source_asset_url: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: JobState = JobState.processing
    external_job_handle: Optional[str] = None
    result_asset_url: Optional[str] = None
    error_detail: Optional[str] = None
    aspect_hint: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.updated_at is None:
            self.updated_at = self.created_at

    def to_dict(self) -> dict:
        """Serialise using the camelCase field names the API exposes."""
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "promptText": self.prompt_text,
            "sourceAssetUrl": self.source_asset_url,
            "resultAssetUrl": self.result_asset_url,
            "externalJobHandle": self.external_job_handle,
            "state": self.state.value,
            "errorDetail": self.error_detail,
            "aspectHint": self.aspect_hint,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        return cls(
            id=data["id"],
            owner_id=data["ownerId"],
            prompt_text=data["promptText"],
            source_asset_url=data["sourceAssetUrl"],
            result_asset_url=data.get("resultAssetUrl"),
            external_job_handle=data.get("externalJobHandle"),
            state=JobState(data["state"]),
            error_detail=data.get("errorDetail"),
            aspect_hint=data.get("aspectHint"),
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
        )


def _check_transition(state: JobState, result_asset_url: Optional[str]) -> None:
    # result_asset_url is present if and only if the job completed
    if not state.is_terminal:
        raise ValueError("Jobs can only transition to a terminal state")
    if state is JobState.completed and not result_asset_url:
        raise ValueError("A completed job requires a result asset URL")
    if state is JobState.failed and result_asset_url:
        raise ValueError("A failed job cannot carry a result asset URL")


class JobStore(ABC):
    """Operations every job store backend provides."""

    backend: str = "abstract"

    @abstractmethod
    def create(self, job: Job) -> Job:
        """Persist a new job. Raises ``DuplicateAssetError`` when the source
        URL (or external handle) is already used by another job."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def find_by_handle(self, handle: str) -> Optional[Job]:
        ...

    @abstractmethod
    def find_by_source(self, source_asset_url: str) -> Optional[Job]:
        ...

    @abstractmethod
    def list_by_owner(self, owner_id: str) -> List[Job]:
        """Return the owner's jobs, most recently updated first."""

    @abstractmethod
    def attach_handle(self, job_id: str, handle: str) -> Job:
        """Record the external handle. A handle can only be set once."""

    @abstractmethod
    def transition(
        self,
        job_id: str,
        state: JobState,
        result_asset_url: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> Optional[Job]:
        """Move a ``processing`` job to a terminal state.

        Returns the updated job, or ``None`` if the job is gone or had
        already left ``processing``.
        """

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...

    def close(self) -> None:
        pass


class MemoryJobStore(JobStore):
    """Process-local store guarded by a single lock."""

    backend = "memory"

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._by_handle: Dict[str, str] = {}
        self._by_source: Dict[str, str] = {}
        self._lock = threading.Lock()

    def create(self, job: Job) -> Job:
        with self._lock:
            if job.source_asset_url in self._by_source:
                raise DuplicateAssetError("A job already exists for this source asset")
            if job.external_job_handle and job.external_job_handle in self._by_handle:
                raise DuplicateAssetError("A job already exists for this external handle")
            self._jobs[job.id] = replace(job)
            self._by_source[job.source_asset_url] = job.id
            if job.external_job_handle:
                self._by_handle[job.external_job_handle] = job.id
            return replace(job)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def find_by_handle(self, handle: str) -> Optional[Job]:
        with self._lock:
            job_id = self._by_handle.get(handle)
            job = self._jobs.get(job_id) if job_id else None
            return replace(job) if job else None

    def find_by_source(self, source_asset_url: str) -> Optional[Job]:
        with self._lock:
            job_id = self._by_source.get(source_asset_url)
            job = self._jobs.get(job_id) if job_id else None
            return replace(job) if job else None

    def list_by_owner(self, owner_id: str) -> List[Job]:
        with self._lock:
            jobs = [replace(j) for j in self._jobs.values() if j.owner_id == owner_id]
        return sorted(jobs, key=lambda j: j.updated_at, reverse=True)

    def attach_handle(self, job_id: str, handle: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound("Job not found")
            if job.external_job_handle:
                raise ValidationError("Job has already been submitted")
            if handle in self._by_handle:
                raise DuplicateAssetError("A job already exists for this external handle")
            job.external_job_handle = handle
            job.updated_at = utcnow()
            self._by_handle[handle] = job.id
            return replace(job)

    def transition(
        self,
        job_id: str,
        state: JobState,
        result_asset_url: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> Optional[Job]:
        _check_transition(state, result_asset_url)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state is not JobState.processing:
                return None
            job.state = state
            job.result_asset_url = result_asset_url
            job.error_detail = error_detail if state is JobState.failed else None
            job.updated_at = utcnow()
            return replace(job)

    def delete(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                return False
            self._by_source.pop(job.source_asset_url, None)
            if job.external_job_handle:
                self._by_handle.pop(job.external_job_handle, None)
            return True

    def ping(self) -> bool:
        return True


class RedisJobStore(JobStore):
    """Redis-backed store.

    Each job is a JSON document under ``job:{id}``. The external handle and
    source URL are claimed through secondary keys written in the same
    WATCH/MULTI transaction as the document, so a claim never outlives a
    failed write. Per-owner listings use a sorted set scored by
    ``updated_at``. The connection is created on first use and reused.
    """

    backend = "redis"

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None) -> None:
        self.redis_url = redis_url
        self._redis = client

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
            )
            logger.info("[JobStore] Connected to Redis at %s", urlparse(self.redis_url).hostname)
        return self._redis

    @staticmethod
    def _job_key(job_id: str) -> str:
        return f"job:{job_id}"

    @staticmethod
    def _handle_key(handle: str) -> str:
        return f"job:handle:{handle}"

    @staticmethod
    def _source_key(url: str) -> str:
        return f"job:source:{url}"

    @staticmethod
    def _owner_key(owner_id: str) -> str:
        return f"jobs:owner:{owner_id}"

    @contextmanager
    def _redis_errors(self, operation: str, ref: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as exc:
            logger.error("[JobStore] Redis %s failed for %s: %s", operation, ref, exc)
            raise PersistenceError(f"Job store {operation} failed") from exc

    def _load(self, job_id: Optional[str]) -> Optional[Job]:
        if not job_id:
            return None
        raw = self.client.get(self._job_key(job_id))
        return Job.from_dict(json.loads(raw)) if raw else None

    def create(self, job: Job) -> Job:
        job_key = self._job_key(job.id)
        source_key = self._source_key(job.source_asset_url)
        handle_key = self._handle_key(job.external_job_handle) if job.external_job_handle else None
        watched = [source_key] + ([handle_key] if handle_key else [])

        def _create(pipe: redis.client.Pipeline) -> None:
            if pipe.exists(source_key):
                raise DuplicateAssetError("A job already exists for this source asset")
            if handle_key and pipe.exists(handle_key):
                raise DuplicateAssetError("A job already exists for this external handle")
            pipe.multi()
            pipe.set(source_key, job.id)
            if handle_key:
                pipe.set(handle_key, job.id)
            pipe.set(job_key, json.dumps(job.to_dict()))
            pipe.zadd(self._owner_key(job.owner_id), {job.id: job.updated_at.timestamp()})

        with self._redis_errors("create", job.id):
            self.client.transaction(_create, *watched)
        return replace(job)

    def get(self, job_id: str) -> Optional[Job]:
        with self._redis_errors("read", job_id):
            return self._load(job_id)

    def find_by_handle(self, handle: str) -> Optional[Job]:
        with self._redis_errors("read", handle):
            return self._load(self.client.get(self._handle_key(handle)))

    def find_by_source(self, source_asset_url: str) -> Optional[Job]:
        with self._redis_errors("read", source_asset_url):
            return self._load(self.client.get(self._source_key(source_asset_url)))

    def list_by_owner(self, owner_id: str) -> List[Job]:
        with self._redis_errors("list", owner_id):
            job_ids = self.client.zrevrange(self._owner_key(owner_id), 0, -1)
            if not job_ids:
                return []
            raws = self.client.mget([self._job_key(job_id) for job_id in job_ids])
        return [Job.from_dict(json.loads(raw)) for raw in raws if raw]

    def attach_handle(self, job_id: str, handle: str) -> Job:
        key = self._job_key(job_id)
        handle_key = self._handle_key(handle)

        def _attach(pipe: redis.client.Pipeline) -> Job:
            if pipe.exists(handle_key):
                raise DuplicateAssetError("A job already exists for this external handle")
            raw = pipe.get(key)
            if raw is None:
                raise NotFound("Job not found")
            job = Job.from_dict(json.loads(raw))
            if job.external_job_handle:
                raise ValidationError("Job has already been submitted")
            job.external_job_handle = handle
            job.updated_at = utcnow()
            pipe.multi()
            pipe.set(handle_key, job.id)
            pipe.set(key, json.dumps(job.to_dict()))
            pipe.zadd(self._owner_key(job.owner_id), {job.id: job.updated_at.timestamp()})
            return job

        with self._redis_errors("update", job_id):
            return self.client.transaction(_attach, key, handle_key, value_from_callable=True)

    def transition(
        self,
        job_id: str,
        state: JobState,
        result_asset_url: Optional[str] = None,
        error_detail: Optional[str] = None,
    ) -> Optional[Job]:
        _check_transition(state, result_asset_url)
        key = self._job_key(job_id)

        def _transition(pipe: redis.client.Pipeline) -> Optional[Job]:
            raw = pipe.get(key)
            if raw is None:
                return None
            job = Job.from_dict(json.loads(raw))
            if job.state is not JobState.processing:
                return None
            job.state = state
            job.result_asset_url = result_asset_url
            job.error_detail = error_detail if state is JobState.failed else None
            job.updated_at = utcnow()
            pipe.multi()
            pipe.set(key, json.dumps(job.to_dict()))
            pipe.zadd(self._owner_key(job.owner_id), {job.id: job.updated_at.timestamp()})
            return job

        with self._redis_errors("transition", job_id):
            return self.client.transaction(_transition, key, value_from_callable=True)

    def delete(self, job_id: str) -> bool:
        with self._redis_errors("delete", job_id):
            job = self._load(job_id)
            if job is None:
                return False
            pipe = self.client.pipeline()
            pipe.delete(self._job_key(job.id))
            pipe.delete(self._source_key(job.source_asset_url))
            if job.external_job_handle:
                pipe.delete(self._handle_key(job.external_job_handle))
            pipe.zrem(self._owner_key(job.owner_id), job.id)
            pipe.execute()
            return True

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            logger.warning("[JobStore] Redis ping failed: %s", exc)
            return False

    def close(self) -> None:
        if self._redis is not None:
            self._redis.close()
            self._redis = None


def create_job_store(settings) -> JobStore:
    """Pick the store backend from settings."""
    if settings.redis_url:
        return RedisJobStore(settings.redis_url)
    logger.info("[JobStore] REDIS_URL not set. Using in-memory storage.")
    return MemoryJobStore()
