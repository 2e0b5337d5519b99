"""Shared fixtures: an in-memory store and scripted vendor/storage doubles."""

import itertools

import pytest
from fastapi.testclient import TestClient

from asset_relocator import RelocatedAsset
from config import Settings
from errors import RelocationError
from generation_client import StatusReport
from job_coordinator import JobCoordinator
from job_storage import JobState, MemoryJobStore
from main import create_app
from notifications import SubscriberRegistry


class FakeGenerationClient:
    """Records submissions and hands out sequential request ids."""

    def __init__(self, configured: bool = True) -> None:
        self._configured = configured
        self._ids = itertools.count(1)
        self.submissions = []
        self.status_calls = []
        self.submit_error = None
        self.report = None

    @property
    def configured(self) -> bool:
        return self._configured

    async def submit(self, request) -> str:
        self.submissions.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        return f"req-{next(self._ids)}"

    async def status(self, handle: str) -> StatusReport:
        self.status_calls.append(handle)
        if self.report is not None:
            return self.report
        return StatusReport(handle=handle, state=JobState.processing, progress_fraction=0.4, raw={"status": "IN_PROGRESS"})

    async def aclose(self) -> None:
        pass


class FakeRelocator:
    """Returns a predictable durable URL, or fails when told to."""

    def __init__(self) -> None:
        self.calls = []
        self.fail = False

    async def relocate(self, url, folder=None) -> RelocatedAsset:
        self.calls.append(url)
        if self.fail:
            raise RelocationError("Asset relocation failed after 3 attempts: boom")
        n = len(self.calls)
        return RelocatedAsset(secure_url=f"https://cdn.example.com/assets/{n}.mp4", public_id=f"assets/{n}.mp4")

    async def aclose(self) -> None:
        pass


@pytest.fixture
def settings():
    return Settings(_env_file=None, fal_key="test-key", public_base_url="https://app.example.com")


@pytest.fixture
def job_storage():
    """Provide a fresh job storage instance for each test."""
    return MemoryJobStore()


@pytest.fixture
def generation_client():
    return FakeGenerationClient()


@pytest.fixture
def relocator():
    return FakeRelocator()


@pytest.fixture
def events():
    return SubscriberRegistry()


@pytest.fixture
def coordinator(job_storage, generation_client, relocator, events, settings):
    return JobCoordinator(job_storage, generation_client, relocator, events, settings)


@pytest.fixture
def app(settings, job_storage, generation_client, relocator):
    return create_app(
        settings=settings,
        store=job_storage,
        generation_client=generation_client,
        relocator=relocator,
    )


@pytest.fixture
def client(app):
    return TestClient(app)
