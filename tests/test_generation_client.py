"""
Tests for the generation service client.

HTTP traffic is served by ``httpx.MockTransport`` so the request shape sent
to the vendor can be asserted directly.
"""

import json

import httpx
import pytest

from config import Settings
from errors import ConfigurationError, UpstreamError, ValidationError
from generation_client import FalClient, GenerationRequest, normalize_status, parse_notification
from job_storage import JobState


def make_client(handler, **overrides):
    settings = Settings(_env_file=None, fal_key="test-key", **overrides)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FalClient(settings, http_client=http)


def make_request():
    return GenerationRequest(
        prompt_text="make it blue",
        source_asset_url="https://x/a.mp4",
        callback_url="https://app.example.com/jobs/webhook",
        aspect_ratio="9:16",
    )


class TestNormalizeStatus:
    @pytest.mark.parametrize("value", ["OK", "ok", "COMPLETED", "completed"])
    def test_success_spellings(self, value):
        assert normalize_status(value) == JobState.completed

    @pytest.mark.parametrize("value", ["ERROR", "error", "FAILED", "failed"])
    def test_failure_spellings(self, value):
        assert normalize_status(value) == JobState.failed

    @pytest.mark.parametrize("value", ["IN_QUEUE", "IN_PROGRESS", "PENDING", "pending", "", None, "weird"])
    def test_everything_else_is_processing(self, value):
        assert normalize_status(value) == JobState.processing


class TestParseNotification:
    def test_internal_shape(self):
        notification = parse_notification(
            {"externalJobHandle": "req-1", "status": "OK", "payload": {"resultAsset": {"url": "https://gen/out.mp4"}}}
        )

        assert notification.handle == "req-1"
        assert notification.state == JobState.completed
        assert notification.result_url == "https://gen/out.mp4"

    def test_vendor_shape(self):
        notification = parse_notification(
            {"request_id": "req-2", "status": "OK", "payload": {"video": {"url": "https://gen/v.mp4"}}}
        )

        assert notification.handle == "req-2"
        assert notification.result_url == "https://gen/v.mp4"

    def test_error_is_extracted(self):
        notification = parse_notification({"request_id": "req-3", "status": "ERROR", "error": "NSFW content"})

        assert notification.state == JobState.failed
        assert notification.error == "NSFW content"
        assert notification.result_url is None

    @pytest.mark.parametrize(
        "body",
        [{"status": "OK"}, {"externalJobHandle": "req-1"}, [], "text", None],
    )
    def test_missing_fields_rejected(self, body):
        with pytest.raises(ValidationError):
            parse_notification(body)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_sends_fixed_parameters(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"request_id": "req-42", "status_url": "..."})

        client = make_client(handler)
        handle = await client.submit(make_request())

        assert handle == "req-42"
        assert seen["url"].path == "/fal-ai/hunyuan-video/video-to-video"
        assert seen["url"].params["fal_webhook"] == "https://app.example.com/jobs/webhook"
        assert seen["auth"] == "Key test-key"
        assert seen["body"] == {
            "prompt": "make it blue",
            "video_url": "https://x/a.mp4",
            "num_inference_steps": 30,
            "aspect_ratio": "9:16",
            "resolution": "720p",
            "enable_safety_checker": True,
            "strength": 0.85,
        }

    @pytest.mark.asyncio
    async def test_upstream_error_passes_through(self):
        def handler(request):
            return httpx.Response(422, json={"detail": "video_url is not reachable"})

        client = make_client(handler)
        with pytest.raises(UpstreamError) as exc_info:
            await client.submit(make_request())

        assert exc_info.value.status_code == 422
        assert exc_info.value.detail == "video_url is not reachable"

    @pytest.mark.asyncio
    async def test_transport_error_is_upstream_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(UpstreamError) as exc_info:
            await client.submit(make_request())
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_missing_key_is_configuration_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"request_id": "req-1"})

        settings = Settings(_env_file=None, fal_key=None)
        client = FalClient(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        assert client.configured is False
        with pytest.raises(ConfigurationError):
            await client.submit(make_request())
        assert calls == []


class TestStatus:
    @pytest.mark.asyncio
    async def test_in_progress(self):
        def handler(request):
            assert request.url.path == "/fal-ai/hunyuan-video/requests/req-1/status"
            return httpx.Response(200, json={"status": "IN_PROGRESS", "logs": {"progress": 0.25}})

        report = await make_client(handler).status("req-1")

        assert report.state == JobState.processing
        assert report.progress_fraction == 0.25
        assert report.result is None
        assert report.raw["status"] == "IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_completed_fetches_result(self):
        def handler(request):
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            return httpx.Response(200, json={"video": {"url": "https://gen/out.mp4"}})

        report = await make_client(handler).status("req-1")

        assert report.state == JobState.completed
        assert report.progress_fraction == 1.0
        assert report.result == {"video": {"url": "https://gen/out.mp4"}}
        assert report.to_dict()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_status_failure(self):
        def handler(request):
            return httpx.Response(404, json={"detail": "Request not found"})

        with pytest.raises(UpstreamError) as exc_info:
            await make_client(handler).status("req-404")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_handle(self):
        with pytest.raises(ValidationError):
            await make_client(lambda request: httpx.Response(200)).status("")
