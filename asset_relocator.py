"""
Copy remote video assets into durable S3 storage.

The generation service only hosts its output for a limited time, and uploads
arrive through a third-party widget, so every asset the service keeps is
re-hosted here first. Each attempt downloads the asset with httpx and streams
it to S3 through boto3. An attempt is bounded by a timeout. Failed attempts
are retried a fixed number of times with linearly increasing backoff, and
after the last one ``RelocationError`` is raised.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import boto3
import httpx
from botocore.config import Config

from errors import ConfigurationError, RelocationError, ValidationError

logger = logging.getLogger(__name__)

_SPOOL_MAX_BYTES = 16 * 1024 * 1024

_EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/webm": ".webm",
}


@dataclass
class RelocatedAsset:
    secure_url: str
    public_id: str
    width: Optional[int] = None
    height: Optional[int] = None


def _extension_for(url: str, content_type: str) -> str:
    ext = os.path.splitext(urlparse(url).path)[1].lower()
    if ext and len(ext) <= 6:
        return ext
    return _EXTENSIONS.get(content_type, ".mp4")


class AssetRelocator:
    """Re-host remote assets on S3 with bounded retries."""

    def __init__(self, settings, s3_client=None, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self.bucket = settings.asset_bucket
        self.prefix = settings.asset_prefix.strip("/")
        self.attempts = max(1, settings.relocation_attempts)
        self.backoff = settings.relocation_backoff_seconds
        self.timeout = settings.relocation_timeout_seconds
        self._s3 = s3_client
        self._http = http_client or httpx.AsyncClient(follow_redirects=True)

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = boto3.client(
                "s3",
                region_name=self.settings.aws_region,
                aws_access_key_id=self.settings.aws_access_key_id,
                aws_secret_access_key=self.settings.aws_secret_access_key,
                # the upload runs in a worker thread that wait_for cannot cancel
                config=Config(
                    connect_timeout=self.settings.s3_connect_timeout_seconds,
                    read_timeout=self.timeout,
                    retries={"max_attempts": 1},
                ),
            )
        return self._s3

    def public_url(self, key: str) -> str:
        if self.settings.asset_public_base_url:
            return f"{self.settings.asset_public_base_url.rstrip('/')}/{key}"
        return f"https://{self.bucket}.s3.{self.settings.aws_region}.amazonaws.com/{key}"

    async def relocate(self, url: str, folder: Optional[str] = None) -> RelocatedAsset:
        """Copy ``url`` into the asset bucket and return its durable location."""
        if not url:
            raise ValidationError("No asset URL provided")
        if not self.bucket:
            raise ConfigurationError("ASSET_BUCKET not configured")

        last_error: Optional[BaseException] = None
        for attempt in range(1, self.attempts + 1):
            logger.info("[Relocator] Uploading %s (attempt %d/%d)", url, attempt, self.attempts)
            try:
                asset = await asyncio.wait_for(self._relocate_once(url, folder), timeout=self.timeout)
                logger.info("[Relocator] Upload succeeded: %s", asset.secure_url)
                return asset
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning("[Relocator] Attempt %d/%d timed out after %ss", attempt, self.attempts, self.timeout)
            except Exception as exc:
                # any failure of an attempt is retried, including URLs httpx
                # rejects before sending (InvalidURL, IDNAError)
                last_error = exc
                logger.warning("[Relocator] Attempt %d/%d failed: %s", attempt, self.attempts, exc)

            if attempt < self.attempts:
                wait = self.backoff * attempt
                logger.info("[Relocator] Retrying in %.1fs", wait)
                await asyncio.sleep(wait)

        logger.error("[Relocator] Maximum attempts reached for %s", url)
        reason = str(last_error) or type(last_error).__name__
        raise RelocationError(f"Asset relocation failed after {self.attempts} attempts: {reason}")

    async def _relocate_once(self, url: str, folder: Optional[str]) -> RelocatedAsset:
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES) as buf:
            async with self._http.stream("GET", url) as res:
                res.raise_for_status()
                content_type = res.headers.get("content-type", "video/mp4").split(";")[0].strip()
                async for chunk in res.aiter_bytes():
                    buf.write(chunk)
            buf.seek(0)

            parts = [p for p in (self.prefix, folder) if p]
            parts.append(f"{uuid.uuid4().hex}{_extension_for(url, content_type)}")
            key = "/".join(parts)

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                functools.partial(
                    self.s3.upload_fileobj,
                    buf,
                    self.bucket,
                    key,
                    ExtraArgs={"ContentType": content_type},
                ),
            )
        return RelocatedAsset(secure_url=self.public_url(key), public_id=key)

    async def aclose(self) -> None:
        await self._http.aclose()
