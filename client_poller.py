"""
Recurring client-side poll of the caller's job listing.

``GenerationPoller`` reads ``GET /jobs`` on a fixed interval while at least
one job is ``processing``. It goes idle by itself once a poll shows none.
``register`` (a freshly submitted job) or ``refresh`` (a manual trigger)
re-arms it. Read failures are logged and the next tick goes ahead as
scheduled.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)


class PollerState(str, Enum):
    idle = "idle"
    running = "running"


class GenerationPoller:
    """Scheduled-task handle around the job listing poll."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        interval: float = 10.0,
        on_update: Optional[Callable[[List[dict]], None]] = None,
        path: str = "/jobs",
    ) -> None:
        self.client = client
        self.interval = interval
        self.on_update = on_update
        self.path = path
        self.jobs: List[dict] = []
        self.state = PollerState.idle
        self._task: Optional[asyncio.Task] = None
        self._rearm = False

    @property
    def has_processing(self) -> bool:
        return any(job.get("state") == "processing" for job in self.jobs)

    async def poll_once(self) -> List[dict]:
        """Fetch the listing once and publish it to ``on_update``."""
        res = await self.client.get(self.path)
        res.raise_for_status()
        self.jobs = list(res.json().get("jobs") or [])
        if self.on_update is not None:
            self.on_update(self.jobs)
        return self.jobs

    def start(self) -> bool:
        """Arm the recurring poll; returns False if it was already running."""
        if self._task is not None and not self._task.done():
            return False
        self.state = PollerState.running
        self._task = asyncio.create_task(self._run())
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.state = PollerState.idle

    async def wait(self) -> None:
        """Wait until the recurring poll goes idle by itself."""
        if self._task is not None:
            await self._task

    def register(self, job: dict) -> None:
        """Track a freshly submitted job and make sure polling is armed."""
        self.jobs.append({**job, "state": "processing"})
        self._rearm = True
        self.start()

    async def refresh(self) -> List[dict]:
        """Poll now, re-arming the interval if anything is still processing."""
        try:
            await self.poll_once()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("[Poller] Error fetching generations: %s", exc)
        if self.has_processing:
            self.start()
        return self.jobs

    async def _run(self) -> None:
        try:
            while True:
                self._rearm = False
                try:
                    await self.poll_once()
                except (httpx.HTTPError, ValueError) as exc:
                    logger.error("[Poller] Error fetching generations: %s", exc)
                else:
                    if not self.has_processing and not self._rearm:
                        logger.info("[Poller] No processing generations remaining. Stopping poll.")
                        break
                await asyncio.sleep(self.interval)
        finally:
            self.state = PollerState.idle
