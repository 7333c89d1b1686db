"""Periodic sweep that stops dev servers nobody has used for a while."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta

from devpreview.dev.logging import DevLogComponent, get_logger
from devpreview.models import DevServerInstance

logger = get_logger(DevLogComponent.REAPER)


class IdleReaper:
    """Stops instances whose `last_activity` is older than `idle_threshold`."""

    def __init__(
        self,
        *,
        instances: Callable[[], Iterable[DevServerInstance]],
        stop: Callable[[str], Awaitable[None]],
        clock: Callable[[], datetime],
        idle_threshold: float,
        interval: float,
    ):
        """Initialize the reaper.

        Args:
            instances: Snapshot of the instances currently tracked
            stop: Stops one project's server (the same path as an explicit stop)
            clock: Source of "now"
            idle_threshold: Seconds of inactivity before an instance is stopped
            interval: Seconds between sweeps
        """
        self._instances = instances
        self._stop = stop
        self._clock = clock
        self.idle_threshold: timedelta = timedelta(seconds=idle_threshold)
        self.interval: float = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug(f"Idle reaper started (every {self.interval}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def tick(self) -> list[str]:
        """Run one sweep. Returns the project ids that were stopped."""
        now = self._clock()
        reaped: list[str] = []
        for instance in list(self._instances()):
            idle = now - instance.last_activity
            if idle <= self.idle_threshold:
                continue
            logger.info(
                f"Stopping idle dev server {instance.project_id} "
                f"(idle {int(idle.total_seconds() // 60)} min)"
            )
            await self._stop(instance.project_id)
            reaped.append(instance.project_id)
        return reaped

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Idle sweep failed: {e}")
