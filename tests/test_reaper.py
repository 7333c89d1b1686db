"""Tests for the idle reaper."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from helpers import FakeClock, FakeDetector, wait_until

from devpreview.dev.manager import DevServerManager
from devpreview.dev.reaper import IdleReaper
from devpreview.models import (
    DevServerConfig,
    DevServerInstance,
    DevServerStatus,
    ManagerSettings,
    ProjectType,
)


def make_instance(project_id: str, clock: FakeClock, idle_minutes: float) -> DevServerInstance:
    last = clock.now - timedelta(minutes=idle_minutes)
    return DevServerInstance(
        id=f"dev-server-{project_id}-1",
        project_id=project_id,
        config=DevServerConfig(
            project_type=ProjectType.NODE,
            dev_command="npm run dev",
            port=3000,
            package_manager="npm",
        ),
        status=DevServerStatus.RUNNING,
        preview_url="http://127.0.0.1:3000",
        started_at=last,
        last_activity=last,
    )


class TestTick:
    @pytest.mark.asyncio
    async def test_only_idle_instances_are_stopped(self) -> None:
        clock = FakeClock()
        instances = [
            make_instance("fresh", clock, idle_minutes=30),
            make_instance("boundary", clock, idle_minutes=60),
            make_instance("stale", clock, idle_minutes=61),
        ]
        stop = AsyncMock()
        reaper = IdleReaper(
            instances=lambda: instances,
            stop=stop,
            clock=clock,
            idle_threshold=3600,
            interval=600,
        )

        assert await reaper.tick() == ["stale"]
        stop.assert_awaited_once_with("stale")

    @pytest.mark.asyncio
    async def test_nothing_to_reap(self) -> None:
        stop = AsyncMock()
        reaper = IdleReaper(
            instances=lambda: [], stop=stop, clock=FakeClock(), idle_threshold=1, interval=1
        )

        assert await reaper.tick() == []
        stop.assert_not_awaited()


class TestLoop:
    @pytest.mark.asyncio
    async def test_loop_sweeps_and_survives_errors(self) -> None:
        clock = FakeClock()
        instances = [make_instance("stale", clock, idle_minutes=120)]
        stop = AsyncMock(side_effect=[RuntimeError("boom"), None, None, None, None])
        reaper = IdleReaper(
            instances=lambda: instances,
            stop=stop,
            clock=clock,
            idle_threshold=60,
            interval=0.05,
        )

        reaper.start()
        try:
            assert reaper.running
            await wait_until(lambda: stop.await_count >= 2, timeout=2.0)
        finally:
            await reaper.stop()

        assert not reaper.running

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self) -> None:
        reaper = IdleReaper(
            instances=lambda: [], stop=AsyncMock(), clock=FakeClock(), idle_threshold=1, interval=1
        )
        await reaper.stop()
        assert not reaper.running


class TestManagerReaping:
    @pytest.mark.asyncio
    async def test_idle_server_is_stopped_and_activity_defers_it(
        self, settings: ManagerSettings, detector: FakeDetector, project_root: Path
    ) -> None:
        clock = FakeClock()
        manager = DevServerManager(settings, detector=detector, clock=clock)
        async with manager:
            instance = await manager.start_dev_server("proj-a", project_root)

            clock.advance(minutes=50)
            manager.update_server_activity("proj-a")
            clock.advance(minutes=50)
            assert await manager.reaper.tick() == []
            assert instance.status is DevServerStatus.RUNNING

            clock.advance(minutes=11)
            assert await manager.reaper.tick() == ["proj-a"]

            assert instance.status is DevServerStatus.STOPPED
            assert manager.get_server_instance("proj-a") is None
            assert not manager.lock.lock_path("proj-a").exists()

    @pytest.mark.asyncio
    async def test_reaper_runs_with_manager(self, settings: ManagerSettings) -> None:
        manager = DevServerManager(settings)
        assert not manager.reaper.running
        async with manager:
            assert manager.reaper.running
            await asyncio.sleep(0)
        assert not manager.reaper.running
