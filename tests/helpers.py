"""Test doubles and small utilities shared across test modules."""

from __future__ import annotations

import asyncio
import socket
import sys
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from devpreview.models import ProjectDetectionResult

SERVER_SCRIPT = """
import os
import time

print(f"Local: http://localhost:{os.environ['PORT']}", flush=True)
while True:
    time.sleep(0.1)
"""


class FakeDetector:
    """Project detector returning a fixed result and counting calls."""

    def __init__(self, result: ProjectDetectionResult):
        self.result: ProjectDetectionResult = result
        self.calls: list[Path] = []

    async def detect(self, project_root: Path) -> ProjectDetectionResult:
        self.calls.append(project_root)
        return self.result


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self) -> None:
        self.now: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def get_unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def python_command(script: Path) -> str:
    return f"{sys.executable} {script}"


async def wait_until(
    predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
