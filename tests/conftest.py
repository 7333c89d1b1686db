"""Shared fixtures for devpreview tests."""

from __future__ import annotations

import socket
import subprocess
import sys
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from helpers import SERVER_SCRIPT, FakeDetector, get_unused_port, python_command

from devpreview.dev.ports import test_port_listening
from devpreview.models import (
    Framework,
    ManagerSettings,
    ProjectDetectionResult,
    ProjectType,
)


def pytest_pycollect_makeitem(collector, name, obj):
    # The port probe shares the test_ prefix; it is library code, not a test.
    if obj is test_port_listening:
        return []
    return None


@pytest.fixture
def settings(tmp_path: Path) -> ManagerSettings:
    return ManagerSettings(
        lock_dir=tmp_path / "locks",
        ready_warning_delay=0.5,
        static_settle_delay=0.2,
        stop_grace=2.0,
    )


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[[str, str], Path]:
    def _write(name: str, body: str) -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(body))
        return path

    return _write


@pytest.fixture
def unused_port() -> int:
    return get_unused_port()


@pytest.fixture
def server_detection(
    write_script: Callable[[str, str], Path], unused_port: int
) -> ProjectDetectionResult:
    script = write_script("server.py", SERVER_SCRIPT)
    return ProjectDetectionResult(
        type=ProjectType.NODE,
        dev_command=python_command(script),
        port=unused_port,
        framework=Framework(name="Test Server"),
    )


@pytest.fixture
def detector(server_detection: ProjectDetectionResult) -> FakeDetector:
    return FakeDetector(server_detection)


@pytest.fixture
def listening_socket(unused_port: int) -> Iterator[socket.socket]:
    """Occupies `unused_port` for the duration of a test."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", unused_port))
    sock.listen(1)
    try:
        yield sock
    finally:
        sock.close()


@pytest.fixture
def foreign_process() -> Iterator[subprocess.Popen[bytes]]:
    """A long-running process standing in for a server owned by another session."""
    proc = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(60)"],
        start_new_session=True,
    )
    try:
        yield proc
    finally:
        proc.kill()
        proc.wait()
