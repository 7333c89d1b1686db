"""Tests for process supervision: readiness, classification, exit handling."""

from __future__ import annotations

import asyncio
import errno
import os
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import pytest
from helpers import SERVER_SCRIPT, wait_until

from devpreview.dev.supervisor import (
    ErrorCategory,
    ProcessSupervisor,
    classify_output,
    marker_ready_predicate,
)
from devpreview.errors import ProcessSpawnError
from devpreview.models import (
    DevServerConfig,
    DevServerInstance,
    DevServerStatus,
    LogType,
    ManagerSettings,
    ProjectType,
)

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX signals")


def make_instance(port: int = 3000) -> DevServerInstance:
    now = datetime.now(timezone.utc)
    return DevServerInstance(
        id="dev-server-proj-1",
        project_id="proj",
        config=DevServerConfig(
            project_type=ProjectType.NODE,
            dev_command="python server.py",
            port=port,
            package_manager="npm",
        ),
        preview_url=f"http://127.0.0.1:{port}",
        started_at=now,
        last_activity=now,
    )


class Harness:
    """Collects log lines and exit notifications for one supervisor."""

    def __init__(self, settings: ManagerSettings, port: int = 3000):
        self.logs: list[tuple[LogType, str]] = []
        self.exits: list[ProcessSupervisor] = []
        self.instance: DevServerInstance = make_instance(port)
        self.supervisor: ProcessSupervisor = ProcessSupervisor(
            self.instance,
            settings=settings,
            log=lambda _pid, log_type, message: self.logs.append((log_type, message)),
            on_exit=self.exits.append,
        )

    def messages(self, log_type: LogType) -> list[str]:
        return [message for t, message in self.logs if t is log_type]

    def text(self, log_type: LogType) -> str:
        return "\n".join(self.messages(log_type))


@pytest.fixture
def harness(settings: ManagerSettings, unused_port: int) -> Harness:
    return Harness(settings, unused_port)


async def run_script(
    harness: Harness, write_script: Callable[[str, str], Path], body: str
) -> None:
    script = write_script("child.py", body)
    await harness.supervisor.start(script.parent, sys.executable, [str(script)])


class TestClassification:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Error: listen EADDRINUSE: address already in use :::3000", ErrorCategory.ADDRESS_IN_USE),
            ("Port 3000 is already in use", ErrorCategory.ADDRESS_IN_USE),
            ("sh: vite: command not found", ErrorCategory.COMMAND_NOT_FOUND),
            ("Permission denied (publickey)", ErrorCategory.PERMISSION_DENIED),
            ('npm ERR! Missing script: "dev"', ErrorCategory.MISSING_SCRIPT),
            ("warning: deprecated option", None),
        ],
    )
    def test_classify_output(self, text: str, expected: ErrorCategory | None) -> None:
        assert classify_output(text) is expected

    def test_ready_predicate_markers(self) -> None:
        config = make_instance(4321).config
        is_ready = marker_ready_predicate(config)
        assert is_ready("  ➜  Local:   http://localhost:5173/")
        assert is_ready("listening on 0.0.0.0:4321")
        assert is_ready("webpack COMPILED successfully")
        assert not is_ready("installing dependencies...")


class TestStart:
    @pytest.mark.asyncio
    async def test_ready_output_suppresses_slow_start_warning(
        self, harness: Harness, write_script: Callable[[str, str], Path]
    ) -> None:
        await run_script(harness, write_script, SERVER_SCRIPT)
        try:
            assert harness.instance.pid is not None
            await wait_until(lambda: harness.supervisor.ready)
            # Past the 0.5s warning delay.
            await asyncio.sleep(0.8)
            system = harness.text(LogType.SYSTEM)
            assert "Server appears to be ready" in system
            assert "taking longer than expected" not in system
            assert f"Local: http://localhost:{harness.instance.config.port}" in harness.text(
                LogType.STDOUT
            )
        finally:
            await harness.supervisor.stop(grace=2.0)

    @pytest.mark.asyncio
    async def test_silent_process_gets_slow_start_warning(
        self, harness: Harness, write_script: Callable[[str, str], Path]
    ) -> None:
        await run_script(harness, write_script, "import time\ntime.sleep(30)\n")
        try:
            await wait_until(
                lambda: "taking longer than expected" in harness.text(LogType.SYSTEM),
                timeout=3.0,
            )
            assert harness.supervisor.ready is False
        finally:
            await harness.supervisor.stop(grace=2.0)

    @pytest.mark.asyncio
    async def test_environment_is_passed(
        self, harness: Harness, write_script: Callable[[str, str], Path]
    ) -> None:
        body = """
        import os
        print(os.environ["PORT"], os.environ["NODE_ENV"], os.environ["HOST"], os.environ["BROWSER"], flush=True)
        """
        await run_script(harness, write_script, body)
        await harness.supervisor.wait_closed()

        port = harness.instance.config.port
        assert f"{port} development 0.0.0.0 none" in harness.text(LogType.STDOUT)

    @pytest.mark.asyncio
    async def test_stderr_is_classified(
        self, harness: Harness, write_script: Callable[[str, str], Path]
    ) -> None:
        body = """
        import sys
        sys.stderr.write("Error: listen EADDRINUSE: address already in use\\n")
        sys.stderr.flush()
        """
        await run_script(harness, write_script, body)
        await harness.supervisor.wait_closed()

        assert "EADDRINUSE" in harness.text(LogType.STDERR)
        assert "is already in use" in harness.text(LogType.SYSTEM)

    @pytest.mark.asyncio
    async def test_missing_command_raises_spawn_error(self, harness: Harness, tmp_path: Path) -> None:
        with pytest.raises(ProcessSpawnError) as exc_info:
            await harness.supervisor.start(tmp_path, "devpreview-no-such-command", ["--x"])

        assert exc_info.value.errno == errno.ENOENT
        assert exc_info.value.hint is not None and "not found" in exc_info.value.hint
        assert harness.instance.status is DevServerStatus.ERROR
        assert harness.instance.error
        assert "Process error" in harness.text(LogType.SYSTEM)
        assert harness.exits == []


class TestExit:
    @pytest.mark.asyncio
    async def test_nonzero_exit_while_running_is_error(
        self, harness: Harness, write_script: Callable[[str, str], Path]
    ) -> None:
        await run_script(harness, write_script, "import sys, time\ntime.sleep(0.2)\nsys.exit(1)\n")
        harness.instance.status = DevServerStatus.RUNNING

        await harness.supervisor.wait_closed()

        assert harness.instance.status is DevServerStatus.ERROR
        assert harness.instance.error == "Process exited with code 1"
        assert harness.supervisor.exit_code == 1
        assert harness.exits == [harness.supervisor]
        system = harness.text(LogType.SYSTEM)
        assert "exited with error code: 1" in system
        assert "Exit code 1 usually indicates a runtime error" in system

    @pytest.mark.asyncio
    async def test_clean_exit_is_stopped(
        self, harness: Harness, write_script: Callable[[str, str], Path]
    ) -> None:
        await run_script(harness, write_script, "print('bye')\n")
        harness.instance.status = DevServerStatus.RUNNING

        await harness.supervisor.wait_closed()

        assert harness.instance.status is DevServerStatus.STOPPED
        assert harness.instance.error is None
        assert "exited cleanly" in harness.text(LogType.SYSTEM)

    @posix_only
    @pytest.mark.asyncio
    async def test_requested_stop_is_stopped(
        self, harness: Harness, write_script: Callable[[str, str], Path]
    ) -> None:
        await run_script(harness, write_script, SERVER_SCRIPT)
        harness.instance.status = DevServerStatus.STOPPING

        await harness.supervisor.stop(grace=2.0)

        assert harness.supervisor.has_exited
        assert harness.supervisor.exit_signal == "SIGTERM"
        assert harness.instance.status is DevServerStatus.STOPPED
        assert harness.instance.error is None

    @posix_only
    @pytest.mark.asyncio
    async def test_stop_forces_termination_after_grace(
        self, harness: Harness, write_script: Callable[[str, str], Path]
    ) -> None:
        body = """
        import signal, time
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        print("ignoring SIGTERM", flush=True)
        while True:
            time.sleep(0.1)
        """
        await run_script(harness, write_script, body)
        await wait_until(lambda: "ignoring SIGTERM" in harness.text(LogType.STDOUT))
        harness.instance.status = DevServerStatus.STOPPING

        await harness.supervisor.stop(grace=0.3)

        assert harness.supervisor.has_exited
        assert harness.supervisor.exit_signal == "SIGKILL"
        assert harness.instance.status is DevServerStatus.STOPPED
