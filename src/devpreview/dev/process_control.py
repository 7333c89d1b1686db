"""Cross-platform liveness checks and graceful-then-forced termination helpers.

Dev servers are spawned in their own session (POSIX) or process group (Windows),
so a whole npm -> node tree can be signalled through the group leader's pid.
"""

from __future__ import annotations

import asyncio
import os
import signal

import psutil

from devpreview.dev.logging import DevLogComponent, get_logger

logger = get_logger(DevLogComponent.PROCESS_CONTROL)

_POLL_INTERVAL = 0.1


def is_process_alive(pid: int) -> bool:
    """Return True if `pid` names a live (non-zombie) process."""
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        # Exists, but belongs to someone else.
        return True


def _get_pgid_safe(pid: int) -> int | None:
    # Windows doesn't have pgid.
    if os.name == "nt":
        return None
    try:
        return os.getpgid(pid)
    except OSError:
        return None


def _group_leader_pgid(pid: int) -> int | None:
    """Return the pgid only when `pid` leads its own group (i.e. we started a session)."""
    pgid = _get_pgid_safe(pid)
    if pgid is not None and pgid == pid:
        return pgid
    return None


def signal_process_tree(pid: int, sig: signal.Signals) -> bool:
    """Send `sig` to the process group led by `pid`, or to `pid` and its children.

    Returns:
        True if at least one process was signalled
    """
    pgid = _group_leader_pgid(pid)
    if pgid is not None:
        try:
            os.killpg(pgid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning(f"Cannot signal process group {pgid}: {e}")
            return False

    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return False
    try:
        children = root.children(recursive=True)
    except psutil.Error:
        children = []

    signalled = False
    # Children first, so the root gets a chance to exit cleanly.
    for proc in [*children, root]:
        try:
            if sig == signal.SIGTERM:
                proc.terminate()
            elif os.name != "nt" and sig == signal.SIGKILL:
                proc.kill()
            else:
                proc.send_signal(sig)
            signalled = True
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot signal pid {proc.pid}: {e}")
    return signalled


def force_signal() -> signal.Signals:
    """The signal used once the grace window has elapsed."""
    if os.name == "nt":
        return signal.SIGTERM
    return signal.SIGKILL


async def wait_for_exit(pid: int, timeout: float) -> bool:
    """Poll until `pid` is gone. Returns False if it is still alive after `timeout`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if not is_process_alive(pid):
            return True
        await asyncio.sleep(_POLL_INTERVAL)
    return not is_process_alive(pid)


async def terminate_pid(pid: int, *, grace: float) -> None:
    """Stop a process we did not spawn in this session (known only by pid).

    Behavior:
    - Signal the tree with SIGTERM and wait up to `grace` seconds.
    - Escalate to SIGKILL (terminate on Windows) and wait briefly.
    """
    if not is_process_alive(pid):
        return

    logger.debug(f"Terminating pid={pid}")
    signal_process_tree(pid, signal.SIGTERM)
    if await wait_for_exit(pid, grace):
        return

    logger.warning(f"pid={pid} did not exit within {grace}s, forcing termination")
    signal_process_tree(pid, force_signal())
    if not await wait_for_exit(pid, max(0.5, grace / 5)):
        logger.error(f"pid={pid} is still alive after forced termination")
