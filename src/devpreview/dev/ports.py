"""Port probing and scanning for dev servers."""

from __future__ import annotations

import asyncio
import socket

from devpreview.constants import (
    DEFAULT_HOST,
    DEFAULT_MAX_PORT_TRIES,
    MAX_PORT,
    PORT_PROBE_TIMEOUT,
)
from devpreview.dev.logging import DevLogComponent, get_logger
from devpreview.errors import PortExhaustedError

logger = get_logger(DevLogComponent.PORTS)


def is_port_available(port: int, host: str = DEFAULT_HOST) -> bool:
    """Check if a port is available for binding.

    Binds a throwaway listener on (host, port) and closes it immediately.

    Args:
        port: Port number to check
        host: Host to check on (default: 127.0.0.1)

    Returns:
        True if the bind succeeded, False on any bind failure
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            # Don't set SO_REUSEADDR - we want to know if it's actually in use
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 0)
            sock.bind((host, port))
            sock.listen(1)
    except (OSError, OverflowError):
        return False
    return True


def find_available_port(
    preferred_port: int,
    max_tries: int = DEFAULT_MAX_PORT_TRIES,
    host: str = DEFAULT_HOST,
) -> int:
    """Find an available port starting from the preferred port.

    Args:
        preferred_port: First port to probe
        max_tries: Number of consecutive candidates to probe
        host: Host to check on (default: 127.0.0.1)

    Returns:
        The first available port in [preferred_port, preferred_port + max_tries - 1]

    Raises:
        PortExhaustedError: If none of the candidates is available
    """
    for offset in range(max_tries):
        port = preferred_port + offset
        if port > MAX_PORT:
            break
        if is_port_available(port, host):
            return port
        logger.debug(f"Port {port} is in use, trying next")
    raise PortExhaustedError(preferred_port, max_tries)


async def test_port_listening(
    port: int, host: str = DEFAULT_HOST, timeout: float = PORT_PROBE_TIMEOUT
) -> bool:
    """Check whether something is accepting connections on (host, port).

    This is the inverse of `is_port_available` and is only used for liveness probing.
    """
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (asyncio.TimeoutError, OSError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True

