from __future__ import annotations

import logging
import socket

LOGGER = logging.getLogger("bsrunner.ports")

DEFAULT_PORT_BASE = 45032


class PortAllocator:
    """Hand out free local TCP ports by probing an incrementing candidate."""

    def __init__(self, base: int = DEFAULT_PORT_BASE, host: str = "") -> None:
        self._next = base
        self._host = host

    def _candidate(self) -> int:
        port = self._next
        self._next += 1
        return port

    def allocate(self) -> int:
        while True:
            port = self._candidate()
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                    sock.bind((self._host, port))
                    sock.listen(1)
            except OSError as exc:
                LOGGER.debug("Port %s unavailable (%s); trying next", port, exc)
                continue
            LOGGER.debug("Allocated port %s", port)
            return port
