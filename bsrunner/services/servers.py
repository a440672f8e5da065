from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from dataclasses import dataclass
from typing import Iterator

import uvicorn
from fastapi import FastAPI

LOGGER = logging.getLogger("bsrunner.servers")


class ServerStartError(RuntimeError):
    """A local listener could not be brought up."""


class EmbeddedServer(uvicorn.Server):
    """uvicorn server sharing the caller's event loop and signal handlers."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


@dataclass
class ServerHandle:
    server: EmbeddedServer
    task: asyncio.Task
    port: int

    async def stop(self) -> None:
        self.server.should_exit = True
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        LOGGER.debug("Stopped server on port %s", self.port)


def _bind(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as exc:
        sock.close()
        raise ServerStartError(f"could not listen on {host}:{port}: {exc}") from exc
    sock.set_inheritable(True)
    return sock


async def start_server(app: FastAPI, port: int, host: str = "0.0.0.0") -> ServerHandle:
    """Serve ``app`` on ``port`` and return once the listener accepts connections."""
    sock = _bind(host, port)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        lifespan="off",
        log_config=None,
        log_level="warning",
        access_log=False,
    )
    server = EmbeddedServer(config)
    task = asyncio.create_task(server.serve(sockets=[sock]), name=f"http-{port}")
    try:
        while not server.started:
            if task.done():
                task.result()
                raise ServerStartError(f"server on port {port} exited during startup")
            await asyncio.sleep(0.01)
    except BaseException:
        server.should_exit = True
        task.cancel()
        sock.close()
        raise
    LOGGER.debug("Listening on %s:%s", host, port)
    return ServerHandle(server=server, task=task, port=port)
