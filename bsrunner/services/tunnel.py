from __future__ import annotations

import asyncio
import logging
import sys
from typing import Callable, List, Optional, Sequence, TextIO

from bsrunner.schemas import PortPair, ShutdownFlag, TunnelState

LOGGER = logging.getLogger("bsrunner.tunnel")

READY_TOKEN = "You can now access your local server(s) in our remote browser"
CHUNK_SIZE = 4096


class LineSplitter:
    """Turn an arbitrarily chunked byte stream into complete text lines."""

    def __init__(self, delimiter: bytes = b"\n", encoding: str = "utf-8") -> None:
        self._delimiter = delimiter
        self._encoding = encoding
        self._buffer = b""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(self._delimiter)
        return [self._decode(part) for part in complete]

    def close(self) -> List[str]:
        remainder, self._buffer = self._buffer, b""
        return [self._decode(remainder)] if remainder else []

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self._encoding, errors="replace")


class TunnelSupervisor:
    """Spawn the tunnel binary and watch its stdout for readiness or failure."""

    def __init__(
        self,
        key: str,
        *,
        shutdown_flag: ShutdownFlag,
        on_ready: Callable[[], None],
        on_failure: Callable[[], None],
        jar: str = "ext/BrowserStackTunnel.jar",
        launcher: Optional[Sequence[str]] = None,
        verbose: bool = False,
    ) -> None:
        self._key = key
        self._shutdown_flag = shutdown_flag
        self._on_ready = on_ready
        self._on_failure = on_failure
        self._launcher = list(launcher) if launcher is not None else ["java", "-jar", jar]
        self._verbose = verbose
        self._state = TunnelState.starting
        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def command(self, ports: PortPair) -> List[str]:
        return [*self._launcher, self._key, ports.forwarding_spec()]

    async def start(self, ports: PortPair) -> None:
        if self._state is TunnelState.terminated or self._shutdown_flag.is_set():
            LOGGER.debug("Shutdown already requested; tunnel not started")
            return
        args = self.command(ports)
        LOGGER.debug("Starting tunnel: %s", " ".join(args[:-2] + ["<key>", args[-1]]))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE if self._verbose else asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            LOGGER.debug("Could not execute %s: %s", args[0], exc)
            self._fail()
            return
        self._process = process
        self._tasks.append(asyncio.create_task(self._watch_stdout(process), name="tunnel-stdout"))
        if self._verbose:
            self._tasks.append(asyncio.create_task(self._forward_stderr(process), name="tunnel-stderr"))
        # A shutdown that landed while the process was spawning could not kill it.
        if self._state is TunnelState.terminated or self._shutdown_flag.is_set():
            self.kill()

    async def wait(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks)

    def kill(self) -> None:
        if self._state in (TunnelState.starting, TunnelState.ready):
            self._state = TunnelState.terminated
        process = self._process
        if process is None or process.returncode is not None:
            return
        LOGGER.debug("Killing tunnel process %s", process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass

    async def _watch_stdout(self, process: asyncio.subprocess.Process) -> None:
        splitter = LineSplitter()
        while True:
            chunk = await process.stdout.read(CHUNK_SIZE)
            if not chunk:
                break
            if self._verbose:
                _passthrough(sys.stdout, chunk)
            for line in splitter.feed(chunk):
                self._handle_line(line)
        for line in splitter.close():
            self._handle_line(line)
        await process.wait()
        self._handle_end_of_stream()

    async def _forward_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            chunk = await process.stderr.read(CHUNK_SIZE)
            if not chunk:
                return
            _passthrough(sys.stderr, chunk)

    def _handle_line(self, line: str) -> None:
        if self._state is not TunnelState.starting:
            return
        if line[: len(READY_TOKEN)] == READY_TOKEN:
            self._state = TunnelState.ready
            LOGGER.debug("Tunnel started successfully")
            self._on_ready()

    def _handle_end_of_stream(self) -> None:
        if self._state is TunnelState.terminated or self._shutdown_flag.is_set():
            LOGGER.debug("Tunnel output closed after shutdown")
            return
        self._fail()

    def _fail(self) -> None:
        was_ready = self._state is TunnelState.ready
        self._state = TunnelState.failed
        if was_ready:
            print("ERROR: browserstack tunnel closed unexpectedly, "
                  "see --verbose output for more info", file=sys.stderr)
        else:
            print("ERROR: browserstack tunnel failed to start, "
                  "see --verbose output for more info", file=sys.stderr)
        self._on_failure()


def _passthrough(stream: TextIO, chunk: bytes) -> None:
    # Raw bytes; a multibyte character may straddle two chunks.
    stream.flush()
    stream.buffer.write(chunk)
    stream.buffer.flush()
