from __future__ import annotations

import asyncio
import logging
import secrets
import signal
import sys
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Set

from fastapi import FastAPI

from bsrunner.routes.assets import create_asset_app
from bsrunner.routes.results import create_collector_app
from bsrunner.schemas import (
    AggregateResult,
    BrowserSpec,
    PortPair,
    RawTestResult,
    RunRecord,
    ShutdownFlag,
)
from bsrunner.services.config import RunConfig
from bsrunner.services.ports import PortAllocator
from bsrunner.services.servers import ServerHandle, start_server
from bsrunner.services.shutdown import ShutdownCoordinator
from bsrunner.services.tunnel import TunnelSupervisor
from bsrunner.services.workers import RemoteWorkerClient, RemoteWorkerError
from bsrunner.templating import render_report

LOGGER = logging.getLogger("bsrunner.orchestrator")

RUN_ID_PREFIX = "bs_"
RUN_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
RUN_ID_LENGTH = 4

SHUTDOWN_SIGNALS = tuple(
    sig for sig in (getattr(signal, name, None) for name in ("SIGINT", "SIGTERM", "SIGHUP")) if sig is not None
)

ServerStarter = Callable[[FastAPI, int], Awaitable[ServerHandle]]


class WorkerClientProtocol(Protocol):
    async def create_worker(self, spec: BrowserSpec) -> str:  # pragma: no cover - interface stub
        ...

    async def terminate_worker(self, worker_id: str) -> object:  # pragma: no cover - interface stub
        ...

    async def aclose(self) -> None:  # pragma: no cover - interface stub
        ...


def generate_run_id() -> str:
    value = secrets.randbelow(len(RUN_ID_ALPHABET) ** RUN_ID_LENGTH)
    digits = []
    for _ in range(RUN_ID_LENGTH):
        value, remainder = divmod(value, len(RUN_ID_ALPHABET))
        digits.append(RUN_ID_ALPHABET[remainder])
    return RUN_ID_PREFIX + "".join(reversed(digits))


class RunOrchestrator:
    """Bring up the local listeners and the tunnel, fan out workers, collect results.

    Everything runs on one asyncio loop. ``active_runs``, ``aggregate`` and the
    shutdown flag are only touched from loop callbacks, so no locking is needed.
    The process exit code is produced by :meth:`run`.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        workers: Optional[WorkerClientProtocol] = None,
        ports: Optional[PortAllocator] = None,
        server_starter: ServerStarter = start_server,
        tunnel_launcher: Optional[Sequence[str]] = None,
        handle_signals: bool = True,
    ) -> None:
        self._config = config
        self._owns_workers = workers is None
        self._workers: WorkerClientProtocol = workers or RemoteWorkerClient(
            config.bs_username,
            config.bs_password,
            api_url=config.api_url,
        )
        self._ports = ports or PortAllocator(config.port_base)
        self._server_starter = server_starter
        self._handle_signals = handle_signals
        self._servers: List[ServerHandle] = []
        self._launches: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._exit: Optional[asyncio.Future] = None

        self.active_runs: Dict[str, RunRecord] = {}
        self.aggregate = AggregateResult()
        self.port_pair: Optional[PortPair] = None
        self.flag = ShutdownFlag()
        self.tunnel = TunnelSupervisor(
            config.bs_key,
            shutdown_flag=self.flag,
            on_ready=self._on_tunnel_ready,
            on_failure=self._on_tunnel_failure,
            jar=config.tunnel_jar,
            launcher=tunnel_launcher,
            verbose=config.verbose,
        )
        self._coordinator = ShutdownCoordinator(
            flag=self.flag,
            tunnel=self.tunnel,
            workers=self._workers,
            active_runs=self.active_runs,
            on_exit=self._resolve_exit,
        )

    # Lifecycle ---------------------------------------------------------------
    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        self._exit = loop.create_future()
        if self._handle_signals:
            self._install_signal_handlers(loop)
        try:
            await self._bootstrap()
            return await self._exit
        finally:
            await self.shutdown(1)
            if self._handle_signals:
                self._remove_signal_handlers(loop)
            await self._teardown()

    async def shutdown(self, exit_code: int = 0) -> bool:
        return await self._coordinator.shutdown(exit_code)

    async def _bootstrap(self) -> None:
        startups = [
            asyncio.ensure_future(self._start_asset_server()),
            asyncio.ensure_future(self._start_collector()),
        ]
        try:
            asset_port, collector_port = await asyncio.gather(*startups)
        except BaseException:
            for task in startups:
                task.cancel()
            await asyncio.gather(*startups, return_exceptions=True)
            raise
        self.port_pair = PortPair(asset_port=asset_port, collector_port=collector_port)
        LOGGER.debug("Asset server on %s, result collector on %s", asset_port, collector_port)
        if self.flag.is_set():
            LOGGER.debug("Shutdown requested during bootstrap; tunnel not started")
            return
        await self.tunnel.start(self.port_pair)

    async def _start_asset_server(self) -> int:
        port = self._ports.allocate()
        self._servers.append(await self._server_starter(create_asset_app(self._config.directory), port))
        return port

    async def _start_collector(self) -> int:
        port = self._config.collector_port
        self._servers.append(await self._server_starter(create_collector_app(self.handle_result), port))
        return port

    async def _teardown(self) -> None:
        for task in list(self._launches):
            task.cancel()
        pending = list(self._launches | self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.tunnel.wait()
        for server in self._servers:
            await server.stop()
        self._servers.clear()
        if self._owns_workers:
            await self._workers.aclose()

    def _resolve_exit(self, exit_code: int) -> None:
        if self._exit is not None and not self._exit.done():
            self._exit.set_result(exit_code)

    def _spawn(self, coro: Awaitable[object], registry: Optional[Set[asyncio.Task]] = None) -> asyncio.Task:
        tasks = self._background if registry is None else registry
        task = asyncio.ensure_future(coro)
        tasks.add(task)
        task.add_done_callback(lambda done: self._task_finished(tasks, done))
        return task

    def _task_finished(self, registry: Set[asyncio.Task], task: asyncio.Task) -> None:
        registry.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Unhandled error in background task", exc_info=exc)
            self._spawn(self.shutdown(1))

    # Signals -----------------------------------------------------------------
    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - non-unix loops
                LOGGER.debug("Cannot install handler for %s on this platform", sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - non-unix loops
                pass

    def _on_signal(self, sig: signal.Signals) -> None:
        LOGGER.debug("Received %s", signal.Signals(sig).name)
        self._spawn(self.shutdown(0))

    # Tunnel ------------------------------------------------------------------
    def _on_tunnel_ready(self) -> None:
        if self.flag.is_set():
            return
        self.launch_workers()

    def _on_tunnel_failure(self) -> None:
        self._spawn(self.shutdown(1))

    # Worker launch -----------------------------------------------------------
    def _new_run_id(self) -> str:
        run_id = generate_run_id()
        while run_id in self.active_runs:
            run_id = generate_run_id()
        return run_id

    def launch_workers(self) -> List[str]:
        if self.port_pair is None:
            raise RuntimeError("workers launched before the asset server was up")
        launched: List[str] = []
        for browser in self._config.browsers:
            run_id = self._new_run_id()
            url = f"http://localhost:{self.port_pair.asset_port}/{self._config.test_file}?id={run_id}"
            instance = browser.model_copy(update={"url": url})
            self.active_runs[run_id] = RunRecord(id=run_id, instance=instance)
            LOGGER.debug("launching: %s", instance.model_dump_json(exclude_none=True))
            self._spawn(self._launch(run_id, instance), self._launches)
            launched.append(run_id)
        return launched

    async def _launch(self, run_id: str, instance: BrowserSpec) -> None:
        try:
            handle = await self._workers.create_worker(instance)
        except RemoteWorkerError as exc:
            print(f"ERROR: could not launch {instance.label()}: {exc}", file=sys.stderr)
            self._spawn(self.shutdown(1))
            return
        record = self.active_runs.get(run_id)
        if record is None:
            return
        record.worker_handle = handle
        if self.flag.is_set():
            LOGGER.warning("Worker %s for %s created after shutdown began; not terminated", handle, run_id)
            return
        if record.result_received:
            self._spawn(self._retire(run_id))

    # Results -----------------------------------------------------------------
    def handle_result(self, run_id: str, result: RawTestResult) -> bool:
        if self.flag.is_set():
            LOGGER.debug("Ignoring result for %s during shutdown", run_id)
            return False
        record = self.active_runs.get(run_id)
        if record is None or record.result_received:
            LOGGER.warning("Received result for unknown run %s", run_id)
            return False
        record.result_received = True
        self._print_report(record.instance, result)
        self.aggregate.add(result)
        if record.worker_handle is None:
            LOGGER.debug("Result for %s arrived before its worker id; termination deferred", run_id)
            return True
        self._spawn(self._retire(run_id))
        return True

    def _print_report(self, instance: BrowserSpec, result: RawTestResult) -> None:
        label = instance.label()
        print(f"# START -- {label} ----------")
        print(render_report(result))
        print(f"# END ---- {label} ----------")
        sys.stdout.flush()

    async def _retire(self, run_id: str) -> None:
        record = self.active_runs.get(run_id)
        if record is None or record.worker_handle is None or record.terminating or self.flag.is_set():
            return
        record.terminating = True
        try:
            await self._workers.terminate_worker(record.worker_handle)
        except RemoteWorkerError as exc:
            print(f"ERROR: could not terminate worker {record.worker_handle}: {exc}", file=sys.stderr)
            await self.shutdown(1)
            return
        LOGGER.debug("successfully terminated worker: %s", run_id)
        del self.active_runs[run_id]
        if not self.active_runs and not self.flag.is_set():
            self._finish()

    def _finish(self) -> None:
        print(self.aggregate.summary())
        sys.stdout.flush()
        self._spawn(self.shutdown(self.aggregate.exit_code))
