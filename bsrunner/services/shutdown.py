from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Mapping, Protocol

from bsrunner.schemas import RunRecord, ShutdownFlag

LOGGER = logging.getLogger("bsrunner.shutdown")


class KillableTunnel(Protocol):
    def kill(self) -> None:  # pragma: no cover - interface stub
        ...


class WorkerTerminator(Protocol):
    async def terminate_worker(self, worker_id: str) -> object:  # pragma: no cover - interface stub
        ...


class ShutdownCoordinator:
    """Single idempotent teardown path for the tunnel and every known worker.

    Signals, tunnel failure, worker API failure and normal completion all end up
    in :meth:`shutdown`. The first caller raises the shared :class:`ShutdownFlag`
    and performs the cleanup; later callers return immediately. Records without a
    worker handle (creation still in flight) are skipped, as are records whose
    worker is already being terminated by the result path.
    """

    def __init__(
        self,
        *,
        flag: ShutdownFlag,
        tunnel: KillableTunnel,
        workers: WorkerTerminator,
        active_runs: Mapping[str, RunRecord],
        on_exit: Callable[[int], None],
    ) -> None:
        self._flag = flag
        self._tunnel = tunnel
        self._workers = workers
        self._active_runs = active_runs
        self._on_exit = on_exit

    def _claim_handles(self) -> List[str]:
        handles: List[str] = []
        for record in list(self._active_runs.values()):
            if record.worker_handle is None or record.terminating:
                continue
            record.terminating = True
            handles.append(record.worker_handle)
        return handles

    async def shutdown(self, exit_code: int = 0) -> bool:
        if not self._flag.set():
            LOGGER.debug("Shutdown already in progress; ignoring exit code %s", exit_code)
            return False

        self._tunnel.kill()
        handles = self._claim_handles()
        if handles:
            LOGGER.info("Stopping %s", ", ".join(handles))
        outcomes = await asyncio.gather(
            *(self._workers.terminate_worker(handle) for handle in handles),
            return_exceptions=True,
        )
        for handle, outcome in zip(handles, outcomes):
            if isinstance(outcome, Exception):
                LOGGER.warning("Failed to terminate worker %s: %s", handle, outcome)
        self._on_exit(exit_code)
        return True
