from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from bsrunner.schemas import BrowserSpec

LOGGER = logging.getLogger("bsrunner.workers")


class RemoteWorkerError(RuntimeError):
    """The remote browser farm refused or failed a worker request."""


class RemoteWorkerClient:
    """Create and terminate BrowserStack browser workers over the REST API."""

    def __init__(
        self,
        username: str,
        password: str,
        *,
        api_url: str = "https://api.browserstack.com/4",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            auth=(username, password),
            timeout=None,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text.strip() or exc.response.reason_phrase
            raise RemoteWorkerError(
                f"{method} {path} failed with {exc.response.status_code}: {detail}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteWorkerError(f"{method} {path} failed: {exc}") from exc
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteWorkerError(f"{method} {path} returned a non-JSON body") from exc
        return payload if isinstance(payload, dict) else {}

    async def create_worker(self, spec: BrowserSpec) -> str:
        payload = await self._request("POST", "/worker", json=spec.model_dump(exclude_none=True))
        worker_id = payload.get("id")
        if worker_id is None:
            raise RemoteWorkerError(f"worker creation returned no id: {payload}")
        LOGGER.debug("Created worker %s for %s", worker_id, spec.label())
        return str(worker_id)

    async def terminate_worker(self, worker_id: str) -> Dict[str, Any]:
        payload = await self._request("DELETE", f"/worker/{worker_id}")
        LOGGER.debug("Terminated worker %s", worker_id)
        return payload

    async def aclose(self) -> None:
        await self._client.aclose()
