from __future__ import annotations

import base64
import json
from typing import List

import httpx
import pytest

from bsrunner.schemas import BrowserSpec
from bsrunner.services.workers import RemoteWorkerClient, RemoteWorkerError


def _client(handler, requests: List[httpx.Request]) -> RemoteWorkerClient:
    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    return RemoteWorkerClient(
        "alice",
        "secret",
        api_url="https://api.browserstack.test/4/",
        transport=httpx.MockTransport(_record),
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_worker_posts_spec_with_basic_auth() -> None:
    requests: List[httpx.Request] = []
    client = _client(lambda request: httpx.Response(200, json={"id": 4127}), requests)
    spec = BrowserSpec(
        browser="chrome",
        version="25.0",
        os="win",
        url="http://localhost:45032/test.html?id=bs_0a1z",
        os_version="8",
    )

    worker_id = await client.create_worker(spec)
    await client.aclose()

    assert worker_id == "4127"
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://api.browserstack.test/4/worker"
    expected_auth = "Basic " + base64.b64encode(b"alice:secret").decode()
    assert request.headers["Authorization"] == expected_auth
    assert json.loads(request.content) == {
        "browser": "chrome",
        "version": "25.0",
        "os": "win",
        "url": "http://localhost:45032/test.html?id=bs_0a1z",
        "os_version": "8",
    }


@pytest.mark.unit
@pytest.mark.asyncio
async def test_terminate_worker_issues_delete() -> None:
    requests: List[httpx.Request] = []
    client = _client(lambda request: httpx.Response(200, json={"time": 12}), requests)

    payload = await client.terminate_worker("4127")
    await client.aclose()

    assert payload == {"time": 12}
    assert requests[0].method == "DELETE"
    assert requests[0].url.path == "/4/worker/4127"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_errors_raise_remote_worker_error() -> None:
    client = _client(lambda request: httpx.Response(401, text="Unauthorized"), [])

    with pytest.raises(RemoteWorkerError, match="401: Unauthorized"):
        await client.create_worker(BrowserSpec(browser="ie", version="9.0", os="win"))
    await client.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transport_errors_raise_remote_worker_error() -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(_refuse, [])

    with pytest.raises(RemoteWorkerError, match="connection refused"):
        await client.terminate_worker("99")
    await client.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_worker_requires_an_id() -> None:
    client = _client(lambda request: httpx.Response(200, json={"message": "queued"}), [])

    with pytest.raises(RemoteWorkerError, match="no id"):
        await client.create_worker(BrowserSpec(browser="opera", version="12", os="mac"))
    await client.aclose()
