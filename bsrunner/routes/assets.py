from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse

LOGGER = logging.getLogger("bsrunner.assets")

router = APIRouter(tags=["assets"])


def _resolve_asset(root: Path, asset_path: str) -> Path:
    target = (root / asset_path).resolve()
    if target != root and root not in target.parents:
        raise HTTPException(status_code=404, detail="Asset not found")
    if target.is_dir():
        target = target / "index.html"
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Asset not found")
    return target


@router.get("/{asset_path:path}")
async def read_asset(asset_path: str, request: Request) -> FileResponse:
    root: Path = request.app.state.asset_root
    return FileResponse(path=_resolve_asset(root, asset_path))


def create_asset_app(directory: Path) -> FastAPI:
    """Build the app that serves the test directory to the remote browsers."""
    app = FastAPI(title="bsrunner assets", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.asset_root = Path(directory).resolve()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        LOGGER.debug("[%s]: %s", response.status_code, request.url.path)
        return response

    app.include_router(router)
    return app
