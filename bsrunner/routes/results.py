from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from bsrunner.schemas import RawTestResult, ResultSubmission

LOGGER = logging.getLogger("bsrunner.results")

REPORTER_SCRIPT_PATH = Path(__file__).resolve().parent.parent / "static" / "reporter.js"

ResultHandler = Callable[[str, RawTestResult], bool]

router = APIRouter(tags=["results"])


def get_result_handler(request: Request) -> ResultHandler:
    return request.app.state.result_handler


@router.get("/ping")
async def collector_ping() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/reporter.js")
async def reporter_script() -> FileResponse:
    return FileResponse(path=REPORTER_SCRIPT_PATH, media_type="application/javascript")


@router.post("/results")
async def submit_result(
    payload: ResultSubmission,
    handler: ResultHandler = Depends(get_result_handler),
) -> Dict[str, str]:
    LOGGER.debug("Result submitted for %s (failed=%s)", payload.id, payload.result.failed)
    if not handler(payload.id, payload.result):
        raise HTTPException(status_code=404, detail="Unknown or already reported run id")
    return {"status": "ok"}


def create_collector_app(handler: ResultHandler) -> FastAPI:
    """Build the result collector; every accepted submission is passed to ``handler``."""
    app = FastAPI(title="bsrunner result collector", docs_url=None, redoc_url=None)
    app.state.result_handler = handler
    # Test pages post from the asset server's origin.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app
