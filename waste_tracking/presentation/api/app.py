from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from waste_tracking.domain.errors import WasteTrackingError
from waste_tracking.presentation.api.http import build_http_router
from waste_tracking.presentation.api.ws import build_ws_router

if TYPE_CHECKING:
    from waste_tracking.bootstrap import Runtime

log = logging.getLogger(__name__)


def create_app(runtime: Runtime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title=runtime.settings.app_name, lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(WasteTrackingError)
    async def _handle_domain_error(request: Request, exc: WasteTrackingError) -> JSONResponse:
        if exc.status_code >= 500:
            log.error("Request failed method=%s path=%s error=%s", request.method, request.url.path, exc.message)
        else:
            log.info(
                "Request rejected method=%s path=%s status=%s error=%s",
                request.method,
                request.url.path,
                exc.status_code,
                exc.message,
            )
        return JSONResponse(status_code=exc.status_code, content={"status": "error", "detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def _handle_request_shape(request: Request, exc: RequestValidationError) -> JSONResponse:
        detail = "; ".join(_describe(error) for error in exc.errors()) or "Invalid request"
        log.info("Request rejected method=%s path=%s status=400 error=%s", request.method, request.url.path, detail)
        return JSONResponse(status_code=400, content={"status": "error", "detail": detail})

    app.include_router(build_http_router(runtime.ingest, runtime.dashboard))
    app.include_router(build_ws_router(runtime.gateway))
    return app


def _describe(error: dict) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
    message = str(error.get("msg", "invalid value"))
    return f"{location}: {message}" if location else message

