from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.requests import Request
from starlette.responses import Response

from kubecapture.errors import SessionBusyError
from kubecapture.logging_setup import correlation_context, get_access_logger, short_uuid
from kubecapture.services.session_controller import SessionController

LOGGER = logging.getLogger(__name__)
ACCESS_LOGGER = get_access_logger()


class StartRequest(BaseModel):
    filter: str = ""
    image: Optional[str] = None


def _operation_response(controller: SessionController, ok: bool) -> JSONResponse:
    snapshot = controller.snapshot()
    if ok:
        status_code = 200
    elif snapshot.last_error is not None and snapshot.last_error.kind == SessionBusyError.kind:
        status_code = 409
    else:
        status_code = 502
    return JSONResponse(status_code=status_code, content=snapshot.to_dict())


def create_app(controller: SessionController, default_image: str = "") -> FastAPI:
    app = FastAPI(title="Kubernetes Cluster Packet Capture")

    @app.on_event("startup")
    async def on_startup() -> None:
        await controller.startup()
        LOGGER.info("Application startup phase=%s", controller.snapshot().phase.value, extra={"category": "CONFIG"})

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await controller.close()
        LOGGER.info("Application shutdown", extra={"category": "CONFIG"})

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_cid = request.headers.get("X-Correlation-Id") or short_uuid()
        start_ts = time.perf_counter()
        with correlation_context(request_cid):
            try:
                response: Response = await call_next(request)
            except Exception:
                elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
                ACCESS_LOGGER.warning(
                    "HTTP request failed method=%s path=%s client=%s duration_ms=%s",
                    request.method,
                    request.url.path,
                    request.client.host if request.client else "-",
                    elapsed_ms,
                )
                LOGGER.exception("HTTP request failed method=%s path=%s", request.method, request.url.path, extra={"category": "ERRORS"})
                raise
            elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
            ACCESS_LOGGER.info(
                "HTTP %s %s status=%s duration_ms=%s client=%s",
                request.method,
                request.url.path,
                response.status_code,
                elapsed_ms,
                request.client.host if request.client else "-",
            )
            response.headers["X-Correlation-Id"] = request_cid
            return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        LOGGER.warning(
            "HTTP exception method=%s path=%s status=%s detail=%s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.detail,
            extra={"category": "HTTP"},
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        LOGGER.exception(
            "Unhandled exception method=%s path=%s",
            request.method,
            request.url.path,
            extra={"category": "ERRORS"},
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/api/session")
    def get_session() -> JSONResponse:
        return JSONResponse(content=controller.snapshot().to_dict())

    @app.post("/api/session/check")
    async def check_session() -> JSONResponse:
        snapshot = await controller.check_status()
        return JSONResponse(content=snapshot.to_dict())

    @app.post("/api/session/start")
    async def start_session(body: StartRequest) -> JSONResponse:
        image = (body.image or default_image).strip()
        if not image:
            raise HTTPException(status_code=400, detail="A capture image is required")
        ok = await controller.start(body.filter, image)
        return _operation_response(controller, ok)

    @app.post("/api/session/stop")
    async def stop_session() -> JSONResponse:
        ok = await controller.stop_only()
        return _operation_response(controller, ok)

    @app.post("/api/session/collect")
    async def collect_session(request: Request) -> JSONResponse:
        ok = await controller.stop_and_collect(collector_host=request.url.hostname)
        return _operation_response(controller, ok)

    @app.get("/api/session/download")
    def download() -> JSONResponse:
        artifact = controller.snapshot().last_artifact
        if artifact is None:
            raise HTTPException(status_code=404, detail="No capture bundle has been collected yet")
        return JSONResponse(content=artifact.to_dict())

    return app
