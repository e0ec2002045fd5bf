"""HTTP API exposing discovered devices and their controls."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from .config import Config
from .devices import DeviceStore
from .health import HealthMonitor
from .logging import get_logger, redact_mapping
from .metrics import (
    METRICS_CONTENT_TYPE,
    latest_metrics,
    observe_request,
)
from .orchestrator import DiscoveryOrchestrator, PassError


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_key:
            return
        api_key_header = request.headers.get("X-API-Key")
        auth_header = request.headers.get("Authorization")
        if api_key_header == config.api_key:
            return
        if auth_header and auth_header.lower().startswith("apikey "):
            if auth_header.split(" ", 1)[1] == config.api_key:
                return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return _auth_guard


class StoredDeviceOut(BaseModel):
    """Device row as persisted by the last discovery pass."""

    id: int
    port: int
    scheme: str
    path: str
    main_route: Optional[str]
    addresses: List[str]
    properties: Dict[str, str]


def create_app(
    config: Config,
    orchestrator: DiscoveryOrchestrator,
    store: DeviceStore,
    health: Optional[HealthMonitor] = None,
) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("ascot.api")
    request_logger = get_logger("ascot.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    app = FastAPI(
        title="Ascot Gateway API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled API error")
            response = JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": "Internal server error"},
            )
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        duration_seconds = time.perf_counter() - start
        observe_request(request.method, path_template, response.status_code, duration_seconds)
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redacted_headers,
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors()},
        )

    @app.get("/health", dependencies=[Depends(auth_dependency)])
    async def health_check() -> Dict[str, Any]:
        if health is None:
            return {"status": "ok", "subsystems": {}}
        return {
            "status": await health.overall_status(),
            "subsystems": dict(await health.snapshot()),
        }

    @app.get("/status", dependencies=[Depends(auth_dependency)])
    async def store_status() -> Dict[str, int]:
        return dict(await store.stats())

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/devices", dependencies=[Depends(auth_dependency)])
    async def list_devices() -> Dict[str, Any]:
        return orchestrator.last_result.as_dict()

    @app.get(
        "/devices/stored",
        dependencies=[Depends(auth_dependency)],
        response_model=List[StoredDeviceOut],
    )
    async def list_stored_devices() -> List[StoredDeviceOut]:
        rows = await store.devices()
        return [StoredDeviceOut(**row.__dict__) for row in rows]

    @app.post("/discovery", dependencies=[Depends(auth_dependency)])
    async def run_discovery() -> Dict[str, Any]:
        try:
            result = await orchestrator.run_pass()
        except PassError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Discovery pass failed",
            ) from exc
        return result.as_dict()

    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(
        self,
        config: Config,
        orchestrator: DiscoveryOrchestrator,
        store: DeviceStore,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.orchestrator = orchestrator
        self.store = store
        self.health = health
        self.logger = get_logger("ascot.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.orchestrator, self.store, self.health)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
