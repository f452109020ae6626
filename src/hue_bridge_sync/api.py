"""HTTP API for inspecting the synced model and sending commands."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .config import Config
from .errors import (
    CommandRejected,
    CommandValidationFailure,
    HueSyncError,
    TransientTransportError,
    UnknownEntityError,
)
from .health import HealthMonitor
from .logging import get_logger, redact_mapping
from .metrics import (
    METRICS_CONTENT_TYPE,
    latest_metrics,
    observe_request,
)
from .store import StateStore
from .sync import CommandResult, HueSyncService


def _build_auth_dependency(config: Config) -> Callable[[Request], None]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_key and not config.api_bearer_token:
            return
        api_key_header = request.headers.get("X-API-Key")
        auth_header = request.headers.get("Authorization")
        if config.api_key and api_key_header == config.api_key:
            return
        if config.api_key and auth_header and auth_header.lower().startswith("apikey "):
            if auth_header.split(" ", 1)[1] == config.api_key:
                return
        if config.api_bearer_token and auth_header and auth_header.startswith("Bearer "):
            if auth_header.split(" ", 1)[1] == config.api_bearer_token:
                return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _auth_guard


def _error_status(exc: HueSyncError) -> int:
    if isinstance(exc, CommandValidationFailure):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, UnknownEntityError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, CommandRejected):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, TransientTransportError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class ChannelOut(BaseModel):
    """Channel response model."""

    id: str
    name: str
    kind: str
    data_type: str
    readable: bool
    writable: bool
    reportable: bool
    retained: bool
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    unit: Optional[str] = None
    choices: List[Dict[str, Any]] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)
    value: Any = None
    updated_ms: Optional[int] = None


class DeviceOut(BaseModel):
    """Device response model with its channels."""

    id: str
    name: str
    manufacturer: str
    model: str
    firmware: str
    device_class: str
    battery: bool
    effects: List[Dict[str, Any]] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)
    channels: List[ChannelOut] = Field(default_factory=list)


class RoomOut(BaseModel):
    id: str
    name: str
    zone: str
    members: List[str]


class SceneOut(BaseModel):
    id: str
    name: str
    description: str
    image: str
    state: str
    scope_type: str
    scope_id: str
    supports_dynamic: bool


class ChannelWrite(BaseModel):
    """Value to write to a channel; shape depends on the channel."""

    value: Any


class RenameRequest(BaseModel):
    name: str


class EffectRequest(BaseModel):
    """Effect to start; null or "none" stops the running effect."""

    effect: Optional[str] = None
    duration_ms: Optional[int] = Field(default=None, ge=0)


class SceneInvoke(BaseModel):
    action: Optional[str] = None
    group_id: Optional[str] = None
    duration_ms: Optional[int] = Field(default=None, ge=0)


class CommandOut(BaseModel):
    ok: bool
    value: Any = None
    message: str = ""


def _command_out(result: CommandResult) -> CommandOut:
    return CommandOut(**result.as_dict())


def create_app(
    config: Config,
    store: StateStore,
    service: HueSyncService,
    health: Optional[HealthMonitor] = None,
) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("hue.api")
    request_logger = get_logger("hue.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    app = FastAPI(
        title="Hue Bridge Sync API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> JSONResponse:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("Unhandled API error")
            raise HTTPException(status_code=500, detail="Internal server error") from exc
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        duration_seconds = time.perf_counter() - start
        observe_request(
            request.method,
            path_template,
            response.status_code,
            duration_seconds,
        )
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
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(HueSyncError)
    async def _sync_error_handler(request: Request, exc: HueSyncError) -> JSONResponse:
        status_code = _error_status(exc)
        request_logger.warning(
            "Command failed",
            extra={"path": request.url.path, "status": status_code, "error": str(exc)},
        )
        content: Dict[str, Any] = {"detail": str(exc)}
        if isinstance(exc, CommandRejected) and exc.errors:
            content["errors"] = exc.errors
        return JSONResponse(status_code=status_code, content=content)

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
            content={"detail": jsonable_errors(exc.errors())},
        )

    def _device_out(device_id: str) -> DeviceOut:
        device = store.device(device_id)
        if device is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        channels = [ChannelOut(**channel.to_dict()) for channel in store.channels(device_id)]
        return DeviceOut(**device.to_dict(), channels=channels)

    @app.get("/health", dependencies=[Depends(auth_dependency)])
    async def health_status() -> Dict[str, Any]:
        subsystems = dict(await health.snapshot()) if health else {}
        overall = "ok" if all(item["status"] == "ok" for item in subsystems.values()) else "degraded"
        return {"status": overall, "connected": store.connected, "subsystems": subsystems}

    @app.get("/status", dependencies=[Depends(auth_dependency)])
    async def sync_status() -> Dict[str, Any]:
        return {"store": store.stats(), "sync": service.status()}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/devices", dependencies=[Depends(auth_dependency)], response_model=List[DeviceOut])
    async def list_devices() -> List[DeviceOut]:
        return [_device_out(device.id) for device in store.devices()]

    @app.get("/devices/{device_id}", dependencies=[Depends(auth_dependency)], response_model=DeviceOut)
    async def get_device(device_id: str) -> DeviceOut:
        return _device_out(device_id)

    @app.put(
        "/devices/{device_id}/channels/{channel_id}",
        dependencies=[Depends(auth_dependency)],
        response_model=CommandOut,
    )
    async def write_channel(device_id: str, channel_id: str, payload: ChannelWrite) -> CommandOut:
        return _command_out(await service.write_channel(device_id, channel_id, payload.value))

    @app.put("/devices/{device_id}/name", dependencies=[Depends(auth_dependency)], response_model=CommandOut)
    async def rename_device(device_id: str, payload: RenameRequest) -> CommandOut:
        return _command_out(await service.rename_device(device_id, payload.name))

    @app.post("/devices/{device_id}/effects", dependencies=[Depends(auth_dependency)], response_model=CommandOut)
    async def invoke_effect(device_id: str, payload: EffectRequest) -> CommandOut:
        return _command_out(await service.invoke_effect(device_id, payload.effect, payload.duration_ms))

    @app.get("/rooms", dependencies=[Depends(auth_dependency)], response_model=List[RoomOut])
    async def list_rooms() -> List[RoomOut]:
        return [RoomOut(**room.to_dict()) for room in store.rooms()]

    @app.get("/groups", dependencies=[Depends(auth_dependency)], response_model=List[RoomOut])
    async def list_groups() -> List[RoomOut]:
        return [RoomOut(**group.to_dict()) for group in store.groups()]

    @app.get("/scenes", dependencies=[Depends(auth_dependency)], response_model=List[SceneOut])
    async def list_scenes() -> List[SceneOut]:
        return [SceneOut(**scene.to_dict()) for scene in store.scenes()]

    @app.post("/scenes/{scene_id}/invoke", dependencies=[Depends(auth_dependency)], response_model=CommandOut)
    async def invoke_scene(scene_id: str, payload: SceneInvoke) -> CommandOut:
        result = await service.invoke_scene(
            scene_id, payload.action, payload.group_id, payload.duration_ms
        )
        return _command_out(result)

    @app.post("/resync", dependencies=[Depends(auth_dependency)], status_code=status.HTTP_202_ACCEPTED)
    async def resync() -> Dict[str, bool]:
        return {"scheduled": service.request_resync("api")}

    @app.post("/discovery", dependencies=[Depends(auth_dependency)], response_model=CommandOut)
    async def discovery() -> CommandOut:
        return _command_out(await service.start_discovery())

    return app


def jsonable_errors(errors: Any) -> List[Dict[str, Any]]:
    """Validation errors with non-JSON context values stringified."""

    cleaned = []
    for error in errors:
        item = dict(error)
        if "ctx" in item:
            item["ctx"] = {key: str(value) for key, value in item["ctx"].items()}
        cleaned.append(item)
    return cleaned


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(
        self,
        config: Config,
        store: StateStore,
        service: HueSyncService,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.service = service
        self.health = health
        self.logger = get_logger("hue.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.store, self.service, self.health)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        if self.health:
            await self.health.record_success("api")
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
