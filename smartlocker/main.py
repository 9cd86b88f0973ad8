import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from smartlocker import config
from smartlocker.adapters.blobs import LocalBlobStore
from smartlocker.adapters.http_api import api_router
from smartlocker.adapters.mqtt_client import start_mqtt, stop_mqtt
from smartlocker.adapters.store_sql import create_schema
from smartlocker.adapters.ws import router as ws_router
from smartlocker.application.admin import ensure_lockers
from smartlocker.deps import Container, build_container
from smartlocker.domain.errors import (
    AuthorizationBlocked,
    ConflictError,
    InsufficientFunds,
    InvalidTransition,
    LockerError,
    NotFoundError,
    TokenMismatch,
    TransportError,
    ValidationError,
)

"""
== Coordinador de lockers ==
Tres actores (courier, recipient, monitor) y el controlador embebido nunca
se hablan entre si: todos leen y escriben el mismo store de documentos y se
enteran de los cambios por suscripcion.

    - Los actores usan la API REST (/v1) y el feed WebSocket (/ws).
    - El controlador publica sensores y recibe comandos por MQTT
      (adapters/mqtt_client.py) o reporta por el webhook /v1/sensors/events.
"""

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    InsufficientFunds: 402,
    AuthorizationBlocked: 403,
    NotFoundError: 404,
    ConflictError: 409,
    InvalidTransition: 409,
    TokenMismatch: 422,
    TransportError: 503,
}


def status_for(exc: LockerError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def create_app(container: Optional[Container] = None, mqtt_enabled: bool = config.MQTT_ENABLED) -> FastAPI:
    app = FastAPI(title="SmartLocker Coordinator", version="0.1.0")
    app.state.container = container or build_container()
    app.include_router(api_router, prefix="/v1")
    app.include_router(ws_router)

    # evidencia fotografica: las URLs de resolve() se sirven desde aca
    blobs: LocalBlobStore = app.state.container.blobs
    app.mount(blobs.base_url, StaticFiles(directory=str(blobs.root), check_dir=False), name="blobs")

    @app.exception_handler(LockerError)
    async def locker_error_handler(request: Request, exc: LockerError):
        return JSONResponse(
            status_code=status_for(exc),
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    @app.on_event("startup")
    async def on_startup():
        config.setup_logging()
        c: Container = app.state.container
        # 1) Esquema SQL si el store es persistente
        if c.engine is not None:
            await create_schema(c.engine)
        # 2) Documentos de lockers faltantes en estado seguro
        await ensure_lockers(c.store, c.locker_count)
        # 3) Directorio de blobs servido como estaticos
        c.blobs.root.mkdir(parents=True, exist_ok=True)
        # 4) Arrancar MQTT
        if mqtt_enabled:
            await start_mqtt(c.store, c.hardware)
        logger.info("[APP] started: %s lockers, store=%s", c.locker_count, type(c.store).__name__)

    @app.on_event("shutdown")
    async def on_shutdown():
        c: Container = app.state.container
        await c.sessions.close_all()
        if mqtt_enabled:
            await stop_mqtt()
        if c.engine is not None:
            await c.engine.dispose()

    return app


app = create_app()

if __name__ == "__main__":
    config.setup_logging()
    uvicorn.run("smartlocker.main:app", host="0.0.0.0", port=8080, reload=True)
