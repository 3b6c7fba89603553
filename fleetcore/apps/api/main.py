from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from fleetcore.apps.api.errors import (
    fleet_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fleetcore.apps.api.response import API_VERSION
from fleetcore.apps.api.routes.directives import router as directives_router
from fleetcore.apps.api.routes.health import router as health_router
from fleetcore.apps.api.routes.installations import router as installations_router
from fleetcore.apps.api.routes.signals import router as signals_router
from fleetcore.core.errors import FleetError
from fleetcore.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="fleetcore ops API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(FleetError, fleet_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Health stays unversioned for load balancer probes.
    app.include_router(health_router)
    app.include_router(signals_router, prefix=f"/{API_VERSION}")
    app.include_router(directives_router, prefix=f"/{API_VERSION}")
    app.include_router(installations_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
