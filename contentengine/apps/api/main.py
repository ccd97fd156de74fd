from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from contentengine.apps.api.errors import (
    content_engine_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from contentengine.apps.api.response import API_VERSION
from contentengine.apps.api.routes.alerts import router as alerts_router
from contentengine.apps.api.routes.audit import router as audit_router
from contentengine.apps.api.routes.content_jobs import router as content_jobs_router
from contentengine.apps.api.routes.health import router as health_router
from contentengine.apps.api.routes.hydrate_all import router as hydrate_all_router
from contentengine.apps.api.routes.promotion import router as promotion_router
from contentengine.apps.api.routes.regeneration import router as regeneration_router
from contentengine.apps.api.routes.system_settings import router as system_settings_router
from contentengine.core.errors import ContentEngineError
from contentengine.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="ContentEngine Admin API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(ContentEngineError, content_engine_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (
        health_router,
        content_jobs_router,
        hydrate_all_router,
        regeneration_router,
        promotion_router,
        alerts_router,
        audit_router,
        system_settings_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
