from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from franchisecore.apps.api.errors import (
    franchise_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from franchisecore.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from franchisecore.apps.api.routes.aggregations import router as aggregations_router
from franchisecore.apps.api.routes.health import router as health_router
from franchisecore.apps.api.routes.hierarchy import router as hierarchy_router
from franchisecore.apps.api.routes.partitions import router as partitions_router
from franchisecore.apps.api.routes.permissions import router as permissions_router
from franchisecore.apps.api.routes.tenants import router as tenants_router
from franchisecore.core.errors import FranchiseCoreError
from franchisecore.core.logging import configure_logging
from franchisecore.services.telemetry import record_request


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="FranchiseCore API", version=API_VERSION, docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(FranchiseCoreError, franchise_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (
        health_router,
        hierarchy_router,
        permissions_router,
        aggregations_router,
        partitions_router,
        tenants_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="FranchiseCore API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    return app


app = create_app()
