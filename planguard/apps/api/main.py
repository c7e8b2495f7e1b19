from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from planguard.apps.api.errors import (
    http_exception_handler,
    planguard_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from planguard.apps.api.rate_limit import enforce_api_rate_limit
from planguard.apps.api.response import API_VERSION
from planguard.apps.api.routes.audit import router as audit_router
from planguard.apps.api.routes.billing import router as billing_router
from planguard.apps.api.routes.health import router as health_router
from planguard.apps.api.routes.subscription import router as subscription_router
from planguard.apps.api.routes.usage import router as usage_router
from planguard.core.config import get_settings
from planguard.core.errors import PlanguardError
from planguard.core.logging import configure_logging, set_correlation_id


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=f"{get_settings().app_name} API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        set_correlation_id(request_id)
        start = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            set_correlation_id(None)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PlanguardError, planguard_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Mount versioned v1 API routes; health and provider webhooks skip tenant rate limits.
    tenant_limited = [Depends(enforce_api_rate_limit)]
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(billing_router, prefix=f"/{API_VERSION}")
    app.include_router(subscription_router, prefix=f"/{API_VERSION}", dependencies=tenant_limited)
    app.include_router(usage_router, prefix=f"/{API_VERSION}", dependencies=tenant_limited)
    app.include_router(audit_router, prefix=f"/{API_VERSION}", dependencies=tenant_limited)
    return app


app = create_app()
