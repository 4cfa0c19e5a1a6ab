from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from destinyrag.apps.api.errors import (
    destiny_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from destinyrag.apps.api.response import API_VERSION
from destinyrag.apps.api.routes.health import router as health_router
from destinyrag.apps.api.routes.ops import router as ops_router
from destinyrag.apps.api.routes.qa import router as qa_router
from destinyrag.apps.api.routes.reports import router as reports_router
from destinyrag.core.config import get_settings
from destinyrag.core.errors import DestinyError
from destinyrag.core.logging import configure_logging
from destinyrag.services.llm_client import LLMClient, build_llm_client


logger = logging.getLogger(__name__)


def create_app(llm_client: LLMClient | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="destinyrag API", version=API_VERSION)
    # One LLM client per process, shared by every request through app.state.
    app.state.llm_client = llm_client or build_llm_client(settings)

    @app.middleware("http")
    async def request_log_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000.0,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(DestinyError, destiny_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (health_router, ops_router, qa_router, reports_router):
        app.include_router(router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
