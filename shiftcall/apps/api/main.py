from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from shiftcall.apps.api.errors import (
    http_exception_handler,
    shiftcall_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from shiftcall.apps.api.response import API_VERSION
from shiftcall.apps.api.routes.campaigns import router as campaigns_router
from shiftcall.apps.api.routes.credits import router as credits_router
from shiftcall.apps.api.routes.health import router as health_router
from shiftcall.apps.api.routes.receipts import router as receipts_router
from shiftcall.apps.api.routes.responses import router as responses_router
from shiftcall.apps.api.routes.timeline import router as timeline_router
from shiftcall.core.clock import TimeProvider, utc_now
from shiftcall.core.config import Settings, get_settings
from shiftcall.core.errors import ShiftcallError
from shiftcall.core.logging import configure_logging
from shiftcall.providers.channels.base import ChannelSet
from shiftcall.providers.channels.factory import get_channels


def create_app(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    channels: ChannelSet | None = None,
    settings: Settings | None = None,
    time_provider: TimeProvider | None = None,
) -> FastAPI:
    configure_logging()
    app = FastAPI(title="Shiftcall Delivery API")

    if session_factory is None:
        # Import lazily so tests that inject a factory never build the production engine.
        from shiftcall.persistence.db import SessionLocal

        session_factory = SessionLocal
    resolved_settings = settings or get_settings()
    app.state.session_factory = session_factory
    app.state.settings = resolved_settings
    app.state.channels = channels or get_channels(resolved_settings)
    app.state.time_provider = time_provider or utc_now

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(ShiftcallError)
    async def _shiftcall_exception_handler(request: Request, exc: ShiftcallError):
        return await shiftcall_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    for router in (
        campaigns_router,
        receipts_router,
        responses_router,
        timeline_router,
        credits_router,
        health_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, include_in_schema=False)
    return app


app = create_app()
