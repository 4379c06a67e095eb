from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.errors import UpstreamError, detail_message, error_response
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import instrument_app, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system.started", extra={"status": "ok"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="NextCRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code="http_error",
        message=detail_message(exc.detail),
        details=exc.detail,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return error_response(request, status_code=400, code="validation_error", message="Invalid request", details=errors)


@app.exception_handler(UpstreamError)
async def upstream_exception_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    logger.warning("upstream.failed", extra={"error": exc.message, "status_code": exc.status_code})
    return error_response(
        request,
        status_code=exc.status_code,
        code="upstream_error",
        message=exc.message,
        details={"provider": exc.provider, "reason": exc.reason},
    )


@app.exception_handler(OperationalError)
async def database_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error("database.unavailable", extra={"error": str(exc.orig)})
    return error_response(
        request,
        status_code=503,
        code="database_unavailable",
        message="Database is temporarily unavailable",
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("http.unhandled_exception", exc_info=exc, extra={"path": request.url.path})
    details = None
    if get_settings().is_development:
        details = {"traceback": traceback.format_exception(type(exc), exc, exc.__traceback__)}
    return error_response(request, status_code=500, code="internal_error", message="Internal server error", details=details)


settings = get_settings()
if settings.otel_enabled:
    setup_otel("nextcrm-api", True)

instrument_app(app)
