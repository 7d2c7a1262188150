# api/server.py
# ============================================================================
# STOREFRONT BACKEND — FASTAPI SERVER
# ============================================================================
# Orders, payments and cart endpoints with CORS, request ids and health check
# ============================================================================

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import ROUTERS
from config import Settings, settings as default_settings
from errors import (
    GatewayError,
    GatewayUnavailableError,
    OrderPersistenceError,
    StorageError,
    StorefrontError,
)
from services.cart_service import CartService
from services.order_service import OrderService
from services.order_state_machine import OrderStateMachine
from services.payment_gateway import KhaltiGateway
from storage import Storage, create_storage

VERSION = "1.0.0"


# ============================================================================
# STRUCTURED LOGGING SETUP
# ============================================================================

def configure_logging(settings: Settings):
    level = logging.DEBUG if settings.debug else logging.INFO
    renderer = structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger().bind(component="server")


# ============================================================================
# ERROR RESPONSES
# ============================================================================

def _error_body(exc: StorefrontError) -> dict:
    return {"success": False, "error": exc.message, "error_key": exc.error_key, **exc.details}


async def handle_storefront_error(request: Request, exc: StorefrontError) -> JSONResponse:
    if isinstance(exc, GatewayError):
        # Gateway rejections are passed through verbatim, tagged so clients
        # can tell them apart from our own 4xx answers
        logger.info("gateway_rejection_passed_through", status=exc.status_code)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.body,
            headers={"X-Error-Kind": exc.error_key},
        )

    body = _error_body(exc)
    if isinstance(exc, GatewayUnavailableError):
        body["reference"] = getattr(request.state, "request_id", None)
        body["hint"] = "lookup_payment_before_retry"
        logger.error("gateway_unavailable", operation=exc.operation, reason=exc.reason)
    elif isinstance(exc, StorageError):
        body["reference"] = getattr(request.state, "request_id", None)
        if isinstance(exc, OrderPersistenceError):
            body["hint"] = "fetch_by_pidx_before_retry"
            logger.error("order_persistence_failed", pidx=exc.pidx, reason=exc.reason)
        else:
            body["hint"] = "retry"
            logger.error("storage_error", error=exc.message)
    elif exc.status_code >= 500:
        logger.error("request_failed", error_key=exc.error_key, error=exc.message)
    else:
        logger.info("request_rejected", error_key=exc.error_key, error=exc.message,
                    status=exc.status_code)

    return JSONResponse(status_code=exc.status_code, content=body)


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid request",
            "error_key": "validation_error",
            "problems": problems,
        },
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "error_key": "internal_error",
            "reference": getattr(request.state, "request_id", None),
            "hint": "contact_support",
        },
    )


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    gateway: Optional[KhaltiGateway] = None,
) -> FastAPI:
    """
    Build the application with its services wired onto ``app.state``.

    Tests pass their own settings, a seeded MemoryStorage and a gateway on
    a mock transport; production reads everything from the environment.
    """
    settings = settings or default_settings
    storage = storage or create_storage(settings)
    gateway = gateway or KhaltiGateway(settings)
    started_at = datetime.now(timezone.utc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION, storage=storage.backend, env=settings.env)
        await storage.initialize()
        yield
        logger.info("server_stopping")
        await gateway.close()
        await storage.close()

    app = FastAPI(
        title="Storefront Orders & Cart API",
        description="Order creation, order lifecycle, Khalti payments and server cart",
        version=VERSION,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.storage = storage
    app.state.gateway = gateway
    app.state.order_service = OrderService(storage, settings, gateway)
    app.state.state_machine = OrderStateMachine(storage)
    app.state.cart_service = CartService(storage, settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Bind a request id for log correlation and add timing headers."""
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    app.add_exception_handler(StorefrontError, handle_storefront_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)

    for router in ROUTERS:
        app.include_router(router)

    @app.get("/health")
    async def health_check():
        uptime = (datetime.now(timezone.utc) - started_at).total_seconds()
        return {
            "status": "healthy",
            "version": VERSION,
            "storage": storage.backend,
            "uptime_seconds": uptime,
        }

    return app


configure_logging(default_settings)
app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        log_level="info",
    )
