"""
Internet Banking API Application Factory
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .admin import router as admin_router
from .auth import router as auth_router
from .client import router as client_router
from .schemas import ErrorResponse
from .. import __version__
from ..config import BankConfig
from ..errors import (
    AuthError, AuthErrorCode, OperationTimeout, TxError, TxErrorCode, ValidationError
)
from ..logging_config import get_logger, log_action
from ..system import BankingSystem


AUTH_ERROR_STATUS = {
    AuthErrorCode.UNAVAILABLE: 503,
}

TX_ERROR_STATUS = {
    TxErrorCode.INSUFFICIENT_FUNDS: 402,
    TxErrorCode.INVALID_ACCOUNT: 400,
    TxErrorCode.DUPLICATE_KEY: 409,
    TxErrorCode.NOT_FOUND: 404,
    TxErrorCode.ALREADY_DECIDED: 409,
    TxErrorCode.INVALID_TRANSITION: 409,
    TxErrorCode.SETTLEMENT_FAILED: 409,
}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Cache-Control": "no-store",
}


def _error_response(status_code: int, error: str, message: str, details=None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=message, details=details or {}).model_dump(),
        headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map core exceptions to HTTP responses"""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        status_code = AUTH_ERROR_STATUS.get(exc.code, 401)
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        return _error_response(status_code, exc.code.value, exc.message, headers=headers)

    @app.exception_handler(TxError)
    async def tx_error_handler(request: Request, exc: TxError):
        return _error_response(TX_ERROR_STATUS.get(exc.code, 400), exc.code.value, exc.message, exc.details)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error_response(400, "validation_error", exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Malformed bodies get the same 400 shape as core validation errors
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
        return _error_response(400, "validation_error", f"{field}: {first.get('msg', 'invalid')}",
                               {"field": field, "message": first.get("msg", "invalid")})

    @app.exception_handler(OperationTimeout)
    async def timeout_handler(request: Request, exc: OperationTimeout):
        return _error_response(504, "timeout", exc.message)


def create_app(config: BankConfig, system: Optional[BankingSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        config: Process configuration
        system: Pre-built banking system (tests); built from ``config`` if omitted
    """
    owns_system = system is None
    system = system or BankingSystem(config)
    logger = get_logger("netbank.api")

    async def recovery_loop(interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(system.recover_stuck_approvals)
            except Exception:
                logger.exception("Stuck approval recovery failed")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Approvals interrupted by a previous process are settled before serving
        system.recover_stuck_approvals()
        recovery_task = None
        if config.recovery_interval_seconds > 0:
            recovery_task = asyncio.create_task(recovery_loop(config.recovery_interval_seconds))
        logger.info("API started")
        yield
        if recovery_task:
            recovery_task.cancel()
            try:
                await recovery_task
            except asyncio.CancelledError:
                pass
        if owns_system:
            system.close()
        logger.info("API stopped")

    app = FastAPI(
        title="Internet Banking API",
        description="Client transfers with administrator approval",
        version=__version__,
        docs_url=None if config.is_release else "/docs",
        redoc_url=None if config.is_release else "/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials="*" not in config.cors_origins,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    @app.middleware("http")
    async def request_logging(request: Request, call_next):
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Unhandled error on {request.method} {request.url.path} (request {request_id})")
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        log_action(
            logger, "info", f"{request.method} {request.url.path} {response.status_code}",
            action="http_request", resource=request.url.path,
            correlation_id=request_id,
            extra={'method': request.method, 'status': response.status_code,
                   'latency_ms': round(elapsed_ms, 2),
                   'client': request.client.host if request.client else None}
        )
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)

    app.include_router(auth_router, prefix="/api/v1/auth", tags=["Auth"])
    app.include_router(client_router, prefix="/api/v1/client", tags=["Client"])
    app.include_router(admin_router, prefix="/api/v1/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "netbank",
            "version": __version__
        }

    return app
