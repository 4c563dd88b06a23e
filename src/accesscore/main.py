"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (Redis, database engine).
Middleware, CORS, exception handlers and routers are all registered here.

Services raise domain errors from accesscore.errors; the handler below
turns each one into its status code with a {"detail": ...} body, so no
route has to translate exceptions itself.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from accesscore import __version__
from accesscore.api import api_router
from accesscore.config import settings
from accesscore.errors import (
    AccessCoreError,
    AuthenticationError,
    MissingRequiredContextError,
)
from accesscore.middleware.rate_limit import RateLimitMiddleware
from accesscore.middleware.request_id import RequestIdMiddleware
from accesscore.middleware.security import SecurityHeadersMiddleware
from accesscore.redis_client import close_redis, init_redis

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "accesscore.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    try:
        await init_redis()
        logger.info("accesscore.redis_connected", url=settings.redis_url)
    except Exception as e:
        # Redis only backs rate limiting; run without it
        logger.warning("accesscore.redis_unavailable", error=str(e))

    yield

    logger.info("accesscore.shutdown")
    await close_redis()

    from accesscore.db.engine import engine
    await engine.dispose()


async def handle_domain_error(request: Request, exc: AccessCoreError) -> JSONResponse:
    body = {"detail": str(exc)}
    headers = None
    if isinstance(exc, MissingRequiredContextError):
        body["missing"] = exc.missing
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}
    if exc.status_code >= 500:
        logger.error("request.failed", error=str(exc), error_type=type(exc).__name__)
    else:
        logger.info(
            "request.rejected",
            status=exc.status_code,
            error_type=type(exc).__name__,
        )
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="AccessCore",
        description="Identity, multi-tenancy and access control",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Starlette runs middleware in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        default_rpm=settings.rate_limit_rpm,
        auth_rpm=settings.rate_limit_auth_rpm,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AccessCoreError, handle_domain_error)
    app.include_router(api_router)
    return app


# Default app instance (used by uvicorn: accesscore.main:app)
app = create_app()
