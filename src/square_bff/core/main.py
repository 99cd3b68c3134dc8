"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.middleware.base import BaseHTTPMiddleware

from square_bff.api.v1 import auth
from square_bff.core.audit import configure_audit_logging
from square_bff.core.database import create_db_engine, create_session_factory, init_db
from square_bff.core.dependencies import get_settings
from square_bff.core.errors import SquareBffError
from square_bff.core.settings import SquareSettings
from square_bff.oauth.pkce import PKCEStateStore
from square_bff.plugins.square import create_square_router
from square_bff.storage.sql import SqlStateStore

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("api")


# Request tracing middleware
class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Request tracing middleware.

    Only the method, path and status are logged: query strings, headers and
    bodies carry authorization codes, tokens and signatures.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Any:
        logger.info("Request: %s %s", request.method, request.url.path)
        response = await call_next(request)
        logger.info(
            "Response status: %s %s -> %s", request.method, request.url.path, response.status_code
        )
        return response


async def handle_square_bff_error(request: Request, exc: Exception) -> JSONResponse:
    """Render a service error as ``{"error": code, "detail": message}``."""
    if not isinstance(exc, SquareBffError):
        raise exc
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.detail)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(
    settings: Optional[SquareSettings] = None, db_engine: Optional[Engine] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        settings (SquareSettings | None): Settings to run with. Read from the
            environment when omitted.
        db_engine (Engine | None): Database engine to use. Created from
            ``settings.database_url`` when omitted.
    """
    settings = settings or get_settings()
    db_engine = db_engine or create_db_engine(
        settings.database_url, settings.database_timeout_seconds
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Lifespan for the FastAPI application."""
        logger.info("Initializing database...")
        init_db(db_engine)
        configure_audit_logging(settings.audit_log_path)
        purged = PKCEStateStore(
            SqlStateStore(app.state.session_factory),
            ttl_seconds=settings.oauth_state_ttl_seconds,
        ).purge_expired()
        logger.info("Database initialized, %d expired OAuth states purged", purged)
        yield

    app = FastAPI(
        title="Square BFF API",
        description="OAuth token exchange and webhook ingestion for Square merchants",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_factory = create_session_factory(db_engine)

    # Add request tracing middleware
    app.add_middleware(RequestTracingMiddleware)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SquareBffError, handle_square_bff_error)

    # Include routers
    app.include_router(create_square_router(), prefix="/square")
    app.include_router(auth.router, prefix="/api/v1")

    @app.get("/")
    async def root() -> dict:
        """Root endpoint."""
        return {"message": "Welcome to the Square BFF API", "environment": settings.environment}

    return app


app = create_app()
