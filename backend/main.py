"""
FastAPI application entry point for the Ferrodesk entitlement engine.

Page navigations under the guarded prefix pass through AccessGuardMiddleware.
API routes authenticate with a bearer JWT.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from ferrodesk.api.routes import health
from ferrodesk.api.routes import entitlements
from ferrodesk.api.routes import session
from ferrodesk.api.routes import navigation
from ferrodesk.api.routes import admin_entitlements
from ferrodesk.database.session import get_db_engine, get_session_factory, init_schema
from ferrodesk.entitlements.engine import EntitlementEngine
from ferrodesk.entitlements.middleware import AccessGuardMiddleware

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _build_engine_from_env() -> Optional[EntitlementEngine]:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error(
            "DATABASE_URL is not set. Entitlement endpoints will return 503."
        )
        return None

    # Mask credentials for safe logging
    masked = database_url.split("@")[-1] if "@" in database_url else "(no credentials)"
    logger.info("DATABASE_URL configured", extra={"host_db": masked})

    init_schema(get_db_engine())
    return EntitlementEngine.from_env(get_session_factory())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Ferrodesk entitlement API")

    if app.state.engine is None:
        app.state.engine = _build_engine_from_env()

    engine = app.state.engine
    if engine is not None:
        if not engine.identity_provider.configured:
            logger.warning("AUTH_JWT_SECRET not configured. Protected endpoints will return 401.")
        await engine.start()

    yield

    # Shutdown
    logger.info("Shutting down Ferrodesk entitlement API")
    if engine is not None:
        await engine.stop()


def create_app(engine: Optional[EntitlementEngine] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        engine: Pre-built engine (tests). When None the lifespan builds one
            from DATABASE_URL, REDIS_URL and AUTH_JWT_* settings.
    """
    app = FastAPI(
        title="Ferrodesk Entitlements API",
        description="Subscription entitlement reconciliation for the scrap-metal back office",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(AccessGuardMiddleware)

    # Include health route (bypasses authentication)
    app.include_router(health.router)

    app.include_router(entitlements.router)
    app.include_router(session.router)
    app.include_router(navigation.router)
    app.include_router(navigation.pages_router)
    app.include_router(admin_entitlements.router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions with proper logging."""
        logger.error(
            "Unhandled exception",
            extra={
                "error": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path,
            },
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": "An unexpected error occurred",
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
