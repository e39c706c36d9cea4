"""
FastAPI application entry point for the tenant entitlement engine.

The plan catalog is loaded once at start-up; an invalid catalog stops the
process. One EntitlementService is built per process and shared by all
routes through app.state.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes import plans
from src.api.routes import tenants
from src.database.session import create_tables, dispose_engine, get_engine, get_session_factory
from src.entitlements.loader import get_plan_catalog
from src.entitlements.service import EntitlementService

# Configure structured logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting entitlement API")

    # Raises CatalogConfigError on an invalid catalog
    catalog = get_plan_catalog()
    logger.info("Plan catalog loaded", extra={
        "plans": [p.id for p in catalog.all_ordered_by_rank()],
    })

    app.state.entitlement_service = None
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error(
            "DATABASE_URL is not set. Tenant endpoints will return 503."
        )
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else database_url.split("://")[0]
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

        create_tables(get_engine())
        app.state.entitlement_service = EntitlementService(
            get_session_factory(), catalog=catalog
        )

    yield

    # Shutdown
    logger.info("Shutting down entitlement API")
    dispose_engine()


# Create FastAPI app
app = FastAPI(
    title="Tenant Entitlement API",
    description="Subscription plans, feature gates and usage limits for multi-tenant apps",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware (configure for your frontend domain)
cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(plans.router)
app.include_router(tenants.router)


@app.get("/health", tags=["health"])
async def health(request: Request):
    """Liveness probe; reports whether the tenant store is configured."""
    return {
        "status": "ok",
        "database_configured": getattr(request.app.state, "database_configured", False),
    }


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "tenant_id": request.path_params.get("tenant_id", "unknown"),
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
