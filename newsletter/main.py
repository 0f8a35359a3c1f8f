"""
Newsletter Delivery Service - Main Application
FastAPI Entry Point with an optional embedded delivery worker
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
import structlog

from newsletter.config import settings
from newsletter.database import build_store, init_db
from newsletter.errors import NewsletterError, StoreFailure, Unauthenticated, status_code_for
from newsletter.middleware import install_request_id_middleware
from newsletter.routers import newsletters_router
from newsletter.scheduler import start_scheduler, stop_scheduler
from newsletter.services.monitoring import init_sentry, setup_logging
from newsletter.store.base import Store

# Structured Logging Setup
setup_logging()
logger = structlog.get_logger()

LOGIN_LOCATION = "/login"


async def handle_newsletter_error(request: Request, exc: NewsletterError):
    """Map the error taxonomy to client responses."""
    status_code = status_code_for(exc)

    if isinstance(exc, Unauthenticated):
        return RedirectResponse(LOGIN_LOCATION, status_code=status_code)

    if isinstance(exc, StoreFailure):
        logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(content={"detail": "Internal server error"}, status_code=status_code)

    logger.info("request_rejected", path=request.url.path, status_code=status_code, error=str(exc))
    return JSONResponse(content={"detail": str(exc)}, status_code=status_code)


def create_app(store: Optional[Store] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        store: Store to use; when None one is built at startup from DATABASE_URL
    """
    app = FastAPI(
        title="Newsletter Delivery Service",
        description="Idempotent newsletter publishing with outbox-based delivery",
        version="0.1.0",
        docs_url="/docs" if settings.environment == "development" else None,
        redoc_url="/redoc" if settings.environment == "development" else None,
    )
    app.state.store = store
    app.state.scheduler = None

    install_request_id_middleware(app)
    app.add_exception_handler(NewsletterError, handle_newsletter_error)

    # Register routers
    app.include_router(newsletters_router)

    @app.on_event("startup")
    async def startup_event():
        """Application Startup"""
        logger.info("startup", environment=settings.environment)

        if app.state.store is None:
            init_db()
            app.state.store = build_store()
            logger.info("store_initialized", store=type(app.state.store).__name__)

        app.state.scheduler = start_scheduler(app.state.store, settings.environment)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application Shutdown"""
        logger.info("shutdown")
        stop_scheduler(app.state.scheduler)

    @app.get("/health")
    async def health_check():
        """Health Check Endpoint"""
        scheduler = app.state.scheduler
        health_status = {
            "status": "healthy",
            "environment": settings.environment,
            "services": {
                "api": "running",
                "store": type(app.state.store).__name__ if app.state.store is not None else "not_initialized",
                "embedded_worker": "running" if scheduler is not None and scheduler.running else "disabled"
            }
        }
        return JSONResponse(content=health_status, status_code=200)

    return app


init_sentry()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "newsletter.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
