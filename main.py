from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from typing import Optional
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from menugen import __version__
from menugen.container import ServiceContainer, build_container, shutdown_container
from menugen.core.config import Settings
from menugen.core.logging import setup_logging
from menugen.routers import menu

# Multipart overhead on top of the image itself
REQUEST_SIZE_SLACK = 1024 * 1024


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, max_size: int):
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_size:
            return JSONResponse(
                status_code=413,
                content={"detail": {"code": "VALIDATION", "message": "Request entity too large"}}
            )
        return await call_next(request)


setup_logging()
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the API. A prebuilt ``container`` skips environment checks and production wiring."""
    settings = settings or (container.settings if container else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application startup and shutdown"""
        logger.info("Starting menugen API server...")

        if container is None:
            missing_vars = settings.missing_required()
            if missing_vars:
                logger.error(f"Missing required environment variables: {', '.join(missing_vars)}")
                raise RuntimeError(f"Missing required environment variables: {', '.join(missing_vars)}")
            logger.info("All required environment variables are present")
            app.state.container = build_container(settings)
        else:
            app.state.container = container

        yield

        logger.info("Shutting down menugen API server...")
        await shutdown_container(app.state.container)

    app = FastAPI(
        title="menugen API",
        description="Turns a photographed menu into sections, dishes, prices, descriptions and images",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(RequestSizeLimitMiddleware, max_size=settings.max_upload_bytes + REQUEST_SIZE_SLACK)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(menu.router, prefix="/api/menu", tags=["Menu"])

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Welcome to menugen API",
            "version": __version__,
            "docs": "/docs"
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint for monitoring"""
        try:
            await request.app.state.container.store.get_menu("00000000-0000-0000-0000-000000000000")
            db_status = "healthy"
        except Exception as e:
            logger.error(f"Database health check failed: {str(e)}")
            db_status = "unhealthy"

        return {
            "status": "healthy" if db_status == "healthy" else "degraded",
            "services": {
                "api": "healthy",
                "database": db_status
            },
            "running_pipelines": len(request.app.state.container.supervisor.running_keys)
        }

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": {"code": "INTERNAL", "message": "Internal server error"}}
        )

    return app


app = create_app()

# This is important - it needs to be at module level for uvicorn to find it
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENVIRONMENT", "production") == "development"
    )
