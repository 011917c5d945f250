"""FastAPI server for SAP order replication.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import health, sap
from api.services.runtime import ApiServices, build_services
from connectors.sap.sap_client import SapError
from core import __version__
from core.config import Settings
from core.observability.logging import configure_logging, get_logger
from core.security.credentials import CredentialsNotFoundError
from core.storage.executions import ExecutionNotFoundError
from core.workflow.base import ResumeError

logger = get_logger(__name__)


async def sap_error_handler(request: Request, exc: SapError) -> JSONResponse:
    logger.error(f"SAP call failed on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=502, content={"error": exc.to_record()})


async def credentials_error_handler(request: Request, exc: CredentialsNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc), "sap_domain": exc.domain})


async def execution_not_found_handler(request: Request, exc: ExecutionNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def resume_error_handler(request: Request, exc: ResumeError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def create_app(services: Optional[ApiServices] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Pre-built services; built from ``Settings.from_env()`` at
            startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        if services is None:
            settings = Settings.from_env()
            configure_logging(level=settings.logging_level, json_format=settings.log_json)
            app.state.services = build_services(settings)
        else:
            app.state.services = services
        logger.info(f"SAP replication API starting up (flow backend: {app.state.services.settings.flow_backend})")

        yield

        await app.state.services.flows.wait_idle()
        logger.info("SAP replication API shutting down")

    app = FastAPI(
        title="SAP Replication API",
        description="Replicates reference sales orders through the SAP delivery and billing pipeline and compares the replicas",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SapError, sap_error_handler)
    app.add_exception_handler(CredentialsNotFoundError, credentials_error_handler)
    app.add_exception_handler(ExecutionNotFoundError, execution_not_found_handler)
    app.add_exception_handler(ResumeError, resume_error_handler)

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(sap.router, prefix="/sap", tags=["SAP"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
