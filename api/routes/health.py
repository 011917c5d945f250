"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Dict, List

from fastapi import APIRouter, Request
from pydantic import BaseModel

from core import __version__


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    flow_backend: str
    sap_domains: List[str]
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint."""
    services = request.app.state.services
    domains = services.credential_resolver.domains()
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        flow_backend=services.settings.flow_backend,
        sap_domains=domains,
        services={
            "api": "up",
            "storage": "sqlite" if services.settings.db_path else "memory",
            "sap": "configured" if domains else "unconfigured",
        }
    )
