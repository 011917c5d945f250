"""API Routes Package."""

from api.routes import health, sap

__all__ = [
    "health",
    "sap",
]
