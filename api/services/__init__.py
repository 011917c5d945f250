"""API Services Package."""

from api.services.runtime import ApiServices, TemporalFlowLauncher, build_services

__all__ = [
    "ApiServices",
    "TemporalFlowLauncher",
    "build_services",
]
