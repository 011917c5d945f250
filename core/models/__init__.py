"""Core data models."""

from core.models.reference import ReferenceCapabilities, ReferenceDocument

__all__ = [
    "ReferenceCapabilities",
    "ReferenceDocument",
]
