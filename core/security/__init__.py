"""Security module - SAP credential resolution."""

from core.security.credentials import (
    CredentialResolver,
    CredentialsNotFoundError,
    SapCapabilities,
    SapCredentials,
    StaticCredentialResolver,
)

__all__ = [
    "CredentialResolver",
    "CredentialsNotFoundError",
    "SapCapabilities",
    "SapCredentials",
    "StaticCredentialResolver",
]
