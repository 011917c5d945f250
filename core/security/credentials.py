"""SAP credential resolution.

The orchestrator receives credentials through ``CredentialResolver`` and does
not know how they are stored. ``StaticCredentialResolver`` serves
deployments configured from a JSON file or from ``SAP_*`` environment
variables:

    [
        {
            "domain": "qas",
            "display_name": "S/4 QAS",
            "base_url": "https://sap-qas.example.com",
            "username": "RFC_USER",
            "password": "...",
            "capabilities": {"delivery": true, "billing": true, "nfe": false}
        }
    ]
"""

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError


class CredentialsNotFoundError(Exception):
    """No usable credentials for the requested domain."""

    def __init__(self, message: str, domain: Optional[str] = None):
        super().__init__(message)
        self.domain = domain


class SapCapabilities(BaseModel):
    """SAP APIs available on a tenant."""
    model_config = ConfigDict(frozen=True)

    sales_order: bool = True
    delivery: bool = True
    billing: bool = False
    nfe: bool = False


class SapCredentials(BaseModel):
    """Resolved connection data of one SAP tenant."""
    model_config = ConfigDict(frozen=True)

    domain: str
    display_name: Optional[str] = None
    base_url: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: SecretStr
    capabilities: SapCapabilities = Field(default_factory=SapCapabilities)

    def public_dict(self) -> Dict[str, object]:
        """Credentials without the password, for responses and logs."""
        return self.model_dump(mode="json", exclude={"password"})


class CredentialResolver(ABC):
    """Abstract credential source."""

    @abstractmethod
    def resolve(self, domain: Optional[str] = None) -> SapCredentials:
        """Credentials for ``domain`` (None = default tenant).

        Raises:
            CredentialsNotFoundError: Unknown domain or incomplete credentials
        """
        pass

    def domains(self) -> List[str]:
        """Configured tenant domains."""
        return []


class StaticCredentialResolver(CredentialResolver):
    """Resolver over a fixed list of credentials. The first one is the default."""

    def __init__(self, credentials: Iterable[SapCredentials]):
        self._credentials: List[SapCredentials] = list(credentials)

    def resolve(self, domain: Optional[str] = None) -> SapCredentials:
        for credentials in self._credentials:
            if domain is None or credentials.domain == domain:
                return credentials
        suffix = f" for domain {domain}" if domain else ""
        raise CredentialsNotFoundError(f"SAP credentials not found{suffix}", domain)

    def domains(self) -> List[str]:
        return [c.domain for c in self._credentials]

    @classmethod
    def from_file(cls, path: Path) -> "StaticCredentialResolver":
        """Load a JSON list (or ``{"credentials": [...]}``) of credentials."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("credentials", [])
        try:
            return cls(SapCredentials.model_validate(entry) for entry in data)
        except ValidationError as e:
            raise CredentialsNotFoundError(f"Incomplete SAP credentials in {path}: {e}") from e

    @classmethod
    def from_env(cls) -> "StaticCredentialResolver":
        """Single tenant from ``SAP_BASE_URL``, ``SAP_USERNAME``, ``SAP_PASSWORD``.

        Optional: ``SAP_DOMAIN`` (default "default"), ``SAP_HAS_DELIVERY_API``,
        ``SAP_HAS_BILLING_API``, ``SAP_HAS_NFE_API``.
        """
        base_url = os.getenv("SAP_BASE_URL")
        username = os.getenv("SAP_USERNAME")
        password = os.getenv("SAP_PASSWORD")
        if not base_url or not username or not password:
            return cls([])

        def flag(name: str, default: bool) -> bool:
            value = os.getenv(name)
            if value is None:
                return default
            return value.strip().lower() in ("1", "true", "yes")

        return cls([
            SapCredentials(
                domain=os.getenv("SAP_DOMAIN", "default"),
                display_name=os.getenv("SAP_DISPLAY_NAME"),
                base_url=base_url,
                username=username,
                password=password,
                capabilities=SapCapabilities(
                    delivery=flag("SAP_HAS_DELIVERY_API", True),
                    billing=flag("SAP_HAS_BILLING_API", False),
                    nfe=flag("SAP_HAS_NFE_API", False),
                ),
            )
        ])
