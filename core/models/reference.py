"""Reference document: the sales order a replication run copies."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ReferenceCapabilities(BaseModel):
    """Downstream documents the reference order is known to support.

    Informational: the tenant's ``SapCapabilities`` decide which steps run.
    """
    model_config = ConfigDict(frozen=True)

    contract: bool = False
    quotation: bool = False
    sales_order: bool = True
    delivery: bool = False
    invoice: bool = False
    fiscal_note: bool = False


class ReferenceDocument(BaseModel):
    """A resolved reference order.

    Attributes:
        order_id: SAP sales order number to replicate
        sap_domain: Tenant domain whose credentials are used (None = default)
        warehouse_code: Storage location override for every replica item
        description: Free text shown in listings
        capabilities: Supported downstream documents
    """
    model_config = ConfigDict(frozen=True)

    order_id: str = Field(..., min_length=1, description="Reference sales order number")
    sap_domain: Optional[str] = Field(None, description="SAP tenant domain")
    warehouse_code: Optional[str] = Field(None, description="Storage location override")
    description: Optional[str] = None
    capabilities: ReferenceCapabilities = Field(default_factory=ReferenceCapabilities)
