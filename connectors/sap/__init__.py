"""SAP S/4HANA connector.

- sap_client: aiohttp OData client and error taxonomy
- sap_auth: CSRF session and entity tag refresh
- sap_steps: one method per pipeline operation
- sap_payload: replica order payload
"""

from connectors.sap.sap_auth import (
    SapSession,
    acquire_session,
    build_cookie_header,
    build_sap_base_url,
    filter_sap_cookies,
    refresh_entity_tag,
)
from connectors.sap.sap_client import (
    SapApiClient,
    SapApiConfig,
    SapApiError,
    SapAuthenticationError,
    SapError,
    SapNotFoundError,
    SapPreconditionFailedError,
    SapResponse,
    SapSessionError,
    SapTransportError,
    extract_sap_error,
    odata_payload,
)
from connectors.sap.sap_payload import build_replica_payload
from connectors.sap.sap_steps import (
    ConnectionTestResult,
    DeliverySnapshot,
    SapStepClient,
    StepCall,
    format_billing_document,
)

__all__ = [
    "SapSession",
    "acquire_session",
    "build_cookie_header",
    "build_sap_base_url",
    "filter_sap_cookies",
    "refresh_entity_tag",
    "SapApiClient",
    "SapApiConfig",
    "SapApiError",
    "SapAuthenticationError",
    "SapError",
    "SapNotFoundError",
    "SapPreconditionFailedError",
    "SapResponse",
    "SapSessionError",
    "SapTransportError",
    "extract_sap_error",
    "odata_payload",
    "build_replica_payload",
    "ConnectionTestResult",
    "DeliverySnapshot",
    "SapStepClient",
    "StepCall",
    "format_billing_document",
]
