"""SAP session and concurrency tokens.

Every mutating OData call needs the anti-forgery token (``x-csrf-token``)
and the session cookies it was issued with. One ``SapSession`` is acquired
per flow invocation and reused for all its writes. Conditional writes
(picking, PGI) additionally send a fresh entity tag in ``If-Match``.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from connectors.sap.sap_client import (
    ODATA_PATH,
    SALES_ORDER_SERVICE,
    SapApiClient,
    SapSessionError,
)
from core.observability.logging import CorrelationContext, get_logger

logger = get_logger(__name__)

CSRF_HEADER = "x-csrf-token"
CSRF_FETCH = "Fetch"


def build_sap_base_url(base_url: str, service: str = SALES_ORDER_SERVICE) -> str:
    """``https://host/`` -> ``https://host/sap/opu/odata/sap/<service>``."""
    return f"{base_url.rstrip('/')}{ODATA_PATH}/{service}"


def is_sap_session_cookie(name: str) -> bool:
    return (
        name.startswith("SAP_")
        or name.startswith("MYSAP")
        or "SESSIONID" in name
        or name == "sap-usercontext"
    )


def filter_sap_cookies(cookies: Dict[str, str]) -> Dict[str, str]:
    """Keep only the cookies SAP needs to recognise the session."""
    return {name: value for name, value in cookies.items() if is_sap_session_cookie(name)}


def build_cookie_header(cookies: Dict[str, str]) -> str:
    return "; ".join(f"{name}={value}" for name, value in cookies.items())


@dataclass(frozen=True)
class SapSession:
    """Anti-forgery token plus the session cookies it belongs to."""
    csrf_token: str
    cookie_header: str

    def write_headers(self, if_match: Optional[str] = None) -> Dict[str, str]:
        """Headers for a mutating call in this session."""
        headers = {
            CSRF_HEADER: self.csrf_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Cookie": self.cookie_header,
        }
        if if_match:
            headers["If-Match"] = if_match
        return headers


async def acquire_session(
    client: SapApiClient,
    context: Optional[CorrelationContext] = None,
) -> SapSession:
    """Fetch a CSRF token and session cookies with one GET.

    Any status is accepted: SAP issues the token even when the requested entity
    does not exist.

    Raises:
        SapSessionError: No token or no session cookie was returned
        SapTransportError: The token request got no response
    """
    url = client.config.sales_order_url("A_SalesOrder('1')")
    response = await client.request(
        "GET",
        url,
        operation="fetch_csrf_token",
        context=context,
        headers={CSRF_HEADER: CSRF_FETCH, "Cache-Control": "no-cache"},
        raise_for_status=False,
    )

    token = response.headers.get(CSRF_HEADER)
    cookies = filter_sap_cookies(response.cookies)

    if not token or token.lower() == "required" or not cookies:
        logger.error(
            "Failed to obtain CSRF token or session cookies",
            context=context,
            extra_fields={
                "status": response.status,
                "csrf_token_present": bool(token),
                "cookie_count": len(cookies),
            },
        )
        raise SapSessionError(
            f"Could not obtain CSRF token and session cookies (status {response.status})",
            endpoint=url,
            method="GET",
        )

    logger.info(
        "CSRF session acquired",
        context=context,
        extra_fields={"cookie_count": len(cookies)},
    )
    return SapSession(csrf_token=token, cookie_header=build_cookie_header(cookies))


async def refresh_entity_tag(
    fetcher: Callable[[str], Awaitable[Any]],
    resource_id: str,
) -> Optional[str]:
    """Re-fetch a resource and return its current ``ETag``.

    ``fetcher`` returns an object with an ``etag`` attribute (see
    ``DeliverySnapshot``). Called immediately before each conditional write.
    """
    snapshot = await fetcher(resource_id)
    return getattr(snapshot, "etag", None)
