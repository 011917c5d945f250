"""SAP OData HTTP Client.

Low-level HTTP client for SAP S/4HANA OData v2 calls.
Handles basic authentication, per-call timeouts, error translation and the
SAP request log. One call is one round trip: there are no retries here, a
failed call is reported to the caller as a typed exception.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp
from multidict import CIMultiDict

from core.audit.request_log import RequestLog, SapRequestLogEntry
from core.observability.logging import CorrelationContext, get_logger

logger = get_logger(__name__)

SALES_ORDER_SERVICE = "API_SALES_ORDER_SRV"
DELIVERY_SERVICE = "API_OUTBOUND_DELIVERY_SRV"
ODATA_PATH = "/sap/opu/odata/sap"

ERROR_TEXT_LIMIT = 500


# =============================================================================
# Errors
# =============================================================================

class SapError(Exception):
    """Base exception for SAP call failures."""
    kind = "protocol"

    def __init__(
        self,
        message: str,
        endpoint: str = "",
        method: str = "",
        request_payload: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.endpoint = endpoint
        self.method = method
        self.request_payload = request_payload

    @property
    def status_code(self) -> int:
        return 0

    def to_record(self) -> Dict[str, Any]:
        """Error as persisted on a failed step."""
        return {
            "type": self.kind,
            "code": None,
            "message": self.message,
            "statusCode": self.status_code,
            "raw": None,
        }


class SapTransportError(SapError):
    """No response: connection error or timeout."""
    kind = "transport"


class SapSessionError(SapError):
    """Anti-forgery token or session cookies could not be obtained."""
    kind = "session"


class SapApiError(SapError):
    """SAP answered with a non-2xx status or an unreadable body."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        response_body: str = "",
        endpoint: str = "",
        method: str = "",
        request_payload: Any = None,
    ):
        super().__init__(message, endpoint, method, request_payload)
        self._status_code = status_code
        self.response_body = response_body
        details = extract_sap_error(response_body)
        self.error_code: Optional[str] = details.get("code")
        self.error_message: Optional[str] = details.get("message")

    @property
    def status_code(self) -> int:
        return self._status_code

    def to_record(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "code": self.error_code,
            "message": self.error_message or self.message,
            "statusCode": self.status_code,
            "raw": self.response_body[:ERROR_TEXT_LIMIT] if self.response_body else None,
        }


class SapAuthenticationError(SapApiError):
    """Authentication failed (401/403)."""
    pass


class SapNotFoundError(SapApiError):
    """Resource not found (404)."""
    pass


class SapPreconditionFailedError(SapApiError):
    """Conditional write rejected (412). The entity changed after the tag was read."""
    kind = "concurrency"


def extract_sap_error(response_text: Optional[str]) -> Dict[str, Optional[str]]:
    """Extract error code and message from a SAP response body.

    Understands the OData error envelope (``error.code``,
    ``error.message.value``) and flat ``{code, message}`` bodies; anything
    else falls back to the raw text truncated to 500 characters.
    """
    if not response_text:
        return {"code": None, "message": None}
    try:
        body = json.loads(response_text)
    except ValueError:
        return {"code": None, "message": response_text[:ERROR_TEXT_LIMIT]}

    if not isinstance(body, dict):
        return {"code": None, "message": response_text[:ERROR_TEXT_LIMIT]}

    error = body.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, dict):
            message = message.get("value")
        return {"code": error.get("code"), "message": message}

    return {
        "code": body.get("code"),
        "message": body.get("message") or response_text[:ERROR_TEXT_LIMIT],
    }


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class SapApiConfig:
    """Configuration for the SAP API client."""
    base_url: str
    sales_order_service: str = SALES_ORDER_SERVICE
    delivery_service: str = DELIVERY_SERVICE
    read_timeout: float = 15.0
    create_timeout: float = 20.0
    write_timeout: float = 30.0

    @property
    def host_url(self) -> str:
        """Base URL without trailing slash and without any OData path."""
        return self.base_url.rstrip("/").split(ODATA_PATH)[0]

    def service_url(self, service: str) -> str:
        return f"{self.host_url}{ODATA_PATH}/{service}"

    def sales_order_url(self, path: str) -> str:
        return f"{self.service_url(self.sales_order_service)}/{path}"

    def delivery_url(self, path: str, version: Optional[str] = None) -> str:
        service = self.service_url(self.delivery_service)
        if version:
            service = f"{service};v={version}"
        return f"{service}/{path}"

    def custom_url(self, path: str) -> str:
        """URL of a custom ICF service under ``/sap/bc``."""
        return f"{self.host_url}/sap/bc/{path.lstrip('/')}"


def odata_payload(body: Any) -> Any:
    """OData v2 payload: ``body["d"]`` when present, else the body."""
    if isinstance(body, dict) and "d" in body:
        return body["d"]
    return body


@dataclass
class SapResponse:
    """One SAP HTTP response, fully read."""
    status: int
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    text: str = ""
    body: Any = None
    duration_ms: int = 0
    cookies: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def data(self) -> Any:
        return odata_payload(self.body)


# =============================================================================
# Client
# =============================================================================

class SapApiClient:
    """HTTP client for SAP OData services.

    Provides:
    - Basic-authenticated calls
    - Per-call timeouts
    - Typed errors (no retries)
    - SAP request log recording

    The aiohttp cookie jar is disabled: the only cookies sent are the session
    cookies a caller passes explicitly in a ``Cookie`` header.

    Usage:
        async with SapApiClient(config, username, password) as client:
            response = await client.request("GET", url, operation="fetch_sales_order")
    """

    def __init__(
        self,
        config: SapApiConfig,
        username: str,
        password: str,
        request_log: Optional[RequestLog] = None,
    ):
        self.config = config
        self._auth = aiohttp.BasicAuth(username, password)
        self._request_log = request_log
        self._session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Open the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar())

    async def disconnect(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "SapApiClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        context: Optional[CorrelationContext] = None,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        timeout: Optional[float] = None,
        raise_for_status: bool = True,
    ) -> SapResponse:
        """Make one SAP call.

        Args:
            method: HTTP method
            url: Complete URL
            operation: Operation name for logs and the request log
            context: Correlation context of the calling run
            headers: Extra request headers (CSRF token, cookies, If-Match)
            json_body: Request body, serialised as JSON
            timeout: Total timeout in seconds (defaults to the read timeout)
            raise_for_status: If False, non-2xx responses are returned

        Returns:
            SapResponse

        Raises:
            SapTransportError: Connection failure or timeout
            SapAuthenticationError: 401/403
            SapNotFoundError: 404
            SapPreconditionFailedError: 412
            SapApiError: Other non-2xx status or unreadable body
        """
        if self._session is None:
            await self.connect()

        ctx = (context or CorrelationContext()).merge(operation=operation)
        request_headers = {"Authorization": self._auth.encode(), "Accept": "application/json"}
        request_headers.update(headers or {})
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.config.read_timeout)

        logger.debug(f"SAP {method} {url}", context=ctx)
        started = time.monotonic()

        try:
            async with self._session.request(
                method,
                url,
                headers=request_headers,
                json=json_body,
                timeout=client_timeout,
            ) as resp:
                text = await resp.text()
                response = SapResponse(
                    status=resp.status,
                    headers=CIMultiDict(resp.headers),
                    text=text,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    cookies={name: morsel.value for name, morsel in resp.cookies.items()},
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            reason = str(e) or type(e).__name__
            logger.error(
                f"SAP {method} failed without response: {reason}",
                context=ctx,
                extra_fields={"endpoint": url, "duration_ms": duration_ms},
            )
            self._record(
                ctx, method, url, request_headers, json_body,
                response_payload=None, status=0, success=False,
                error_code="NETWORK_ERROR", error_message=reason, duration_ms=duration_ms,
            )
            raise SapTransportError(
                f"{operation} failed: {reason}",
                endpoint=url,
                method=method,
                request_payload=json_body,
            ) from e

        logger.info(
            f"SAP {method} {operation} -> {response.status} ({response.duration_ms}ms)",
            context=ctx,
            extra_fields={"status": response.status, "duration_ms": response.duration_ms},
        )

        parse_error = None
        if response.text:
            try:
                response.body = json.loads(response.text)
            except ValueError as e:
                parse_error = e

        details = extract_sap_error(response.text) if not response.ok else {}
        self._record(
            ctx, method, url, request_headers, json_body,
            response_payload=response.data if response.body is not None else response.text[:2000] or None,
            status=response.status,
            success=response.ok,
            error_code=details.get("code"),
            error_message=details.get("message"),
            duration_ms=response.duration_ms,
        )

        if not raise_for_status:
            return response

        if not response.ok:
            raise self._error_for(response, operation, method, url, json_body)

        if parse_error is not None:
            raise SapApiError(
                f"{operation} returned an unreadable body",
                status_code=response.status,
                response_body=response.text,
                endpoint=url,
                method=method,
                request_payload=json_body,
            )

        return response

    def _error_for(
        self,
        response: SapResponse,
        operation: str,
        method: str,
        url: str,
        payload: Any,
    ) -> SapApiError:
        status = response.status
        if status in (401, 403):
            error_class = SapAuthenticationError
        elif status == 404:
            error_class = SapNotFoundError
        elif status == 412:
            error_class = SapPreconditionFailedError
        else:
            error_class = SapApiError

        return error_class(
            f"{operation} failed: {status} - {response.text[:ERROR_TEXT_LIMIT]}",
            status_code=status,
            response_body=response.text,
            endpoint=url,
            method=method,
            request_payload=payload,
        )

    def _record(
        self,
        ctx: CorrelationContext,
        method: str,
        url: str,
        headers: Dict[str, str],
        payload: Any,
        *,
        response_payload: Any,
        status: int,
        success: bool,
        error_code: Optional[str],
        error_message: Optional[str],
        duration_ms: int,
    ) -> None:
        if self._request_log is None:
            return
        entry = SapRequestLogEntry(
            execution_id=ctx.execution_id,
            run_id=ctx.run_id,
            operation=ctx.operation or "",
            http_method=method,
            endpoint=url,
            request_headers=headers,
            request_payload=payload,
            response_payload=response_payload,
            response_status=status,
            success=success,
            error_code=error_code,
            error_message=error_message,
            duration_ms=duration_ms,
        )
        self._request_log.record(entry)
