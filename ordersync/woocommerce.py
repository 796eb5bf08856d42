"""
Async HTTP client for the WooCommerce REST API (wc/v3).

Features:
- Connection pooling with httpx
- Basic auth from consumer key/secret
- Attempt-scaled timeouts (retries get a longer timeout)
- Failure classification: timeout / network / malformed-response / http-error
- Retry of transient failures via the shared RetryPolicy
- Request correlation IDs for tracing
"""
import base64
import json as jsonlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ordersync.config import APIConfig, config
from ordersync.exceptions import (
    UpstreamError,
    UpstreamHTTPError,
    UpstreamMalformedError,
    UpstreamNetworkError,
    UpstreamTimeoutError,
    UpstreamUnreachableError,
)
from ordersync.observability import get_logger, get_correlation_id, Timer
from ordersync.resilience import RetryPolicy, retry_with_backoff

logger = get_logger(__name__)

_HTML_MARKERS = ("<!doctype", "<html")


@dataclass
class APIResponse:
    """Decoded API response plus the pagination headers WooCommerce sends."""
    data: Any
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> Optional[int]:
        return _header_int(self.headers, "x-wp-total")

    @property
    def total_pages(self) -> Optional[int]:
        return _header_int(self.headers, "x-wp-totalpages")


def _header_int(headers: Dict[str, str], name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _looks_like_html(body: str) -> bool:
    return body.lstrip()[:20].lower().startswith(_HTML_MARKERS)


class WooCommerceClient:
    """
    Async client for the WooCommerce REST API.

    Usage:
        async with WooCommerceClient() as client:
            response = await client.get_orders({"status": "any", "page": 1})

        # Or with manual lifecycle:
        client = WooCommerceClient()
        await client.connect()
        try:
            order = await client.get_order(501)
        finally:
            await client.close()
    """

    def __init__(
        self,
        api_config: APIConfig = None,
        retry_policy: RetryPolicy = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        """
        Initialize WooCommerce client.

        Args:
            api_config: API settings (defaults to config.api)
            retry_policy: Policy for transient failures (built from api_config)
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests
        """
        self.api_config = api_config or config.api
        self.base_url = self.api_config.base_url
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.api_config.max_attempts,
            base_delay=self.api_config.retry_base_delay,
            max_delay=self.api_config.retry_max_delay,
            jitter=self.api_config.retry_jitter,
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.api_config.store_url:
            raise ValueError("WOOCOMMERCE_URL is required")

    @property
    def headers(self) -> Dict[str, str]:
        """Request headers with auth."""
        credentials = f"{self.api_config.consumer_key}:{self.api_config.consumer_secret}"
        token = base64.b64encode(credentials.encode()).decode()
        return {
            "Authorization": f"Basic {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def timeout_for(self, attempt: int) -> float:
        """Baseline timeout on the first attempt, the longer one on retries."""
        if attempt <= 1:
            return self.api_config.request_timeout
        return self.api_config.retry_timeout

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.api_config.request_timeout,
                transport=self._transport,
                limits=httpx.Limits(
                    max_keepalive_connections=10,
                    max_connections=20,
                )
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "WooCommerceClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> APIResponse:
        """
        Make an API request, retrying transient failures.

        Raises:
            UpstreamTimeoutError / UpstreamNetworkError: once retries are exhausted
            UpstreamMalformedError: 2xx with an unusable body (never retried)
            UpstreamHTTPError: non-2xx response (never retried)
        """
        return await retry_with_backoff(
            self.send,
            method, endpoint, params, json,
            policy=policy or self.retry_policy,
            pass_attempt=True,
        )

    async def send(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        attempt: int = 1,
    ) -> APIResponse:
        """Execute a single HTTP request (called by the retry wrapper)."""
        if not self._client:
            await self.connect()

        url = f"{self.base_url}/{endpoint}"
        timeout = self.timeout_for(attempt)

        request_headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        try:
            with Timer(f"woocommerce {method} {endpoint}", logger):
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json,
                    headers=request_headers if request_headers else None,
                    timeout=timeout,
                )
        except httpx.TimeoutException as e:
            logger.error(
                f"Request timeout: {method} {endpoint}",
                extra={"endpoint": endpoint, "timeout": timeout, "attempt": attempt}
            )
            raise UpstreamTimeoutError(
                f"Request timeout after {timeout}s",
                details=f"{method} {endpoint}",
                endpoint=endpoint,
                timeout=timeout,
            ) from e
        except httpx.RequestError as e:
            logger.error(
                f"Request failed: {method} {endpoint} - {e}",
                extra={"endpoint": endpoint, "error": str(e), "attempt": attempt}
            )
            raise UpstreamNetworkError(
                "Connection failed",
                details=str(e) or type(e).__name__,
                endpoint=endpoint,
            ) from e

        return self._decode(method, endpoint, response)

    def _decode(self, method: str, endpoint: str, response: httpx.Response) -> APIResponse:
        headers = {key.lower(): value for key, value in response.headers.items()}

        if not response.is_success:
            error_text = response.text[:500]
            logger.error(
                f"API error {response.status_code}: {error_text}",
                extra={"endpoint": endpoint, "status_code": response.status_code}
            )
            raise UpstreamHTTPError(
                f"API returned {response.status_code}",
                details=error_text,
                endpoint=endpoint,
                status_code=response.status_code,
            )

        if method.upper() == "HEAD" or not response.content:
            return APIResponse(data=None, status_code=response.status_code, headers=headers)

        content_type = headers.get("content-type", "")
        body = response.text

        if content_type and "json" not in content_type.lower():
            raise self._malformed(endpoint, "Unexpected content type", content_type, body)

        if not content_type and _looks_like_html(body):
            raise self._malformed(endpoint, "HTML page returned instead of JSON", content_type, body)

        try:
            data = jsonlib.loads(body)
        except ValueError as e:
            raise self._malformed(endpoint, f"Invalid JSON: {e}", content_type, body) from e

        return APIResponse(data=data, status_code=response.status_code, headers=headers)

    def _malformed(self, endpoint: str, reason: str, content_type: str, body: str) -> UpstreamMalformedError:
        snippet = body[:200]
        logger.error(
            f"Malformed response from {endpoint}: {reason}",
            extra={"endpoint": endpoint, "content_type": content_type}
        )
        return UpstreamMalformedError(
            "Malformed response",
            details=reason,
            endpoint=endpoint,
            content_type=content_type or None,
            snippet=snippet,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # ORDER METHODS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_orders(
        self,
        params: Optional[Dict[str, Any]] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> APIResponse:
        """
        Get one page of orders.

        Args:
            params: Query params (page, per_page, status, after, modified_after, ...)

        Returns:
            APIResponse whose data is the list of order payloads
        """
        return await self.request("GET", "orders", params=params, policy=policy)

    async def probe_total(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """
        Header-only request for the X-WP-Total count of a collection.

        Returns None when the count is unavailable; never raises for that.
        """
        probe_params = dict(params or {})
        probe_params.update({"per_page": 1, "page": 1})
        try:
            response = await self.request("HEAD", endpoint, params=probe_params)
        except UpstreamError as e:
            logger.info(f"Total count probe failed, crawling without a bound: {e}")
            return None
        return response.total

    async def probe_orders_total(self, params: Optional[Dict[str, Any]] = None) -> Optional[int]:
        return await self.probe_total("orders", params)

    async def get_order(self, order_id: int) -> Dict[str, Any]:
        """Get single order by ID."""
        response = await self.request("GET", f"orders/{order_id}")
        return response.data

    async def update_order(self, order_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        """Update an existing order."""
        response = await self.request("PUT", f"orders/{order_id}", json=data)
        return response.data

    async def add_order_note(self, order_id: int, note: str) -> Dict[str, Any]:
        """Attach a private note to an order."""
        response = await self.request(
            "POST", f"orders/{order_id}/notes", json={"note": note, "customer_note": False}
        )
        return response.data

    # ═══════════════════════════════════════════════════════════════════════════
    # PRODUCT METHODS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_product(self, product_id: int) -> Dict[str, Any]:
        """Get single product by ID."""
        response = await self.request("GET", f"products/{product_id}")
        return response.data

    async def get_product_image(self, product_id: int) -> Optional[str]:
        """First image URL of a product, or None."""
        product = await self.get_product(product_id)
        if not isinstance(product, dict):
            return None
        images = product.get("images")
        if isinstance(images, list) and images and isinstance(images[0], dict):
            return images[0].get("src") or None
        return None

    # ═══════════════════════════════════════════════════════════════════════════
    # HEALTH
    # ═══════════════════════════════════════════════════════════════════════════

    async def test_connection(self) -> bool:
        """
        Cheap request proving the API is reachable and credentials work.

        Raises:
            UpstreamUnreachableError: if the request fails for any reason
        """
        try:
            await self.request("GET", "orders", params={"per_page": 1})
        except UpstreamError as e:
            raise UpstreamUnreachableError(
                "WooCommerce API unreachable",
                details=str(e),
                endpoint="orders",
            ) from e
        return True
