#==========================================================================================
# woocatalog/woo/woocommerce.py
# WooCommerce REST API client.
# One immutable handle per shop (see client_for_shop); every call is retried with
# exponential backoff through woocatalog.woo.retry.retry_async.
#==========================================================================================
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from woocatalog.config import settings
from woocatalog.woo.retry import retry_async

logger = logging.getLogger("uvicorn.error")

# WordPress answers 400 with one of these codes when `page` is past the last page
_INVALID_PAGE_CODES = {"rest_post_invalid_page_number", "woocommerce_rest_invalid_page", "rest_invalid_page_number"}


class WooCommerceError(Exception):
    """Non-2xx reply from the WooCommerce REST API."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None,
                 method: str | None = None, url: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.method = method
        self.url = url


class ShopConnectionError(Exception):
    """The shop did not answer the pre-flight connection test."""


@dataclass
class PageResult:
    items: List[Dict[str, Any]] = field(default_factory=list)
    total_pages: int = 0
    total_count: int = 0


def _int_header(resp: httpx.Response, name: str, default: int) -> int:
    raw = resp.headers.get(name)
    try:
        return int(raw) if raw is not None else default
    except ValueError:
        return default


def _error_code(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data.get("code") if isinstance(data, dict) else None


class WooCommerceClient:
    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        *,
        version: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        verify: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        version = version or settings.WC_API_VERSION
        self.api_root = f"{(base_url or '').rstrip('/')}/wp-json/wc/{version}"
        self.timeout = settings.WC_TIMEOUT if timeout is None else timeout
        self.max_attempts = settings.WC_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.backoff_base = settings.WC_BACKOFF_BASE if backoff_base is None else backoff_base
        self.verify = settings.WC_VERIFY_SSL if verify is None else verify
        self._transport = transport
        token = base64.b64encode(f"{consumer_key}:{consumer_secret}".encode("utf-8")).decode("ascii")
        self._headers = {
            "Authorization": f"Basic {token}",
            "Accept": "application/json",
        }

    @property
    def auth_header(self) -> str:
        return self._headers["Authorization"]

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            verify=self.verify,
            headers=self._headers,
            transport=self._transport,
        )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Dict[str, Any] | None = None,
        json: Any = None,
        allow_invalid_page: bool = False,
    ) -> Optional[httpx.Response]:
        """Single HTTP attempt. Raises WooCommerceError on non-2xx."""
        url = f"{self.api_root}{path}"
        async with self._http() as client:
            resp = await client.request(method, url, params=params, json=json)
        if resp.is_success:
            return resp
        if allow_invalid_page and resp.status_code == 400 and _error_code(resp) in _INVALID_PAGE_CODES:
            return None
        raise WooCommerceError(
            f"WooCommerce API error: {resp.status_code} {resp.reason_phrase} ({method} {path})",
            status_code=resp.status_code,
            body=resp.text[:500],
            method=method,
            url=url,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Optional[httpx.Response]:
        return await retry_async(
            lambda: self._send(method, path, **kwargs),
            attempts=self.max_attempts,
            base_delay=self.backoff_base,
            retry_on=(WooCommerceError, httpx.TransportError),
            label=f"[WC] {method} {path}",
        )

    async def _json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        resp = await self._request(method, path, **kwargs)
        data = resp.json() if resp is not None and resp.content else {}
        return data if isinstance(data, dict) else {"data": data}

    # ---- Connection ----

    async def test_connection(self) -> bool:
        """One lightweight GET; never raises."""
        try:
            await self._send("GET", "/system_status")
            return True
        except (WooCommerceError, httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.warning("[WC] connection test failed for %s: %s", self.api_root, e)
            return False

    # ---- Products ----

    async def list_products(
        self,
        page: int = 1,
        per_page: int = 10,
        status: str | None = None,
        sku: str | None = None,
        offset: int | None = None,
    ) -> PageResult:
        params: Dict[str, Any] = {"page": page, "per_page": per_page}
        if status:
            params["status"] = status
        if sku:
            params["sku"] = sku
        if offset is not None:
            params["offset"] = offset
        resp = await self._request("GET", "/products", params=params, allow_invalid_page=True)
        if resp is None:
            return PageResult(items=[], total_pages=0, total_count=0)
        items = resp.json() if resp.content else []
        if not isinstance(items, list):
            raise WooCommerceError(f"Unexpected Woo response for /products: {str(items)[:200]}")
        return PageResult(
            items=items,
            total_pages=_int_header(resp, "X-WP-TotalPages", 1),
            total_count=_int_header(resp, "X-WP-Total", 0),
        )

    async def find_products_by_sku(self, sku: str) -> List[Dict[str, Any]]:
        result = await self.list_products(page=1, per_page=10, sku=sku)
        return result.items

    async def get_product(self, product_id: int) -> Dict[str, Any]:
        return await self._json("GET", f"/products/{product_id}")

    async def create_product(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("POST", "/products", json=payload)

    async def update_product(self, product_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("PUT", f"/products/{product_id}", json=payload)

    async def delete_product(self, product_id: int, force: bool = False) -> Dict[str, Any]:
        return await self._json("DELETE", f"/products/{product_id}", params={"force": "true" if force else "false"})

    # ---- Variations ----

    async def get_variation(self, product_id: int, variation_id: int) -> Dict[str, Any]:
        return await self._json("GET", f"/products/{product_id}/variations/{variation_id}")

    async def create_variation(self, product_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("POST", f"/products/{product_id}/variations", json=payload)

    async def update_variation(self, product_id: int, variation_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._json("PUT", f"/products/{product_id}/variations/{variation_id}", json=payload)


def client_for_shop(shop, **overrides) -> WooCommerceClient:
    """Build the authenticated client for one shop (any object with base_url/consumer_key/consumer_secret)."""
    return WooCommerceClient(shop.base_url, shop.consumer_key, shop.consumer_secret, **overrides)
