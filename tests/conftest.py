import asyncio
import copy
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from woocatalog.db import build_engine, create_all
from woocatalog.models.shop import Shop
from woocatalog.woo.woocommerce import PageResult, WooCommerceError


@pytest.fixture
def run_db(tmp_path):
    """
    run_db(fn) -> fn(sm) executed inside asyncio.run against a fresh SQLite file.
    Several calls in one test share the same database file.
    """
    dsn = f"sqlite+aiosqlite:///{tmp_path / 'catalog-test.db'}"

    def run(fn):
        async def _main():
            eng = build_engine(dsn)
            try:
                await create_all(eng)
                sm = async_sessionmaker(eng, expire_on_commit=False)
                return await fn(sm)
            finally:
                await eng.dispose()
        return asyncio.run(_main())

    return run


async def make_shop(sm, name="Shop A", base_url="https://a.example.com") -> Shop:
    async with sm.begin() as session:
        shop = Shop(name=name, base_url=base_url, consumer_key="ck_test", consumer_secret="cs_test")
        session.add(shop)
        await session.flush()
    return shop


async def no_sleep(_seconds: float) -> None:
    return None


def woo_product(pid: int, **over) -> Dict[str, Any]:
    item = {
        "id": pid,
        "name": f"Product {pid}",
        "slug": f"product-{pid}",
        "sku": f"SKU-{pid}",
        "type": "simple",
        "status": "publish",
        "price": "10.00",
        "regular_price": "10.00",
        "sale_price": "",
        "stock_status": "instock",
        "stock_quantity": None,
        "manage_stock": False,
        "description": "",
        "short_description": "",
        "categories": [{"id": 9, "name": "Tools", "slug": "tools"}],
        "tags": [],
        "images": [],
        "attributes": [],
        "variations": [],
        "date_created_gmt": "2024-01-02T03:04:05",
        "date_modified_gmt": "2024-01-02T03:04:05",
    }
    item.update(over)
    return item


class FakeWooClient:
    """In-memory stand-in for WooCommerceClient with the same coroutine surface."""

    def __init__(self, products: Optional[List[Dict[str, Any]]] = None, *, online: bool = True,
                 report_total: bool = True):
        self.products: Dict[int, Dict[str, Any]] = {p["id"]: copy.deepcopy(p) for p in products or []}
        self.variations: Dict[tuple, Dict[str, Any]] = {}
        self.online = online
        self.report_total = report_total
        self.next_id = 1000
        self.calls: List[tuple] = []
        self.reject_names: set = set()
        self.fail_list_pages: set = set()

    def _new_id(self) -> int:
        self.next_id += 1
        return self.next_id

    def add_variation(self, product_id: int, vid: int, **over) -> None:
        item = {"id": vid, "sku": f"V-{vid}", "status": "publish", "regular_price": "5.00", "price": "5.00",
                "stock_status": "instock", "attributes": [{"name": "Size", "option": "M"}], "image": None}
        item.update(over)
        self.variations[(product_id, vid)] = item
        self.products[product_id].setdefault("variations", []).append(vid)

    async def test_connection(self) -> bool:
        self.calls.append(("test_connection",))
        return self.online

    async def list_products(self, page=1, per_page=10, status=None, sku=None, offset=None) -> PageResult:
        self.calls.append(("list_products", page, per_page, offset))
        if page in self.fail_list_pages:
            raise WooCommerceError("WooCommerce API error: 502 Bad Gateway (GET /products)", status_code=502)
        items = [p for _, p in sorted(self.products.items())]
        if status:
            items = [p for p in items if p.get("status") == status]
        if sku:
            items = [p for p in items if p.get("sku") == sku]
        start = offset if offset is not None else (page - 1) * per_page
        chunk = items[start:start + per_page]
        total = len(items) if self.report_total else 0
        pages = -(-len(items) // per_page) if self.report_total else 0
        return PageResult(items=copy.deepcopy(chunk), total_pages=pages, total_count=total)

    async def find_products_by_sku(self, sku):
        self.calls.append(("find_products_by_sku", sku))
        return [copy.deepcopy(p) for _, p in sorted(self.products.items()) if p.get("sku") == sku]

    async def get_product(self, product_id):
        return copy.deepcopy(self.products[product_id])

    async def create_product(self, payload):
        self.calls.append(("create_product", copy.deepcopy(payload)))
        if payload.get("name") in self.reject_names:
            raise WooCommerceError("WooCommerce API error: 400 Bad Request (POST /products)",
                                   status_code=400, body='{"code":"woocommerce_rest_invalid"}')
        pid = self._new_id()
        item = woo_product(pid, categories=[], sku="", price="", regular_price="")
        item.update(copy.deepcopy(payload))
        item["id"] = pid
        item["variations"] = []
        item["price"] = item.get("sale_price") or item.get("regular_price") or ""
        self.products[pid] = item
        return copy.deepcopy(item)

    async def update_product(self, product_id, payload):
        self.calls.append(("update_product", product_id, copy.deepcopy(payload)))
        if product_id not in self.products:
            raise WooCommerceError("WooCommerce API error: 404 Not Found", status_code=404)
        if payload.get("name") in self.reject_names:
            raise WooCommerceError("WooCommerce API error: 400 Bad Request", status_code=400)
        item = self.products[product_id]
        item.update({k: v for k, v in copy.deepcopy(payload).items() if k != "variations"})
        item["price"] = item.get("sale_price") or item.get("regular_price") or ""
        return copy.deepcopy(item)

    async def delete_product(self, product_id, force=False):
        return self.products.pop(product_id)

    async def get_variation(self, product_id, variation_id):
        self.calls.append(("get_variation", product_id, variation_id))
        try:
            return copy.deepcopy(self.variations[(product_id, variation_id)])
        except KeyError:
            raise WooCommerceError("WooCommerce API error: 404 Not Found", status_code=404)

    async def create_variation(self, product_id, payload):
        self.calls.append(("create_variation", product_id, copy.deepcopy(payload)))
        if product_id not in self.products:
            raise WooCommerceError("WooCommerce API error: 404 Not Found", status_code=404)
        vid = self._new_id()
        self.add_variation(product_id, vid, **copy.deepcopy(payload))
        return copy.deepcopy(self.variations[(product_id, vid)])

    async def update_variation(self, product_id, variation_id, payload):
        self.calls.append(("update_variation", product_id, variation_id, copy.deepcopy(payload)))
        item = self.variations[(product_id, variation_id)]
        item.update(copy.deepcopy(payload))
        return copy.deepcopy(item)

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]
