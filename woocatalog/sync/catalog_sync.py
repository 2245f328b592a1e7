# woocatalog/sync/catalog_sync.py
# ============================
# Store-wide pull: WooCommerce -> local mirror (+ master product listings)
#
# Pages through published products with offset = items processed so far,
# capped at `max_products` per run. Idempotent: every write is an upsert on
# (shop_id, remote_id). A failing page ends the run early but keeps what was
# synced; the tracking batch still completes.
# ============================
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
from sqlalchemy.exc import SQLAlchemyError

from woocatalog.config import settings
from woocatalog.db import get_sessionmaker
from woocatalog.imports import state
from woocatalog.models.enums import ImportErrorType, ImportStatus, ImportType, ProductStatus, ProductType, SyncAction
from woocatalog.models.shop import Shop
from woocatalog.store import catalog_store as store
from woocatalog.woo.payloads import first_category_name, product_values, variation_values
from woocatalog.woo.woocommerce import ShopConnectionError, WooCommerceError, client_for_shop

logger = logging.getLogger("uvicorn.error")

Sleep = Callable[[float], Awaitable[None]]

# shops with a sync running in this process
_ACTIVE_SHOPS: Set[int] = set()


class SyncAlreadyRunning(RuntimeError):
    pass


@dataclass
class SyncResult:
    batch_id: Optional[int] = None
    processed: int = 0
    created: int = 0
    updated: int = 0
    variations_created: int = 0
    errors: int = 0
    has_more: bool = False
    total_count: Optional[int] = None
    page_error: Optional[str] = None
    cancelled: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_syncing(shop_id: int) -> bool:
    return shop_id in _ACTIVE_SHOPS


@contextlib.contextmanager
def _exclusive(shop_id: int):
    if shop_id in _ACTIVE_SHOPS:
        raise SyncAlreadyRunning(f"A sync is already running for shop {shop_id}")
    _ACTIVE_SHOPS.add(shop_id)
    try:
        yield
    finally:
        _ACTIVE_SHOPS.discard(shop_id)


async def _sync_variations(sm, shop: Shop, client, product_id: int, remote_id: int, variation_ids: List[int]) -> int:
    """Best effort: a variation that cannot be fetched or stored is skipped."""
    created = 0
    for vid in variation_ids:
        try:
            item = await client.get_variation(remote_id, vid)
            async with sm.begin() as session:
                await store.upsert_variation(
                    session, shop.id, product_id, int(item.get("id") or vid), remote_id, variation_values(item)
                )
            created += 1
        except (WooCommerceError, httpx.TransportError, httpx.InvalidURL, SQLAlchemyError, ValueError) as e:
            logger.warning("[SYNC] shop %s: variation %s of product %s skipped: %s", shop.id, vid, remote_id, e)
    return created


async def _sync_item(sm, shop: Shop, client, item: Dict[str, Any]) -> tuple[bool, int]:
    """Mirror one remote product. Returns (created, variations_created)."""
    remote_id = int(item["id"])
    values = product_values(item)
    async with sm.begin() as session:
        existing = await store.find_product_by_remote(session, shop.id, remote_id)
        product = await store.upsert_product(session, shop.id, remote_id, values)
        await store.upsert_master_listing(
            session,
            shop.id,
            sku=values["sku"] or f"woo-{remote_id}",
            name=values["name"],
            description=values["description"],
            price=values["price"] or values["regular_price"],
            category=first_category_name(values["categories"]),
            stock_quantity=values["stock_quantity"],
            stock_status=values["stock_status"],
            is_active=values["status"] == ProductStatus.PUBLISH,
        )
        created = existing is None
        await store.add_sync_log(
            session,
            shop.id,
            SyncAction.CREATED if created else SyncAction.UPDATED,
            message=f"Synced from WooCommerce product {remote_id}",
            product_id=product.id,
        )
        product_id = product.id

    variations = 0
    if created and values["type"] == ProductType.VARIABLE and values["variations"]:
        variations = await _sync_variations(sm, shop, client, product_id, remote_id, values["variations"])
    return created, variations


async def run_sync(
    shop: Shop,
    batch_size: int | None = None,
    max_products: int | None = None,
    *,
    client=None,
    sm=None,
    page_delay: float | None = None,
    sleep: Sleep = asyncio.sleep,
) -> SyncResult:
    """
    Pull up to `max_products` published products of `shop` into the mirror.

    Raises ShopConnectionError before anything is written when the shop does
    not answer, and SyncAlreadyRunning if this process is already syncing it.
    """
    sm = sm or get_sessionmaker()
    client = client or client_for_shop(shop)
    batch_size = max(1, batch_size or settings.SYNC_BATCH_SIZE)
    max_products = max(1, max_products or settings.SYNC_MAX_PRODUCTS)
    page_delay = settings.SYNC_PAGE_DELAY if page_delay is None else page_delay

    with _exclusive(shop.id):
        if not await client.test_connection():
            async with sm.begin() as session:
                await store.mark_shop_liveness(session, shop.id, online=False)
            raise ShopConnectionError(f"Could not connect to shop '{shop.name}'")

        batch = await state.create_batch(shop.id, ImportType.SYNC, f"sync:{shop.name}", sm=sm)
        await state.start_batch(batch.id, sm=sm)
        result = SyncResult(batch_id=batch.id)
        try:
            await _run_pages(sm, shop, client, result, batch_size, max_products, page_delay, sleep)
        except Exception as e:
            logger.exception("[SYNC] shop %s: sync aborted", shop.id)
            await state.fail_batch(batch.id, f"Sync aborted: {e}", sm=sm)
            raise

        async with sm.begin() as session:
            await store.mark_shop_liveness(session, shop.id, online=True)

    logger.info(
        "[SYNC] shop %s: processed=%d created=%d updated=%d variations=%d errors=%d has_more=%s",
        shop.id, result.processed, result.created, result.updated,
        result.variations_created, result.errors, result.has_more,
    )
    return result


async def _run_pages(sm, shop: Shop, client, result: SyncResult, batch_size: int, max_products: int,
                     page_delay: float, sleep: Sleep) -> None:
    batch_id = result.batch_id
    errors: List[Dict[str, Any]] = []
    max_errors = settings.IMPORT_MAX_BATCH_ERRORS
    page = 1
    last_page_full = False
    known_total = 0

    while result.processed < max_products:
        if page > 1 and page_delay > 0:
            await sleep(page_delay)
        if await state.current_status(batch_id, sm=sm) != ImportStatus.PROCESSING:
            logger.info("[SYNC] shop %s: batch %s no longer processing; stopping", shop.id, batch_id)
            result.cancelled = True
            return

        per_page = min(batch_size, max_products - result.processed)
        try:
            page_result = await client.list_products(
                page=page, per_page=per_page, status=ProductStatus.PUBLISH.value, offset=result.processed
            )
        except (WooCommerceError, httpx.TransportError, httpx.InvalidURL, ValueError) as e:
            kind = ImportErrorType.NETWORK if isinstance(e, (httpx.TransportError, httpx.InvalidURL)) else ImportErrorType.WOOCOMMERCE
            result.page_error = f"Page {page} could not be fetched: {e}"
            logger.warning("[SYNC] shop %s: %s; keeping %d synced item(s)", shop.id, result.page_error, result.processed)
            errors.append(state.error_entry(result.page_error, kind=kind.value))
            break

        if page == 1:
            result.total_count = page_result.total_count or None
            if result.total_count:
                known_total = min(result.total_count, max_products)
                await state.set_total_rows(batch_id, known_total, sm=sm)

        items = page_result.items[:per_page]
        if not items:
            last_page_full = False
            break
        last_page_full = len(items) >= per_page

        for item in items:
            position = result.processed + 1
            try:
                created, variations = await _sync_item(sm, shop, client, item)
            except (SQLAlchemyError, KeyError, TypeError, ValueError) as e:
                kind = ImportErrorType.DATABASE if isinstance(e, SQLAlchemyError) else ImportErrorType.WOOCOMMERCE
                message = f"{type(e).__name__}: {e}"
                sku = (str(item.get("sku") or "") or None) if isinstance(item, dict) else None
                logger.warning("[SYNC] shop %s: item %d failed: %s", shop.id, position, message)
                async with sm.begin() as session:
                    await store.add_import_error(
                        session, batch_id, row_number=position, sku=sku, error_type=kind, message=message,
                        row_data={"id": item.get("id"), "sku": sku} if isinstance(item, dict) else None,
                    )
                result.errors += 1
                if len(errors) < max_errors:
                    errors.append(state.error_entry(message, row=position, sku=sku, kind=kind.value))
            else:
                if created:
                    result.created += 1
                else:
                    result.updated += 1
                result.variations_created += variations
            result.processed += 1

        if result.processed > known_total:
            # remote total unknown or stale
            known_total = result.processed
            await state.set_total_rows(batch_id, known_total, sm=sm)
        await state.record_progress(
            batch_id,
            processed=result.processed,
            successful=result.processed - result.errors,
            failed=result.errors,
            errors=errors,
            sm=sm,
        )
        page += 1

    if result.processed >= max_products:
        if result.total_count:
            result.has_more = result.total_count > result.processed
        else:
            result.has_more = last_page_full

    await state.complete_batch(
        batch_id,
        processed=result.processed,
        successful=result.processed - result.errors,
        failed=result.errors,
        errors=errors,
        sm=sm,
    )
