# woocatalog/sync/transfer.py
# ============================
# Cross-shop transfer: push already-loaded local products into a target shop.
#
# Per product: unattached records (no shop/remote id, e.g. a CSV-only master
# product) are always created; attached ones update the first SKU match in
# the target shop, else create. Each success is mirrored into the target
# shop's namespace from the remote response. Failures are collected and
# never stop the remaining products.
# ============================
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from woocatalog.db import get_sessionmaker
from woocatalog.models.catalog import Product, Variation
from woocatalog.models.enums import ProductStatus, ProductType, StockStatus, SyncAction
from woocatalog.models.master import MasterProduct, ShopListing
from woocatalog.models.shop import Shop
from woocatalog.store import catalog_store as store
from woocatalog.woo.payloads import product_values, slugify, transfer_payload
from woocatalog.woo.woocommerce import WooCommerceError, client_for_shop

logger = logging.getLogger("uvicorn.error")


@dataclass
class TransferProduct:
    """A local record to push. Shape mirrors the Product columns transfer needs."""
    name: str
    sku: Optional[str] = None
    product_id: Optional[int] = None          # local mirror row, when attached
    master_product_id: Optional[int] = None   # CSV-only origin
    shop_id: Optional[int] = None
    remote_id: Optional[int] = None
    slug: str = ""
    type: ProductType = ProductType.SIMPLE
    status: ProductStatus = ProductStatus.PUBLISH
    description: Optional[str] = None
    short_description: Optional[str] = None
    regular_price: Optional[str] = None
    sale_price: Optional[str] = None
    stock_status: StockStatus = StockStatus.INSTOCK
    stock_quantity: Optional[int] = None
    manage_stock: bool = False
    categories: List[Dict[str, Any]] = field(default_factory=list)
    tags: List[Dict[str, Any]] = field(default_factory=list)
    images: List[Dict[str, Any]] = field(default_factory=list)
    attributes: List[Dict[str, Any]] = field(default_factory=list)
    selected_variation_ids: Optional[List[int]] = None

    @property
    def ref(self) -> Optional[int]:
        return self.product_id if self.product_id is not None else self.master_product_id

    @property
    def unattached(self) -> bool:
        return self.shop_id is None or self.remote_id is None

    @classmethod
    def from_product(cls, p: Product, selected_variation_ids: Optional[List[int]] = None) -> "TransferProduct":
        return cls(
            name=p.name,
            sku=p.sku,
            product_id=p.id,
            shop_id=p.shop_id,
            remote_id=p.remote_id,
            slug=p.slug or "",
            type=p.type,
            status=p.status,
            description=p.description,
            short_description=p.short_description,
            regular_price=p.regular_price,
            sale_price=p.sale_price,
            stock_status=p.stock_status,
            stock_quantity=p.stock_quantity,
            manage_stock=bool(p.manage_stock),
            categories=list(p.categories or []),
            tags=list(p.tags or []),
            images=list(p.images or []),
            attributes=list(p.attributes or []),
            selected_variation_ids=selected_variation_ids,
        )

    @classmethod
    def from_master(cls, m: MasterProduct, listing: Optional[ShopListing] = None) -> "TransferProduct":
        rec = cls(name=m.name, sku=m.sku, master_product_id=m.id, description=m.description)
        if listing is not None:
            rec.regular_price = listing.price
            if listing.category:
                rec.categories = [{"name": listing.category, "slug": slugify(listing.category)}]
            if listing.stock_status is not None:
                rec.stock_status = listing.stock_status
            if listing.stock_quantity is not None:
                rec.manage_stock = True
                rec.stock_quantity = listing.stock_quantity
        return rec


@dataclass
class TransferResult:
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


# --- Loading ---

async def load_transfer_products(
    product_ids: Iterable[int] = (),
    master_product_ids: Iterable[int] = (),
    *,
    source_shop_id: int | None = None,
    selected: Dict[int, List[int]] | None = None,
    sm=None,
) -> List[TransferProduct]:
    """Load local products / master products by id, keeping the requested order."""
    sm = sm or get_sessionmaker()
    selected = selected or {}
    out: List[TransferProduct] = []
    async with sm() as session:
        pids = [int(i) for i in product_ids]
        if pids:
            res = await session.execute(select(Product).where(Product.id.in_(pids)))
            by_id = {p.id: p for p in res.scalars().all()}
            for pid in pids:
                if pid in by_id:
                    out.append(TransferProduct.from_product(by_id[pid], selected.get(pid)))
        mids = [int(i) for i in master_product_ids]
        if mids:
            res = await session.execute(select(MasterProduct).where(MasterProduct.id.in_(mids)))
            by_id = {m.id: m for m in res.scalars().all()}
            for mid in mids:
                if mid not in by_id:
                    continue
                listing = await store.get_listing(session, mid, source_shop_id) if source_shop_id else None
                out.append(TransferProduct.from_master(by_id[mid], listing))
    return out


async def _variations_for(sm, record: TransferProduct) -> List[Variation]:
    """Explicit selection on the record, else the stored selection, else all."""
    if record.product_id is None:
        return []
    async with sm() as session:
        if record.selected_variation_ids is not None:
            if not record.selected_variation_ids:
                return []
            res = await session.execute(
                select(Variation)
                .where(Variation.product_id == record.product_id, Variation.id.in_(record.selected_variation_ids))
                .order_by(Variation.id)
            )
            return list(res.scalars().all())
        chosen = await store.selected_variations(session, record.product_id)
        if chosen:
            return chosen
        return await store.list_variations(session, record.product_id)


def _error_message(e: Exception) -> str:
    if isinstance(e, WooCommerceError) and e.body:
        return f"{e}: {e.body[:200]}"
    return str(e) or type(e).__name__


# --- Engine ---

async def run_transfer(
    target_shop: Shop,
    products: Sequence[TransferProduct | Product],
    source_shop: Shop | None = None,
    *,
    client=None,
    sm=None,
) -> TransferResult:
    sm = sm or get_sessionmaker()
    client = client or client_for_shop(target_shop)
    result = TransferResult()
    transferred_source_ids: List[int] = []

    for raw in products:
        record = raw if isinstance(raw, TransferProduct) else TransferProduct.from_product(raw)
        try:
            variations = await _variations_for(sm, record)
            payload = transfer_payload(record, variations)

            remote_id = None
            if not record.unattached and record.sku:
                matches = await client.find_products_by_sku(record.sku)
                remote_id = matches[0].get("id") if matches else None

            if remote_id is not None:
                item = await client.update_product(int(remote_id), payload)
                action = "updated"
            else:
                item = await client.create_product(payload)
                action = "created"

            new_remote = int(item["id"])
            async with sm.begin() as session:
                mirror = await store.upsert_product(session, target_shop.id, new_remote, product_values(item))
                await store.add_sync_log(
                    session,
                    target_shop.id,
                    SyncAction.TRANSFERRED,
                    message=f"{action.capitalize()} '{record.name}' as product {new_remote}"
                            f" with {len(variations)} variation(s)",
                    product_id=mirror.id,
                )
                mirror_id = mirror.id
        except (WooCommerceError, httpx.TransportError, httpx.InvalidURL, SQLAlchemyError, KeyError, TypeError, ValueError) as e:
            message = _error_message(e)
            logger.warning("[TRANSFER] shop %s: '%s' failed: %s", target_shop.id, record.name, message)
            result.errors.append({"product_id": record.ref, "name": record.name, "error": message})
            await _log_failure(sm, target_shop.id, record, message)
            continue

        logger.info("[TRANSFER] shop %s: %s '%s' (remote %s)", target_shop.id, action, record.name, new_remote)
        result.results.append({
            "product_id": record.ref,
            "name": record.name,
            "action": action,
            "remote_id": new_remote,
            "target_product_id": mirror_id,
            "variations": len(variations),
        })
        if record.product_id is not None and record.shop_id is not None:
            transferred_source_ids.append(record.product_id)

    if source_shop is not None and source_shop.id != target_shop.id and transferred_source_ids:
        await _mark_source_handled(sm, source_shop.id, transferred_source_ids)
    return result


async def _log_failure(sm, shop_id: int, record: TransferProduct, message: str) -> None:
    try:
        async with sm.begin() as session:
            await store.add_sync_log(session, shop_id, SyncAction.FAILED, message=f"'{record.name}': {message}")
    except SQLAlchemyError as e:
        logger.error("[TRANSFER] could not write failure log for '%s': %s", record.name, e)


async def _mark_source_handled(sm, source_shop_id: int, product_ids: List[int]) -> None:
    # best-effort: the remote writes already happened
    try:
        async with sm.begin() as session:
            res = await session.execute(
                select(Product.id).where(Product.id.in_(product_ids), Product.shop_id == source_shop_id)
            )
            touched = await store.touch_products(session, res.scalars().all())
        logger.info("[TRANSFER] stamped %d source product(s) in shop %s", touched, source_shop_id)
    except SQLAlchemyError as e:
        logger.error("[TRANSFER] could not stamp source products in shop %s: %s", source_shop_id, e)
