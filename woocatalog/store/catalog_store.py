# woocatalog/store/catalog_store.py
# ============================
# Catalog Store: keyed lookups and insert-on-conflict upserts over the
# local mirror. Functions take an AsyncSession and never commit; the
# caller owns the unit of work.
# ============================
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from woocatalog.db import utcnow
from woocatalog.models.catalog import Product, ProductShopVariant, Variation
from woocatalog.models.enums import ImportErrorType, ShopStatus, SyncAction
from woocatalog.models.imports import ImportErrorRecord
from woocatalog.models.master import MasterProduct, ShopListing
from woocatalog.models.shop import Shop
from woocatalog.models.sync_logs import ProductSyncLog

logger = logging.getLogger("uvicorn.error")

# never rewritten by an upsert
_KEY_COLUMNS = {"id", "shop_id", "remote_id", "created_at"}


def _insert(session: AsyncSession, model):
    """Dialect-specific INSERT supporting ON CONFLICT (SQLite or PostgreSQL)."""
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


def _overwrite(stmt, values: Dict[str, Any]) -> Dict[str, Any]:
    set_ = {k: getattr(stmt.excluded, k) for k in values if k not in _KEY_COLUMNS}
    set_["updated_at"] = utcnow()
    return set_


# --- Shops ---

async def get_shop(session: AsyncSession, shop_id: int) -> Optional[Shop]:
    return await session.get(Shop, shop_id)


async def mark_shop_liveness(session: AsyncSession, shop_id: int, online: bool) -> None:
    await session.execute(
        update(Shop)
        .where(Shop.id == shop_id)
        .values(
            status=ShopStatus.ONLINE if online else ShopStatus.OFFLINE,
            last_ping=utcnow(),
            updated_at=utcnow(),
        )
    )


# --- Products / variations ---

async def find_product_by_remote(session: AsyncSession, shop_id: int, remote_id: int) -> Optional[Product]:
    res = await session.execute(
        select(Product).where(Product.shop_id == shop_id, Product.remote_id == remote_id)
    )
    return res.scalar_one_or_none()


async def find_product_by_sku(session: AsyncSession, shop_id: int, sku: str) -> Optional[Product]:
    # SKU is not unique in the mirror; the oldest row wins
    res = await session.execute(
        select(Product).where(Product.shop_id == shop_id, Product.sku == sku).order_by(Product.id).limit(1)
    )
    return res.scalar_one_or_none()


async def find_variation_by_sku(
    session: AsyncSession, shop_id: int, sku: str, product_id: int | None = None
) -> Optional[Variation]:
    stmt = select(Variation).where(Variation.shop_id == shop_id, Variation.sku == sku)
    if product_id is not None:
        stmt = stmt.where(Variation.product_id == product_id)
    res = await session.execute(stmt.order_by(Variation.id).limit(1))
    return res.scalar_one_or_none()


async def list_variations(session: AsyncSession, product_id: int) -> List[Variation]:
    res = await session.execute(
        select(Variation).where(Variation.product_id == product_id).order_by(Variation.id)
    )
    return list(res.scalars().all())


async def upsert_product(session: AsyncSession, shop_id: int, remote_id: int, values: Dict[str, Any]) -> Product:
    """Insert or update the mirror row keyed by (shop_id, remote_id)."""
    stmt = _insert(session, Product).values(shop_id=shop_id, remote_id=remote_id, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Product.shop_id, Product.remote_id],
        set_=_overwrite(stmt, values),
    ).returning(Product)
    res = await session.scalars(stmt, execution_options={"populate_existing": True})
    return res.one()


async def upsert_variation(
    session: AsyncSession,
    shop_id: int,
    product_id: int,
    remote_id: int,
    remote_parent_id: int,
    values: Dict[str, Any],
) -> Variation:
    row = dict(values, product_id=product_id, remote_parent_id=remote_parent_id)
    stmt = _insert(session, Variation).values(shop_id=shop_id, remote_id=remote_id, **row)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Variation.shop_id, Variation.remote_id],
        set_=_overwrite(stmt, row),
    ).returning(Variation)
    res = await session.scalars(stmt, execution_options={"populate_existing": True})
    return res.one()


async def touch_products(session: AsyncSession, product_ids: Iterable[int]) -> int:
    """Stamp a fresh modification time without touching content."""
    ids = sorted({int(i) for i in product_ids})
    if not ids:
        return 0
    now = utcnow()
    res = await session.execute(
        update(Product).where(Product.id.in_(ids)).values(date_modified=now, updated_at=now)
    )
    return res.rowcount or 0


# --- Master products / shop listings ---

async def upsert_master_listing(
    session: AsyncSession,
    shop_id: int,
    *,
    sku: str,
    name: str,
    description: str | None = None,
    price: str | None = None,
    category: str | None = None,
    stock_quantity: int | None = None,
    stock_status=None,
    is_active: bool = True,
) -> Tuple[MasterProduct, ShopListing]:
    master_values = {"sku": sku, "name": name, "description": description}
    stmt = _insert(session, MasterProduct).values(**master_values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[MasterProduct.sku],
        set_=_overwrite(stmt, {"name": name, "description": description}),
    ).returning(MasterProduct)
    master = (await session.scalars(stmt, execution_options={"populate_existing": True})).one()

    listing_values = {
        "price": price,
        "category": category,
        "stock_quantity": stock_quantity,
        "stock_status": stock_status,
        "is_active": is_active,
    }
    stmt = _insert(session, ShopListing).values(master_product_id=master.id, shop_id=shop_id, **listing_values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[ShopListing.master_product_id, ShopListing.shop_id],
        set_=_overwrite(stmt, listing_values),
    ).returning(ShopListing)
    listing = (await session.scalars(stmt, execution_options={"populate_existing": True})).one()
    return master, listing


async def get_listing(session: AsyncSession, master_product_id: int, shop_id: int) -> Optional[ShopListing]:
    res = await session.execute(
        select(ShopListing).where(
            ShopListing.master_product_id == master_product_id,
            ShopListing.shop_id == shop_id,
        )
    )
    return res.scalar_one_or_none()


# --- Import errors ---

async def add_import_error(
    session: AsyncSession,
    batch_id: int,
    *,
    row_number: int,
    error_type: ImportErrorType,
    message: str,
    sku: str | None = None,
    row_data: Dict[str, Any] | None = None,
) -> ImportErrorRecord:
    rec = ImportErrorRecord(
        batch_id=batch_id,
        row_number=row_number,
        sku=sku or None,
        error_type=error_type,
        error_message=message,
        row_data=row_data,
    )
    session.add(rec)
    await session.flush()
    return rec


async def list_import_errors(session: AsyncSession, batch_id: int, limit: int = 100) -> List[ImportErrorRecord]:
    res = await session.execute(
        select(ImportErrorRecord)
        .where(ImportErrorRecord.batch_id == batch_id)
        .order_by(ImportErrorRecord.row_number, ImportErrorRecord.id)
        .limit(limit)
    )
    return list(res.scalars().all())


# --- Product-shop-variant selection ---

async def selected_variations(session: AsyncSession, product_id: int) -> List[Variation]:
    res = await session.execute(
        select(Variation)
        .join(ProductShopVariant, ProductShopVariant.variation_id == Variation.id)
        .where(ProductShopVariant.product_id == product_id)
        .order_by(Variation.id)
    )
    return list(res.scalars().all())


async def replace_selected_variants(session: AsyncSession, product_id: int, variation_ids: Iterable[int]) -> List[int]:
    """
    Replace the selection for `product_id`. Ids that are not variations of
    that product are dropped. Returns the stored ids.
    """
    wanted = {int(v) for v in variation_ids}
    valid: List[int] = []
    if wanted:
        res = await session.execute(
            select(Variation.id).where(Variation.product_id == product_id, Variation.id.in_(wanted))
        )
        valid = sorted(res.scalars().all())
        dropped = wanted.difference(valid)
        if dropped:
            logger.info("[TRANSFER] ignoring %d variation id(s) not owned by product %s", len(dropped), product_id)

    await session.execute(delete(ProductShopVariant).where(ProductShopVariant.product_id == product_id))
    session.add_all(ProductShopVariant(product_id=product_id, variation_id=v) for v in valid)
    await session.flush()
    return valid


# --- Sync logs ---

async def add_sync_log(
    session: AsyncSession,
    shop_id: int,
    action: SyncAction,
    message: str | None = None,
    product_id: int | None = None,
) -> ProductSyncLog:
    log = ProductSyncLog(shop_id=shop_id, product_id=product_id, action=action, message=message)
    session.add(log)
    await session.flush()
    return log


async def list_sync_logs(session: AsyncSession, product_id: int, limit: int = 50) -> List[ProductSyncLog]:
    res = await session.execute(
        select(ProductSyncLog)
        .where(ProductSyncLog.product_id == product_id)
        .order_by(ProductSyncLog.created_at.desc(), ProductSyncLog.id.desc())
        .limit(limit)
    )
    return list(res.scalars().all())
