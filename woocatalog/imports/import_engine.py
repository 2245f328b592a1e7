# woocatalog/imports/import_engine.py
# ============================
# CSV batch import: parent products or variations, row by row.
#
# - rows are processed in chunks; progress is committed at each chunk boundary
# - each row is its own unit of work (remote write, then local upsert)
# - a bad row becomes an ImportErrorRecord and never aborts the batch
# - before each chunk the batch status is re-read (cooperative cancel)
# ============================
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from sqlalchemy.exc import SQLAlchemyError

from woocatalog.config import settings
from woocatalog.db import get_sessionmaker
from woocatalog.imports import state
from woocatalog.imports.csv_reader import CsvParseError, read_rows
from woocatalog.models.catalog import Product
from woocatalog.models.enums import ImportErrorType, ImportStatus, ImportType
from woocatalog.models.shop import Shop
from woocatalog.store import catalog_store as store
from woocatalog.woo.payloads import (
    RowValidationError,
    build_parent_payload,
    build_variation_payload,
    clean,
    normalize_row,
    product_values,
    variation_values,
)
from woocatalog.woo.woocommerce import ShopConnectionError, WooCommerceError, client_for_shop

logger = logging.getLogger("uvicorn.error")

Sleep = Callable[[float], Awaitable[None]]


def _remote_id(item: Dict[str, Any]) -> int:
    try:
        return int(item["id"])
    except (KeyError, TypeError, ValueError):
        raise WooCommerceError(f"WooCommerce response carries no item id: {str(item)[:200]}")


def _classify(exc: Exception) -> tuple[ImportErrorType, str]:
    if isinstance(exc, RowValidationError):
        return ImportErrorType.VALIDATION, str(exc)
    if isinstance(exc, WooCommerceError):
        msg = str(exc)
        if exc.body:
            msg = f"{msg}: {exc.body[:200]}"
        return ImportErrorType.WOOCOMMERCE, msg
    if isinstance(exc, (httpx.TransportError, httpx.InvalidURL)):
        return ImportErrorType.NETWORK, f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    if isinstance(exc, SQLAlchemyError):
        return ImportErrorType.DATABASE, f"{type(exc).__name__}: {exc}"
    # undecodable remote body
    return ImportErrorType.WOOCOMMERCE, f"Invalid WooCommerce response: {exc}"


# --- Per-row units of work ---

async def _import_parent_row(sm, shop: Shop, client, row: Dict[str, Any]) -> None:
    payload = build_parent_payload(row)
    async with sm() as session:
        existing = await store.find_product_by_sku(session, shop.id, payload["sku"])
        existing_remote = existing.remote_id if existing else None

    if existing_remote is not None:
        item = await client.update_product(existing_remote, payload)
    else:
        item = await client.create_product(payload)

    async with sm.begin() as session:
        await store.upsert_product(session, shop.id, _remote_id(item), product_values(item))


async def _import_variation_row(sm, shop: Shop, client, row: Dict[str, Any]) -> None:
    payload = build_variation_payload(row)
    parent_sku = clean(row.get("parent_sku"))
    async with sm() as session:
        parent = await store.find_product_by_sku(session, shop.id, parent_sku)
        if parent is None:
            raise RowValidationError(f"Parent product not found: {parent_sku}")
        parent_id, parent_remote = parent.id, parent.remote_id
        existing = await store.find_variation_by_sku(session, shop.id, payload["sku"], product_id=parent_id)
        existing_remote = existing.remote_id if existing else None

    if existing_remote is not None:
        item = await client.update_variation(parent_remote, existing_remote, payload)
    else:
        item = await client.create_variation(parent_remote, payload)

    remote_id = _remote_id(item)
    async with sm.begin() as session:
        await store.upsert_variation(session, shop.id, parent_id, remote_id, parent_remote, variation_values(item))
        parent = await session.get(Product, parent_id)
        if parent is not None and remote_id not in (parent.variations or []):
            parent.variations = list(parent.variations or []) + [remote_id]


async def _import_row(sm, shop, client, import_type: ImportType, batch_id: int, row_number: int, row) -> Optional[Dict[str, Any]]:
    """Run one row. Returns the batch error entry on failure, None on success."""
    try:
        if import_type == ImportType.VARIATIONS:
            await _import_variation_row(sm, shop, client, row)
        else:
            await _import_parent_row(sm, shop, client, row)
        return None
    except (ValueError, WooCommerceError, httpx.TransportError, httpx.InvalidURL, SQLAlchemyError) as e:
        kind, message = _classify(e)

    sku = clean((row or {}).get("sku")) or None
    logger.info("[IMPORT] batch %s row %d (%s) failed [%s]: %s", batch_id, row_number, sku or "-", kind.value, message)
    async with sm.begin() as session:
        await store.add_import_error(
            session,
            batch_id,
            row_number=row_number,
            sku=sku,
            error_type=kind,
            message=message,
            row_data=normalize_row(row),
        )
    return state.error_entry(message, row=row_number, sku=sku, kind=kind.value)


# --- Engine ---

async def process_import(
    batch_id: int,
    shop: Shop,
    rows: Sequence[Dict[str, Any]],
    *,
    import_type: ImportType | None = None,
    client=None,
    sm=None,
    chunk_size: int | None = None,
    chunk_delay: float | None = None,
    sleep: Sleep = asyncio.sleep,
    preflight: bool = True,
) -> ImportStatus:
    """
    Drive an existing pending batch to a terminal status. Returns the final status.
    """
    sm = sm or get_sessionmaker()
    client = client or client_for_shop(shop)
    chunk_size = max(1, chunk_size or settings.IMPORT_CHUNK_SIZE)
    chunk_delay = settings.IMPORT_CHUNK_DELAY if chunk_delay is None else chunk_delay
    max_errors = settings.IMPORT_MAX_BATCH_ERRORS
    rows = list(rows)

    try:
        if import_type is None:
            batch = await state.get_batch(batch_id, sm=sm)
            if batch is None:
                raise state.BatchNotFound(f"Import batch {batch_id} not found")
            import_type = ImportType(batch.type)

        if preflight and not await client.test_connection():
            async with sm.begin() as session:
                await store.mark_shop_liveness(session, shop.id, online=False)
            await state.fail_batch(batch_id, f"Could not connect to shop '{shop.name}'", sm=sm)
            return ImportStatus.FAILED

        try:
            await state.start_batch(batch_id, total_rows=len(rows), sm=sm)
        except state.InvalidTransition as e:
            logger.info("[IMPORT] batch %s not started: %s", batch_id, e)
            return e.current or ImportStatus.FAILED

        logger.info("[IMPORT] batch %s processing %d %s row(s) for shop %s", batch_id, len(rows), import_type.value, shop.id)
        processed = successful = failed = 0
        errors: List[Dict[str, Any]] = []

        for start in range(0, len(rows), chunk_size):
            if start > 0 and chunk_delay > 0:
                await sleep(chunk_delay)
            status = await state.current_status(batch_id, sm=sm)
            if status != ImportStatus.PROCESSING:
                logger.info("[IMPORT] batch %s is %s; stopping at row %d", batch_id, status.value if status else "gone", start + 1)
                return status or ImportStatus.FAILED

            for offset, row in enumerate(rows[start:start + chunk_size]):
                row_number = start + offset + 1
                entry = await _import_row(sm, shop, client, import_type, batch_id, row_number, row)
                processed += 1
                if entry is None:
                    successful += 1
                else:
                    failed += 1
                    if len(errors) < max_errors:
                        errors.append(entry)

            await state.record_progress(batch_id, processed=processed, successful=successful, failed=failed, errors=errors, sm=sm)

        done = await state.complete_batch(batch_id, processed=processed, successful=successful, failed=failed, errors=errors, sm=sm)
        logger.info("[IMPORT] batch %s finished: %d ok, %d failed of %d", batch_id, successful, failed, processed)
        return ImportStatus.COMPLETED if done else (await state.current_status(batch_id, sm=sm) or ImportStatus.FAILED)

    except Exception as e:
        logger.exception("[IMPORT] batch %s aborted", batch_id)
        await state.fail_batch(batch_id, f"Import aborted: {e}", sm=sm)
        return ImportStatus.FAILED


async def run_import(
    shop: Shop,
    import_type: ImportType,
    rows: Sequence[Dict[str, Any]],
    *,
    filename: str = "import.csv",
    file_size: int | None = None,
    client=None,
    sm=None,
    **kwargs,
) -> int:
    """
    Import `rows` into `shop` and return the batch id.

    Raises ShopConnectionError (before any batch exists) when the shop does
    not answer the connection test.
    """
    sm = sm or get_sessionmaker()
    client = client or client_for_shop(shop)
    if not await client.test_connection():
        async with sm.begin() as session:
            await store.mark_shop_liveness(session, shop.id, online=False)
        raise ShopConnectionError(f"Could not connect to shop '{shop.name}'")

    rows = list(rows)
    batch = await state.create_batch(shop.id, import_type, filename, file_size=file_size, total_rows=len(rows), sm=sm)
    await process_import(batch.id, shop, rows, import_type=import_type, client=client, sm=sm, preflight=False, **kwargs)
    return batch.id


async def run_import_file(batch_id: int, path: str | Path, *, shop: Shop | None = None, client=None, sm=None, **kwargs) -> ImportStatus:
    """Worker entry: parse the stored upload, then process the pending batch."""
    sm = sm or get_sessionmaker()
    batch = await state.get_batch(batch_id, sm=sm)
    if batch is None:
        raise state.BatchNotFound(f"Import batch {batch_id} not found")

    if shop is None:
        async with sm() as session:
            shop = await store.get_shop(session, batch.shop_id)
        if shop is None:
            await state.fail_batch(batch_id, f"Shop {batch.shop_id} not found", sm=sm)
            return ImportStatus.FAILED

    try:
        rows = await asyncio.to_thread(read_rows, str(path))
    except CsvParseError as e:
        await state.fail_batch(batch_id, str(e), sm=sm)
        return ImportStatus.FAILED

    return await process_import(
        batch_id, shop, rows, import_type=ImportType(batch.type), client=client, sm=sm, **kwargs
    )
