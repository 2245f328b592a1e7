# ---------------------------
# woocatalog/workers/jobs_worker.py
# ---------------------------
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from woocatalog.db import get_sessionmaker
from woocatalog.imports.import_engine import run_import_file
from woocatalog.store import catalog_store as store
from woocatalog.sync.catalog_sync import SyncAlreadyRunning, is_syncing, run_sync
from woocatalog.woo.woocommerce import ShopConnectionError

logger = logging.getLogger("uvicorn.error")

_QUEUE: Optional["asyncio.Queue[dict]"] = None


def _queue() -> "asyncio.Queue[dict]":
    global _QUEUE
    if _QUEUE is None:
        _QUEUE = asyncio.Queue()
    return _QUEUE


def pending_jobs() -> int:
    return _queue().qsize()


async def enqueue_job(job: Dict[str, Any]) -> None:
    await _queue().put(job)


async def handle_job(job: Dict[str, Any]) -> None:
    jtype = (job.get("type") or "").strip()
    if jtype == "csv.import":
        await _handle_csv_import(job)
    elif jtype == "shop.sync":
        await _handle_shop_sync(job)
    else:
        logger.info("[WORKER] unknown job type=%s", jtype)


async def worker_loop(stop_event: asyncio.Event) -> None:
    logger.info("[WORKER] started")
    queue = _queue()
    while not stop_event.is_set():
        try:
            job = await asyncio.wait_for(queue.get(), timeout=1.0)
        except asyncio.TimeoutError:
            continue

        try:
            logger.info("[WORKER] Received job: type=%s batch=%s shop=%s", job.get("type"), job.get("batch_id"), job.get("shop_id"))
            await handle_job(job)
        except Exception:
            logger.exception("[WORKER] failed job type=%s", job.get("type"))
        finally:
            queue.task_done()

    logger.info("[WORKER] stopped")


def reset_queue() -> None:
    """Drop the queue so the next worker binds a fresh one to its own event loop."""
    global _QUEUE
    _QUEUE = None


# ---------------------------
# Handlers
# ---------------------------

async def _handle_csv_import(job: Dict[str, Any]) -> None:
    batch_id = int(job["batch_id"])
    path = Path(job["path"])
    try:
        status = await run_import_file(batch_id, path)
        logger.info("[WORKER] import batch %s -> %s", batch_id, status.value)
    finally:
        if job.get("cleanup", True):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("[WORKER] could not remove upload %s: %s", path, e)


async def _handle_shop_sync(job: Dict[str, Any]) -> None:
    shop_id = int(job["shop_id"])
    if is_syncing(shop_id):
        logger.info("[WORKER] shop %s already syncing; dropping job", shop_id)
        return
    async with get_sessionmaker()() as session:
        shop = await store.get_shop(session, shop_id)
    if shop is None or not shop.is_active:
        logger.info("[WORKER] shop %s missing or inactive; skipping sync", shop_id)
        return
    try:
        result = await run_sync(shop, job.get("batch_size"), job.get("max_products"))
    except (ShopConnectionError, SyncAlreadyRunning) as e:
        logger.warning("[WORKER] sync for shop %s not run: %s", shop_id, e)
        return
    logger.info("[WORKER] sync for shop %s done: %s", shop_id, result.as_dict())
