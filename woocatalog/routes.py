#=======================================================================================
# woocatalog/routes.py
# Thin FastAPI layer over the catalog engines. Everything lives under /api/* and
# requires HTTP Basic (admin).
#
#   shops      create / list / test connection / sync schedule
#   imports    CSV upload (queued), list, detail, cancel
#   products   sync, sync logs, transfer, variant selection
#=======================================================================================

import logging
import re
import secrets
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy import select, update

from woocatalog.config import settings
from woocatalog.db import get_sessionmaker
from woocatalog.imports import state
from woocatalog.models.catalog import Product
from woocatalog.models.enums import ImportType, ShopStatus, SyncAction
from woocatalog.models.imports import ImportBatch
from woocatalog.models.shop import Shop
from woocatalog.schemas import (
    ScheduleRequest,
    ShopCreate,
    ShopOut,
    SyncRequest,
    TransferRequest,
    VariantSelection,
)
from woocatalog.store import catalog_store as store
from woocatalog.sync import schedules
from woocatalog.sync.catalog_sync import SyncAlreadyRunning, run_sync
from woocatalog.sync.transfer import load_transfer_products, run_transfer
from woocatalog.woo.woocommerce import ShopConnectionError, client_for_shop
from woocatalog.workers.jobs_worker import enqueue_job

logger = logging.getLogger("uvicorn.error")

# ---------------------------
# HTTP Basic (admin)
# ---------------------------
security = HTTPBasic()


def verify_admin(credentials: HTTPBasicCredentials = Depends(security)):
    ok_user = secrets.compare_digest(credentials.username or "", settings.ADMIN_USER or "")
    ok_pass = secrets.compare_digest(credentials.password or "", settings.ADMIN_PASS or "")
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )


router = APIRouter(prefix="/api", tags=["Catalog API"], dependencies=[Depends(verify_admin)])

# ---------------------------
# Helpers
# ---------------------------
_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _shop_out(shop: Shop) -> Dict[str, Any]:
    return ShopOut(
        id=shop.id,
        name=shop.name,
        base_url=shop.base_url,
        is_active=shop.is_active,
        is_default=shop.is_default,
        status=ShopStatus(shop.status).value,
        last_ping=_iso(shop.last_ping),
    ).model_dump()


async def _clear_default(session) -> None:
    # at most one default shop
    await session.execute(update(Shop).where(Shop.is_default.is_(True)).values(is_default=False))


async def _require_shop(shop_id: int) -> Shop:
    async with get_sessionmaker()() as session:
        shop = await store.get_shop(session, shop_id)
    if shop is None:
        raise HTTPException(status_code=404, detail="Shop not found")
    return shop


# ---------------------------
# Shops
# ---------------------------

@router.post("/shops", status_code=201)
async def create_shop(body: ShopCreate):
    base_url = body.base_url.strip().rstrip("/")
    if not base_url.lower().startswith(("http://", "https://")):
        raise HTTPException(status_code=400, detail="base_url must start with http:// or https://")
    try:
        host = httpx.URL(base_url).host
    except httpx.InvalidURL as e:
        raise HTTPException(status_code=400, detail=f"Invalid base_url: {e}")
    if not host:
        raise HTTPException(status_code=400, detail="base_url has no host")
    async with get_sessionmaker().begin() as session:
        if body.is_default:
            await _clear_default(session)
        shop = Shop(
            name=body.name.strip(),
            base_url=base_url,
            consumer_key=body.consumer_key.strip(),
            consumer_secret=body.consumer_secret.strip(),
            is_default=body.is_default,
        )
        session.add(shop)
        await session.flush()
    logger.info("[SHOP] created shop %s (%s)", shop.id, base_url)
    return _shop_out(shop)


@router.get("/shops")
async def list_shops():
    async with get_sessionmaker()() as session:
        res = await session.execute(select(Shop).order_by(Shop.id))
        return {"shops": [_shop_out(s) for s in res.scalars().all()]}


@router.post("/shops/{shop_id}/set-default")
async def set_default_shop(shop_id: int):
    await _require_shop(shop_id)
    async with get_sessionmaker().begin() as session:
        await _clear_default(session)
        await session.execute(update(Shop).where(Shop.id == shop_id).values(is_default=True))
    logger.info("[SHOP] shop %s is now the default", shop_id)
    return {"success": True, "shop_id": shop_id}


@router.post("/shops/{shop_id}/test")
async def test_shop(shop_id: int):
    shop = await _require_shop(shop_id)
    ok = await client_for_shop(shop).test_connection()
    async with get_sessionmaker().begin() as session:
        await store.mark_shop_liveness(session, shop_id, online=ok)
    return {"shop_id": shop_id, "ok": ok, "status": (ShopStatus.ONLINE if ok else ShopStatus.OFFLINE).value}


@router.post("/shops/{shop_id}/sync-schedule")
async def start_sync_schedule(shop_id: int, body: ScheduleRequest):
    await _require_shop(shop_id)
    try:
        sched = await schedules.start_schedule(shop_id, body.interval)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "shop_id": sched.shop_id,
        "interval": sched.interval_seconds,
        "enabled": sched.enabled,
        "last_run": _iso(sched.last_run),
    }


@router.delete("/shops/{shop_id}/sync-schedule")
async def stop_sync_schedule(shop_id: int):
    if not await schedules.stop_schedule(shop_id):
        raise HTTPException(status_code=404, detail="Schedule not found")
    return {"success": True}


# ---------------------------
# Imports
# ---------------------------

@router.post("/imports", status_code=202)
async def upload_import(
    shop_id: int = Form(...),
    type: str = Form(...),
    file: UploadFile = File(...),
):
    try:
        import_type = ImportType(type.strip().lower())
    except ValueError:
        import_type = None
    if import_type not in (ImportType.PARENT, ImportType.VARIATIONS):
        raise HTTPException(status_code=400, detail="type must be 'parent' or 'variations'")
    filename = file.filename or "upload.csv"
    if not filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Only .csv files are accepted")
    await _require_shop(shop_id)

    data = await file.read()
    if not data.strip():
        raise HTTPException(status_code=400, detail="File is empty")
    upload_dir = Path(settings.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = upload_dir / f"{uuid.uuid4().hex}_{_SAFE_NAME_RE.sub('_', filename)}"
    path.write_bytes(data)

    batch = await state.create_batch(shop_id, import_type, filename, file_size=len(data))
    await enqueue_job({"type": "csv.import", "batch_id": batch.id, "path": str(path)})
    return {"batch_id": batch.id, "status": "pending"}


@router.get("/imports")
async def list_imports(shop_id: int = Query(...), limit: int = Query(20, ge=1, le=100)):
    async with get_sessionmaker()() as session:
        res = await session.execute(
            select(ImportBatch)
            .where(ImportBatch.shop_id == shop_id)
            .order_by(ImportBatch.created_at.desc(), ImportBatch.id.desc())
            .limit(limit)
        )
        return {"imports": [b.as_dict() for b in res.scalars().all()]}


@router.get("/imports/{batch_id}")
async def get_import(batch_id: int):
    async with get_sessionmaker()() as session:
        batch = await session.get(ImportBatch, batch_id)
        if batch is None:
            raise HTTPException(status_code=404, detail="Import not found")
        errors = await store.list_import_errors(session, batch_id, limit=100)
        out = batch.as_dict()
        out["import_errors"] = [e.as_dict() for e in errors]
        return out


@router.post("/imports/{batch_id}/cancel")
async def cancel_import(batch_id: int):
    try:
        await state.cancel_import(batch_id)
    except state.BatchNotFound:
        raise HTTPException(status_code=404, detail="Import not found")
    except state.InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "batch_id": batch_id, "status": "failed"}


# ---------------------------
# Products: sync / logs / transfer / variant selection
# ---------------------------

@router.post("/products/sync")
async def sync_products(body: SyncRequest):
    shop = await _require_shop(body.shop_id)
    try:
        result = await run_sync(shop, body.batch_size, body.max_products)
    except ShopConnectionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "stats": result.as_dict()}


@router.get("/products/{product_id}/sync-logs")
async def product_sync_logs(product_id: int, limit: int = Query(50, ge=1, le=200)):
    async with get_sessionmaker()() as session:
        logs = await store.list_sync_logs(session, product_id, limit=limit)
    return {
        "logs": [
            {
                "id": log.id,
                "shop_id": log.shop_id,
                "action": SyncAction(log.action).value,
                "message": log.message,
                "created_at": _iso(log.created_at),
            }
            for log in logs
        ]
    }


@router.post("/products/transfer")
async def transfer_products(body: TransferRequest):
    if not body.product_ids and not body.master_product_ids:
        raise HTTPException(status_code=400, detail="No products selected")
    target = await _require_shop(body.target_shop_id)
    source = await _require_shop(body.source_shop_id) if body.source_shop_id else None

    records = await load_transfer_products(
        body.product_ids,
        body.master_product_ids,
        source_shop_id=source.id if source else None,
        selected=body.selected_variations,
    )
    if not records:
        raise HTTPException(status_code=404, detail="No matching products found")
    result = await run_transfer(target, records, source)
    return {"success": not result.errors, **result.as_dict()}


@router.get("/product-shop-variants")
async def get_variant_selection(product_id: int = Query(...)):
    async with get_sessionmaker()() as session:
        chosen = await store.selected_variations(session, product_id)
    return {"product_id": product_id, "variation_ids": [v.id for v in chosen]}


@router.put("/product-shop-variants")
async def replace_variant_selection(body: VariantSelection):
    async with get_sessionmaker().begin() as session:
        if await session.get(Product, body.product_id) is None:
            raise HTTPException(status_code=404, detail="Product not found")
        stored: List[int] = await store.replace_selected_variants(session, body.product_id, body.variation_ids)
    return {"product_id": body.product_id, "variation_ids": stored}
