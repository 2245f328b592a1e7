# woocatalog/imports/state.py
# ============================
# Import batch bookkeeping shared by the import, sync and cancel paths.
#
# Status moves pending -> processing -> {completed | failed}; a batch may
# also go pending -> failed (cancelled before it started). Every transition
# is a conditional UPDATE on the expected source status, so a concurrent
# cancel can never be overwritten by a late "completed".
# ============================
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from woocatalog.db import get_sessionmaker, utcnow
from woocatalog.models.enums import ImportStatus, ImportType
from woocatalog.models.imports import ImportBatch

# Functions take an optional `sm` (async_sessionmaker); each call is its own
# committed transaction so pollers see progress immediately.

logger = logging.getLogger("uvicorn.error")

ALLOWED_TRANSITIONS: Dict[ImportStatus, frozenset] = {
    ImportStatus.PENDING: frozenset({ImportStatus.PROCESSING, ImportStatus.FAILED}),
    ImportStatus.PROCESSING: frozenset({ImportStatus.COMPLETED, ImportStatus.FAILED}),
    ImportStatus.COMPLETED: frozenset(),
    ImportStatus.FAILED: frozenset(),
}

CANCEL_MESSAGE = "Import cancelled by user"


class InvalidTransition(Exception):
    def __init__(self, batch_id: int, current: ImportStatus | None, target: ImportStatus):
        cur = current.value if current is not None else "missing"
        super().__init__(f"Import batch {batch_id}: cannot move from {cur} to {target.value}")
        self.batch_id = batch_id
        self.current = current
        self.target = target


class BatchNotFound(LookupError):
    pass


def _sources_for(target: ImportStatus) -> List[ImportStatus]:
    return [src for src, targets in ALLOWED_TRANSITIONS.items() if target in targets]


def error_entry(message: str, *, row: int | None = None, sku: str | None = None, kind: str = "engine") -> Dict[str, Any]:
    entry: Dict[str, Any] = {"type": kind, "message": message}
    if row is not None:
        entry["row"] = row
    if sku:
        entry["sku"] = sku
    return entry


async def _status_of(session: AsyncSession, batch_id: int) -> Optional[ImportStatus]:
    res = await session.execute(select(ImportBatch.status).where(ImportBatch.id == batch_id))
    raw = res.scalar_one_or_none()
    return ImportStatus(raw) if raw is not None else None


async def _transition(
    sm: async_sessionmaker[AsyncSession],
    batch_id: int,
    target: ImportStatus,
    values: Dict[str, Any],
    *,
    strict: bool = True,
) -> bool:
    async with sm.begin() as session:
        res = await session.execute(
            update(ImportBatch)
            .where(ImportBatch.id == batch_id, ImportBatch.status.in_(_sources_for(target)))
            .values(status=target, updated_at=utcnow(), **values)
        )
        if res.rowcount:
            return True
        current = await _status_of(session, batch_id)
    if current is None:
        raise BatchNotFound(f"Import batch {batch_id} not found")
    if strict:
        raise InvalidTransition(batch_id, current, target)
    logger.info("[IMPORT] batch %s stays %s (wanted %s)", batch_id, current.value, target.value)
    return False


# --- Lifecycle ---

async def create_batch(
    shop_id: int,
    import_type: ImportType,
    filename: str,
    *,
    file_size: int | None = None,
    total_rows: int = 0,
    sm: async_sessionmaker[AsyncSession] | None = None,
) -> ImportBatch:
    sm = sm or get_sessionmaker()
    async with sm.begin() as session:
        batch = ImportBatch(
            shop_id=shop_id,
            type=import_type,
            filename=filename,
            file_size=file_size,
            status=ImportStatus.PENDING,
            total_rows=max(0, int(total_rows)),
            errors=[],
        )
        session.add(batch)
        await session.flush()
    logger.info("[IMPORT] batch %s created (%s, shop=%s, file=%s)", batch.id, import_type.value, shop_id, filename)
    return batch


async def start_batch(batch_id: int, *, total_rows: int | None = None, sm=None) -> bool:
    values: Dict[str, Any] = {"started_at": utcnow()}
    if total_rows is not None:
        values["total_rows"] = max(0, int(total_rows))
    return await _transition(sm or get_sessionmaker(), batch_id, ImportStatus.PROCESSING, values)


async def set_total_rows(batch_id: int, total_rows: int, *, sm=None) -> None:
    sm = sm or get_sessionmaker()
    async with sm.begin() as session:
        await session.execute(
            update(ImportBatch)
            .where(
                ImportBatch.id == batch_id,
                ImportBatch.status.in_([ImportStatus.PENDING, ImportStatus.PROCESSING]),
            )
            .values(total_rows=max(0, int(total_rows)), updated_at=utcnow())
        )


async def record_progress(
    batch_id: int,
    *,
    processed: int,
    successful: int,
    failed: int,
    errors: List[Dict[str, Any]] | None = None,
    sm=None,
) -> None:
    """
    Write absolute counters for a batch. All three are written together and
    `processed` never decreases.
    """
    if successful + failed != processed:
        raise ValueError(f"inconsistent counters: {successful} + {failed} != {processed}")
    sm = sm or get_sessionmaker()
    async with sm.begin() as session:
        await session.execute(
            update(ImportBatch)
            .where(ImportBatch.id == batch_id, ImportBatch.processed_rows <= processed)
            .values(
                processed_rows=processed,
                successful_rows=successful,
                error_rows=failed,
                updated_at=utcnow(),
            )
        )
        if errors is not None:
            # a cancelled batch keeps its cancellation entry
            await session.execute(
                update(ImportBatch)
                .where(ImportBatch.id == batch_id, ImportBatch.status == ImportStatus.PROCESSING)
                .values(errors=list(errors))
            )


async def complete_batch(
    batch_id: int,
    *,
    processed: int,
    successful: int,
    failed: int,
    errors: List[Dict[str, Any]] | None = None,
    sm=None,
) -> bool:
    """
    Final counters + processing -> completed. Returns False when the batch
    was cancelled meanwhile (the counters are still recorded).
    """
    sm = sm or get_sessionmaker()
    await record_progress(batch_id, processed=processed, successful=successful, failed=failed, errors=errors, sm=sm)
    return await _transition(sm, batch_id, ImportStatus.COMPLETED, {"completed_at": utcnow()}, strict=False)


async def fail_batch(batch_id: int, message: str, *, kind: str = "engine", sm=None) -> bool:
    """
    Move a live batch to failed. An engine abort replaces the batch errors with
    the single abort entry; a cancellation is appended to the row errors so far.
    """
    sm = sm or get_sessionmaker()
    async with sm.begin() as session:
        batch = await session.get(ImportBatch, batch_id)
        if batch is None:
            raise BatchNotFound(f"Import batch {batch_id} not found")
        current = ImportStatus(batch.status)
        if current.is_terminal:
            logger.info("[IMPORT] batch %s already %s; not failing (%s)", batch_id, current.value, message)
            return False
        entry = error_entry(message, kind=kind)
        errors = list(batch.errors or []) + [entry] if kind == "cancelled" else [entry]
        res = await session.execute(
            update(ImportBatch)
            .where(ImportBatch.id == batch_id, ImportBatch.status == current)
            .values(status=ImportStatus.FAILED, errors=errors, completed_at=utcnow(), updated_at=utcnow())
        )
    if res.rowcount:
        logger.warning("[IMPORT] batch %s failed: %s", batch_id, message)
    return bool(res.rowcount)


async def cancel_import(batch_id: int, *, reason: str = CANCEL_MESSAGE, sm=None) -> None:
    """
    External cancellation: pending/processing -> failed. The running engine
    notices at its next chunk boundary.
    """
    sm = sm or get_sessionmaker()
    if not await fail_batch(batch_id, reason, kind="cancelled", sm=sm):
        async with sm() as session:
            current = await _status_of(session, batch_id)
        raise InvalidTransition(batch_id, current, ImportStatus.FAILED)
    logger.info("[IMPORT] batch %s cancelled", batch_id)


# --- Reads ---

async def current_status(batch_id: int, *, sm=None) -> Optional[ImportStatus]:
    sm = sm or get_sessionmaker()
    async with sm() as session:
        return await _status_of(session, batch_id)


async def get_batch(batch_id: int, *, sm=None) -> Optional[ImportBatch]:
    sm = sm or get_sessionmaker()
    async with sm() as session:
        return await session.get(ImportBatch, batch_id)
