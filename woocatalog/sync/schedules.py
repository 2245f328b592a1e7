# woocatalog/sync/schedules.py
# ============================
# Periodic shop syncs.
# A schedule row per shop; the scheduler loop enqueues a "shop.sync" job
# for every due schedule. The first run happens one interval after start.
# ============================
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite

from woocatalog.config import settings
from woocatalog.db import get_sessionmaker, utcnow
from woocatalog.models.sync_logs import SyncSchedule
from woocatalog.sync.catalog_sync import is_syncing

logger = logging.getLogger("uvicorn.error")


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def is_due(schedule: SyncSchedule, now: datetime) -> bool:
    if not schedule.enabled:
        return False
    last = _aware(schedule.last_run)
    return last is None or last + timedelta(seconds=schedule.interval_seconds) <= now


async def start_schedule(shop_id: int, interval_seconds: int, *, sm=None) -> SyncSchedule:
    """Create or re-time the schedule for a shop."""
    if interval_seconds < settings.SCHEDULER_MIN_INTERVAL:
        raise ValueError(f"interval must be at least {settings.SCHEDULER_MIN_INTERVAL} seconds")
    sm = sm or get_sessionmaker()
    async with sm.begin() as session:
        insert = sqlite.insert if session.get_bind().dialect.name == "sqlite" else postgresql.insert
        stmt = insert(SyncSchedule).values(
            shop_id=shop_id, interval_seconds=interval_seconds, enabled=True, last_run=utcnow()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SyncSchedule.shop_id],
            set_={"interval_seconds": interval_seconds, "enabled": True, "updated_at": utcnow()},
        ).returning(SyncSchedule)
        schedule = (await session.scalars(stmt, execution_options={"populate_existing": True})).one()
    logger.info("[SCHEDULE] shop %s: sync every %ss", shop_id, interval_seconds)
    return schedule


async def stop_schedule(shop_id: int, *, sm=None) -> bool:
    sm = sm or get_sessionmaker()
    async with sm.begin() as session:
        res = await session.execute(delete(SyncSchedule).where(SyncSchedule.shop_id == shop_id))
    if res.rowcount:
        logger.info("[SCHEDULE] shop %s: schedule removed", shop_id)
    return bool(res.rowcount)


async def get_schedule(shop_id: int, *, sm=None) -> Optional[SyncSchedule]:
    sm = sm or get_sessionmaker()
    async with sm() as session:
        res = await session.execute(select(SyncSchedule).where(SyncSchedule.shop_id == shop_id))
        return res.scalar_one_or_none()


async def claim_due(now: datetime | None = None, *, sm=None) -> List[int]:
    """Return shop ids whose schedule is due and stamp their last_run."""
    now = now or utcnow()
    sm = sm or get_sessionmaker()
    async with sm.begin() as session:
        res = await session.execute(select(SyncSchedule).where(SyncSchedule.enabled.is_(True)))
        due = [s for s in res.scalars().all() if is_due(s, now)]
        if due:
            await session.execute(
                update(SyncSchedule)
                .where(SyncSchedule.id.in_([s.id for s in due]))
                .values(last_run=now)
            )
        return [s.shop_id for s in due]


async def scheduler_loop(stop_event: asyncio.Event, *, tick: float | None = None, sm=None) -> None:
    from woocatalog.workers.jobs_worker import enqueue_job

    tick = settings.SCHEDULER_TICK_SECONDS if tick is None else tick
    logger.info("[SCHEDULE] started (tick=%ss)", tick)
    while not stop_event.is_set():
        try:
            for shop_id in await claim_due(sm=sm):
                if is_syncing(shop_id):
                    logger.info("[SCHEDULE] shop %s still syncing; skipping this run", shop_id)
                    continue
                await enqueue_job({"type": "shop.sync", "shop_id": shop_id, "source": "schedule"})
        except Exception as e:
            logger.error("[SCHEDULE] tick failed: %s", e)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=tick)
        except asyncio.TimeoutError:
            pass
    logger.info("[SCHEDULE] stopped")
