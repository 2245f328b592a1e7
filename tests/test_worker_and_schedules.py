import asyncio
from datetime import timedelta

import pytest

from woocatalog.config import settings
from woocatalog.db import utcnow
from woocatalog.models.enums import ImportStatus
from woocatalog.sync import schedules
from woocatalog.workers import jobs_worker
from woocatalog.woo.woocommerce import ShopConnectionError
from conftest import make_shop


def test_csv_job_runs_import_and_removes_upload(tmp_path, monkeypatch):
    upload = tmp_path / "abc_parents.csv"
    upload.write_text("sku,post_title\nA,B\n")
    seen = []

    async def fake_import(batch_id, path):
        seen.append((batch_id, path.name))
        return ImportStatus.COMPLETED

    monkeypatch.setattr(jobs_worker, "run_import_file", fake_import)
    asyncio.run(jobs_worker.handle_job({"type": "csv.import", "batch_id": 7, "path": str(upload)}))

    assert seen == [(7, "abc_parents.csv")]
    assert not upload.exists()


def test_csv_job_removes_upload_even_when_import_raises(tmp_path, monkeypatch):
    upload = tmp_path / "x.csv"
    upload.write_text("sku\n")

    async def boom(batch_id, path):
        raise RuntimeError("db down")

    monkeypatch.setattr(jobs_worker, "run_import_file", boom)
    with pytest.raises(RuntimeError):
        asyncio.run(jobs_worker.handle_job({"type": "csv.import", "batch_id": 1, "path": str(upload)}))
    assert not upload.exists()


def test_sync_job_tolerates_unreachable_shop(run_db, monkeypatch):
    calls = []

    async def offline_sync(shop, batch_size=None, max_products=None):
        calls.append(shop.id)
        raise ShopConnectionError("Could not connect")

    monkeypatch.setattr(jobs_worker, "run_sync", offline_sync)

    async def _t(sm):
        monkeypatch.setattr(jobs_worker, "get_sessionmaker", lambda: sm)
        shop = await make_shop(sm)
        await jobs_worker.handle_job({"type": "shop.sync", "shop_id": shop.id})
        await jobs_worker.handle_job({"type": "shop.sync", "shop_id": 999})
        return shop.id

    shop_id = run_db(_t)
    assert calls == [shop_id]


def test_worker_loop_drains_queue_until_stopped(monkeypatch):
    handled = []

    async def fake_handle(job):
        handled.append(job["type"])
        if job["type"] == "explode":
            raise ValueError("bad job")

    monkeypatch.setattr(jobs_worker, "handle_job", fake_handle)

    async def _main():
        jobs_worker.reset_queue()
        stop = asyncio.Event()
        await jobs_worker.enqueue_job({"type": "explode"})
        await jobs_worker.enqueue_job({"type": "shop.sync"})
        task = asyncio.create_task(jobs_worker.worker_loop(stop))
        while jobs_worker.pending_jobs():
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=3)
        jobs_worker.reset_queue()

    asyncio.run(_main())
    assert handled == ["explode", "shop.sync"]


def test_schedule_lifecycle(run_db):
    async def _t(sm):
        shop = await make_shop(sm)
        with pytest.raises(ValueError):
            await schedules.start_schedule(shop.id, 10, sm=sm)

        sched = await schedules.start_schedule(shop.id, 120, sm=sm)
        assert sched.interval_seconds == 120
        assert await schedules.claim_due(utcnow(), sm=sm) == []

        later = utcnow() + timedelta(seconds=121)
        assert await schedules.claim_due(later, sm=sm) == [shop.id]
        assert await schedules.claim_due(later, sm=sm) == []

        resched = await schedules.start_schedule(shop.id, 600, sm=sm)
        assert resched.id == sched.id
        assert resched.interval_seconds == 600

        assert await schedules.stop_schedule(shop.id, sm=sm) is True
        assert await schedules.stop_schedule(shop.id, sm=sm) is False
        assert await schedules.get_schedule(shop.id, sm=sm) is None

    run_db(_t)


def test_scheduler_loop_enqueues_due_sync(run_db, monkeypatch):
    monkeypatch.setattr(settings, "SCHEDULER_MIN_INTERVAL", 0)
    queued = []

    async def _t(sm):
        shop = await make_shop(sm)
        await schedules.start_schedule(shop.id, 0, sm=sm)
        stop = asyncio.Event()

        async def capture(job):
            queued.append(job)
            stop.set()

        monkeypatch.setattr(jobs_worker, "enqueue_job", capture)
        await asyncio.wait_for(schedules.scheduler_loop(stop, tick=0.01, sm=sm), timeout=5)
        return shop.id

    shop_id = run_db(_t)
    assert queued[0] == {"type": "shop.sync", "shop_id": shop_id, "source": "schedule"}
