import pytest
from sqlalchemy import func, select

from woocatalog.imports import state
from woocatalog.models.catalog import Product
from woocatalog.models.enums import ImportStatus, ImportType, ShopStatus, SyncAction
from woocatalog.models.imports import ImportBatch
from woocatalog.models.master import MasterProduct, ShopListing
from woocatalog.models.shop import Shop
from woocatalog.models.sync_logs import ProductSyncLog
from woocatalog.store import catalog_store as store
from woocatalog.sync import catalog_sync
from woocatalog.sync.catalog_sync import SyncAlreadyRunning, run_sync
from woocatalog.woo.woocommerce import ShopConnectionError
from conftest import FakeWooClient, make_shop, no_sleep, woo_product


def _count(session, model):
    return session.scalar(select(func.count()).select_from(model))


def test_sync_is_idempotent(run_db):
    client = FakeWooClient([woo_product(i) for i in range(1, 6)])

    async def _t(sm):
        shop = await make_shop(sm)
        first = await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        second = await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        async with sm() as session:
            counts = (
                await _count(session, Product),
                await _count(session, MasterProduct),
                await _count(session, ShopListing),
                await _count(session, ProductSyncLog),
            )
            batch = await session.get(ImportBatch, second.batch_id)
        return first, second, counts, batch

    first, second, counts, batch = run_db(_t)
    assert (first.processed, first.created, first.updated) == (5, 5, 0)
    assert (second.processed, second.created, second.updated) == (5, 0, 5)
    assert counts == (5, 5, 5, 10)
    assert batch.type == ImportType.SYNC
    assert batch.status == ImportStatus.COMPLETED
    assert (batch.total_rows, batch.processed_rows, batch.successful_rows) == (5, 5, 5)


def test_update_keeps_local_row_and_refreshes_fields(run_db):
    client = FakeWooClient([woo_product(7, name="Old name", price="5.00")])

    async def _t(sm):
        shop = await make_shop(sm)
        await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        async with sm() as session:
            before = await store.find_product_by_remote(session, shop.id, 7)
        client.products[7].update(name="New name", price="6.50")
        await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        async with sm() as session:
            after = await store.find_product_by_remote(session, shop.id, 7)
            listing = (await session.execute(select(ShopListing))).scalar_one()
            actions = [log.action for log in await store.list_sync_logs(session, after.id)]
        return before, after, listing, actions

    before, after, listing, actions = run_db(_t)
    assert after.id == before.id
    assert after.name == "New name"
    assert after.price == "6.50"
    assert listing.price == "6.50"
    assert listing.category == "Tools"
    assert listing.is_active is True
    assert actions == [SyncAction.UPDATED, SyncAction.CREATED]


def test_per_run_cap_and_offsets(run_db):
    client = FakeWooClient([woo_product(i) for i in range(1, 131)])

    async def _t(sm):
        shop = await make_shop(sm)
        return await run_sync(shop, 50, 120, client=client, sm=sm, sleep=no_sleep)

    result = run_db(_t)
    pages = client.called("list_products")
    assert [c[2] for c in pages] == [50, 50, 20]
    assert [c[3] for c in pages] == [0, 50, 100]
    assert result.processed == 120
    assert result.total_count == 130
    assert result.has_more is True


def test_no_more_when_total_exactly_reached(run_db):
    client = FakeWooClient([woo_product(i) for i in range(1, 101)])

    async def _t(sm):
        shop = await make_shop(sm)
        return await run_sync(shop, 50, 100, client=client, sm=sm, sleep=no_sleep)

    result = run_db(_t)
    assert result.processed == 100
    assert result.has_more is False


def test_unknown_total_with_full_last_page_reports_more(run_db):
    client = FakeWooClient([woo_product(i) for i in range(1, 101)], report_total=False)

    async def _t(sm):
        shop = await make_shop(sm)
        result = await run_sync(shop, 50, 100, client=client, sm=sm, sleep=no_sleep)
        return result, await state.get_batch(result.batch_id, sm=sm)

    result, batch = run_db(_t)
    assert result.total_count is None
    assert result.has_more is True
    assert batch.total_rows == batch.processed_rows == 100


def test_short_catalog_stops_on_empty_page(run_db):
    client = FakeWooClient([woo_product(i) for i in range(1, 31)])

    async def _t(sm):
        shop = await make_shop(sm)
        return await run_sync(shop, 50, 100, client=client, sm=sm, sleep=no_sleep)

    result = run_db(_t)
    assert result.processed == 30
    assert result.has_more is False
    assert [c[3] for c in client.called("list_products")] == [0, 30]


def test_new_variable_product_pulls_variations_best_effort(run_db):
    client = FakeWooClient([woo_product(1, type="variable", variations=[502])])
    client.add_variation(1, 501, sku="V-501")

    async def _t(sm):
        shop = await make_shop(sm)
        first = await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        second = await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        async with sm() as session:
            product = await store.find_product_by_remote(session, shop.id, 1)
            variations = await store.list_variations(session, product.id)
        return first, second, variations

    first, second, variations = run_db(_t)
    assert first.variations_created == 1
    assert first.errors == 0
    assert [v.sku for v in variations] == ["V-501"]
    assert variations[0].remote_parent_id == 1
    # existing products are not re-fetched
    assert second.variations_created == 0
    assert len(client.called("get_variation")) == 2


def test_failed_page_keeps_progress_and_completes(run_db):
    client = FakeWooClient([woo_product(i) for i in range(1, 31)])
    client.fail_list_pages.add(2)

    async def _t(sm):
        shop = await make_shop(sm)
        result = await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        return result, await state.get_batch(result.batch_id, sm=sm)

    result, batch = run_db(_t)
    assert result.processed == 10
    assert result.page_error.startswith("Page 2 could not be fetched")
    assert batch.status == ImportStatus.COMPLETED
    assert batch.processed_rows == 10
    assert batch.errors[-1]["type"] == "woocommerce"


def test_unreachable_shop_raises_before_any_batch(run_db):
    client = FakeWooClient([woo_product(1)], online=False)

    async def _t(sm):
        shop = await make_shop(sm)
        with pytest.raises(ShopConnectionError):
            await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        async with sm() as session:
            batches = await _count(session, ImportBatch)
            refreshed = await session.get(Shop, shop.id)
        return batches, refreshed

    batches, shop = run_db(_t)
    assert batches == 0
    assert shop.status == ShopStatus.OFFLINE
    assert client.called("list_products") == []
    assert not catalog_sync.is_syncing(shop.id)


def test_successful_sync_marks_shop_online(run_db):
    client = FakeWooClient([woo_product(1)])

    async def _t(sm):
        shop = await make_shop(sm)
        await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        async with sm() as session:
            return await session.get(Shop, shop.id)

    shop = run_db(_t)
    assert shop.status == ShopStatus.ONLINE
    assert shop.last_ping is not None


def test_second_sync_for_same_shop_is_rejected(run_db):
    client = FakeWooClient([woo_product(1)])

    async def _t(sm):
        shop = await make_shop(sm)
        with catalog_sync._exclusive(shop.id):
            with pytest.raises(SyncAlreadyRunning):
                await run_sync(shop, 10, 100, client=client, sm=sm, sleep=no_sleep)
        assert not catalog_sync.is_syncing(shop.id)

    run_db(_t)
    assert client.calls == []


def test_cancelled_sync_stops_between_pages(run_db):
    client = FakeWooClient([woo_product(i) for i in range(1, 31)])

    async def _t(sm):
        shop = await make_shop(sm)

        async def cancel(_delay):
            async with sm() as session:
                batch_id = await session.scalar(select(func.max(ImportBatch.id)))
            await state.cancel_import(batch_id, sm=sm)

        result = await run_sync(shop, 10, 100, client=client, sm=sm, page_delay=1, sleep=cancel)
        return result, await state.get_batch(result.batch_id, sm=sm)

    result, batch = run_db(_t)
    assert result.cancelled is True
    assert result.processed == 10
    assert batch.status == ImportStatus.FAILED
    assert batch.errors[-1]["message"] == state.CANCEL_MESSAGE
