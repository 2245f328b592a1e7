import pytest
from fastapi.testclient import TestClient

from woocatalog import db, routes
from woocatalog.config import settings
from woocatalog.main_app import app
from woocatalog.sync.catalog_sync import SyncAlreadyRunning, SyncResult
from woocatalog.store import catalog_store as store
from woocatalog.woo.payloads import product_values, variation_values
from woocatalog.woo.woocommerce import ShopConnectionError
from conftest import FakeWooClient, woo_product

AUTH = ("admin", "s3cret")


@pytest.fixture
def api(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "ADMIN_USER", AUTH[0])
    monkeypatch.setattr(settings, "ADMIN_PASS", AUTH[1])
    monkeypatch.setattr(db, "_engine", None)
    monkeypatch.setattr(db, "_sessionmaker", None)

    jobs = []

    async def capture(job):
        jobs.append(job)

    monkeypatch.setattr(routes, "enqueue_job", capture)
    with TestClient(app) as client:
        client.auth = AUTH
        client.jobs = jobs
        yield client


def _create_shop(api, name="Main", base_url="https://shop.example.com/"):
    r = api.post("/api/shops", json={
        "name": name, "base_url": base_url, "consumer_key": "ck_1", "consumer_secret": "cs_1",
    })
    assert r.status_code == 201, r.text
    return r.json()


def test_root_is_open_but_api_requires_admin(api):
    assert api.get("/").json()["status"] == "running"
    r = api.get("/api/shops", auth=("admin", "wrong"))
    assert r.status_code == 401
    assert r.headers["www-authenticate"] == "Basic"


def test_create_and_list_shops(api):
    shop = _create_shop(api)
    assert shop["base_url"] == "https://shop.example.com"
    assert shop["status"] == "unknown"
    assert "consumer_secret" not in shop

    r = api.post("/api/shops", json={"name": "Bad", "base_url": "shop.example.com",
                                     "consumer_key": "k", "consumer_secret": "s"})
    assert r.status_code == 400

    shops = api.get("/api/shops").json()["shops"]
    assert [s["name"] for s in shops] == ["Main"]


def test_create_shop_rejects_malformed_base_url(api):
    r = api.post("/api/shops", json={"name": "Bad port", "base_url": "http://shop.example.com:notaport",
                                     "consumer_key": "k", "consumer_secret": "s"})
    assert r.status_code == 400
    assert "Invalid base_url" in r.json()["detail"]
    assert api.get("/api/shops").json()["shops"] == []


def test_only_one_shop_is_default(api):
    def create(name, is_default):
        r = api.post("/api/shops", json={"name": name, "base_url": f"https://{name.lower()}.example.com",
                                         "consumer_key": "k", "consumer_secret": "s", "is_default": is_default})
        assert r.status_code == 201, r.text
        return r.json()["id"]

    def defaults():
        return [s["id"] for s in api.get("/api/shops").json()["shops"] if s["is_default"]]

    first = create("First", True)
    second = create("Second", True)
    third = create("Third", False)
    assert defaults() == [second]

    r = api.post(f"/api/shops/{third}/set-default")
    assert r.json() == {"success": True, "shop_id": third}
    assert defaults() == [third]

    assert api.post(f"/api/shops/{first}/set-default").status_code == 200
    assert defaults() == [first]
    assert api.post("/api/shops/999/set-default").status_code == 404
    assert defaults() == [first]


def test_connection_check_updates_shop_status(api, monkeypatch):
    shop = _create_shop(api)
    monkeypatch.setattr(routes, "client_for_shop", lambda s: FakeWooClient(online=False))

    r = api.post(f"/api/shops/{shop['id']}/test")
    assert r.json() == {"shop_id": shop["id"], "ok": False, "status": "offline"}
    assert api.get("/api/shops").json()["shops"][0]["status"] == "offline"
    assert api.post("/api/shops/999/test").status_code == 404


def test_upload_queues_job_then_detail_and_cancel(api):
    shop = _create_shop(api)
    r = api.post(
        "/api/imports",
        data={"shop_id": str(shop["id"]), "type": "parent"},
        files={"file": ("parents.csv", b"sku,post_title\nW-1,Widget\n", "text/csv")},
    )
    assert r.status_code == 202, r.text
    batch_id = r.json()["batch_id"]
    assert r.json()["status"] == "pending"

    assert len(api.jobs) == 1
    job = api.jobs[0]
    assert job["type"] == "csv.import"
    assert job["batch_id"] == batch_id
    with open(job["path"], "rb") as fh:
        assert fh.read().startswith(b"sku,post_title")

    detail = api.get(f"/api/imports/{batch_id}").json()
    assert detail["status"] == "pending"
    assert detail["type"] == "parent"
    assert detail["filename"] == "parents.csv"
    assert detail["import_errors"] == []

    listed = api.get("/api/imports", params={"shop_id": shop["id"]}).json()["imports"]
    assert [b["id"] for b in listed] == [batch_id]

    assert api.post(f"/api/imports/{batch_id}/cancel").status_code == 200
    cancelled = api.get(f"/api/imports/{batch_id}").json()
    assert cancelled["status"] == "failed"
    assert cancelled["errors"][-1]["message"] == "Import cancelled by user"
    assert api.post(f"/api/imports/{batch_id}/cancel").status_code == 409


@pytest.mark.parametrize(
    "form, upload",
    [
        ({"type": "sync"}, ("a.csv", b"sku\n1\n")),
        ({"type": "parent"}, ("a.txt", b"sku\n1\n")),
        ({"type": "parent"}, ("a.csv", b"   \n")),
    ],
)
def test_upload_rejects_bad_input(api, form, upload):
    shop = _create_shop(api)
    r = api.post("/api/imports", data={"shop_id": str(shop["id"]), **form},
                 files={"file": (upload[0], upload[1], "text/csv")})
    assert r.status_code == 400
    assert api.jobs == []


def test_unknown_import(api):
    assert api.get("/api/imports/404").status_code == 404
    assert api.post("/api/imports/404/cancel").status_code == 404


def test_sync_schedule_start_and_stop(api):
    shop = _create_shop(api)
    url = f"/api/shops/{shop['id']}/sync-schedule"

    assert api.post(url, json={"interval": 30}).status_code == 400
    r = api.post(url, json={"interval": 3600})
    assert r.status_code == 200
    assert r.json()["interval"] == 3600
    assert r.json()["last_run"] is not None

    assert api.post(url, json={"interval": 7200}).json()["interval"] == 7200
    assert api.delete(url).status_code == 200
    assert api.delete(url).status_code == 404
    assert api.post("/api/shops/999/sync-schedule", json={"interval": 3600}).status_code == 404


def test_sync_endpoint_maps_engine_errors(api, monkeypatch):
    shop = _create_shop(api)
    outcomes = [ShopConnectionError("Could not connect to shop 'Main'"), SyncAlreadyRunning("busy")]

    async def fake_sync(shop, batch_size=None, max_products=None):
        if outcomes:
            raise outcomes.pop(0)
        return SyncResult(batch_id=1, processed=3, created=3)

    monkeypatch.setattr(routes, "run_sync", fake_sync)
    body = {"shop_id": shop["id"], "batch_size": 10}
    assert api.post("/api/products/sync", json=body).status_code == 400
    assert api.post("/api/products/sync", json=body).status_code == 409
    ok = api.post("/api/products/sync", json=body).json()
    assert ok["success"] is True
    assert ok["stats"]["created"] == 3

    assert api.post("/api/products/sync", json={"shop_id": shop["id"], "batch_size": 500}).status_code == 422


def test_transfer_requires_a_selection(api):
    shop = _create_shop(api)
    r = api.post("/api/products/transfer", json={"target_shop_id": shop["id"]})
    assert r.status_code == 400
    r = api.post("/api/products/transfer", json={"target_shop_id": shop["id"], "product_ids": [12345]})
    assert r.status_code == 404


def test_variant_selection_round_trip(api):
    shop = _create_shop(api)

    async def seed():
        async with db.get_sessionmaker().begin() as session:
            product = await store.upsert_product(session, shop["id"], 1, product_values(woo_product(1, type="variable")))
            ids = []
            for vid in (11, 12):
                v = await store.upsert_variation(session, shop["id"], product.id, vid, 1,
                                                 variation_values({"id": vid, "sku": f"V-{vid}"}))
                ids.append(v.id)
            return product.id, ids

    product_id, variation_ids = api.portal.call(seed)

    r = api.put("/api/product-shop-variants", json={"product_id": product_id, "variation_ids": [variation_ids[1], 999]})
    assert r.json() == {"product_id": product_id, "variation_ids": [variation_ids[1]]}
    got = api.get("/api/product-shop-variants", params={"product_id": product_id}).json()
    assert got["variation_ids"] == [variation_ids[1]]

    assert api.put("/api/product-shop-variants", json={"product_id": 999, "variation_ids": []}).status_code == 404
