from database import MemoryDocumentStore, StaleVersionError
from main import app, get_store
from promo_engine import get_device_key

ADMIN = {"X-Admin-Key": "admin-secret"}


def device_record(memory_store, device_id, pepper="test-pepper"):
    return memory_store.document["devices"][get_device_key(device_id, pepper)]


def test_root_lists_routes(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert "POST /api/createqr" in r.json()["routes"]
    assert r.headers["cache-control"] == "no-store"


def test_store_health(client):
    r = client.get("/test")
    assert r.status_code == 200
    assert r.json()["store_backend"] == "memory"
    assert r.json()["connection_status"] == "Connected"


# ---------------------- createqr ----------------------

def test_createqr_applies_monthly_promo(client, provider, memory_store):
    r = client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-1"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["idTransaksi"] == "TX1"
    assert data["originalAmount"] == 10000
    assert data["finalAmount"] == 9000
    assert data["discount"] == 1000
    assert data["promoType"] == "monthly"
    assert data["promoCode"] is None
    assert data["qrUrl"].endswith("/api/qr/TX1")
    assert data["qrVpsUrl"] == "http://provider.test/api/qr/TX1.png"
    assert provider.calls == [("create_qr", 9000, "theme1")]

    document = memory_store.document
    assert device_record(memory_store, "phone-1")["monthlyKey"] == "2026-03"
    tx = document["tx"]["TX1"]
    assert tx["originalAmount"] == 10000
    assert tx["amount"] == 9000
    assert tx["promoType"] == "monthly"
    assert tx["deviceId"] == "phone-1"
    assert memory_store.messages == ["tx TX1"]


def test_createqr_monthly_promo_only_once(client):
    client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-1"})
    r = client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-1", "theme": "theme2"})
    data = r.json()["data"]
    assert data["promoType"] == "none"
    assert data["finalAmount"] == 10000
    assert data["discount"] == 0


def test_createqr_without_device_pays_full(client, provider):
    r = client.post("/api/createqr", json={"amount": 5000})
    assert r.status_code == 200
    assert r.json()["data"]["promoType"] == "none"
    assert provider.calls == [("create_qr", 5000, "theme1")]


def test_createqr_rejects_bad_amount(client, provider):
    for body in ({"amount": 0}, {"amount": "abc"}, {}, {"amount": True}):
        r = client.post("/api/createqr", json=body)
        assert r.status_code == 400
        assert r.json() == {"success": False, "error": "amount invalid"}
    assert provider.calls == []


def test_createqr_unknown_code(client, provider, memory_store):
    r = client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-1", "promoCode": "nope"})
    assert r.status_code == 400
    assert r.json()["error"] == "PROMO_NOT_FOUND"
    assert provider.calls == []
    assert memory_store.messages == []


def test_createqr_custom_code_single_use(client):
    client.post("/api/admin/promo", json={"code": "hemat", "percent": 0, "fixed": 2500}, headers=ADMIN)

    first = client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-1", "promoCode": "Hemat"})
    assert first.status_code == 200
    assert first.json()["data"]["promoType"] == "custom"
    assert first.json()["data"]["promoCode"] == "HEMAT"
    assert first.json()["data"]["finalAmount"] == 7500

    second = client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-1", "promoCode": "HEMAT"})
    assert second.status_code == 400
    assert second.json()["error"] == "PROMO_ALREADY_USED"


def test_createqr_custom_code_needs_device(client):
    client.post("/api/admin/promo", json={"code": "HEMAT", "percent": 5}, headers=ADMIN)
    r = client.post("/api/createqr", json={"amount": 10000, "promoCode": "HEMAT"})
    assert r.status_code == 400
    assert r.json()["error"] == "DEVICE_REQUIRED"


def test_createqr_fractional_fixed_still_charges_one(client, provider):
    client.post("/api/admin/promo", json={"code": "HALF", "fixed": 0.5}, headers=ADMIN)

    r = client.post("/api/createqr", json={"amount": 1, "deviceId": "d1", "promoCode": "HALF"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["discount"] == 0
    assert data["finalAmount"] >= 1
    assert provider.calls == [("create_qr", 1, "theme1")]

    r = client.post("/api/createqr", json={"amount": 1.5, "deviceId": "d2", "promoCode": "HALF"})
    data = r.json()["data"]
    assert data["discount"] == 0.5
    assert data["finalAmount"] == 1


def test_createqr_provider_failure_records_nothing(client, provider, memory_store):
    provider.create_status = 503
    r = client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-1"})
    assert r.status_code == 503
    assert r.json()["error"] == "provider createqr failed"
    assert memory_store.document is None


def test_createqr_stale_store(client, provider):
    class RacingStore(MemoryDocumentStore):
        def save(self, store, version, message):
            raise StaleVersionError("lost race")

    app.dependency_overrides[get_store] = lambda: RacingStore()
    r = client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-1"})
    assert r.status_code == 409
    assert r.json()["success"] is False


# ---------------------- Provider relays ----------------------

def test_status_relay(client, provider):
    r = client.get("/api/status", params={"idTransaksi": "TX9"})
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "pending"
    assert client.get("/api/status").status_code == 400


def test_cancel_relay(client, provider):
    r = client.post("/api/cancel", json={"idTransaksi": "TX9"})
    assert r.status_code == 200
    assert provider.calls == [("cancel", "TX9")]
    assert client.post("/api/cancel", json={}).status_code == 400


def test_qr_png_relay(client):
    r = client.get("/api/qr/TX1")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content.startswith(b"\x89PNG")
    assert client.get("/api/qr/missing").status_code == 404


def test_setstatus_requires_callback_secret(client, provider):
    body = {"idTransaksi": "TX1", "status": "paid", "paidVia": "qris"}
    assert client.post("/api/setstatus", json=body).status_code == 401

    r = client.post("/api/setstatus", json=body, headers={"Authorization": "Bearer callback-secret"})
    assert r.status_code == 200
    assert provider.calls == [("set_status", "TX1", "paid", "qris")]

    missing = client.post("/api/setstatus", json={"idTransaksi": "TX1"}, headers={"X-Callback-Secret": "callback-secret"})
    assert missing.status_code == 400


# ---------------------- Admin ----------------------

def test_admin_requires_key(client):
    assert client.get("/api/admin/promos").status_code == 401
    assert client.get("/api/admin/promos", headers={"X-Admin-Key": "wrong"}).status_code == 401
    assert client.post("/api/admin/monthly", json={"percent": 5}).status_code == 401


def test_admin_upsert_and_list(client, memory_store):
    r = client.post(
        "/api/admin/promo",
        json={"code": " vip ", "percent": "15", "fixed": None, "expiresAt": "2030-01-01T00:00:00Z"},
        headers=ADMIN,
    )
    assert r.status_code == 200
    promo = r.json()["data"]
    assert promo["percent"] == 15
    assert promo["fixed"] == 0
    assert promo["active"] is True
    assert promo["expiresAt"].startswith("2030-01-01T00:00:00")
    assert memory_store.messages == ["admin upsert promo VIP"]

    listed = client.get("/api/admin/promos", headers=ADMIN).json()["data"]
    assert list(listed["custom"]) == ["VIP"]
    assert listed["monthly"]["percent"] == 10


def test_admin_upsert_replaces_previous(client):
    client.post("/api/admin/promo", json={"code": "VIP", "percent": 15, "fixed": 500, "active": False}, headers=ADMIN)
    r = client.post("/api/admin/promo", json={"code": "VIP", "percent": 5}, headers=ADMIN)
    promo = r.json()["data"]
    assert promo == {**promo, "percent": 5, "fixed": 0, "active": True, "expiresAt": None}


def test_admin_upsert_rejects_empty_code(client, memory_store):
    r = client.post("/api/admin/promo", json={"code": "  ", "percent": 5}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["error"] == "code required"
    assert memory_store.messages == []


def test_admin_upsert_rejects_bad_expiry(client):
    r = client.post("/api/admin/promo", json={"code": "X", "expiresAt": "soon"}, headers=ADMIN)
    assert r.status_code == 400


def test_admin_set_monthly(client):
    r = client.post("/api/admin/monthly", json={"percent": 20, "active": True}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["data"]["percent"] == 20

    created = client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-2"})
    assert created.json()["data"]["discount"] == 2000


def test_admin_disable_monthly(client):
    client.post("/api/admin/monthly", json={"percent": 20, "active": False}, headers={"Authorization": "Bearer admin-secret"})
    created = client.post("/api/createqr", json={"amount": 10000, "deviceId": "phone-2"})
    assert created.json()["data"]["promoType"] == "none"
