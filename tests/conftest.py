from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from config import Settings, get_settings
from database import MemoryDocumentStore
from main import app, get_now, get_provider, get_store
from provider import ProviderResponse

# 2026-03-15 12:00 UTC is 19:00 the same day in Asia/Jakarta.
NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeProvider:
    base_url = "http://provider.test"

    def __init__(self):
        self.calls = []
        self.create_status = 200
        self._counter = 0

    def create_qr(self, amount, theme="theme1"):
        self.calls.append(("create_qr", amount, theme))
        if self.create_status != 200:
            return ProviderResponse(self.create_status, {"success": False, "error": "boom"})
        self._counter += 1
        tx_id = f"TX{self._counter}"
        return ProviderResponse(200, {"success": True, "data": {"idTransaksi": tx_id, "amount": amount}})

    def status(self, tx_id):
        self.calls.append(("status", tx_id))
        return ProviderResponse(200, {"success": True, "data": {"idTransaksi": tx_id, "status": "pending"}})

    def cancel(self, tx_id):
        self.calls.append(("cancel", tx_id))
        return ProviderResponse(200, {"success": True, "data": {"idTransaksi": tx_id, "status": "cancelled"}})

    def qr_png(self, tx_id):
        self.calls.append(("qr_png", tx_id))
        if tx_id == "missing":
            return ProviderResponse(404, b"")
        return ProviderResponse(200, b"\x89PNG\r\n\x1a\nfake")

    def set_status(self, tx_id, status, paid_at=None, note=None, paid_via=None):
        self.calls.append(("set_status", tx_id, status, paid_via))
        return ProviderResponse(200, {"success": True})


@pytest.fixture
def settings():
    return Settings(
        admin_key="admin-secret",
        callback_secret="callback-secret",
        device_pepper="test-pepper",
        store_backend="memory",
    )


@pytest.fixture
def memory_store():
    return MemoryDocumentStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def client(settings, memory_store, provider):
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_store] = lambda: memory_store
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_now] = lambda: NOW
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
