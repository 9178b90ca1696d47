"""
HTTP surface: wire format of /verify, status codes, the admin channel and
the periodic sweep.
"""
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import main
from config import settings
from conftest import DAY_MS, DURATIONS, T0, FakeClock
from exceptions import StorageUnavailable
from key_store import InMemoryKeyStore
from main import create_app

ADMIN = {"X-Admin-Token": "s3cret"}


@pytest.fixture()
def api_clock():
    return FakeClock()


@pytest.fixture()
def api_store():
    return InMemoryKeyStore()


@pytest.fixture()
def client(api_store, api_clock):
    app = create_app(
        key_store=api_store,
        durations=DURATIONS,
        clock=api_clock,
        admin_token="s3cret",
        sweep_interval_seconds=0,
    )
    with TestClient(app) as test_client:
        yield test_client


def _verify(client, key, device_id):
    return client.post("/verify", json={"key": key, "deviceId": device_id})


def test_verify_unknown_key(client):
    response = _verify(client, "nope", "dev-A")
    assert response.status_code == 200
    assert response.json() == {"status": "invalid"}


def test_verify_lifecycle(client, api_store, api_clock):
    api_store.create("K1", "24h")

    first = _verify(client, "K1", "dev-A")
    assert first.json() == {"status": "valid", "expiresAt": T0 + DAY_MS}

    api_clock.advance(10)
    assert _verify(client, "K1", "dev-A").json() == {"status": "valid", "expiresAt": T0 + DAY_MS}
    assert _verify(client, "K1", "dev-B").json() == {"status": "invalid_device"}

    api_clock.now = T0 + DAY_MS + 1
    assert _verify(client, "K1", "dev-A").json() == {"status": "expired"}
    api_clock.advance(1)
    assert _verify(client, "K1", "dev-A").json() == {"status": "invalid"}


@pytest.mark.parametrize("body", [{}, {"key": "K1"}, {"deviceId": "dev-A"}, {"key": "", "deviceId": "dev-A"}])
def test_verify_missing_fields_is_client_error(client, body):
    response = client.post("/verify", json=body)
    assert response.status_code == 400
    assert response.json()["status"] == "malformed_request"


def test_verify_garbage_body_is_client_error(client):
    response = client.post("/verify", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["status"] == "malformed_request"


class DownStore(InMemoryKeyStore):
    def get(self, key):
        raise StorageUnavailable("timeout")

    def list_all(self):
        raise StorageUnavailable("timeout")


def test_storage_outage_maps_to_error():
    app = create_app(key_store=DownStore(), durations=DURATIONS, admin_token="s3cret",
                     sweep_interval_seconds=0)
    with TestClient(app) as client:
        response = _verify(client, "K1", "dev-A")
        assert response.status_code == 503
        assert response.json() == {"status": "error"}

        listing = client.get("/admin/keys", headers=ADMIN)
        assert listing.status_code == 503
        assert listing.json()["status"] == "error"


# ---------------------------------------------------------------------------
# Admin channel
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("headers", [
    {},
    {"X-Admin-Token": "wrong"},
    {"X-Admin-Token": "café".encode("latin-1")},
])
def test_admin_requires_token(client, headers):
    assert client.get("/admin/keys", headers=headers).status_code == 401
    assert client.post("/admin/add-key", json={"key": "K", "type": "7d"}, headers=headers).status_code == 401


def test_admin_closed_without_configured_token(api_store):
    app = create_app(key_store=api_store, durations=DURATIONS, admin_token="", sweep_interval_seconds=0)
    with TestClient(app) as client:
        assert client.get("/admin/keys", headers={"X-Admin-Token": ""}).status_code == 401


def test_add_key(client, api_store):
    response = client.post("/admin/add-key", json={"key": "K2", "type": "7d"}, headers=ADMIN)
    assert response.status_code == 200
    assert response.json() == {"status": "added", "key": "K2"}
    assert api_store.get("K2").license_type == "7d"


def test_add_existing_key(client):
    client.post("/admin/add-key", json={"key": "K2", "type": "7d"}, headers=ADMIN)
    response = client.post("/admin/add-key", json={"key": "K2", "type": "7d"}, headers=ADMIN)
    assert response.status_code == 409
    assert response.json()["status"] == "error"


def test_add_unknown_type(client):
    response = client.post("/admin/add-key", json={"key": "K2", "type": "forever"}, headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["status"] == "error"


def test_revoke_key(client):
    client.post("/admin/add-key", json={"key": "K2", "type": "7d"}, headers=ADMIN)
    response = client.post("/admin/revoke-key", json={"key": "K2"}, headers=ADMIN)
    assert response.json() == {"status": "revoked", "key": "K2"}

    assert _verify(client, "K2", "dev-A").json() == {"status": "invalid"}

    missing = client.post("/admin/revoke-key", json={"key": "K2"}, headers=ADMIN)
    assert missing.status_code == 404
    assert missing.json()["status"] == "error"


def test_list_keys(client, api_clock):
    client.post("/admin/add-key", json={"key": "K2", "type": "7d"}, headers=ADMIN)
    client.post("/admin/add-key", json={"key": "K3", "type": "1m"}, headers=ADMIN)
    _verify(client, "K3", "dev-A")

    listing = {row["key"]: row for row in client.get("/admin/keys", headers=ADMIN).json()}
    assert listing["K2"] == {
        "key": "K2", "type": "7d", "activatedAt": None, "expiresAt": None,
        "deviceId": None, "active": False,
    }
    assert listing["K3"]["deviceId"] == "dev-A"
    assert listing["K3"]["active"] is True

    api_clock.advance(60_001)
    keys = [row["key"] for row in client.get("/admin/keys", headers=ADMIN).json()]
    assert keys == ["K2"]


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["backend"] == "memory"
    assert body["licenseTypes"] == ["1m", "24h", "7d"]


# ---------------------------------------------------------------------------
# Periodic sweep and module-level app
# ---------------------------------------------------------------------------

def test_sweep_job_purges_expired_keys(api_store, api_clock):
    app = create_app(key_store=api_store, durations=DURATIONS, clock=api_clock,
                     admin_token="s3cret", sweep_interval_seconds=1)
    with TestClient(app) as client:
        api_store.create("K1", "1m")
        api_store.create("K2", "7d")
        assert _verify(client, "K1", "dev-A").json()["status"] == "valid"
        api_clock.advance(60_001)

        deadline = time.monotonic() + 5
        while api_store.get("K1") is not None and time.monotonic() < deadline:
            time.sleep(0.05)

        assert api_store.get("K1") is None
        assert api_store.get("K2") is not None


def test_module_level_app_is_built_on_first_access(monkeypatch):
    monkeypatch.setattr(settings, "KEY_STORE_BACKEND", "memory")
    monkeypatch.delitem(main.__dict__, "app", raising=False)

    app = main.app
    try:
        assert isinstance(app, FastAPI)
        assert main.app is app
        with TestClient(app) as client:
            assert client.get("/health").json()["backend"] == "memory"
    finally:
        del main.app
