import pytest
from fastapi.testclient import TestClient

from webp_delivery import config as app_config
from webp_delivery import db
from webp_delivery.main import create_app

pytestmark = pytest.mark.usefixtures("database")


@pytest.fixture
def client(fake_store):
    return TestClient(create_app(store=fake_store, site_dir=None))


@pytest.fixture
def library(make_jpeg):
    for i in range(5):
        make_jpeg(f"photo{i}.jpg", size=(16, 16))
        db.register_attachment(f"photo{i}.jpg", "image/jpeg")


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_settings(client):
    body = client.get("/api/settings").json()
    assert body["default_quality"] == app_config.DEFAULT_QUALITY
    assert body["high_compression_quality"] == app_config.HIGH_COMPRESSION_QUALITY
    assert body["max_batch_size"] == app_config.MAX_BATCH_SIZE


def test_advance_until_complete(client, library):
    first = client.post("/api/bulk/advance", json={"batch_size": 2})
    assert first.status_code == 200
    body = first.json()
    assert body["progress"]["total"] == 5
    assert body["progress"]["processed"] == 2
    assert body["percentage"] == pytest.approx(40.0)
    assert body["remaining"] == 3

    client.post("/api/bulk/advance", json={"batch_size": 2})
    last = client.post("/api/bulk/advance", json={"batch_size": 2}).json()
    assert last["remaining"] == 0
    assert last["progress"]["current_batch"] == 3

    progress = client.get("/api/bulk/progress").json()
    assert progress["state"] == "complete"
    assert progress["percentage"] == pytest.approx(100.0)


def test_empty_library_is_404(client):
    resp = client.post("/api/bulk/advance", json={"batch_size": 10})
    assert resp.status_code == 404
    assert resp.json()["detail"] == {
        "message": "No images found for conversion.",
        "details": "Please upload some JPEG or PNG images to the media library.",
    }


@pytest.mark.parametrize("batch_size", [0, -5, app_config.MAX_BATCH_SIZE + 1])
def test_batch_size_is_validated(client, library, batch_size):
    resp = client.post("/api/bulk/advance", json={"batch_size": batch_size})
    assert resp.status_code == 422
    assert db.get_option(app_config.PROGRESS_OPTION_NAME) is None


def test_default_batch_size(client, library):
    body = client.post("/api/bulk/advance", json={}).json()
    assert body["progress"]["processed"] == min(5, app_config.DEFAULT_BATCH_SIZE)


def test_reset(client, library):
    client.post("/api/bulk/advance", json={"batch_size": 2})
    assert client.post("/api/bulk/reset").json() == {"ok": True}
    progress = client.get("/api/bulk/progress").json()
    assert progress["state"] == "uninitialized"
    assert progress["progress"]["processed"] == 0


def test_library_import_endpoint(client, make_jpeg):
    make_jpeg("2024/a.jpg", size=(16, 16))
    make_jpeg("2024/b.jpg", size=(16, 16))
    assert client.post("/api/library/import").json() == {"imported": 2}
    assert client.post("/api/library/import").json() == {"imported": 0}


def test_admin_token_required_when_configured(client, library, monkeypatch):
    monkeypatch.setattr(app_config, "ADMIN_TOKEN", "s3cret")

    denied = client.post("/api/bulk/advance", json={"batch_size": 1})
    assert denied.status_code == 403
    assert denied.json()["detail"] == {"message": "Unauthorized"}
    assert client.get("/api/bulk/progress", headers={"X-Admin-Token": "wrong"}).status_code == 403
    assert db.get_option(app_config.PROGRESS_OPTION_NAME) is None

    allowed = client.post("/api/bulk/advance", json={"batch_size": 1}, headers={"X-Admin-Token": "s3cret"})
    assert allowed.status_code == 200
    # Health stays open for probes
    assert client.get("/api/health").status_code == 200
