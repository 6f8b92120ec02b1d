import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app
from app.models_sqlalchemy.models import Job
from app.services.job_queue import job_backend

from conftest import make_order, make_product

ADMIN_KEY = "admin-test-key"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    return TestClient(app, headers={"X-Admin-Key": ADMIN_KEY})


def test_admin_requires_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    anonymous = TestClient(app)
    assert anonymous.get("/api/admin/job-queue/stats").status_code == 403
    assert anonymous.get("/api/admin/job-queue/stats", headers={"X-Admin-Key": "wrong"}).status_code == 403


def test_admin_disabled_without_key_unless_debug(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", None)
    monkeypatch.setattr(settings, "DEBUG", False)
    assert TestClient(app).get("/api/admin/job-queue/stats").status_code == 403

    monkeypatch.setattr(settings, "DEBUG", True)
    assert TestClient(app).get("/api/admin/job-queue/stats").status_code == 200


def test_stats(client):
    job_backend.enqueue("order_notification", {}, priority="high")
    job_backend.enqueue("inventory_update", {})

    response = client.get("/api/admin/job-queue/stats", params={"hours": 12})

    assert response.status_code == 200
    body = response.json()
    assert body["time_range_hours"] == 12
    assert body["total"] == 2
    assert body["by_type"] == {"order_notification": 1, "inventory_update": 1}


def test_stats_validates_range(client):
    assert client.get("/api/admin/job-queue/stats", params={"hours": 0}).status_code == 422


def test_failed_jobs_and_retry(client, db):
    failed = job_backend.enqueue("order_notification", {"order_id": "x"})
    job_backend.nack(failed, "boom", terminal=True)
    pending = job_backend.enqueue("order_notification", {})

    listing = client.get("/api/admin/job-queue/failed").json()
    assert listing["count"] == 1
    assert listing["jobs"][0]["id"] == failed

    assert client.get(f"/api/admin/job-queue/{failed}").json()["status"] == "failed"
    assert client.get("/api/admin/job-queue/missing").status_code == 404

    assert client.post(f"/api/admin/job-queue/{pending}/retry").status_code == 409
    assert client.post(f"/api/admin/job-queue/{failed}/retry").json() == {"success": True, "job_id": failed}
    db.expire_all()
    job = db.get(Job, failed)
    assert job.status == "pending"
    assert job.attempts == 0


def test_cleanup(client):
    response = client.post("/api/admin/job-queue/cleanup", params={"days": 7})
    assert response.json() == {"success": True, "deleted": 0, "older_than_days": 7}


def test_process_runs_one_batch(client, db):
    product = make_product(db, stock=4)
    order = make_order(db, status="shipped", items=[(product, 1)])
    db.commit()
    job_id = job_backend.enqueue("inventory_update", {"order_id": order.id}, priority="urgent")

    response = client.post("/api/admin/job-queue/process")

    assert response.json() == {"success": True, "processed": 1}
    db.expire_all()
    assert db.get(Job, job_id).status == "completed"
