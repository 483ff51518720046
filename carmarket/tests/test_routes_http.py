"""HTTP-layer tests for listing endpoints."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carmarket.database.models import Base
from carmarket.services.update_protocol import ConcurrentModificationError


@pytest.fixture
def test_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    return TestSession


@pytest.fixture
def client(test_session):
    with patch("carmarket.database.db.SessionLocal", test_session):
        from carmarket.api.app import create_app
        app = create_app()
        yield TestClient(app)


def _create(client, **fields):
    resp = client.post("/api/v1/listings", json={"fields": fields, "skip_enrichment": True})
    assert resp.status_code == 201
    return resp.json()


class TestCreateAndGet:

    def test_create_draft(self, client):
        data = _create(client, make="FORD", registration="ab12 cde")

        assert data["registration"] == "AB12CDE"
        assert data["status"] == "draft"
        assert data["version"] == 1
        assert data["history_check_status"] == "pending"
        assert data["running_costs"]["fuel_economy"] == {"urban": None, "extra_urban": None, "combined": None}

    def test_get(self, client):
        created = _create(client, make="FORD")

        resp = client.get(f"/api/v1/listings/{created['id']}")

        assert resp.status_code == 200
        assert resp.json()["make"] == "FORD"

    def test_get_missing(self, client):
        assert client.get("/api/v1/listings/999").status_code == 404

    def test_unknown_field(self, client):
        resp = client.post("/api/v1/listings", json={"fields": {"wheels": 4}, "skip_enrichment": True})
        assert resp.status_code == 400


class TestUpdate:

    def test_patch(self, client):
        created = _create(client, make="FORD")

        resp = client.patch(f"/api/v1/listings/{created['id']}", json={"version": 1, "fields": {"color": "Red"}})

        assert resp.status_code == 200
        body = resp.json()
        assert body["version"] == 2
        assert body["color"] == "Red"
        assert body["user_edited_fields"] == ["color"]

    def test_patch_dates_serialized(self, client):
        created = _create(client)

        resp = client.patch(f"/api/v1/listings/{created['id']}", json={"version": 1, "fields": {"mot_due": "2025-06-30"}})

        assert resp.json()["mot_due"] == "2025-06-30"

    def test_conflict_maps_to_409(self, client):
        created = _create(client)

        with patch("carmarket.api.routes.apply_update", side_effect=ConcurrentModificationError(created["id"], 3)):
            resp = client.patch(f"/api/v1/listings/{created['id']}", json={"version": 1, "fields": {"price": 1}})

        assert resp.status_code == 409
        assert "retry" in resp.json()["detail"]

    def test_version_required(self, client):
        created = _create(client)
        resp = client.patch(f"/api/v1/listings/{created['id']}", json={"fields": {"price": 1}})
        assert resp.status_code == 422

    def test_patch_missing(self, client):
        resp = client.patch("/api/v1/listings/999", json={"version": 1, "fields": {}})
        assert resp.status_code == 404


class TestStatusAndDelete:

    def test_invalid_transition(self, client):
        created = _create(client)

        resp = client.post(f"/api/v1/listings/{created['id']}/status", json={"version": 1, "status": "sold"})

        assert resp.status_code == 409

    def test_duplicate_registration(self, client):
        publishable = {
            "registration": "AB12CDE",
            "price": 5000,
            "images": ["https://img.test/a.jpg"],
            "seller_contact": {"email": "a@example.com", "phone": "07700900000"},
        }
        assert _create(client, **publishable)["status"] == "active"

        resp = client.post("/api/v1/listings", json={"fields": publishable, "skip_enrichment": True})

        assert resp.status_code == 409

    def test_delete(self, client):
        created = _create(client)

        assert client.delete(f"/api/v1/listings/{created['id']}").status_code == 204
        assert client.get(f"/api/v1/listings/{created['id']}").status_code == 404
        assert client.delete(f"/api/v1/listings/{created['id']}").status_code == 404


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"
