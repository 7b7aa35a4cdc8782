"""
Tests for the health endpoint.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from seo_billing.api.routes import health
from seo_billing.database import session as session_module


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(health.router)
    return TestClient(app)


def test_degraded_without_database(client, monkeypatch):
    monkeypatch.setattr(session_module, "_engine", None)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "degraded", "database": "unavailable", "cache": "memory"}


def test_ok_with_database(client, monkeypatch, db_engine):
    monkeypatch.setattr(session_module, "_engine", db_engine)

    response = client.get("/health")

    assert response.json()["status"] == "ok"
    assert response.json()["database"] == "ok"
