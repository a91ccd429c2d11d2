from __future__ import annotations

from fastapi.testclient import TestClient

from deliverable_review.main import app

client = TestClient(app)


def test_healthz():
    """Test the /healthz endpoint."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_version():
    """Test the /version endpoint."""
    response = client.get("/version")
    assert response.status_code == 200
    # The version comes from the installed package metadata.
    assert "version" in response.json()
    assert isinstance(response.json()["version"], str)
