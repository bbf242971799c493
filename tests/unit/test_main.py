"""
Unit tests for FastAPI application.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from shiplog import __version__
from shiplog.main import app
from shiplog.utils.resilience import RedisConnectionError


def make_container(ping=None, lengths=None):
    redis = SimpleNamespace(
        ping=AsyncMock(return_value=True, side_effect=ping),
        get_queue_lengths=AsyncMock(return_value=lengths or {}),
    )
    return SimpleNamespace(redis=redis)


@pytest.fixture
def client():
    """Create a test client for the FastAPI application."""
    return TestClient(app)


def test_health_check(client):
    """Test health check endpoint."""
    queues = {"digest": 2, "report": 0, "delayed": 1, "failed": 0}

    with patch("shiplog.services.container.get_container", return_value=make_container(lengths=queues)):
        response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["version"] == __version__
    assert data["redis"] == "connected"
    assert data["queues"] == queues


def test_health_check_degraded(client):
    container = make_container(ping=RedisConnectionError("Connection refused"))

    with patch("shiplog.services.container.get_container", return_value=container):
        response = client.get("/health")

    data = response.json()
    assert data["status"] == "degraded"
    assert data["redis"] == "disconnected"
    assert data["errors"] == ["Connection refused"]


def test_root_endpoint(client):
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert "message" in data
    assert data["version"] == __version__
    assert data["docs"] == "/docs"
