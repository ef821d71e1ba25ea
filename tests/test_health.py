"""
Tests for the health and metrics endpoints
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from media_job_worker.core.exceptions import UnitError, error_registry
from media_job_worker.services.health import create_health_app


@pytest.fixture
def consumer():
    consumer = MagicMock()
    consumer.health_snapshot.return_value = {
        "accepting": True,
        "in_flight": 1,
        "jobs": [{"job_id": "job-1", "stage": "transform", "unit_index": 0, "percent": 40}],
    }
    return consumer


class TestHealthApp:

    def test_health_reports_in_flight_jobs(self, consumer):
        error_registry.record_error(UnitError("fetch", "a", "boom"))
        client = TestClient(create_health_app(consumer))

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["in_flight"] == 1
        assert body["jobs"][0]["stage"] == "transform"
        assert body["errors"]["error_counts"] == {"UnitError": 1}
        assert 0 <= body["memory_percent"] <= 100

    def test_health_while_stopping(self, consumer):
        consumer.health_snapshot.return_value = {"accepting": False, "in_flight": 0, "jobs": []}
        client = TestClient(create_health_app(consumer))

        assert client.get("/health").json()["status"] == "stopping"

    def test_metrics_exposition(self, consumer):
        client = TestClient(create_health_app(consumer))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "media_worker_jobs_in_flight" in response.text
