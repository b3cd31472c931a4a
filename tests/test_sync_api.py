"""
API tests through FastAPI's TestClient. The lifespan (scheduler, credential
bootstrap) is not started; the export service is swapped for one wired to
fakes via dependency_overrides.
"""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from shipsync.api.sync import get_service
from shipsync.main import app

from fakes import FIXED_NOW, Harness, make_shipments


@pytest.fixture
def harness():
    h = Harness(shipments=make_shipments(3, FIXED_NOW - timedelta(minutes=5)))
    app.dependency_overrides[get_service] = lambda: h.service
    yield h
    app.dependency_overrides.clear()


@pytest.fixture
def client(harness):
    return TestClient(app)


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_status(self, client):
        body = client.get("/status").json()
        assert body["export"]["export_tab"] == "ShipStation Export"


class TestRunEndpoints:

    def test_run_in_background(self, client, harness):
        response = client.post("/sync/run")
        assert response.status_code == 200
        assert response.json()["check_progress"] == "/sync/progress"

        # TestClient runs background tasks before returning
        progress = client.get("/sync/progress").json()
        assert progress["incremental"]["status"] == "completed"
        assert progress["incremental"]["result"]["rows_written"] == 3
        assert len(harness.tab.data_rows()) == 3

    def test_history(self, client):
        client.post("/sync/run")
        body = client.get("/sync/history").json()
        assert body["recent_runs"][0]["status"] == "success"
        assert body["backfill"] == {"active": False}

    def test_reference_refresh(self, client, harness):
        harness.api.stores = [{"storeId": 40, "storeName": "New Channel"}]
        client.post("/sync/reference/refresh")
        progress = client.get("/sync/progress").json()
        assert progress["reference"]["status"] == "completed"
        assert progress["reference"]["result"]["added"]["stores"] == 1


class TestBackfillEndpoints:

    def test_start_status_cancel(self, client, harness):
        response = client.post("/sync/backfill", json={"start": "2026-01-01T00:00:00", "end": "2026-01-31T00:00:00"})
        assert response.status_code == 200
        assert response.json()["checkpoint"]["phase"] == "shipments"
        assert harness.scheduled == [0]

        status = client.get("/sync/backfill").json()
        assert status["active"] is True

        conflict = client.post("/sync/backfill", json={"start": "2026-02-01T00:00:00", "end": "2026-02-02T00:00:00"})
        assert conflict.status_code == 409

        assert client.post("/sync/backfill/resume").status_code == 200

        cancelled = client.delete("/sync/backfill").json()
        assert cancelled["cancelled"] is True
        assert harness.cancelled == [True]
        assert client.get("/sync/backfill").json() == {"active": False}

    def test_inverted_range(self, client):
        response = client.post("/sync/backfill", json={"start": "2026-02-01T00:00:00", "end": "2026-01-01T00:00:00"})
        assert response.status_code == 400

    def test_resume_without_backfill(self, client):
        assert client.post("/sync/backfill/resume").status_code == 404

    def test_offset_converted_to_shipstation_time(self, client):
        response = client.post("/sync/backfill", json={"start": "2026-01-01T00:00:00Z", "end": "2026-01-02T00:00:00Z"})
        assert response.status_code == 200
        # Midnight UTC is 16:00 the previous day in Pacific time
        assert response.json()["checkpoint"]["range_start"] == datetime(2025, 12, 31, 16, 0).isoformat()


class TestSettingsEndpoints:

    def test_carton_sizes(self, client):
        response = client.put("/sync/settings/carton-sizes", json={"s_max": 300, "m_max": 900, "l_max": 3000})
        assert response.status_code == 200
        assert response.json()["carton_thresholds"]["s_max"] == 300

        settings = client.get("/sync/settings").json()
        assert settings["carton_thresholds"]["m_max"] == 900

    def test_carton_sizes_rejected(self, client):
        response = client.put("/sync/settings/carton-sizes", json={"s_max": 900, "m_max": 300, "l_max": 3000})
        assert response.status_code == 400

    def test_markup_and_emails(self, client):
        assert client.put("/sync/settings/markup", json={"markup": 7.5}).json()["global_markup"] == 7.5
        assert client.put("/sync/settings/client-emails", json={"enabled": True}).json()["client_emails_enabled"] is True

        settings = client.get("/sync/settings").json()
        assert settings["global_markup"] == 7.5
        assert settings["client_emails_enabled"] is True
