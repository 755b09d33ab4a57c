import httpx
import pytest
from fastapi.testclient import TestClient

from cycleflow.db.session import get_db
from cycleflow.main import app


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _mock_strava(monkeypatch, payload):
    def mock_get(url, **kwargs):
        return httpx.Response(200, json=payload, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", mock_get)


def test_strava_import(client, strava_integration, monkeypatch):
    _mock_strava(
        monkeypatch,
        [
            {"id": 1, "name": "Ride", "type": "Ride", "start_date": "2025-01-05T08:00:00Z", "distance": 20000.0},
            {"id": 2, "name": "Run", "type": "Run", "start_date": "2025-01-06T08:00:00Z", "distance": 5000.0},
        ],
    )

    response = client.post("/imports/strava", json={"userId": "user-1"})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "imported": 1,
        "skipped": 0,
        "errors": 0,
        "total": 1,
        "errorSamples": [],
    }


def test_strava_import_without_integration(client):
    response = client.post("/imports/strava", json={"user_id": "nobody"})

    assert response.status_code == 404


def test_strava_import_requires_user_id(client):
    response = client.post("/imports/strava", json={})

    assert response.status_code == 422


def test_strava_import_disabled_sync(client, db_session, strava_integration):
    strava_integration.sync_enabled = False
    db_session.commit()

    response = client.post("/imports/strava", json={"userId": "user-1"})

    assert response.status_code == 400


def test_gps_backfill_without_candidates(client, strava_integration):
    response = client.post("/imports/strava/gps-backfill", json={"userId": "user-1"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "updated": 0, "failed": 0, "cleared": 0, "total": 0}


def test_garmin_backfill(client, garmin_integration, monkeypatch):
    monkeypatch.setattr(
        httpx,
        "get",
        lambda url, **kwargs: httpx.Response(202, request=httpx.Request("GET", url)),
    )

    response = client.post(
        "/imports/garmin/backfill",
        json={"userId": "user-1", "startDate": "2025-01-01T00:00:00Z", "endDate": "2025-01-20T00:00:00Z"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total_requests"] == 1
    assert body["accepted_count"] == 1


def test_garmin_backfill_rejects_inverted_range(client, garmin_integration):
    response = client.post(
        "/imports/garmin/backfill",
        json={"userId": "user-1", "startDate": "2025-02-01T00:00:00Z", "endDate": "2025-01-01T00:00:00Z"},
    )

    assert response.status_code == 400
