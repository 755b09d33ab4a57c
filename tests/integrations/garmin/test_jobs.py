from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import func, select

from cycleflow.core.errors import DecodeError
from cycleflow.db.models import Activity, IngestEvent, Integration, SyncHistoryRecord, TrackPoint
from cycleflow.integrations.garmin.jobs import (
    ALREADY_IMPORTED_MESSAGE,
    OUTCOME_ALREADY_IMPORTED,
    OUTCOME_FAILED,
    OUTCOME_IMPORTED,
    OUTCOME_NON_CYCLING,
    OUTCOME_NOOP,
    EventProcessor,
    download_activity_file,
    process_ingest_event,
)
from cycleflow.utils.polyline import decode

START = datetime(2025, 6, 1, 6, 0, tzinfo=timezone.utc)
FILE_URL = "https://apis.garmin.com/files/a1.fit"


def _decoded(sport="cycling", points=500):
    return {
        "session": {
            "sport": sport,
            "start_time": START,
            "total_distance": 15000.0,
            "total_elapsed_time": 3600.0,
            "avg_speed": 4.1667,
        },
        "records": [
            {
                "timestamp": START + timedelta(seconds=i * 7),
                "position_lat": 46.0 + i * 1e-4,
                "position_long": 8.0 + i * 1e-4,
                "distance": i * 30.0,
                "heart_rate": 140,
            }
            for i in range(points)
        ],
    }


def _event(db_session, **overrides) -> IngestEvent:
    values = {
        "provider_user_id": "u1",
        "provider_activity_id": "a1",
        "file_url": FILE_URL,
        "payload": {"userId": "u1", "activityId": "a1", "fileUrl": FILE_URL},
    }
    values.update(overrides)
    event = IngestEvent(**values)
    db_session.add(event)
    db_session.commit()
    return event


def _processor(db_session, decoded=None, fetched=None):
    def fetch_file(url, token):
        if fetched is not None:
            fetched.append((url, token))
        return b"fit-bytes"

    return EventProcessor(db_session, fetch_file=fetch_file, decode=lambda data: decoded or _decoded())


def _count(db_session, model) -> int:
    return db_session.execute(select(func.count()).select_from(model)).scalar_one()


def test_imports_activity_with_track(db_session, garmin_integration):
    event = _event(db_session)
    fetched = []

    outcome = _processor(db_session, fetched=fetched).process(event.id)

    assert outcome == OUTCOME_IMPORTED
    assert fetched == [(FILE_URL, "garmin-token")]

    activity = db_session.execute(select(Activity)).scalar_one()
    assert activity.user_id == "user-1"
    assert activity.source == "garmin"
    assert activity.provider_activity_id == "a1"
    assert activity.distance_km == pytest.approx(15.0)
    assert activity.duration_seconds == 3600
    assert activity.average_speed_kmh == pytest.approx(15.0, abs=0.01)
    assert activity.has_gps_data is True
    assert activity.has_heart_rate_data is True
    assert activity.track_points_count == 500
    assert activity.provider_url == "https://connect.garmin.com/modern/activity/a1"
    assert len(decode(activity.polyline)) == 500
    assert _count(db_session, TrackPoint) == 500

    db_session.refresh(event)
    assert event.processed is True
    assert event.process_error is None
    assert event.activity_id == activity.id
    assert event.user_id == "user-1"
    assert event.integration_id == garmin_integration.id

    history = db_session.execute(select(SyncHistoryRecord)).scalar_one()
    assert history.status == "success"
    assert history.trigger == "webhook"
    assert history.imported_count == 1
    assert history.activity_id == activity.id
    assert garmin_integration.last_sync_at is not None


def test_non_cycling_activity_is_skipped(db_session, garmin_integration):
    event = _event(db_session)

    outcome = _processor(db_session, decoded=_decoded(sport="running")).process(event.id)

    assert outcome == OUTCOME_NON_CYCLING
    assert _count(db_session, Activity) == 0
    db_session.refresh(event)
    assert event.processed is True
    assert event.process_error == "Non-cycling activity: running"
    assert event.activity_id is None

    history = db_session.execute(select(SyncHistoryRecord)).scalar_one()
    assert history.status == "skipped"
    assert history.skipped_count == 1


def test_unknown_garmin_user(db_session):
    event = _event(db_session, provider_user_id="stranger")

    outcome = _processor(db_session).process(event.id)

    assert outcome == OUTCOME_FAILED
    db_session.refresh(event)
    assert event.processed is True
    assert event.process_error == "No integration found for this Garmin user"
    assert _count(db_session, Activity) == 0


def test_already_imported_activity_short_circuits(db_session, garmin_integration):
    existing = Activity(user_id="user-1", name="Ride", source="garmin", provider_activity_id="a1")
    db_session.add(existing)
    db_session.commit()
    event = _event(db_session)
    fetched = []

    outcome = _processor(db_session, fetched=fetched).process(event.id)

    assert outcome == OUTCOME_ALREADY_IMPORTED
    assert fetched == []
    db_session.refresh(event)
    assert event.processed is True
    assert event.process_error == ALREADY_IMPORTED_MESSAGE
    assert event.activity_id == existing.id
    assert _count(db_session, Activity) == 1


def test_missing_file_url(db_session, garmin_integration):
    event = _event(db_session, file_url=None)

    outcome = _processor(db_session).process(event.id)

    assert outcome == OUTCOME_FAILED
    db_session.refresh(event)
    assert event.process_error == "No file URL provided in webhook"
    history = db_session.execute(select(SyncHistoryRecord)).scalar_one()
    assert history.status == "error"
    assert history.errors == ["No file URL provided in webhook"]


def test_download_failure_is_recorded(db_session, garmin_integration, monkeypatch):
    def mock_get(url, **kwargs):
        assert kwargs["headers"]["Authorization"] == "Bearer garmin-token"
        return httpx.Response(404, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", mock_get)
    event = _event(db_session)

    outcome = EventProcessor(db_session, decode=lambda data: _decoded()).process(event.id)

    assert outcome == OUTCOME_FAILED
    db_session.refresh(event)
    assert event.processed is True
    assert event.process_error == "Failed to download FIT file: 404"
    assert _count(db_session, Activity) == 0

    integration = db_session.get(Integration, garmin_integration.id)
    assert integration.last_error == "Failed to download FIT file: 404"


def test_decode_failure_is_recorded(db_session, garmin_integration):
    def broken_decode(data):
        raise DecodeError("Payload is not a FIT file")

    event = _event(db_session)

    outcome = EventProcessor(db_session, fetch_file=lambda url, token: b"junk", decode=broken_decode).process(event.id)

    assert outcome == OUTCOME_FAILED
    db_session.refresh(event)
    assert event.process_error == "Payload is not a FIT file"


def test_unexpected_error_is_recorded(db_session, garmin_integration):
    def broken_decode(data):
        raise KeyError("session_mesgs")

    event = _event(db_session)

    outcome = EventProcessor(db_session, fetch_file=lambda url, token: b"x", decode=broken_decode).process(event.id)

    assert outcome == OUTCOME_FAILED
    db_session.refresh(event)
    assert event.processed is True
    assert event.process_error.startswith("Unexpected error:")
    assert event.integration_id == garmin_integration.id


def test_processed_event_is_not_reprocessed(db_session, garmin_integration):
    event = _event(db_session, processed=True)
    fetched = []

    assert _processor(db_session, fetched=fetched).process(event.id) == OUTCOME_NOOP
    assert fetched == []


def test_unknown_event_is_a_noop(db_session):
    assert _processor(db_session).process("missing") == OUTCOME_NOOP


def test_process_ingest_event_never_raises(db_session, garmin_integration, monkeypatch):
    monkeypatch.setattr(
        httpx,
        "get",
        lambda url, **kwargs: httpx.Response(500, request=httpx.Request("GET", url)),
    )
    event = _event(db_session)

    process_ingest_event(event.id)

    db_session.refresh(event)
    assert event.processed is True
    assert event.process_error == "Failed to download FIT file: 500"


def test_download_activity_file(monkeypatch):
    def mock_get(url, **kwargs):
        assert kwargs["follow_redirects"] is True
        return httpx.Response(200, content=b"\x0e\x10FIT", request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", mock_get)

    assert download_activity_file(FILE_URL, "token") == b"\x0e\x10FIT"
