import datetime as dt

import pytest

from cycleflow.ingestion.normalize import GRAVEL_CYCLING, INDOOR_CYCLING, MOUNTAIN_BIKING, ROAD_BIKING
from cycleflow.integrations.strava.schemas import StravaActivity, map_strava_activity


def test_strava_activity_mapping():
    raw = StravaActivity(
        id=123,
        name="Lunch Ride",
        type="Ride",
        start_date=dt.datetime(2025, 1, 10, 12, 0, tzinfo=dt.UTC),
        elapsed_time=3900,
        moving_time=3600,
        distance=30000,
        total_elevation_gain=412.6,
        average_speed=8.3333,
        max_speed=15.0,
        average_heartrate=145.4,
        average_watts=280,
        average_cadence=88.6,
        kilojoules=1008.4,
        start_latlng=[45.1, 7.6],
        map={"summary_polyline": "_p~iF~ps|U_ulLnnqC_mqNvxq`@"},
    )

    record = map_strava_activity(raw, user_id="user-1")

    assert record.user_id == "user-1"
    assert record.source == "strava"
    assert record.provider_activity_id == "123"
    assert record.provider_url == "https://www.strava.com/activities/123"
    assert record.name == "Lunch Ride"
    assert record.activity_type == ROAD_BIKING
    assert record.distance_km == pytest.approx(30.0)
    assert record.duration_seconds == 3600
    assert record.elevation_gain_m == 413.0
    assert record.average_speed_kmh == pytest.approx(30.0, abs=0.01)
    assert record.max_speed_kmh == pytest.approx(54.0)
    assert record.average_heartrate == 145
    assert record.average_watts == 280
    assert record.average_cadence == 89
    assert record.kilojoules == 1008.0
    assert record.polyline == "_p~iF~ps|U_ulLnnqC_mqNvxq`@"
    assert record.has_gps_data is True
    assert record.has_heart_rate_data is True
    assert record.has_power_data is True
    assert record.started_at == dt.datetime(2025, 1, 10, 12, 0, tzinfo=dt.UTC)


def test_mapping_without_optional_metrics():
    raw = StravaActivity(id=7, type="VirtualRide", start_date=dt.datetime(2025, 2, 1, tzinfo=dt.UTC))

    record = map_strava_activity(raw, user_id="user-1")

    assert record.name == "Strava indoor cycling"
    assert record.activity_type == INDOOR_CYCLING
    assert record.distance_km is None
    assert record.average_speed_kmh is None
    assert record.polyline is None
    assert record.has_gps_data is False
    assert record.has_power_data is False


@pytest.mark.parametrize(
    ("strava_type", "expected"),
    [("MountainBikeRide", MOUNTAIN_BIKING), ("GravelRide", GRAVEL_CYCLING), ("EBikeRide", ROAD_BIKING)],
)
def test_activity_type_mapping(strava_type, expected):
    raw = StravaActivity(id=1, type=strava_type, start_date=dt.datetime(2025, 2, 1, tzinfo=dt.UTC))

    assert map_strava_activity(raw, user_id="user-1").activity_type == expected


@pytest.mark.parametrize(
    ("strava_type", "is_cycling"),
    [("Ride", True), ("VirtualRide", True), ("EBikeRide", True), ("Run", False), ("Swim", False)],
)
def test_is_cycling(strava_type, is_cycling):
    raw = StravaActivity(id=1, type=strava_type, start_date=dt.datetime(2025, 2, 1, tzinfo=dt.UTC))

    assert raw.is_cycling is is_cycling


def test_should_have_gps():
    base = {"id": 1, "start_date": dt.datetime(2025, 2, 1, tzinfo=dt.UTC), "distance": 5000.0}

    assert StravaActivity(type="Ride", start_latlng=[45.0, 7.0], **base).should_have_gps
    assert not StravaActivity(type="Ride", start_latlng=[], **base).should_have_gps
    assert not StravaActivity(type="Ride", **base).should_have_gps
    assert not StravaActivity(type="VirtualRide", start_latlng=[45.0, 7.0], **base).should_have_gps


def test_start_date_string_is_parsed_as_utc():
    raw = StravaActivity(id=1, type="Ride", start_date="2025-01-10T12:00:00Z")

    assert map_strava_activity(raw, user_id="user-1").started_at == dt.datetime(2025, 1, 10, 12, 0, tzinfo=dt.UTC)
