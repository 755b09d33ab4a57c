"""Normalization layer for decoded activity files.

Maps a decoded provider record ({"session": {...}, "records": [...]}) to an
ActivityDraft plus TrackPointDrafts. Pure mapper with no side effects.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from cycleflow.core.errors import NonCyclingSkip, NormalizationError
from cycleflow.utils import polyline
from cycleflow.utils.polyline import PolylineEncoder
from cycleflow.utils.timezone import parse_timestamp

ROAD_BIKING = "road_biking"
MOUNTAIN_BIKING = "mountain_biking"
GRAVEL_CYCLING = "gravel_cycling"
INDOOR_CYCLING = "indoor_cycling"

CYCLING_MARKERS = ("cycling", "biking")
# Short markers only count as whole words ("stride" is not a ride)
CYCLING_WORDS = frozenset({"bike", "ride"})

MPS_TO_KMH = 3.6
CALORIES_TO_KILOJOULES = 4.184

PROVIDER_LABELS = {"garmin": "Garmin", "strava": "Strava"}


@dataclass
class ActivityDraft:
    """Activity row not yet persisted. Field names match the Activity model."""

    user_id: str
    name: str
    source: str
    provider_activity_id: str | None
    activity_type: str = ROAD_BIKING
    description: str | None = None
    provider_url: str | None = None
    distance_km: float | None = None
    duration_seconds: int | None = None
    elevation_gain_m: float | None = None
    elevation_loss_m: float | None = None
    average_speed_kmh: float | None = None
    max_speed_kmh: float | None = None
    average_heartrate: int | None = None
    max_heartrate: int | None = None
    average_watts: int | None = None
    max_watts: int | None = None
    average_cadence: int | None = None
    calories: int | None = None
    kilojoules: float | None = None
    polyline: str | None = None
    has_gps_data: bool = False
    has_heart_rate_data: bool = False
    has_power_data: bool = False
    has_cadence_data: bool = False
    started_at: datetime | None = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrackPointDraft:
    sequence_index: int
    latitude: float
    longitude: float
    elevation: float | None = None
    time_offset_seconds: float | None = None
    distance_m: float | None = None
    recorded_at: datetime | None = None
    heart_rate: int | None = None
    power: int | None = None
    cadence: int | None = None
    speed_kmh: float | None = None
    temperature: float | None = None

    def to_row(self, activity_id: str) -> dict[str, Any]:
        row = asdict(self)
        row["activity_id"] = activity_id
        return row


@dataclass
class NormalizedActivity:
    activity: ActivityDraft
    track_points: list[TrackPointDraft] = field(default_factory=list)


def is_cycling_sport(sport: str | None) -> bool:
    lowered = (sport or "").lower()
    if any(marker in lowered for marker in CYCLING_MARKERS):
        return True
    return not CYCLING_WORDS.isdisjoint(re.split(r"[^a-z]+", lowered))


def classify_activity_type(sport: str | None) -> str:
    """Map a free-text sport string to an activity type tag by substring."""
    lowered = (sport or "").lower()
    if "mountain" in lowered:
        return MOUNTAIN_BIKING
    if "gravel" in lowered:
        return GRAVEL_CYCLING
    if "indoor" in lowered or "virtual" in lowered:
        return INDOOR_CYCLING
    return ROAD_BIKING


def default_activity_name(provider: str, activity_type: str, started_at: datetime | None) -> str:
    label = PROVIDER_LABELS.get(provider, provider.title())
    name = f"{label} {activity_type.replace('_', ' ')}"
    if started_at:
        name = f"{name} - {started_at:%Y-%m-%d}"
    return name


def mps_to_kmh(value: Any) -> float | None:
    number = _float(value)
    return number * MPS_TO_KMH if number is not None else None


def _float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> int | None:
    number = _float(value)
    return round(number) if number is not None else None


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _has_channel(records: Sequence[Mapping[str, Any]], *keys: str) -> bool:
    return any(_first(record, *keys) is not None for record in records)


def _has_position(record: Mapping[str, Any]) -> bool:
    return record.get("position_lat") is not None and record.get("position_long") is not None


def _session_sport(session: Mapping[str, Any]) -> str:
    parts = [str(session[key]) for key in ("sport", "sub_sport") if session.get(key)]
    return " ".join(parts)


def _kilojoules(session: Mapping[str, Any]) -> float | None:
    total_work = _float(session.get("total_work"))
    if total_work is not None:
        return total_work / 1000.0
    calories = _float(session.get("total_calories"))
    if calories is not None:
        return calories * CALORIES_TO_KILOJOULES
    return None


def build_track_points(
    gps_records: Sequence[Mapping[str, Any]],
    reference_time: datetime | None,
) -> list[TrackPointDraft]:
    """Build track points from GPS-bearing samples.

    sequence_index is the position within the GPS subsequence, not the
    index of the sample in the original record list.
    """
    points: list[TrackPointDraft] = []
    for index, record in enumerate(gps_records):
        recorded_at = parse_timestamp(record.get("timestamp"))
        time_offset = None
        if recorded_at is not None and reference_time is not None:
            time_offset = (recorded_at - reference_time).total_seconds()
        points.append(
            TrackPointDraft(
                sequence_index=index,
                latitude=float(record["position_lat"]),
                longitude=float(record["position_long"]),
                elevation=_float(_first(record, "enhanced_altitude", "altitude")),
                time_offset_seconds=time_offset,
                distance_m=_float(record.get("distance")),
                recorded_at=recorded_at,
                heart_rate=_int(record.get("heart_rate")),
                power=_int(record.get("power")),
                cadence=_int(record.get("cadence")),
                speed_kmh=mps_to_kmh(_first(record, "enhanced_speed", "speed")),
                temperature=_float(record.get("temperature")),
            )
        )
    return points


def _stream_data(streams: Mapping[str, Any], key: str) -> list[Any]:
    stream = streams.get(key)
    if isinstance(stream, Mapping):
        return list(stream.get("data") or [])
    return []


def _at(values: Sequence[Any], index: int) -> Any:
    return values[index] if index < len(values) else None


def track_points_from_streams(streams: Mapping[str, Any]) -> list[TrackPointDraft]:
    """Build track points from key_by_type streams (latlng, time, altitude, distance)."""
    latlng = _stream_data(streams, "latlng")
    times = _stream_data(streams, "time")
    altitude = _stream_data(streams, "altitude")
    distance = _stream_data(streams, "distance")

    points: list[TrackPointDraft] = []
    for index, pair in enumerate(latlng):
        if not pair or len(pair) != 2 or pair[0] is None or pair[1] is None:
            continue
        points.append(
            TrackPointDraft(
                sequence_index=len(points),
                latitude=float(pair[0]),
                longitude=float(pair[1]),
                elevation=_float(_at(altitude, index)),
                time_offset_seconds=_float(_at(times, index)),
                distance_m=_float(_at(distance, index)),
            )
        )
    return points


def track_points_from_polyline(encoded: str | None) -> list[TrackPointDraft]:
    """Coarse track (position only) from an encoded polyline."""
    return [
        TrackPointDraft(sequence_index=index, latitude=lat, longitude=lon)
        for index, (lat, lon) in enumerate(polyline.decode(encoded or ""))
    ]


def normalize_fit_activity(
    decoded: Mapping[str, Any],
    *,
    user_id: str,
    provider: str = "garmin",
    provider_activity_id: str | None = None,
    provider_url: str | None = None,
    fallback_start: datetime | None = None,
) -> NormalizedActivity:
    """Normalize a decoded activity file into an activity and its track.

    Args:
        decoded: {"session": aggregates, "records": samples}; distances in
            meters and speeds in m/s
        user_id: Owning internal user
        provider: Provider source tag
        provider_activity_id: Provider-side activity id
        provider_url: Link back to the activity at the provider
        fallback_start: Start time used when the file carries none

    Raises:
        NormalizationError: No session aggregates in the payload
        NonCyclingSkip: The session sport is not a cycling sport
    """
    session = decoded.get("session")
    if not session:
        raise NormalizationError("No session data in FIT file")

    records: Sequence[Mapping[str, Any]] = decoded.get("records") or []
    sport = _session_sport(session)
    if not is_cycling_sport(sport):
        logger.info(f"Skipping non-cycling activity: sport={sport or 'unknown'}")
        raise NonCyclingSkip(sport or None)

    activity_type = classify_activity_type(sport)
    gps_records = [record for record in records if _has_position(record)]

    started_at = parse_timestamp(session.get("start_time"))
    if started_at is None and records:
        started_at = parse_timestamp(records[0].get("timestamp"))
    if started_at is None:
        started_at = fallback_start

    track_points = build_track_points(gps_records, started_at)

    encoder = PolylineEncoder()
    for point in track_points:
        encoder.append(point.latitude, point.longitude)

    total_distance = _float(session.get("total_distance"))
    calories = _int(session.get("total_calories"))

    activity = ActivityDraft(
        user_id=user_id,
        name=default_activity_name(provider, activity_type, started_at),
        description=f"Imported from {PROVIDER_LABELS.get(provider, provider.title())}",
        source=provider,
        provider_activity_id=provider_activity_id,
        provider_url=provider_url,
        activity_type=activity_type,
        distance_km=total_distance / 1000.0 if total_distance is not None else None,
        duration_seconds=_int(_first(session, "total_elapsed_time", "total_timer_time")),
        elevation_gain_m=_float(session.get("total_ascent")),
        elevation_loss_m=_float(session.get("total_descent")),
        average_speed_kmh=mps_to_kmh(_first(session, "enhanced_avg_speed", "avg_speed")),
        max_speed_kmh=mps_to_kmh(_first(session, "enhanced_max_speed", "max_speed")),
        average_heartrate=_int(session.get("avg_heart_rate")),
        max_heartrate=_int(session.get("max_heart_rate")),
        average_watts=_int(session.get("avg_power")),
        max_watts=_int(session.get("max_power")),
        average_cadence=_int(session.get("avg_cadence")),
        calories=calories,
        kilojoules=_kilojoules(session),
        polyline=encoder.value or None,
        has_gps_data=bool(gps_records),
        has_heart_rate_data=_has_channel(records, "heart_rate"),
        has_power_data=_has_channel(records, "power"),
        has_cadence_data=_has_channel(records, "cadence"),
        started_at=started_at,
    )

    logger.debug(
        f"Normalized {provider} activity: type={activity_type}, distance_km={activity.distance_km}, "
        f"samples={len(records)}, gps_points={len(track_points)}"
    )
    return NormalizedActivity(activity=activity, track_points=track_points)
