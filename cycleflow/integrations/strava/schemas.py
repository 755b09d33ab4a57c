from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from cycleflow.ingestion.normalize import (
    GRAVEL_CYCLING,
    INDOOR_CYCLING,
    MOUNTAIN_BIKING,
    ROAD_BIKING,
    ActivityDraft,
    mps_to_kmh,
)
from cycleflow.utils.timezone import to_utc

STRAVA_ACTIVITY_URL = "https://www.strava.com/activities/{activity_id}"

CYCLING_TYPES = frozenset({"Ride", "VirtualRide", "EBikeRide", "GravelRide", "MountainBikeRide"})

ACTIVITY_TYPES = {
    "MountainBikeRide": MOUNTAIN_BIKING,
    "GravelRide": GRAVEL_CYCLING,
    "VirtualRide": INDOOR_CYCLING,
}


class StravaActivity(BaseModel):
    id: int
    name: str | None = None
    type: str
    sport_type: str | None = None
    start_date: datetime
    elapsed_time: int | None = None
    moving_time: int | None = None
    distance: float | None = None
    total_elevation_gain: float | None = None
    average_speed: float | None = None
    max_speed: float | None = None
    average_heartrate: float | None = None
    max_heartrate: float | None = None
    average_watts: float | None = None
    max_watts: float | None = None
    average_cadence: float | None = None
    kilojoules: float | None = None
    calories: float | None = None
    start_latlng: list[float] | None = None
    end_latlng: list[float] | None = None
    map: dict[str, Any] | None = None

    raw: dict | None = None  # Raw API response

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> StravaActivity:
        """Validate one API item. Raises pydantic ValidationError or TypeError."""
        if not isinstance(raw, dict):
            raise TypeError(f"expected an activity object, got {type(raw).__name__}")
        return cls(**{**raw, "raw": raw})

    @property
    def is_cycling(self) -> bool:
        return self.type in CYCLING_TYPES

    @property
    def distance_km(self) -> float | None:
        return self.distance / 1000.0 if self.distance else None

    @property
    def summary_polyline(self) -> str | None:
        if not self.map:
            return None
        return self.map.get("summary_polyline") or None

    @property
    def detail_polyline(self) -> str | None:
        """Full-resolution polyline, only present on the activity detail endpoint."""
        if not self.map:
            return None
        return self.map.get("polyline") or None

    @property
    def should_have_gps(self) -> bool:
        return (
            self.start_latlng is not None
            and len(self.start_latlng) == 2
            and self.type != "VirtualRide"
            and (self.distance or 0) > 100
        )


def _round(value: float | None) -> int | None:
    return round(value) if value else None


def map_strava_activity(activity: StravaActivity, user_id: str) -> ActivityDraft:
    """Map a Strava activity summary to an ActivityDraft.

    Duration is moving time; speeds arrive in m/s and are stored in km/h.
    """
    activity_type = ACTIVITY_TYPES.get(activity.type, ROAD_BIKING)
    return ActivityDraft(
        user_id=user_id,
        name=activity.name or f"Strava {activity_type.replace('_', ' ')}",
        description="Imported from Strava",
        source="strava",
        provider_activity_id=str(activity.id),
        provider_url=STRAVA_ACTIVITY_URL.format(activity_id=activity.id),
        activity_type=activity_type,
        distance_km=activity.distance_km,
        duration_seconds=_round(activity.moving_time),
        elevation_gain_m=float(_round(activity.total_elevation_gain)) if activity.total_elevation_gain else None,
        average_speed_kmh=mps_to_kmh(activity.average_speed) if activity.average_speed else None,
        max_speed_kmh=mps_to_kmh(activity.max_speed) if activity.max_speed else None,
        average_heartrate=_round(activity.average_heartrate),
        max_heartrate=_round(activity.max_heartrate),
        average_watts=_round(activity.average_watts),
        max_watts=_round(activity.max_watts),
        average_cadence=_round(activity.average_cadence),
        calories=_round(activity.calories),
        kilojoules=float(_round(activity.kilojoules)) if activity.kilojoules else None,
        polyline=activity.summary_polyline,
        has_gps_data=activity.summary_polyline is not None,
        has_heart_rate_data=bool(activity.average_heartrate),
        has_power_data=bool(activity.average_watts),
        has_cadence_data=bool(activity.average_cadence),
        started_at=to_utc(activity.start_date),
    )
