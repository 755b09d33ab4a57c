"""Duplicate detection for incoming activities.

Two independent checks, exact first:
- exact: same user, same source and same provider activity id
- near: same user, start time within the configured window and distance
  within the configured tolerance (bulk import only; a ride can be
  reported by two providers under different ids)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from cycleflow.config.settings import settings
from cycleflow.db.models import Activity

ACCEPT = "accept"
SKIP_EXACT = "skip_exact"
SKIP_NEAR = "skip_near"


@dataclass(frozen=True)
class DuplicateCandidate:
    provider: str
    provider_activity_id: str | None
    user_id: str
    start_time: datetime | None = None
    distance_km: float | None = None


@dataclass(frozen=True)
class Resolution:
    action: str
    existing_activity_id: str | None = None

    @property
    def accepted(self) -> bool:
        return self.action == ACCEPT


def find_exact_duplicate(session: Session, candidate: DuplicateCandidate) -> Activity | None:
    if not candidate.provider_activity_id:
        return None
    existing = session.execute(
        select(Activity).where(
            Activity.user_id == candidate.user_id,
            Activity.source == candidate.provider,
            Activity.provider_activity_id == str(candidate.provider_activity_id),
        )
    ).first()
    return existing[0] if existing else None


def find_near_duplicate(
    session: Session,
    candidate: DuplicateCandidate,
    window_seconds: float,
    distance_tolerance_km: float,
) -> Activity | None:
    """Find a stored activity of the same user that looks like the same ride.

    Matches on start time ± window_seconds and distance ± distance_tolerance_km,
    regardless of source. Returns None when the candidate has no start time
    or distance to compare.
    """
    if candidate.start_time is None or candidate.distance_km is None:
        return None

    window = timedelta(seconds=window_seconds)
    existing = session.execute(
        select(Activity).where(
            Activity.user_id == candidate.user_id,
            Activity.started_at.is_not(None),
            Activity.started_at >= candidate.start_time - window,
            Activity.started_at <= candidate.start_time + window,
            Activity.distance_km.is_not(None),
            Activity.distance_km >= candidate.distance_km - distance_tolerance_km,
            Activity.distance_km <= candidate.distance_km + distance_tolerance_km,
        )
    ).first()
    return existing[0] if existing else None


class DuplicateResolver:
    def __init__(
        self,
        session: Session,
        window_seconds: float | None = None,
        distance_tolerance_km: float | None = None,
    ):
        self.session = session
        self.window_seconds = (
            window_seconds if window_seconds is not None else settings.near_duplicate_window_seconds
        )
        self.distance_tolerance_km = (
            distance_tolerance_km if distance_tolerance_km is not None else settings.near_duplicate_distance_km
        )

    def resolve(self, candidate: DuplicateCandidate, check_near_duplicates: bool = False) -> Resolution:
        """Decide whether a candidate activity should be stored.

        Args:
            candidate: Incoming activity identity and shape
            check_near_duplicates: Also run the start time/distance heuristic

        Returns:
            Resolution with action accept, skip_exact or skip_near
        """
        exact = find_exact_duplicate(self.session, candidate)
        if exact:
            logger.debug(
                f"[DEDUPE] Exact duplicate: {candidate.provider}:{candidate.provider_activity_id} "
                f"already stored as {exact.id}"
            )
            return Resolution(SKIP_EXACT, exact.id)

        if check_near_duplicates:
            near = find_near_duplicate(
                self.session,
                candidate,
                self.window_seconds,
                self.distance_tolerance_km,
            )
            if near:
                logger.info(
                    f"[DEDUPE] Near duplicate: {candidate.provider}:{candidate.provider_activity_id} "
                    f"matches {near.source} activity {near.id} "
                    f"(start={near.started_at}, distance_km={near.distance_km})"
                )
                return Resolution(SKIP_NEAR, near.id)

        return Resolution(ACCEPT)
