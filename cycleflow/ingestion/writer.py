"""Persist activities and their track points.

The activity row is committed on its own before any track point is written.
Track points go in fixed-size chunks, each inside its own savepoint: a
failed chunk is logged and skipped, the activity and the other chunks stay.
Afterwards track_points_count is corrected to the number actually stored.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cycleflow.config.settings import settings
from cycleflow.core.errors import DuplicateActivityError, NotFoundError, PartialWriteError
from cycleflow.db.models import Activity, TrackPoint
from cycleflow.ingestion.normalize import ActivityDraft, TrackPointDraft


@dataclass
class WriteResult:
    activity_id: str
    track_points_written: int = 0
    failed_chunks: list[PartialWriteError] = field(default_factory=list)


def iter_chunks(items: Sequence[TrackPointDraft], size: int) -> Iterator[Sequence[TrackPointDraft]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class BatchWriter:
    def __init__(self, session: Session, chunk_size: int | None = None):
        self.session = session
        self.chunk_size = chunk_size or settings.track_point_chunk_size

    def write(self, activity: ActivityDraft, track_points: Sequence[TrackPointDraft]) -> WriteResult:
        """Insert an activity, then its track points chunk by chunk.

        Raises:
            DuplicateActivityError: Storage already holds this
                (user, source, provider activity id)
        """
        row = Activity(**activity.to_row())
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.info(
                f"[BATCH_WRITER] Activity {activity.source}:{activity.provider_activity_id} "
                f"rejected by storage as duplicate (race condition)"
            )
            raise DuplicateActivityError(
                f"Activity {activity.source}:{activity.provider_activity_id} already exists for user {activity.user_id}"
            ) from e

        logger.debug(f"[BATCH_WRITER] Stored activity {row.id} ({activity.source}:{activity.provider_activity_id})")
        return self._write_track_points(row, track_points)

    def append_track_points(self, activity_id: str, track_points: Sequence[TrackPointDraft]) -> WriteResult:
        """Attach track points to an activity that has none yet."""
        row = self.session.get(Activity, activity_id)
        if row is None:
            raise NotFoundError(f"Activity not found: {activity_id}")
        return self._write_track_points(row, track_points)

    def _write_track_points(self, row: Activity, track_points: Sequence[TrackPointDraft]) -> WriteResult:
        result = WriteResult(activity_id=row.id)
        first: TrackPointDraft | None = None
        last: TrackPointDraft | None = None

        for index, chunk in enumerate(iter_chunks(track_points, self.chunk_size)):
            try:
                with self.session.begin_nested():
                    self._insert_chunk(row.id, chunk)
            except Exception as e:
                error = PartialWriteError(index, len(chunk), e)
                logger.error(f"[BATCH_WRITER] Activity {row.id}: {error}")
                result.failed_chunks.append(error)
                continue
            result.track_points_written += len(chunk)
            if first is None:
                first = chunk[0]
            last = chunk[-1]

        row.track_points_count = result.track_points_written
        if first is not None and last is not None:
            row.start_latitude = first.latitude
            row.start_longitude = first.longitude
            row.end_latitude = last.latitude
            row.end_longitude = last.longitude
        self.session.commit()

        if result.failed_chunks:
            logger.warning(
                f"[BATCH_WRITER] Activity {row.id}: stored {result.track_points_written}/{len(track_points)} "
                f"track points, {len(result.failed_chunks)} chunk(s) failed"
            )
        elif track_points:
            logger.debug(f"[BATCH_WRITER] Activity {row.id}: stored {result.track_points_written} track points")
        return result

    def _insert_chunk(self, activity_id: str, chunk: Sequence[TrackPointDraft]) -> None:
        self.session.execute(insert(TrackPoint), [point.to_row(activity_id) for point in chunk])
