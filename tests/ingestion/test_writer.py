from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from cycleflow.core.errors import DuplicateActivityError, NotFoundError
from cycleflow.db.models import Activity, TrackPoint
from cycleflow.ingestion.normalize import ActivityDraft, TrackPointDraft
from cycleflow.ingestion.writer import BatchWriter, iter_chunks


def _draft(**overrides) -> ActivityDraft:
    values = {
        "user_id": "user-1",
        "name": "Evening Ride",
        "source": "garmin",
        "provider_activity_id": "g-1",
        "distance_km": 20.0,
        "has_gps_data": True,
        "started_at": datetime(2025, 4, 1, 17, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return ActivityDraft(**values)


def _points(count: int) -> list[TrackPointDraft]:
    return [
        TrackPointDraft(sequence_index=i, latitude=45.0 + i * 1e-5, longitude=7.0 + i * 1e-5, time_offset_seconds=i)
        for i in range(count)
    ]


def _stored_points(db_session, activity_id: str) -> int:
    return db_session.execute(
        select(func.count()).select_from(TrackPoint).where(TrackPoint.activity_id == activity_id)
    ).scalar_one()


class RecordingWriter(BatchWriter):
    def __init__(self, session, chunk_size=None, fail_chunks=()):
        super().__init__(session, chunk_size)
        self.chunk_sizes = []
        self.fail_chunks = set(fail_chunks)

    def _insert_chunk(self, activity_id, chunk):
        index = len(self.chunk_sizes)
        self.chunk_sizes.append(len(chunk))
        if index in self.fail_chunks:
            raise RuntimeError("disk full")
        super()._insert_chunk(activity_id, chunk)


def test_iter_chunks():
    assert [len(chunk) for chunk in iter_chunks(list(range(2500)), 1000)] == [1000, 1000, 500]
    assert list(iter_chunks([], 1000)) == []


def test_writes_activity_and_points_in_chunks(db_session):
    writer = RecordingWriter(db_session, chunk_size=1000)
    points = _points(2500)

    result = writer.write(_draft(), points)

    assert writer.chunk_sizes == [1000, 1000, 500]
    assert result.track_points_written == 2500
    assert result.failed_chunks == []
    assert _stored_points(db_session, result.activity_id) == 2500

    activity = db_session.get(Activity, result.activity_id)
    assert activity.track_points_count == 2500
    assert activity.start_latitude == points[0].latitude
    assert activity.end_longitude == points[-1].longitude


def test_failed_chunk_keeps_activity_and_other_chunks(db_session):
    writer = RecordingWriter(db_session, chunk_size=1000, fail_chunks={1})

    result = writer.write(_draft(), _points(2500))

    assert result.track_points_written == 1500
    assert len(result.failed_chunks) == 1
    assert result.failed_chunks[0].chunk_index == 1
    assert result.failed_chunks[0].size == 1000
    assert _stored_points(db_session, result.activity_id) == 1500
    assert db_session.get(Activity, result.activity_id).track_points_count == 1500


def test_activity_without_points(db_session):
    result = BatchWriter(db_session).write(_draft(has_gps_data=False), [])

    activity = db_session.get(Activity, result.activity_id)
    assert activity.track_points_count == 0
    assert activity.start_latitude is None
    assert result.track_points_written == 0


def test_duplicate_activity_is_rejected(db_session):
    writer = BatchWriter(db_session)
    writer.write(_draft(), _points(3))

    with pytest.raises(DuplicateActivityError):
        writer.write(_draft(name="Same ride again"), _points(3))

    count = db_session.execute(select(func.count()).select_from(Activity)).scalar_one()
    assert count == 1


def test_same_provider_id_for_another_user_is_stored(db_session):
    writer = BatchWriter(db_session)
    writer.write(_draft(), [])
    writer.write(_draft(user_id="user-2"), [])

    count = db_session.execute(select(func.count()).select_from(Activity)).scalar_one()
    assert count == 2


def test_append_track_points(db_session):
    writer = BatchWriter(db_session, chunk_size=2)
    created = writer.write(_draft(has_gps_data=True), [])

    result = writer.append_track_points(created.activity_id, _points(5))

    assert result.track_points_written == 5
    assert db_session.get(Activity, created.activity_id).track_points_count == 5


def test_append_track_points_to_missing_activity(db_session):
    with pytest.raises(NotFoundError):
        BatchWriter(db_session).append_track_points("missing", _points(1))
