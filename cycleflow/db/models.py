from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""


class IngestEvent(Base):
    """One inbound push notification from a provider webhook.

    Created unprocessed by the webhook receiver and flipped to processed
    exactly once by the event processor, either with the resulting
    activity_id or with process_error set. Never deleted.

    (provider_activity_id, provider_user_id) is kept unique by a pre-insert
    lookup in the receiver, not by a constraint: webhook resends must be
    answered with the existing event id, not a conflict.
    """

    __tablename__ = "ingest_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(String, nullable=False, default="garmin")
    event_type: Mapped[str] = mapped_column(String, nullable=False, default="activity")
    provider_user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    provider_activity_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_type: Mapped[str] = mapped_column(String, nullable=False, default="FIT")
    upload_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    process_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Filled in while processing
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    integration_id: Mapped[str | None] = mapped_column(String, nullable=True)
    activity_id: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (Index("idx_ingest_events_activity_user", "provider_activity_id", "provider_user_id"),)


class Integration(Base):
    """Provider credential bound to an internal user.

    Created and refreshed by the OAuth flows; the pipeline only reads the
    credential and provider_user_id and writes last_sync_at / last_error.
    """

    __tablename__ = "integrations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integration_user_provider"),
        Index("idx_integrations_provider_user", "provider", "provider_user_id"),
    )


class Activity(Base):
    """A single ride imported from a provider.

    Inserted by the batch writer and only mutated afterwards to backfill
    GPS fields (track_points_count, start/end coordinates, has_gps_data).

    Constraints:
    - Unique (user_id, source, provider_activity_id): a concurrent double
      import becomes a conflict-and-skip instead of a second row
    - started_at is stored in UTC
    """

    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    provider_activity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_url: Mapped[str | None] = mapped_column(String, nullable=True)
    activity_type: Mapped[str] = mapped_column(String, nullable=False, default="road_biking")

    distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    elevation_gain_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    elevation_loss_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_speed_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_speed_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_heartrate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_heartrate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    average_watts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_watts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    average_cadence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    calories: Mapped[int | None] = mapped_column(Integer, nullable=True)
    kilojoules: Mapped[float | None] = mapped_column(Float, nullable=True)

    polyline: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_gps_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_heart_rate_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_power_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_cadence_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    track_points_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "source", "provider_activity_id", name="uq_activity_user_source_provider_id"),
        Index("idx_activities_user_started_at", "user_id", "started_at"),
    )


class TrackPoint(Base):
    """One GPS/telemetry sample of an activity. Immutable once written."""

    __tablename__ = "track_points"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    activity_id: Mapped[str] = mapped_column(String, ForeignKey("activities.id"), nullable=False, index=True)
    sequence_index: Mapped[int] = mapped_column(Integer, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    elevation: Mapped[float | None] = mapped_column(Float, nullable=True)
    time_offset_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    distance_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    heart_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    power: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cadence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    speed_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (UniqueConstraint("activity_id", "sequence_index", name="uq_track_point_sequence"),)


class SyncHistoryRecord(Base):
    """Append-only audit row per bulk import or webhook-triggered sync."""

    __tablename__ = "sync_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    trigger: Mapped[str] = mapped_column(String, nullable=False)  # "webhook" or "bulk_import"
    status: Mapped[str] = mapped_column(String, nullable=False)
    provider_activity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    activity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    fetched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    imported_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
