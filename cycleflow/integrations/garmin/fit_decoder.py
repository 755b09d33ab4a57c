"""FIT file decoding using the Garmin FIT SDK.

Output contract: {"session": {...aggregates}, "records": [...samples]}.
Positions are converted from semicircles to degrees; every other field
is passed through with SDK units (meters, m/s, seconds).
"""

from __future__ import annotations

from typing import Any

from garmin_fit_sdk import Decoder, Stream
from loguru import logger

from cycleflow.core.errors import DecodeError

SEMICIRCLES_TO_DEGREES = 180.0 / 2**31

SESSION_FIELDS = (
    "sport",
    "sub_sport",
    "start_time",
    "total_distance",
    "total_elapsed_time",
    "total_timer_time",
    "total_ascent",
    "total_descent",
    "avg_speed",
    "enhanced_avg_speed",
    "max_speed",
    "enhanced_max_speed",
    "avg_heart_rate",
    "max_heart_rate",
    "avg_power",
    "max_power",
    "avg_cadence",
    "total_calories",
    "total_work",
)

RECORD_FIELDS = (
    "timestamp",
    "position_lat",
    "position_long",
    "altitude",
    "enhanced_altitude",
    "heart_rate",
    "power",
    "cadence",
    "speed",
    "enhanced_speed",
    "temperature",
    "distance",
)


def semicircles_to_degrees(value: Any) -> float | None:
    if value is None:
        return None
    return float(value) * SEMICIRCLES_TO_DEGREES


def _pick(message: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    return {key: message[key] for key in fields if message.get(key) is not None}


def _record(message: dict[str, Any]) -> dict[str, Any]:
    record = _pick(message, RECORD_FIELDS)
    for key in ("position_lat", "position_long"):
        if key in record:
            record[key] = semicircles_to_degrees(record[key])
    return record


def decode_fit(data: bytes) -> dict[str, Any]:
    """Decode raw FIT bytes.

    The first session message is used when a file holds several (multisport
    files are not split).

    Raises:
        DecodeError: The bytes are not a readable FIT file
    """
    if not data:
        raise DecodeError("Empty FIT payload")

    try:
        stream = Stream.from_byte_array(bytearray(data))
        decoder = Decoder(stream)
        if not decoder.is_fit():
            raise DecodeError("Payload is not a FIT file")
        messages, errors = decoder.read()
    except DecodeError:
        raise
    except Exception as e:
        raise DecodeError(f"Failed to decode FIT file: {e}") from e

    if errors:
        logger.warning(f"FIT decoding reported {len(errors)} error(s): {errors[0]}")
        if not messages:
            raise DecodeError(f"Failed to decode FIT file: {errors[0]}")

    sessions = messages.get("session_mesgs") or []
    records = [_record(message) for message in messages.get("record_mesgs") or []]
    session = _pick(sessions[0], SESSION_FIELDS) if sessions else None

    logger.debug(f"Decoded FIT file: sessions={len(sessions)}, records={len(records)}")
    return {"session": session, "records": records}
