"""Encoded polyline codec (precision 1e-5 degrees).

Each coordinate is scaled by 1e5, delta-encoded against the previous point,
zig-zag encoded and written as 5-bit chunks offset by 63. Encoding is
append-only: adding a point never changes the characters already emitted,
so long tracks can be encoded incrementally with PolylineEncoder.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

PRECISION = 1e5


def _scale(value: float) -> int:
    # Round half up, matching the encoders that produce provider polylines
    return math.floor(value * PRECISION + 0.5)


def _encode_value(value: int) -> str:
    value = ~(value << 1) if value < 0 else value << 1
    chunks: list[str] = []
    while value >= 0x20:
        chunks.append(chr((0x20 | (value & 0x1F)) + 63))
        value >>= 5
    chunks.append(chr(value + 63))
    return "".join(chunks)


class PolylineEncoder:
    """Incremental polyline encoder."""

    def __init__(self) -> None:
        self._prev_lat = 0
        self._prev_lon = 0
        self._parts: list[str] = []
        self.count = 0

    def append(self, lat: float, lon: float) -> str:
        """Encode one point and return the characters it added."""
        scaled_lat = _scale(lat)
        scaled_lon = _scale(lon)
        part = _encode_value(scaled_lat - self._prev_lat) + _encode_value(scaled_lon - self._prev_lon)
        self._prev_lat = scaled_lat
        self._prev_lon = scaled_lon
        self._parts.append(part)
        self.count += 1
        return part

    def extend(self, points: Iterable[Sequence[float]]) -> None:
        for lat, lon in points:
            self.append(lat, lon)

    @property
    def value(self) -> str:
        return "".join(self._parts)


def encode(points: Iterable[Sequence[float]]) -> str:
    """Encode (lat, lon) pairs in degrees. Empty input gives an empty string."""
    encoder = PolylineEncoder()
    encoder.extend(points)
    return encoder.value


def _read_value(encoded: str, index: int) -> tuple[int | None, int]:
    """Read one zig-zag varint starting at index.

    Returns (value, next_index); value is None when the string ends before
    the terminating chunk.
    """
    result = 0
    shift = 0
    length = len(encoded)
    while index < length:
        byte = ord(encoded[index]) - 63
        index += 1
        result |= (byte & 0x1F) << shift
        shift += 5
        if byte < 0x20:
            return (~(result >> 1) if result & 1 else result >> 1), index
    return None, index


def decode(encoded: str) -> list[tuple[float, float]]:
    """Decode a polyline into (lat, lon) pairs.

    Malformed input never raises: decoding stops at the first truncated
    value and only complete pairs are returned.
    """
    points: list[tuple[float, float]] = []
    if not encoded:
        return points

    index = 0
    lat = 0
    lon = 0
    length = len(encoded)
    while index < length:
        delta_lat, index = _read_value(encoded, index)
        if delta_lat is None:
            break
        delta_lon, index = _read_value(encoded, index)
        if delta_lon is None:
            break
        lat += delta_lat
        lon += delta_lon
        points.append((lat / PRECISION, lon / PRECISION))
    return points
