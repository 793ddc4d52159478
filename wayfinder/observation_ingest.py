from __future__ import annotations

import json
import math
import queue
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from wayfinder.geometry import Vec3, clip, vec3
from wayfinder.obstacle_map import ObstacleType

# x, y, z, width, height, depth, confidence
BINARY_FIELDS = 7

_MESH_LABELS: Dict[str, ObstacleType] = {
    "wall": ObstacleType.WALL,
    "window": ObstacleType.WALL,
    "door": ObstacleType.WALL,
    "table": ObstacleType.TABLE,
    "seat": ObstacleType.CHAIR,
    "chair": ObstacleType.CHAIR,
    "person": ObstacleType.PERSON,
    "floor": ObstacleType.FLOOR,
    "ceiling": ObstacleType.CEILING,
}

_CLASSIFICATIONS = frozenset(t.value for t in ObstacleType)


def classification_from_mesh_label(label: Optional[str]) -> ObstacleType:
    """Map a sensor mesh-semantic label onto the obstacle classification."""
    if not label:
        return ObstacleType.UNKNOWN
    return _MESH_LABELS.get(str(label).strip().lower(), ObstacleType.UNKNOWN)


@dataclass
class ObstacleObservation:
    position: Vec3
    size: Vec3
    confidence: float
    classification: ObstacleType = ObstacleType.UNKNOWN


@dataclass
class ObservationBatch:
    seq: int
    timestamp_ms: int
    observations: List[ObstacleObservation] = field(default_factory=list)
    user_position: Optional[Vec3] = None
    user_heading: Optional[Vec3] = None


class ObservationIngestor:
    """Decode and buffer obstacle observations pushed by the sensing client."""

    def __init__(self, max_queue_size: int = 256) -> None:
        self._queue: "queue.Queue[ObservationBatch]" = queue.Queue(maxsize=max(1, int(max_queue_size)))

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    def enqueue(self, batch: ObservationBatch) -> bool:
        """Returns True if an old batch was dropped due to backpressure."""
        dropped = False
        if self._queue.full():
            try:
                _ = self._queue.get_nowait()
                dropped = True
            except queue.Empty:
                dropped = False

        self._queue.put_nowait(batch)
        return dropped

    def drain_nowait(self, max_items: Optional[int] = None) -> List[ObservationBatch]:
        batches: List[ObservationBatch] = []
        while max_items is None or len(batches) < max_items:
            try:
                batches.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return batches

    @staticmethod
    def decode_text_payload(payload: Dict[str, Any]) -> ObservationBatch:
        kind = payload.get("type")
        if kind == "obstacle":
            observations = [_decode_observation(payload)]
        elif kind == "obstacle_batch":
            raw = payload.get("observations")
            if not isinstance(raw, list):
                raise ValueError("obstacle_batch requires an observations list.")
            observations = [_decode_observation(item) for item in raw]
        else:
            raise ValueError("Unsupported text message type.")

        return ObservationBatch(
            seq=int(payload.get("seq", 0)),
            timestamp_ms=int(payload.get("timestamp_ms", 0)),
            observations=observations,
            user_position=_optional_vec(payload.get("user_position"), "user_position"),
            user_heading=_optional_vec(payload.get("user_heading"), "user_heading"),
        )

    @staticmethod
    def decode_binary_packet(packet: bytes) -> ObservationBatch:
        """
        Layout: u32 little-endian header length, JSON header, then
        ``count * 7`` little-endian float32 values (optionally zlib-compressed).
        Per-row labels ride in the header.
        """
        if len(packet) < 4:
            raise ValueError("Binary packet too short.")

        header_len = int.from_bytes(packet[0:4], byteorder="little", signed=False)
        if header_len <= 0:
            raise ValueError("Invalid binary header length.")

        start = 4
        end = 4 + header_len
        if end > len(packet):
            raise ValueError("Binary packet header length exceeds packet size.")

        try:
            header = json.loads(packet[start:end].decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid binary header JSON: {exc}") from exc

        if not isinstance(header, dict):
            raise ValueError("Binary header must be a JSON object.")
        if header.get("type") != "obstacle_batch":
            raise ValueError("Binary packet type must be obstacle_batch.")

        count = int(header.get("count", 0))
        if count < 0:
            raise ValueError("Invalid count in binary header.")

        rows = _decode_rows(bytes(packet[end:]), str(header.get("encoding", "f32_raw")), count)

        labels = header.get("labels") or []
        if not isinstance(labels, list):
            raise ValueError("labels must be a list.")

        observations: List[ObstacleObservation] = []
        for i, row in enumerate(rows):
            if not np.all(np.isfinite(row)):
                raise ValueError(f"Row {i} contains non-finite values.")
            label = labels[i] if i < len(labels) else None
            observations.append(
                ObstacleObservation(
                    position=(float(row[0]), float(row[1]), float(row[2])),
                    size=(float(row[3]), float(row[4]), float(row[5])),
                    confidence=clip(float(row[6]), 0.0, 1.0),
                    classification=_classification(label),
                )
            )

        return ObservationBatch(
            seq=int(header.get("seq", 0)),
            timestamp_ms=int(header.get("timestamp_ms", 0)),
            observations=observations,
            user_position=_optional_vec(header.get("user_position"), "user_position"),
            user_heading=_optional_vec(header.get("user_heading"), "user_heading"),
        )


def _decode_rows(blob: bytes, encoding: str, count: int) -> np.ndarray:
    if encoding == "zlib_f32":
        try:
            raw = zlib.decompress(blob)
        except zlib.error as exc:
            raise ValueError(f"Invalid zlib observation payload: {exc}") from exc
    elif encoding == "f32_raw":
        raw = blob
    else:
        raise ValueError(f"Unsupported observation encoding: {encoding}")

    expected = count * BINARY_FIELDS * 4
    if len(raw) != expected:
        raise ValueError(
            f"Observation payload size mismatch. expected={expected} bytes, got={len(raw)} bytes"
        )

    arr = np.frombuffer(raw, dtype="<f4")
    return arr.reshape((count, BINARY_FIELDS))


def _decode_observation(item: Any) -> ObstacleObservation:
    if not isinstance(item, dict):
        raise ValueError("Observation must be a JSON object.")

    position = _finite_vec(item.get("position"), "position")
    size = _finite_vec(item.get("size"), "size")

    try:
        confidence = float(item.get("confidence", 1.0))
    except (TypeError, ValueError) as exc:
        raise ValueError("confidence must be a number.") from exc
    if not math.isfinite(confidence):
        raise ValueError("confidence must be finite.")

    label = item.get("classification")
    if label is None:
        label = item.get("label")
    return ObstacleObservation(
        position=position,
        size=size,
        confidence=clip(confidence, 0.0, 1.0),
        classification=_classification(label),
    )


def _classification(label: Any) -> ObstacleType:
    if label is None:
        return ObstacleType.UNKNOWN
    text = str(label).strip().lower()
    if text in _CLASSIFICATIONS:
        return ObstacleType(text)
    return classification_from_mesh_label(text)


def _finite_vec(raw: Any, name: str) -> Vec3:
    if not isinstance(raw, (list, tuple)):
        raise ValueError(f"{name} must be a list of 3 numbers.")
    try:
        value = vec3(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a list of 3 numbers.") from exc
    if not all(math.isfinite(c) for c in value):
        raise ValueError(f"{name} must be finite.")
    return value


def _optional_vec(raw: Any, name: str) -> Optional[Vec3]:
    if raw is None:
        return None
    return _finite_vec(raw, name)


def observations_as_rows(observations: Sequence[ObstacleObservation]) -> np.ndarray:
    """Inverse of the binary row layout, used by clients and tests to build packets."""
    rows = np.zeros((len(observations), BINARY_FIELDS), dtype="<f4")
    for i, obs in enumerate(observations):
        rows[i, 0:3] = obs.position
        rows[i, 3:6] = obs.size
        rows[i, 6] = obs.confidence
    return rows
