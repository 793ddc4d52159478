import json
import zlib

import pytest

from wayfinder.obstacle_map import ObstacleType
from wayfinder.observation_ingest import (
    ObservationBatch,
    ObservationIngestor,
    ObstacleObservation,
    classification_from_mesh_label,
    observations_as_rows,
)


def _packet(observations, labels=None, encoding="f32_raw", **header_fields):
    body = observations_as_rows(observations).tobytes()
    if encoding == "zlib_f32":
        body = zlib.compress(body)
    header = {"type": "obstacle_batch", "count": len(observations), "encoding": encoding, "labels": labels or []}
    header.update(header_fields)
    raw_header = json.dumps(header).encode("utf-8")
    return len(raw_header).to_bytes(4, "little") + raw_header + body


@pytest.mark.parametrize(
    "label, expected",
    [
        ("wall", ObstacleType.WALL),
        ("Window", ObstacleType.WALL),
        ("door", ObstacleType.WALL),
        ("table", ObstacleType.TABLE),
        ("seat", ObstacleType.CHAIR),
        ("floor", ObstacleType.FLOOR),
        ("ceiling", ObstacleType.CEILING),
        ("none", ObstacleType.UNKNOWN),
        ("plant", ObstacleType.UNKNOWN),
        (None, ObstacleType.UNKNOWN),
    ],
)
def test_mesh_label_translation(label, expected):
    assert classification_from_mesh_label(label) is expected


def test_decode_single_obstacle():
    batch = ObservationIngestor.decode_text_payload(
        {"type": "obstacle", "position": [1, 0, 2], "size": [0.5, 1, 0.5], "confidence": 0.8, "label": "seat"}
    )

    assert len(batch.observations) == 1
    obs = batch.observations[0]
    assert obs.position == (1.0, 0.0, 2.0)
    assert obs.classification is ObstacleType.CHAIR
    assert obs.confidence == pytest.approx(0.8)


def test_decode_batch_with_user_pose():
    batch = ObservationIngestor.decode_text_payload(
        {
            "type": "obstacle_batch",
            "seq": 7,
            "timestamp_ms": 1234,
            "user_position": [0, 0, 0],
            "user_heading": [0, 0, 1],
            "observations": [
                {"position": [1, 0, 0], "size": [1, 1, 1], "classification": "person"},
                {"position": [2, 0, 0], "size": [1, 1, 1], "confidence": 1.7},
            ],
        }
    )

    assert batch.seq == 7
    assert batch.user_position == (0.0, 0.0, 0.0)
    assert batch.observations[0].classification is ObstacleType.PERSON
    assert batch.observations[1].confidence == pytest.approx(1.0)


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "point_cloud"},
        {"type": "obstacle", "position": [1, 0], "size": [1, 1, 1]},
        {"type": "obstacle", "position": [1, 0, float("nan")], "size": [1, 1, 1]},
        {"type": "obstacle", "position": [1, 0, 0], "size": [1, 1, 1], "confidence": "high"},
        {"type": "obstacle_batch", "observations": "nope"},
    ],
)
def test_malformed_payloads_raise(payload):
    with pytest.raises(ValueError):
        ObservationIngestor.decode_text_payload(payload)


@pytest.mark.parametrize("encoding", ["f32_raw", "zlib_f32"])
def test_decode_binary_packet(encoding):
    observations = [
        ObstacleObservation((1.0, 0.0, 2.0), (0.5, 1.0, 0.5), 0.75),
        ObstacleObservation((3.0, 0.5, 1.0), (2.0, 1.0, 1.0), 0.5),
    ]

    batch = ObservationIngestor.decode_binary_packet(
        _packet(observations, labels=["table", "door"], encoding=encoding, seq=3)
    )

    assert batch.seq == 3
    assert [o.classification for o in batch.observations] == [ObstacleType.TABLE, ObstacleType.WALL]
    assert batch.observations[0].position == pytest.approx((1.0, 0.0, 2.0))
    assert batch.observations[1].confidence == pytest.approx(0.5)


def test_binary_size_mismatch_raises():
    packet = _packet([ObstacleObservation((1.0, 0.0, 2.0), (0.5, 1.0, 0.5), 0.75)])
    with pytest.raises(ValueError):
        ObservationIngestor.decode_binary_packet(packet[:-4])


def test_binary_header_errors_raise():
    with pytest.raises(ValueError):
        ObservationIngestor.decode_binary_packet(b"\x01")
    with pytest.raises(ValueError):
        ObservationIngestor.decode_binary_packet((50).to_bytes(4, "little") + b"{}")


def test_queue_drops_oldest_batch_when_full():
    ingestor = ObservationIngestor(max_queue_size=2)

    assert not ingestor.enqueue(ObservationBatch(seq=1, timestamp_ms=0))
    assert not ingestor.enqueue(ObservationBatch(seq=2, timestamp_ms=0))
    assert ingestor.enqueue(ObservationBatch(seq=3, timestamp_ms=0))

    assert [b.seq for b in ingestor.drain_nowait()] == [2, 3]
    assert ingestor.queue_size == 0


def test_corrupt_zlib_body_raises_value_error():
    header = json.dumps({"type": "obstacle_batch", "count": 1, "encoding": "zlib_f32"}).encode("utf-8")
    packet = len(header).to_bytes(4, "little") + header + b"not-zlib-data"

    with pytest.raises(ValueError):
        ObservationIngestor.decode_binary_packet(packet)
