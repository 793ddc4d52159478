"""Environment fingerprints used to recognise previously visited locations."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Sequence, Tuple

from wayfinder.geometry import Vec3, distance, vec3, volume

DOMINANT_OBSTACLE_COUNT = 10
CORNER_THRESHOLD_M = 1.5
DOMINANT_MATCH_M = 0.5
DIMENSION_SCALE_M = 10.0
CORNER_SCALE = 10.0

RoomBounds = Tuple[Vec3, Vec3]


@dataclass(frozen=True)
class ObstacleSample:
    """Position/size/type triple handed from the live map to the location memory."""

    position: Vec3
    size: Vec3
    type: str = "unknown"


@dataclass(frozen=True)
class LocationFingerprint:
    dominant_obstacles: Tuple[Vec3, ...]
    room_dimensions: Vec3
    corner_count: int
    obstacle_count: int
    signatures: FrozenSet[str] = field(default_factory=frozenset)
    ambient_signature: Optional[float] = None

    def hash(self) -> str:
        digest = hashlib.sha256()
        for position in self.dominant_obstacles:
            digest.update(struct.pack("<3d", *position))
        digest.update(struct.pack("<3d", *self.room_dimensions))
        digest.update(struct.pack("<q", int(self.corner_count)))
        digest.update(struct.pack("<q", int(self.obstacle_count)))
        for signature in sorted(self.signatures):
            encoded = signature.encode("utf-8")
            digest.update(struct.pack("<I", len(encoded)))
            digest.update(encoded)
        if self.ambient_signature is not None:
            digest.update(struct.pack("<d", float(self.ambient_signature)))
        return digest.hexdigest()

    def similarity(self, other: "LocationFingerprint") -> float:
        factors: List[float] = []

        matched = sum(
            1
            for mine in self.dominant_obstacles
            if any(distance(mine, theirs) < DOMINANT_MATCH_M for theirs in other.dominant_obstacles)
        )
        factors.append(matched / max(len(self.dominant_obstacles), 1))

        dims = 1.0 - distance(self.room_dimensions, other.room_dimensions) / DIMENSION_SCALE_M
        factors.append(max(0.0, dims))

        corners = 1.0 - abs(self.corner_count - other.corner_count) / CORNER_SCALE
        factors.append(max(0.0, corners))

        if self.signatures and other.signatures:
            common = len(self.signatures & other.signatures)
            factors.append(common / max(len(self.signatures), len(other.signatures)))

        return sum(factors) / len(factors)


def compute_fingerprint(
    obstacles: Sequence[ObstacleSample],
    room_bounds: Optional[RoomBounds] = None,
    signatures: Iterable[str] = (),
    ambient_signature: Optional[float] = None,
) -> LocationFingerprint:
    by_volume = sorted(obstacles, key=lambda o: (-volume(o.size), tuple(o.position)))
    dominant = tuple(vec3(o.position) for o in by_volume[:DOMINANT_OBSTACLE_COUNT])

    bounds = room_bounds if room_bounds is not None else estimate_bounds(obstacles)
    if bounds is None:
        # Nothing observed and no bounds supplied: zero-extent sentinel.
        return LocationFingerprint(
            dominant_obstacles=(),
            room_dimensions=(0.0, 0.0, 0.0),
            corner_count=0,
            obstacle_count=0,
            signatures=frozenset(signatures),
            ambient_signature=ambient_signature,
        )

    lo, hi = vec3(bounds[0]), vec3(bounds[1])
    dimensions = (hi[0] - lo[0], hi[1] - lo[1], hi[2] - lo[2])

    return LocationFingerprint(
        dominant_obstacles=dominant,
        room_dimensions=dimensions,
        corner_count=count_corners(obstacles, lo, hi),
        obstacle_count=len(obstacles),
        signatures=frozenset(signatures),
        ambient_signature=ambient_signature,
    )


def estimate_bounds(obstacles: Sequence[ObstacleSample]) -> Optional[RoomBounds]:
    if not obstacles:
        return None
    xs = [o.position[0] for o in obstacles]
    ys = [o.position[1] for o in obstacles]
    zs = [o.position[2] for o in obstacles]
    return (min(xs), min(ys), min(zs)), (max(xs), max(ys), max(zs))


def count_corners(obstacles: Sequence[ObstacleSample], lo: Vec3, hi: Vec3) -> int:
    """Obstacles close to both an X edge and a Z edge of the room bounds."""
    corners = 0
    for o in obstacles:
        x, _, z = o.position
        near_x = min(abs(x - lo[0]), abs(hi[0] - x)) < CORNER_THRESHOLD_M
        near_z = min(abs(z - lo[2]), abs(hi[2] - z)) < CORNER_THRESHOLD_M
        if near_x and near_z:
            corners += 1
    return corners
