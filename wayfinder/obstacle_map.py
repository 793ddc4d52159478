from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from wayfinder.geometry import Vec3, distance, vec3

logger = logging.getLogger(__name__)

STALE_AFTER_S = 30.0
RELIABLE_MIN_CONFIDENCE = 0.6
RELIABLE_MIN_UPDATES = 3
FUSION_RADIUS_M = 0.3
VOXEL_SIZE_M = 0.5
SWEEP_INTERVAL_S = 5.0
PRIORITY_TIE_M = 0.1
DEFAULT_OCCUPANCY_TOLERANCE_M = 0.3

VoxelKey = Tuple[int, int, int]


class ObstacleType(str, Enum):
    WALL = "wall"
    TABLE = "table"
    CHAIR = "chair"
    PERSON = "person"
    UNKNOWN = "unknown"
    FLOOR = "floor"
    CEILING = "ceiling"

    @property
    def priority(self) -> int:
        return _PRIORITY[self]

    @classmethod
    def parse(cls, value: Any) -> "ObstacleType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


_PRIORITY: Dict[ObstacleType, int] = {
    ObstacleType.PERSON: 10,
    ObstacleType.TABLE: 8,
    ObstacleType.CHAIR: 8,
    ObstacleType.WALL: 6,
    ObstacleType.UNKNOWN: 5,
    ObstacleType.FLOOR: 1,
    ObstacleType.CEILING: 1,
}


@dataclass
class Obstacle:
    id: str
    position: Vec3
    size: Vec3
    confidence: float
    classification: ObstacleType
    last_seen: float
    update_count: int = 1

    def age(self, now: float) -> float:
        return now - self.last_seen

    def is_stale(self, now: float) -> bool:
        return self.age(now) > STALE_AFTER_S

    @property
    def is_reliable(self) -> bool:
        return self.confidence > RELIABLE_MIN_CONFIDENCE and self.update_count > RELIABLE_MIN_UPDATES


class ReadWriteLock:
    """Many concurrent readers, one exclusive writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers > 0:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class VoxelGrid:
    """Integer cell coordinate -> ids of obstacles whose current position lies in that cell."""

    def __init__(self, resolution: float = VOXEL_SIZE_M) -> None:
        self.resolution = resolution
        self._cells: Dict[VoxelKey, Set[str]] = {}

    def __len__(self) -> int:
        return len(self._cells)

    def key_for(self, position: Vec3) -> VoxelKey:
        return (
            int(math.floor(position[0] / self.resolution)),
            int(math.floor(position[1] / self.resolution)),
            int(math.floor(position[2] / self.resolution)),
        )

    def insert(self, obstacle_id: str, position: Vec3) -> None:
        self._cells.setdefault(self.key_for(position), set()).add(obstacle_id)

    def remove(self, obstacle_id: str, position: Vec3) -> None:
        key = self.key_for(position)
        ids = self._cells.get(key)
        if ids is None:
            return
        ids.discard(obstacle_id)
        if not ids:
            del self._cells[key]

    def ids_at(self, position: Vec3) -> Set[str]:
        return set(self._cells.get(self.key_for(position), ()))

    def ids_near(self, position: Vec3, radius: float) -> Set[str]:
        found: Set[str] = set()
        reach = max(0, int(math.ceil(radius / self.resolution)))
        cx, cy, cz = self.key_for(position)
        for dx in range(-reach, reach + 1):
            for dy in range(-reach, reach + 1):
                for dz in range(-reach, reach + 1):
                    ids = self._cells.get((cx + dx, cy + dy, cz + dz))
                    if ids:
                        found.update(ids)
        return found

    def clear(self) -> None:
        self._cells.clear()


class ObstacleMemoryMap:
    """
    Concurrent spatial index of observed obstacles.

    Repeat observations within the fusion radius are merged into one tracked
    obstacle (weighted-average position, max confidence). Obstacles unobserved
    for longer than the staleness window are hidden from queries and removed by
    ``sweep_stale``, which the host calls on a fixed interval.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._lock = ReadWriteLock()
        self._obstacles: Dict[str, Obstacle] = {}
        self._grid = VoxelGrid()

        self.total_detected: int = 0

    def add_or_update(
        self,
        position: Vec3,
        size: Vec3,
        confidence: float,
        classification: ObstacleType = ObstacleType.UNKNOWN,
    ) -> str:
        position = vec3(position)
        size = vec3(size)
        confidence = float(confidence)
        classification = ObstacleType.parse(classification)

        with self._lock.write():
            now = self._clock()
            for obstacle_id in self._grid.ids_near(position, FUSION_RADIUS_M):
                existing = self._obstacles.get(obstacle_id)
                if existing is None or existing.is_stale(now):
                    continue
                if distance(existing.position, position) < FUSION_RADIUS_M:
                    self._fuse(existing, position, confidence, now)
                    return existing.id

            obstacle = Obstacle(
                id=uuid.uuid4().hex,
                position=position,
                size=size,
                confidence=confidence,
                classification=classification,
                last_seen=now,
            )
            self._obstacles[obstacle.id] = obstacle
            self._grid.insert(obstacle.id, position)
            self.total_detected += 1
            return obstacle.id

    def _fuse(self, obstacle: Obstacle, position: Vec3, confidence: float, now: float) -> None:
        self._grid.remove(obstacle.id, obstacle.position)

        weight = obstacle.update_count / (obstacle.update_count + 1)
        obstacle.position = (
            obstacle.position[0] * weight + position[0] * (1.0 - weight),
            obstacle.position[1] * weight + position[1] * (1.0 - weight),
            obstacle.position[2] * weight + position[2] * (1.0 - weight),
        )
        obstacle.confidence = max(obstacle.confidence, confidence)
        obstacle.last_seen = now
        obstacle.update_count += 1

        self._grid.insert(obstacle.id, obstacle.position)

    def get_obstacles_near(self, position: Vec3, radius: float) -> List[Obstacle]:
        position = vec3(position)
        with self._lock.read():
            now = self._clock()
            hits: List[Tuple[float, Obstacle]] = []
            for obstacle_id in self._grid.ids_near(position, radius):
                obstacle = self._obstacles.get(obstacle_id)
                if obstacle is None or obstacle.is_stale(now):
                    continue
                dist = distance(obstacle.position, position)
                if dist <= radius:
                    hits.append((dist, replace(obstacle)))

        hits.sort(key=lambda item: item[0])
        # Distances within PRIORITY_TIE_M of each other count as a tie; the
        # higher-priority class goes first inside a tie run.
        ordered: List[Obstacle] = []
        i = 0
        while i < len(hits):
            j = i + 1
            while j < len(hits) and hits[j][0] - hits[j - 1][0] < PRIORITY_TIE_M:
                j += 1
            run = sorted(hits[i:j], key=lambda item: (-item[1].classification.priority, item[0]))
            ordered.extend(obstacle for _, obstacle in run)
            i = j
        return ordered

    def is_occupied(self, position: Vec3, tolerance: float = DEFAULT_OCCUPANCY_TOLERANCE_M) -> bool:
        position = vec3(position)
        with self._lock.read():
            now = self._clock()
            for obstacle_id in self._grid.ids_near(position, tolerance):
                obstacle = self._obstacles.get(obstacle_id)
                if obstacle is None or obstacle.is_stale(now):
                    continue
                if distance(obstacle.position, position) <= tolerance:
                    return True
        return False

    def get_reliable_obstacles(self) -> List[Obstacle]:
        with self._lock.read():
            now = self._clock()
            return [
                replace(obstacle)
                for obstacle in self._obstacles.values()
                if obstacle.is_reliable and not obstacle.is_stale(now)
            ]

    @property
    def active_count(self) -> int:
        with self._lock.read():
            now = self._clock()
            return sum(1 for obstacle in self._obstacles.values() if not obstacle.is_stale(now))

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._obstacles)

    def sweep_stale(self) -> int:
        with self._lock.write():
            now = self._clock()
            stale = [obstacle for obstacle in self._obstacles.values() if obstacle.is_stale(now)]
            for obstacle in stale:
                self._grid.remove(obstacle.id, obstacle.position)
                del self._obstacles[obstacle.id]

        if stale:
            logger.debug("Swept %d stale obstacles.", len(stale))
        return len(stale)

    def clear_all(self) -> None:
        with self._lock.write():
            self._obstacles.clear()
            self._grid.clear()

    def voxel_ids_at(self, position: Vec3) -> Set[str]:
        with self._lock.read():
            return self._grid.ids_at(vec3(position))

    def export_map(self) -> List[Dict[str, Any]]:
        with self._lock.read():
            now = self._clock()
            return [
                {
                    "id": obstacle.id,
                    "position": list(obstacle.position),
                    "size": list(obstacle.size),
                    "type": obstacle.classification.value,
                    "confidence": obstacle.confidence,
                    "update_count": obstacle.update_count,
                    "age_s": obstacle.age(now),
                    "reliable": obstacle.is_reliable,
                }
                for obstacle in self._obstacles.values()
            ]
