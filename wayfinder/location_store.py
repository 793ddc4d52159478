from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from wayfinder.fingerprint import LocationFingerprint, ObstacleSample, RoomBounds, compute_fingerprint
from wayfinder.geometry import Vec3, distance, horizontal_distance, vec3
from wayfinder.memory_models import (
    LocationRecord,
    ObstacleRecord,
    PathRecord,
    PatternRecord,
    create_memory_engine,
    make_session_factory,
)

logger = logging.getLogger(__name__)

CACHE_CAPACITY = 3
DEFAULT_MATCH_WINDOW = 20
DEFAULT_MATCH_THRESHOLD = 0.75
DEFAULT_PERMANENCE = 0.5
DEFAULT_LOCATION_CONFIDENCE = 0.5
PERMANENCE_MATCH_M = 0.5
PERMANENCE_GAIN = 0.1
PERMANENCE_DECAY = 0.2
FREQUENT_VISIT_COUNT = 5
FRESH_WITHIN_S = 3600.0
REMOVED_PATTERN_MAX_PERMANENCE = 0.7
PATTERN_AREA_M = 1.0
PATTERN_START_CONFIDENCE = 0.5
PATTERN_GAIN = 0.15
PATTERN_APPLY_CONFIDENCE = 0.7
PATTERN_HOUR_WINDOW = 1
SAVED_PATHS_LOADED = 5
MAINTENANCE_MAX_VISITS = 3


class ChangeType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MOVED = "moved"


def day_of_week(moment: datetime) -> int:
    """1 = Sunday ... 7 = Saturday."""
    return moment.isoweekday() % 7 + 1


@dataclass(frozen=True)
class CachedObstacle:
    position: Vec3
    size: Vec3
    type: str
    permanence: float
    last_seen: datetime


@dataclass(frozen=True)
class TemporalPattern:
    day_of_week: int
    hour_of_day: int
    change_type: ChangeType
    area: Vec3
    radius: float
    confidence: float

    def matches(self, moment: datetime) -> bool:
        return (
            day_of_week(moment) == self.day_of_week
            and abs(moment.hour - self.hour_of_day) <= PATTERN_HOUR_WINDOW
        )


@dataclass(frozen=True)
class SavedPath:
    waypoints: Tuple[Vec3, ...]
    usage_count: int
    average_traversal_time: float
    success_rate: float


@dataclass(frozen=True)
class LocationMemory:
    id: int
    fingerprint: str
    name: Optional[str]
    visit_count: int
    last_visit: datetime
    obstacles: Tuple[CachedObstacle, ...]
    patterns: Tuple[TemporalPattern, ...]
    paths: Tuple[SavedPath, ...]
    average_scan_time: float
    confidence: float

    @property
    def is_frequent(self) -> bool:
        return self.visit_count > FREQUENT_VISIT_COUNT

    def is_fresh(self, now: datetime) -> bool:
        return (now - self.last_visit).total_seconds() < FRESH_WITHIN_S


@dataclass(frozen=True)
class MemoryStats:
    location_count: int
    obstacle_count: int
    storage_bytes: int


def _waypoints_key(waypoints: Iterable[Sequence[float]]) -> str:
    return json.dumps([list(vec3(w)) for w in waypoints])


class LocationMemoryStore:
    """
    Persistent location memory keyed by environment fingerprint.

    Writes go through a single worker thread and are committed before the
    call returns. Reads use their own sessions and only see committed rows.
    Database failures are logged and reported as an empty result.
    """

    def __init__(
        self,
        database_url: str = "sqlite:///spatial_memory.sqlite",
        clock: Optional[Callable[[], datetime]] = None,
        match_window: int = DEFAULT_MATCH_WINDOW,
        cache_capacity: int = CACHE_CAPACITY,
        engine: Optional[Engine] = None,
    ) -> None:
        self._engine = engine if engine is not None else create_memory_engine(database_url)
        self._sessions = make_session_factory(self._engine)
        self._clock = clock or datetime.now
        self._match_window = max(1, int(match_window))
        self._cache_capacity = max(1, int(cache_capacity))

        self._cache: Dict[str, LocationMemory] = {}
        self._cache_lock = threading.Lock()
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="location-memory-writer")

    def close(self) -> None:
        self._writer.shutdown(wait=True)
        self._engine.dispose()

    # Fingerprints

    @staticmethod
    def compute_fingerprint(
        obstacles: Sequence[ObstacleSample],
        room_bounds: Optional[RoomBounds] = None,
        signatures: Iterable[str] = (),
        ambient_signature: Optional[float] = None,
    ) -> LocationFingerprint:
        return compute_fingerprint(obstacles, room_bounds, signatures, ambient_signature)

    def find_matching_location(
        self,
        fingerprint: LocationFingerprint,
        threshold: float = DEFAULT_MATCH_THRESHOLD,
    ) -> Optional[LocationMemory]:
        """Exact fingerprint-hash lookup; ``threshold`` is reserved for similarity matching."""
        _ = threshold
        fingerprint_hash = fingerprint.hash()

        with self._cache_lock:
            cached = self._cache.get(fingerprint_hash)
        if cached is not None:
            return cached

        try:
            with self._sessions() as session:
                recent = session.scalars(
                    select(LocationRecord)
                    .order_by(LocationRecord.last_visit.desc())
                    .limit(self._match_window)
                )
                match: Optional[LocationMemory] = None
                for record in recent:
                    if record.fingerprint == fingerprint_hash:
                        match = _to_memory(record)
                        break
        except SQLAlchemyError:
            logger.exception("Location lookup failed.")
            return None

        if match is not None:
            self._remember(match)
        return match

    # Writes

    def save_location(
        self,
        fingerprint: LocationFingerprint,
        obstacles: Sequence[ObstacleSample],
        name: Optional[str] = None,
        scan_time_s: Optional[float] = None,
    ) -> Optional[LocationMemory]:
        fingerprint_hash = fingerprint.hash()
        samples = list(obstacles)
        try:
            memory = self._writer.submit(
                self._save_location_tx, fingerprint_hash, samples, name, scan_time_s
            ).result()
        except SQLAlchemyError:
            logger.exception("Saving location %s failed.", fingerprint_hash[:12])
            return None

        self._remember(memory)
        logger.info(
            "Location %s saved (id=%d, visit #%d, %d cached obstacles).",
            memory.name or fingerprint_hash[:12],
            memory.id,
            memory.visit_count,
            len(memory.obstacles),
        )
        return memory

    def _save_location_tx(
        self,
        fingerprint_hash: str,
        samples: List[ObstacleSample],
        name: Optional[str],
        scan_time_s: Optional[float],
    ) -> LocationMemory:
        now = self._clock()
        ts = now.timestamp()

        with self._sessions() as session:
            record = session.scalars(
                select(LocationRecord).where(LocationRecord.fingerprint == fingerprint_hash)
            ).one_or_none()

            if record is None:
                record = LocationRecord(
                    fingerprint=fingerprint_hash,
                    name=name,
                    visit_count=1,
                    last_visit=ts,
                    avg_scan_time=float(scan_time_s or 0.0),
                    confidence=DEFAULT_LOCATION_CONFIDENCE,
                    created_at=ts,
                    updated_at=ts,
                )
                record.obstacles = [_new_obstacle_record(sample, ts) for sample in samples]
                session.add(record)
            else:
                previous = [
                    (vec3((o.x, o.y, o.z)), vec3((o.width, o.height, o.depth)), o.permanence)
                    for o in record.obstacles
                ]

                record.visit_count += 1
                record.last_visit = ts
                record.updated_at = ts
                if name and not record.name:
                    record.name = name
                if scan_time_s is not None:
                    n = record.visit_count
                    record.avg_scan_time = (record.avg_scan_time * (n - 1) + float(scan_time_s)) / n

                _apply_permanence(record, samples, ts)
                if record.obstacles:
                    record.confidence = sum(o.permanence for o in record.obstacles) / len(record.obstacles)

                if record.visit_count > FREQUENT_VISIT_COUNT:
                    _detect_patterns(record, previous, samples, now)

            session.commit()
            return _to_memory(record)

    def save_path(
        self,
        location_id: int,
        waypoints: Sequence[Vec3],
        traversal_time_s: float,
    ) -> Optional[SavedPath]:
        try:
            result = self._writer.submit(
                self._save_path_tx, int(location_id), _waypoints_key(waypoints), float(traversal_time_s)
            ).result()
        except SQLAlchemyError:
            logger.exception("Saving path for location %s failed.", location_id)
            return None

        if result is None:
            logger.warning("Cannot save path: location %s does not exist.", location_id)
            return None

        saved, memory = result
        with self._cache_lock:
            if memory.fingerprint in self._cache:
                self._cache[memory.fingerprint] = memory
        logger.info("Path saved for location %d (%d waypoints, used %d times).",
                    location_id, len(saved.waypoints), saved.usage_count)
        return saved

    def _save_path_tx(
        self,
        location_id: int,
        key: str,
        traversal_time_s: float,
    ) -> Optional[Tuple[SavedPath, LocationMemory]]:
        with self._sessions() as session:
            location = session.get(LocationRecord, location_id)
            if location is None:
                return None

            path = session.scalars(
                select(PathRecord).where(
                    PathRecord.location_id == location_id,
                    PathRecord.waypoints == key,
                )
            ).first()

            if path is None:
                path = PathRecord(
                    waypoints=key,
                    usage_count=1,
                    avg_traversal_time=traversal_time_s,
                    success_rate=1.0,
                )
                location.paths.append(path)
            else:
                path.usage_count += 1
                n = path.usage_count
                path.avg_traversal_time = (path.avg_traversal_time * (n - 1) + traversal_time_s) / n

            session.commit()
            return _to_saved_path(path), _to_memory(location)

    def cleanup_old_locations(self, days: int = 30) -> int:
        cutoff = (self._clock() - timedelta(days=days)).timestamp()
        try:
            removed = self._writer.submit(self._cleanup_tx, cutoff).result()
        except SQLAlchemyError:
            logger.exception("Location maintenance failed.")
            return 0

        if removed:
            with self._cache_lock:
                for fingerprint_hash in removed:
                    self._cache.pop(fingerprint_hash, None)
            logger.info("Maintenance removed %d stale locations.", len(removed))
        return len(removed)

    def _cleanup_tx(self, cutoff_ts: float) -> List[str]:
        with self._sessions() as session:
            doomed = list(
                session.scalars(
                    select(LocationRecord).where(
                        LocationRecord.last_visit < cutoff_ts,
                        LocationRecord.visit_count < MAINTENANCE_MAX_VISITS,
                    )
                )
            )
            fingerprints = [record.fingerprint for record in doomed]
            for record in doomed:
                session.delete(record)
            session.commit()
            return fingerprints

    # Reads

    def get_location(self, location_id: int) -> Optional[LocationMemory]:
        try:
            with self._sessions() as session:
                record = session.get(LocationRecord, int(location_id))
                return _to_memory(record) if record is not None else None
        except SQLAlchemyError:
            logger.exception("Loading location %s failed.", location_id)
            return None

    def get_predicted_layout(
        self,
        location_id: int,
        moment: Optional[datetime] = None,
    ) -> Optional[List[CachedObstacle]]:
        location = self.get_location(location_id)
        if location is None:
            return None
        return predict_layout(location, moment or self._clock())

    def get_memory_stats(self) -> MemoryStats:
        try:
            with self._sessions() as session:
                locations = session.scalar(select(func.count()).select_from(LocationRecord)) or 0
                obstacles = session.scalar(select(func.count()).select_from(ObstacleRecord)) or 0
        except SQLAlchemyError:
            logger.exception("Reading memory statistics failed.")
            return MemoryStats(0, 0, 0)

        storage = 0
        database = self._engine.url.database
        if self._engine.dialect.name == "sqlite" and database and database != ":memory:":
            db_path = Path(database)
            if db_path.exists():
                storage = db_path.stat().st_size
        return MemoryStats(int(locations), int(obstacles), int(storage))

    def cached_fingerprints(self) -> List[str]:
        with self._cache_lock:
            return list(self._cache.keys())

    def _remember(self, memory: LocationMemory) -> None:
        with self._cache_lock:
            self._cache[memory.fingerprint] = memory
            while len(self._cache) > self._cache_capacity:
                oldest = min(self._cache.values(), key=lambda m: m.last_visit)
                del self._cache[oldest.fingerprint]


def predict_layout(location: LocationMemory, moment: datetime) -> List[CachedObstacle]:
    predicted = list(location.obstacles)
    for pattern in location.patterns:
        if pattern.confidence <= PATTERN_APPLY_CONFIDENCE or not pattern.matches(moment):
            continue
        if pattern.change_type is ChangeType.REMOVED:
            predicted = [
                obstacle for obstacle in predicted
                if distance(obstacle.position, pattern.area) >= pattern.radius
            ]
        # TODO: ADDED and MOVED patterns are recorded but not yet projected into the layout.
    return predicted


def _new_obstacle_record(sample: ObstacleSample, ts: float) -> ObstacleRecord:
    x, y, z = vec3(sample.position)
    w, h, d = vec3(sample.size)
    return ObstacleRecord(
        x=x, y=y, z=z,
        width=w, height=h, depth=d,
        type=str(sample.type),
        permanence=DEFAULT_PERMANENCE,
        last_seen=ts,
    )


def _apply_permanence(record: LocationRecord, samples: List[ObstacleSample], ts: float) -> None:
    existing = list(record.obstacles)
    rematched = set()

    for sample in samples:
        match = next(
            (o for o in existing if distance((o.x, o.y, o.z), sample.position) < PERMANENCE_MATCH_M),
            None,
        )
        if match is None:
            record.obstacles.append(_new_obstacle_record(sample, ts))
            continue
        if match.id in rematched:
            continue
        rematched.add(match.id)
        match.permanence = min(1.0, match.permanence + PERMANENCE_GAIN)
        match.last_seen = ts

    for obstacle in existing:
        if obstacle.id not in rematched:
            obstacle.permanence = max(0.0, obstacle.permanence - PERMANENCE_DECAY)


def _detect_patterns(
    record: LocationRecord,
    previous: List[Tuple[Vec3, Vec3, float]],
    samples: List[ObstacleSample],
    now: datetime,
) -> None:
    day = day_of_week(now)
    hour = now.hour

    for position, size, permanence in previous:
        still_there = any(distance(position, s.position) < PERMANENCE_MATCH_M for s in samples)
        if not still_there and permanence < REMOVED_PATTERN_MAX_PERMANENCE:
            _reinforce_pattern(record, day, hour, ChangeType.REMOVED, position, max(size[0], size[2]) / 2.0)

    for sample in samples:
        is_new = not any(distance(position, sample.position) < PERMANENCE_MATCH_M for position, _, _ in previous)
        if is_new:
            _reinforce_pattern(
                record, day, hour, ChangeType.ADDED, vec3(sample.position), max(sample.size[0], sample.size[2]) / 2.0
            )


def _reinforce_pattern(
    record: LocationRecord,
    day: int,
    hour: int,
    change_type: ChangeType,
    area: Vec3,
    radius: float,
) -> None:
    for pattern in record.patterns:
        if (
            pattern.day_of_week == day
            and pattern.hour_of_day == hour
            and pattern.change_type == change_type.value
            and horizontal_distance((pattern.area_x, pattern.area_y, pattern.area_z), area) < PATTERN_AREA_M
        ):
            pattern.confidence = min(1.0, pattern.confidence + PATTERN_GAIN)
            return

    record.patterns.append(
        PatternRecord(
            day_of_week=day,
            hour_of_day=hour,
            change_type=change_type.value,
            area_x=area[0],
            area_y=area[1],
            area_z=area[2],
            radius=radius,
            confidence=PATTERN_START_CONFIDENCE,
        )
    )


def _to_saved_path(record: PathRecord) -> SavedPath:
    return SavedPath(
        waypoints=tuple(vec3(w) for w in json.loads(record.waypoints)),
        usage_count=record.usage_count,
        average_traversal_time=record.avg_traversal_time,
        success_rate=record.success_rate,
    )


def _to_memory(record: LocationRecord) -> LocationMemory:
    paths = sorted(record.paths, key=lambda p: p.usage_count, reverse=True)[:SAVED_PATHS_LOADED]
    return LocationMemory(
        id=record.id,
        fingerprint=record.fingerprint,
        name=record.name,
        visit_count=record.visit_count,
        last_visit=datetime.fromtimestamp(record.last_visit),
        obstacles=tuple(
            CachedObstacle(
                position=(o.x, o.y, o.z),
                size=(o.width, o.height, o.depth),
                type=o.type,
                permanence=o.permanence,
                last_seen=datetime.fromtimestamp(o.last_seen),
            )
            for o in record.obstacles
        ),
        patterns=tuple(
            TemporalPattern(
                day_of_week=p.day_of_week,
                hour_of_day=p.hour_of_day,
                change_type=ChangeType(p.change_type),
                area=(p.area_x, p.area_y, p.area_z),
                radius=p.radius,
                confidence=p.confidence,
            )
            for p in record.patterns
        ),
        paths=tuple(_to_saved_path(p) for p in paths),
        average_scan_time=record.avg_scan_time,
        confidence=record.confidence,
    )
