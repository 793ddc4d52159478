from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from wayfinder.fingerprint import LocationFingerprint, ObstacleSample, RoomBounds
from wayfinder.geometry import FORWARD, Vec3, distance, horizontal_distance, vec3
from wayfinder.location_store import LocationMemory, LocationMemoryStore, MemoryStats, SavedPath
from wayfinder.observation_ingest import ObservationBatch, ObservationIngestor
from wayfinder.obstacle_map import ObstacleMemoryMap
from wayfinder.path_planner import PathPlanner, avoid_instruction
from wayfinder.route_state import InstructionKind, NavigationInstruction, RouteSnapshot
from wayfinder.scan_strategy import CLOSE_OBSTACLE_M, ScanMode, ScanParameters, ScanStrategyController, mode_for_location

logger = logging.getLogger(__name__)

PROXIMITY_SEARCH_M = 5.0


@dataclass
class EngineConfig:
    loop_hz: float = 10.0
    sweep_interval_s: float = 5.0
    strategy_interval_s: float = 5.0
    fingerprint_interval_s: float = 15.0
    maintenance_interval_s: float = 3600.0
    maintenance_horizon_days: int = 30
    max_batches_per_tick: int = 64


@dataclass
class UserPose:
    position: Vec3
    heading: Vec3
    speed_mps: float
    updated_s: float


@dataclass
class IngestCounters:
    batches: int = 0
    observations: int = 0
    dropped_batches: int = 0
    last_seq: int = -1
    last_timestamp_ms: int = 0


class SpatialAwarenessEngine:
    """
    Host loop tying the components together.

    Observations are drained into the obstacle map every tick. The staleness
    sweep, location recognition, scan-strategy re-evaluation and store
    maintenance run on their own intervals from the same tick, so a host (or a
    test) drives time explicitly by calling ``tick(now)``.
    """

    def __init__(
        self,
        config: EngineConfig,
        obstacle_map: ObstacleMemoryMap,
        store: LocationMemoryStore,
        strategy: ScanStrategyController,
        planner: PathPlanner,
        ingestor: ObservationIngestor,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._cfg = config
        self._map = obstacle_map
        self._store = store
        self._strategy = strategy
        self._planner = planner
        self._ingestor = ingestor
        self._clock = clock or time.monotonic

        self._lock = threading.Lock()
        self._stop_requested = False

        self._user: Optional[UserPose] = None
        self._pose_dirty = False
        self._signatures: FrozenSet[str] = frozenset()
        self._room_bounds: Optional[RoomBounds] = None
        self._ambient_signature: Optional[float] = None
        self._location: Optional[LocationMemory] = None

        now = self._clock()
        self._scan_started_s = now
        self._last_sweep_s = now
        self._last_strategy_s = now
        self._last_fingerprint_s = now
        self._last_maintenance_s = now

        self.counters = IngestCounters()

    async def run(self) -> None:
        target_hz = max(1e-3, float(self._cfg.loop_hz))
        interval_s = 1.0 / target_hz

        while not self._stop_requested:
            loop_start_s = time.monotonic()

            try:
                self.tick()
            except Exception:
                logger.exception("Engine tick failed.")

            elapsed = time.monotonic() - loop_start_s
            sleep_s = max(0.0, interval_s - elapsed)
            if sleep_s > 0.0:
                await asyncio.sleep(sleep_s)

    def request_stop(self) -> None:
        self._stop_requested = True

    def close(self) -> None:
        self.request_stop()
        self._planner.close()
        self._store.close()

    # Scheduler

    def tick(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else float(now)

        for batch in self._ingestor.drain_nowait(self._cfg.max_batches_per_tick):
            self.ingest_batch(batch, now)

        if now - self._last_sweep_s >= self._cfg.sweep_interval_s:
            self._last_sweep_s = now
            self._map.sweep_stale()

        if now - self._last_fingerprint_s >= self._cfg.fingerprint_interval_s:
            self._last_fingerprint_s = now
            self.check_location()

        if now - self._last_strategy_s >= self._cfg.strategy_interval_s:
            self._last_strategy_s = now
            self.update_strategy()

        if now - self._last_maintenance_s >= self._cfg.maintenance_interval_s:
            self._last_maintenance_s = now
            self.perform_maintenance()

        with self._lock:
            user = self._user if self._pose_dirty else None
            self._pose_dirty = False
        if user is not None:
            self._planner.update_user_position(user.position, user.heading, self.planning_obstacles(user.position))

    def record_drop(self) -> None:
        with self._lock:
            self.counters.dropped_batches += 1

    def ingest_batch(self, batch: ObservationBatch, now: Optional[float] = None) -> int:
        for obs in batch.observations:
            self._map.add_or_update(obs.position, obs.size, obs.confidence, obs.classification)

        with self._lock:
            self.counters.batches += 1
            self.counters.observations += len(batch.observations)
            self.counters.last_seq = int(batch.seq)
            self.counters.last_timestamp_ms = int(batch.timestamp_ms)

        if batch.user_position is not None:
            self.set_user_pose(batch.user_position, batch.user_heading, now)
        return len(batch.observations)

    # Inputs

    def set_user_pose(self, position: Vec3, heading: Optional[Vec3] = None, now: Optional[float] = None) -> UserPose:
        now = self._clock() if now is None else float(now)
        position = vec3(position)
        with self._lock:
            previous = self._user
            speed = 0.0
            if previous is not None and now > previous.updated_s:
                speed = horizontal_distance(previous.position, position) / (now - previous.updated_s)
            if heading is None:
                heading = previous.heading if previous is not None else FORWARD
            self._user = UserPose(position=position, heading=vec3(heading), speed_mps=speed, updated_s=now)
            self._pose_dirty = True
            return self._user

    def set_signatures(self, signatures: Iterable[str]) -> None:
        with self._lock:
            self._signatures = frozenset(str(s) for s in signatures)

    def set_room_bounds(self, bounds: Optional[RoomBounds]) -> None:
        with self._lock:
            self._room_bounds = None if bounds is None else (vec3(bounds[0]), vec3(bounds[1]))

    def set_ambient_signature(self, value: Optional[float]) -> None:
        with self._lock:
            self._ambient_signature = None if value is None else float(value)

    # Recognition and memory

    def reliable_samples(self) -> List[ObstacleSample]:
        return [
            ObstacleSample(position=o.position, size=o.size, type=o.classification.value)
            for o in self._map.get_reliable_obstacles()
        ]

    def current_fingerprint(self, samples: Optional[List[ObstacleSample]] = None) -> LocationFingerprint:
        if samples is None:
            samples = self.reliable_samples()
        with self._lock:
            bounds = self._room_bounds
            signatures = self._signatures
            ambient = self._ambient_signature
        return self._store.compute_fingerprint(samples, bounds, signatures, ambient)

    def check_location(self) -> Optional[LocationMemory]:
        fingerprint = self.current_fingerprint()
        match = self._store.find_matching_location(fingerprint)

        predicted = None
        if match is not None and mode_for_location(match) is ScanMode.PREDICTIVE:
            predicted = self._store.get_predicted_layout(match.id)

        with self._lock:
            previous = self._location
            self._location = match
            self._strategy.update_location(match, predicted)
            if match is None or previous is None or previous.id != match.id:
                self._scan_started_s = self._clock()

        if match is None:
            logger.debug("No stored location matches the current surroundings.")
        return match

    def update_strategy(self) -> ScanMode:
        with self._lock:
            user = self._user
        proximity = self.nearest_obstacle_distance(user.position) if user is not None else math.inf
        speed = user.speed_mps if user is not None else 0.0
        complexity = self.path_complexity()

        with self._lock:
            self._strategy.update_location(self._location, list(self._strategy.predicted_obstacles))
            return self._strategy.adapt_scan_strategy(speed, proximity, complexity)

    def save_current_location(self, name: Optional[str] = None) -> Optional[LocationMemory]:
        samples = self.reliable_samples()
        fingerprint = self.current_fingerprint(samples)
        with self._lock:
            scan_time_s = max(0.0, self._clock() - self._scan_started_s)

        saved = self._store.save_location(fingerprint, samples, name=name, scan_time_s=scan_time_s)
        if saved is None:
            return None

        predicted = None
        if mode_for_location(saved) is ScanMode.PREDICTIVE:
            predicted = self._store.get_predicted_layout(saved.id)

        with self._lock:
            self._location = saved
            self._strategy.update_location(saved, predicted)
        return saved

    def save_navigation_path(self, traversal_time_s: float) -> Optional[SavedPath]:
        with self._lock:
            location = self._location
        route = self._planner.snapshot()
        if location is None or not route.waypoints:
            logger.warning("Cannot save path: no known location or no route.")
            return None
        return self._store.save_path(location.id, [w.position for w in route.waypoints], traversal_time_s)

    def perform_maintenance(self) -> int:
        return self._store.cleanup_old_locations(days=self._cfg.maintenance_horizon_days)

    def memory_stats(self) -> MemoryStats:
        return self._store.get_memory_stats()

    def memory_summary(self) -> str:
        stats = self._store.get_memory_stats()
        with self._lock:
            return self._strategy.memory_stats_summary(stats)

    # Planning

    def planning_obstacles(self, position: Optional[Vec3] = None) -> List[ObstacleSample]:
        live = self.reliable_samples()
        with self._lock:
            if position is not None and self._strategy.should_use_cache(position):
                return self._strategy.merge_with_cache(live)
        return live

    def plan_route(
        self,
        goal: Vec3,
        start: Optional[Vec3] = None,
        heading: Optional[Vec3] = None,
    ) -> "Future[Optional[RouteSnapshot]]":
        with self._lock:
            user = self._user
        if start is None:
            if user is None:
                raise ValueError("Start position is required before the user position is known.")
            start = user.position
        if heading is None and user is not None:
            heading = user.heading
        return self._planner.plan_path(vec3(start), vec3(goal), self.planning_obstacles(vec3(start)), heading)

    def update_user_position(self, position: Vec3, heading: Optional[Vec3] = None) -> Optional["Future[Optional[RouteSnapshot]]"]:
        user = self.set_user_pose(position, heading)
        with self._lock:
            self._pose_dirty = False
        return self._planner.update_user_position(user.position, user.heading, self.planning_obstacles(user.position))

    def clear_route(self) -> None:
        self._planner.clear_path()

    def route(self) -> RouteSnapshot:
        return self._planner.snapshot()

    def nearest_obstacle_distance(self, position: Vec3) -> float:
        nearby = self._map.get_obstacles_near(position, PROXIMITY_SEARCH_M)
        if not nearby:
            return math.inf
        return min(distance(o.position, position) for o in nearby)

    def proximity_alert(self) -> Optional[NavigationInstruction]:
        with self._lock:
            user = self._user
        if user is None:
            return None
        nearby = self._map.get_obstacles_near(user.position, CLOSE_OBSTACLE_M)
        if not nearby:
            return None
        closest = nearby[0]
        return avoid_instruction(closest.classification.value, closest.position)

    def path_complexity(self) -> float:
        """Share of route legs that end in a turn, 0 when there is no route."""
        route = self._planner.snapshot()
        if len(route.waypoints) < 2:
            return 0.0
        turns = sum(1 for i in route.instructions if i.kind in (InstructionKind.TURN_LEFT, InstructionKind.TURN_RIGHT))
        return min(1.0, turns / (len(route.waypoints) - 1))

    def scan_parameters(self) -> ScanParameters:
        with self._lock:
            return self._strategy.get_optimized_scan_parameters()

    def predict_destination(self) -> Optional[Vec3]:
        with self._lock:
            user = self._user
            if user is None:
                return None
            return self._strategy.predict_destination(user.position, user.heading)

    def debug_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            user = self._user
            location = self._location
            mode = self._strategy.mode
            battery = self._strategy.battery_usage_rate
            counters = IngestCounters(**vars(self.counters))
            signature_count = len(self._signatures)

        return {
            "scan_mode": mode.value,
            "battery_usage_rate": battery,
            "known_location": location is not None,
            "location_id": location.id if location is not None else None,
            "location_name": location.name if location is not None else None,
            "visit_count": location.visit_count if location is not None else 0,
            "have_user_pose": user is not None,
            "user_speed_mps": user.speed_mps if user is not None else 0.0,
            "signature_count": signature_count,
            "obstacles_tracked": len(self._map),
            "obstacles_active": self._map.active_count,
            "obstacles_total_detected": self._map.total_detected,
            "observation_queue_size": self._ingestor.queue_size,
            "ingest": {
                "batches": counters.batches,
                "observations": counters.observations,
                "dropped_batches": counters.dropped_batches,
                "last_seq": counters.last_seq,
                "last_timestamp_ms": counters.last_timestamp_ms,
            },
            "route": self._planner.stats(),
        }
