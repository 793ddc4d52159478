from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from wayfinder.fingerprint import ObstacleSample
from wayfinder.geometry import Vec3, as_array, direction, distance, normalize
from wayfinder.location_store import CachedObstacle, LocationMemory, MemoryStats

logger = logging.getLogger(__name__)


class ScanMode(str, Enum):
    AGGRESSIVE = "aggressive"
    NORMAL = "normal"
    CONSERVATIVE = "conservative"
    PREDICTIVE = "predictive"

    @property
    def frequency_hz(self) -> int:
        return SCAN_MODE_PROFILES[self].frequency_hz

    @property
    def coverage(self) -> float:
        return SCAN_MODE_PROFILES[self].coverage

    @property
    def battery_impact(self) -> float:
        return SCAN_MODE_PROFILES[self].battery_impact


@dataclass(frozen=True)
class ScanProfile:
    frequency_hz: int
    coverage: float
    battery_impact: float  # fraction of battery per hour


SCAN_MODE_PROFILES: Dict[ScanMode, ScanProfile] = {
    ScanMode.AGGRESSIVE: ScanProfile(frequency_hz=60, coverage=1.0, battery_impact=0.08),
    ScanMode.NORMAL: ScanProfile(frequency_hz=30, coverage=0.6, battery_impact=0.05),
    ScanMode.CONSERVATIVE: ScanProfile(frequency_hz=15, coverage=0.3, battery_impact=0.03),
    ScanMode.PREDICTIVE: ScanProfile(frequency_hz=10, coverage=0.2, battery_impact=0.02),
}

PREDICTIVE_MIN_VISITS = 20
PREDICTIVE_MIN_CONFIDENCE = 0.9
CONSERVATIVE_MIN_VISITS = 10
NORMAL_MIN_VISITS = 5

FAST_USER_SPEED_MPS = 1.5
CLOSE_OBSTACLE_M = 0.5
CLEAR_OBSTACLE_M = 2.0
SIMPLE_PATH_COMPLEXITY = 0.3

PREDICTIVE_CACHE_MAX_AGE_S = 60.0
CONSERVATIVE_CACHE_MAX_AGE_S = 30.0
CONSERVATIVE_CACHE_PERMANENCE = 0.8
CONSERVATIVE_CACHE_RADIUS_M = 3.0
MERGE_MIN_PERMANENCE = 0.7
MERGE_MATCH_M = 0.5
SKIP_AREA_PERMANENCE = 0.9

DESTINATION_START_RADIUS_M = 1.0
DESTINATION_HEADING_DOT = 0.7


@dataclass(frozen=True)
class ScanParameters:
    frequency_hz: int
    coverage: float
    skip_areas: Tuple[Vec3, ...]


def mode_for_location(location: Optional[LocationMemory]) -> ScanMode:
    if location is None:
        return ScanMode.AGGRESSIVE
    if location.visit_count > PREDICTIVE_MIN_VISITS and location.confidence > PREDICTIVE_MIN_CONFIDENCE:
        return ScanMode.PREDICTIVE
    if location.visit_count > CONSERVATIVE_MIN_VISITS:
        return ScanMode.CONSERVATIVE
    if location.visit_count > NORMAL_MIN_VISITS:
        return ScanMode.NORMAL
    return ScanMode.AGGRESSIVE


class ScanStrategyController:
    """
    Chooses the sensing cadence from location familiarity and live conditions.

    Everything here is in-memory and synchronous; the caller supplies the
    location match and, for predictive mode, the predicted layout.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic

        self.mode: ScanMode = ScanMode.AGGRESSIVE
        self.location: Optional[LocationMemory] = None
        self.predicted_obstacles: List[CachedObstacle] = []
        self._recognized_at: Optional[float] = None

    @property
    def is_in_known_location(self) -> bool:
        return self.location is not None

    @property
    def location_confidence(self) -> float:
        return self.location.confidence if self.location is not None else 0.0

    @property
    def battery_usage_rate(self) -> float:
        return self.mode.battery_impact

    def cache_age_s(self) -> Optional[float]:
        if self._recognized_at is None:
            return None
        return max(0.0, self._clock() - self._recognized_at)

    def update_location(
        self,
        location: Optional[LocationMemory],
        predicted_layout: Optional[Sequence[CachedObstacle]] = None,
    ) -> ScanMode:
        previous_id = self.location.id if self.location is not None else None
        mode = mode_for_location(location)

        if location is None:
            self.location = None
            self.predicted_obstacles = []
            self._recognized_at = None
            if previous_id is not None:
                logger.info("Left known location %d; new surroundings.", previous_id)
        else:
            if location.id != previous_id:
                self._recognized_at = self._clock()
                logger.info(
                    "Recognized location %s (visit #%d).",
                    location.name or location.id,
                    location.visit_count,
                )
            self.location = location
            if mode is ScanMode.PREDICTIVE and predicted_layout is not None:
                self.predicted_obstacles = list(predicted_layout)
            else:
                self.predicted_obstacles = list(location.obstacles)

        self._set_mode(mode)
        return self.mode

    def adapt_scan_strategy(
        self,
        user_speed_mps: float,
        obstacle_proximity_m: float,
        path_complexity: float,
    ) -> ScanMode:
        if user_speed_mps > FAST_USER_SPEED_MPS or obstacle_proximity_m < CLOSE_OBSTACLE_M:
            if self.mode is not ScanMode.AGGRESSIVE:
                self._set_mode(ScanMode.NORMAL)
            return self.mode

        if (
            self.is_in_known_location
            and path_complexity < SIMPLE_PATH_COMPLEXITY
            and obstacle_proximity_m > CLEAR_OBSTACLE_M
            and self.mode in (ScanMode.NORMAL, ScanMode.AGGRESSIVE)
        ):
            self._set_mode(ScanMode.CONSERVATIVE)
        return self.mode

    def should_use_cache(self, position: Vec3) -> bool:
        if not self.is_in_known_location:
            return False
        age = self.cache_age_s()
        if age is None:
            return False

        if self.mode is ScanMode.PREDICTIVE:
            return age < PREDICTIVE_CACHE_MAX_AGE_S

        if self.mode is ScanMode.CONSERVATIVE and age < CONSERVATIVE_CACHE_MAX_AGE_S:
            return any(
                cached.permanence > CONSERVATIVE_CACHE_PERMANENCE
                and distance(cached.position, position) < CONSERVATIVE_CACHE_RADIUS_M
                for cached in self.predicted_obstacles
            )

        return False

    def merge_with_cache(self, live: Sequence[ObstacleSample]) -> List[ObstacleSample]:
        merged = list(live)
        for cached in self.predicted_obstacles:
            if cached.permanence <= MERGE_MIN_PERMANENCE:
                continue
            if any(distance(obs.position, cached.position) < MERGE_MATCH_M for obs in live):
                continue
            merged.append(ObstacleSample(position=cached.position, size=cached.size, type=cached.type))
        return merged

    def get_optimized_scan_parameters(self) -> ScanParameters:
        skip: Tuple[Vec3, ...] = ()
        if self.mode is ScanMode.PREDICTIVE:
            skip = tuple(c.position for c in self.predicted_obstacles if c.permanence > SKIP_AREA_PERMANENCE)
        return ScanParameters(
            frequency_hz=self.mode.frequency_hz,
            coverage=self.mode.coverage,
            skip_areas=skip,
        )

    def predict_destination(self, position: Vec3, heading: Vec3) -> Optional[Vec3]:
        """Last waypoint of a saved route that starts here and points the way the user is heading."""
        if self.location is None:
            return None
        facing = as_array(normalize(heading))
        for path in self.location.paths:
            if len(path.waypoints) < 2:
                continue
            first, second = path.waypoints[0], path.waypoints[1]
            if distance(first, position) >= DESTINATION_START_RADIUS_M:
                continue
            if float(np.dot(as_array(direction(first, second)), facing)) > DESTINATION_HEADING_DOT:
                return path.waypoints[-1]
        return None

    def memory_stats_summary(self, stats: MemoryStats) -> str:
        return (
            f"Locations: {stats.location_count} | Obstacles: {stats.obstacle_count} | "
            f"Storage: {stats.storage_bytes / 1024.0:.1f} KB | Mode: {self.mode.value} | "
            f"Battery: {self.battery_usage_rate * 100:.0f}% per hour"
        )

    def _set_mode(self, mode: ScanMode) -> None:
        if mode is not self.mode:
            logger.info(
                "Scan mode %s -> %s (%d Hz, %.0f%% coverage).",
                self.mode.value,
                mode.value,
                mode.frequency_hz,
                mode.coverage * 100,
            )
        self.mode = mode
