from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from wayfinder.geometry import Vec3


class PathStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    PATH_FOUND = "path_found"
    NO_PATH_AVAILABLE = "no_path_available"
    RECALCULATING = "recalculating"

    @property
    def is_terminal(self) -> bool:
        return self in (PathStatus.PATH_FOUND, PathStatus.NO_PATH_AVAILABLE)


class InstructionKind(str, Enum):
    GO_STRAIGHT = "go_straight"
    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"
    STOP = "stop"
    AVOID = "avoid"


@dataclass(frozen=True)
class Waypoint:
    position: Vec3
    direction: Vec3
    distance_from_start: float
    is_key_point: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": list(self.position),
            "direction": list(self.direction),
            "distance_from_start": self.distance_from_start,
            "is_key_point": self.is_key_point,
        }


@dataclass(frozen=True)
class NavigationInstruction:
    kind: InstructionKind
    position: Vec3
    distance: float  # cumulative metres from path start
    amount: float = 0.0  # metres for go_straight, degrees for turns
    label: Optional[str] = None

    def describe(self) -> str:
        if self.kind is InstructionKind.GO_STRAIGHT:
            return f"Go straight {self.amount:.1f} meters"
        if self.kind is InstructionKind.TURN_LEFT:
            return f"Turn left {self.amount:.0f} degrees"
        if self.kind is InstructionKind.TURN_RIGHT:
            return f"Turn right {self.amount:.0f} degrees"
        if self.kind is InstructionKind.AVOID:
            return f"Avoid {self.label or 'obstacle'}"
        return "Stop"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "position": list(self.position),
            "distance": self.distance,
            "amount": self.amount,
            "label": self.label,
            "text": self.describe(),
        }


@dataclass(frozen=True)
class RouteSnapshot:
    """Everything an observer may read about the current route, published as one value."""

    status: PathStatus = PathStatus.IDLE
    waypoints: Tuple[Waypoint, ...] = ()
    instructions: Tuple[NavigationInstruction, ...] = ()
    next_index: Optional[int] = None
    generation: int = 0

    @property
    def next_waypoint(self) -> Optional[Waypoint]:
        if self.next_index is None or self.next_index >= len(self.waypoints):
            return None
        return self.waypoints[self.next_index]

    @property
    def destination(self) -> Optional[Vec3]:
        return self.waypoints[-1].position if self.waypoints else None

    def to_dict(self) -> Dict[str, Any]:
        nxt = self.next_waypoint
        return {
            "status": self.status.value,
            "waypoints": [w.to_dict() for w in self.waypoints],
            "instructions": [i.to_dict() for i in self.instructions],
            "next_index": self.next_index,
            "next_waypoint": nxt.to_dict() if nxt is not None else None,
            "generation": self.generation,
        }


@dataclass
class PlanCounters:
    started: int = 0
    found: int = 0
    failed: int = 0
    superseded: int = 0
    replans: int = 0


class RouteStateMachine:
    """
    Thread-safe holder of the route status.

    idle -> planning -> {path_found, no_path_available}
    path_found | no_path_available -> recalculating -> {path_found, no_path_available}
    any -> idle via clear()

    Each planning request gets a generation number. A result is published only
    if its generation is still current, so a superseded or cleared request
    never overwrites newer state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = RouteSnapshot()
        self._planning_started_monotonic_s: Optional[float] = None
        self.last_plan_duration_s: Optional[float] = None

        self.counters = PlanCounters()

    def begin_planning(self) -> int:
        with self._lock:
            if self._snapshot.status in (PathStatus.PLANNING, PathStatus.RECALCULATING):
                self.counters.superseded += 1
            generation = self._snapshot.generation + 1
            self._snapshot = RouteSnapshot(
                status=PathStatus.PLANNING,
                waypoints=self._snapshot.waypoints,
                instructions=self._snapshot.instructions,
                next_index=self._snapshot.next_index,
                generation=generation,
            )
            self.counters.started += 1
            self._planning_started_monotonic_s = time.monotonic()
            return generation

    def begin_recalculating(self) -> Tuple[bool, str, int]:
        with self._lock:
            current = self._snapshot
            if not current.status.is_terminal:
                return False, f"Cannot recalculate while {current.status.value}.", current.generation

            generation = current.generation + 1
            self._snapshot = RouteSnapshot(
                status=PathStatus.RECALCULATING,
                waypoints=current.waypoints,
                instructions=current.instructions,
                next_index=current.next_index,
                generation=generation,
            )
            self.counters.started += 1
            self.counters.replans += 1
            self._planning_started_monotonic_s = time.monotonic()
            return True, "Recalculating route.", generation

    def publish(
        self,
        generation: int,
        waypoints: Sequence[Waypoint],
        instructions: Sequence[NavigationInstruction],
    ) -> Tuple[bool, RouteSnapshot]:
        with self._lock:
            current = self._snapshot
            if generation != current.generation or current.status.is_terminal or current.status is PathStatus.IDLE:
                return False, current

            if self._planning_started_monotonic_s is not None:
                self.last_plan_duration_s = max(0.0, time.monotonic() - self._planning_started_monotonic_s)
            self._planning_started_monotonic_s = None

            if waypoints:
                self._snapshot = RouteSnapshot(
                    status=PathStatus.PATH_FOUND,
                    waypoints=tuple(waypoints),
                    instructions=tuple(instructions),
                    next_index=0,
                    generation=generation,
                )
                self.counters.found += 1
            else:
                # Failure leaves the previous route readable.
                self._snapshot = RouteSnapshot(
                    status=PathStatus.NO_PATH_AVAILABLE,
                    waypoints=current.waypoints,
                    instructions=current.instructions,
                    next_index=current.next_index,
                    generation=generation,
                )
                self.counters.failed += 1
            return True, self._snapshot

    def advance_to(self, next_index: int) -> RouteSnapshot:
        with self._lock:
            current = self._snapshot
            if current.waypoints and current.next_index is not None and next_index > current.next_index:
                self._snapshot = RouteSnapshot(
                    status=current.status,
                    waypoints=current.waypoints,
                    instructions=current.instructions,
                    next_index=min(next_index, len(current.waypoints)),
                    generation=current.generation,
                )
            return self._snapshot

    def clear(self) -> int:
        with self._lock:
            generation = self._snapshot.generation + 1
            self._snapshot = RouteSnapshot(status=PathStatus.IDLE, generation=generation)
            self._planning_started_monotonic_s = None
            return generation

    def snapshot(self) -> RouteSnapshot:
        with self._lock:
            return self._snapshot

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "status": self._snapshot.status.value,
                "generation": self._snapshot.generation,
                "plans_started": self.counters.started,
                "plans_found": self.counters.found,
                "plans_failed": self.counters.failed,
                "plans_superseded": self.counters.superseded,
                "replans": self.counters.replans,
                "last_plan_duration_s": self.last_plan_duration_s,
            }
