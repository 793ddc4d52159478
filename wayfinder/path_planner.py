from __future__ import annotations

import heapq
import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from wayfinder.geometry import (
    FORWARD,
    Vec3,
    angle_between,
    as_array,
    direction,
    distance,
    point_segment_distance,
    segment_clearances,
    vec3,
    vertical_cross,
)
from wayfinder.route_state import (
    InstructionKind,
    NavigationInstruction,
    PathStatus,
    RouteSnapshot,
    RouteStateMachine,
    Waypoint,
)

logger = logging.getLogger(__name__)

GRID_RESOLUTION_M = 0.25
SAFETY_MARGIN_M = 0.4
MAX_SEARCH_NODES = 1000
KEY_POINT_ANGLE_RAD = math.pi / 6.0
WAYPOINT_REACHED_M = 0.5
DEVIATION_LIMIT_M = 1.0

Cell = Tuple[int, int]

_CARDINAL = ((1, 0), (-1, 0), (0, 1), (0, -1))
_DIAGONAL = ((1, 1), (1, -1), (-1, 1), (-1, -1))
NEIGHBOR_OFFSETS: Tuple[Cell, ...] = _CARDINAL + _DIAGONAL


class _PlanCancelled(Exception):
    pass


@dataclass(frozen=True)
class PathNode:
    cell: Cell
    g_cost: float
    h_cost: float
    parent: Optional[Cell] = None

    @property
    def f_cost(self) -> float:
        return self.g_cost + self.h_cost


class ObstacleField:
    """Obstacle centres and keep-out radii (half-width plus safety margin) as numpy arrays."""

    def __init__(self, obstacles: Iterable, safety_margin_m: float = SAFETY_MARGIN_M) -> None:
        centers: List[Vec3] = []
        reach: List[float] = []
        for obstacle in obstacles:
            centers.append(vec3(obstacle.position))
            reach.append(float(obstacle.size[0]) / 2.0 + safety_margin_m)
        self.centers = np.asarray(centers, dtype=np.float64).reshape(-1, 3)
        self.reach = np.asarray(reach, dtype=np.float64)

    def __len__(self) -> int:
        return int(self.reach.shape[0])

    def is_blocked(self, point: Sequence[float]) -> bool:
        if len(self) == 0:
            return False
        gaps = np.linalg.norm(self.centers - as_array(point), axis=1)
        return bool(np.any(gaps < self.reach))

    def has_line_of_sight(self, a: Sequence[float], b: Sequence[float]) -> bool:
        if len(self) == 0:
            return True
        return bool(np.all(segment_clearances(a, b, self.centers) >= self.reach))


def quantize(position: Sequence[float], resolution: float = GRID_RESOLUTION_M) -> Cell:
    return (
        int(math.floor(float(position[0]) / resolution + 0.5)),
        int(math.floor(float(position[2]) / resolution + 0.5)),
    )


def cell_point(cell: Cell, y: float, resolution: float = GRID_RESOLUTION_M) -> Vec3:
    return cell[0] * resolution, y, cell[1] * resolution


def find_cells(
    start: Vec3,
    goal: Vec3,
    field: ObstacleField,
    heading: Optional[Vec3] = None,
    max_nodes: int = MAX_SEARCH_NODES,
    cancelled: Optional[threading.Event] = None,
    resolution: float = GRID_RESOLUTION_M,
) -> Optional[List[Cell]]:
    """8-connected A* on the horizontal grid. Returns the cell path or None."""
    y = float(start[1])
    start_cell = quantize(start, resolution)
    goal_cell = quantize(goal, resolution)

    if field.is_blocked(cell_point(goal_cell, y, resolution)):
        return None

    def heuristic(cell: Cell) -> float:
        return math.hypot(cell[0] - goal_cell[0], cell[1] - goal_cell[1]) * resolution

    offsets = _ordered_offsets(heading)
    nodes: Dict[Cell, PathNode] = {start_cell: PathNode(start_cell, 0.0, heuristic(start_cell))}
    open_heap: List[Tuple[float, float, int, Cell]] = []
    heapq.heappush(open_heap, (nodes[start_cell].f_cost, nodes[start_cell].h_cost, 0, start_cell))
    closed: set[Cell] = set()
    blocked: Dict[Cell, bool] = {}
    pushed = 1
    explored = 0

    while open_heap:
        if cancelled is not None and cancelled.is_set():
            raise _PlanCancelled()
        if explored >= max_nodes:
            logger.debug("A* gave up after %d nodes.", explored)
            return None

        _, _, _, current = heapq.heappop(open_heap)
        if current in closed:
            continue
        closed.add(current)
        explored += 1

        if max(abs(current[0] - goal_cell[0]), abs(current[1] - goal_cell[1])) <= 1:
            path = [current]
            node = nodes[current]
            while node.parent is not None:
                path.append(node.parent)
                node = nodes[node.parent]
            path.reverse()
            if path[-1] != goal_cell:
                path.append(goal_cell)
            return path

        node = nodes[current]
        for dx, dz in offsets:
            neighbor = (current[0] + dx, current[1] + dz)
            if neighbor in closed:
                continue
            if neighbor not in blocked:
                blocked[neighbor] = field.is_blocked(cell_point(neighbor, y, resolution))
            if blocked[neighbor]:
                closed.add(neighbor)
                continue

            tentative_g = node.g_cost + math.hypot(dx, dz) * resolution
            known = nodes.get(neighbor)
            if known is not None and tentative_g >= known.g_cost:
                continue

            h_cost = heuristic(neighbor)
            nodes[neighbor] = PathNode(neighbor, tentative_g, h_cost, current)
            heapq.heappush(open_heap, (tentative_g + h_cost, h_cost, pushed, neighbor))
            pushed += 1

    return None


def _ordered_offsets(heading: Optional[Vec3]) -> Tuple[Cell, ...]:
    # Equal-cost ties are broken in favour of the user's current heading.
    if heading is None:
        return NEIGHBOR_OFFSETS
    hx, hz = float(heading[0]), float(heading[2])
    if hx == 0.0 and hz == 0.0:
        return NEIGHBOR_OFFSETS
    return tuple(sorted(NEIGHBOR_OFFSETS, key=lambda o: -(o[0] * hx + o[1] * hz) / math.hypot(*o)))


def smooth_path(points: Sequence[Vec3], field: ObstacleField) -> List[Vec3]:
    if len(points) <= 2:
        return list(points)

    smoothed = [points[0]]
    current = 0
    while current < len(points) - 1:
        furthest = current + 1
        for i in range(current + 2, len(points)):
            if field.has_line_of_sight(points[current], points[i]):
                furthest = i
            else:
                break
        smoothed.append(points[furthest])
        current = furthest
    return smoothed


def build_waypoints(points: Sequence[Vec3]) -> List[Waypoint]:
    waypoints: List[Waypoint] = []
    total = 0.0
    last = len(points) - 1

    for i, position in enumerate(points):
        if i < last:
            heading = direction(position, points[i + 1])
        elif i > 0:
            heading = direction(points[i - 1], position)
        else:
            heading = FORWARD

        if i > 0:
            total += distance(points[i - 1], position)

        key = i == 0 or i == last
        if not key:
            turn = angle_between(direction(points[i - 1], position), direction(position, points[i + 1]))
            key = turn > KEY_POINT_ANGLE_RAD

        waypoints.append(Waypoint(position=position, direction=heading, distance_from_start=total, is_key_point=key))
    return waypoints


def generate_instructions(waypoints: Sequence[Waypoint]) -> List[NavigationInstruction]:
    instructions: List[NavigationInstruction] = []
    if not waypoints:
        return instructions

    first = waypoints[0]
    if len(waypoints) > 1:
        instructions.append(
            NavigationInstruction(
                kind=InstructionKind.GO_STRAIGHT,
                position=first.position,
                distance=0.0,
                amount=distance(first.position, waypoints[1].position),
            )
        )

    for i in range(1, len(waypoints) - 1):
        waypoint = waypoints[i]
        if not waypoint.is_key_point:
            continue
        incoming = direction(waypoints[i - 1].position, waypoint.position)
        outgoing = direction(waypoint.position, waypoints[i + 1].position)
        degrees = math.degrees(angle_between(incoming, outgoing))
        kind = InstructionKind.TURN_LEFT if vertical_cross(incoming, outgoing) > 0 else InstructionKind.TURN_RIGHT
        instructions.append(
            NavigationInstruction(
                kind=kind,
                position=waypoint.position,
                distance=waypoint.distance_from_start,
                amount=degrees,
            )
        )
        instructions.append(
            NavigationInstruction(
                kind=InstructionKind.GO_STRAIGHT,
                position=waypoint.position,
                distance=waypoint.distance_from_start,
                amount=distance(waypoint.position, waypoints[i + 1].position),
            )
        )

    final = waypoints[-1]
    instructions.append(
        NavigationInstruction(kind=InstructionKind.STOP, position=final.position, distance=final.distance_from_start)
    )
    return instructions


def avoid_instruction(label: str, position: Vec3, distance_from_start: float = 0.0) -> NavigationInstruction:
    return NavigationInstruction(
        kind=InstructionKind.AVOID,
        position=vec3(position),
        distance=float(distance_from_start),
        label=label,
    )


def plan_waypoints(
    start: Vec3,
    goal: Vec3,
    field: ObstacleField,
    heading: Optional[Vec3] = None,
    max_nodes: int = MAX_SEARCH_NODES,
    cancelled: Optional[threading.Event] = None,
) -> List[Waypoint]:
    cells = find_cells(start, goal, field, heading=heading, max_nodes=max_nodes, cancelled=cancelled)
    if not cells:
        return []
    y = float(start[1])
    points = [cell_point(cell, y) for cell in cells]
    return build_waypoints(smooth_path(points, field))


class PathPlanner:
    """
    Routes around the live obstacle set on a dedicated worker thread.

    A new request cancels the one in flight. Results are published through a
    RouteStateMachine so readers always see a whole route.
    """

    def __init__(self, max_search_nodes: int = MAX_SEARCH_NODES) -> None:
        self._max_nodes = max(1, int(max_search_nodes))
        self._state = RouteStateMachine()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="path-planner")
        self._request_lock = threading.Lock()
        self._cancel: Optional[threading.Event] = None

    def close(self) -> None:
        self._cancel_in_flight()
        self._executor.shutdown(wait=True)

    @property
    def status(self) -> PathStatus:
        return self._state.snapshot().status

    def snapshot(self) -> RouteSnapshot:
        return self._state.snapshot()

    def stats(self) -> Dict[str, object]:
        return self._state.stats()

    def plan_path(
        self,
        start: Vec3,
        goal: Vec3,
        obstacles: Iterable,
        heading: Optional[Vec3] = None,
    ) -> "Future[Optional[RouteSnapshot]]":
        with self._request_lock:
            generation = self._state.begin_planning()
            return self._submit(generation, start, goal, obstacles, heading)

    def update_user_position(
        self,
        position: Vec3,
        heading: Vec3,
        obstacles: Iterable,
    ) -> Optional["Future[Optional[RouteSnapshot]]"]:
        """Advance along the route; replan toward the destination on deviation or blockage."""
        position = vec3(position)
        snap = self._state.snapshot()
        if not snap.waypoints or snap.next_index is None:
            return None

        index = snap.next_index
        while index < len(snap.waypoints) and distance(position, snap.waypoints[index].position) < WAYPOINT_REACHED_M:
            index += 1
        if index != snap.next_index:
            snap = self._state.advance_to(index)

        field = ObstacleField(list(obstacles))
        remaining = snap.waypoints[max(0, index - 1):]

        deviation = _distance_to_path(position, remaining)
        # Waypoints already passed cannot block the user.
        blocked = any(field.is_blocked(w.position) for w in snap.waypoints[index:])
        if deviation <= DEVIATION_LIMIT_M and not blocked:
            return None

        destination = snap.destination
        with self._request_lock:
            ok, msg, generation = self._state.begin_recalculating()
            if not ok:
                logger.debug(msg)
                return None
            logger.info(
                "Replanning to %s (deviation %.2f m, blocked=%s).",
                destination,
                deviation,
                blocked,
            )
            return self._submit_field(generation, position, destination, field, heading)

    def clear_path(self) -> None:
        with self._request_lock:
            self._cancel_in_flight()
            self._state.clear()

    def _submit(self, generation: int, start: Vec3, goal: Vec3, obstacles: Iterable, heading: Optional[Vec3]):
        return self._submit_field(generation, vec3(start), vec3(goal), ObstacleField(list(obstacles)), heading)

    def _submit_field(
        self,
        generation: int,
        start: Vec3,
        goal: Vec3,
        field: ObstacleField,
        heading: Optional[Vec3],
    ) -> "Future[Optional[RouteSnapshot]]":
        self._cancel_in_flight()
        cancel = threading.Event()
        self._cancel = cancel
        return self._executor.submit(self._run, generation, start, goal, field, heading, cancel)

    def _cancel_in_flight(self) -> None:
        if self._cancel is not None:
            self._cancel.set()
            self._cancel = None

    def _run(
        self,
        generation: int,
        start: Vec3,
        goal: Vec3,
        field: ObstacleField,
        heading: Optional[Vec3],
        cancel: threading.Event,
    ) -> Optional[RouteSnapshot]:
        if cancel.is_set():
            return None
        try:
            waypoints = plan_waypoints(
                start,
                goal,
                field,
                heading=heading,
                max_nodes=self._max_nodes,
                cancelled=cancel,
            )
        except _PlanCancelled:
            return None
        except Exception:
            logger.exception("Path planning failed.")
            waypoints = []

        instructions = generate_instructions(waypoints)
        published, snap = self._state.publish(generation, waypoints, instructions)
        if not published:
            return None

        if snap.status is PathStatus.PATH_FOUND:
            logger.info(
                "Path found: %d waypoints, %.1f m.",
                len(waypoints),
                waypoints[-1].distance_from_start,
            )
        else:
            logger.info("No path available from %s to %s.", start, goal)
        return snap


def _distance_to_path(position: Vec3, waypoints: Sequence[Waypoint]) -> float:
    if len(waypoints) < 2:
        return 0.0
    return min(
        point_segment_distance(position, waypoints[i].position, waypoints[i + 1].position)
        for i in range(len(waypoints) - 1)
    )
