"""Tests for fusion, staleness and spatial queries of the obstacle map."""

import random
import threading

import pytest

from wayfinder.geometry import distance
from wayfinder.obstacle_map import ObstacleMemoryMap, ObstacleType, ReadWriteLock


@pytest.fixture
def obstacle_map(clock):
    return ObstacleMemoryMap(clock=clock)


def test_first_observation_creates_obstacle(obstacle_map):
    obstacle_id = obstacle_map.add_or_update((1.0, 0.0, 1.0), (0.5, 1.0, 0.5), 0.8, ObstacleType.TABLE)

    found = obstacle_map.get_obstacles_near((1.0, 0.0, 1.0), 0.1)
    assert [o.id for o in found] == [obstacle_id]
    assert found[0].update_count == 1
    assert found[0].classification is ObstacleType.TABLE
    assert obstacle_map.total_detected == 1


def test_fusion_uses_weighted_average_and_max_confidence(obstacle_map):
    first = obstacle_map.add_or_update((0.0, 0.0, 0.0), (1.0, 1.0, 1.0), 0.9)
    second = obstacle_map.add_or_update((0.2, 0.0, 0.0), (1.0, 1.0, 1.0), 0.4)

    assert first == second
    fused = obstacle_map.get_obstacles_near((0.0, 0.0, 0.0), 1.0)[0]
    assert fused.position == pytest.approx((0.1, 0.0, 0.0))
    assert fused.confidence == pytest.approx(0.9)
    assert fused.update_count == 2
    assert len(obstacle_map) == 1


def test_observation_outside_fusion_radius_is_new_obstacle(obstacle_map):
    first = obstacle_map.add_or_update((0.0, 0.0, 0.0), (1.0, 1.0, 1.0), 0.9)
    second = obstacle_map.add_or_update((0.35, 0.0, 0.0), (1.0, 1.0, 1.0), 0.9)

    assert first != second
    assert len(obstacle_map) == 2


def test_confidence_stays_in_unit_interval(obstacle_map):
    rng = random.Random(7)
    for _ in range(50):
        obstacle_map.add_or_update((0.0, 0.0, 0.0), (1.0, 1.0, 1.0), rng.random())

    for obstacle in obstacle_map.get_obstacles_near((0.0, 0.0, 0.0), 1.0):
        assert 0.0 <= obstacle.confidence <= 1.0


def test_repeated_fusion_converges_with_shrinking_steps(obstacle_map):
    obstacle_map.add_or_update((0.25, 0.0, 0.0), (1.0, 1.0, 1.0), 0.5)
    truth = (0.0, 0.0, 0.0)

    previous = obstacle_map.get_obstacles_near(truth, 1.0)[0].position
    last_step = float("inf")
    for _ in range(10):
        obstacle_map.add_or_update(truth, (1.0, 1.0, 1.0), 0.5)
        current = obstacle_map.get_obstacles_near(truth, 1.0)[0].position

        step = distance(previous, current)
        assert distance(current, truth) < distance(previous, truth)
        assert step <= last_step + 1e-12
        previous, last_step = current, step


def test_reliable_obstacle_expires_after_staleness_window(obstacle_map, clock):
    for _ in range(4):
        obstacle_map.add_or_update((2.0, 0.0, 0.0), (1.0, 1.0, 1.0), 0.9)

    reliable = obstacle_map.get_reliable_obstacles()
    assert len(reliable) == 1
    assert reliable[0].update_count == 4

    clock.advance(31.0)
    assert obstacle_map.get_reliable_obstacles() == []
    assert obstacle_map.get_obstacles_near((2.0, 0.0, 0.0), 1.0) == []

    assert obstacle_map.sweep_stale() == 1
    assert len(obstacle_map) == 0


def test_three_observations_are_not_reliable(obstacle_map):
    for _ in range(3):
        obstacle_map.add_or_update((2.0, 0.0, 0.0), (1.0, 1.0, 1.0), 0.9)
    assert obstacle_map.get_reliable_obstacles() == []


def test_low_confidence_is_not_reliable(obstacle_map):
    for _ in range(6):
        obstacle_map.add_or_update((2.0, 0.0, 0.0), (1.0, 1.0, 1.0), 0.5)
    assert obstacle_map.get_reliable_obstacles() == []


def test_reobserving_stale_obstacle_starts_fresh(obstacle_map, clock):
    for _ in range(5):
        old_id = obstacle_map.add_or_update((2.0, 0.0, 0.0), (1.0, 1.0, 1.0), 0.9)

    clock.advance(31.0)
    new_id = obstacle_map.add_or_update((2.0, 0.0, 0.0), (1.0, 1.0, 1.0), 0.9)

    assert new_id != old_id
    fresh = obstacle_map.get_obstacles_near((2.0, 0.0, 0.0), 0.5)
    assert [o.update_count for o in fresh] == [1]

    obstacle_map.sweep_stale()
    assert len(obstacle_map) == 1


def test_fused_obstacle_moves_to_new_voxel(obstacle_map):
    obstacle_id = obstacle_map.add_or_update((0.45, 0.0, 0.0), (0.2, 0.2, 0.2), 0.9)
    assert obstacle_id in obstacle_map.voxel_ids_at((0.45, 0.0, 0.0))

    obstacle_map.add_or_update((0.7, 0.0, 0.0), (0.2, 0.2, 0.2), 0.9)

    fused = obstacle_map.get_obstacles_near((0.575, 0.0, 0.0), 0.01)[0]
    assert fused.id == obstacle_id
    assert obstacle_id not in obstacle_map.voxel_ids_at((0.45, 0.0, 0.0))
    assert obstacle_id in obstacle_map.voxel_ids_at(fused.position)


def test_near_query_sorts_by_distance_then_priority(obstacle_map):
    obstacle_map.add_or_update((1.0, 0.0, 0.0), (0.5, 0.5, 0.5), 0.9, ObstacleType.UNKNOWN)
    obstacle_map.add_or_update((0.0, 0.0, 1.05), (0.5, 0.5, 0.5), 0.9, ObstacleType.PERSON)
    obstacle_map.add_or_update((0.0, 0.0, -2.0), (0.5, 0.5, 0.5), 0.9, ObstacleType.CHAIR)
    obstacle_map.add_or_update((4.0, 0.0, 0.0), (0.5, 0.5, 0.5), 0.9, ObstacleType.WALL)

    found = obstacle_map.get_obstacles_near((0.0, 0.0, 0.0), 3.0)

    assert [o.classification for o in found] == [
        ObstacleType.PERSON,
        ObstacleType.UNKNOWN,
        ObstacleType.CHAIR,
    ]


def test_is_occupied_respects_tolerance_and_staleness(obstacle_map, clock):
    obstacle_map.add_or_update((1.0, 0.0, 1.0), (0.5, 0.5, 0.5), 0.9)

    assert obstacle_map.is_occupied((1.2, 0.0, 1.0))
    assert not obstacle_map.is_occupied((1.5, 0.0, 1.0))
    assert obstacle_map.is_occupied((1.5, 0.0, 1.0), tolerance=0.6)

    clock.advance(30.5)
    assert not obstacle_map.is_occupied((1.0, 0.0, 1.0))


def test_clear_all_and_export(obstacle_map):
    obstacle_map.add_or_update((1.0, 0.0, 1.0), (0.5, 0.5, 0.5), 0.9, "chair")

    exported = obstacle_map.export_map()
    assert len(exported) == 1
    assert exported[0]["type"] == "chair"
    assert exported[0]["reliable"] is False

    obstacle_map.clear_all()
    assert len(obstacle_map) == 0
    assert obstacle_map.voxel_ids_at((1.0, 0.0, 1.0)) == set()


def test_unknown_classification_is_parsed_as_unknown():
    assert ObstacleType.parse("sofa") is ObstacleType.UNKNOWN
    assert ObstacleType.parse(" Table ") is ObstacleType.TABLE
    assert ObstacleType.PERSON.priority > ObstacleType.WALL.priority > ObstacleType.FLOOR.priority


def test_writer_waits_for_reader_in_flight():
    lock = ReadWriteLock()
    written = threading.Event()

    def write():
        with lock.write():
            written.set()

    with lock.read():
        writer = threading.Thread(target=write)
        writer.start()
        assert not written.wait(0.2)

    writer.join(timeout=5.0)
    assert written.is_set()


def test_readers_hold_the_lock_together():
    lock = ReadWriteLock()
    both_inside = threading.Barrier(2, timeout=5.0)
    errors = []

    def read():
        try:
            with lock.read():
                both_inside.wait()
        except threading.BrokenBarrierError as exc:
            errors.append(exc)

    readers = [threading.Thread(target=read) for _ in range(2)]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join(timeout=10.0)

    assert errors == []


def test_concurrent_ingest_and_queries(obstacle_map):
    errors = []
    done = threading.Event()

    def ingest(offset):
        try:
            for i in range(200):
                obstacle_map.add_or_update((offset + (i % 10), 0.0, 0.0), (0.5, 0.5, 0.5), 0.9, ObstacleType.TABLE)
        except Exception as exc:
            errors.append(exc)

    def query():
        try:
            while not done.is_set():
                for obstacle in obstacle_map.get_reliable_obstacles():
                    assert obstacle.is_reliable
                for obstacle in obstacle_map.get_obstacles_near((5.0, 0.0, 0.0), 3.0):
                    assert distance(obstacle.position, (5.0, 0.0, 0.0)) <= 3.0
                obstacle_map.is_occupied((1.0, 0.0, 0.0))
        except Exception as exc:
            errors.append(exc)

    writers = [threading.Thread(target=ingest, args=(offset,)) for offset in (0.0, 100.0)]
    readers = [threading.Thread(target=query) for _ in range(3)]
    for thread in readers + writers:
        thread.start()
    for writer in writers:
        writer.join(timeout=30.0)
    done.set()
    for reader in readers:
        reader.join(timeout=30.0)

    assert errors == []
    assert len(obstacle_map) == 20
    assert obstacle_map.total_detected == 20
    reliable = obstacle_map.get_reliable_obstacles()
    assert len(reliable) == 20
    assert all(o.update_count == 20 for o in reliable)
