import pytest

from wayfinder.fingerprint import (
    DOMINANT_OBSTACLE_COUNT,
    ObstacleSample,
    compute_fingerprint,
    count_corners,
    estimate_bounds,
)


def _room():
    return [
        ObstacleSample((0.5, 0.0, 0.5), (1.0, 1.0, 1.0), "table"),
        ObstacleSample((5.0, 0.0, 5.0), (2.0, 1.0, 2.0), "table"),
        ObstacleSample((9.5, 0.0, 0.4), (0.5, 1.0, 0.5), "chair"),
        ObstacleSample((5.0, 0.0, 0.2), (0.3, 2.0, 0.3), "wall"),
    ]


def test_fingerprint_is_deterministic_and_order_independent():
    samples = _room()
    bounds = ((0.0, 0.0, 0.0), (10.0, 3.0, 10.0))

    first = compute_fingerprint(samples, bounds, signatures=["net-b", "net-a"])
    second = compute_fingerprint(list(reversed(samples)), bounds, signatures=["net-a", "net-b"])

    assert first == second
    assert first.hash() == second.hash()
    assert len(first.hash()) == 64


def test_signatures_change_hash():
    samples = _room()
    plain = compute_fingerprint(samples)
    tagged = compute_fingerprint(samples, signatures=["net-a"])
    assert plain.hash() != tagged.hash()


def test_ambient_signature_changes_hash():
    samples = _room()
    assert compute_fingerprint(samples).hash() != compute_fingerprint(samples, ambient_signature=0.3).hash()


def test_empty_input_yields_sentinel():
    fingerprint = compute_fingerprint([])

    assert fingerprint.obstacle_count == 0
    assert fingerprint.dominant_obstacles == ()
    assert fingerprint.room_dimensions == (0.0, 0.0, 0.0)
    assert fingerprint.hash() == compute_fingerprint([]).hash()


def test_dimensions_estimated_from_obstacle_spread():
    fingerprint = compute_fingerprint(_room())
    assert fingerprint.room_dimensions == pytest.approx((9.0, 0.0, 4.8))
    assert estimate_bounds([]) is None


def test_dominant_obstacles_are_largest_first_and_capped():
    samples = [ObstacleSample((float(i), 0.0, 0.0), (0.1 * (i + 1), 1.0, 1.0)) for i in range(15)]

    fingerprint = compute_fingerprint(samples)

    assert len(fingerprint.dominant_obstacles) == DOMINANT_OBSTACLE_COUNT
    assert fingerprint.dominant_obstacles[0] == (14.0, 0.0, 0.0)
    assert fingerprint.obstacle_count == 15


def test_corner_count_uses_room_edges():
    lo, hi = (0.0, 0.0, 0.0), (10.0, 3.0, 10.0)
    samples = [
        ObstacleSample((0.5, 0.0, 0.5), (1.0, 1.0, 1.0)),
        ObstacleSample((9.0, 0.0, 9.2), (1.0, 1.0, 1.0)),
        ObstacleSample((0.5, 0.0, 5.0), (1.0, 1.0, 1.0)),
        ObstacleSample((5.0, 0.0, 5.0), (1.0, 1.0, 1.0)),
    ]
    assert count_corners(samples, lo, hi) == 2


def test_similarity_of_identical_fingerprints_is_one():
    fingerprint = compute_fingerprint(_room(), signatures=["net-a"])
    assert fingerprint.similarity(fingerprint) == pytest.approx(1.0)


def test_similarity_drops_for_different_rooms():
    here = compute_fingerprint(_room())
    elsewhere = compute_fingerprint(
        [ObstacleSample((30.0, 0.0, 30.0), (1.0, 1.0, 1.0)), ObstacleSample((31.0, 0.0, 38.0), (1.0, 1.0, 1.0))]
    )
    score = here.similarity(elsewhere)
    assert 0.0 <= score < 0.75


def test_extreme_coordinates_still_hash():
    far = compute_fingerprint([ObstacleSample((1e39, 0.0, 0.0), (1.0, 1.0, 1.0))], ambient_signature=1e300)
    near = compute_fingerprint([ObstacleSample((1.0, 0.0, 0.0), (1.0, 1.0, 1.0))])

    assert len(far.hash()) == 64
    assert far.hash() != near.hash()
