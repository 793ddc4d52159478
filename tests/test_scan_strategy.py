from datetime import datetime

import pytest

from wayfinder.fingerprint import ObstacleSample
from wayfinder.location_store import CachedObstacle, LocationMemory, MemoryStats, SavedPath
from wayfinder.scan_strategy import ScanMode, ScanStrategyController, mode_for_location

SEEN = datetime(2024, 3, 6, 10, 0)


def _cached(position, permanence):
    return CachedObstacle(position=position, size=(1.0, 1.0, 1.0), type="table", permanence=permanence, last_seen=SEEN)


def _location(visits=1, confidence=0.5, obstacles=(), paths=(), location_id=1):
    return LocationMemory(
        id=location_id,
        fingerprint=f"fp-{location_id}",
        name=None,
        visit_count=visits,
        last_visit=SEEN,
        obstacles=tuple(obstacles),
        patterns=(),
        paths=tuple(paths),
        average_scan_time=0.0,
        confidence=confidence,
    )


@pytest.fixture
def controller(clock):
    return ScanStrategyController(clock=clock)


@pytest.mark.parametrize(
    "location, expected",
    [
        (None, ScanMode.AGGRESSIVE),
        (_location(visits=21, confidence=0.95), ScanMode.PREDICTIVE),
        (_location(visits=21, confidence=0.5), ScanMode.CONSERVATIVE),
        (_location(visits=20, confidence=0.95), ScanMode.CONSERVATIVE),
        (_location(visits=11), ScanMode.CONSERVATIVE),
        (_location(visits=6), ScanMode.NORMAL),
        (_location(visits=5), ScanMode.AGGRESSIVE),
    ],
)
def test_mode_table(location, expected):
    assert mode_for_location(location) is expected


def test_mode_profiles():
    assert (ScanMode.AGGRESSIVE.frequency_hz, ScanMode.AGGRESSIVE.coverage) == (60, 1.0)
    assert (ScanMode.NORMAL.frequency_hz, ScanMode.NORMAL.coverage) == (30, 0.6)
    assert (ScanMode.CONSERVATIVE.frequency_hz, ScanMode.CONSERVATIVE.coverage) == (15, 0.3)
    assert (ScanMode.PREDICTIVE.frequency_hz, ScanMode.PREDICTIVE.coverage) == (10, 0.2)
    impacts = [m.battery_impact for m in ScanMode]
    assert impacts == sorted(impacts, reverse=True)


def test_update_location_sets_mode_and_known_state(controller):
    assert controller.update_location(_location(visits=12, confidence=0.7)) is ScanMode.CONSERVATIVE
    assert controller.is_in_known_location
    assert controller.location_confidence == pytest.approx(0.7)
    assert controller.battery_usage_rate == pytest.approx(0.03)

    assert controller.update_location(None) is ScanMode.AGGRESSIVE
    assert not controller.is_in_known_location
    assert controller.predicted_obstacles == []


def test_predictive_mode_uses_supplied_layout(controller):
    stored = [_cached((0.0, 0.0, 0.0), 0.95), _cached((3.0, 0.0, 0.0), 0.2)]
    predicted = stored[:1]

    controller.update_location(_location(visits=25, confidence=0.95, obstacles=stored), predicted)

    assert controller.mode is ScanMode.PREDICTIVE
    assert controller.predicted_obstacles == predicted


def test_fast_user_or_close_obstacle_forces_normal(controller):
    controller.update_location(_location(visits=12))
    assert controller.adapt_scan_strategy(2.0, 3.0, 0.1) is ScanMode.NORMAL

    controller.update_location(_location(visits=12))
    assert controller.adapt_scan_strategy(0.5, 0.3, 0.1) is ScanMode.NORMAL


def test_aggressive_is_not_relaxed_by_fast_motion(controller):
    controller.update_location(None)
    assert controller.adapt_scan_strategy(2.0, 0.2, 0.9) is ScanMode.AGGRESSIVE


def test_simple_known_surroundings_relax_to_conservative(controller):
    controller.update_location(_location(visits=7))
    assert controller.mode is ScanMode.NORMAL
    assert controller.adapt_scan_strategy(0.8, 2.5, 0.1) is ScanMode.CONSERVATIVE


def test_unknown_surroundings_stay_aggressive(controller):
    controller.update_location(None)
    assert controller.adapt_scan_strategy(0.8, 2.5, 0.1) is ScanMode.AGGRESSIVE


def test_cache_use_in_predictive_mode_expires(controller, clock):
    controller.update_location(_location(visits=25, confidence=0.95))
    assert controller.should_use_cache((0.0, 0.0, 0.0))

    clock.advance(61.0)
    assert not controller.should_use_cache((0.0, 0.0, 0.0))


def test_cache_use_in_conservative_mode_needs_nearby_permanent_obstacle(controller, clock):
    controller.update_location(_location(visits=12, obstacles=[_cached((1.0, 0.0, 1.0), 0.9)]))

    assert controller.should_use_cache((0.0, 0.0, 0.0))
    assert not controller.should_use_cache((10.0, 0.0, 10.0))

    clock.advance(31.0)
    assert not controller.should_use_cache((0.0, 0.0, 0.0))


def test_no_cache_outside_known_location(controller):
    controller.update_location(None)
    assert not controller.should_use_cache((0.0, 0.0, 0.0))


def test_merge_with_cache_adds_only_unseen_permanent_obstacles(controller):
    controller.update_location(
        _location(
            visits=12,
            obstacles=[
                _cached((5.0, 0.0, 0.0), 0.9),
                _cached((0.0, 0.0, 0.0), 0.9),
                _cached((8.0, 0.0, 0.0), 0.5),
            ],
        )
    )
    live = [ObstacleSample((0.2, 0.0, 0.0), (1.0, 1.0, 1.0), "chair")]

    merged = controller.merge_with_cache(live)

    assert merged[0] == live[0]
    assert [o.position for o in merged[1:]] == [(5.0, 0.0, 0.0)]


def test_skip_areas_only_in_predictive_mode(controller):
    obstacles = [_cached((1.0, 0.0, 0.0), 0.95), _cached((2.0, 0.0, 0.0), 0.85)]

    controller.update_location(_location(visits=12, obstacles=obstacles))
    assert controller.get_optimized_scan_parameters().skip_areas == ()

    controller.update_location(_location(visits=25, confidence=0.95, obstacles=obstacles))
    params = controller.get_optimized_scan_parameters()
    assert params.frequency_hz == 10
    assert params.coverage == pytest.approx(0.2)
    assert params.skip_areas == ((1.0, 0.0, 0.0),)


def test_predict_destination_from_saved_path(controller):
    path = SavedPath(
        waypoints=((0.0, 0.0, 0.0), (0.0, 0.0, 1.0), (0.0, 0.0, 5.0)),
        usage_count=3,
        average_traversal_time=12.0,
        success_rate=1.0,
    )
    controller.update_location(_location(visits=3, paths=[path]))

    assert controller.predict_destination((0.2, 0.0, 0.0), (0.0, 0.0, 1.0)) == (0.0, 0.0, 5.0)
    assert controller.predict_destination((0.2, 0.0, 0.0), (1.0, 0.0, 0.0)) is None
    assert controller.predict_destination((4.0, 0.0, 0.0), (0.0, 0.0, 1.0)) is None


def test_memory_stats_summary(controller):
    text = controller.memory_stats_summary(MemoryStats(location_count=2, obstacle_count=9, storage_bytes=2048))
    assert "Locations: 2" in text
    assert "2.0 KB" in text
    assert "aggressive" in text
