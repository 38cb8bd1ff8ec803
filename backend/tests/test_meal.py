from datetime import timedelta

import pytest

from nsloop.models.events import Bolus, CarbEntry, CarbHistoryEntry, GlucoseReading
from nsloop.services.meal import compute_meal_state


def _rising(now, start=100, step=3, minutes=60):
    """Readings every 5 minutes over the last `minutes`, rising `step` each time. Newest-first."""
    count = minutes // 5 + 1
    readings = [
        GlucoseReading(value=start + i * step, timestamp=now - timedelta(minutes=minutes - 5 * i)) for i in range(count)
    ]
    return list(reversed(readings))


def test_no_carbs_gives_zero_cob(profile, now):
    state = compute_meal_state([], [], _rising(now), profile, now)
    assert state.carbs_on_board == 0
    assert state.total_carbs == 0
    assert state.current_deviation == pytest.approx(3.0)


def test_cob_decays_by_minimum_carb_impact(profile, now):
    carb_at = now - timedelta(minutes=60)
    history = [CarbHistoryEntry(grams=30, timestamp=carb_at)]
    state = compute_meal_state([], history, _rising(now), profile, now)
    # 12 readings after the meal, each absorbing max(3, 8) * CR 10 / ISF 50 grams
    assert state.carbs_on_board == pytest.approx(30 - 12 * 1.6)
    assert state.total_carbs == 30
    assert state.last_carb_timestamp == carb_at


def test_carb_entries_used_when_history_empty(profile, now):
    events = [CarbEntry(grams=30, timestamp=now - timedelta(minutes=60))]
    state = compute_meal_state(events, [], _rising(now), profile, now)
    assert state.total_carbs == 30
    assert 0 < state.carbs_on_board < 30


def test_cob_never_negative(profile, now):
    history = [CarbHistoryEntry(grams=30, timestamp=now - timedelta(minutes=60))]
    state = compute_meal_state([], history, _rising(now, step=20), profile, now)
    assert state.carbs_on_board == 0
    assert state.max_deviation == pytest.approx(20.0)


def test_cob_capped_at_max_cob(profile, now):
    history = [CarbHistoryEntry(grams=200, timestamp=now - timedelta(minutes=5))]
    state = compute_meal_state([], history, [], profile, now)
    assert state.carbs_on_board == profile.max_cob


def test_carbs_outside_window_ignored(profile, now):
    history = [CarbHistoryEntry(grams=50, timestamp=now - timedelta(hours=7))]
    state = compute_meal_state([], history, _rising(now), profile, now, carb_window_hours=6)
    assert state.total_carbs == 0
    assert state.carbs_on_board == 0


def test_insulin_activity_raises_deviation(profile, now):
    events = [Bolus(amount=3.0, timestamp=now - timedelta(minutes=90))]
    flat = _rising(now, step=0)
    state = compute_meal_state(events, [], flat, profile, now)
    # Flat glucose against active insulin means something is pushing it up
    assert state.current_deviation > 0


def test_gaps_are_skipped(profile, now):
    readings = [
        GlucoseReading(value=150, timestamp=now),
        GlucoseReading(value=100, timestamp=now - timedelta(minutes=40)),
    ]
    state = compute_meal_state([], [], readings, profile, now)
    assert state.current_deviation == 0
