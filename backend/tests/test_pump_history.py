import math
from datetime import timedelta

import pytest

from nsloop.models.events import (
    Bolus,
    CarbEntry,
    CarbHistoryEntry,
    TempBasalDuration,
    TempBasalStart,
    pair_temp_basals,
)
from nsloop.services.iob import compute_iob_state
from nsloop.services.pump_history import retain_window, translate_treatments
from nsloop.utils.timezone import iso_z


def _at(now, minutes_ago):
    return iso_z(now - timedelta(minutes=minutes_ago))


def test_temp_basal_yields_start_and_duration_with_same_timestamp(now):
    result = translate_treatments(
        [{"eventType": "Temp Basal", "rate": 0.5, "duration": 30, "created_at": _at(now, 10)}], now
    )
    start, duration = result.events
    assert isinstance(start, TempBasalStart)
    assert isinstance(duration, TempBasalDuration)
    assert start.timestamp == duration.timestamp
    assert start.rate == 0.5
    assert duration.minutes == 30

    windows = pair_temp_basals(result.events)
    assert len(windows) == 1
    assert windows[0].duration_minutes == 30


def test_absolute_used_when_rate_missing(now):
    result = translate_treatments(
        [{"eventType": "Temp Basal", "absolute": 1.25, "duration": 30, "created_at": _at(now, 5)}], now
    )
    assert result.events[0].rate == 1.25


def test_bolus_types_and_carbs(now):
    result = translate_treatments(
        [
            {"eventType": "Meal Bolus", "insulin": 3.0, "carbs": 45, "created_at": _at(now, 60)},
            {"eventType": "Correction Bolus", "insulin": 1.0, "created_at": _at(now, 30)},
            {"eventType": "Carb Correction", "carbs": 15, "created_at": _at(now, 20)},
        ],
        now,
    )
    boluses = [e for e in result.events if isinstance(e, Bolus)]
    carbs = [e for e in result.events if isinstance(e, CarbEntry)]
    assert sorted(b.amount for b in boluses) == [1.0, 3.0]
    assert sorted(c.grams for c in carbs) == [15, 45]
    assert [c.grams for c in result.carb_history] == [15, 45]


def test_events_are_newest_first(now):
    result = translate_treatments(
        [
            {"eventType": "Bolus", "insulin": 1.0, "created_at": _at(now, 120)},
            {"eventType": "Bolus", "insulin": 2.0, "created_at": _at(now, 10)},
            {"eventType": "Bolus", "insulin": 3.0, "created_at": _at(now, 60)},
        ],
        now,
    )
    assert [e.amount for e in result.events] == [2.0, 3.0, 1.0]


def test_records_outside_window_are_excluded(now):
    result = translate_treatments(
        [
            {"eventType": "Bolus", "insulin": 1.0, "created_at": _at(now, 25 * 60)},
            {"eventType": "Bolus", "insulin": 2.0, "created_at": _at(now, 60)},
        ],
        now,
        window_hours=24,
    )
    assert [e.amount for e in result.events] == [2.0]
    assert result.outside_window == 1


def test_zero_bolus_is_ignored_without_defect(now):
    result = translate_treatments([{"eventType": "Bolus", "insulin": 0, "created_at": _at(now, 5)}], now)
    assert result.events == []
    assert result.defects == 0


def test_bolus_without_amount_is_a_defect(now):
    result = translate_treatments(
        [
            {"eventType": "Correction Bolus", "created_at": _at(now, 5)},
            {"eventType": "Bolus", "insulin": "", "created_at": _at(now, 6)},
        ],
        now,
    )
    assert result.events == []
    assert result.defects == 2


def test_bolus_without_amount_keeps_its_carbs(now):
    result = translate_treatments([{"eventType": "Meal Bolus", "carbs": 30, "created_at": _at(now, 5)}], now)
    assert result.defects == 1
    assert [type(e) for e in result.events] == [CarbEntry]
    assert [c.grams for c in result.carb_history] == [30]


def test_malformed_records_are_counted_and_skipped(now):
    result = translate_treatments(
        [
            {"eventType": "Bolus", "insulin": -1, "created_at": _at(now, 5)},
            {"eventType": "Bolus", "insulin": "lots", "created_at": _at(now, 6)},
            {"eventType": "Bolus", "insulin": 1.0},
            {"eventType": "Temp Basal", "duration": 30, "created_at": _at(now, 7)},
            {"eventType": "Meal Bolus", "insulin": 1.0, "carbs": "many", "created_at": _at(now, 8)},
            "not a record",
            {"eventType": "Bolus", "insulin": 0.7, "created_at": _at(now, 9)},
        ],
        now,
    )
    assert result.defects == 6
    assert [e.amount for e in result.events] == [0.7]


def test_temp_basal_with_bad_duration_keeps_start(now):
    result = translate_treatments(
        [{"eventType": "Temp Basal", "rate": 0.0, "duration": "n/a", "created_at": _at(now, 15)}], now
    )
    assert len(result.events) == 1
    assert isinstance(result.events[0], TempBasalStart)
    assert result.defects == 1
    assert pair_temp_basals(result.events)[0].duration_minutes is None


def test_timestamp_fallbacks(now):
    mills = int((now - timedelta(minutes=30)).timestamp() * 1000)
    result = translate_treatments(
        [
            {"eventType": "Bolus", "insulin": 1.0, "timestamp": _at(now, 10)},
            {"eventType": "Bolus", "insulin": 2.0, "date": mills},
            {"eventType": "Bolus", "insulin": 3.0, "mills": mills},
        ],
        now,
    )
    assert result.defects == 0
    assert sorted(e.amount for e in result.events) == [1.0, 2.0, 3.0]


def test_duplicate_timestamps_are_counted_not_dropped(now):
    records = []
    for i in range(35):
        records.append({"eventType": "Correction Bolus", "insulin": 0.1, "created_at": _at(now, 5 * (i + 1))})
    for i in range(5):
        # Same instant as an existing record
        records.append({"eventType": "Correction Bolus", "insulin": 0.2, "created_at": _at(now, 5 * (i + 1))})

    result = translate_treatments(records, now)
    stats = result.stats()
    assert stats.records == 40
    assert stats.duplicate_timestamps == 5
    assert stats.events == 40
    assert stats.defects == 0


def test_translation_is_deterministic(now):
    records = [
        {"eventType": "Temp Basal", "rate": 0.8, "duration": 30, "created_at": _at(now, 40)},
        {"eventType": "Bolus", "insulin": 1.5, "created_at": _at(now, 20)},
    ]
    assert translate_treatments(records, now).events == translate_treatments(records, now).events


@pytest.mark.parametrize("value", ["NaN", "Infinity", "-inf", 1e999, float("nan")])
def test_non_finite_numbers_are_defects(now, value):
    result = translate_treatments(
        [
            {"eventType": "Bolus", "insulin": value, "created_at": _at(now, 5)},
            {"eventType": "Carb Correction", "carbs": value, "created_at": _at(now, 6)},
            {"eventType": "Temp Basal", "rate": value, "duration": 30, "created_at": _at(now, 7)},
            {"eventType": "Bolus", "insulin": 0.4, "created_at": _at(now, 8)},
        ],
        now,
    )
    assert result.defects == 3
    assert [e.amount for e in result.events] == [0.4]
    assert result.carb_history == []


def test_non_finite_duration_keeps_start(now):
    result = translate_treatments(
        [{"eventType": "Temp Basal", "rate": 0.5, "duration": "Infinity", "created_at": _at(now, 5)}], now
    )
    assert [type(e) for e in result.events] == [TempBasalStart]
    assert result.defects == 1


def test_non_finite_bolus_does_not_poison_iob(now, profile):
    result = translate_treatments(
        [
            {"eventType": "Bolus", "insulin": "NaN", "created_at": _at(now, 30)},
            {"eventType": "Bolus", "insulin": 1.0, "created_at": _at(now, 20)},
        ],
        now,
    )
    state = compute_iob_state(result.events, profile, now)
    assert math.isfinite(state.iob)
    assert state.iob > 0


def test_retain_window_drops_old_rows(now):
    events = [
        Bolus(amount=1.0, timestamp=now - timedelta(hours=2)),
        Bolus(amount=2.0, timestamp=now - timedelta(hours=30)),
    ]
    carbs = [
        CarbHistoryEntry(grams=20, timestamp=now - timedelta(hours=1)),
        CarbHistoryEntry(grams=40, timestamp=now - timedelta(hours=25)),
    ]
    kept_events, kept_carbs = retain_window(events, carbs, now, window_hours=24)
    assert [e.amount for e in kept_events] == [1.0]
    assert [c.grams for c in kept_carbs] == [20]
