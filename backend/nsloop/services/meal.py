from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Sequence

from nsloop.models.events import CarbEntry, CarbHistoryEntry, GlucoseReading, PumpEvent
from nsloop.models.meal import MealState
from nsloop.models.profile import Profile
from nsloop.services.iob import action_profile, activity_at, delivered_doses

logger = logging.getLogger(__name__)

MAX_GAP_MINUTES = 15
CURRENT_DEVIATION_POINTS = 3


def _carbs_in_window(
    events: Sequence[PumpEvent],
    carb_history: Sequence[CarbHistoryEntry],
    now: datetime,
    window_hours: float,
) -> list[CarbHistoryEntry]:
    cutoff = now - timedelta(hours=window_hours)
    source = list(carb_history) or [
        CarbHistoryEntry(grams=e.grams, timestamp=e.timestamp) for e in events if isinstance(e, CarbEntry)
    ]
    return sorted((c for c in source if cutoff <= c.timestamp <= now and c.grams > 0), key=lambda c: c.timestamp)


def _deviations(
    glucose: Sequence[GlucoseReading],
    events: Sequence[PumpEvent],
    profile: Profile,
    since: datetime,
    now: datetime,
) -> list[tuple[datetime, float, float]]:
    """
    (timestamp, deviation, gap minutes) triples, oldest-first.

    deviation = observed 5-minute delta - BGI, with BGI = -activity * ISF * 5.
    """
    readings = sorted((g for g in glucose if since <= g.timestamp <= now), key=lambda g: g.timestamp)
    if len(readings) < 2:
        return []

    action = action_profile(profile)
    doses = delivered_doses(events, profile, now)
    deviations: list[tuple[datetime, float, float]] = []
    for previous, current in zip(readings, readings[1:]):
        gap = (current.timestamp - previous.timestamp).total_seconds() / 60
        if gap <= 0 or gap > MAX_GAP_MINUTES:
            continue
        delta = (current.value - previous.value) / gap * 5
        sens = profile.sensitivity_at(current.timestamp)
        bgi = -activity_at(doses, current.timestamp, action) * sens * 5
        deviations.append((current.timestamp, delta - bgi, gap))
    return deviations


def compute_meal_state(
    events: Sequence[PumpEvent],
    carb_history: Sequence[CarbHistoryEntry],
    glucose: Sequence[GlucoseReading],
    profile: Profile,
    now: datetime,
    carb_window_hours: float = 6,
) -> MealState:
    """
    Carbs on board inferred from how far glucose rose beyond what insulin explains.

    Never raises: unusable input yields the zero-valued state.
    """
    try:
        carbs = _carbs_in_window(events, carb_history, now, carb_window_hours)
        window_start = now - timedelta(hours=carb_window_hours)
        deviations = _deviations(glucose, events, profile, window_start, now)
    except Exception as exc:
        logger.error("Meal calculation failed, using zero state", extra={"error": str(exc)})
        return MealState.zero(now)

    state = MealState.zero(now)
    if deviations:
        newest = [dev for _, dev, _ in deviations[-CURRENT_DEVIATION_POINTS:]]
        state.current_deviation = sum(newest) / len(newest)

    if not carbs:
        if deviations:
            values = [dev for _, dev, _ in deviations]
            state.max_deviation = max(values)
            state.min_deviation = min(values)
        return state

    first_carb = carbs[0].timestamp
    used = [(ts, dev, gap) for ts, dev, gap in deviations if ts > first_carb]
    absorbed = 0.0
    for ts, dev, gap in used:
        sens = profile.sensitivity_at(ts)
        absorbed += max(dev, profile.min_5m_carbimpact) * profile.carb_ratio_at(ts) / sens * gap / 5

    total = float(sum(c.grams for c in carbs))
    cob = min(max(total - absorbed, 0.0), profile.max_cob)

    state.total_carbs = total
    state.carbs_on_board = cob
    state.last_carb_timestamp = carbs[-1].timestamp
    if used:
        values = [dev for _, dev, _ in used]
        state.max_deviation = max(values)
        state.min_deviation = min(values)
    return state
