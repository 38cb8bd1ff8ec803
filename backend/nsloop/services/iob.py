from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, Optional, Sequence

from nsloop.core.errors import AccountingError
from nsloop.models.events import Bolus, PumpEvent, TempBasalWindow, pair_temp_basals
from nsloop.models.iob import IOBState, IOBTotals, LastTempBasal
from nsloop.models.profile import Profile
from nsloop.services.math.curves import InsulinCurves

logger = logging.getLogger(__name__)

CHUNK_MINUTES = 5
MIN_DIA_EXPONENTIAL = 5.0
MIN_DIA_BILINEAR = 3.0
DEFAULT_ZERO_TEMP_MINUTES = 240


@dataclass
class InsulinActionProfile:
    dia_hours: float
    curve: Literal["exponential", "bilinear"]
    peak_minutes: float = 75


@dataclass(frozen=True)
class InsulinDose:
    units: float
    timestamp: datetime
    basal: bool = False


def _clamp(value: float, min_value: float = 0.0, max_value: float | None = None) -> float:
    if max_value is not None:
        value = min(value, max_value)
    return max(value, min_value)


def action_profile(profile: Profile) -> InsulinActionProfile:
    """Resolves DIA floor and peak time the way oref0 does."""
    if profile.curve == "bilinear":
        dia = profile.dia
        if dia < MIN_DIA_BILINEAR:
            logger.warning("DIA %.1fh below bilinear minimum, using %.1fh", dia, MIN_DIA_BILINEAR)
            dia = MIN_DIA_BILINEAR
        return InsulinActionProfile(dia_hours=dia, curve="bilinear", peak_minutes=InsulinCurves.BILINEAR_PEAK_MIN)

    dia = profile.dia
    if dia < MIN_DIA_EXPONENTIAL:
        logger.warning("DIA %.1fh below exponential minimum, using %.1fh", dia, MIN_DIA_EXPONENTIAL)
        dia = MIN_DIA_EXPONENTIAL

    if profile.curve == "ultra-rapid":
        peak = 55.0
        if profile.use_custom_peak_time:
            peak = _clamp(profile.insulin_peak_time, 35, 100)
    else:
        peak = 75.0
        if profile.use_custom_peak_time:
            peak = _clamp(profile.insulin_peak_time, 50, 120)
    return InsulinActionProfile(dia_hours=dia, curve="exponential", peak_minutes=peak)


def _window_end(window: TempBasalWindow, next_start: Optional[datetime], until: datetime) -> datetime:
    end = until
    if window.duration_minutes is not None:
        end = min(end, window.started_at + timedelta(minutes=window.duration_minutes))
    if next_start is not None:
        end = min(end, next_start)
    return end


def _basal_doses(windows: Sequence[TempBasalWindow], profile: Profile, until: datetime) -> list[InsulinDose]:
    """
    Net basal insulin of every temp, split into chunks of at most CHUNK_MINUTES.

    Each chunk is (temp rate - scheduled rate) over its length, delivered at its midpoint.
    """
    doses: list[InsulinDose] = []
    for idx, window in enumerate(windows):
        next_start = windows[idx + 1].started_at if idx + 1 < len(windows) else None
        end = _window_end(window, next_start, until)
        cursor = window.started_at
        while cursor < end:
            chunk_end = min(cursor + timedelta(minutes=CHUNK_MINUTES), end)
            minutes = (chunk_end - cursor).total_seconds() / 60
            net_rate = window.rate - profile.basal_at(cursor)
            if net_rate != 0:
                doses.append(
                    InsulinDose(units=net_rate * minutes / 60, timestamp=cursor + (chunk_end - cursor) / 2, basal=True)
                )
            cursor = chunk_end
    return doses


def _bolus_doses(events: Sequence[PumpEvent]) -> list[InsulinDose]:
    return [InsulinDose(units=e.amount, timestamp=e.timestamp) for e in events if isinstance(e, Bolus)]


def _totals(doses: Sequence[InsulinDose], at: datetime, action: InsulinActionProfile) -> IOBTotals:
    dia_minutes = action.dia_hours * 60
    totals = IOBTotals(time=at)
    for dose in doses:
        elapsed = (at - dose.timestamp).total_seconds() / 60
        if elapsed < 0 or elapsed >= dia_minutes:
            continue
        iob = dose.units * InsulinCurves.get_iob(elapsed, action.dia_hours, action.peak_minutes, action.curve)
        activity = dose.units * InsulinCurves.get_activity(elapsed, action.dia_hours, action.peak_minutes, action.curve)
        totals.iob += iob
        totals.activity += activity
        if dose.basal:
            totals.basal_iob += iob
            totals.net_basal_insulin += dose.units
        else:
            totals.bolus_iob += iob
            totals.bolus_insulin += dose.units
    return totals


def _zero_temp_windows(
    windows: Sequence[TempBasalWindow], now: datetime, horizon_minutes: int
) -> list[TempBasalWindow]:
    truncated: list[TempBasalWindow] = []
    for window in windows:
        if window.started_at >= now:
            continue
        minutes = (now - window.started_at).total_seconds() / 60
        duration = minutes if window.duration_minutes is None else min(window.duration_minutes, minutes)
        truncated.append(TempBasalWindow(rate=window.rate, started_at=window.started_at, duration_minutes=duration))
    truncated.append(TempBasalWindow(rate=0.0, started_at=now, duration_minutes=horizon_minutes))
    return truncated


def _last_temp_basal(windows: Sequence[TempBasalWindow], now: datetime) -> Optional[LastTempBasal]:
    past = [w for w in windows if w.started_at <= now]
    if not past:
        return None
    latest = max(past, key=lambda w: w.started_at)
    return LastTempBasal(rate=latest.rate, started_at=latest.started_at, duration_minutes=latest.duration_minutes)


def _last_bolus_timestamp(events: Sequence[PumpEvent], now: datetime) -> Optional[datetime]:
    stamps = [e.timestamp for e in events if isinstance(e, Bolus) and e.timestamp <= now]
    return max(stamps) if stamps else None


class _Accountant:
    def __init__(self, events: Sequence[PumpEvent], profile: Profile, now: datetime, horizon_minutes: int) -> None:
        for event in events:
            if not isinstance(event.timestamp, datetime) or event.timestamp.tzinfo is None:
                raise AccountingError(f"Event without aware timestamp: {event!r}")
        self.profile = profile
        self.now = now
        self.horizon_minutes = horizon_minutes
        self.action = action_profile(profile)
        self.windows = pair_temp_basals(list(events))
        self.zero_temp_windows = _zero_temp_windows(self.windows, now, horizon_minutes)
        self.bolus_doses = _bolus_doses(events)
        self.last_bolus_timestamp = _last_bolus_timestamp(events, now)
        self.last_temp_basal = _last_temp_basal(self.windows, now)

    def state_at(self, at: datetime) -> IOBState:
        doses = self.bolus_doses + _basal_doses(self.windows, self.profile, at)
        zero_doses = self.bolus_doses + _basal_doses(self.zero_temp_windows, self.profile, at)
        totals = _totals(doses, at, self.action)
        return IOBState(
            **totals.model_dump(),
            last_bolus_timestamp=self.last_bolus_timestamp,
            last_temp_basal=self.last_temp_basal,
            iob_with_zero_temp=_totals(zero_doses, at, self.action),
        )


def compute_iob_state(
    events: Sequence[PumpEvent],
    profile: Profile,
    now: datetime,
    horizon_minutes: int = DEFAULT_ZERO_TEMP_MINUTES,
) -> IOBState:
    """
    Insulin on board at `now`, recomputed from scratch from the event history.

    Never raises: an unusable history yields the zero-valued state.
    """
    try:
        return _Accountant(events, profile, now, horizon_minutes).state_at(now)
    except Exception as exc:
        logger.error("IOB calculation failed, using zero state", extra={"error": str(exc)})
        return IOBState.zero(now)


def compute_iob_series(
    events: Sequence[PumpEvent],
    profile: Profile,
    now: datetime,
    horizon_minutes: int = DEFAULT_ZERO_TEMP_MINUTES,
) -> list[IOBState]:
    """IOB at now and every 5 minutes after it, up to the zero-temp horizon."""
    try:
        accountant = _Accountant(events, profile, now, horizon_minutes)
        return [
            accountant.state_at(now + timedelta(minutes=step))
            for step in range(0, horizon_minutes + 1, CHUNK_MINUTES)
        ]
    except Exception as exc:
        logger.error("IOB series calculation failed, using zero state", extra={"error": str(exc)})
        return [IOBState.zero(now)]


def delivered_doses(events: Sequence[PumpEvent], profile: Profile, until: datetime) -> list[InsulinDose]:
    """Bolus and net basal doses delivered up to `until`."""
    past = [e for e in events if e.timestamp <= until]
    return _bolus_doses(past) + _basal_doses(pair_temp_basals(past), profile, until)


def activity_at(doses: Sequence[InsulinDose], at: datetime, action: InsulinActionProfile) -> float:
    """Total insulin activity (U/min) at `at` from the doses delivered by then."""
    return _totals(doses, at, action).activity
