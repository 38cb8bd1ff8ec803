from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional, Union


@dataclass(frozen=True)
class GlucoseReading:
    value: int
    timestamp: datetime
    trend_direction: str = "NONE"
    source_device: str = "unknown"


@dataclass(frozen=True)
class Bolus:
    amount: float
    timestamp: datetime
    optimistic: bool = False
    kind: Literal["Bolus"] = "Bolus"


@dataclass(frozen=True)
class TempBasalStart:
    rate: float
    timestamp: datetime
    optimistic: bool = False
    kind: Literal["TempBasal"] = "TempBasal"


@dataclass(frozen=True)
class TempBasalDuration:
    minutes: int
    timestamp: datetime
    optimistic: bool = False
    kind: Literal["TempBasalDuration"] = "TempBasalDuration"


@dataclass(frozen=True)
class CarbEntry:
    grams: int
    timestamp: datetime
    optimistic: bool = False
    kind: Literal["Meal"] = "Meal"


PumpEvent = Union[Bolus, TempBasalStart, TempBasalDuration, CarbEntry]


@dataclass(frozen=True)
class CarbHistoryEntry:
    grams: int
    timestamp: datetime


@dataclass(frozen=True)
class TempBasalWindow:
    """A TempBasalStart joined with its TempBasalDuration (if any)."""

    rate: float
    started_at: datetime
    duration_minutes: Optional[int]


def sort_events(events: list[PumpEvent], newest_first: bool = True) -> list[PumpEvent]:
    # sorted() is stable, so a start stays ahead of its duration
    return sorted(events, key=lambda e: e.timestamp, reverse=newest_first)


def pair_temp_basals(events: list[PumpEvent]) -> list[TempBasalWindow]:
    """Joins every TempBasalStart with the TempBasalDuration sharing its timestamp.

    Each duration is consumed at most once. Returns windows sorted oldest-first.
    """
    durations: dict[datetime, list[TempBasalDuration]] = {}
    for event in events:
        if isinstance(event, TempBasalDuration):
            durations.setdefault(event.timestamp, []).append(event)

    windows: list[TempBasalWindow] = []
    for event in events:
        if not isinstance(event, TempBasalStart):
            continue
        matches = durations.get(event.timestamp)
        minutes = matches.pop(0).minutes if matches else None
        windows.append(TempBasalWindow(rate=event.rate, started_at=event.timestamp, duration_minutes=minutes))

    windows.sort(key=lambda w: w.started_at)
    return windows
