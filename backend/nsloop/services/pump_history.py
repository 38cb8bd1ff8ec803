"""
Translation of raw Nightscout treatments into canonical pump events.

Every record is handled on its own: a malformed record raises TranslationDefect,
which is counted and skipped so one bad upload never blanks the whole history.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from nsloop.core.errors import TranslationDefect
from nsloop.models.events import (
    Bolus,
    CarbEntry,
    CarbHistoryEntry,
    PumpEvent,
    TempBasalDuration,
    TempBasalStart,
    sort_events,
)
from nsloop.models.state import TranslationStats
from nsloop.utils.timezone import parse_timestamp

logger = logging.getLogger(__name__)

BOLUS_EVENT_TYPES = frozenset({"Bolus", "Correction Bolus", "Meal Bolus", "Snack Bolus", "SMB"})
TEMP_BASAL_EVENT_TYPE = "Temp Basal"


@dataclass
class TranslationResult:
    events: list[PumpEvent] = field(default_factory=list)
    carb_history: list[CarbHistoryEntry] = field(default_factory=list)
    records: int = 0
    defects: int = 0
    duplicate_timestamps: int = 0
    outside_window: int = 0

    def stats(self) -> TranslationStats:
        return TranslationStats(
            records=self.records,
            events=len(self.events),
            defects=self.defects,
            duplicate_timestamps=self.duplicate_timestamps,
            outside_window=self.outside_window,
        )


def resolve_timestamp(record: dict[str, Any]) -> datetime:
    for key in ("created_at", "timestamp", "date", "mills"):
        value = record.get(key)
        if value is None or value == "":
            continue
        try:
            return parse_timestamp(value)
        except (ValueError, TypeError, OverflowError, OSError) as exc:
            raise TranslationDefect(f"Unparseable {key}: {value!r}") from exc
    raise TranslationDefect("Record has no timestamp")


def _number(record: dict[str, Any], key: str) -> Optional[float]:
    value = record.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise TranslationDefect(f"Non-numeric {key}: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise TranslationDefect(f"Non-numeric {key}: {value!r}") from exc
    if not math.isfinite(number):
        raise TranslationDefect(f"Non-finite {key}: {value!r}")
    return number


def _translate_bolus(record: dict[str, Any], ts: datetime) -> tuple[list[PumpEvent], int]:
    """A missing amount is a soft defect so the record's carbs still count."""
    amount = _number(record, "insulin")
    if amount is None:
        logger.debug("Bolus at %s has no amount", ts.isoformat())
        return [], 1
    if amount == 0:
        return [], 0
    if amount < 0:
        raise TranslationDefect(f"Negative bolus amount: {amount}")
    return [Bolus(amount=amount, timestamp=ts)], 0


def _translate_temp_basal(record: dict[str, Any], ts: datetime) -> tuple[list[PumpEvent], int]:
    """Returns the events and the number of soft defects (an unusable duration)."""
    rate = _number(record, "rate")
    if rate is None:
        rate = _number(record, "absolute")
    if rate is None:
        raise TranslationDefect("Temp basal without rate")
    if rate < 0:
        raise TranslationDefect(f"Negative temp basal rate: {rate}")

    events: list[PumpEvent] = [TempBasalStart(rate=rate, timestamp=ts)]
    try:
        minutes = _number(record, "duration")
    except TranslationDefect:
        minutes = None
    if minutes is None or minutes < 0:
        logger.debug("Temp basal at %s has no usable duration", ts.isoformat())
        return events, 1
    events.append(TempBasalDuration(minutes=int(round(minutes)), timestamp=ts))
    return events, 0


def _translate_carbs(record: dict[str, Any], ts: datetime) -> list[CarbEntry]:
    grams = _number(record, "carbs")
    if grams is None or grams <= 0:
        return []
    return [CarbEntry(grams=int(round(grams)), timestamp=ts)]


def translate_treatments(
    records: list[Any],
    now: datetime,
    window_hours: float = 24,
) -> TranslationResult:
    """
    Converts raw treatment records into pump events, newest-first.

    Only events with timestamp >= now - window_hours are kept. Duplicate
    timestamps are preserved and counted, never collapsed.
    """
    result = TranslationResult(records=len(records))
    cutoff = now - timedelta(hours=window_hours)
    seen: set[datetime] = set()
    events: list[PumpEvent] = []

    for record in records:
        if not isinstance(record, dict):
            result.defects += 1
            continue
        try:
            ts = resolve_timestamp(record)
            if ts < cutoff:
                result.outside_window += 1
                continue

            if ts in seen:
                result.duplicate_timestamps += 1
            seen.add(ts)

            event_type = str(record.get("eventType") or "")
            produced: list[PumpEvent] = []
            soft_defects = 0
            if event_type in BOLUS_EVENT_TYPES:
                bolus_events, soft_defects = _translate_bolus(record, ts)
                produced.extend(bolus_events)
            elif event_type == TEMP_BASAL_EVENT_TYPE:
                temp_events, soft_defects = _translate_temp_basal(record, ts)
                produced.extend(temp_events)

            carbs = _translate_carbs(record, ts)
        except TranslationDefect as exc:
            result.defects += 1
            logger.debug("Skipping treatment: %s", exc, extra={"eventType": record.get("eventType")})
            continue

        result.defects += soft_defects
        events.extend(produced)
        events.extend(carbs)
        result.carb_history.extend(CarbHistoryEntry(grams=c.grams, timestamp=c.timestamp) for c in carbs)

    result.events = sort_events(events, newest_first=True)
    result.carb_history.sort(key=lambda c: c.timestamp, reverse=True)

    if result.duplicate_timestamps:
        logger.info("Treatment history contains %d duplicate timestamps", result.duplicate_timestamps)
    if result.defects:
        logger.warning("Skipped %d malformed treatment records", result.defects)
    return result


def retain_window(
    events: list[PumpEvent],
    carb_history: list[CarbHistoryEntry],
    now: datetime,
    window_hours: float = 24,
) -> tuple[list[PumpEvent], list[CarbHistoryEntry]]:
    """Drops retained events and carb rows that fell out of the history window."""
    cutoff = now - timedelta(hours=window_hours)
    kept_events = [e for e in events if e.timestamp >= cutoff]
    kept_carbs = [c for c in carb_history if c.timestamp >= cutoff]
    dropped = len(events) - len(kept_events)
    if dropped:
        logger.debug("Dropped %d pump events older than %s", dropped, cutoff.isoformat())
    return kept_events, kept_carbs
