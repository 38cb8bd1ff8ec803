import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from nsloop.models.decision import GlucoseStatus
from nsloop.models.events import GlucoseReading
from nsloop.models.schemas import NightscoutEntry

logger = logging.getLogger(__name__)

SHORT_DELTA_READINGS = 3
LONG_DELTA_READINGS = 9


def readings_from_entries(entries: Sequence[NightscoutEntry]) -> list[GlucoseReading]:
    """CGM entries as GlucoseReadings, newest-first. Zero or negative sgv values are dropped."""
    readings = [
        GlucoseReading(
            value=entry.sgv,
            timestamp=datetime.fromtimestamp(entry.date / 1000, tz=timezone.utc),
            trend_direction=entry.direction or "NONE",
            source_device=entry.device or "unknown",
        )
        for entry in entries
        if entry.sgv > 0
    ]
    readings.sort(key=lambda r: r.timestamp, reverse=True)
    return readings


def _average_delta(readings: Sequence[GlucoseReading], count: int) -> float:
    count = min(count, len(readings) - 1)
    if count <= 0:
        return 0.0
    total = sum(readings[i].value - readings[i + 1].value for i in range(count))
    return total / count


def glucose_status(readings: Sequence[GlucoseReading]) -> Optional[GlucoseStatus]:
    """Latest glucose with its delta and the 3- and 9-reading average deltas."""
    if not readings:
        return None
    latest = readings[0]
    delta = float(latest.value - readings[1].value) if len(readings) > 1 else 0.0
    return GlucoseStatus(
        glucose=latest.value,
        delta=delta,
        short_avgdelta=_average_delta(readings, SHORT_DELTA_READINGS),
        long_avgdelta=_average_delta(readings, LONG_DELTA_READINGS),
        date=latest.timestamp,
    )


def format_tick(readings: Sequence[GlucoseReading]) -> str:
    """Signed change between the two newest readings, e.g. "+2", "-1", "+0"."""
    if len(readings) < 2:
        return "+0"
    delta = readings[0].value - readings[1].value
    return f"+{delta}" if delta >= 0 else str(delta)


def is_fresh(readings: Sequence[GlucoseReading], now: datetime, max_age_minutes: int) -> bool:
    if not readings:
        return False
    return now - readings[0].timestamp <= timedelta(minutes=max_age_minutes)
