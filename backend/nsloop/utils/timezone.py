from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def get_zone(name: Optional[str]) -> ZoneInfo:
    """
    Returns the named zone, falling back to UTC for unknown names.
    """
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def to_utc(dt: datetime) -> datetime:
    """
    Normalizes to aware UTC. Naive datetimes are assumed to be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_local(dt: datetime, zone_name: Optional[str] = None) -> datetime:
    return to_utc(dt).astimezone(get_zone(zone_name))


def parse_timestamp(value: Any) -> datetime:
    """
    Accepts ISO strings (with or without 'Z'), epoch milliseconds and datetimes.
    Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        clean_ts = value.strip().replace("Z", "+00:00")
        if clean_ts.isdigit():
            return datetime.fromtimestamp(int(clean_ts) / 1000.0, tz=timezone.utc)
        try:
            dt = datetime.fromisoformat(clean_ts)
        except ValueError:
            dt = datetime.strptime(clean_ts[:19], "%Y-%m-%dT%H:%M:%S")
        return to_utc(dt)
    raise ValueError(f"Not a timestamp: {value!r}")


def iso_z(dt: datetime) -> str:
    return to_utc(dt).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def epoch_ms(dt: datetime) -> int:
    return int(to_utc(dt).timestamp() * 1000)
