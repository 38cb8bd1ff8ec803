from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


class NightscoutStatus(BaseModel):
    status: Optional[str] = None
    version: Optional[str] = None
    api_enabled: Optional[bool] = Field(default=None, alias="apiEnabled")


class NightscoutEntry(BaseModel):
    """One CGM record from /api/v1/entries."""

    sgv: int
    date: int
    dateString: Optional[str] = None
    direction: Optional[str] = None
    type: Optional[str] = "sgv"
    device: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("sgv", mode="before")
    def _round_sgv(cls, v: Any) -> int:
        return int(round(float(v)))

    @field_validator("date", mode="before")
    def ensure_epoch_ms(cls, v: int | float | datetime) -> int:
        if isinstance(v, datetime):
            return _to_epoch_ms(v)
        return int(v)


class ScheduleItem(BaseModel):
    time: Optional[str] = None
    timeAsSeconds: Optional[int] = None
    value: float

    model_config = ConfigDict(extra="ignore")

    @field_validator("value", mode="before")
    def _parse_value(cls, v: Any) -> float:
        return float(v)

    @field_validator("timeAsSeconds", mode="before")
    def _parse_seconds(cls, v: Any) -> Optional[int]:
        if v is None or v == "":
            return None
        return int(float(v))

    def offset_minutes(self) -> int:
        if self.timeAsSeconds is not None:
            return self.timeAsSeconds // 60
        if self.time:
            hours, _, minutes = self.time.partition(":")
            return int(hours) * 60 + int(minutes[:2] or 0)
        return 0


class NightscoutProfileStore(BaseModel):
    dia: Optional[float] = None
    basal: list[ScheduleItem] = Field(default_factory=list)
    sens: list[ScheduleItem] = Field(default_factory=list)
    carbratio: list[ScheduleItem] = Field(default_factory=list)
    target_low: list[ScheduleItem] = Field(default_factory=list)
    target_high: list[ScheduleItem] = Field(default_factory=list)
    units: Optional[str] = None
    timezone: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("basal", "sens", "carbratio", "target_low", "target_high", mode="before")
    def _scalar_to_schedule(cls, v: Any) -> Any:
        # Older uploaders store a bare number instead of a schedule
        if isinstance(v, (int, float, str)):
            return [{"time": "00:00", "timeAsSeconds": 0, "value": v}]
        return v or []


class NightscoutProfileDocument(BaseModel):
    store: dict[str, NightscoutProfileStore] = Field(default_factory=dict)
    defaultProfile: Optional[str] = None
    units: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def active_store(self) -> Optional[NightscoutProfileStore]:
        if self.defaultProfile and self.defaultProfile in self.store:
            return self.store[self.defaultProfile]
        if self.store:
            return next(iter(self.store.values()))
        return None
