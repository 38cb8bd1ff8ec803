from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal, Sequence, TypeVar

from pydantic import BaseModel, Field, field_validator

from nsloop.core.settings import PreferencesConfig
from nsloop.utils.timezone import to_local

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 1440


class BasalScheduleEntry(BaseModel):
    offset_minutes: int = Field(ge=0, lt=MINUTES_PER_DAY)
    rate: float = Field(ge=0)


class SensitivityEntry(BaseModel):
    offset_minutes: int = Field(ge=0, lt=MINUTES_PER_DAY)
    sensitivity: float = Field(gt=0)
    end_offset_minutes: int = Field(default=MINUTES_PER_DAY, gt=0, le=MINUTES_PER_DAY)


class CarbRatioEntry(BaseModel):
    offset_minutes: int = Field(ge=0, lt=MINUTES_PER_DAY)
    ratio: float = Field(gt=0)


class TargetEntry(BaseModel):
    offset_minutes: int = Field(ge=0, lt=MINUTES_PER_DAY)
    low: float = Field(gt=0)
    high: float = Field(gt=0)


class SafetyLimits(BaseModel):
    max_iob: float = 6.0
    max_basal: float = 4.0
    max_daily_safety_multiplier: float = 4.0
    current_basal_safety_multiplier: float = 5.0
    autosens_max: float = 2.0
    autosens_min: float = 0.5


class SMBSettings(BaseModel):
    enable_uam: bool = True
    enable_smb_always: bool = False
    enable_smb_with_bolus: bool = True
    enable_smb_with_cob: bool = True
    enable_smb_with_temptarget: bool = False
    enable_smb_after_carbs: bool = True
    max_smb_basal_minutes: int = 75

    @property
    def any_enabled(self) -> bool:
        return any(
            (
                self.enable_smb_always,
                self.enable_smb_with_bolus,
                self.enable_smb_with_cob,
                self.enable_smb_after_carbs,
            )
        )


_Entry = TypeVar("_Entry", BasalScheduleEntry, SensitivityEntry, CarbRatioEntry, TargetEntry)


def _lookup(schedule: Sequence[_Entry], minutes: int) -> _Entry:
    current = schedule[0]
    for entry in schedule:
        if entry.offset_minutes <= minutes:
            current = entry
        else:
            break
    return current


def _anchor_at_midnight(schedule: list[Any]) -> list[Any]:
    schedule = sorted(schedule, key=lambda e: e.offset_minutes)
    if schedule and schedule[0].offset_minutes != 0:
        # The last entry of the day is what is running at midnight
        anchor = schedule[-1].model_copy(update={"offset_minutes": 0})
        logger.warning("Schedule has no 00:00 entry, anchoring midnight to the last entry")
        schedule.insert(0, anchor)
    return schedule


class Profile(BaseModel):
    """Therapy profile in internal units (mg/dL, U/h, g/U)."""

    dia: float = Field(default=6.0, gt=0)
    curve: Literal["rapid-acting", "ultra-rapid", "bilinear"] = "rapid-acting"
    use_custom_peak_time: bool = False
    insulin_peak_time: int = 75

    basal_schedule: list[BasalScheduleEntry] = Field(min_length=1)
    sensitivity_schedule: list[SensitivityEntry] = Field(min_length=1)
    carb_ratio_schedule: list[CarbRatioEntry] = Field(min_length=1)
    target_schedule: list[TargetEntry] = Field(min_length=1)

    limits: SafetyLimits = Field(default_factory=SafetyLimits)
    smb: SMBSettings = Field(default_factory=SMBSettings)
    min_5m_carbimpact: float = 8.0
    max_cob: float = 120.0
    out_units: Literal["mg/dL", "mmol/L"] = "mg/dL"
    timezone: str = "UTC"

    @field_validator("basal_schedule", "carb_ratio_schedule", "target_schedule")
    def _sorted_from_midnight(cls, v: list[Any]) -> list[Any]:
        return _anchor_at_midnight(v)

    @field_validator("sensitivity_schedule")
    def _sensitivity_end_offsets(cls, v: list[SensitivityEntry]) -> list[SensitivityEntry]:
        v = _anchor_at_midnight(v)
        fixed = []
        for idx, entry in enumerate(v):
            end = v[idx + 1].offset_minutes if idx + 1 < len(v) else MINUTES_PER_DAY
            fixed.append(entry.model_copy(update={"end_offset_minutes": end}))
        return fixed

    @classmethod
    def from_preferences(cls, prefs: PreferencesConfig) -> "Profile":
        return cls(
            dia=prefs.dia,
            curve=prefs.curve,
            use_custom_peak_time=prefs.use_custom_peak_time,
            insulin_peak_time=prefs.insulin_peak_time,
            basal_schedule=[BasalScheduleEntry(offset_minutes=0, rate=prefs.basal_rate)],
            sensitivity_schedule=[SensitivityEntry(offset_minutes=0, sensitivity=prefs.sensitivity)],
            carb_ratio_schedule=[CarbRatioEntry(offset_minutes=0, ratio=prefs.carb_ratio)],
            target_schedule=[TargetEntry(offset_minutes=0, low=prefs.min_bg, high=prefs.max_bg)],
            limits=limits_from_preferences(prefs),
            smb=smb_from_preferences(prefs),
            min_5m_carbimpact=prefs.min_5m_carbimpact,
            max_cob=prefs.max_cob,
            timezone=prefs.timezone,
        )

    # --- schedule lookups -------------------------------------------------

    def local_minutes(self, at: datetime) -> int:
        local = to_local(at, self.timezone)
        return local.hour * 60 + local.minute

    def basal_at(self, at: datetime) -> float:
        return _lookup(self.basal_schedule, self.local_minutes(at)).rate

    def sensitivity_at(self, at: datetime) -> float:
        return _lookup(self.sensitivity_schedule, self.local_minutes(at)).sensitivity

    def carb_ratio_at(self, at: datetime) -> float:
        return _lookup(self.carb_ratio_schedule, self.local_minutes(at)).ratio

    def targets_at(self, at: datetime) -> tuple[float, float]:
        entry = _lookup(self.target_schedule, self.local_minutes(at))
        return entry.low, entry.high

    def target_bg_at(self, at: datetime) -> int:
        low, high = self.targets_at(at)
        return int(round((low + high) / 2))

    @property
    def max_daily_basal(self) -> float:
        return max(entry.rate for entry in self.basal_schedule)

    def max_safe_basal(self, at: datetime) -> float:
        return min(
            self.limits.max_basal,
            self.limits.max_daily_safety_multiplier * self.max_daily_basal,
            self.limits.current_basal_safety_multiplier * self.basal_at(at),
        )

    def to_engine_dict(self, at: datetime) -> dict[str, Any]:
        """Flattens the profile into the shape determine-basal style engines read."""
        min_bg, max_bg = self.targets_at(at)
        return {
            "type": "current",
            "dia": self.dia,
            "curve": self.curve,
            "useCustomPeakTime": self.use_custom_peak_time,
            "insulinPeakTime": self.insulin_peak_time,
            "current_basal": self.basal_at(at),
            "max_daily_basal": self.max_daily_basal,
            "max_basal": self.limits.max_basal,
            "sens": self.sensitivity_at(at),
            "carb_ratio": self.carb_ratio_at(at),
            "min_bg": min_bg,
            "max_bg": max_bg,
            "target_bg": self.target_bg_at(at),
            "max_iob": self.limits.max_iob,
            "max_daily_safety_multiplier": self.limits.max_daily_safety_multiplier,
            "current_basal_safety_multiplier": self.limits.current_basal_safety_multiplier,
            "autosens_max": self.limits.autosens_max,
            "autosens_min": self.limits.autosens_min,
            "enableUAM": self.smb.enable_uam,
            "enableSMB_always": self.smb.enable_smb_always,
            "enableSMB_with_bolus": self.smb.enable_smb_with_bolus,
            "enableSMB_with_COB": self.smb.enable_smb_with_cob,
            "enableSMB_with_temptarget": self.smb.enable_smb_with_temptarget,
            "enableSMB_after_carbs": self.smb.enable_smb_after_carbs,
            "maxSMBBasalMinutes": self.smb.max_smb_basal_minutes,
            "min_5m_carbimpact": self.min_5m_carbimpact,
            "maxCOB": self.max_cob,
            "out_units": self.out_units,
            "basalprofile": [
                {"i": i, "minutes": e.offset_minutes, "rate": e.rate, "start": _hhmmss(e.offset_minutes)}
                for i, e in enumerate(self.basal_schedule)
            ],
            "isfProfile": {
                "units": "mg/dL",
                "sensitivities": [
                    {
                        "i": i,
                        "offset": e.offset_minutes,
                        "endOffset": e.end_offset_minutes,
                        "sensitivity": e.sensitivity,
                        "start": _hhmmss(e.offset_minutes),
                    }
                    for i, e in enumerate(self.sensitivity_schedule)
                ],
            },
            "carb_ratios": {
                "units": "grams",
                "schedule": [
                    {"i": i, "offset": e.offset_minutes, "ratio": e.ratio, "start": _hhmmss(e.offset_minutes)}
                    for i, e in enumerate(self.carb_ratio_schedule)
                ],
            },
            "bg_targets": {
                "units": "mg/dL",
                "targets": [
                    {
                        "i": i,
                        "offset": e.offset_minutes,
                        "low": e.low,
                        "high": e.high,
                        "min_bg": e.low,
                        "max_bg": e.high,
                        "start": _hhmmss(e.offset_minutes),
                    }
                    for i, e in enumerate(self.target_schedule)
                ],
            },
        }


def _hhmmss(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}:00"


def limits_from_preferences(prefs: PreferencesConfig) -> SafetyLimits:
    return SafetyLimits(
        max_iob=prefs.max_iob,
        max_basal=prefs.max_basal,
        max_daily_safety_multiplier=prefs.max_daily_safety_multiplier,
        current_basal_safety_multiplier=prefs.current_basal_safety_multiplier,
        autosens_max=prefs.autosens_max,
        autosens_min=prefs.autosens_min,
    )


def smb_from_preferences(prefs: PreferencesConfig) -> SMBSettings:
    return SMBSettings(
        enable_uam=prefs.enable_uam,
        enable_smb_always=prefs.enable_smb_always,
        enable_smb_with_bolus=prefs.enable_smb_with_bolus,
        enable_smb_with_cob=prefs.enable_smb_with_cob,
        enable_smb_with_temptarget=prefs.enable_smb_with_temptarget,
        enable_smb_after_carbs=prefs.enable_smb_after_carbs,
        max_smb_basal_minutes=prefs.max_smb_basal_minutes,
    )
