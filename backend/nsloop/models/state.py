from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from nsloop.models.decision import CurrentTemp, DecisionResult, EnactedRecord
from nsloop.models.events import CarbHistoryEntry, GlucoseReading, PumpEvent
from nsloop.models.iob import IOBState
from nsloop.models.meal import MealState
from nsloop.models.profile import Profile


@dataclass
class TranslationStats:
    records: int = 0
    events: int = 0
    defects: int = 0
    duplicate_timestamps: int = 0
    outside_window: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "records": self.records,
            "events": self.events,
            "defects": self.defects,
            "duplicate_timestamps": self.duplicate_timestamps,
            "outside_window": self.outside_window,
        }


@dataclass
class SettingsState:
    profile: Profile
    autosens_ratio: float = 1.0
    profile_loaded: bool = False
    profile_source: str = "preferences"


@dataclass
class MonitorState:
    glucose: list[GlucoseReading] = field(default_factory=list)
    pump_history: list[PumpEvent] = field(default_factory=list)
    carb_history: list[CarbHistoryEntry] = field(default_factory=list)
    current_temp: CurrentTemp = field(default_factory=CurrentTemp)
    clock: Optional[datetime] = None
    iob: Optional[IOBState] = None
    iob_series: list[IOBState] = field(default_factory=list)
    meal: Optional[MealState] = None
    translation: TranslationStats = field(default_factory=TranslationStats)


@dataclass
class EnactState:
    suggested: Optional[DecisionResult] = None
    enacted: Optional[EnactedRecord] = None


@dataclass
class LoopState:
    """Everything a control cycle reads and writes. Owned by one ControlLoop."""

    settings: SettingsState
    monitor: MonitorState = field(default_factory=MonitorState)
    enact: EnactState = field(default_factory=EnactState)

    def snapshot(self) -> dict[str, Any]:
        monitor = self.monitor
        latest = monitor.glucose[0] if monitor.glucose else None
        return {
            "clock": monitor.clock.isoformat() if monitor.clock else None,
            "profile_loaded": self.settings.profile_loaded,
            "profile_source": self.settings.profile_source,
            "glucose": {
                "count": len(monitor.glucose),
                "latest": latest.value if latest else None,
                "latest_at": latest.timestamp.isoformat() if latest else None,
            },
            "pump_history": len(monitor.pump_history),
            "carb_history": len(monitor.carb_history),
            "translation": monitor.translation.to_dict(),
            "current_temp": monitor.current_temp.to_wire(),
            "iob": monitor.iob.to_wire() if monitor.iob else None,
            "meal": monitor.meal.to_wire() if monitor.meal else None,
            "suggested": self.enact.suggested.to_wire() if self.enact.suggested else None,
            "enacted": self.enact.enacted.to_wire() if self.enact.enacted else None,
        }
