from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from nsloop.utils.timezone import epoch_ms, iso_z


class CurveName(str, Enum):
    IOB = "IOB"
    ZT = "ZT"
    COB = "COB"
    UAM = "UAM"


def empty_pred_bgs() -> dict[CurveName, list[int]]:
    return {name: [] for name in CurveName}


class GlucoseStatus(BaseModel):
    glucose: int
    delta: float = 0.0
    short_avgdelta: float = 0.0
    long_avgdelta: float = 0.0
    date: datetime
    noise: int = 0

    def to_wire(self) -> dict[str, Any]:
        return {
            "glucose": self.glucose,
            "delta": round(self.delta, 2),
            "short_avgdelta": round(self.short_avgdelta, 2),
            "long_avgdelta": round(self.long_avgdelta, 2),
            "date": epoch_ms(self.date),
            "noise": self.noise,
        }


class CurrentTemp(BaseModel):
    rate: float = 0.0
    duration: int = 0
    temp: str = "absolute"

    def to_wire(self) -> dict[str, Any]:
        return {"rate": self.rate, "duration": self.duration, "temp": self.temp}


class DecisionResult(BaseModel):
    """A sanitized dosing recommendation. Every core field is always populated."""

    rate: float
    duration: int
    reason: str
    eventual_bg: int
    deliver_at: datetime
    pred_bgs: dict[CurveName, list[int]] = Field(default_factory=empty_pred_bgs)

    bg: Optional[int] = None
    tick: str = "+0"

    # Engine extras, passed through to telemetry when present
    cob: Optional[float] = None
    iob: Optional[float] = None
    isf: Optional[float] = None
    cr: Optional[float] = None
    target_bg: Optional[float] = None
    sensitivity_ratio: Optional[float] = None
    insulin_req: Optional[float] = None
    bgi: Optional[float] = None
    deviation: Optional[float] = None
    units: Optional[float] = None

    @property
    def has_microbolus(self) -> bool:
        return bool(self.units and self.units > 0)

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "bg": self.bg,
            "tick": self.tick,
            "eventualBG": self.eventual_bg,
            "COB": self.cob,
            "IOB": self.iob,
            "ISF": self.isf,
            "CR": self.cr,
            "target_bg": self.target_bg,
            "reason": self.reason,
            "duration": self.duration,
            "rate": self.rate,
            "temp": "absolute",
            "predBGs": {name.value: list(curve) for name, curve in self.pred_bgs.items()},
            "deliverAt": iso_z(self.deliver_at),
            "timestamp": iso_z(self.deliver_at),
            "mills": epoch_ms(self.deliver_at),
        }
        optional = {
            "sensitivityRatio": self.sensitivity_ratio,
            "insulinReq": self.insulin_req,
            "BGI": self.bgi,
            "deviation": self.deviation,
            "units": self.units,
        }
        body.update({key: value for key, value in optional.items() if value is not None})
        return body


class EnactedRecord(DecisionResult):
    enacted: bool = True
    received: bool = True
    timestamp: datetime

    @classmethod
    def from_decision(cls, decision: DecisionResult, now: datetime) -> "EnactedRecord":
        return cls(**decision.model_dump(), timestamp=now)

    def to_wire(self) -> dict[str, Any]:
        body = super().to_wire()
        body["enacted"] = self.enacted
        body["received"] = self.received
        body["timestamp"] = iso_z(self.timestamp)
        body["mills"] = epoch_ms(self.timestamp)
        return body
