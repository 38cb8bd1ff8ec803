from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from nsloop.utils.timezone import epoch_ms, iso_z


class IOBTotals(BaseModel):
    iob: float = 0.0
    activity: float = 0.0
    basal_iob: float = 0.0
    bolus_iob: float = 0.0
    net_basal_insulin: float = 0.0
    bolus_insulin: float = 0.0
    time: datetime

    def to_wire(self) -> dict[str, Any]:
        return {
            "iob": round(self.iob, 3),
            "activity": round(self.activity, 4),
            "basaliob": round(self.basal_iob, 3),
            "bolusiob": round(self.bolus_iob, 3),
            "netbasalinsulin": round(self.net_basal_insulin, 3),
            "bolusinsulin": round(self.bolus_insulin, 3),
            "time": iso_z(self.time),
        }


class LastTempBasal(BaseModel):
    rate: float
    started_at: datetime
    duration_minutes: Optional[int] = None

    def remaining_minutes(self, now: datetime) -> Optional[float]:
        if self.duration_minutes is None:
            return None
        elapsed = (now - self.started_at).total_seconds() / 60
        return max(0.0, self.duration_minutes - elapsed)

    def to_wire(self) -> dict[str, Any]:
        return {
            "rate": self.rate,
            "timestamp": iso_z(self.started_at),
            "started_at": iso_z(self.started_at),
            "date": epoch_ms(self.started_at),
            "duration": self.duration_minutes if self.duration_minutes is not None else 0,
        }


class IOBState(IOBTotals):
    last_bolus_timestamp: Optional[datetime] = None
    last_temp_basal: Optional[LastTempBasal] = None
    iob_with_zero_temp: IOBTotals

    @classmethod
    def zero(cls, now: datetime) -> "IOBState":
        return cls(time=now, iob_with_zero_temp=IOBTotals(time=now))

    def to_wire(self) -> dict[str, Any]:
        body = super().to_wire()
        body["iobWithZeroTemp"] = self.iob_with_zero_temp.to_wire()
        body["lastBolusTime"] = epoch_ms(self.last_bolus_timestamp) if self.last_bolus_timestamp else 0
        if self.last_temp_basal is not None:
            body["lastTemp"] = self.last_temp_basal.to_wire()
        else:
            body["lastTemp"] = LastTempBasal(rate=0, started_at=self.time, duration_minutes=0).to_wire()
        body["timestamp"] = iso_z(self.time)
        body["mills"] = epoch_ms(self.time)
        return body
