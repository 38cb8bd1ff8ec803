from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from nsloop.utils.timezone import epoch_ms


class MealState(BaseModel):
    total_carbs: float = 0.0
    carbs_on_board: float = 0.0
    last_carb_timestamp: Optional[datetime] = None
    current_deviation: float = 0.0
    max_deviation: float = 0.0
    min_deviation: float = 0.0

    @classmethod
    def zero(cls, now: datetime) -> "MealState":
        return cls(last_carb_timestamp=now)

    def to_wire(self) -> dict[str, Any]:
        return {
            "carbs": round(self.total_carbs, 1),
            "nsCarbs": round(self.total_carbs, 1),
            "bwCarbs": 0,
            "journalCarbs": 0,
            "mealCOB": round(self.carbs_on_board),
            "currentDeviation": round(self.current_deviation, 2),
            "maxDeviation": round(self.max_deviation, 2),
            "minDeviation": round(self.min_deviation, 2),
            "lastCarbTime": epoch_ms(self.last_carb_timestamp) if self.last_carb_timestamp else 0,
        }
