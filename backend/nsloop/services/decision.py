from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Optional

from nsloop.models.decision import CurrentTemp, CurveName, DecisionResult, GlucoseStatus
from nsloop.models.iob import IOBState
from nsloop.models.meal import MealState
from nsloop.models.profile import Profile
from nsloop.models.state import LoopState
from nsloop.services.decision_engine import DecisionEngine, TempBasalHelpers
from nsloop.services.glucose import format_tick, glucose_status, is_fresh
from nsloop.utils.timezone import parse_timestamp

logger = logging.getLogger(__name__)

NO_REASON = "No reason provided by decision engine"
SAFE_DEFAULTS_REASON = "Error in determine-basal algorithm. Using safe defaults."

_EVENTUAL_BG_RE = re.compile(r"eventual\s*bg:?\s*(-?\d+(?:\.\d+)?)", re.IGNORECASE)


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _eventual_from_reason(reason: str) -> Optional[int]:
    match = _EVENTUAL_BG_RE.search(reason)
    if not match:
        return None
    number = _as_float(match.group(1))
    return int(round(number)) if number is not None else None


def _curve(values: Any) -> list[int]:
    if not isinstance(values, list):
        return []
    curve = []
    for value in values:
        number = _as_float(value)
        if number is not None:
            curve.append(int(round(number)))
    return curve


def sanitize_decision(
    raw: Optional[dict[str, Any]],
    profile: Profile,
    now: datetime,
    status: Optional[GlucoseStatus] = None,
    iob: Optional[IOBState] = None,
    meal: Optional[MealState] = None,
    autosens_ratio: float = 1.0,
    tick: str = "+0",
) -> DecisionResult:
    """
    Fills every missing or unusable field of an engine result from one default table.

    | field       | default                                                        |
    |-------------|----------------------------------------------------------------|
    | rate        | current scheduled basal; engine rates clamped to [0, max safe] |
    | duration    | 0 (negative values become 0)                                   |
    | eventual_bg | "Eventual BG n" in reason, else current glucose, else target   |
    | deliver_at  | now                                                            |
    | reason      | NO_REASON                                                      |
    | pred_bgs    | [] for each missing curve                                      |
    """
    raw = raw if isinstance(raw, dict) else {}

    rate = _as_float(raw.get("rate"))
    if rate is None:
        rate = profile.basal_at(now)
    else:
        rate = min(max(rate, 0.0), profile.max_safe_basal(now))

    duration = _as_float(raw.get("duration"))
    duration = max(int(round(duration)), 0) if duration is not None else 0

    reason = raw.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        reason = NO_REASON

    eventual = _as_float(raw.get("eventualBG"))
    if eventual is not None:
        eventual_bg = int(round(eventual))
    else:
        eventual_bg = _eventual_from_reason(reason)
        if eventual_bg is None:
            eventual_bg = status.glucose if status is not None else profile.target_bg_at(now)

    deliver_at = now
    if raw.get("deliverAt"):
        try:
            deliver_at = parse_timestamp(raw["deliverAt"])
        except (ValueError, TypeError, OverflowError, OSError):
            deliver_at = now

    raw_curves = raw.get("predBGs") if isinstance(raw.get("predBGs"), dict) else {}
    pred_bgs = {name: _curve(raw_curves.get(name.value)) for name in CurveName}

    units = _as_float(raw.get("units"))
    min_bg, _ = profile.targets_at(now)

    def _extra(key: str, default: float) -> float:
        value = _as_float(raw.get(key))
        return default if value is None else value

    return DecisionResult(
        rate=round(rate, 2),
        duration=duration,
        reason=reason,
        eventual_bg=eventual_bg,
        deliver_at=deliver_at,
        pred_bgs=pred_bgs,
        bg=status.glucose if status is not None else None,
        tick=tick,
        cob=_extra("COB", meal.carbs_on_board if meal else 0.0),
        iob=_extra("IOB", iob.iob if iob else 0.0),
        isf=_extra("ISF", profile.sensitivity_at(now)),
        cr=_extra("CR", profile.carb_ratio_at(now)),
        target_bg=_extra("target_bg", min_bg),
        sensitivity_ratio=_extra("sensitivityRatio", autosens_ratio),
        insulin_req=_extra("insulinReq", 0.0),
        bgi=_extra("BGI", 0.0),
        deviation=_extra("deviation", 0.0),
        units=units if units is not None and units > 0 else None,
    )


def current_temp_from_iob(iob: Optional[IOBState], now: datetime) -> CurrentTemp:
    """The running temp while it is active with a known duration, else zero/zero."""
    if iob is None or iob.last_temp_basal is None:
        return CurrentTemp()
    remaining = iob.last_temp_basal.remaining_minutes(now)
    if not remaining:
        return CurrentTemp()
    return CurrentTemp(rate=iob.last_temp_basal.rate, duration=int(math.ceil(remaining)))


class DecisionInvoker:
    def __init__(
        self,
        engine: DecisionEngine,
        temp_helpers: Optional[TempBasalHelpers] = None,
        max_glucose_age_minutes: int = 15,
        microbolus_allowed: bool = True,
    ) -> None:
        self.engine = engine
        self.temp_helpers = temp_helpers or TempBasalHelpers()
        self.max_glucose_age_minutes = max_glucose_age_minutes
        self.microbolus_allowed = microbolus_allowed

    async def invoke(self, state: LoopState, now: datetime) -> DecisionResult:
        """Runs the engine on the current state and stores the sanitized result as suggested."""
        monitor = state.monitor
        profile = state.settings.profile
        ratio = state.settings.autosens_ratio
        iob = monitor.iob or IOBState.zero(now)
        meal = monitor.meal or MealState.zero(now)
        status = glucose_status(monitor.glucose)
        tick = format_tick(monitor.glucose)

        def _safe_default(cause: str) -> DecisionResult:
            return sanitize_decision(
                {"reason": f"{SAFE_DEFAULTS_REASON} {cause}", "duration": 0},
                profile,
                now,
                status=status,
                iob=iob,
                meal=meal,
                autosens_ratio=ratio,
                tick=tick,
            )

        monitor.current_temp = current_temp_from_iob(iob, now)

        if status is None:
            result = _safe_default("No glucose data available.")
        elif not is_fresh(monitor.glucose, now, self.max_glucose_age_minutes):
            result = _safe_default(f"Latest glucose is older than {self.max_glucose_age_minutes} minutes.")
        else:
            iob_series = monitor.iob_series or [iob]
            try:
                raw = await self.engine.decide(
                    status.to_wire(),
                    monitor.current_temp.to_wire(),
                    [point.to_wire() for point in iob_series],
                    profile.to_engine_dict(now),
                    {"ratio": ratio},
                    meal.to_wire(),
                    self.temp_helpers,
                    self.microbolus_allowed,
                )
            except Exception as exc:
                logger.error("Decision engine failed", extra={"error": str(exc)}, exc_info=True)
                result = _safe_default(f"Engine error: {exc}")
            else:
                if not raw:
                    logger.warning("Decision engine returned nothing")
                    result = _safe_default("Engine returned no result.")
                else:
                    result = sanitize_decision(
                        raw, profile, now, status=status, iob=iob, meal=meal, autosens_ratio=ratio, tick=tick
                    )

        state.enact.suggested = result
        logger.info(
            "Decision ready",
            extra={"rate": result.rate, "duration": result.duration, "eventual_bg": result.eventual_bg},
        )
        return result
