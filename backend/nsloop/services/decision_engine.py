"""
Dosing decision engines.

An engine receives the oref0-shaped inputs (glucose status, current temp, IOB
series, profile, autosens, meal data) and returns a raw recommendation dict, or
None. Whatever it returns is sanitized by the invoker before anything uses it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import Any, Optional, Protocol

from nsloop.core.errors import DecisionError
from nsloop.core.settings import EngineConfig
from nsloop.services.math.curves import CarbCurves

logger = logging.getLogger(__name__)

PREDICTION_POINTS = 48
MIN_PREDICTED_BG = 39
MAX_PREDICTED_BG = 401
DEFAULT_TEMP_DURATION = 30
CARB_ABSORPTION_MINUTES = 180
DEVIATION_DECAY_MINUTES = 60
UAM_DECAY_MINUTES = 180


class TempBasalHelpers:
    """Rounding and safety-limit helpers handed to the engine."""

    name = "basal-set-temp"

    @staticmethod
    def round_basal(rate: float) -> float:
        return round(round(rate / 0.05) * 0.05, 2)

    @staticmethod
    def get_max_safe_basal(profile: dict[str, Any]) -> float:
        return min(
            profile.get("max_basal", 4.0),
            profile.get("max_daily_safety_multiplier", 4.0) * profile.get("max_daily_basal", 1.0),
            profile.get("current_basal_safety_multiplier", 5.0) * profile.get("current_basal", 1.0),
        )

    def set_temp_basal(
        self, rate: float, duration: int, profile: dict[str, Any], rT: dict[str, Any]
    ) -> dict[str, Any]:
        max_safe = self.get_max_safe_basal(profile)
        if rate > max_safe:
            rT["reason"] = rT.get("reason", "") + f"adj. req. rate: {round(rate, 2)} to maxSafeBasal: {round(max_safe, 2)}, "
            rate = max_safe
        rT["rate"] = self.round_basal(max(rate, 0.0))
        rT["duration"] = max(int(duration), 0)
        rT["temp"] = "absolute"
        return rT


class DecisionEngine(Protocol):
    async def decide(
        self,
        glucose_status: dict[str, Any],
        current_temp: dict[str, Any],
        iob_series: list[dict[str, Any]],
        profile: dict[str, Any],
        autosens: dict[str, Any],
        meal: dict[str, Any],
        temp_helpers: TempBasalHelpers,
        microbolus_allowed: bool,
    ) -> Optional[dict[str, Any]]:
        ...


def _clamp_bg(value: float) -> int:
    return int(round(min(max(value, MIN_PREDICTED_BG), MAX_PREDICTED_BG)))


class ReferenceEngine:
    """
    Simplified determine-basal.

    Projects IOB, zero-temp, COB and UAM glucose curves from the IOB series and
    sets a temp basal that steers the eventual BG towards target. When allowed,
    part of a high-side insulin requirement is delivered as an SMB.
    """

    async def decide(
        self,
        glucose_status: dict[str, Any],
        current_temp: dict[str, Any],
        iob_series: list[dict[str, Any]],
        profile: dict[str, Any],
        autosens: dict[str, Any],
        meal: dict[str, Any],
        temp_helpers: TempBasalHelpers,
        microbolus_allowed: bool,
    ) -> Optional[dict[str, Any]]:
        bg = glucose_status.get("glucose")
        if not bg or bg < MIN_PREDICTED_BG:
            return {"reason": f"CGM reading {bg} is not usable; no temp change"}
        if not iob_series:
            raise DecisionError("IOB series is empty")

        ratio = float(autosens.get("ratio", 1.0))
        sens = round(profile["sens"] / ratio, 1)
        basal = temp_helpers.round_basal(profile["current_basal"] * ratio)
        carb_ratio = float(profile["carb_ratio"])
        min_bg = float(profile["min_bg"])
        max_bg = float(profile["max_bg"])
        target_bg = (min_bg + max_bg) / 2
        max_iob = float(profile["max_iob"])

        iob_now = iob_series[0]
        iob = float(iob_now["iob"])
        bgi = round(-float(iob_now["activity"]) * sens * 5, 2)

        delta = float(glucose_status.get("delta", 0))
        short_avg = float(glucose_status.get("short_avgdelta", delta))
        long_avg = float(glucose_status.get("long_avgdelta", short_avg))
        min_delta = min(delta, short_avg)
        min_avg_delta = min(short_avg, long_avg)

        deviation = round(30 / 5 * (min_delta - bgi))
        if deviation < 0:
            deviation = round(30 / 5 * (min_avg_delta - bgi))
            if deviation < 0:
                deviation = round(30 / 5 * (long_avg - bgi))

        cob = float(meal.get("mealCOB", 0))
        naive_eventual = round(bg - iob * sens)
        eventual_bg = naive_eventual + deviation
        if cob > 0:
            eventual_bg += round(cob * sens / carb_ratio)

        pred_bgs = self._predict(bg, min_delta - bgi, iob_series, sens, carb_ratio, cob, profile)
        min_pred = min(pred_bgs["IOB"])

        rT: dict[str, Any] = {
            "temp": "absolute",
            "bg": bg,
            "eventualBG": eventual_bg,
            "COB": round(cob),
            "IOB": round(iob, 2),
            "BGI": bgi,
            "deviation": deviation,
            "ISF": sens,
            "CR": carb_ratio,
            "target_bg": target_bg,
            "sensitivityRatio": ratio,
            "predBGs": pred_bgs,
            "reason": (
                f"COB: {round(cob)}, Dev: {deviation}, BGI: {bgi}, ISF: {sens}, CR: {carb_ratio}, "
                f"Target: {round(target_bg)}, minPredBG {min_pred}, Eventual BG {eventual_bg}; "
            ),
        }

        threshold = min_bg - 0.5 * (min_bg - 40)
        if bg < threshold or min_pred < threshold:
            undershoot = target_bg - min(eventual_bg, min_pred, bg)
            worst_req = undershoot / sens
            duration = int(round(60 * worst_req / max(basal, 0.05)))
            duration = max(30, min(120, (duration // 30) * 30))
            rT["reason"] += f"minPredBG {min_pred} < threshold {round(threshold)}; setting {duration}m zero temp. "
            rT["insulinReq"] = 0
            return temp_helpers.set_temp_basal(0, duration, profile, rT)

        if eventual_bg < min_bg:
            insulin_req = 2 * min(0.0, (eventual_bg - target_bg) / sens)
            rate = basal + 2 * insulin_req
            rT["insulinReq"] = round(insulin_req, 2)
            rT["reason"] += f"Eventual BG {eventual_bg} < {round(min_bg)}, setting {temp_helpers.round_basal(max(rate, 0))}U/hr. "
            return temp_helpers.set_temp_basal(rate, DEFAULT_TEMP_DURATION, profile, rT)

        expected_delta = round(bgi + (target_bg - eventual_bg) / 24, 1)
        if min(eventual_bg, bg) < max_bg or (min_delta > 0 and min_delta > expected_delta and eventual_bg < max_bg):
            rT["insulinReq"] = 0
            rT["reason"] += f"{eventual_bg}-{min(eventual_bg, bg)} in range: no temp required. "
            return temp_helpers.set_temp_basal(basal, DEFAULT_TEMP_DURATION, profile, rT)

        insulin_req = round((min(eventual_bg, bg) - target_bg) / sens, 2)
        if insulin_req > max_iob - iob:
            rT["reason"] += f"max_iob {max_iob}, "
            insulin_req = max(0.0, round(max_iob - iob, 2))
        rT["insulinReq"] = insulin_req

        if microbolus_allowed and self._smb_enabled(profile, cob):
            max_bolus = basal * profile.get("maxSMBBasalMinutes", 30) / 60
            units = math.floor(min(insulin_req / 2, max_bolus) * 20) / 20
            if units >= 0.1:
                rT["units"] = round(units, 2)
                rT["reason"] += f"Microbolusing {rT['units']}U. "
                insulin_req -= units

        rate = basal + 2 * insulin_req
        rT["reason"] += f"Eventual BG {eventual_bg} >= {round(max_bg)}, temp {temp_helpers.round_basal(rate)}U/hr. "
        return temp_helpers.set_temp_basal(rate, DEFAULT_TEMP_DURATION, profile, rT)

    @staticmethod
    def _smb_enabled(profile: dict[str, Any], cob: float) -> bool:
        if profile.get("enableSMB_always"):
            return True
        if cob > 0 and profile.get("enableSMB_with_COB"):
            return True
        return bool(profile.get("enableSMB_after_carbs") and cob > 0)

    @staticmethod
    def _predict(
        bg: float,
        carb_impact: float,
        iob_series: list[dict[str, Any]],
        sens: float,
        carb_ratio: float,
        cob: float,
        profile: dict[str, Any],
    ) -> dict[str, list[int]]:
        iob_pred = [float(bg)]
        zt_pred = [float(bg)]
        cob_pred = [float(bg)]
        uam_pred = [float(bg)]
        remaining_cob = cob
        uam_impact = max(carb_impact, 0.0)

        for i in range(1, PREDICTION_POINTS):
            point = iob_series[min(i, len(iob_series) - 1)]
            pred_bgi = -float(point["activity"]) * sens * 5
            zero_temp = point.get("iobWithZeroTemp") or point
            pred_zt_bgi = -float(zero_temp["activity"]) * sens * 5
            minutes = i * 5
            pred_dev = carb_impact * max(0.0, 1 - minutes / DEVIATION_DECAY_MINUTES)
            uam_dev = uam_impact * max(0.0, 1 - minutes / UAM_DECAY_MINUTES)

            absorbed = 0.0
            if remaining_cob > 0:
                absorbed = min(remaining_cob, cob * CarbCurves.linear_absorption(minutes, CARB_ABSORPTION_MINUTES) * 5)
                remaining_cob -= absorbed

            iob_pred.append(iob_pred[-1] + pred_bgi + pred_dev)
            zt_pred.append(zt_pred[-1] + pred_zt_bgi)
            cob_pred.append(cob_pred[-1] + pred_bgi + absorbed * sens / carb_ratio)
            uam_pred.append(uam_pred[-1] + pred_bgi + uam_dev)

        pred_bgs = {
            "IOB": [_clamp_bg(v) for v in iob_pred],
            "ZT": [_clamp_bg(v) for v in zt_pred],
        }
        if cob > 0:
            pred_bgs["COB"] = [_clamp_bg(v) for v in cob_pred]
        if profile.get("enableUAM"):
            pred_bgs["UAM"] = [_clamp_bg(v) for v in uam_pred]
        return pred_bgs


class CommandDecisionEngine:
    """
    Runs an external determine-basal command.

    The inputs go to the command's stdin as one JSON object and the
    recommendation is read back from stdout as JSON.
    """

    def __init__(self, command: list[str], timeout_seconds: float = 30.0) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = command
        self.timeout_seconds = timeout_seconds

    async def decide(
        self,
        glucose_status: dict[str, Any],
        current_temp: dict[str, Any],
        iob_series: list[dict[str, Any]],
        profile: dict[str, Any],
        autosens: dict[str, Any],
        meal: dict[str, Any],
        temp_helpers: TempBasalHelpers,
        microbolus_allowed: bool,
    ) -> Optional[dict[str, Any]]:
        payload = json.dumps(
            {
                "glucose_status": glucose_status,
                "currenttemp": current_temp,
                "iob_data": iob_series,
                "profile": profile,
                "autosens": autosens,
                "meal_data": meal,
                "tempBasalFunctions": temp_helpers.name,
                "microBolusAllowed": microbolus_allowed,
            }
        ).encode("utf-8")

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DecisionError(f"Cannot start decision engine {self.command[0]!r}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise DecisionError(f"Decision engine timed out after {self.timeout_seconds}s") from exc

        if process.returncode != 0:
            logger.error(
                "Decision engine failed",
                extra={"returncode": process.returncode, "stderr": stderr.decode("utf-8", "replace")[:500]},
            )
            raise DecisionError(f"Decision engine exited with status {process.returncode}")

        text = stdout.decode("utf-8", "replace").strip()
        if not text:
            return None
        try:
            result = json.loads(text)
        except ValueError as exc:
            raise DecisionError(f"Decision engine returned invalid JSON: {text[:200]!r}") from exc
        if not isinstance(result, dict):
            raise DecisionError(f"Decision engine returned {type(result).__name__}, expected an object")
        return result


def build_engine(config: EngineConfig) -> DecisionEngine:
    if config.kind == "command":
        return CommandDecisionEngine(config.command, timeout_seconds=config.timeout_seconds)
    return ReferenceEngine()
