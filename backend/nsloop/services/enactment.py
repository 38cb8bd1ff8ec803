from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from nsloop.core.settings import LoopConfig
from nsloop.models.decision import CurrentTemp, DecisionResult, EnactedRecord
from nsloop.models.events import Bolus, PumpEvent, TempBasalDuration, TempBasalStart
from nsloop.models.iob import IOBState
from nsloop.models.state import LoopState
from nsloop.services.nightscout_client import NightscoutClient
from nsloop.utils.timezone import epoch_ms, iso_z

logger = logging.getLogger(__name__)


def temp_basal_treatment(record: EnactedRecord, entered_by: str) -> dict[str, Any]:
    ts = iso_z(record.timestamp)
    return {
        "eventType": "Temp Basal",
        "duration": record.duration,
        "rate": record.rate,
        "absolute": record.rate,
        "created_at": ts,
        "enteredBy": entered_by,
        "reason": record.reason,
        "raw_rate": {"_type": "TempBasal", "timestamp": ts, "temp": "absolute", "rate": record.rate},
        "raw_duration": {"_type": "TempBasalDuration", "timestamp": ts, "duration": record.duration},
    }


def microbolus_treatment(record: EnactedRecord, entered_by: str) -> dict[str, Any]:
    return {
        "eventType": "Bolus",
        "insulin": record.units,
        "created_at": iso_z(record.timestamp),
        "enteredBy": entered_by,
    }


def build_device_status(state: LoopState, record: EnactedRecord, now: datetime, config: LoopConfig) -> dict[str, Any]:
    """The devicestatus document Nightscout's OpenAPS plugin reads."""
    profile = state.settings.profile
    iob = state.monitor.iob or IOBState.zero(now)
    suggested: Optional[DecisionResult] = state.enact.suggested
    clock = iso_z(now)
    limits = profile.limits
    return {
        "device": config.device,
        "openaps": {
            "iob": iob.to_wire(),
            "suggested": (suggested or record).to_wire(),
            "enacted": record.to_wire(),
            "version": config.openaps_version,
        },
        "pump": {
            "clock": clock,
            "battery": {"voltage": 1.45, "status": "normal"},
            "reservoir": 250,
            "status": {"status": "normal", "bolusing": False, "suspended": False, "timestamp": clock},
        },
        "uploader": {"batteryVoltage": 3867, "battery": 69},
        "preferences": {
            "max_iob": limits.max_iob,
            "max_daily_safety_multiplier": limits.max_daily_safety_multiplier,
            "current_basal_safety_multiplier": limits.current_basal_safety_multiplier,
            "autosens_max": limits.autosens_max,
            "autosens_min": limits.autosens_min,
            "enableSMB_always": profile.smb.enable_smb_always,
            "enableSMB_with_COB": profile.smb.enable_smb_with_cob,
            "enableSMB_with_temptarget": profile.smb.enable_smb_with_temptarget,
            "enableUAM": profile.smb.enable_uam,
            "curve": profile.curve,
            "timestamp": clock,
        },
        "utcOffset": 0,
        "created_at": clock,
        "mills": epoch_ms(now),
    }


class Enactor:
    def __init__(self, client: Optional[NightscoutClient], config: LoopConfig) -> None:
        self.client = client
        self.config = config

    def _project(self, state: LoopState, record: EnactedRecord, now: datetime) -> None:
        # Optimistic local projection: the next authoritative fetch replaces these
        projected: list[PumpEvent] = [
            TempBasalStart(rate=record.rate, timestamp=now, optimistic=True),
            TempBasalDuration(minutes=record.duration, timestamp=now, optimistic=True),
        ]
        if record.has_microbolus:
            projected.append(Bolus(amount=record.units, timestamp=now, optimistic=True))
        state.monitor.pump_history = projected + state.monitor.pump_history

    async def _upload(self, what: str, call, payload: list[dict[str, Any]]) -> bool:
        try:
            await call(payload)
            return True
        except Exception as exc:
            logger.warning(f"Nightscout {what} upload failed", extra={"error": str(exc)})
            return False

    async def enact(self, state: LoopState, decision: DecisionResult, now: datetime) -> EnactedRecord:
        """
        Records the decision as enacted, projects it locally and uploads it.

        Upload failures are logged only. The local record always stands.
        """
        record = EnactedRecord.from_decision(decision, now)
        state.enact.enacted = record
        state.monitor.current_temp = CurrentTemp(rate=record.rate, duration=record.duration)

        if self.config.optimistic_projection:
            self._project(state, record, now)

        if self.client is None:
            return record

        if self.config.upload_treatments:
            treatments = [temp_basal_treatment(record, self.config.entered_by)]
            if record.has_microbolus:
                treatments.append(microbolus_treatment(record, self.config.entered_by))
            await self._upload("treatment", self.client.upload_treatments, treatments)

        if self.config.upload_devicestatus:
            status = build_device_status(state, record, now, self.config)
            await self._upload("devicestatus", self.client.upload_devicestatus, [status])

        logger.info(
            "Enacted temp basal",
            extra={"rate": record.rate, "duration": record.duration, "units": record.units},
        )
        return record
