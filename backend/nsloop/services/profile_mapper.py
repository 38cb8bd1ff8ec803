import logging
from typing import Optional

from nsloop.core.settings import PreferencesConfig
from nsloop.models.profile import (
    BasalScheduleEntry,
    CarbRatioEntry,
    Profile,
    SensitivityEntry,
    TargetEntry,
    limits_from_preferences,
    smb_from_preferences,
)
from nsloop.models.schemas import NightscoutProfileDocument, ScheduleItem

logger = logging.getLogger(__name__)

MGDL_PER_MMOL = 18.0


def is_mmol(units: Optional[str]) -> bool:
    return bool(units) and units.strip().lower().startswith("mmol")


def _merge_targets(
    lows: list[ScheduleItem], highs: list[ScheduleItem], factor: float
) -> list[TargetEntry]:
    high_by_offset = {item.offset_minutes(): item.value for item in highs}
    targets = []
    for item in lows:
        offset = item.offset_minutes()
        low = item.value * factor
        high = high_by_offset.get(offset, item.value) * factor
        targets.append(TargetEntry(offset_minutes=offset, low=low, high=max(low, high)))
    return targets


def profile_from_nightscout(
    document: Optional[NightscoutProfileDocument], prefs: PreferencesConfig
) -> tuple[Profile, bool]:
    """
    Maps the active Nightscout profile store onto a Profile in mg/dL.

    Schedules missing from the store fall back to the single-value preferences.
    Returns the profile and whether anything was actually taken from Nightscout.
    """
    fallback = Profile.from_preferences(prefs)
    store = document.active_store() if document else None
    if store is None:
        logger.warning("No usable Nightscout profile, using configured preferences")
        return fallback, False

    units = store.units or (document.units if document else None)
    factor = MGDL_PER_MMOL if is_mmol(units) else 1.0

    basal = [BasalScheduleEntry(offset_minutes=i.offset_minutes(), rate=i.value) for i in store.basal]
    sens = [
        SensitivityEntry(offset_minutes=i.offset_minutes(), sensitivity=i.value * factor)
        for i in store.sens
        if i.value > 0
    ]
    ratios = [CarbRatioEntry(offset_minutes=i.offset_minutes(), ratio=i.value) for i in store.carbratio if i.value > 0]
    targets = _merge_targets(store.target_low, store.target_high, factor)

    dia = store.dia if store.dia and store.dia > 0 else prefs.dia
    profile = Profile(
        dia=dia,
        curve=prefs.curve,
        use_custom_peak_time=prefs.use_custom_peak_time,
        insulin_peak_time=prefs.insulin_peak_time,
        basal_schedule=basal or fallback.basal_schedule,
        sensitivity_schedule=sens or fallback.sensitivity_schedule,
        carb_ratio_schedule=ratios or fallback.carb_ratio_schedule,
        target_schedule=targets or fallback.target_schedule,
        limits=limits_from_preferences(prefs),
        smb=smb_from_preferences(prefs),
        min_5m_carbimpact=prefs.min_5m_carbimpact,
        max_cob=prefs.max_cob,
        out_units="mmol/L" if factor != 1.0 else "mg/dL",
        timezone=store.timezone or prefs.timezone,
    )
    logger.info(
        "Loaded Nightscout profile",
        extra={
            "units": profile.out_units,
            "dia": profile.dia,
            "basal_entries": len(profile.basal_schedule),
            "isf_entries": len(profile.sensitivity_schedule),
        },
    )
    return profile, True
