import sys
from datetime import timedelta

import pytest

from nsloop.core.errors import DecisionError
from nsloop.core.settings import EngineConfig, PreferencesConfig
from nsloop.models.decision import CurveName
from nsloop.models.events import GlucoseReading
from nsloop.models.meal import MealState
from nsloop.models.profile import Profile
from nsloop.models.state import LoopState, SettingsState
from nsloop.services.decision import NO_REASON, DecisionInvoker, sanitize_decision
from nsloop.services.decision_engine import (
    CommandDecisionEngine,
    ReferenceEngine,
    TempBasalHelpers,
    build_engine,
)
from nsloop.services.glucose import glucose_status
from nsloop.services.iob import compute_iob_series, compute_iob_state


def _state(profile, now, values, age_minutes=0):
    state = LoopState(settings=SettingsState(profile=profile))
    latest = now - timedelta(minutes=age_minutes)
    state.monitor.glucose = [
        GlucoseReading(value=v, timestamp=latest - timedelta(minutes=5 * i)) for i, v in enumerate(values)
    ]
    state.monitor.iob = compute_iob_state([], profile, now)
    state.monitor.iob_series = compute_iob_series([], profile, now)
    state.monitor.meal = MealState.zero(now)
    return state


class FailingEngine:
    def __init__(self):
        self.calls = 0

    async def decide(self, *args, **kwargs):
        self.calls += 1
        raise RuntimeError("boom")


class FixedEngine:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def decide(self, *args, **kwargs):
        self.calls.append(args)
        return self.result


# --- sanitize -------------------------------------------------------------


def test_sanitize_empty_result_uses_defaults(profile, now):
    decision = sanitize_decision({}, profile, now)
    assert decision.rate == 1.0
    assert decision.duration == 0
    assert decision.reason == NO_REASON
    assert decision.eventual_bg == profile.target_bg_at(now)
    assert decision.deliver_at == now
    assert all(decision.pred_bgs[name] == [] for name in CurveName)
    assert decision.iob == 0
    assert decision.cob == 0
    assert decision.isf == 50
    assert decision.units is None


def test_sanitize_clamps_rate(profile, now):
    assert sanitize_decision({"rate": 12.0}, profile, now).rate == profile.max_safe_basal(now)
    assert sanitize_decision({"rate": -1.0}, profile, now).rate == 0
    assert sanitize_decision({"rate": float("nan")}, profile, now).rate == 1.0
    assert sanitize_decision({"rate": "fast"}, profile, now).rate == 1.0


def test_default_rate_is_scheduled_basal_above_max_basal(now):
    high = Profile.from_preferences(PreferencesConfig(dia=4.0, basal_rate=5.0, sensitivity=50.0, carb_ratio=10.0))
    assert high.max_safe_basal(now) == 4.0
    assert sanitize_decision({"reason": "x", "duration": 0}, high, now).rate == 5.0
    assert sanitize_decision({"rate": 9.0, "duration": 30}, high, now).rate == 4.0


@pytest.mark.parametrize("deliver_at", ["99999999999999999999", 1e300, "not a date", float("nan")])
def test_unusable_deliver_at_falls_back_to_now(profile, now, deliver_at):
    assert sanitize_decision({"deliverAt": deliver_at}, profile, now).deliver_at == now


def test_out_of_range_eventual_bg_in_reason_is_ignored(profile, now):
    decision = sanitize_decision({"reason": "Eventual BG " + "9" * 400}, profile, now)
    assert decision.eventual_bg == profile.target_bg_at(now)


def test_sanitize_eventual_bg_sources(profile, now):
    status = glucose_status([GlucoseReading(value=140, timestamp=now)])
    assert sanitize_decision({"eventualBG": 155.4}, profile, now, status=status).eventual_bg == 155
    assert sanitize_decision({"reason": "COB: 0, Eventual BG 171; "}, profile, now, status=status).eventual_bg == 171
    assert sanitize_decision({"reason": "nothing"}, profile, now, status=status).eventual_bg == 140


def test_sanitize_keeps_engine_fields(profile, now):
    raw = {
        "rate": 1.55,
        "duration": 30,
        "reason": "ok",
        "deliverAt": "2024-03-10T12:00:30.000Z",
        "predBGs": {"IOB": [120, 118.6, None, 117], "UAM": "bad"},
        "COB": 12,
        "units": 0.3,
        "insulinReq": 0.6,
    }
    decision = sanitize_decision(raw, profile, now)
    assert decision.rate == 1.55
    assert decision.duration == 30
    assert decision.deliver_at == now + timedelta(seconds=30)
    assert decision.pred_bgs[CurveName.IOB] == [120, 119, 117]
    assert decision.pred_bgs[CurveName.UAM] == []
    assert decision.cob == 12
    assert decision.insulin_req == 0.6
    assert decision.has_microbolus


def test_sanitize_wire_shape(profile, now):
    wire = sanitize_decision({"rate": 0.5, "duration": 30, "reason": "x"}, profile, now).to_wire()
    for key in ("rate", "duration", "reason", "eventualBG", "deliverAt", "predBGs", "temp", "COB", "IOB"):
        assert key in wire
    assert set(wire["predBGs"]) == {"IOB", "ZT", "COB", "UAM"}


# --- invoker --------------------------------------------------------------


@pytest.mark.asyncio
async def test_engine_exception_uses_safe_defaults(profile, now):
    engine = FailingEngine()
    state = _state(profile, now, [120, 118, 117])
    decision = await DecisionInvoker(engine).invoke(state, now)
    assert engine.calls == 1
    assert decision.rate == profile.basal_at(now)
    assert decision.duration == 0
    assert "Using safe defaults" in decision.reason
    assert state.enact.suggested is decision


@pytest.mark.asyncio
async def test_empty_engine_result_uses_safe_defaults(profile, now):
    decision = await DecisionInvoker(FixedEngine(None)).invoke(_state(profile, now, [120, 118]), now)
    assert decision.duration == 0
    assert "safe defaults" in decision.reason


@pytest.mark.asyncio
async def test_out_of_range_deliver_at_does_not_escape_invoker(profile, now):
    engine = FixedEngine({"rate": 0.8, "duration": 30, "reason": "ok", "deliverAt": "99999999999999999999"})
    decision = await DecisionInvoker(engine).invoke(_state(profile, now, [120, 118, 117]), now)
    assert decision.deliver_at == now
    assert decision.rate == 0.8


@pytest.mark.asyncio
async def test_safe_default_rate_is_not_capped(now):
    high = Profile.from_preferences(PreferencesConfig(dia=4.0, basal_rate=5.0, sensitivity=50.0, carb_ratio=10.0))
    decision = await DecisionInvoker(FailingEngine()).invoke(_state(high, now, [120, 118, 117]), now)
    assert "Using safe defaults" in decision.reason
    assert decision.rate == 5.0


@pytest.mark.asyncio
async def test_stale_glucose_skips_engine(profile, now):
    engine = FixedEngine({"rate": 3.0, "duration": 30})
    state = _state(profile, now, [180, 170], age_minutes=20)
    decision = await DecisionInvoker(engine, max_glucose_age_minutes=15).invoke(state, now)
    assert engine.calls == []
    assert decision.rate == 1.0
    assert decision.duration == 0
    assert decision.bg == 180


@pytest.mark.asyncio
async def test_no_glucose_skips_engine(profile, now):
    engine = FixedEngine({"rate": 3.0, "duration": 30})
    decision = await DecisionInvoker(engine).invoke(_state(profile, now, []), now)
    assert engine.calls == []
    assert decision.bg is None
    assert decision.eventual_bg == profile.target_bg_at(now)


@pytest.mark.asyncio
async def test_engine_receives_oref0_inputs(profile, now):
    engine = FixedEngine({"rate": 0.8, "duration": 30, "reason": "fine"})
    state = _state(profile, now, [120, 118, 117])
    decision = await DecisionInvoker(engine, microbolus_allowed=False).invoke(state, now)

    glucose, current_temp, iob_series, engine_profile, autosens, meal, helpers, smb = engine.calls[0]
    assert glucose["glucose"] == 120
    assert glucose["delta"] == 2
    assert current_temp == {"rate": 0.0, "duration": 0, "temp": "absolute"}
    assert len(iob_series) == 49
    assert engine_profile["current_basal"] == 1.0
    assert autosens == {"ratio": 1.0}
    assert meal["mealCOB"] == 0
    assert isinstance(helpers, TempBasalHelpers)
    assert smb is False
    assert decision.rate == 0.8
    assert decision.tick == "+2"


# --- reference engine -----------------------------------------------------


@pytest.mark.asyncio
async def test_reference_in_range_keeps_scheduled_basal(profile, now):
    decision = await DecisionInvoker(ReferenceEngine()).invoke(_state(profile, now, [110] * 10), now)
    assert decision.rate == 1.0
    assert decision.duration == 30
    assert decision.eventual_bg == 110
    assert len(decision.pred_bgs[CurveName.IOB]) == 48
    assert decision.pred_bgs[CurveName.COB] == []


@pytest.mark.asyncio
async def test_reference_low_sets_zero_temp(profile, now):
    decision = await DecisionInvoker(ReferenceEngine()).invoke(_state(profile, now, [65, 70, 75, 80]), now)
    assert decision.rate == 0
    assert 30 <= decision.duration <= 120


@pytest.mark.asyncio
async def test_reference_high_is_capped_at_max_safe_basal(profile, now):
    decision = await DecisionInvoker(ReferenceEngine()).invoke(_state(profile, now, [250] * 10), now)
    assert decision.rate == profile.max_safe_basal(now)
    assert decision.duration == 30
    assert decision.insulin_req == pytest.approx(2.8)
    assert decision.units is None


@pytest.mark.asyncio
async def test_reference_high_microbolus_when_enabled(now):
    profile = Profile.from_preferences(PreferencesConfig(dia=5, enable_smb_always=True, min_bg=100, max_bg=120))
    decision = await DecisionInvoker(ReferenceEngine()).invoke(_state(profile, now, [250] * 10), now)
    assert decision.units == pytest.approx(1.25)
    assert decision.has_microbolus


@pytest.mark.asyncio
async def test_reference_unusable_glucose_gives_no_change(profile, now):
    raw = await ReferenceEngine().decide(
        {"glucose": 20}, {}, [], profile.to_engine_dict(now), {"ratio": 1.0}, {}, TempBasalHelpers(), True
    )
    assert "rate" not in raw
    assert "not usable" in raw["reason"]


# --- helpers and command engine ------------------------------------------


def test_round_basal():
    assert TempBasalHelpers.round_basal(1.234) == 1.25
    assert TempBasalHelpers.round_basal(0.02) == 0.0


def test_set_temp_basal_caps_rate(profile, now):
    rT = TempBasalHelpers().set_temp_basal(9.0, 30, profile.to_engine_dict(now), {"reason": ""})
    assert rT["rate"] == 4.0
    assert rT["duration"] == 30
    assert "maxSafeBasal" in rT["reason"]


def test_build_engine():
    assert isinstance(build_engine(EngineConfig()), ReferenceEngine)
    engine = build_engine(EngineConfig(kind="command", command=["oref0-determine-basal"], timeout_seconds=5))
    assert isinstance(engine, CommandDecisionEngine)
    assert engine.timeout_seconds == 5


async def _run_command(script, profile, now):
    engine = CommandDecisionEngine([sys.executable, "-c", script], timeout_seconds=10)
    return await engine.decide(
        {"glucose": 120}, {}, [], profile.to_engine_dict(now), {"ratio": 1.0}, {}, TempBasalHelpers(), True
    )


@pytest.mark.asyncio
async def test_command_engine_round_trip(profile, now):
    script = (
        "import json, sys\n"
        "inputs = json.load(sys.stdin)\n"
        "print(json.dumps({'rate': 0.5, 'duration': 30, 'reason': 'bg %d' % inputs['glucose_status']['glucose']}))\n"
    )
    raw = await _run_command(script, profile, now)
    assert raw == {"rate": 0.5, "duration": 30, "reason": "bg 120"}


@pytest.mark.asyncio
async def test_command_engine_empty_output_is_none(profile, now):
    assert await _run_command("import sys; sys.stdin.read()", profile, now) is None


@pytest.mark.asyncio
async def test_command_engine_failure_raises(profile, now):
    with pytest.raises(DecisionError):
        await _run_command("import sys; sys.exit(3)", profile, now)


@pytest.mark.asyncio
async def test_command_engine_invalid_json_raises(profile, now):
    with pytest.raises(DecisionError):
        await _run_command("print('not json')", profile, now)
