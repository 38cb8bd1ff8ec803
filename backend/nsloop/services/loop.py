"""
The closed-loop control cycle.

One cycle: fetch glucose and treatments, translate treatments into pump events,
recompute IOB and COB, ask the decision engine, then enact and upload. Every
stage falls back to a safe default, so a cycle always ends in ENACTING and the
loop never stops on bad data.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from nsloop import jobs, jobs_state
from nsloop.core.errors import NightscoutError
from nsloop.core.settings import Settings
from nsloop.models.decision import DecisionResult, EnactedRecord
from nsloop.models.events import GlucoseReading
from nsloop.models.iob import IOBState
from nsloop.models.meal import MealState
from nsloop.models.profile import Profile
from nsloop.models.state import LoopState, SettingsState
from nsloop.services.decision import SAFE_DEFAULTS_REASON, DecisionInvoker, sanitize_decision
from nsloop.services.decision_engine import DecisionEngine
from nsloop.services.enactment import Enactor
from nsloop.services.glucose import readings_from_entries
from nsloop.services.iob import compute_iob_series, compute_iob_state
from nsloop.services.meal import compute_meal_state
from nsloop.services.nightscout_client import NightscoutClient
from nsloop.services.profile_mapper import profile_from_nightscout
from nsloop.services.pump_history import retain_window, translate_treatments

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LoopStage(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    TRANSLATING = "translating"
    ACCOUNTING = "accounting"
    DECIDING = "deciding"
    ENACTING = "enacting"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ControlLoop:
    def __init__(
        self,
        settings: Settings,
        client: Optional[NightscoutClient],
        engine: DecisionEngine,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.client = client
        self.clock = clock
        self.state = LoopState(
            settings=SettingsState(
                profile=Profile.from_preferences(settings.preferences),
                autosens_ratio=settings.loop.autosens_ratio,
            )
        )
        self.invoker = DecisionInvoker(
            engine,
            max_glucose_age_minutes=settings.loop.max_glucose_age_minutes,
            microbolus_allowed=settings.loop.microbolus_allowed,
        )
        self.enactor = Enactor(client, settings.loop)

        self.stage = LoopStage.IDLE
        self.cycles = 0
        self.dropped_ticks = 0
        self.last_cycle_at: Optional[datetime] = None
        self.last_cycle_seconds: Optional[float] = None
        self._in_flight = False
        self._first_cycle: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def history_hours(self) -> float:
        # Never shorter than DIA
        return max(self.settings.loop.history_hours, math.ceil(self.state.settings.profile.dia))

    async def _gateway(self, what: str, call: Awaitable[T]) -> Optional[T]:
        """Runs one gateway call under the timeout guard. Failures become None."""
        try:
            return await asyncio.wait_for(call, timeout=self.settings.loop.gateway_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Nightscout {what} timed out")
        except NightscoutError as exc:
            logger.warning(f"Nightscout {what} failed", extra={"error": str(exc)})
        except Exception as exc:
            logger.error(f"Unexpected error fetching {what}", extra={"error": str(exc)}, exc_info=True)
        return None

    async def initialize(self) -> None:
        """Loads the therapy profile from Nightscout, falling back to configured preferences."""
        if self.client is None:
            logger.warning("No Nightscout client, using configured preferences as profile")
            return
        document = await self._gateway("profile", self.client.get_profile())
        try:
            profile, loaded = profile_from_nightscout(document, self.settings.preferences)
        except ValueError as exc:
            # pydantic ValidationError is a ValueError
            logger.warning("Nightscout profile rejected, using preferences", extra={"error": str(exc)})
            return
        self.state.settings.profile = profile
        self.state.settings.profile_loaded = loaded
        self.state.settings.profile_source = "nightscout" if loaded else "preferences"

    async def _fetch_glucose(self) -> Optional[list[GlucoseReading]]:
        if self.client is None:
            return None
        entries = await self._gateway("entries", self.client.get_entries(self.settings.nightscout.entries_count))
        if entries is None:
            return None
        return readings_from_entries(entries)

    async def _fetch_treatments(self) -> Optional[list[dict[str, Any]]]:
        if self.client is None:
            return None
        return await self._gateway("treatments", self.client.get_treatments(self.settings.nightscout.treatments_count))

    async def _fetch(self) -> tuple[Optional[list[GlucoseReading]], Optional[list[dict[str, Any]]]]:
        self.stage = LoopStage.FETCHING
        glucose, treatments = await asyncio.gather(self._fetch_glucose(), self._fetch_treatments())
        monitor = self.state.monitor
        if glucose is not None:
            monitor.glucose = glucose
        else:
            logger.warning("Using last known glucose", extra={"readings": len(monitor.glucose)})
        return glucose, treatments

    def _translate(self, treatments: Optional[list[dict[str, Any]]], now: datetime) -> None:
        self.stage = LoopStage.TRANSLATING
        monitor = self.state.monitor
        if treatments is None:
            logger.warning("Using last known pump history", extra={"events": len(monitor.pump_history)})
            self._retain_window(now)
            return
        try:
            result = translate_treatments(treatments, now, window_hours=self.history_hours)
        except Exception as exc:
            logger.error("Treatment translation failed", extra={"error": str(exc)}, exc_info=True)
            self._retain_window(now)
            return
        # Authoritative history replaces everything, optimistic projections included
        monitor.pump_history = result.events
        monitor.carb_history = result.carb_history
        monitor.translation = result.stats()

    def _retain_window(self, now: datetime) -> None:
        monitor = self.state.monitor
        monitor.pump_history, monitor.carb_history = retain_window(
            monitor.pump_history, monitor.carb_history, now, window_hours=self.history_hours
        )

    def _account(self, now: datetime) -> None:
        self.stage = LoopStage.ACCOUNTING
        monitor = self.state.monitor
        profile = self.state.settings.profile
        horizon = self.settings.loop.zero_temp_minutes
        try:
            monitor.iob = compute_iob_state(monitor.pump_history, profile, now, horizon_minutes=horizon)
            monitor.iob_series = compute_iob_series(monitor.pump_history, profile, now, horizon_minutes=horizon)
        except Exception as exc:
            logger.error("IOB accounting failed", extra={"error": str(exc)}, exc_info=True)
            monitor.iob = IOBState.zero(now)
            monitor.iob_series = [monitor.iob]
        try:
            monitor.meal = compute_meal_state(
                monitor.pump_history,
                monitor.carb_history,
                monitor.glucose,
                profile,
                now,
                carb_window_hours=self.settings.loop.carb_window_hours,
            )
        except Exception as exc:
            logger.error("Meal accounting failed", extra={"error": str(exc)}, exc_info=True)
            monitor.meal = MealState.zero(now)

    async def _decide(self, now: datetime) -> DecisionResult:
        self.stage = LoopStage.DECIDING
        try:
            return await self.invoker.invoke(self.state, now)
        except Exception as exc:
            logger.error("Decision stage failed", extra={"error": str(exc)}, exc_info=True)
            decision = sanitize_decision(
                {"reason": f"{SAFE_DEFAULTS_REASON} {exc}", "duration": 0},
                self.state.settings.profile,
                now,
            )
            self.state.enact.suggested = decision
            return decision

    async def _enact(self, decision: DecisionResult, now: datetime) -> Optional[EnactedRecord]:
        self.stage = LoopStage.ENACTING
        try:
            return await self.enactor.enact(self.state, decision, now)
        except Exception as exc:
            logger.error("Enactment failed", extra={"error": str(exc)}, exc_info=True)
            return None

    async def run_cycle(self) -> Optional[EnactedRecord]:
        """Runs one full cycle. Never raises."""
        started = time.monotonic()
        now = self.clock()
        self.state.monitor.clock = now
        record: Optional[EnactedRecord] = None
        try:
            _, treatments = await self._fetch()
            self._translate(treatments, now)
            self._account(now)
            decision = await self._decide(now)
            record = await self._enact(decision, now)
            # Projected events only leave the history through the window
            self._retain_window(now)
        except Exception as exc:
            logger.error("Control cycle aborted", extra={"stage": self.stage.value, "error": str(exc)}, exc_info=True)
        finally:
            self.stage = LoopStage.IDLE
            self.cycles += 1
            self.last_cycle_at = now
            self.last_cycle_seconds = round(time.monotonic() - started, 3)

        iob = self.state.monitor.iob
        meal = self.state.monitor.meal
        logger.info(
            "Control cycle complete",
            extra={
                "cycle": self.cycles,
                "seconds": self.last_cycle_seconds,
                "glucose": self.state.monitor.glucose[0].value if self.state.monitor.glucose else None,
                "iob": round(iob.iob, 2) if iob else None,
                "cob": round(meal.carbs_on_board) if meal else None,
                "rate": record.rate if record else None,
                "duration": record.duration if record else None,
            },
        )
        return record

    async def tick(self) -> Optional[EnactedRecord]:
        """Scheduler entry point. A tick that arrives while a cycle runs is dropped, not queued."""
        if self._in_flight:
            self.dropped_ticks += 1
            jobs_state.mark_job_dropped(jobs_state.CONTROL_LOOP_JOB)
            logger.warning("Control cycle still running, tick dropped", extra={"dropped_ticks": self.dropped_ticks})
            return None
        self._in_flight = True
        try:
            return await jobs_state.run_job(jobs_state.CONTROL_LOOP_JOB, self.run_cycle)
        finally:
            self._in_flight = False

    async def start(self) -> None:
        await self.initialize()
        jobs.setup_control_loop(self, self.settings.loop.interval_minutes)
        self._first_cycle = asyncio.create_task(self.tick())

    async def stop(self) -> None:
        """Halts the timer. A cycle already running is left to finish."""
        jobs.remove_control_loop()

    def status(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "in_flight": self._in_flight,
            "cycles": self.cycles,
            "dropped_ticks": self.dropped_ticks,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_cycle_seconds": self.last_cycle_seconds,
            "history_hours": self.history_hours,
            "state": self.state.snapshot(),
        }
