from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from nsloop import __version__, jobs_state
from nsloop.api.loop import get_control_loop
from nsloop.core.settings import Settings, get_settings
from nsloop.services.loop import ControlLoop
from nsloop.services.nightscout_client import NightscoutClient

router = APIRouter()

_start_time = datetime.now(timezone.utc)

# Missed cycles tolerated before the loop is reported stale
STALE_CYCLES = 3


def _uptime_seconds() -> float:
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


def _loop_health(loop: Optional[ControlLoop], settings: Settings) -> dict[str, object]:
    if loop is None:
        return {"running": False, "stale": True}
    interval = timedelta(minutes=settings.loop.interval_minutes)
    last = loop.last_cycle_at
    stale = last is None or loop.clock() - last > interval * STALE_CYCLES
    return {
        "running": True,
        "stage": loop.stage.value,
        "cycles": loop.cycles,
        "dropped_ticks": loop.dropped_ticks,
        "last_cycle_at": last.isoformat() if last else None,
        "stale": stale,
    }


@router.api_route("/", methods=["GET", "HEAD"], summary="Liveness probe", response_model=None)
async def health(request: Request):
    if request.method == "HEAD":
        return Response(status_code=200)
    return {"ok": True}


@router.get("/full", summary="Full health check")
async def full_health(
    settings: Settings = Depends(get_settings),
    loop: Optional[ControlLoop] = Depends(get_control_loop),
) -> dict:
    status: dict[str, object] = {
        "ok": True,
        "uptime_seconds": _uptime_seconds(),
        "version": __version__,
        "loop": _loop_health(loop, settings),
    }

    ns_config = settings.nightscout
    if ns_config.base_url:
        try:
            client = NightscoutClient(
                base_url=str(ns_config.base_url),
                token=ns_config.token,
                api_secret=ns_config.api_secret,
                timeout_seconds=ns_config.timeout_seconds,
            )
            try:
                ns_status = await client.get_status()
                status["nightscout"] = {"reachable": True, "status": ns_status}
            finally:
                await client.aclose()
        except Exception as exc:
            status["nightscout"] = {"reachable": False, "error": str(exc)}
    else:
        status["nightscout"] = {"reachable": False, "reason": "Not configured"}

    status["server"] = {"host": settings.server.host, "port": settings.server.port}
    return status


@router.get("/jobs", summary="Scheduled job states")
async def jobs_health() -> dict:
    return {"jobs": jobs_state.get_all_states()}
