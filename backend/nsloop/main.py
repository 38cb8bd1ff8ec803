import logging

from fastapi import FastAPI

from nsloop import __version__
from nsloop.api import api_router
from nsloop.core.logging import configure_logging
from nsloop.core.scheduler import shutdown_scheduler
from nsloop.core.settings import Settings, get_settings
from nsloop.services.decision_engine import build_engine
from nsloop.services.loop import ControlLoop
from nsloop.services.nightscout_client import NightscoutClient

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="nsloop", version=__version__)
app.include_router(api_router, prefix="/api")


def build_control_loop(settings: Settings) -> ControlLoop:
    ns_config = settings.nightscout
    if not ns_config.base_url:
        raise RuntimeError("Nightscout base URL is not configured (NIGHTSCOUT_URL)")
    client = NightscoutClient(
        base_url=str(ns_config.base_url),
        token=ns_config.token,
        api_secret=ns_config.api_secret,
        timeout_seconds=ns_config.timeout_seconds,
        entered_by=settings.loop.entered_by,
    )
    return ControlLoop(settings, client, build_engine(settings.engine))


@app.on_event("startup")
async def startup_event() -> None:
    settings = get_settings()
    loop = build_control_loop(settings)
    app.state.control_loop = loop
    await loop.start()
    logger.info(
        "Control loop started",
        extra={"engine": settings.engine.kind, "interval_minutes": settings.loop.interval_minutes},
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    loop = getattr(app.state, "control_loop", None)
    if loop is None:
        return
    await loop.stop()
    shutdown_scheduler()
    if loop.client is not None:
        await loop.client.aclose()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.server.host, port=settings.server.port, log_config=None)
