from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from nsloop.services.loop import ControlLoop

router = APIRouter()


def get_control_loop(request: Request) -> Optional[ControlLoop]:
    return getattr(request.app.state, "control_loop", None)


@router.get("/status", summary="Control loop status and latest state")
async def loop_status(loop: Optional[ControlLoop] = Depends(get_control_loop)) -> dict:
    if loop is None:
        raise HTTPException(status_code=503, detail="Control loop not running")
    return loop.status()
