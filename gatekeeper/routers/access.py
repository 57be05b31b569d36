"""Access router: /api/access/* endpoints driving the access state machine."""

from fastapi import APIRouter, HTTPException
from starlette.requests import Request

from gatekeeper.controller import MINTABLE, RETRYABLE
from gatekeeper.deps import get_server

router = APIRouter()


def get_controller(request: Request):
    srv = get_server(request)
    if srv.controller is None:
        raise HTTPException(status_code=503, detail="Gate is starting up")
    return srv.controller


@router.get("/api/access")
async def access_state(request: Request):
    return get_controller(request).snapshot()


@router.post("/api/access/connect")
async def access_connect(request: Request):
    """Explicit, user-initiated wallet connection followed by the access check."""
    controller = get_controller(request)
    await controller.connect()
    return controller.snapshot()


@router.post("/api/access/disconnect")
async def access_disconnect(request: Request):
    controller = get_controller(request)
    await controller.disconnect()
    return controller.snapshot()


@router.post("/api/access/refresh")
async def access_refresh(request: Request):
    controller = get_controller(request)
    if controller.state not in RETRYABLE:
        raise HTTPException(status_code=409, detail=f"Nothing to retry in state {controller.state.value}")
    await controller.refresh()
    return controller.snapshot()


@router.post("/api/access/mint")
async def access_mint(request: Request):
    """Submit a mint. Returns right away; confirmation progress arrives over /ws/access."""
    controller = get_controller(request)
    if controller.state not in MINTABLE:
        raise HTTPException(status_code=409, detail=f"Cannot mint in state {controller.state.value}")
    controller.begin_mint()
    return controller.snapshot()


@router.post("/api/access/start")
async def access_start_game(request: Request):
    controller = get_controller(request)
    if not controller.start_game():
        raise HTTPException(status_code=409, detail="Game is locked until access is granted")
    return {"started": True}
