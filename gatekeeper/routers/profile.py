"""Profile router: /api/profile/* and /api/leaderboard."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from starlette.requests import Request

from gatekeeper.deps import get_server
from gatekeeper.domain import AccessState
from gatekeeper.models import ScoreRequest, UsernameRequest
from gatekeeper.profile import validate_username
from gatekeeper.routers.access import get_controller

router = APIRouter()


@router.get("/api/profile")
async def get_profile(request: Request):
    profile = get_controller(request).current_profile()
    if profile is None:
        raise HTTPException(status_code=404, detail="No profile loaded")
    return profile.to_dict()


@router.post("/api/profile/score")
async def submit_score(req: ScoreRequest, request: Request):
    controller = get_controller(request)
    if controller.state is not AccessState.READY:
        raise HTTPException(status_code=409, detail="Scores are only recorded while playing")
    new_best = await controller.submit_score(req.score)
    profile = controller.current_profile()
    return {"new_best": new_best, "profile": profile.to_dict() if profile else None}


@router.post("/api/profile/username")
async def set_username(req: UsernameRequest, request: Request):
    controller = get_controller(request)
    try:
        validate_username(req.username)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if controller.state is not AccessState.READY:
        raise HTTPException(status_code=409, detail="Connect and unlock the game first")
    if not await controller.set_username(req.username):
        raise HTTPException(status_code=409, detail=controller.status_message)
    return controller.current_profile().to_dict()


@router.get("/api/leaderboard")
async def leaderboard(request: Request, limit: Optional[int] = Query(default=None, ge=1, le=100)):
    srv = get_server(request)
    controller = get_controller(request)
    view = await controller.leaderboard(limit or srv.config.leaderboard_size)
    return view.to_dict()
