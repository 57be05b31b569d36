"""Wallet router: /api/wallet/events relays injected-wallet events from the page."""

import logging

from fastapi import APIRouter, HTTPException
from starlette.requests import Request

from gatekeeper.deps import get_server
from gatekeeper.models import WalletEventRequest
from gatekeeper.routers.access import get_controller

router = APIRouter()

logger = logging.getLogger("wallet")

WALLET_EVENTS = ("accountsChanged", "chainChanged", "disconnect")


@router.post("/api/wallet/events")
async def wallet_event(req: WalletEventRequest, request: Request):
    srv = get_server(request)
    controller = get_controller(request)
    if req.event not in WALLET_EVENTS:
        raise HTTPException(status_code=400, detail=f"Unsupported wallet event: {req.event}")
    if srv.provider is None:
        raise HTTPException(status_code=503, detail="No wallet provider configured")
    if req.event == "accountsChanged" and req.payload is not None and not isinstance(req.payload, list):
        raise HTTPException(status_code=400, detail="accountsChanged payload must be a list of addresses")
    logger.debug("Relaying wallet event %s", req.event)
    srv.provider.emit(req.event, req.payload)
    return controller.snapshot()
