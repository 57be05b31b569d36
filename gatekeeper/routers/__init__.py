"""Router package: collects all API routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from gatekeeper.routers import (
    access,
    profile,
    wallet,
    ws as ws_router,
)


def register_all_routers(app: FastAPI):
    app.include_router(access.router)
    app.include_router(profile.router)
    app.include_router(wallet.router)
    ws_router.register(app)
