"""Pydantic request models for the REST API."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ScoreRequest(BaseModel):
    score: int = Field(ge=0)


class UsernameRequest(BaseModel):
    username: str


class WalletEventRequest(BaseModel):
    """Event reported by the page's injected wallet (accountsChanged, chainChanged, disconnect)."""

    event: str
    payload: Optional[Any] = None
