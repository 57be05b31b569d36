"""
rpc_provider.py - JSON-RPC 2.0 wallet provider over HTTP.

Forwards EIP-1193 requests to a wallet bridge or a development node
(anvil, hardhat) that holds unlocked accounts. Wallet events cannot be
pushed over plain HTTP, so the browser reports them to the gate server
(POST /api/wallet/events), which injects them here with ``emit()``.

Every failure surfaces as ``ProviderRpcError``; transport problems and
malformed replies carry INTERNAL_ERROR.
"""

import itertools
import logging
from typing import Any, Optional

import httpx

from gatekeeper.wallet import INTERNAL_ERROR, ProviderRpcError, WalletProvider

logger = logging.getLogger("rpc")

DEFAULT_TIMEOUT = 15.0


def error_code(value: Any) -> int:
    """Integer code of a JSON-RPC error object; INTERNAL_ERROR if it has none."""
    if isinstance(value, bool):
        return INTERNAL_ERROR
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return INTERNAL_ERROR
    return INTERNAL_ERROR


class HttpJsonRpcProvider(WalletProvider):
    """EIP-1193 provider speaking JSON-RPC to ``url``."""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT,
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self._url = url
        self._ids = itertools.count(1)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            resp = await self._client.post(self._url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as e:
            logger.warning("RPC %s transport error: %s", method, e)
            raise ProviderRpcError(INTERNAL_ERROR, f"transport error: {e}") from e
        except ValueError as e:
            raise ProviderRpcError(INTERNAL_ERROR, "response is not JSON") from e

        if not isinstance(body, dict):
            raise ProviderRpcError(INTERNAL_ERROR, "malformed JSON-RPC response")
        error = body.get("error")
        if error:
            if isinstance(error, dict):
                code = error_code(error.get("code"))
                message = str(error.get("message") or error.get("code") or "")
                data = error.get("data")
            else:
                code, message, data = INTERNAL_ERROR, str(error), None
            logger.debug("RPC %s error %s: %s", method, code, message)
            raise ProviderRpcError(code, message, data)
        if "result" not in body:
            raise ProviderRpcError(INTERNAL_ERROR, "JSON-RPC response has no result")
        return body["result"]

    async def close(self):
        if self._owns_client:
            await self._client.aclose()
