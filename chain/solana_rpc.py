"""Solana JSON-RPC adapter on top of the endpoint pool.

Transport failures are classified into `RpcError` kinds here so callers never
inspect error text.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any

from solders.pubkey import Pubkey

from chain.endpoint_pool import Endpoint, RateLimitedEndpointPool
from trading.models import SettlementStatus
from utils.errors import ErrorKind, RpcError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
BONDING_CURVE_SEED = b"bonding-curve"

_RATE_LIMIT_CODES = {429, -32429, -32005}
_UNAVAILABLE_CODES = {-32004, -32007, -32014, -32016}


def bonding_curve_address(mint: str, program_id: str) -> str:
    """Derive the bonding-curve PDA for `mint` under the launch program."""
    mint_key = Pubkey.from_string(mint)
    pda, _bump = Pubkey.find_program_address([BONDING_CURVE_SEED, bytes(mint_key)], Pubkey.from_string(program_id))
    return str(pda)


class SolanaRpcClient:
    def __init__(
        self,
        pool: RateLimitedEndpointPool,
        *,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        http: ResilientHttpClient | None = None,
    ) -> None:
        self.pool = pool
        self._max_attempts = max(1, int(max_attempts))
        self._http = http or ResilientHttpClient(timeout_seconds=timeout_seconds, source_limits={"rpc": 16})
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._http.close()

    async def _post(self, endpoint: Endpoint, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        # One attempt per endpoint: rotation is the retry mechanism.
        result = await self._http.post_json(endpoint.url, body, source="rpc", max_attempts=1)
        if not result.ok:
            raise RpcError(result.kind or ErrorKind.FATAL, f"{method} {result.error}", endpoint.url)
        data = result.data
        if not isinstance(data, dict):
            raise RpcError(ErrorKind.FATAL, f"{method} malformed response", endpoint.url)
        error = data.get("error")
        if error:
            code = int((error or {}).get("code", 0) or 0) if isinstance(error, dict) else 0
            message = str((error or {}).get("message", error)) if isinstance(error, dict) else str(error)
            if code in _RATE_LIMIT_CODES:
                kind = ErrorKind.RATE_LIMITED
            elif code in _UNAVAILABLE_CODES:
                kind = ErrorKind.UNAVAILABLE
            else:
                kind = ErrorKind.FATAL
            raise RpcError(kind, f"{method} rpc_error code={code} {message}", endpoint.url)
        if "result" not in data:
            raise RpcError(ErrorKind.FATAL, f"{method} response has no result", endpoint.url)
        return data["result"]

    async def call(self, method: str, params: list[Any] | None = None, *, primary: bool = False) -> Any:
        args = list(params or [])
        if primary:
            return await self._post(self.pool.primary_endpoint(), method, args)
        return await self.pool.with_retry(lambda ep: self._post(ep, method, args), self._max_attempts)

    async def get_account_info(self, address: str, *, primary: bool = False) -> dict[str, Any] | None:
        result = await self.call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": "confirmed"}],
            primary=primary,
        )
        if not isinstance(result, dict):
            raise RpcError(ErrorKind.FATAL, "getAccountInfo malformed result")
        value = result.get("value")
        if value is None:
            return None
        if not isinstance(value, dict):
            raise RpcError(ErrorKind.FATAL, "getAccountInfo malformed value")
        return value

    async def get_account_owner(self, address: str) -> str | None:
        value = await self.get_account_info(address)
        if value is None:
            return None
        return str(value.get("owner") or "")

    async def account_exists(self, address: str) -> bool:
        return (await self.get_account_info(address)) is not None

    async def get_signature_status(self, signature: str) -> SettlementStatus:
        result = await self.call("getSignatureStatuses", [[signature]], primary=True)
        values = (result or {}).get("value") if isinstance(result, dict) else None
        if not isinstance(values, list):
            raise RpcError(ErrorKind.FATAL, "getSignatureStatuses malformed result")
        status = values[0] if values else None
        if not isinstance(status, dict):
            return SettlementStatus.PENDING
        if status.get("err"):
            return SettlementStatus.FAILED
        if str(status.get("confirmationStatus") or "").lower() in ("confirmed", "finalized"):
            return SettlementStatus.CONFIRMED
        return SettlementStatus.PENDING

    async def get_balance_sol(self, owner: str) -> float:
        result = await self.call("getBalance", [owner, {"commitment": "confirmed"}], primary=True)
        lamports = (result or {}).get("value") if isinstance(result, dict) else None
        if not isinstance(lamports, int):
            raise RpcError(ErrorKind.FATAL, "getBalance malformed result")
        return lamports / LAMPORTS_PER_SOL


class RpcLedgerStatusSource:
    """Ledger status collaborator backed by the primary endpoint."""

    def __init__(self, rpc: SolanaRpcClient) -> None:
        self._rpc = rpc

    async def settlement_status(self, ref: str) -> SettlementStatus:
        return await self._rpc.get_signature_status(ref)
