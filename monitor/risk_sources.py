"""External risk signal clients: RugCheck, DexScreener, GoPlus and on-chain reads.

Each client returns the source's own structured payload or raises `SourceError`.
Normalizing payloads into check results is the risk screen's job.
"""

from __future__ import annotations

import logging
from typing import Any

from chain.solana_rpc import SolanaRpcClient, bonding_curve_address
from config import RiskPolicy
from utils.errors import ErrorKind, SourceError
from utils.http_client import HttpResult, ResilientHttpClient
from utils.ttl_cache import TtlCache

logger = logging.getLogger(__name__)

_MISSING = object()


def build_risk_http_client(policy: RiskPolicy) -> ResilientHttpClient:
    return ResilientHttpClient(
        timeout_seconds=policy.http_timeout_seconds,
        headers={"Accept": "application/json, text/plain, */*"},
        source_limits={"rugcheck": 4, "dexscreener": 8, "goplus": 4},
        min_intervals=dict(policy.source_min_intervals),
    )


def _raise_for_result(result: HttpResult, source: str) -> None:
    if result.ok:
        return
    kind = result.kind or ErrorKind.UNAVAILABLE
    if kind is ErrorKind.RATE_LIMITED:
        logger.warning("RATE_LIMIT source=%s status=%s", source, result.status)
    raise SourceError(kind, result.error or f"http_status_{result.status}", source)


def _pair_liquidity(pair: dict[str, Any]) -> float:
    """Sort key only; a malformed liquidity block ranks last instead of failing the fetch."""
    try:
        return float((pair.get("liquidity") or {}).get("usd") or 0)
    except (TypeError, ValueError, AttributeError):
        return -1.0


class _CachedSource:
    name = "source"

    def __init__(self, http: ResilientHttpClient, policy: RiskPolicy) -> None:
        self._http = http
        self._policy = policy
        self._cache: TtlCache[Any] = TtlCache(policy.source_cache_ttl_seconds, policy.cache_max_entries)

    def _cached(self, asset_id: str) -> Any:
        value = self._cache.get(asset_id)
        return _MISSING if value is None else value

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> Any:
        result = await self._http.get_json(
            url,
            source=self.name,
            params=params,
            max_attempts=self._policy.http_retry_attempts,
        )
        _raise_for_result(result, self.name)
        return result.data


class RugCheckSource(_CachedSource):
    name = "rugcheck"

    async def report(self, asset_id: str) -> dict[str, Any]:
        cached = self._cached(asset_id)
        if cached is not _MISSING:
            return cached
        data = await self._get(f"{self._policy.rugcheck_api}/{asset_id}/report")
        if not isinstance(data, dict):
            raise SourceError(ErrorKind.FATAL, "report is not an object", self.name)
        self._cache.put(asset_id, data)
        return data


class DexScreenerSource(_CachedSource):
    name = "dexscreener"

    async def pairs(self, asset_id: str) -> list[dict[str, Any]]:
        """Pairs on the configured chain, deepest liquidity first."""
        cached = self._cached(asset_id)
        if cached is not _MISSING:
            return cached
        data = await self._get(f"{self._policy.dexscreener_api}/{asset_id}")
        if not isinstance(data, dict):
            raise SourceError(ErrorKind.FATAL, "payload is not an object", self.name)
        raw_pairs = data.get("pairs") or []
        if not isinstance(raw_pairs, list):
            raise SourceError(ErrorKind.FATAL, "pairs is not a list", self.name)
        chain = self._policy.chain_id.lower()
        pairs = [p for p in raw_pairs if isinstance(p, dict) and str(p.get("chainId", chain)).lower() == chain]
        pairs.sort(key=_pair_liquidity, reverse=True)
        self._cache.put(asset_id, pairs)
        return pairs


class GoPlusSource(_CachedSource):
    name = "goplus"

    async def security(self, asset_id: str) -> dict[str, Any] | None:
        """Security entry for the asset, or None when GoPlus has not indexed it."""
        cached = self._cached(asset_id)
        if cached is not _MISSING:
            return cached or None
        data = await self._get(self._policy.goplus_api, params={"contract_addresses": asset_id})
        if not isinstance(data, dict):
            raise SourceError(ErrorKind.FATAL, "payload is not an object", self.name)
        code = str(data.get("code", "")).strip()
        if code and code not in {"1", "200", "ok", "OK"}:
            kind = ErrorKind.RATE_LIMITED if code == "4029" else ErrorKind.UNAVAILABLE
            raise SourceError(kind, f"api_code_{code}", self.name)
        result_map = data.get("result") or {}
        if not isinstance(result_map, dict):
            raise SourceError(ErrorKind.FATAL, "bad_result_map", self.name)
        entry = result_map.get(asset_id)
        if entry is not None and not isinstance(entry, dict):
            raise SourceError(ErrorKind.FATAL, "bad_token_entry", self.name)
        self._cache.put(asset_id, entry or {})
        return entry


class OnChainSource:
    """Direct ledger reads: launch-curve presence and mint account ownership."""

    name = "onchain"

    def __init__(self, rpc: SolanaRpcClient, policy: RiskPolicy) -> None:
        self._rpc = rpc
        self._policy = policy

    async def bonding_curve_active(self, asset_id: str) -> tuple[bool, str]:
        pda = bonding_curve_address(asset_id, self._policy.bonding_curve_program)
        return await self._rpc.account_exists(pda), pda

    async def token_program_owner(self, asset_id: str) -> str | None:
        return await self._rpc.get_account_owner(asset_id)
