"""Collaborator boundaries for trading: execution backend, price oracle, ledger status.

Live order construction lives outside this repo and is plugged in through
`TRADE_BACKEND=module:factory`. Paper implementations here drive dry runs.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from config import RiskPolicy, SniperSettings
from trading.models import SettlementStatus
from utils.addressing import short_id
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

PAPER_REF_PREFIX = "SIM_"


@dataclass
class TradeResult:
    ref: str | None = None
    error: str = ""
    proceeds: float | None = None
    quantity: float | None = None

    @property
    def ok(self) -> bool:
        return bool(self.ref) and not self.error


class TradeBackend(Protocol):
    async def acquire(self, asset_id: str, capital_amount: float) -> TradeResult: ...

    async def dispose(
        self,
        asset_id: str,
        quantity: float | None = None,
        percent_of_holdings: float | None = None,
    ) -> TradeResult: ...

    async def query_held_quantity(self, asset_id: str) -> float: ...


class PriceOracle(Protocol):
    async def current_price(self, asset_id: str) -> float | None: ...


class LedgerStatusSource(Protocol):
    async def settlement_status(self, ref: str) -> SettlementStatus: ...


class SimulatedPriceOracle:
    """Noisy quotes around a fixed base price.

    Each read independently draws a move: 30% of the time a pump of 0..+20%,
    otherwise a drift of -10..+5%. Quotes do not compound.
    """

    def __init__(self, base_price: float = 0.0001, *, seed: int | None = None) -> None:
        self._base_price = float(base_price)
        self._rng = random.Random(seed)

    async def current_price(self, asset_id: str) -> float | None:
        if self._rng.random() < 0.3:
            change = self._rng.random() * 0.20
        else:
            change = self._rng.random() * 0.15 - 0.10
        return self._base_price * (1.0 + change)


class DexScreenerPriceOracle:
    """Best-liquidity pair price on the configured chain; None when unquoted."""

    def __init__(self, policy: RiskPolicy, http: ResilientHttpClient | None = None) -> None:
        self._policy = policy
        self._http = http or ResilientHttpClient(
            timeout_seconds=policy.http_timeout_seconds,
            source_limits={"dex_price": 8},
            min_intervals={"dex_price": policy.source_min_intervals.get("dexscreener", 0.0)},
        )

    async def close(self) -> None:
        await self._http.close()

    async def current_price(self, asset_id: str) -> float | None:
        result = await self._http.get_json(
            f"{self._policy.dexscreener_api}/{asset_id}",
            source="dex_price",
            max_attempts=1,
        )
        if not result.ok or not isinstance(result.data, dict):
            logger.debug("PRICE_UNAVAILABLE token=%s err=%s", short_id(asset_id), result.error)
            return None
        best_liq = -1.0
        best_price = 0.0
        for pair in result.data.get("pairs", []) or []:
            if not isinstance(pair, dict):
                continue
            if str(pair.get("chainId", "")).lower() != self._policy.chain_id.lower():
                continue
            try:
                liq = float((pair.get("liquidity") or {}).get("usd") or 0)
                price = float(pair.get("priceUsd") or 0)
            except (TypeError, ValueError):
                continue
            if price <= 0:
                continue
            if liq > best_liq:
                best_liq = liq
                best_price = price
        return best_price if best_price > 0 else None


class PaperTradeBackend:
    """In-memory fills priced off an oracle. Holdings and wallet are tracked per asset."""

    def __init__(
        self,
        oracle: PriceOracle,
        *,
        starting_balance: float = 1.0,
        latency_seconds: tuple[float, float] | None = (0.1, 0.3),
        seed: int | None = None,
    ) -> None:
        self._oracle = oracle
        self._balance = float(starting_balance)
        self._latency = latency_seconds
        self._rng = random.Random(seed)
        self._holdings: dict[str, float] = {}
        self._cost: dict[str, float] = {}

    async def wallet_balance(self) -> float:
        return self._balance

    async def _network_delay(self) -> None:
        if self._latency:
            low, high = self._latency
            await asyncio.sleep(self._rng.uniform(low, high))

    async def acquire(self, asset_id: str, capital_amount: float) -> TradeResult:
        await self._network_delay()
        if capital_amount > self._balance:
            return TradeResult(error=f"insufficient paper balance {self._balance:.4f}")
        price = await self._oracle.current_price(asset_id)
        quantity = capital_amount / price if price else capital_amount
        self._balance -= capital_amount
        self._holdings[asset_id] = self._holdings.get(asset_id, 0.0) + quantity
        self._cost[asset_id] = self._cost.get(asset_id, 0.0) + capital_amount
        ref = PAPER_REF_PREFIX + uuid.uuid4().hex[:13]
        logger.info("PAPER_BUY token=%s capital=%.4f qty=%.4f ref=%s", short_id(asset_id), capital_amount, quantity, ref)
        return TradeResult(ref=ref, quantity=quantity)

    async def dispose(
        self,
        asset_id: str,
        quantity: float | None = None,
        percent_of_holdings: float | None = None,
    ) -> TradeResult:
        await self._network_delay()
        held = self._holdings.get(asset_id, 0.0)
        if held <= 0:
            return TradeResult(error="nothing held")
        if quantity is None:
            pct = 100.0 if percent_of_holdings is None else max(0.0, min(100.0, float(percent_of_holdings)))
            quantity = held * pct / 100.0
        quantity = min(float(quantity), held)
        share = quantity / held
        cost = self._cost.get(asset_id, 0.0) * share
        price = await self._oracle.current_price(asset_id)
        if price:
            proceeds = quantity * price
        else:
            proceeds = cost
        self._holdings[asset_id] = held - quantity
        self._cost[asset_id] = self._cost.get(asset_id, 0.0) - cost
        if self._holdings[asset_id] <= 0:
            self._holdings.pop(asset_id, None)
            self._cost.pop(asset_id, None)
        self._balance += proceeds
        ref = PAPER_REF_PREFIX + uuid.uuid4().hex[:13]
        logger.info("PAPER_SELL token=%s qty=%.4f proceeds=%.6f ref=%s", short_id(asset_id), quantity, proceeds, ref)
        return TradeResult(ref=ref, proceeds=proceeds, quantity=quantity)

    async def query_held_quantity(self, asset_id: str) -> float:
        return self._holdings.get(asset_id, 0.0)


class PaperLedgerStatusSource:
    async def settlement_status(self, ref: str) -> SettlementStatus:
        if str(ref or "").startswith(PAPER_REF_PREFIX):
            return SettlementStatus.CONFIRMED
        return SettlementStatus.PENDING


def load_trade_backend(target: str, settings: SniperSettings) -> Any:
    """Instantiate a live backend from `package.module:factory`.

    The factory receives the settings tree and returns an object implementing
    `TradeBackend` (and optionally `wallet_balance()`).
    """
    module_name, sep, attr = str(target or "").partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"TRADE_BACKEND must look like 'module:factory', got {target!r}")
    module = importlib.import_module(module_name)
    factory: Callable[[SniperSettings], Any] = getattr(module, attr)
    backend = factory(settings)
    for name in ("acquire", "dispose", "query_held_quantity"):
        if not callable(getattr(backend, name, None)):
            raise TypeError(f"trade backend {target} has no {name}()")
    logger.info("TRADE_BACKEND loaded=%s", target)
    return backend
