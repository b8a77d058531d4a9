"""Entry point for the launch sniper."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from typing import Awaitable, Callable

from config import SniperSettings, load_settings
from chain.endpoint_pool import RateLimitedEndpointPool
from chain.solana_rpc import RpcLedgerStatusSource, SolanaRpcClient
from monitor.candidate_feed import open_feed
from monitor.risk_screen import RiskScreen
from monitor.risk_sources import DexScreenerSource, GoPlusSource, OnChainSource, RugCheckSource, build_risk_http_client
from trading.backends import (
    DexScreenerPriceOracle,
    PaperLedgerStatusSource,
    PaperTradeBackend,
    SimulatedPriceOracle,
    load_trade_backend,
)
from trading.journal import DecisionLog, StateSnapshotStore, TradeJournal
from trading.position_manager import PositionManager
from trading.sniper import Sniper
from utils.http_client import ResilientHttpClient

HEARTBEAT_SECONDS = 60.0


def configure_logging(settings: SniperSettings) -> None:
    os.makedirs(settings.paths.log_dir, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] [%(run_tag)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(settings.paths.app_log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    run_tag = settings.run_tag or "-"
    base_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = base_factory(*args, **kwargs)
        record.run_tag = run_tag
        return record

    logging.setLogRecordFactory(record_factory)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def _merge_source_stats(*parts: dict[str, dict[str, int | float]]) -> dict[str, dict[str, int | float]]:
    merged: dict[str, dict[str, int | float]] = {}
    for block in parts:
        for source, row in (block or {}).items():
            cur = merged.setdefault(source, {"ok": 0, "fail": 0, "total": 0, "rate_limited": 0, "latency_avg_ms": 0.0})
            prev_total = int(cur["total"])
            row_total = int(row.get("total", 0) or 0)
            cur["ok"] = int(cur["ok"]) + int(row.get("ok", 0))
            cur["fail"] = int(cur["fail"]) + int(row.get("fail", 0))
            cur["rate_limited"] = int(cur["rate_limited"]) + int(row.get("rate_limited", 0))
            cur["total"] = prev_total + row_total
            if cur["total"]:
                weighted = float(cur["latency_avg_ms"]) * prev_total + float(row.get("latency_avg_ms", 0.0)) * row_total
                cur["latency_avg_ms"] = round(weighted / int(cur["total"]), 2)
    for row in merged.values():
        total = int(row["total"])
        row["error_percent"] = round((float(row["fail"]) / total * 100.0) if total > 0 else 0.0, 2)
    return merged


def _format_source_stats_brief(source_stats: dict[str, dict[str, int | float]]) -> str:
    if not source_stats:
        return "none"
    parts: list[str] = []
    for source in sorted(source_stats.keys()):
        row = source_stats.get(source) or {}
        parts.append(
            (
                f"{source}:ok={int(row.get('ok', 0))}"
                f"/fail={int(row.get('fail', 0))}"
                f"/429={int(row.get('rate_limited', 0))}"
                f"/err={float(row.get('error_percent', 0.0)):.1f}%"
                f"/avg={float(row.get('latency_avg_ms', 0.0)):.0f}ms"
            )
        )
    return "; ".join(parts)


def resolve_wallet_balance(
    backend: object, rpc: SolanaRpcClient, wallet_address: str
) -> Callable[[], Awaitable[float]] | None:
    """Startup balance read: the backend's own `wallet_balance()`, else getBalance for WALLET_ADDRESS."""
    own = getattr(backend, "wallet_balance", None)
    if callable(own):
        return own
    if not wallet_address:
        return None

    async def rpc_balance() -> float:
        return await rpc.get_balance_sol(wallet_address)

    return rpc_balance


def build_sniper(settings: SniperSettings, *, seed: int | None = None) -> tuple[Sniper, list[ResilientHttpClient]]:
    pool = RateLimitedEndpointPool(settings.endpoints.rpc_endpoints)
    rpc = SolanaRpcClient(
        pool,
        timeout_seconds=settings.endpoints.rpc_timeout_seconds,
        max_attempts=settings.endpoints.rpc_max_attempts,
    )
    risk_http = build_risk_http_client(settings.risk)
    goplus = None if settings.risk.skip_security_check else GoPlusSource(risk_http, settings.risk)
    screen = RiskScreen(
        settings.risk,
        rugcheck=RugCheckSource(risk_http, settings.risk),
        dexscreener=DexScreenerSource(risk_http, settings.risk),
        goplus=goplus,
        onchain=OnChainSource(rpc, settings.risk),
    )

    closers = [rpc.close, risk_http.close]
    if settings.execution.dry_run:
        oracle = SimulatedPriceOracle(seed=seed)
        backend = PaperTradeBackend(oracle, seed=seed)
        ledger = PaperLedgerStatusSource()
    else:
        if not settings.execution.trade_backend:
            raise RuntimeError("TRADE_BACKEND is not set; run with --dry-run or point it at module:factory")
        backend = load_trade_backend(settings.execution.trade_backend, settings)
        dex_oracle = DexScreenerPriceOracle(settings.risk)
        oracle = dex_oracle
        ledger = RpcLedgerStatusSource(rpc)
        closers.append(dex_oracle.close)
        if callable(getattr(backend, "close", None)):
            closers.append(backend.close)

    decisions = DecisionLog(
        settings.paths.candidates_log_file,
        settings.paths.trade_decisions_log_file,
        run_tag=settings.run_tag,
    )
    manager = PositionManager(
        settings.exits,
        settings.execution,
        backend=backend,
        oracle=oracle,
        ledger=ledger,
        journal=TradeJournal(settings.paths.trades_file),
        decisions=decisions,
    )
    wallet_balance = resolve_wallet_balance(backend, rpc, settings.execution.wallet_address)
    sniper = Sniper(
        settings,
        screen=screen,
        manager=manager,
        state_store=StateSnapshotStore(settings.paths.state_file),
        decisions=decisions,
        wallet_balance=wallet_balance,
        closers=closers,
    )
    return sniper, [risk_http]


async def heartbeat_loop(sniper: Sniper, clients: list[ResilientHttpClient]) -> None:
    while True:
        await asyncio.sleep(HEARTBEAT_SECONDS)
        source_stats = _merge_source_stats(*(c.snapshot_stats(reset=True) for c in clients))
        screen_stats = sniper.screen.runtime_stats(reset=True)
        logger.info(
            "HEARTBEAT %s | screen=%s | sources: %s",
            sniper.report(),
            ",".join(f"{k}:{v}" for k, v in screen_stats.items()),
            _format_source_stats_brief(source_stats),
        )


async def run(args: argparse.Namespace, settings: SniperSettings) -> int:
    sniper, clients = build_sniper(settings, seed=args.seed)
    await sniper.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt.
            pass

    feed_task = asyncio.create_task(sniper.run(open_feed(args.feed, follow=args.follow)), name="feed")
    stop_task = asyncio.create_task(stop_event.wait(), name="stop")
    heartbeat = asyncio.create_task(heartbeat_loop(sniper, clients), name="heartbeat")
    waiters = {feed_task, stop_task}
    if args.run_minutes and args.run_minutes > 0:
        waiters.add(asyncio.create_task(asyncio.sleep(args.run_minutes * 60.0), name="auto-stop"))

    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        if feed_task in done and feed_task.exception() is not None:
            logger.error("FEED_ERROR err=%s", feed_task.exception())
        elif feed_task not in done:
            logger.info("SNIPER_STOPPING reason=%s", "signal" if stop_task in done else "run_minutes")
    finally:
        for task in list(waiters) + [heartbeat]:
            if not task.done():
                task.cancel()
        await asyncio.gather(*waiters, heartbeat, return_exceptions=True)
        await sniper.stop()

    print("\n" + "=" * 60)
    print("SESSION REPORT")
    print("=" * 60)
    print(sniper.report())
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Screen new launches and run short-lived positions")
    parser.add_argument("--feed", default="-", help="JSONL candidate file, '-' for stdin (default)")
    parser.add_argument("--follow", action="store_true", help="Keep tailing the feed file for new rows")
    parser.add_argument("--dry-run", action="store_true", help="Paper trade regardless of DRY_RUN")
    parser.add_argument("--run-minutes", type=float, default=0.0, help="Stop after N minutes (0 = until feed ends)")
    parser.add_argument("--seed", type=int, default=None, help="Seed for paper-mode price simulation")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    if args.dry_run and not settings.execution.dry_run:
        settings = replace(settings, execution=replace(settings.execution, dry_run=True))
    configure_logging(settings)
    logger.info("CONFIG version=%s run_tag=%s dry_run=%s", settings.version, settings.run_tag or "-", settings.execution.dry_run)
    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
