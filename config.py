"""Application configuration.

Environment (plus `.env` and an optional `SNIPER_ENV_FILE` override) is read
once by `load_settings()`, which returns an immutable `SniperSettings` tree.
Components receive the settings they need through their constructors.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

CONFIG_VERSION = "2026-10.v1"

PUMP_FUN_PROGRAM_ID = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"

DEFAULT_RPC_ENDPOINTS = (
    "https://api.mainnet-beta.solana.com",
    "https://rpc.ankr.com/solana",
    "https://solana-api.projectserum.com",
)


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_SNIPER_ENV_FILE = os.getenv("SNIPER_ENV_FILE", "").strip()
if _SNIPER_ENV_FILE:
    _env_path = Path(_SNIPER_ENV_FILE).expanduser()
    if not _env_path.is_absolute():
        _env_path = (Path.cwd() / _env_path).resolve()
    if not _env_path.exists():
        raise FileNotFoundError(f"SNIPER_ENV_FILE does not exist: {_env_path}")
    if not _env_path.is_file():
        raise IsADirectoryError(f"SNIPER_ENV_FILE is not a file: {_env_path}")
    try:
        _load_dotenv_safe(str(_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load SNIPER_ENV_FILE '{_env_path}': {exc}") from exc


class _Env:
    """Typed accessors over an environment mapping."""

    _TRUE = ("1", "true", "yes", "y", "on")

    def __init__(self, environ: Mapping[str, str]) -> None:
        self._environ = environ

    def text(self, name: str, default: str = "") -> str:
        return str(self._environ.get(name, default) or default).strip()

    def flag(self, name: str, default: bool = False) -> bool:
        raw = self._environ.get(name)
        if raw is None or not str(raw).strip():
            return default
        return str(raw).strip().lower() in self._TRUE

    def number(self, name: str, default: float) -> float:
        raw = self._environ.get(name)
        if raw is None or not str(raw).strip():
            return float(default)
        try:
            return float(str(raw).strip())
        except ValueError as exc:
            raise ValueError(f"{name} must be a number, got {raw!r}") from exc

    def integer(self, name: str, default: int) -> int:
        return int(self.number(name, default))

    def optional_number(self, name: str, default: float | None) -> float | None:
        raw = self._environ.get(name)
        if raw is None:
            return default
        text = str(raw).strip().lower()
        if text in ("", "none", "off", "disabled"):
            return None
        value = self.number(name, 0.0)
        return value if value > 0 else None

    def items(self, name: str, default: tuple[str, ...]) -> tuple[str, ...]:
        raw = self._environ.get(name)
        if raw is None or not str(raw).strip():
            return tuple(default)
        return tuple(x.strip() for x in str(raw).split(",") if x.strip())


def _parse_source_float_map(raw: str) -> dict[str, float]:
    out: dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except ValueError:
            continue
    return out


@dataclass(frozen=True)
class EndpointPolicy:
    rpc_endpoints: tuple[str, ...] = DEFAULT_RPC_ENDPOINTS
    rpc_max_attempts: int = 3
    rpc_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class RiskPolicy:
    min_safety_score: float = 0.0
    min_rugcheck_score: float = 0.0
    min_liquidity_usd: float = 5000.0
    liquidity_full_score_usd: float = 10000.0
    require_socials: bool = False
    skip_security_check: bool = True
    expected_token_program: str = TOKEN_2022_PROGRAM_ID
    bonding_curve_program: str = PUMP_FUN_PROGRAM_ID
    verdict_cache_ttl_seconds: float = 300.0
    source_cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 5000
    source_min_intervals: Mapping[str, float] = field(
        default_factory=lambda: {"rugcheck": 0.2, "dexscreener": 0.2, "goplus": 0.3}
    )
    http_timeout_seconds: float = 5.0
    http_retry_attempts: int = 2
    rugcheck_api: str = "https://api.rugcheck.xyz/v1/tokens"
    dexscreener_api: str = "https://api.dexscreener.com/latest/dex/tokens"
    goplus_api: str = "https://api.gopluslabs.io/api/v1/token_security/solana"
    chain_id: str = "solana"


@dataclass(frozen=True)
class ExitPolicy:
    take_profit_percent: float | None = 10.0
    stop_loss_percent: float | None = None
    max_hold_seconds: float = 10.0
    price_poll_seconds: float = 1.0


@dataclass(frozen=True)
class ExecutionPolicy:
    capital_per_position: float = 0.01
    max_concurrent_positions: int = 1
    confirm_poll_seconds: float = 1.0
    confirm_max_attempts: int = 30
    slippage_bps: int = 1000
    priority_fee: float = 0.001
    min_wallet_balance: float = 0.1
    dry_run: bool = False
    trade_backend: str = ""
    wallet_address: str = ""


@dataclass(frozen=True)
class PathSettings:
    state_file: str = os.path.join("data", "sniper_state.json")
    trades_file: str = os.path.join("data", "sniper_trades.jsonl")
    candidates_log_file: str = os.path.join("logs", "candidates.jsonl")
    trade_decisions_log_file: str = os.path.join("logs", "trade_decisions.jsonl")
    log_dir: str = "logs"
    app_log_file: str = os.path.join("logs", "app.log")


@dataclass(frozen=True)
class SniperSettings:
    version: str = CONFIG_VERSION
    run_tag: str = ""
    log_level: str = "INFO"
    state_flush_seconds: float = 5.0
    endpoints: EndpointPolicy = field(default_factory=EndpointPolicy)
    risk: RiskPolicy = field(default_factory=RiskPolicy)
    exits: ExitPolicy = field(default_factory=ExitPolicy)
    execution: ExecutionPolicy = field(default_factory=ExecutionPolicy)
    paths: PathSettings = field(default_factory=PathSettings)


def load_settings(environ: Mapping[str, str] | None = None) -> SniperSettings:
    env = _Env(os.environ if environ is None else environ)

    endpoints = env.items("RPC_ENDPOINTS", ())
    primary = env.text("HELIUS_RPC_URL") or env.text("SOLANA_RPC")
    if not endpoints:
        endpoints = DEFAULT_RPC_ENDPOINTS
    if primary and primary not in endpoints:
        endpoints = (primary,) + tuple(endpoints)

    risk_defaults = RiskPolicy()
    intervals = dict(risk_defaults.source_min_intervals)
    intervals.update(_parse_source_float_map(env.text("RISK_SOURCE_MIN_INTERVALS")))

    log_dir = env.text("LOG_DIR", "logs")
    data_dir = env.text("DATA_DIR", "data")

    return SniperSettings(
        run_tag=env.text("RUN_TAG", env.text("BOT_INSTANCE_ID")),
        log_level=env.text("LOG_LEVEL", "INFO"),
        state_flush_seconds=max(1.0, env.number("STATE_FLUSH_SECONDS", 5.0)),
        endpoints=EndpointPolicy(
            rpc_endpoints=tuple(endpoints),
            rpc_max_attempts=max(1, env.integer("RPC_MAX_ATTEMPTS", 3)),
            rpc_timeout_seconds=max(1.0, env.number("RPC_TIMEOUT_SECONDS", 10.0)),
        ),
        risk=RiskPolicy(
            min_safety_score=max(0.0, min(100.0, env.number("MIN_SAFETY_SCORE", 0.0))),
            min_rugcheck_score=env.number("MIN_RUGCHECK_SCORE", 0.0),
            min_liquidity_usd=max(0.0, env.number("MIN_LIQUIDITY_USD", 5000.0)),
            liquidity_full_score_usd=max(1.0, env.number("LIQUIDITY_FULL_SCORE_USD", 10000.0)),
            require_socials=env.flag("REQUIRE_SOCIALS", False),
            skip_security_check=env.flag("SKIP_GOPLUS", True),
            expected_token_program=env.text("EXPECTED_TOKEN_PROGRAM", TOKEN_2022_PROGRAM_ID),
            bonding_curve_program=env.text("PUMP_PROGRAM_ID", PUMP_FUN_PROGRAM_ID),
            verdict_cache_ttl_seconds=max(1.0, env.number("SAFETY_CACHE_TTL_SECONDS", 300.0)),
            source_cache_ttl_seconds=max(1.0, env.number("SOURCE_CACHE_TTL_SECONDS", 300.0)),
            cache_max_entries=max(10, env.integer("SAFETY_CACHE_MAX_ENTRIES", 5000)),
            source_min_intervals=intervals,
            http_timeout_seconds=max(1.0, env.number("RISK_HTTP_TIMEOUT_SECONDS", 5.0)),
            http_retry_attempts=max(1, env.integer("RISK_HTTP_RETRY_ATTEMPTS", 2)),
            rugcheck_api=env.text("RUGCHECK_API", risk_defaults.rugcheck_api),
            dexscreener_api=env.text("DEXSCREENER_TOKENS_API", risk_defaults.dexscreener_api),
            goplus_api=env.text("GOPLUS_SOLANA_API", risk_defaults.goplus_api),
            chain_id=env.text("CHAIN_ID", "solana"),
        ),
        exits=ExitPolicy(
            take_profit_percent=env.optional_number("TAKE_PROFIT_PCT", 10.0),
            stop_loss_percent=env.optional_number("STOP_LOSS_PCT", None),
            max_hold_seconds=max(0.1, env.number("MAX_HOLD_TIME_MS", 10000.0) / 1000.0),
            price_poll_seconds=max(0.05, env.number("PRICE_POLL_MS", 1000.0) / 1000.0),
        ),
        execution=ExecutionPolicy(
            capital_per_position=max(0.0, env.number("POSITION_SIZE_SOL", 0.01)),
            max_concurrent_positions=max(1, env.integer("MAX_CONCURRENT_SNIPES", 1)),
            confirm_poll_seconds=max(0.05, env.number("CONFIRM_POLL_MS", 1000.0) / 1000.0),
            confirm_max_attempts=max(1, env.integer("CONFIRM_MAX_ATTEMPTS", 30)),
            slippage_bps=max(0, env.integer("SLIPPAGE_BPS", 1000)),
            priority_fee=max(0.0, env.number("PRIORITY_FEE_SOL", 0.001)),
            min_wallet_balance=max(0.0, env.number("MIN_BALANCE_SOL", 0.1)),
            dry_run=env.flag("DRY_RUN", False),
            trade_backend=env.text("TRADE_BACKEND"),
            wallet_address=env.text("WALLET_ADDRESS"),
        ),
        paths=PathSettings(
            state_file=env.text("STATE_FILE", os.path.join(data_dir, "sniper_state.json")),
            trades_file=env.text("TRADES_FILE", os.path.join(data_dir, "sniper_trades.jsonl")),
            candidates_log_file=env.text("CANDIDATE_DECISIONS_LOG_FILE", os.path.join(log_dir, "candidates.jsonl")),
            trade_decisions_log_file=env.text(
                "TRADE_DECISIONS_LOG_FILE", os.path.join(log_dir, "trade_decisions.jsonl")
            ),
            log_dir=log_dir,
            app_log_file=env.text("APP_LOG_FILE", os.path.join(log_dir, "app.log")),
        ),
    )
