"""Composite safety screening for freshly launched assets.

Checks run in a fixed order and only a hard rejection short-circuits. Source
outages and "not indexed yet" answers are soft: they are recorded as
inconclusive and contribute nothing to the score.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from config import RiskPolicy
from monitor.risk_sources import DexScreenerSource, GoPlusSource, OnChainSource, RugCheckSource
from trading.models import CheckOutcome, RiskCheckResult, SafetyVerdict, utc_now
from utils.addressing import normalize_asset_id, short_id
from utils.errors import RpcError, SourceError
from utils.ttl_cache import TtlCache

logger = logging.getLogger(__name__)

CHECK_RISK_REPORT = "risk_report"
CHECK_MARKET_PRESENCE = "market_presence"
CHECK_SECURITY = "security"
CHECK_PROGRAM_IDENTITY = "program_identity"

RISK_REPORT_WEIGHT = 0.5
LIQUIDITY_WEIGHT = 0.4
SECURITY_BONUS = 5.0
PROGRAM_IDENTITY_BONUS = 5.0

_SECURITY_FLAGS = {
    "is_honeypot": "honeypot",
    "is_blacklisted": "blacklisted",
    "owner_change_balance": "owner can change balances",
    "cannot_sell_all": "cannot sell all",
}


class _HardReject(Exception):
    def __init__(self, result: RiskCheckResult, key: str, reason: str) -> None:
        super().__init__(reason)
        self.result = result
        self.key = key
        self.reason = reason


def _flag_set(value: Any) -> bool:
    if isinstance(value, dict):
        value = value.get("status")
    if isinstance(value, bool):
        return value
    return str(value if value is not None else "").strip() == "1"


def _has_socials(pair: dict[str, Any]) -> bool:
    info = pair.get("info") or {}
    if not isinstance(info, dict):
        return False
    return bool(info.get("socials")) or bool(info.get("websites"))


def _liquidity_usd(pair: dict[str, Any]) -> float:
    liquidity = pair.get("liquidity") or {}
    if not isinstance(liquidity, dict):
        return 0.0
    return float(liquidity.get("usd") or 0.0)


def compute_score(checks: dict[str, RiskCheckResult], policy: RiskPolicy) -> int:
    """Weighted 0..100 score. Missing, skipped and inconclusive checks add zero."""
    score = 0.0
    report = checks.get(CHECK_RISK_REPORT)
    if report and report.passed and report.numeric_score is not None:
        score += max(0.0, min(100.0, float(report.numeric_score))) * RISK_REPORT_WEIGHT
    market = checks.get(CHECK_MARKET_PRESENCE)
    if market and market.passed and market.numeric_score is not None:
        depth = float(market.numeric_score) / max(1.0, policy.liquidity_full_score_usd) * 100.0
        score += max(0.0, min(100.0, depth)) * LIQUIDITY_WEIGHT
    security = checks.get(CHECK_SECURITY)
    if security and security.passed and not security.skipped:
        score += SECURITY_BONUS
    identity = checks.get(CHECK_PROGRAM_IDENTITY)
    if identity and identity.passed:
        score += PROGRAM_IDENTITY_BONUS
    return int(max(0, min(100, round(score))))


class RiskScreen:
    def __init__(
        self,
        policy: RiskPolicy,
        *,
        rugcheck: RugCheckSource,
        dexscreener: DexScreenerSource,
        goplus: GoPlusSource | None,
        onchain: OnChainSource,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy
        self._rugcheck = rugcheck
        self._dexscreener = dexscreener
        self._goplus = goplus
        self._onchain = onchain
        self._verdicts: TtlCache[SafetyVerdict] = TtlCache(
            policy.verdict_cache_ttl_seconds,
            policy.cache_max_entries,
            clock=clock,
        )
        self._evaluated = 0
        self._cache_hits = 0
        self._accepted = 0
        self._rejected = 0
        self._inconclusive = 0

    def runtime_stats(self, reset: bool = False) -> dict[str, int]:
        out = {
            "evaluated": int(self._evaluated),
            "cache_hits": int(self._cache_hits),
            "accepted": int(self._accepted),
            "rejected": int(self._rejected),
            "inconclusive_checks": int(self._inconclusive),
            "cached_verdicts": len(self._verdicts),
        }
        if reset:
            self._evaluated = 0
            self._cache_hits = 0
            self._accepted = 0
            self._rejected = 0
            self._inconclusive = 0
        return out

    async def evaluate(self, asset_id: str) -> SafetyVerdict:
        asset = normalize_asset_id(asset_id)
        cached = self._verdicts.get(asset)
        if cached is not None:
            self._cache_hits += 1
            return cached

        self._evaluated += 1
        checks: dict[str, RiskCheckResult] = {}
        try:
            checks[CHECK_RISK_REPORT] = await self._check_risk_report(asset)
            checks[CHECK_MARKET_PRESENCE] = await self._check_market_presence(asset)
            checks[CHECK_SECURITY] = await self._check_security(asset)
            checks[CHECK_PROGRAM_IDENTITY] = await self._check_program_identity(asset)
        except _HardReject as reject:
            checks[reject.result.check_name] = reject.result
            return self._finish(asset, checks, accepted=False, score=0, reason=reject.reason, key=reject.key)

        self._inconclusive += sum(1 for row in checks.values() if row.outcome is CheckOutcome.INCONCLUSIVE)
        score = compute_score(checks, self._policy)
        if score + 1e-9 < float(self._policy.min_safety_score):
            return self._finish(asset, checks, accepted=False, score=score, reason=f"Low score: {score}", key="low_score")
        return self._finish(asset, checks, accepted=True, score=score, reason=None, key="accepted")

    def _finish(
        self,
        asset: str,
        checks: dict[str, RiskCheckResult],
        *,
        accepted: bool,
        score: int,
        reason: str | None,
        key: str,
    ) -> SafetyVerdict:
        verdict = SafetyVerdict(
            asset_id=asset,
            accepted=accepted,
            composite_score=int(max(0, min(100, score))),
            checks=dict(checks),
            rejection_reason=reason,
            evaluated_at=utc_now(),
            rejection_key=key,
        )
        self._verdicts.put(asset, verdict)
        if accepted:
            self._accepted += 1
            logger.info("SCREEN_ACCEPT token=%s score=%s", short_id(asset), verdict.composite_score)
        else:
            self._rejected += 1
            logger.info(
                "SCREEN_REJECT token=%s score=%s reason=%s",
                short_id(asset),
                verdict.composite_score,
                reason,
            )
        return verdict

    async def _check_risk_report(self, asset: str) -> RiskCheckResult:
        try:
            report = await self._rugcheck.report(asset)
            risks = report.get("risks") or []
            danger = next(
                (r for r in risks if isinstance(r, dict) and str(r.get("level", "")).lower() == "danger"),
                None,
            )
            raw_score = report.get("score")
            score = float(raw_score) if raw_score is not None else None
        except SourceError as exc:
            logger.warning("SCREEN_SOURCE_DOWN source=rugcheck token=%s kind=%s", short_id(asset), exc.kind.value)
            return RiskCheckResult(CHECK_RISK_REPORT, CheckOutcome.INCONCLUSIVE, f"unavailable: {exc.detail}")
        except (TypeError, ValueError, AttributeError) as exc:
            return RiskCheckResult(CHECK_RISK_REPORT, CheckOutcome.INCONCLUSIVE, f"malformed report: {exc}")

        details = {"score": score, "risk_names": [str(r.get("name", "")) for r in risks if isinstance(r, dict)]}
        if danger is None and report.get("rugged"):
            danger = {"name": "rugged"}
        if danger is not None:
            name = str(danger.get("name") or "unnamed")
            result = RiskCheckResult(CHECK_RISK_REPORT, CheckOutcome.FAIL, f"Danger: {name}", score, details)
            raise _HardReject(result, "risk_report_danger", f"RugCheck: Danger: {name}")
        if score is not None and score < float(self._policy.min_rugcheck_score):
            # Low score alone is soft; it just earns nothing toward the composite.
            return RiskCheckResult(CHECK_RISK_REPORT, CheckOutcome.INCONCLUSIVE, f"Low score: {score:g}", score, details)
        return RiskCheckResult(CHECK_RISK_REPORT, CheckOutcome.PASS, "ok", score, details)

    async def _probe_graduated(self, asset: str) -> tuple[bool, dict[str, Any]]:
        try:
            on_curve, curve_address = await self._onchain.bonding_curve_active(asset)
        except (RpcError, ValueError) as exc:
            logger.warning("SCREEN_CURVE_PROBE_FAIL token=%s err=%s assume=graduated", short_id(asset), exc)
            return True, {"curve_probe_error": str(exc)}
        return (not on_curve), {"bonding_curve": curve_address}

    async def _check_market_presence(self, asset: str) -> RiskCheckResult:
        graduated, details = await self._probe_graduated(asset)
        details["phase"] = "graduated" if graduated else "pre_graduation"
        if not graduated and not self._policy.require_socials:
            # No pool yet and socials are not required.
            return RiskCheckResult(CHECK_MARKET_PRESENCE, CheckOutcome.PASS, "pre-graduation", None, details)
        try:
            pairs = await self._dexscreener.pairs(asset)
        except SourceError as exc:
            logger.warning("SCREEN_SOURCE_DOWN source=dexscreener token=%s kind=%s", short_id(asset), exc.kind.value)
            return RiskCheckResult(
                CHECK_MARKET_PRESENCE, CheckOutcome.INCONCLUSIVE, f"unavailable: {exc.detail}", None, details
            )
        except (TypeError, ValueError, AttributeError) as exc:
            return RiskCheckResult(
                CHECK_MARKET_PRESENCE, CheckOutcome.INCONCLUSIVE, f"malformed market data: {exc}", None, details
            )

        pair = pairs[0] if pairs else None
        if not graduated:
            if pair is None:
                return RiskCheckResult(
                    CHECK_MARKET_PRESENCE, CheckOutcome.INCONCLUSIVE, "no market data yet", None, details
                )
            if not _has_socials(pair):
                result = RiskCheckResult(CHECK_MARKET_PRESENCE, CheckOutcome.FAIL, "No socials", None, details)
                raise _HardReject(result, "no_social_presence", "DexScreener: No socials")
            return RiskCheckResult(CHECK_MARKET_PRESENCE, CheckOutcome.PASS, "socials present", None, details)

        if pair is None:
            result = RiskCheckResult(CHECK_MARKET_PRESENCE, CheckOutcome.FAIL, "No trading pairs", None, details)
            raise _HardReject(result, "no_trading_pairs", "DexScreener: No trading pairs")
        try:
            liquidity = _liquidity_usd(pair)
        except (TypeError, ValueError, AttributeError) as exc:
            return RiskCheckResult(
                CHECK_MARKET_PRESENCE, CheckOutcome.INCONCLUSIVE, f"malformed pair: {exc}", None, details
            )
        details["liquidity_usd"] = liquidity
        details["pair_address"] = str(pair.get("pairAddress") or "")
        if liquidity + 1e-9 < float(self._policy.min_liquidity_usd):
            reason = f"Low liquidity: ${liquidity:,.0f}"
            result = RiskCheckResult(CHECK_MARKET_PRESENCE, CheckOutcome.FAIL, reason, liquidity, details)
            raise _HardReject(result, "low_liquidity", f"DexScreener: {reason}")
        if self._policy.require_socials and not _has_socials(pair):
            result = RiskCheckResult(CHECK_MARKET_PRESENCE, CheckOutcome.FAIL, "No socials", liquidity, details)
            raise _HardReject(result, "no_social_presence", "DexScreener: No socials")
        return RiskCheckResult(CHECK_MARKET_PRESENCE, CheckOutcome.PASS, "ok", liquidity, details)

    async def _check_security(self, asset: str) -> RiskCheckResult:
        if self._policy.skip_security_check or self._goplus is None:
            return RiskCheckResult(CHECK_SECURITY, CheckOutcome.INCONCLUSIVE, "skipped", skipped=True)
        try:
            entry = await self._goplus.security(asset)
        except SourceError as exc:
            logger.warning("SCREEN_SOURCE_DOWN source=goplus token=%s kind=%s", short_id(asset), exc.kind.value)
            return RiskCheckResult(CHECK_SECURITY, CheckOutcome.INCONCLUSIVE, f"unavailable: {exc.detail}")
        if entry is None:
            return RiskCheckResult(CHECK_SECURITY, CheckOutcome.INCONCLUSIVE, "not indexed")
        details = {field: entry.get(field) for field in _SECURITY_FLAGS if field in entry}
        for field_name, label in _SECURITY_FLAGS.items():
            if _flag_set(entry.get(field_name)):
                result = RiskCheckResult(CHECK_SECURITY, CheckOutcome.FAIL, label, None, details)
                raise _HardReject(result, "security_flag", f"GoPlus: {label}")
        return RiskCheckResult(CHECK_SECURITY, CheckOutcome.PASS, "ok", None, details)

    async def _check_program_identity(self, asset: str) -> RiskCheckResult:
        expected = self._policy.expected_token_program
        try:
            owner = await self._onchain.token_program_owner(asset)
        except (RpcError, ValueError) as exc:
            result = RiskCheckResult(CHECK_PROGRAM_IDENTITY, CheckOutcome.FAIL, f"read failed: {exc}")
            raise _HardReject(result, "account_missing", f"OnChain: account read failed: {exc}")
        if owner is None:
            result = RiskCheckResult(CHECK_PROGRAM_IDENTITY, CheckOutcome.FAIL, "Account not found")
            raise _HardReject(result, "account_missing", "OnChain: Account not found")
        details = {"owner": owner, "expected": expected}
        if owner != expected:
            result = RiskCheckResult(CHECK_PROGRAM_IDENTITY, CheckOutcome.FAIL, "Wrong token program", None, details)
            raise _HardReject(result, "program_mismatch", f"OnChain: Wrong token program {owner}")
        return RiskCheckResult(CHECK_PROGRAM_IDENTITY, CheckOutcome.PASS, "ok", None, details)
