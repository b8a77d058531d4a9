from __future__ import annotations

import asyncio
import unittest
from dataclasses import replace

from config import TOKEN_2022_PROGRAM_ID, RiskPolicy
from monitor.risk_screen import (
    CHECK_MARKET_PRESENCE,
    CHECK_PROGRAM_IDENTITY,
    CHECK_RISK_REPORT,
    CHECK_SECURITY,
    RiskScreen,
)
from monitor.risk_sources import DexScreenerSource
from trading.models import CheckOutcome
from utils.errors import ErrorKind, RpcError, SourceError
from utils.http_client import HttpResult

MINT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _StubRugCheck:
    def __init__(self, report=None, error: Exception | None = None) -> None:
        self.report_payload = report if report is not None else {"score": 80, "risks": []}
        self.error = error
        self.calls = 0

    async def report(self, asset_id: str):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.report_payload


class _StubDex:
    def __init__(self, pairs=None, error: Exception | None = None) -> None:
        self.pairs_payload = pairs if pairs is not None else []
        self.error = error
        self.calls = 0

    async def pairs(self, asset_id: str):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.pairs_payload


class _StubGoPlus:
    def __init__(self, entry=None, error: Exception | None = None) -> None:
        self.entry = entry
        self.error = error
        self.calls = 0

    async def security(self, asset_id: str):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.entry


class _StubOnChain:
    def __init__(self, *, on_curve: bool = True, owner: str | None = TOKEN_2022_PROGRAM_ID, curve_error=None) -> None:
        self.on_curve = on_curve
        self.owner = owner
        self.curve_error = curve_error
        self.curve_calls = 0
        self.owner_calls = 0

    async def bonding_curve_active(self, asset_id: str):
        self.curve_calls += 1
        if self.curve_error is not None:
            raise self.curve_error
        return self.on_curve, "CurvePda1111111111111111111111111111111111"

    async def token_program_owner(self, asset_id: str):
        self.owner_calls += 1
        return self.owner


class _StubHttp:
    def __init__(self, payload) -> None:
        self.payload = payload
        self.urls: list[str] = []

    async def get_json(self, url: str, *, source: str, params=None, max_attempts=None) -> HttpResult:
        self.urls.append(url)
        return HttpResult(ok=True, status=200, data=self.payload)


def _pair(liquidity: float, *, socials: bool = False) -> dict:
    info = {"socials": [{"type": "twitter", "url": "https://x.com/example"}]} if socials else {}
    return {"chainId": "solana", "pairAddress": "PairAddr", "liquidity": {"usd": liquidity}, "info": info}


class RiskScreenTests(unittest.TestCase):
    def _screen(
        self,
        *,
        policy: RiskPolicy | None = None,
        rugcheck: _StubRugCheck | None = None,
        dex: _StubDex | None = None,
        goplus: _StubGoPlus | None = None,
        onchain: _StubOnChain | None = None,
        clock: _Clock | None = None,
    ) -> RiskScreen:
        self.rugcheck = rugcheck or _StubRugCheck()
        self.dex = dex or _StubDex()
        self.goplus = goplus or _StubGoPlus()
        self.onchain = onchain or _StubOnChain()
        return RiskScreen(
            policy or RiskPolicy(),
            rugcheck=self.rugcheck,
            dexscreener=self.dex,
            goplus=self.goplus,
            onchain=self.onchain,
            clock=clock or _Clock(),
        )

    def test_danger_finding_rejects_and_short_circuits(self) -> None:
        rug = _StubRugCheck({"score": 90, "risks": [{"name": "Freeze Authority still enabled", "level": "danger"}]})
        screen = self._screen(rugcheck=rug)
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertIn("Freeze Authority still enabled", verdict.rejection_reason)
        self.assertEqual(verdict.rejection_key, "risk_report_danger")
        self.assertEqual(list(verdict.checks), [CHECK_RISK_REPORT])
        self.assertEqual(self.dex.calls, 0)
        self.assertEqual(self.goplus.calls, 0)
        self.assertEqual(self.onchain.curve_calls, 0)
        self.assertEqual(self.onchain.owner_calls, 0)

    def test_rugged_flag_is_treated_as_danger(self) -> None:
        screen = self._screen(rugcheck=_StubRugCheck({"score": 50, "risks": [], "rugged": True}))
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertIn("rugged", verdict.rejection_reason)

    def test_verdict_is_cached_within_ttl(self) -> None:
        clock = _Clock()
        screen = self._screen(clock=clock)
        first = asyncio.run(screen.evaluate(MINT))
        clock.now += 299
        second = asyncio.run(screen.evaluate(MINT))
        self.assertIs(first, second)
        self.assertEqual(self.rugcheck.calls, 1)
        self.assertEqual(self.onchain.owner_calls, 1)

        clock.now += 2
        third = asyncio.run(screen.evaluate(MINT))
        self.assertIsNot(third, first)
        self.assertEqual(self.rugcheck.calls, 2)

    def test_unreachable_risk_report_is_soft(self) -> None:
        rug = _StubRugCheck(error=SourceError(ErrorKind.UNAVAILABLE, "http_status_503", "rugcheck"))
        screen = self._screen(rugcheck=rug)
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertTrue(verdict.accepted)
        self.assertIs(verdict.checks[CHECK_RISK_REPORT].outcome, CheckOutcome.INCONCLUSIVE)
        # only the on-chain identity bonus remains
        self.assertEqual(verdict.composite_score, 5)

    def test_malformed_report_is_soft(self) -> None:
        screen = self._screen(rugcheck=_StubRugCheck({"score": "not-a-number", "risks": []}))
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertTrue(verdict.accepted)
        self.assertIs(verdict.checks[CHECK_RISK_REPORT].outcome, CheckOutcome.INCONCLUSIVE)

    def test_low_report_score_is_soft_and_earns_nothing(self) -> None:
        policy = RiskPolicy(min_rugcheck_score=50)
        screen = self._screen(policy=policy, rugcheck=_StubRugCheck({"score": 20, "risks": []}))
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertTrue(verdict.accepted)
        self.assertEqual(verdict.composite_score, 5)

    def test_weighted_score_for_graduated_asset(self) -> None:
        screen = self._screen(
            rugcheck=_StubRugCheck({"score": 80, "risks": [{"name": "Low holders", "level": "warn"}]}),
            dex=_StubDex([_pair(5000.0)]),
            onchain=_StubOnChain(on_curve=False),
        )
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertTrue(verdict.accepted)
        # 80*0.5 + (5000/10000*100)*0.4 + 5 (identity); security skipped contributes zero
        self.assertEqual(verdict.composite_score, 65)
        self.assertTrue(verdict.checks[CHECK_SECURITY].skipped)

    def test_score_is_clamped_to_hundred(self) -> None:
        policy = RiskPolicy(skip_security_check=False)
        screen = self._screen(
            policy=policy,
            rugcheck=_StubRugCheck({"score": 5000, "risks": []}),
            dex=_StubDex([_pair(1_000_000.0)]),
            goplus=_StubGoPlus({"is_honeypot": "0"}),
            onchain=_StubOnChain(on_curve=False),
        )
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertEqual(verdict.composite_score, 100)
        self.assertGreaterEqual(verdict.composite_score, 0)
        self.assertLessEqual(verdict.composite_score, 100)

    def test_pre_graduation_skips_liquidity(self) -> None:
        screen = self._screen(dex=_StubDex([_pair(10.0)]), onchain=_StubOnChain(on_curve=True))
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertTrue(verdict.accepted)
        market = verdict.checks[CHECK_MARKET_PRESENCE]
        self.assertEqual(market.raw_details["phase"], "pre_graduation")
        self.assertIsNone(market.numeric_score)
        self.assertEqual(self.dex.calls, 0)

    def _screen_over_dexscreener(self, payload) -> RiskScreen:
        policy = RiskPolicy()
        self.http = _StubHttp(payload)
        return self._screen(
            policy=policy,
            dex=DexScreenerSource(self.http, policy),
            onchain=_StubOnChain(on_curve=False),
        )

    def test_malformed_pair_rows_rank_last_behind_a_usable_pair(self) -> None:
        payload = {
            "pairs": [
                {"chainId": "solana", "pairAddress": "Broken1", "liquidity": {"usd": "n/a"}},
                {"chainId": "solana", "pairAddress": "Broken2", "liquidity": 12345},
                _pair(20000.0),
            ]
        }
        verdict = asyncio.run(self._screen_over_dexscreener(payload).evaluate(MINT))
        self.assertTrue(verdict.accepted)
        market = verdict.checks[CHECK_MARKET_PRESENCE]
        self.assertIs(market.outcome, CheckOutcome.PASS)
        self.assertEqual(market.raw_details["pair_address"], "PairAddr")
        self.assertEqual(market.numeric_score, 20000.0)
        self.assertEqual(len(self.http.urls), 1)

    def test_unparseable_liquidity_is_soft(self) -> None:
        payload = {"pairs": [{"chainId": "solana", "liquidity": {"usd": "n/a"}}]}
        verdict = asyncio.run(self._screen_over_dexscreener(payload).evaluate(MINT))
        self.assertTrue(verdict.accepted)
        market = verdict.checks[CHECK_MARKET_PRESENCE]
        self.assertIs(market.outcome, CheckOutcome.INCONCLUSIVE)
        self.assertIn("malformed pair", market.reason)
        self.assertIn(CHECK_PROGRAM_IDENTITY, verdict.checks)

    def test_non_object_liquidity_counts_as_no_liquidity(self) -> None:
        payload = {"pairs": [{"chainId": "solana", "liquidity": 12345}]}
        verdict = asyncio.run(self._screen_over_dexscreener(payload).evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.rejection_key, "low_liquidity")

    def test_market_source_parse_error_is_soft(self) -> None:
        dex = _StubDex(error=ValueError("could not convert string to float: 'n/a'"))
        verdict = asyncio.run(self._screen(dex=dex, onchain=_StubOnChain(on_curve=False)).evaluate(MINT))
        self.assertTrue(verdict.accepted)
        market = verdict.checks[CHECK_MARKET_PRESENCE]
        self.assertIs(market.outcome, CheckOutcome.INCONCLUSIVE)
        self.assertIn("malformed market data", market.reason)

    def test_pre_graduation_missing_socials_is_hard_reject(self) -> None:
        policy = RiskPolicy(require_socials=True)
        screen = self._screen(policy=policy, dex=_StubDex([_pair(0.0, socials=False)]))
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.rejection_key, "no_social_presence")
        self.assertEqual(self.onchain.owner_calls, 0)

    def test_pre_graduation_source_error_or_no_data_is_soft(self) -> None:
        policy = RiskPolicy(require_socials=True)
        down = SourceError(ErrorKind.RATE_LIMITED, "http_status_429", "dexscreener")
        verdict = asyncio.run(self._screen(policy=policy, dex=_StubDex(error=down)).evaluate(MINT))
        self.assertTrue(verdict.accepted)
        self.assertIs(verdict.checks[CHECK_MARKET_PRESENCE].outcome, CheckOutcome.INCONCLUSIVE)

        verdict = asyncio.run(self._screen(policy=policy, dex=_StubDex([])).evaluate(MINT))
        self.assertTrue(verdict.accepted)

    def test_graduated_low_liquidity_is_hard_reject(self) -> None:
        screen = self._screen(dex=_StubDex([_pair(1200.0)]), onchain=_StubOnChain(on_curve=False))
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.rejection_key, "low_liquidity")
        self.assertIn("Low liquidity", verdict.rejection_reason)

    def test_graduated_without_pairs_is_hard_reject(self) -> None:
        screen = self._screen(dex=_StubDex([]), onchain=_StubOnChain(on_curve=False))
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.rejection_key, "no_trading_pairs")

    def test_graduated_requires_socials_when_configured(self) -> None:
        policy = RiskPolicy(require_socials=True)
        screen = self._screen(policy=policy, dex=_StubDex([_pair(9000.0)]), onchain=_StubOnChain(on_curve=False))
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.rejection_key, "no_social_presence")

    def test_curve_probe_failure_assumes_graduated(self) -> None:
        onchain = _StubOnChain(curve_error=RpcError(ErrorKind.UNAVAILABLE, "timeout"))
        screen = self._screen(dex=_StubDex([_pair(20000.0)]), onchain=onchain)
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertTrue(verdict.accepted)
        self.assertEqual(verdict.checks[CHECK_MARKET_PRESENCE].raw_details["phase"], "graduated")

    def test_security_flags_are_hard_rejects(self) -> None:
        policy = RiskPolicy(skip_security_check=False)
        for flag in ("is_honeypot", "is_blacklisted", "owner_change_balance", "cannot_sell_all"):
            with self.subTest(flag=flag):
                screen = self._screen(policy=policy, goplus=_StubGoPlus({flag: "1"}))
                verdict = asyncio.run(screen.evaluate(MINT))
                self.assertFalse(verdict.accepted)
                self.assertEqual(verdict.rejection_key, "security_flag")
                self.assertEqual(self.onchain.owner_calls, 0)

    def test_security_nested_status_flag(self) -> None:
        policy = RiskPolicy(skip_security_check=False)
        screen = self._screen(policy=policy, goplus=_StubGoPlus({"owner_change_balance": {"status": "1"}}))
        verdict = asyncio.run(screen.evaluate(MINT))
        self.assertFalse(verdict.accepted)

    def test_security_source_down_or_not_indexed_is_soft(self) -> None:
        policy = RiskPolicy(skip_security_check=False)
        down = SourceError(ErrorKind.UNAVAILABLE, "timeout", "goplus")
        verdict = asyncio.run(self._screen(policy=policy, goplus=_StubGoPlus(error=down)).evaluate(MINT))
        self.assertTrue(verdict.accepted)
        verdict = asyncio.run(self._screen(policy=policy, goplus=_StubGoPlus(None)).evaluate(MINT))
        self.assertTrue(verdict.accepted)
        self.assertIs(verdict.checks[CHECK_SECURITY].outcome, CheckOutcome.INCONCLUSIVE)

    def test_security_pass_adds_bonus(self) -> None:
        policy = RiskPolicy(skip_security_check=False)
        screen = self._screen(policy=policy, goplus=_StubGoPlus({"is_honeypot": "0"}))
        verdict = asyncio.run(screen.evaluate(MINT))
        # 80*0.5 + 5 + 5, pre-graduation contributes no liquidity
        self.assertEqual(verdict.composite_score, 50)

    def test_skipped_security_check_is_never_called(self) -> None:
        screen = self._screen()
        asyncio.run(screen.evaluate(MINT))
        self.assertEqual(self.goplus.calls, 0)

    def test_program_mismatch_and_missing_account_are_hard(self) -> None:
        verdict = asyncio.run(self._screen(onchain=_StubOnChain(owner="TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")).evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.rejection_key, "program_mismatch")

        verdict = asyncio.run(self._screen(onchain=_StubOnChain(owner=None)).evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.rejection_key, "account_missing")
        self.assertIs(verdict.checks[CHECK_PROGRAM_IDENTITY].outcome, CheckOutcome.FAIL)

    def test_score_below_threshold_is_rejected(self) -> None:
        policy = replace(RiskPolicy(), min_safety_score=60)
        verdict = asyncio.run(self._screen(policy=policy).evaluate(MINT))
        self.assertFalse(verdict.accepted)
        self.assertEqual(verdict.rejection_reason, "Low score: 45")
        self.assertEqual(verdict.rejection_key, "low_score")

    def test_runtime_stats_count_hits(self) -> None:
        screen = self._screen()
        asyncio.run(screen.evaluate(MINT))
        asyncio.run(screen.evaluate(MINT))
        stats = screen.runtime_stats(reset=True)
        self.assertEqual(stats["evaluated"], 1)
        self.assertEqual(stats["cache_hits"], 1)
        self.assertEqual(stats["accepted"], 1)
        self.assertEqual(screen.runtime_stats()["evaluated"], 0)


if __name__ == "__main__":
    unittest.main()
