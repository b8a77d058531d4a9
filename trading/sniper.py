"""Candidate intake: capacity gate, risk screen, slot reservation, lifecycle launch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

from config import SniperSettings
from monitor.risk_screen import RiskScreen
from trading.journal import DecisionLog, StateSnapshotStore
from trading.models import CandidateEvent, Position, SafetyVerdict
from trading.position_manager import REJECT_ALREADY_ACTIVE, REJECT_SLOTS_FULL, PositionManager
from utils.addressing import is_valid_asset_id, short_id
from utils.state_file import StateFileLockError

logger = logging.getLogger(__name__)


class InsufficientBalanceError(RuntimeError):
    pass


class Sniper:
    def __init__(
        self,
        settings: SniperSettings,
        *,
        screen: RiskScreen,
        manager: PositionManager,
        state_store: StateSnapshotStore,
        decisions: DecisionLog | None = None,
        wallet_balance: Callable[[], Awaitable[float]] | None = None,
        closers: list[Callable[[], Awaitable[Any]]] | None = None,
    ) -> None:
        self.settings = settings
        self.screen = screen
        self.manager = manager
        self._state_store = state_store
        self._decisions = decisions
        self._wallet_balance = wallet_balance
        self._closers = list(closers or [])
        self.running = False
        self._candidate_tasks: set[asyncio.Task] = set()
        self._flush_task: asyncio.Task | None = None
        self.counters: dict[str, int] = {"detected": 0, "screened": 0, "rejected": 0}
        if manager.on_change is None:
            manager.on_change = self.save_state

    # ---- stats / persistence ----

    def stats(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.counters)
        out.update(self.manager.counters)
        closed = int(out.get("closed", 0))
        out["win_rate"] = round(float(out.get("wins", 0)) / closed * 100.0, 2) if closed > 0 else 0.0
        out["active"] = self.manager.active_count()
        return out

    def save_state(self) -> None:
        try:
            self._state_store.save(running=self.running, stats=self.stats(), active_positions=self.manager.snapshot())
        except (OSError, StateFileLockError) as exc:
            logger.warning("STATE_SAVE_FAIL path=%s err=%s", self._state_store.path, exc)

    async def _flush_loop(self) -> None:
        interval = max(1.0, float(self.settings.state_flush_seconds))
        while self.running:
            await asyncio.sleep(interval)
            self.save_state()

    # ---- intake ----

    def _log_screening(self, event: CandidateEvent, verdict: SafetyVerdict | None, *, stage: str, decision: str, reason_key: str, reason: str) -> None:
        if self._decisions is None:
            return
        row: dict[str, Any] = {
            "event_type": "screening_decision",
            "decision_stage": stage,
            "decision": decision,
            "reason_key": reason_key,
            "reason": reason,
            "asset_id": event.asset_id,
            "origin_signature": event.origin_signature,
            "detected_at_slot": event.detected_at_slot,
            "detected_at_wall_clock": event.detected_at_wall_clock,
        }
        if verdict is not None:
            row["score"] = verdict.composite_score
            row["checks"] = {name: check.to_dict() for name, check in verdict.checks.items()}
            row["evaluated_at"] = verdict.evaluated_at.isoformat()
        self._decisions.screening(row)

    def _skip_capacity(self, event: CandidateEvent, why: str) -> None:
        key = "slots_full" if why == REJECT_SLOTS_FULL else "already_active"
        logger.info("CANDIDATE_SKIP token=%s reason=%s", short_id(event.asset_id), key)
        self._log_screening(event, None, stage="capacity", decision="skip", reason_key=key, reason=why)

    async def handle_candidate(self, event: CandidateEvent) -> Position | None:
        self.counters["detected"] += 1
        if not is_valid_asset_id(event.asset_id):
            logger.warning("CANDIDATE_SKIP token=%s reason=invalid_asset_id", short_id(event.asset_id))
            self._log_screening(event, None, stage="intake", decision="skip", reason_key="invalid_asset_id", reason=event.asset_id)
            return None
        if self.manager.get(event.asset_id) is not None:
            self._skip_capacity(event, REJECT_ALREADY_ACTIVE)
            return None
        if not self.manager.has_capacity():
            # Dropped, not deferred: by the time a slot frees the launch window is gone.
            self.manager.counters["skipped_capacity"] += 1
            self._skip_capacity(event, REJECT_SLOTS_FULL)
            return None

        try:
            verdict = await self.screen.evaluate(event.asset_id)
        except Exception as exc:
            logger.exception("SCREEN_ERROR token=%s", short_id(event.asset_id))
            self.counters["rejected"] += 1
            self._log_screening(event, None, stage="screen", decision="reject", reason_key="screen_error", reason=str(exc))
            return None
        self.counters["screened"] += 1
        if not verdict.accepted:
            self.counters["rejected"] += 1
            self._log_screening(
                event,
                verdict,
                stage="screen",
                decision="reject",
                reason_key=verdict.rejection_key or "rejected",
                reason=verdict.rejection_reason or "",
            )
            return None
        self._log_screening(event, verdict, stage="screen", decision="accept", reason_key="accepted", reason="accepted")

        position, why = self.manager.reserve(event.asset_id)
        if position is None:
            self._skip_capacity(event, why)
            return None
        self.manager.launch(position)
        return position

    def submit(self, event: CandidateEvent) -> asyncio.Task:
        task = asyncio.create_task(self.handle_candidate(event), name=f"candidate:{short_id(event.asset_id)}")
        self._candidate_tasks.add(task)
        task.add_done_callback(self._candidate_tasks.discard)
        return task

    async def run(self, feed: AsyncIterator[CandidateEvent]) -> None:
        async for event in feed:
            if not self.running:
                break
            logger.info("CANDIDATE token=%s slot=%s", short_id(event.asset_id), event.detected_at_slot)
            self.submit(event)
        if self._candidate_tasks:
            await asyncio.gather(*list(self._candidate_tasks), return_exceptions=True)
        await self.manager.wait_idle()

    # ---- start / stop ----

    async def start(self) -> None:
        if self._wallet_balance is not None:
            balance = float(await self._wallet_balance())
            need = float(self.settings.execution.min_wallet_balance)
            logger.info("WALLET_BALANCE balance=%.4f min=%.4f", balance, need)
            if balance + 1e-9 < need:
                raise InsufficientBalanceError(f"wallet balance {balance:.4f} below minimum {need:.4f}")
        self.running = True
        self.save_state()
        self._flush_task = asyncio.create_task(self._flush_loop(), name="state-flush")
        logger.info(
            "SNIPER_START dry_run=%s slots=%s capital=%.4f tp=%s sl=%s max_hold=%.1fs",
            self.settings.execution.dry_run,
            self.manager.concurrency_limit,
            self.settings.execution.capital_per_position,
            self.settings.exits.take_profit_percent,
            self.settings.exits.stop_loss_percent,
            self.settings.exits.max_hold_seconds,
        )

    async def stop(self) -> None:
        self.running = False
        pending = [t for t in self._candidate_tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._flush_task is not None:
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
            self._flush_task = None
        await self.manager.shutdown()
        self.save_state()
        for close in self._closers:
            await close()
        logger.info("SNIPER_STOP %s", self.report())

    def report(self) -> str:
        s = self.stats()
        return (
            f"detected={s['detected']} screened={s['screened']} rejected={s['rejected']} "
            f"skipped={s['skipped_capacity']} executed={s['executed']} closed={s['closed']} "
            f"wins={s['wins']} win_rate={s['win_rate']:.1f}% sl={s['stop_losses']} timeouts={s['timeouts']} "
            f"manual={s['manual_exits']} failed={s['failed']} disposal_failures={s['disposal_failures']} "
            f"active={s['active']}"
        )
