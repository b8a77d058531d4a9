"""Position lifecycle: slot reservation, acquisition, settlement, monitored hold, disposal.

All state changes happen synchronously between awaits on the single event loop
thread, so the slot check-and-set in `reserve()` needs no lock. Every position
that reaches CLOSED or FAILED is journaled exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable

from config import ExecutionPolicy, ExitPolicy
from trading.backends import LedgerStatusSource, PriceOracle, TradeBackend, TradeResult
from trading.journal import DecisionLog, TradeJournal
from trading.models import (
    ALLOWED_TRANSITIONS,
    ExitReason,
    FailureReason,
    Position,
    PositionState,
    SettlementStatus,
    TradeRecord,
    utc_now,
)
from utils.addressing import normalize_asset_id, short_id
from utils.errors import RpcError
from utils.state_file import StateFileLockError

logger = logging.getLogger(__name__)

EPS = 1e-9

REJECT_SLOTS_FULL = "SLOTS_FULL"
REJECT_ALREADY_ACTIVE = "ALREADY_ACTIVE"
RESERVED_OK = "OK"

_STAGE_FOR_FAILURE = {
    FailureReason.ACQUISITION_FAILED: "acquire",
    FailureReason.NO_REFERENCE: "confirm",
    FailureReason.SETTLEMENT_REJECTED: "confirm",
    FailureReason.CONFIRMATION_TIMEOUT: "confirm",
    FailureReason.NO_HOLDINGS: "dispose",
    FailureReason.ABANDONED: "operator",
    FailureReason.INTERNAL_ERROR: "unknown",
}


class InvalidTransition(RuntimeError):
    pass


class PositionManager:
    def __init__(
        self,
        exits: ExitPolicy,
        execution: ExecutionPolicy,
        *,
        backend: TradeBackend,
        oracle: PriceOracle,
        ledger: LedgerStatusSource,
        journal: TradeJournal,
        decisions: DecisionLog | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        wall_clock: Callable[[], datetime] = utc_now,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.exits = exits
        self.execution = execution
        self._backend = backend
        self._oracle = oracle
        self._ledger = ledger
        self._journal = journal
        self._decisions = decisions
        self._clock = clock
        self._sleep = sleep
        self._wall_clock = wall_clock
        self.on_change = on_change
        self._active: dict[str, Position] = {}
        self._held_since: dict[str, float] = {}
        self._lifecycle_tasks: dict[str, asyncio.Task] = {}
        self._monitor_tasks: dict[str, asyncio.Task] = {}
        self._disposing: set[str] = set()
        self.counters: dict[str, int] = {
            "skipped_capacity": 0,
            "executed": 0,
            "wins": 0,
            "stop_losses": 0,
            "timeouts": 0,
            "manual_exits": 0,
            "closed": 0,
            "failed": 0,
            "disposal_failures": 0,
        }

    # ---- capacity ----

    @property
    def concurrency_limit(self) -> int:
        return max(1, int(self.execution.max_concurrent_positions))

    def active_count(self) -> int:
        return sum(1 for p in self._active.values() if not p.is_terminal)

    def has_capacity(self) -> bool:
        return self.active_count() < self.concurrency_limit

    def get(self, asset_id: str) -> Position | None:
        return self._active.get(normalize_asset_id(asset_id))

    def positions(self) -> list[Position]:
        return list(self._active.values())

    def snapshot(self) -> list[tuple[str, dict[str, Any]]]:
        return [(asset_id, pos.snapshot()) for asset_id, pos in self._active.items()]

    def _free_slot(self) -> int:
        used = {p.slot_index for p in self._active.values()}
        return next(i for i in range(self.concurrency_limit) if i not in used)

    def reserve(self, asset_id: str) -> tuple[Position | None, str]:
        """Occupy a slot for `asset_id` or say why not. Never suspends."""
        asset = normalize_asset_id(asset_id)
        if asset in self._active:
            return None, REJECT_ALREADY_ACTIVE
        if not self.has_capacity():
            self.counters["skipped_capacity"] += 1
            logger.info(
                "RESERVE_SKIP token=%s reason=slots_full active=%s limit=%s",
                short_id(asset),
                self.active_count(),
                self.concurrency_limit,
            )
            return None, REJECT_SLOTS_FULL
        position = Position(
            asset_id=asset,
            slot_index=self._free_slot(),
            committed_capital=float(self.execution.capital_per_position),
            reserved_at=self._wall_clock(),
        )
        self._active[asset] = position
        logger.info("RESERVE token=%s slot=%s capital=%.4f", short_id(asset), position.slot_index, position.committed_capital)
        self._changed()
        return position, RESERVED_OK

    # ---- transitions ----

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _transition(self, position: Position, target: PositionState) -> None:
        if target not in ALLOWED_TRANSITIONS[position.state]:
            raise InvalidTransition(f"{position.asset_id}: {position.state.value} -> {target.value}")
        logger.debug("STATE token=%s %s->%s", short_id(position.asset_id), position.state.value, target.value)
        position.state = target
        self._changed()

    def _hold_seconds(self, position: Position) -> float:
        started = self._held_since.get(position.asset_id)
        if started is None:
            return 0.0
        return max(0.0, self._clock() - started)

    def _release(self, position: Position) -> None:
        self._active.pop(position.asset_id, None)
        self._held_since.pop(position.asset_id, None)
        current = asyncio.current_task() if _loop_running() else None
        task = self._monitor_tasks.pop(position.asset_id, None)
        if task is not None and task is not current and not task.done():
            task.cancel()

    def _journal_terminal(self, position: Position, exit_reason: str, hold_ms: int, exit_price: float | None) -> None:
        record = TradeRecord(
            asset_id=position.asset_id,
            acquisition_ref=position.acquisition_tx_ref,
            disposal_ref=position.disposal_tx_ref,
            exit_reason=exit_reason,
            pnl_percent=float(position.pnl_percent),
            hold_duration_ms=int(hold_ms),
            recorded_at=self._wall_clock(),
            committed_capital=position.committed_capital,
            slot_index=position.slot_index,
            final_state=position.state.value,
            reference_price=position.acquisition_reference_price,
            exit_price=exit_price,
        )
        try:
            self._journal.append(record)
        except (OSError, StateFileLockError) as exc:
            logger.error("JOURNAL_WRITE_FAIL token=%s err=%s record=%s", short_id(position.asset_id), exc, record.to_dict())

    def _log_event(self, position: Position, *, stage: str, decision: str, reason_key: str, reason: str = "", **extra: Any) -> None:
        if self._decisions is None:
            return
        event = {
            "event_type": "position_event",
            "decision_stage": stage,
            "decision": decision,
            "reason_key": reason_key,
            "reason": reason or reason_key,
            "asset_id": position.asset_id,
            "reserved_at": position.reserved_at.isoformat(),
            "slot_index": position.slot_index,
            "state": position.state.value,
            "pnl_percent": position.pnl_percent,
        }
        event.update(extra)
        self._decisions.position(event)

    def _fail(self, position: Position, reason: FailureReason, detail: str = "", *, pnl_percent: float = 0.0) -> None:
        hold_ms = int(self._hold_seconds(position) * 1000) if reason is FailureReason.ABANDONED else 0
        self._transition(position, PositionState.FAILED)
        position.failure_reason = reason
        position.last_error = detail or position.last_error
        position.pnl_percent = float(pnl_percent)
        position.closed_at = self._wall_clock()
        self._release(position)
        self.counters["failed"] += 1
        logger.warning(
            "POSITION_FAILED token=%s reason=%s detail=%s",
            short_id(position.asset_id),
            reason.value,
            detail or "-",
        )
        self._journal_terminal(position, reason.value, hold_ms, position.last_price)
        self._log_event(
            position,
            stage=_STAGE_FOR_FAILURE.get(reason, "unknown"),
            decision="failed",
            reason_key=reason.value.lower(),
            reason=detail or reason.value,
        )
        self._changed()

    # ---- acquisition ----

    async def acquire(self, position: Position) -> bool:
        """Submit the buy for a reserved position.

        ACQUIRING is held while the backend call is in flight, so observers see
        RESERVED -> ACQUIRING -> FAILED when the venue refuses. A failed acquisition
        never reaches AWAITING_CONFIRMATION or HOLDING.
        """
        self._transition(position, PositionState.ACQUIRING)
        try:
            result = await self._backend.acquire(position.asset_id, position.committed_capital)
        except Exception as exc:
            logger.warning("ACQUIRE_ERROR token=%s err=%s", short_id(position.asset_id), exc)
            result = TradeResult(error=str(exc) or type(exc).__name__)
        if result.error:
            self._fail(position, FailureReason.ACQUISITION_FAILED, result.error)
            return False
        position.acquisition_tx_ref = result.ref or None
        if result.quantity is not None:
            position.acquired_quantity = float(result.quantity)
        self._transition(position, PositionState.AWAITING_CONFIRMATION)
        logger.info("ACQUIRE_SENT token=%s ref=%s", short_id(position.asset_id), position.acquisition_tx_ref or "-")
        return True

    async def confirm(self, position: Position) -> bool:
        ref = position.acquisition_tx_ref
        if not ref:
            self._fail(position, FailureReason.NO_REFERENCE, "acquisition returned no reference")
            return False
        attempts = max(1, int(self.execution.confirm_max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                status = await self._ledger.settlement_status(ref)
            except RpcError as exc:
                logger.warning(
                    "CONFIRM_POLL_ERROR token=%s attempt=%s/%s kind=%s err=%s",
                    short_id(position.asset_id),
                    attempt,
                    attempts,
                    exc.kind.value,
                    exc.detail,
                )
                status = SettlementStatus.PENDING
            if status is SettlementStatus.CONFIRMED:
                position.acquisition_time = self._wall_clock()
                self._held_since[position.asset_id] = self._clock()
                self._transition(position, PositionState.HOLDING)
                self.counters["executed"] += 1
                logger.info("CONFIRM_OK token=%s attempts=%s", short_id(position.asset_id), attempt)
                self._log_event(position, stage="confirm", decision="holding", reason_key="confirmed", attempts=attempt)
                return True
            if status is SettlementStatus.FAILED:
                self._fail(position, FailureReason.SETTLEMENT_REJECTED, f"settlement failed ref={ref}")
                return False
            if attempt < attempts:
                await self._sleep(self.execution.confirm_poll_seconds)
        self._fail(position, FailureReason.CONFIRMATION_TIMEOUT, f"no confirmation after {attempts} polls")
        return False

    # ---- holding ----

    def _hold_expired(self, position: Position) -> bool:
        return self._hold_seconds(position) + EPS >= float(self.exits.max_hold_seconds)

    def evaluate_exit(self, position: Position, price: float | None) -> ExitReason | None:
        """Apply exit rules in priority order: timeout, then TP, then SL."""
        if self._hold_expired(position):
            return ExitReason.TIME
        if price is None or price <= 0:
            return None
        position.last_price = float(price)
        if position.acquisition_reference_price is None:
            position.acquisition_reference_price = float(price)
        reference = position.acquisition_reference_price
        pnl = (float(price) - reference) / reference * 100.0
        position.last_pnl_percent = pnl
        take_profit = self.exits.take_profit_percent
        if take_profit is not None and pnl + EPS >= float(take_profit):
            return ExitReason.TP
        stop_loss = self.exits.stop_loss_percent
        if stop_loss is not None and pnl - EPS <= -abs(float(stop_loss)):
            return ExitReason.SL
        return None

    async def _read_price(self, position: Position) -> float | None:
        try:
            price = await self._oracle.current_price(position.asset_id)
        except Exception as exc:
            logger.debug("PRICE_READ_ERROR token=%s err=%s", short_id(position.asset_id), exc)
            return None
        return float(price) if price else None

    async def monitor(self, position: Position) -> ExitReason | None:
        """Poll until an exit rule fires, then dispose. One tick at a time."""
        poll = max(0.0, float(self.exits.price_poll_seconds))
        while position.state is PositionState.HOLDING:
            price = None if self._hold_expired(position) else await self._read_price(position)
            position.price_ticks += 1
            reason = self.evaluate_exit(position, price)
            if reason is not None:
                logger.info(
                    "EXIT_TRIGGER token=%s reason=%s pnl=%s held=%.2fs ticks=%s",
                    short_id(position.asset_id),
                    reason.value,
                    "-" if position.last_pnl_percent is None else f"{position.last_pnl_percent:.2f}",
                    self._hold_seconds(position),
                    position.price_ticks,
                )
                await self.dispose(position, reason)
                return reason
            if price is None and position.price_ticks % 5 == 0:
                logger.info(
                    "MONITOR_NO_PRICE token=%s held=%.1fs/%.1fs",
                    short_id(position.asset_id),
                    self._hold_seconds(position),
                    self.exits.max_hold_seconds,
                )
            remaining = float(self.exits.max_hold_seconds) - self._hold_seconds(position)
            await self._sleep(max(0.0, min(poll, remaining)))
        return None

    def start_monitor(self, position: Position) -> asyncio.Task:
        existing = self._monitor_tasks.get(position.asset_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self.monitor(position), name=f"monitor:{short_id(position.asset_id)}")
        self._monitor_tasks[position.asset_id] = task
        task.add_done_callback(lambda t, key=position.asset_id: self._forget_monitor(key, t))
        return task

    def _forget_monitor(self, asset_id: str, task: asyncio.Task) -> None:
        if self._monitor_tasks.get(asset_id) is task:
            self._monitor_tasks.pop(asset_id, None)

    # ---- disposal ----

    def _realized_pnl(self, position: Position, result: TradeResult) -> float:
        capital = float(position.committed_capital)
        if result.proceeds is not None and capital > 0:
            return (float(result.proceeds) - capital) / capital * 100.0
        if position.last_pnl_percent is not None:
            return float(position.last_pnl_percent)
        return 0.0

    async def _held_quantity(self, position: Position) -> float | None:
        try:
            return float(await self._backend.query_held_quantity(position.asset_id))
        except Exception as exc:
            logger.warning("HOLDINGS_QUERY_ERROR token=%s err=%s selling=100%%", short_id(position.asset_id), exc)
            return None

    async def dispose(self, position: Position, reason: ExitReason) -> bool:
        """Sell the full holding. A failed sell leaves the position DISPOSING with its slot kept."""
        asset = position.asset_id
        if asset in self._disposing:
            return False
        if position.state is PositionState.HOLDING:
            position.pending_exit_reason = reason
            self._transition(position, PositionState.DISPOSING)
        elif position.state is not PositionState.DISPOSING:
            raise InvalidTransition(f"{asset}: cannot dispose from {position.state.value}")
        self._disposing.add(asset)
        try:
            quantity = await self._held_quantity(position)
            if quantity is not None and quantity <= 0:
                self._fail(position, FailureReason.NO_HOLDINGS, "held quantity is zero")
                return False
            try:
                if quantity is None:
                    result = await self._backend.dispose(asset, percent_of_holdings=100.0)
                else:
                    result = await self._backend.dispose(asset, quantity=quantity)
            except Exception as exc:
                result = TradeResult(error=str(exc) or type(exc).__name__)
        finally:
            self._disposing.discard(asset)

        if result.error or not result.ref:
            position.disposal_failures += 1
            position.last_error = result.error or "disposal returned no reference"
            self.counters["disposal_failures"] += 1
            logger.error(
                "DISPOSE_FAIL token=%s reason=%s attempts=%s err=%s",
                short_id(asset),
                reason.value,
                position.disposal_failures,
                position.last_error,
            )
            self._log_event(
                position,
                stage="dispose",
                decision="disposal_failed",
                reason_key="disposal_failed",
                reason=position.last_error,
                exit_reason=reason.value,
            )
            self._changed()
            return False

        hold_ms = int(round(self._hold_seconds(position) * 1000))
        position.disposal_tx_ref = result.ref
        position.pnl_percent = self._realized_pnl(position, result)
        position.closed_at = self._wall_clock()
        self._transition(position, PositionState.CLOSED)
        self._release(position)
        self._count_exit(reason, position.pnl_percent)
        logger.info(
            "DISPOSE_OK token=%s reason=%s pnl=%.2f%% held_ms=%s ref=%s",
            short_id(asset),
            reason.value,
            position.pnl_percent,
            hold_ms,
            result.ref,
        )
        self._journal_terminal(position, reason.value, hold_ms, position.last_price)
        self._log_event(position, stage="dispose", decision="closed", reason_key=reason.value.lower(), hold_ms=hold_ms)
        self._changed()
        return True

    def _count_exit(self, reason: ExitReason, pnl_percent: float) -> None:
        self.counters["closed"] += 1
        if pnl_percent > 0:
            self.counters["wins"] += 1
        if reason is ExitReason.SL:
            self.counters["stop_losses"] += 1
        elif reason is ExitReason.TIME:
            self.counters["timeouts"] += 1
        elif reason is ExitReason.MANUAL:
            self.counters["manual_exits"] += 1

    # ---- orchestration ----

    async def run_lifecycle(self, position: Position) -> Position:
        try:
            if not await self.acquire(position):
                return position
            if not await self.confirm(position):
                return position
            task = self.start_monitor(position)
            # asyncio.wait does not raise when the monitor is cancelled by an operator close.
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("LIFECYCLE_ERROR token=%s state=%s", short_id(position.asset_id), position.state.value)
            if not position.is_terminal and position.asset_id in self._active:
                self._fail(position, FailureReason.INTERNAL_ERROR, str(exc) or type(exc).__name__)
        return position

    def launch(self, position: Position) -> asyncio.Task:
        task = asyncio.create_task(self.run_lifecycle(position), name=f"lifecycle:{short_id(position.asset_id)}")
        self._lifecycle_tasks[position.asset_id] = task
        task.add_done_callback(lambda t, key=position.asset_id: self._forget_lifecycle(key, t))
        return task

    def _forget_lifecycle(self, asset_id: str, task: asyncio.Task) -> None:
        if self._lifecycle_tasks.get(asset_id) is task:
            self._lifecycle_tasks.pop(asset_id, None)

    async def wait_idle(self) -> None:
        tasks = [t for t in list(self._lifecycle_tasks.values()) + list(self._monitor_tasks.values()) if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---- operator actions ----

    async def close_position(self, asset_id: str) -> bool:
        position = self.get(asset_id)
        if position is None:
            return False
        if position.state is PositionState.DISPOSING:
            return await self.retry_disposal(asset_id)
        if position.state is not PositionState.HOLDING:
            logger.info("CLOSE_SKIP token=%s state=%s", short_id(position.asset_id), position.state.value)
            return False
        self._cancel_monitor(position.asset_id)
        logger.info("CLOSE_MANUAL token=%s", short_id(position.asset_id))
        return await self.dispose(position, ExitReason.MANUAL)

    async def close_all(self) -> int:
        closed = 0
        for position in list(self._active.values()):
            if await self.close_position(position.asset_id):
                closed += 1
        return closed

    async def retry_disposal(self, asset_id: str) -> bool:
        position = self.get(asset_id)
        if position is None or position.state is not PositionState.DISPOSING:
            return False
        reason = position.pending_exit_reason or ExitReason.MANUAL
        logger.info("DISPOSE_RETRY token=%s reason=%s", short_id(position.asset_id), reason.value)
        return await self.dispose(position, reason)

    def abandon(self, asset_id: str) -> bool:
        """Write off a position the operator will not sell; recorded as a total loss."""
        position = self.get(asset_id)
        if position is None or position.state not in (PositionState.HOLDING, PositionState.DISPOSING):
            return False
        if position.asset_id in self._disposing:
            return False
        self._cancel_monitor(position.asset_id)
        self._fail(position, FailureReason.ABANDONED, "abandoned by operator", pnl_percent=-100.0)
        return True

    def _cancel_monitor(self, asset_id: str) -> None:
        task = self._monitor_tasks.pop(asset_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def shutdown(self) -> None:
        """Cancel every timer and lifecycle task; positions stay as they are."""
        tasks = [t for t in list(self._monitor_tasks.values()) + list(self._lifecycle_tasks.values()) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._monitor_tasks.clear()
        self._lifecycle_tasks.clear()
        logger.info("POSITION_MANAGER_STOPPED active=%s", self.active_count())


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
