"""Data model shared by the risk screen, the position manager and the journal."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from utils.addressing import normalize_asset_id


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CheckOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


class PositionState(str, Enum):
    RESERVED = "RESERVED"
    ACQUIRING = "ACQUIRING"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    HOLDING = "HOLDING"
    DISPOSING = "DISPOSING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PositionState.CLOSED, PositionState.FAILED)


class ExitReason(str, Enum):
    TP = "TP"
    SL = "SL"
    TIME = "TIME"
    MANUAL = "MANUAL"


class FailureReason(str, Enum):
    ACQUISITION_FAILED = "ACQUISITION_FAILED"
    NO_REFERENCE = "NO_REFERENCE"
    SETTLEMENT_REJECTED = "SETTLEMENT_REJECTED"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"
    NO_HOLDINGS = "NO_HOLDINGS"
    ABANDONED = "ABANDONED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SettlementStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


# State machine edges. FAILED is reachable from every non-terminal state.
ALLOWED_TRANSITIONS: dict[PositionState, frozenset[PositionState]] = {
    PositionState.RESERVED: frozenset({PositionState.ACQUIRING, PositionState.FAILED}),
    PositionState.ACQUIRING: frozenset({PositionState.AWAITING_CONFIRMATION, PositionState.FAILED}),
    PositionState.AWAITING_CONFIRMATION: frozenset({PositionState.HOLDING, PositionState.FAILED}),
    PositionState.HOLDING: frozenset({PositionState.DISPOSING, PositionState.FAILED}),
    PositionState.DISPOSING: frozenset({PositionState.CLOSED, PositionState.FAILED}),
    PositionState.CLOSED: frozenset(),
    PositionState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class CandidateEvent:
    asset_id: str
    origin_signature: str
    detected_at_slot: int
    detected_at_wall_clock: float

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CandidateEvent":
        """Build from a detection row; accepts the feed's `mint`/`signature`/`slot`/`timestamp` keys."""
        asset_id = normalize_asset_id(payload.get("assetId") or payload.get("asset_id") or payload.get("mint"))
        if not asset_id:
            raise ValueError("candidate has no asset id")
        ts = payload.get("detectedAtWallClock", payload.get("timestamp"))
        wall_clock = float(ts) if ts is not None else utc_now().timestamp()
        if wall_clock > 1e12:
            # Millisecond epoch from JS-style producers.
            wall_clock /= 1000.0
        return cls(
            asset_id=asset_id,
            origin_signature=str(payload.get("originSignature") or payload.get("signature") or ""),
            detected_at_slot=int(payload.get("detectedAtSlot", payload.get("slot", 0)) or 0),
            detected_at_wall_clock=wall_clock,
        )


@dataclass(frozen=True)
class RiskCheckResult:
    check_name: str
    outcome: CheckOutcome
    reason: str = ""
    numeric_score: float | None = None
    raw_details: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False

    @property
    def passed(self) -> bool:
        return self.outcome is CheckOutcome.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_name": self.check_name,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "numeric_score": self.numeric_score,
            "skipped": self.skipped,
            "raw_details": dict(self.raw_details),
        }


@dataclass(frozen=True)
class SafetyVerdict:
    asset_id: str
    accepted: bool
    composite_score: int
    checks: dict[str, RiskCheckResult]
    rejection_reason: str | None
    evaluated_at: datetime
    rejection_key: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "accepted": self.accepted,
            "composite_score": self.composite_score,
            "checks": {name: row.to_dict() for name, row in self.checks.items()},
            "rejection_reason": self.rejection_reason,
            "evaluated_at": self.evaluated_at.isoformat(),
        }


@dataclass
class Position:
    asset_id: str
    slot_index: int
    committed_capital: float
    reserved_at: datetime = field(default_factory=utc_now)
    state: PositionState = PositionState.RESERVED
    acquisition_time: datetime | None = None
    acquisition_reference_price: float | None = None
    acquisition_tx_ref: str | None = None
    disposal_tx_ref: str | None = None
    acquired_quantity: float | None = None
    last_price: float | None = None
    last_pnl_percent: float | None = None
    price_ticks: int = 0
    pending_exit_reason: ExitReason | None = None
    failure_reason: FailureReason | None = None
    disposal_failures: int = 0
    last_error: str = ""
    closed_at: datetime | None = None
    pnl_percent: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def snapshot(self) -> dict[str, Any]:
        row = asdict(self)
        for key in ("reserved_at", "acquisition_time", "closed_at"):
            value = getattr(self, key)
            row[key] = value.isoformat() if value else None
        row["state"] = self.state.value
        row["pending_exit_reason"] = self.pending_exit_reason.value if self.pending_exit_reason else None
        row["failure_reason"] = self.failure_reason.value if self.failure_reason else None
        return row


@dataclass(frozen=True)
class TradeRecord:
    asset_id: str
    acquisition_ref: str | None
    disposal_ref: str | None
    exit_reason: str
    pnl_percent: float
    hold_duration_ms: int
    recorded_at: datetime
    committed_capital: float = 0.0
    slot_index: int = 0
    final_state: str = PositionState.CLOSED.value
    reference_price: float | None = None
    exit_price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        row = asdict(self)
        row["recorded_at"] = self.recorded_at.isoformat()
        return row

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "TradeRecord":
        return cls(
            asset_id=str(row.get("asset_id", "")),
            acquisition_ref=row.get("acquisition_ref"),
            disposal_ref=row.get("disposal_ref"),
            exit_reason=str(row.get("exit_reason", "")),
            pnl_percent=float(row.get("pnl_percent", 0.0) or 0.0),
            hold_duration_ms=int(row.get("hold_duration_ms", 0) or 0),
            recorded_at=datetime.fromisoformat(str(row.get("recorded_at"))),
            committed_capital=float(row.get("committed_capital", 0.0) or 0.0),
            slot_index=int(row.get("slot_index", 0) or 0),
            final_state=str(row.get("final_state", PositionState.CLOSED.value)),
            reference_price=row.get("reference_price"),
            exit_price=row.get("exit_price"),
        )
