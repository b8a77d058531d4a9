"""Append-only trade journal, decision logs and the operator state snapshot."""

from __future__ import annotations

import logging
import os
from typing import Any

from trading.models import TradeRecord, utc_now
from utils.log_contracts import position_event, screening_decision_event
from utils.state_file import StateFileLockError, append_jsonl_locked, atomic_write_json, read_json, read_jsonl

logger = logging.getLogger(__name__)

STATE_SNAPSHOT_VERSION = 1


class TradeJournal:
    """One JSON line per terminal position."""

    def __init__(self, path: str) -> None:
        self.path = path

    def append(self, record: TradeRecord) -> None:
        append_jsonl_locked(self.path, record.to_dict())

    def read_records(self) -> list[TradeRecord]:
        out: list[TradeRecord] = []
        for row in read_jsonl(self.path):
            try:
                out.append(TradeRecord.from_dict(row))
            except (TypeError, ValueError) as exc:
                logger.warning("JOURNAL_BAD_ROW path=%s err=%s", self.path, exc)
        return out


class DecisionLog:
    """Structured screening and position events for post-hoc analysis.

    Writes are best-effort: a locked or unwritable log file is reported and the
    trading loop carries on.
    """

    def __init__(self, candidates_path: str, positions_path: str, *, run_tag: str = "") -> None:
        self.candidates_path = candidates_path
        self.positions_path = positions_path
        self.run_tag = run_tag

    def _write(self, path: str, row: dict[str, Any]) -> None:
        if not path:
            return
        try:
            append_jsonl_locked(path, row)
        except (OSError, StateFileLockError) as exc:
            logger.warning("DECISION_LOG_WRITE_FAIL path=%s err=%s", path, exc)

    def screening(self, event: dict[str, Any]) -> dict[str, Any]:
        row = screening_decision_event(event, run_tag=self.run_tag)
        self._write(self.candidates_path, row)
        return row

    def position(self, event: dict[str, Any]) -> dict[str, Any]:
        row = position_event(event, run_tag=self.run_tag)
        self._write(self.positions_path, row)
        return row


class StateSnapshotStore:
    def __init__(self, path: str) -> None:
        self.path = path

    def save(self, *, running: bool, stats: dict[str, Any], active_positions: list[tuple[str, dict[str, Any]]]) -> None:
        payload = {
            "version": STATE_SNAPSHOT_VERSION,
            "running": bool(running),
            "stats": dict(stats),
            "activePositions": [[asset_id, snapshot] for asset_id, snapshot in active_positions],
            "updatedAt": utc_now().isoformat(),
        }
        atomic_write_json(self.path, payload)

    def load(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        data = read_json(self.path, default={})
        return data if isinstance(data, dict) else {}
