from __future__ import annotations

import argparse
import json
import os
import statistics
import sys
from collections import Counter
from typing import Any

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from config import load_settings  # noqa: E402
from trading.journal import StateSnapshotStore, TradeJournal  # noqa: E402
from trading.models import PositionState, TradeRecord  # noqa: E402


def _record_row(record: TradeRecord) -> dict[str, Any]:
    return {
        "asset_id": record.asset_id,
        "exit_reason": record.exit_reason,
        "final_state": record.final_state,
        "pnl_percent": round(record.pnl_percent, 2),
        "hold_ms": record.hold_duration_ms,
        "recorded_at": record.recorded_at.isoformat(),
    }


def build_report(trades_path: str, state_path: str, *, last: int = 10) -> dict[str, Any]:
    records = TradeJournal(trades_path).read_records()
    snapshot = StateSnapshotStore(state_path).load()

    closed = [r for r in records if r.final_state == PositionState.CLOSED.value]
    failed = [r for r in records if r.final_state == PositionState.FAILED.value]
    wins = [r for r in closed if r.pnl_percent > 0]
    pnls = [r.pnl_percent for r in closed]

    return {
        "trades_file": trades_path,
        "state_file": state_path,
        "running": bool(snapshot.get("running", False)),
        "updated_at": snapshot.get("updatedAt"),
        "session_stats": dict(snapshot.get("stats") or {}),
        "active_positions": [row[0] for row in snapshot.get("activePositions") or [] if row],
        "journal": {
            "records": len(records),
            "closed": len(closed),
            "failed": len(failed),
            "wins": len(wins),
            "win_rate_pct": round(len(wins) / len(closed) * 100.0, 2) if closed else 0.0,
            "avg_pnl_pct": round(statistics.fmean(pnls), 2) if pnls else 0.0,
            "median_pnl_pct": round(statistics.median(pnls), 2) if pnls else 0.0,
            "best_pnl_pct": round(max(pnls), 2) if pnls else 0.0,
            "worst_pnl_pct": round(min(pnls), 2) if pnls else 0.0,
            "exit_reasons": dict(Counter(r.exit_reason for r in records).most_common()),
        },
        "last_trades": [_record_row(r) for r in records[-max(0, last):]] if last > 0 else [],
    }


def format_report(report: dict[str, Any]) -> str:
    journal = report["journal"]
    stats = report["session_stats"]
    lines = [
        "# Session Report",
        f"- Running: {report['running']} (updated {report['updated_at'] or '-'})",
        f"- Detected/Screened/Rejected: {stats.get('detected', 0)}/{stats.get('screened', 0)}/{stats.get('rejected', 0)}",
        f"- Executed: {stats.get('executed', 0)}  Skipped (capacity): {stats.get('skipped_capacity', 0)}",
        f"- Timeouts: {stats.get('timeouts', 0)}  Stop losses: {stats.get('stop_losses', 0)}  Failed: {stats.get('failed', 0)}",
        f"- Active positions: {', '.join(report['active_positions']) or 'none'}",
        "",
        "## Journal",
        f"- Records: {journal['records']} (closed {journal['closed']}, failed {journal['failed']})",
        f"- Winrate: {journal['win_rate_pct']}% ({journal['wins']}W / {journal['closed'] - journal['wins']}L)",
        f"- Avg/Median P&L: {journal['avg_pnl_pct']}% / {journal['median_pnl_pct']}%",
        f"- Best/Worst: {journal['best_pnl_pct']}% / {journal['worst_pnl_pct']}%",
        "",
        "## Exit Reasons",
    ]
    for reason, count in journal["exit_reasons"].items():
        lines.append(f"- {reason}: {count}")
    if report["last_trades"]:
        lines += ["", "## Last Trades"]
        for row in report["last_trades"]:
            lines.append(
                f"- {row['recorded_at']} {row['asset_id']} {row['exit_reason']} "
                f"pnl={row['pnl_percent']}% hold={row['hold_ms']}ms"
            )
    return "\n".join(lines)


def main() -> int:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Summarize the trade journal and state snapshot.")
    parser.add_argument("--trades", default=settings.paths.trades_file, help="Trade journal JSONL")
    parser.add_argument("--state", default=settings.paths.state_file, help="State snapshot JSON")
    parser.add_argument("--last", type=int, default=10, help="How many recent trades to list")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    report = build_report(args.trades, args.state, last=args.last)
    if args.json:
        print(json.dumps(report, ensure_ascii=False, indent=2))
    else:
        print(format_report(report))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
