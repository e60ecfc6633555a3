from __future__ import annotations

import csv
from pathlib import Path
from typing import Any

from hedge_bot.models import RunResult, TradeRecord

TRADE_COLUMNS = [
    "timestamp",
    "cycle",
    "action",
    "leg",
    "price",
    "size",
    "cost",
    "cum_leg_qty",
    "avg_leg_price",
    "total_spent",
    "order_id",
    "status",
    "filled_price",
    "filled_size",
    "failure_reason",
    "reason",
]

SUMMARY_COLUMNS = [
    "run_start",
    "run_end",
    "strategy",
    "market",
    "total_cycles",
    "total_orders_submitted",
    "total_orders_filled",
    "total_orders_failed",
    "total_trades",
    "total_spent",
    "budget_limit",
    "budget_used",
    "budget_remaining",
    "current_value",
    "pnl",
    "pnl_percent",
    "higher_size",
    "lower_size",
    "higher_usd",
    "lower_usd",
    "pair_cost",
    "balance_ratio",
    "asym_ratio",
    "stop_reason",
]


def _fmt(value: float, places: int = 4) -> str:
    return f"{value:.{places}f}"


class CsvRecorder:
    """Append-only CSV file; the header is written only when the file is new."""

    def __init__(self, path: str, columns: list[str]) -> None:
        self.path = Path(path)
        self.columns = columns

    def append_rows(self, rows: list[dict[str, Any]]) -> int:
        if not rows:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists() or self.path.stat().st_size == 0
        with self.path.open("a", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=self.columns, extrasaction="ignore")
            if new_file:
                writer.writeheader()
            writer.writerows(rows)
        return len(rows)

    def read_rows(self) -> list[dict[str, str]]:
        if not self.path.exists():
            return []
        with self.path.open("r", newline="", encoding="utf-8") as handle:
            return list(csv.DictReader(handle))


class TradeRecorder(CsvRecorder):
    def __init__(self, path: str) -> None:
        super().__init__(path, TRADE_COLUMNS)

    def append(self, records: list[TradeRecord]) -> int:
        rows = [
            {
                "timestamp": record.timestamp.isoformat(),
                "cycle": record.cycle,
                "action": record.action,
                "leg": record.leg,
                "price": _fmt(record.price),
                "size": _fmt(record.size, 2),
                "cost": _fmt(record.cost),
                "cum_leg_qty": _fmt(record.cum_leg_qty, 2),
                "avg_leg_price": _fmt(record.avg_leg_price),
                "total_spent": _fmt(record.total_spent),
                "order_id": record.order_id,
                "status": record.status.value,
                "filled_price": _fmt(record.filled_price),
                "filled_size": _fmt(record.filled_size, 2),
                "failure_reason": record.failure_reason,
                "reason": record.reason,
            }
            for record in records
        ]
        return self.append_rows(rows)


class SummaryRecorder(CsvRecorder):
    def __init__(self, path: str) -> None:
        super().__init__(path, SUMMARY_COLUMNS)

    def append(self, result: RunResult) -> int:
        row = {
            "run_start": result.run_start.isoformat(),
            "run_end": result.run_end.isoformat(),
            "strategy": result.strategy,
            "market": result.market,
            "total_cycles": result.total_cycles,
            "total_orders_submitted": result.total_orders_submitted,
            "total_orders_filled": result.total_orders_filled,
            "total_orders_failed": result.total_orders_failed,
            "total_trades": result.total_trades,
            "total_spent": _fmt(result.total_spent),
            "budget_limit": _fmt(result.budget_limit, 2),
            "budget_used": _fmt(result.budget_used),
            "budget_remaining": _fmt(result.budget_remaining),
            "current_value": _fmt(result.current_value),
            "pnl": _fmt(result.pnl),
            "pnl_percent": _fmt(result.pnl_percent, 2),
            "higher_size": _fmt(result.higher_size, 2),
            "lower_size": _fmt(result.lower_size, 2),
            "higher_usd": _fmt(result.higher_usd),
            "lower_usd": _fmt(result.lower_usd),
            "pair_cost": _fmt(result.pair_cost),
            "balance_ratio": _fmt(result.balance_ratio),
            "asym_ratio": _fmt(result.asym_ratio),
            "stop_reason": result.stop_reason,
        }
        return self.append_rows([row])


def _as_float(raw: str | None) -> float:
    try:
        return float(raw or 0.0)
    except ValueError:
        return 0.0


def report(path: str) -> dict[str, Any]:
    rows = SummaryRecorder(path).read_rows()
    pnls = [_as_float(row.get("pnl")) for row in rows]
    pair_costs = [_as_float(row.get("pair_cost")) for row in rows]
    pair_costs = [value for value in pair_costs if value > 0]
    by_strategy: dict[str, dict[str, float]] = {}
    for row, pnl in zip(rows, pnls):
        bucket = by_strategy.setdefault(row.get("strategy") or "unknown", {"runs": 0, "pnl": 0.0})
        bucket["runs"] += 1
        bucket["pnl"] += pnl
    return {
        "summary_file": path,
        "runs": len(rows),
        "total_pnl": round(sum(pnls), 4),
        "win_rate": round(sum(1 for pnl in pnls if pnl > 0) / len(pnls), 4) if pnls else 0.0,
        "mean_pair_cost": round(sum(pair_costs) / len(pair_costs), 4) if pair_costs else 0.0,
        "total_spent": round(sum(_as_float(row.get("total_spent")) for row in rows), 4),
        "by_strategy": {
            name: {"runs": int(bucket["runs"]), "pnl": round(bucket["pnl"], 4)}
            for name, bucket in sorted(by_strategy.items())
        },
    }
