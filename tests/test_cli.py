from __future__ import annotations

import contextlib
import io
import json
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

from tests.helpers import DOWN, UP, strategy, test_config
from hedge_bot.config import SimulatorConfig
from hedge_bot.execution import BaseExecutor
from hedge_bot.feeds import PriceFeed
from hedge_bot.main import BotRuntime, _apply_simulate_overrides, build_parser, cli
from hedge_bot.models import Position, PriceQuote, TradingDecision


def run_cli(argv: list[str], env: dict[str, str] | None = None) -> tuple[int, str]:
    out = io.StringIO()
    with patch.dict("os.environ", env or {}, clear=True), patch(
        "hedge_bot.main._install_signal_handlers"
    ), contextlib.redirect_stdout(out):
        code = cli(argv)
    return code, out.getvalue()


class ParserTests(unittest.TestCase):
    def test_simulate_defaults(self) -> None:
        args = build_parser().parse_args(["simulate"])
        self.assertEqual(args.command, "simulate")
        self.assertEqual(args.feed, "synthetic")
        self.assertEqual(args.pools, 1)
        self.assertIsNone(args.strategy)
        self.assertFalse(args.fast)

    def test_simulate_flags(self) -> None:
        args = build_parser().parse_args(
            ["simulate", "--strategy", "raisemV1", "--seed", "9", "--budget", "50", "--interval-ms", "250", "--fast"]
        )
        self.assertEqual(args.strategy, "raisemV1")
        self.assertEqual(args.seed, 9)
        self.assertAlmostEqual(args.budget, 50.0, places=9)
        self.assertAlmostEqual(args.interval_ms, 250.0, places=9)
        self.assertTrue(args.fast)

    def test_unknown_strategy_is_rejected_by_parser(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
            build_parser().parse_args(["simulate", "--strategy", "martingale"])

    def test_run_mode_choices(self) -> None:
        args = build_parser().parse_args(["run", "--mode", "live"])
        self.assertEqual(args.mode, "live")

    def test_simulate_overrides(self) -> None:
        args = build_parser().parse_args(["simulate", "--strategy", "karas", "--seed", "4", "--budget", "75"])
        cfg = _apply_simulate_overrides(test_config(), args)
        self.assertEqual(cfg.strategy.name, "karas")
        self.assertEqual(cfg.simulator.seed, 4)
        self.assertAlmostEqual(cfg.simulator.budget_usd, 75.0, places=9)

    def test_non_positive_budget_rejected(self) -> None:
        args = build_parser().parse_args(["simulate", "--budget", "0"])
        with self.assertRaises(ValueError):
            _apply_simulate_overrides(test_config(), args)


class CommandTests(unittest.TestCase):
    def test_presets_prints_json(self) -> None:
        code, out = run_cli(["presets", "--strategy", "karas"])
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual(list(payload), ["karas"])
        self.assertAlmostEqual(payload["karas"]["target_pair_cost"], 0.965, places=9)

    def test_presets_unknown_strategy_returns_error(self) -> None:
        code, out = run_cli(["presets", "--strategy", "martingale"])
        self.assertEqual(code, 2)
        self.assertIn("error", json.loads(out))

    def test_simulate_bad_budget_returns_error(self) -> None:
        code, out = run_cli(["simulate", "--budget", "-5"])
        self.assertEqual(code, 2)
        self.assertIn("budget", json.loads(out)["error"])

    def test_fast_simulation_writes_records_and_report(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env = {
                "SIM_ORDERS_FILE": str(Path(tmp) / "orders.csv"),
                "SIM_SUMMARY_FILE": str(Path(tmp) / "summary.csv"),
                "LOG_LEVEL": "WARNING",
            }
            code, out = run_cli(
                ["simulate", "--fast", "--seed", "5", "--strategy", "nuoiem", "--interval-ms", "5000", "--pools", "2"],
                env,
            )
            self.assertEqual(code, 0)
            payload = json.loads(out)
            self.assertEqual(payload["strategy"], "nuoiem")
            self.assertEqual(payload["pools"], 2)
            self.assertEqual([run["stop_reason"] for run in payload["runs"]], ["pool_ended", "pool_ended"])
            self.assertEqual(payload["runs"][0]["cycles"], 181)
            self.assertTrue((Path(tmp) / "summary.csv").exists())

            code, out = run_cli(["report"], env)
            self.assertEqual(code, 0)
            self.assertEqual(json.loads(out)["runs"], 2)


class FakeExecutor(BaseExecutor):
    def __init__(self) -> None:
        self.submitted: list[TradingDecision] = []
        self.active: dict[str, str] = {}
        self.cancelled: list[str] = []

    @property
    def owner_address(self) -> str:
        return "0xowner"

    def submit(self, decision: TradingDecision) -> str:
        self.submitted.append(decision)
        order_id = f"oid-{len(self.submitted)}"
        self.active[order_id] = decision.leg_id
        return order_id

    def cancel(self, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return self.active.pop(order_id, None) is not None

    def list_active(self) -> list[tuple[str, str]]:
        return list(self.active.items())


class FakeLiveFeed(PriceFeed):
    def __init__(self) -> None:
        self.market = "btc-updown-15m-1760700600"
        self.slug = self.market
        self.leg_ids = (UP, DOWN)
        self.held: list[Position] = []

    def get_price(self, leg_id: str) -> PriceQuote:
        return {UP: PriceQuote(0.54, 0.55), DOWN: PriceQuote(0.39, 0.40)}[leg_id]

    def get_positions(self, owner: str) -> list[Position]:
        return list(self.held)

    def minutes_remaining(self) -> float:
        return 14.0


class BotRuntimeTests(unittest.TestCase):
    def runtime(self, budget: float = 100.0) -> tuple[BotRuntime, FakeExecutor, FakeLiveFeed]:
        cfg = test_config(strategy=strategy(), simulator=replace(SimulatorConfig(), budget_usd=budget))
        executor = FakeExecutor()
        runtime = BotRuntime(cfg, executor=executor)  # type: ignore[arg-type]
        feed = FakeLiveFeed()
        runtime.feed = feed  # type: ignore[assignment]
        runtime._ensure_pool = lambda: feed  # type: ignore[method-assign]
        return runtime, executor, feed

    def test_cycle_submits_probe(self) -> None:
        runtime, executor, _feed = self.runtime()
        runtime._cycle()
        self.assertEqual(len(executor.submitted), 1)
        self.assertEqual(executor.submitted[0].leg_id, UP)
        self.assertAlmostEqual(runtime._pool_committed, executor.submitted[0].cost, places=9)

    def test_cycle_respects_pool_budget(self) -> None:
        runtime, executor, _feed = self.runtime(budget=5.0)
        runtime._cycle()
        self.assertEqual(executor.submitted, [])

    def test_close_cancels_active_orders(self) -> None:
        runtime, executor, _feed = self.runtime()
        runtime._cycle()
        executor.active["oid-other"] = "other-market-token"
        runtime.close()
        self.assertEqual(executor.cancelled, ["oid-1"])
        self.assertIn("oid-other", executor.active)


if __name__ == "__main__":
    unittest.main()
