from __future__ import annotations

import argparse
from dataclasses import asdict, replace
import json
import logging
import random
import signal
import time
from typing import Any, Callable, Iterable

from hedge_bot.clients_clob import ClobClient
from hedge_bot.clients_data import DataApiClient
from hedge_bot.clients_gamma import GammaClient, rolling_slug
from hedge_bot.config import PRESETS, BotConfig, load_config, strategy_preset
from hedge_bot.engines.engine_hedge import HedgeEngine
from hedge_bot.execution import LiveExecutor, SimulatedExchange, SubmissionError, validate_decision
from hedge_bot.feeds import FeedError, LiveFeed, PoolResolutionError, PriceFeed, SyntheticFeed
from hedge_bot.models import Action, Snapshot, utc_now
from hedge_bot.simulator import Simulator, VirtualClock, run_pools
from hedge_bot.storage import SummaryRecorder, TradeRecorder, report

LOGGER = logging.getLogger("hedge_bot")


class BotRuntime:
    """Live loop: one engine per pool, real orders through the CLOB adapter."""

    def __init__(self, config: BotConfig, executor: LiveExecutor | None = None) -> None:
        self.config = config
        self.gamma = GammaClient(config.gamma_url, timeout_seconds=config.api_timeout_seconds)
        self.clob = ClobClient(config.clob_url, timeout_seconds=config.api_timeout_seconds)
        self.data_api = DataApiClient(config.data_api_url, timeout_seconds=config.api_timeout_seconds)
        self.executor = executor if executor is not None else LiveExecutor(config)
        self.engine = HedgeEngine(config.strategy)
        self.feed: LiveFeed | None = None
        self._pool_committed = 0.0
        self._cycle_counter = 0
        self._keep_running = True

    def stop(self) -> None:
        self._keep_running = False

    def _current_slug(self) -> str:
        if self.config.market_slug:
            return self.config.market_slug
        return rolling_slug(self.config.slug_pattern, self.config.pool_minutes)

    def _ensure_pool(self) -> LiveFeed:
        slug = self._current_slug()
        if self.feed is not None and self.feed.slug == slug:
            return self.feed
        feed = LiveFeed(self.clob, self.gamma, slug, data_api=self.data_api)
        feed.resolve()
        if self.feed is not None:
            LOGGER.info("pool_rollover from=%s to=%s", self.feed.slug, slug)
        self.feed = feed
        self.engine.reset()
        self._pool_committed = 0.0
        return feed

    def preflight(self) -> None:
        self.executor.preflight()
        self._ensure_pool()

    def run(self) -> None:
        while self._keep_running:
            started = time.time()
            self._cycle()
            elapsed = time.time() - started
            sleep_seconds = max(0.0, self.config.poll_interval_seconds - elapsed)
            if sleep_seconds > 0:
                time.sleep(sleep_seconds)

    def close(self) -> None:
        if self.feed is None:
            return
        for order_id, leg_id in self._active_orders():
            if leg_id in self.feed.leg_ids and self.executor.cancel(order_id):
                LOGGER.info("close cancelled id=%s leg=%s", order_id, leg_id)
        ledger = self.engine.metrics()
        if ledger:
            LOGGER.info(
                "close market=%s higher=%.2f lower=%.2f pair=%.4f",
                self.feed.market,
                ledger["higher_size"],
                ledger["lower_size"],
                ledger["pair_cost"],
            )

    def _active_orders(self) -> list[tuple[str, str]]:
        try:
            return self.executor.list_active()
        except RuntimeError as exc:
            LOGGER.warning("list_active_failed error=%s", exc)
            return []

    def _cycle(self) -> None:
        self._cycle_counter += 1
        try:
            feed = self._ensure_pool()
        except PoolResolutionError as exc:
            LOGGER.warning("cycle=%s pool_unresolved error=%s", self._cycle_counter, exc)
            return
        try:
            quotes = feed.quotes()
            held = {p.asset: p.size for p in feed.get_positions(self.executor.owner_address)}
        except FeedError as exc:
            LOGGER.warning("cycle=%s feed_skip error=%s", self._cycle_counter, exc)
            return
        snapshot = Snapshot(
            market=feed.market,
            leg_ids=feed.leg_ids,
            quotes=quotes,
            positions={leg_id: held.get(leg_id, 0.0) for leg_id in feed.leg_ids},
            minutes_remaining=feed.minutes_remaining(),
        )
        decision = self.engine.execute(snapshot)
        if decision is None or decision.action == Action.HOLD:
            return
        problem = validate_decision(decision, feed.leg_ids)
        if problem:
            LOGGER.warning("cycle=%s decision_invalid reason=%s", self._cycle_counter, problem)
            return
        if any(leg_id == decision.leg_id for _order_id, leg_id in self._active_orders()):
            LOGGER.info("cycle=%s decision_skip leg=%s reason=active order", self._cycle_counter, decision.leg_id)
            return
        budget = self.config.simulator.budget_usd
        if budget > 0 and self._pool_committed + decision.cost > budget + 1e-9:
            LOGGER.warning(
                "cycle=%s decision_skip reason=budget committed=%.2f cost=%.2f limit=%.2f",
                self._cycle_counter,
                self._pool_committed,
                decision.cost,
                budget,
            )
            return
        try:
            self.executor.submit(decision)
        except SubmissionError as exc:
            LOGGER.warning("cycle=%s submit_failed leg=%s reason=%s", self._cycle_counter, decision.leg_id, exc.reason)
            return
        self._pool_committed += decision.cost


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore", "urllib3", "py_clob_client"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def _error(message: str) -> int:
    print(json.dumps({"error": message}))
    return 2


def _install_signal_handlers(stop: Callable[[], None]) -> None:
    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning("Received signal %s, stopping loop (press Ctrl+C again to force-exit)", signum)
        stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)


def _apply_simulate_overrides(config: BotConfig, args: argparse.Namespace) -> BotConfig:
    if getattr(args, "strategy", None):
        config = replace(config, strategy=strategy_preset(args.strategy))
    sim = config.simulator
    if getattr(args, "seed", None) is not None:
        sim = replace(sim, seed=int(args.seed))
    if getattr(args, "budget", None) is not None:
        if args.budget <= 0:
            raise ValueError("--budget must be > 0")
        sim = replace(sim, budget_usd=float(args.budget))
    if getattr(args, "slug", None):
        config = replace(config, market_slug=args.slug.strip())
    return replace(config, simulator=sim)


def _build_simulator(
    config: BotConfig,
    feed_kind: str,
    rng: random.Random,
    clock: Callable[[], float],
    sleep: Callable[[float], Any] | None,
) -> Simulator:
    feed: PriceFeed
    if feed_kind == "live":
        slug = config.market_slug or rolling_slug(config.slug_pattern, config.pool_minutes)
        live = LiveFeed(
            ClobClient(config.clob_url, timeout_seconds=config.api_timeout_seconds),
            GammaClient(config.gamma_url, timeout_seconds=config.api_timeout_seconds),
            slug,
        )
        live.resolve()
        feed = live
    else:
        feed = SyntheticFeed(rng=rng, clock=clock, pool_minutes=float(config.pool_minutes))
    return Simulator(
        engine=HedgeEngine(config.strategy, clock=clock),
        feed=feed,
        exchange=SimulatedExchange(config.simulator, rng=rng, clock=clock),
        config=config.simulator,
        clock=clock,
        sleep=sleep,
        trade_recorder=TradeRecorder(config.simulator.orders_file),
        summary_recorder=SummaryRecorder(config.simulator.summary_file),
    )


def _simulate(config: BotConfig, args: argparse.Namespace, feed_kind: str) -> int:
    rng = random.Random(config.simulator.seed)
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Any] | None = None
    if getattr(args, "fast", False) and feed_kind == "synthetic":
        virtual = VirtualClock()
        clock, sleep = virtual, virtual.sleep

    interval_ms = float(args.interval_ms) if getattr(args, "interval_ms", None) else config.poll_interval_seconds * 1000.0
    max_duration_ms = getattr(args, "max_duration_ms", None)
    pools = max(1, int(getattr(args, "pools", 1) or 1))
    current: dict[str, Simulator] = {}

    def _factory(index: int) -> Simulator:
        simulator = _build_simulator(config, feed_kind, rng, clock, sleep)
        current["sim"] = simulator
        return simulator

    def _stop() -> None:
        simulator = current.get("sim")
        if simulator is not None:
            simulator.stop()

    _install_signal_handlers(_stop)
    LOGGER.info(
        "Starting simulation strategy=%s feed=%s pools=%s seed=%s budget=%.2f",
        config.strategy.name,
        feed_kind,
        pools,
        config.simulator.seed,
        config.simulator.budget_usd,
    )
    try:
        results, bankroll = run_pools(_factory, pools, interval_ms, max_duration_ms)
    except PoolResolutionError as exc:
        LOGGER.error("Pool resolution failed: %s", exc)
        return _error(str(exc))
    payload = {
        "strategy": config.strategy.name,
        "pools": len(results),
        "bankroll_pnl": round(bankroll, 4),
        "runs": [
            {
                "market": result.market,
                "stop_reason": result.stop_reason,
                "cycles": result.total_cycles,
                "submitted": result.total_orders_submitted,
                "filled": result.total_orders_filled,
                "failed": result.total_orders_failed,
                "spent": round(result.total_spent, 4),
                "value": round(result.current_value, 4),
                "pnl": round(result.pnl, 4),
                "pair_cost": round(result.pair_cost, 4),
            }
            for result in results
        ],
        "finished_at": utc_now().isoformat(),
    }
    print(json.dumps(payload, indent=2))
    return 0


def _simulate_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    try:
        config = _apply_simulate_overrides(config, args)
    except ValueError as exc:
        LOGGER.error(str(exc))
        return _error(str(exc))
    return _simulate(config, args, args.feed)


def _run_command(args: argparse.Namespace) -> int:
    config = load_config()
    if args.mode:
        config = replace(config, mode=args.mode.lower())
    _setup_logging(config.log_level)
    if config.paper_mode:
        return _simulate(config, args, "live")

    runtime = BotRuntime(config)
    try:
        runtime.preflight()
    except (RuntimeError, PoolResolutionError) as exc:
        LOGGER.error("Live preflight failed: %s", exc)
        return _error(str(exc))
    LOGGER.info("Starting bot mode=%s strategy=%s", config.mode, config.strategy.name)
    _install_signal_handlers(runtime.stop)
    try:
        runtime.run()
        return 0
    except Exception as exc:
        LOGGER.error("Fatal runtime error: %s", exc)
        return _error(str(exc))
    finally:
        runtime.close()


def _report_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    path = args.summary_file or config.simulator.summary_file
    print(json.dumps(report(path), indent=2, default=str))
    return 0


def _presets_command(args: argparse.Namespace) -> int:
    if args.strategy:
        try:
            presets = {args.strategy: strategy_preset(args.strategy)}
        except ValueError as exc:
            return _error(str(exc))
    else:
        presets = PRESETS
    print(json.dumps({name: asdict(preset) for name, preset in presets.items()}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hedge_bot", description="Two-leg hedge trading bot")
    sub = parser.add_subparsers(dest="command", required=True)

    simulate = sub.add_parser("simulate", help="Run the strategy against the order simulator")
    simulate.add_argument("--strategy", choices=sorted(PRESETS), default=None)
    simulate.add_argument("--seed", type=int, default=None, help="Seed for fills, failures and synthetic prices")
    simulate.add_argument("--budget", type=float, default=None, help="Pool budget in USD (e.g. 100)")
    simulate.add_argument("--interval-ms", type=float, default=None, help="Polling interval in milliseconds")
    simulate.add_argument("--max-duration-ms", type=float, default=None, help="Stop after this many milliseconds")
    simulate.add_argument("--pools", type=int, default=1, help="Number of consecutive pools to simulate")
    simulate.add_argument("--feed", choices=("synthetic", "live"), default="synthetic")
    simulate.add_argument("--slug", default=None, help="Market slug for --feed live")
    simulate.add_argument(
        "--fast",
        action="store_true",
        help="Synthetic feed only: run on a virtual clock instead of waiting in real time",
    )
    simulate.set_defaults(func=_simulate_command)

    run = sub.add_parser("run", help="Run trading loop (paper = simulator on live prices)")
    run.add_argument("--mode", choices=("paper", "live"), default=None)
    run.add_argument("--interval-ms", type=float, default=None)
    run.add_argument("--max-duration-ms", type=float, default=None)
    run.add_argument("--pools", type=int, default=1)
    run.set_defaults(func=_run_command)

    report_parser = sub.add_parser("report", help="Aggregate the simulator summary file")
    report_parser.add_argument("--summary-file", default=None)
    report_parser.set_defaults(func=_report_command)

    presets = sub.add_parser("presets", help="Print strategy presets as JSON")
    presets.add_argument("--strategy", default=None)
    presets.set_defaults(func=_presets_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
