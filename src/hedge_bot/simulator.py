from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from hedge_bot.config import SimulatorConfig
from hedge_bot.engines.engine_hedge import HedgeEngine
from hedge_bot.execution import SimulatedExchange, SubmissionError, validate_decision
from hedge_bot.feeds import FeedError, PriceFeed
from hedge_bot.models import (
    Action,
    FailedOrder,
    FilledOrder,
    OrderStatus,
    PriceQuote,
    RunResult,
    Snapshot,
    TradeRecord,
    TradingDecision,
    utc_now,
)
from hedge_bot.pricing import asym_ratio, balance_ratio
from hedge_bot.risk import BudgetManager
from hedge_bot.storage import SummaryRecorder, TradeRecorder

LOGGER = logging.getLogger("hedge_bot")

ROLLOVER_WINDOW_MINUTES = 5.0
ROLLOVER_JUMP_MINUTES = 1.0


class VirtualClock:
    """Monotonic clock that only moves when slept on; runs a whole pool instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(0.0, float(seconds))


class Simulator:
    def __init__(
        self,
        engine: HedgeEngine,
        feed: PriceFeed,
        exchange: SimulatedExchange,
        config: SimulatorConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] | None = None,
        trade_recorder: TradeRecorder | None = None,
        summary_recorder: SummaryRecorder | None = None,
    ) -> None:
        self.engine = engine
        self.feed = feed
        self.exchange = exchange
        self.config = config
        self.clock = clock
        self._sleep_fn = sleep
        self.trade_recorder = trade_recorder
        self.summary_recorder = summary_recorder
        self.budget = BudgetManager(config.budget_usd)
        self.records: list[TradeRecord] = []
        self.cycle = 0
        self.orders_submitted = 0
        self.last_quotes: dict[str, PriceQuote] = {}
        self.last_minutes: float | None = None
        self.run_start = utc_now()
        self._stop_event = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        self._stop_event.set()

    def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
            return
        self._stop_event.wait(seconds)

    # ------------------------------------------------------------------ records

    def _leg_totals(self, leg_id: str) -> tuple[float, float]:
        size, cost = self.exchange.filled_totals().get(leg_id, (0.0, 0.0))
        return size, (cost / size if size > 0 else 0.0)

    def _record(
        self,
        decision: TradingDecision,
        order_id: str,
        status: OrderStatus,
        filled_price: float = 0.0,
        filled_size: float = 0.0,
        failure_reason: str = "",
        reason: str = "",
    ) -> TradeRecord:
        qty, avg = self._leg_totals(decision.leg_id)
        record = TradeRecord(
            timestamp=utc_now(),
            cycle=self.cycle,
            action=decision.action.value,
            leg=decision.leg_id,
            price=decision.price,
            size=decision.size,
            cost=decision.cost,
            cum_leg_qty=qty,
            avg_leg_price=avg,
            total_spent=self.exchange.spent(),
            order_id=order_id,
            status=status,
            filled_price=filled_price,
            filled_size=filled_size,
            failure_reason=failure_reason,
            reason=reason or decision.reason,
        )
        self.records.append(record)
        return record

    def _record_outcome(self, outcome: FilledOrder | FailedOrder) -> None:
        if isinstance(outcome, FilledOrder):
            self._record(
                outcome.decision,
                outcome.order_id,
                OrderStatus.FILLED,
                filled_price=outcome.filled_price,
                filled_size=outcome.filled_size,
            )
            return
        self._record(outcome.decision, outcome.order_id, OrderStatus.FAILED, failure_reason=outcome.reason)

    # ------------------------------------------------------------------ cycle

    def _resolve_pending(self, force: bool = False) -> None:
        for outcome in self.exchange.resolve_pending(force=force):
            self._record_outcome(outcome)

    def _retry_failed(self) -> None:
        for failed in self.exchange.retry_candidates():
            if self.exchange.has_pending(failed.leg_id):
                continue
            verdict = self.budget.can_place(failed.decision, self.exchange)
            if not verdict.allowed:
                LOGGER.warning("cycle=%s retry_skip id=%s reason=%s", self.cycle, failed.order_id, verdict.reason)
                continue
            try:
                order_id = self.exchange.submit(failed.decision, retry_count=failed.retry_count + 1)
            except SubmissionError as exc:
                failed.retried = True
                LOGGER.warning("cycle=%s retry_rejected id=%s reason=%s", self.cycle, failed.order_id, exc.reason)
                continue
            failed.retried = True
            self.orders_submitted += 1
            self._record(
                failed.decision,
                order_id,
                OrderStatus.PENDING,
                reason=f"retry {failed.retry_count + 1}/{self.config.max_retries} of {failed.order_id}",
            )

    def _submit(self, decision: TradingDecision) -> str | None:
        problem = validate_decision(decision, self.feed.leg_ids)
        if problem:
            LOGGER.warning("cycle=%s decision_invalid reason=%s", self.cycle, problem)
            return None
        if self.exchange.has_pending(decision.leg_id):
            LOGGER.info("cycle=%s decision_skip leg=%s reason=active order", self.cycle, decision.leg_id)
            return None
        verdict = self.budget.can_place(decision, self.exchange)
        if not verdict.allowed:
            LOGGER.warning("cycle=%s decision_skip leg=%s reason=%s", self.cycle, decision.leg_id, verdict.reason)
            return None
        try:
            order_id = self.exchange.submit(decision)
        except SubmissionError as exc:
            LOGGER.warning("cycle=%s submit_failed leg=%s reason=%s", self.cycle, decision.leg_id, exc.reason)
            return None
        self.orders_submitted += 1
        self._record(decision, order_id, OrderStatus.PENDING)
        return order_id

    def run_cycle(self) -> TradingDecision | None:
        self.cycle += 1
        try:
            quotes = self.feed.quotes()
            minutes = self.feed.minutes_remaining()
        except FeedError as exc:
            LOGGER.warning("cycle=%s feed_skip error=%s", self.cycle, exc)
            return None
        self.last_quotes = quotes
        self.last_minutes = minutes
        self.exchange.update_quotes(quotes)

        self._resolve_pending()
        self._retry_failed()

        snapshot = Snapshot(
            market=self.feed.market,
            leg_ids=self.feed.leg_ids,
            quotes=quotes,
            positions=self.exchange.positions(),
            minutes_remaining=minutes,
        )
        decision = self.engine.execute(snapshot)
        if decision is None:
            return None
        if decision.action == Action.HOLD:
            LOGGER.info("cycle=%s hold reason=%s", self.cycle, decision.reason)
            return decision
        self._submit(decision)
        return decision

    # ------------------------------------------------------------------ loops

    def _should_end(self, previous: float | None) -> str:
        remaining = self.last_minutes
        if remaining is None:
            return ""
        if remaining <= 0:
            return "pool_ended"
        if (
            previous is not None
            and previous < ROLLOVER_WINDOW_MINUTES
            and remaining - previous > ROLLOVER_JUMP_MINUTES
        ):
            return "pool_rollover"
        return ""

    def run_until_end(self, poll_interval_ms: float = 1000.0, max_duration_ms: float | None = None) -> RunResult:
        self.run_start = utc_now()
        started = self.clock()
        interval = max(0.0, poll_interval_ms / 1000.0)
        LOGGER.info(
            "sim start strategy=%s market=%s interval_ms=%.0f max_duration_ms=%s budget=%.2f",
            self.engine.config.name,
            self.feed.market,
            poll_interval_ms,
            max_duration_ms,
            self.config.budget_usd,
        )
        stop_reason = ""
        previous: float | None = None
        while not stop_reason:
            if self.stopped:
                stop_reason = "stopped"
                break
            if max_duration_ms is not None and (self.clock() - started) * 1000.0 >= max_duration_ms:
                stop_reason = "max_duration"
                break
            cycle_started = self.clock()
            self.run_cycle()
            stop_reason = self._should_end(previous)
            if stop_reason:
                break
            if self.last_minutes is not None:
                previous = self.last_minutes
            elapsed = self.clock() - cycle_started
            self._sleep(max(0.0, interval - elapsed))
        return self.finish(stop_reason)

    def run_cycles(self, cycles: int, poll_interval_ms: float = 1000.0) -> RunResult:
        self.run_start = utc_now()
        interval = max(0.0, poll_interval_ms / 1000.0)
        for _ in range(max(0, cycles)):
            if self.stopped:
                return self.finish("stopped")
            self.run_cycle()
            self._sleep(interval)
        return self.finish("cycles")

    def drain(self) -> None:
        for _ in range(max(0, self.config.drain_passes)):
            if not self.exchange.pending:
                return
            self._resolve_pending(force=True)

    def result(self, stop_reason: str = "") -> RunResult:
        leg_ids = self.feed.leg_ids
        higher_id = self.engine.higher_leg_id if self.engine.higher_leg_id in leg_ids else leg_ids[0]
        lower_id = leg_ids[1] if higher_id == leg_ids[0] else leg_ids[0]
        higher_size, higher_avg = self._leg_totals(higher_id)
        lower_size, lower_avg = self._leg_totals(lower_id)
        mark = self.budget.mark(self.exchange, self.last_quotes)
        return RunResult(
            strategy=self.engine.config.name,
            market=self.feed.market,
            run_start=self.run_start,
            run_end=utc_now(),
            total_cycles=self.cycle,
            total_orders_submitted=self.orders_submitted,
            total_orders_filled=len(self.exchange.filled),
            total_orders_failed=len(self.exchange.failed),
            total_trades=len(self.records),
            total_spent=mark.spent,
            budget_limit=mark.budget_limit,
            budget_remaining=mark.budget_remaining,
            current_value=mark.value,
            pnl=mark.pnl,
            pnl_percent=mark.pnl_percent,
            higher_size=higher_size,
            lower_size=lower_size,
            higher_usd=higher_size * higher_avg,
            lower_usd=lower_size * lower_avg,
            pair_cost=(higher_avg + lower_avg) if higher_size > 0 and lower_size > 0 else 0.0,
            balance_ratio=balance_ratio(higher_size, lower_size),
            asym_ratio=asym_ratio(higher_size, lower_size),
            stop_reason=stop_reason,
        )

    def finish(self, stop_reason: str = "") -> RunResult:
        self.drain()
        result = self.result(stop_reason)
        if self.trade_recorder is not None:
            self.trade_recorder.append(self.records)
        if self.summary_recorder is not None:
            self.summary_recorder.append(result)
        LOGGER.info(
            "sim end reason=%s cycles=%s submitted=%s filled=%s failed=%s spent=%.2f value=%.2f pnl=%.2f pair=%.4f",
            stop_reason or "done",
            result.total_cycles,
            result.total_orders_submitted,
            result.total_orders_filled,
            result.total_orders_failed,
            result.total_spent,
            result.current_value,
            result.pnl,
            result.pair_cost,
        )
        return result


def run_pools(
    factory: Callable[[int], Simulator],
    pools: int,
    poll_interval_ms: float = 1000.0,
    max_duration_ms: float | None = None,
) -> tuple[list[RunResult], float]:
    """Run consecutive pools, each with a fresh engine and exchange; returns results and the bankroll."""
    results: list[RunResult] = []
    bankroll = 0.0
    for index in range(max(0, pools)):
        simulator = factory(index)
        result = simulator.run_until_end(poll_interval_ms, max_duration_ms)
        results.append(result)
        bankroll += result.pnl
        LOGGER.info("pool=%s/%s pnl=%.4f bankroll=%.4f", index + 1, pools, result.pnl, bankroll)
        if simulator.stopped:
            break
    return results, bankroll
