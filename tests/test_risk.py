from __future__ import annotations

import unittest

from tests.helpers import DOWN, UP, FakeClock, FixedRandom, build_snapshot, sim_config
from hedge_bot.execution import SimulatedExchange
from hedge_bot.models import Action, PriceQuote, TradingDecision
from hedge_bot.risk import BudgetManager


def buy(leg_id: str, price: float, size: float) -> TradingDecision:
    action = Action.BUY_HIGHER if leg_id == UP else Action.BUY_LOWER
    return TradingDecision(action=action, leg_id=leg_id, price=price, size=size, reason="test")


def exchange(clock: FakeClock, **overrides) -> SimulatedExchange:
    ex = SimulatedExchange(sim_config(**overrides), rng=FixedRandom(0.0), clock=clock)
    ex.update_quotes(build_snapshot().quotes)
    return ex


class BudgetManagerTests(unittest.TestCase):
    def test_pending_orders_count_toward_the_cap(self) -> None:
        ex = exchange(FakeClock())
        budget = BudgetManager(20.0)
        ex.submit(buy(UP, 0.55, 20.0))

        refused = budget.can_place(buy(DOWN, 0.40, 25.0), ex)
        self.assertFalse(refused.allowed)
        self.assertIn("committed=11.00", refused.reason)
        self.assertEqual(budget.refusals, 1)
        self.assertTrue(budget.can_place(buy(DOWN, 0.40, 20.0), ex).allowed)

    def test_orders_reserved_at_worst_case_slippage(self) -> None:
        ex = exchange(FakeClock(), enable_slippage=True, max_slippage=0.02)
        decision = buy(UP, 0.55, 20.0)
        self.assertAlmostEqual(ex.reserve_cost(decision), 11.4, places=9)
        self.assertFalse(BudgetManager(11.3).can_place(decision, ex).allowed)
        self.assertTrue(BudgetManager(11.5).can_place(decision, ex).allowed)

    def test_zero_limit_is_unbounded(self) -> None:
        ex = exchange(FakeClock())
        budget = BudgetManager(0.0)
        self.assertTrue(budget.can_place(buy(UP, 0.55, 10_000.0), ex).allowed)
        self.assertEqual(budget.remaining(ex), float("inf"))
        self.assertEqual(budget.mark(ex, {}).budget_remaining, 0.0)

    def test_mark_values_fills_at_bid(self) -> None:
        clock = FakeClock()
        ex = exchange(clock)
        ex.submit(buy(UP, 0.55, 20.0))
        clock.advance(1.0)
        ex.resolve_pending()

        mark = BudgetManager(100.0).mark(ex, {UP: PriceQuote(bid=0.60, ask=0.61)})
        self.assertAlmostEqual(mark.spent, 11.0, places=9)
        self.assertAlmostEqual(mark.value, 12.0, places=9)
        self.assertAlmostEqual(mark.pnl, 1.0, places=9)
        self.assertAlmostEqual(mark.pnl_percent, 100.0 / 11.0, places=9)
        self.assertAlmostEqual(mark.budget_remaining, 89.0, places=9)

    def test_mark_without_spend_has_zero_percent(self) -> None:
        mark = BudgetManager(50.0).mark(exchange(FakeClock()), {})
        self.assertEqual(mark.pnl_percent, 0.0)
        self.assertAlmostEqual(mark.budget_remaining, 50.0, places=9)


if __name__ == "__main__":
    unittest.main()
