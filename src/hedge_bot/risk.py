from __future__ import annotations

from dataclasses import dataclass

from hedge_bot.execution import SimulatedExchange
from hedge_bot.models import PriceQuote, TradingDecision


@dataclass
class RiskDecision:
    allowed: bool
    reason: str = ""


@dataclass
class PnlMark:
    spent: float
    value: float
    budget_limit: float
    budget_remaining: float

    @property
    def pnl(self) -> float:
        return self.value - self.spent

    @property
    def pnl_percent(self) -> float:
        if self.spent <= 0:
            return 0.0
        return self.pnl / self.spent * 100.0


class BudgetManager:
    """Pool-level USD cap over filled plus pending order cost."""

    def __init__(self, limit_usd: float) -> None:
        self.limit_usd = float(limit_usd)
        self.refusals = 0

    def committed(self, exchange: SimulatedExchange) -> float:
        return exchange.spent() + exchange.pending_cost()

    def remaining(self, exchange: SimulatedExchange) -> float:
        if self.limit_usd <= 0:
            return float("inf")
        return max(0.0, self.limit_usd - exchange.spent())

    def can_place(self, decision: TradingDecision, exchange: SimulatedExchange) -> RiskDecision:
        if self.limit_usd <= 0:
            return RiskDecision(True, "")
        committed = self.committed(exchange)
        cost = exchange.reserve_cost(decision)
        if committed + cost > self.limit_usd + 1e-9:
            self.refusals += 1
            return RiskDecision(
                False,
                f"budget exceeded committed={committed:.2f} cost={cost:.2f} limit={self.limit_usd:.2f}",
            )
        return RiskDecision(True, "")

    def mark(self, exchange: SimulatedExchange, quotes: dict[str, PriceQuote]) -> PnlMark:
        value = 0.0
        for leg_id, (size, _cost) in exchange.filled_totals().items():
            quote = quotes.get(leg_id)
            if quote is None:
                continue
            price = quote.bid if quote.bid > 0 else quote.mid
            value += size * price
        spent = exchange.spent()
        remaining = self.remaining(exchange) if self.limit_usd > 0 else 0.0
        return PnlMark(spent=spent, value=value, budget_limit=self.limit_usd, budget_remaining=remaining)
