from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
from typing import Any

from hedge_bot.pricing import weighted_average


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_ts(value: str | None) -> datetime:
    if value is None or value == "":
        return utc_now()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value).astimezone(timezone.utc)


def parse_float(raw: Any, default: float = 0.0) -> float:
    if raw is None:
        return default
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str) and raw.strip() == "":
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def parse_json_list(raw: Any) -> list[str]:
    if isinstance(raw, list):
        return [str(x) for x in raw]
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.startswith("["):
            try:
                data = json.loads(stripped)
                return [str(x) for x in data]
            except json.JSONDecodeError:
                return []
        if stripped:
            return [stripped]
    return []


class LegSide(str, Enum):
    HIGHER = "HIGHER"
    LOWER = "LOWER"


class Action(str, Enum):
    BUY_HIGHER = "BUY_HIGHER"
    BUY_LOWER = "BUY_LOWER"
    HOLD = "HOLD"
    SELL = "SELL"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    FAILED = "FAILED"


class FailureKind(str, Enum):
    INVALID_PRICE = "INVALID_PRICE"
    REJECTED = "ORDER_REJECTED"
    INSUFFICIENT_LIQUIDITY = "INSUFFICIENT_LIQUIDITY"
    EXPIRED = "ORDER_EXPIRED"


@dataclass(frozen=True)
class LegEntry:
    price: float
    size: float

    @property
    def cost(self) -> float:
        return self.price * self.size


@dataclass
class LegState:
    leg_id: str
    entries: list[LegEntry] = field(default_factory=list)

    @property
    def size(self) -> float:
        return sum(entry.size for entry in self.entries)

    @property
    def cost(self) -> float:
        return sum(entry.cost for entry in self.entries)

    @property
    def weighted_average(self) -> float:
        return weighted_average(self.entries)

    def append(self, price: float, size: float) -> None:
        self.entries.append(LegEntry(price=price, size=size))

    def collapse(self, size: float) -> None:
        """Replace all entries by one entry of `size` at the previous average."""
        avg = self.weighted_average
        self.entries = [LegEntry(price=avg, size=size)] if size > 0 else []


@dataclass
class MarketInfo:
    market_id: str
    slug: str
    question: str
    condition_id: str
    end_time: datetime
    outcomes: list[str]
    token_ids: list[str]
    primary_token_id: str
    secondary_token_id: str
    primary_label: str
    secondary_label: str

    @property
    def seconds_to_end(self) -> float:
        return (self.end_time - utc_now()).total_seconds()

    @property
    def leg_ids(self) -> tuple[str, str]:
        return self.primary_token_id, self.secondary_token_id


@dataclass
class Position:
    asset: str
    size: float
    side: LegSide | None = None


@dataclass
class PriceQuote:
    bid: float
    ask: float

    @property
    def mid(self) -> float:
        if self.bid > 0 and self.ask > 0:
            return (self.bid + self.ask) / 2.0
        if self.ask > 0:
            return self.ask
        if self.bid > 0:
            return self.bid
        return 0.5

    @property
    def spread(self) -> float:
        if self.bid <= 0 or self.ask <= 0:
            return 0.0
        return max(0.0, self.ask - self.bid)


@dataclass
class Snapshot:
    """One polling-cycle view of a two-leg pool."""

    market: str
    leg_ids: tuple[str, str]
    quotes: dict[str, PriceQuote]
    positions: dict[str, float]
    minutes_remaining: float
    timestamp: datetime = field(default_factory=utc_now)

    def ask(self, leg_id: str) -> float:
        quote = self.quotes.get(leg_id)
        return quote.ask if quote else 0.0

    def bid(self, leg_id: str) -> float:
        quote = self.quotes.get(leg_id)
        return quote.bid if quote else 0.0

    def position(self, leg_id: str) -> float:
        return float(self.positions.get(leg_id, 0.0))


@dataclass
class PairState:
    """Inputs the safety guard needs to project a candidate add."""

    higher: LegState
    lower: LegState
    higher_ask: float
    lower_ask: float
    history_mean: float = 0.0
    history_count: int = 0

    def leg(self, side: LegSide) -> LegState:
        return self.higher if side == LegSide.HIGHER else self.lower

    def ask(self, side: LegSide) -> float:
        return self.higher_ask if side == LegSide.HIGHER else self.lower_ask


@dataclass
class TradingDecision:
    action: Action
    leg_id: str
    price: float
    size: float
    reason: str

    @property
    def cost(self) -> float:
        return self.price * self.size

    @property
    def adds_risk(self) -> bool:
        return self.action in {Action.BUY_HIGHER, Action.BUY_LOWER}


@dataclass
class PendingOrder:
    order_id: str
    decision: TradingDecision
    submitted_at: float
    fill_probability: float
    retry_count: int = 0

    @property
    def leg_id(self) -> str:
        return self.decision.leg_id

    @property
    def cost(self) -> float:
        return self.decision.cost


@dataclass
class FilledOrder:
    order_id: str
    decision: TradingDecision
    filled_price: float
    filled_size: float
    submitted_at: float
    filled_at: float
    retry_count: int = 0

    @property
    def leg_id(self) -> str:
        return self.decision.leg_id

    @property
    def cost(self) -> float:
        return self.filled_price * self.filled_size


@dataclass
class FailedOrder:
    order_id: str
    decision: TradingDecision
    kind: FailureKind
    detail: str
    failed_at: float
    retry_count: int = 0
    retryable: bool = False
    retried: bool = False

    @property
    def leg_id(self) -> str:
        return self.decision.leg_id

    @property
    def reason(self) -> str:
        return f"{self.kind.value}: {self.detail}"


@dataclass
class TradeRecord:
    timestamp: datetime
    cycle: int
    action: str
    leg: str
    price: float
    size: float
    cost: float
    cum_leg_qty: float
    avg_leg_price: float
    total_spent: float
    order_id: str
    status: OrderStatus
    filled_price: float = 0.0
    filled_size: float = 0.0
    failure_reason: str = ""
    reason: str = ""


@dataclass
class RunResult:
    strategy: str
    market: str
    run_start: datetime
    run_end: datetime
    total_cycles: int
    total_orders_submitted: int
    total_orders_filled: int
    total_orders_failed: int
    total_trades: int
    total_spent: float
    budget_limit: float
    budget_remaining: float
    current_value: float
    pnl: float
    pnl_percent: float
    higher_size: float
    lower_size: float
    higher_usd: float
    lower_usd: float
    pair_cost: float
    balance_ratio: float
    asym_ratio: float
    stop_reason: str = ""

    @property
    def budget_used(self) -> float:
        return self.total_spent
