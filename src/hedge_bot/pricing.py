from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Sequence

if TYPE_CHECKING:
    from hedge_bot.models import LegEntry


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round_tick(price: float, tick: float = 0.01) -> float:
    ticks = round(price / tick)
    return max(tick, min(1.0 - tick, ticks * tick))


def ladder_price(
    price: float,
    offsets: Sequence[float],
    rung: int,
    min_price: float = 0.01,
    first_at_market: bool = True,
) -> float:
    """
    Limit price for ladder rung `rung`:
      rung 0 at the market price (when first_at_market),
      later rungs at price + offsets[rung], last offset repeating.
    """
    if not offsets or (first_at_market and rung <= 0):
        return price
    offset = offsets[min(max(rung, 0), len(offsets) - 1)]
    return max(min_price, price + offset)


def weighted_average(entries: Iterable[LegEntry]) -> float:
    total_size = 0.0
    total_cost = 0.0
    for entry in entries:
        total_size += entry.size
        total_cost += entry.price * entry.size
    if total_size <= 0:
        return 0.0
    return total_cost / total_size


def project_average(current_avg: float, current_size: float, price: float, size: float) -> float:
    new_size = current_size + size
    if new_size <= 0:
        return 0.0
    return (current_avg * current_size + price * size) / new_size


def balance_ratio(size_a: float, size_b: float) -> float:
    if size_a <= 0 or size_b <= 0:
        return 0.0
    return min(size_a, size_b) / max(size_a, size_b)


def asym_ratio(size_a: float, size_b: float) -> float:
    total = size_a + size_b
    if total <= 0:
        return 0.0
    return max(size_a, size_b) / total
