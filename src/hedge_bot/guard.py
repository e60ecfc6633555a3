from __future__ import annotations

from dataclasses import dataclass

from hedge_bot.config import StrategyConfig
from hedge_bot.models import LegSide, PairState
from hedge_bot.pricing import asym_ratio, balance_ratio, project_average

EPS = 1e-9


@dataclass
class Projection:
    higher_size: float
    lower_size: float
    higher_avg: float
    lower_avg: float
    current_pair_cost: float
    pair_cost: float
    balance_ratio: float
    asym_ratio: float
    total_usd: float

    @property
    def both_open(self) -> bool:
        return self.higher_size > 0 and self.lower_size > 0


@dataclass
class GuardDecision:
    allowed: bool
    reason: str = ""
    projection: Projection | None = None


def effective_average(avg: float, ask: float) -> float:
    return avg if avg > 0 else ask


def current_pair_cost(state: PairState) -> float:
    if state.higher.size <= 0 or state.lower.size <= 0:
        return 0.0
    return state.higher.weighted_average + state.lower.weighted_average


def project(state: PairState, leg: LegSide, size: float, price: float) -> Projection:
    higher_size = state.higher.size
    lower_size = state.lower.size
    higher_avg = effective_average(state.higher.weighted_average, state.higher_ask)
    lower_avg = effective_average(state.lower.weighted_average, state.lower_ask)

    if leg == LegSide.HIGHER:
        new_higher_avg = project_average(state.higher.weighted_average, higher_size, price, size)
        new_higher_size = higher_size + size
        new_lower_avg = lower_avg
        new_lower_size = lower_size
    else:
        new_lower_avg = project_average(state.lower.weighted_average, lower_size, price, size)
        new_lower_size = lower_size + size
        new_higher_avg = higher_avg
        new_higher_size = higher_size

    total_usd = higher_avg * higher_size + lower_avg * lower_size + price * size
    return Projection(
        higher_size=new_higher_size,
        lower_size=new_lower_size,
        higher_avg=new_higher_avg,
        lower_avg=new_lower_avg,
        current_pair_cost=current_pair_cost(state),
        pair_cost=new_higher_avg + new_lower_avg,
        balance_ratio=balance_ratio(new_higher_size, new_lower_size),
        asym_ratio=asym_ratio(new_higher_size, new_lower_size),
        total_usd=total_usd,
    )


def evaluate(
    leg: LegSide,
    size: float,
    price: float,
    state: PairState,
    config: StrategyConfig,
    hedge: bool = False,
    reversal: bool = False,
) -> GuardDecision:
    if size <= 0:
        return GuardDecision(False, "non-positive size")
    if price <= 0 or price >= 1:
        return GuardDecision(False, f"price out of range price={price:.4f}")

    proj = project(state, leg, size, price)
    cp = proj.current_pair_cost
    np_ = proj.pair_cost
    target = config.target_pair_cost

    def reject(reason: str) -> GuardDecision:
        return GuardDecision(False, reason, proj)

    if reversal:
        if np_ > target + EPS:
            return reject(f"reversal pair {np_:.4f} > target {target:.4f}")
        before = balance_ratio(state.higher.size, state.lower.size)
        if proj.balance_ratio < config.min_balance_ratio - EPS and proj.balance_ratio < before - EPS:
            return reject(f"reversal balance {proj.balance_ratio:.4f} < floor {config.min_balance_ratio:.4f}")
    else:
        if config.strict_pair_cap and np_ >= target - EPS:
            return reject(f"pair {np_:.4f} >= cap {target:.4f}")

        if cp > 0:
            if cp <= target + EPS:
                if np_ > target + EPS:
                    return reject(f"pair {np_:.4f} leaves target {target:.4f}")
                if np_ > cp + config.pair_tolerance + EPS:
                    return reject(f"pair {np_:.4f} worse than {cp:.4f} beyond tolerance")
            elif np_ >= cp - EPS:
                return reject(f"pair {np_:.4f} does not improve {cp:.4f}")

            if config.min_improvement > 0 and cp - np_ <= config.min_improvement + EPS:
                return reject(f"improvement {cp - np_:.4f} <= {config.min_improvement:.4f}")

        if state.history_count > 0 and state.history_mean > 0 and proj.both_open:
            estimated = (state.history_mean * state.history_count + np_) / (state.history_count + 1)
            if estimated >= state.history_mean - EPS:
                return reject(f"history mean {estimated:.4f} does not improve {state.history_mean:.4f}")

        first_fill = state.higher.size <= 0 or state.lower.size <= 0
        if not first_fill and proj.balance_ratio < config.min_balance_ratio - EPS:
            return reject(f"balance {proj.balance_ratio:.4f} < floor {config.min_balance_ratio:.4f}")

    if proj.both_open:
        if not reversal and proj.asym_ratio < config.min_asym_ratio - EPS:
            return reject(f"asym {proj.asym_ratio:.4f} < {config.min_asym_ratio:.4f}")
        if proj.asym_ratio > config.max_asym_ratio + EPS:
            return reject(f"asym {proj.asym_ratio:.4f} > {config.max_asym_ratio:.4f}")

    if hedge or reversal:
        if np_ > target + EPS:
            return reject(f"hedge pair {np_:.4f} > target {target:.4f}")
        min_qty = min(proj.higher_size, proj.lower_size)
        required = proj.total_usd * config.payoff_multiplier
        if min_qty * 1.0 <= required + EPS:
            return reject(f"payoff {min_qty:.2f} <= cost {required:.2f}")

    if config.max_pool_cost > 0 and proj.total_usd > config.max_pool_cost + EPS:
        return reject(f"pool cost {proj.total_usd:.2f} > cap {config.max_pool_cost:.2f}")

    if config.min_best_case_payoff_ratio > 0:
        best = max(proj.higher_size, proj.lower_size)
        if best < proj.total_usd * config.min_best_case_payoff_ratio - EPS:
            return reject(f"best case {best:.2f} < {proj.total_usd * config.min_best_case_payoff_ratio:.2f}")

    return GuardDecision(True, "", proj)


def admit(
    leg: LegSide,
    size: float,
    price: float,
    state: PairState,
    config: StrategyConfig,
    hedge: bool = False,
    reversal: bool = False,
) -> bool:
    return evaluate(leg, size, price, state, config, hedge=hedge, reversal=reversal).allowed
