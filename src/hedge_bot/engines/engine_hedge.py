from __future__ import annotations

from collections import deque
import logging
import math
import time
from typing import Callable

from hedge_bot.config import StrategyConfig
from hedge_bot.guard import current_pair_cost, effective_average, evaluate
from hedge_bot.models import Action, LegSide, LegState, PairState, Snapshot, TradingDecision
from hedge_bot.pricing import asym_ratio, balance_ratio, clamp, ladder_price

LOGGER = logging.getLogger("hedge_bot")

EPS = 1e-9


class HedgeEngine:
    """
    Per-pool hedge strategy.

    Each call to `execute` reconciles the entry ledger against the reported
    positions, then walks the rules in fixed priority (lock, reversal,
    repeat check, probe, average-down, hedge) and returns the first
    decision produced, or None.
    """

    def __init__(self, config: StrategyConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self.clock = clock
        self.reset()

    def reset(self) -> None:
        self.ledger: dict[str, LegState] = {}
        self.higher_leg_id: str | None = None
        self.paused = False
        self.probe_attempts = 0
        self.reversal_orders = 0
        self.avg_down_counts: dict[str, int] = {}
        self.repeat_counts: dict[str, int] = {}
        self.leg_adds: dict[str, int] = {}
        self._awaiting_fill: dict[str, tuple[float, float]] = {}
        self._pair_history: deque[float] = deque(maxlen=max(1, self.config.history_window))
        self._last_repeat_check: float | None = None
        self._last_reversal_check: float | None = None
        self._last_resume_check: float | None = None

    # ------------------------------------------------------------------ state

    def _identify_legs(self, snapshot: Snapshot) -> tuple[str, str]:
        first, second = snapshot.leg_ids
        if self.higher_leg_id not in (first, second):
            self.higher_leg_id = None
            ranked = sorted((first, second), key=snapshot.ask, reverse=True)
            for leg_id in ranked:
                if snapshot.ask(leg_id) >= self.config.higher_leg_floor - EPS:
                    self.higher_leg_id = leg_id
                    LOGGER.info(
                        "engine higher_leg=%s ask=%.4f floor=%.2f",
                        leg_id,
                        snapshot.ask(leg_id),
                        self.config.higher_leg_floor,
                    )
                    break
        if self.higher_leg_id is not None:
            higher = self.higher_leg_id
        else:
            higher = first if snapshot.ask(first) >= snapshot.ask(second) else second
        lower = second if higher == first else first
        return higher, lower

    def _estimate_fill_price(self, leg: LegState, ask: float, band: tuple[float, float]) -> float:
        awaiting = self._awaiting_fill.get(leg.leg_id)
        if awaiting is not None:
            return awaiting[1]
        if leg.weighted_average > 0:
            return leg.weighted_average
        return clamp(ask, band[0], band[1])

    def _sync_ledger(self, snapshot: Snapshot, higher_id: str) -> None:
        for leg_id in snapshot.leg_ids:
            leg = self.ledger.setdefault(leg_id, LegState(leg_id))
            held = max(0.0, snapshot.position(leg_id))
            recorded = leg.size
            if held > recorded + EPS:
                band = self.config.higher_estimate_band if leg_id == higher_id else self.config.lower_estimate_band
                price = self._estimate_fill_price(leg, snapshot.ask(leg_id), band)
                leg.append(price, held - recorded)
                self._awaiting_fill.pop(leg_id, None)
                LOGGER.info(
                    "engine ledger_grow leg=%s add=%.2f price=%.4f size=%.2f avg=%.4f",
                    leg_id,
                    held - recorded,
                    price,
                    leg.size,
                    leg.weighted_average,
                )
            elif held < recorded - EPS:
                leg.collapse(held)
                LOGGER.info("engine ledger_shrink leg=%s size=%.2f avg=%.4f", leg_id, leg.size, leg.weighted_average)

    def _pair_state(self, snapshot: Snapshot, higher_id: str, lower_id: str) -> PairState:
        return PairState(
            higher=self.ledger[higher_id],
            lower=self.ledger[lower_id],
            higher_ask=snapshot.ask(higher_id),
            lower_ask=snapshot.ask(lower_id),
        )

    def _record_history(self, state: PairState) -> float:
        pair_now = current_pair_cost(state)
        if self.config.history_window <= 0:
            return pair_now
        if pair_now > 0:
            self._pair_history.append(pair_now)
        if not self._pair_history:
            return pair_now
        mean = sum(self._pair_history) / len(self._pair_history)
        state.history_mean = mean
        state.history_count = len(self._pair_history)
        return mean

    def _leg_blocked(self, leg_id: str) -> bool:
        awaiting = self._awaiting_fill.get(leg_id)
        if awaiting is not None:
            if self.clock() - awaiting[0] < self.config.fill_wait_seconds:
                return True
            self._awaiting_fill.pop(leg_id, None)
        cap = self.config.max_adds_per_leg
        return cap > 0 and self.leg_adds.get(leg_id, 0) >= cap

    @staticmethod
    def _dip(state: PairState, side: LegSide) -> float:
        leg = state.leg(side)
        ask = state.ask(side)
        if leg.size <= 0 or ask <= 0:
            return 0.0
        return leg.weighted_average - ask

    def _update_pause(self, basis: float, state: PairState) -> None:
        cfg = self.config
        if cfg.pause_threshold <= 0 or basis <= 0:
            return
        if not self.paused:
            if basis > cfg.pause_threshold + EPS:
                self.paused = True
                LOGGER.warning("engine paused pair=%.4f threshold=%.4f", basis, cfg.pause_threshold)
            return
        if basis <= cfg.resume_threshold + EPS:
            self.paused = False
            LOGGER.info("engine resumed pair=%.4f threshold=%.4f", basis, cfg.resume_threshold)
            return
        if not cfg.resume_on_dip:
            return
        now = self.clock()
        if self._last_resume_check is not None and now - self._last_resume_check < cfg.repeat_interval_seconds:
            return
        self._last_resume_check = now
        market_pair = state.higher_ask + state.lower_ask
        dipped = max(self._dip(state, LegSide.HIGHER), self._dip(state, LegSide.LOWER))
        if 0 < market_pair < cfg.resume_threshold and dipped + EPS >= cfg.dip_threshold:
            self.paused = False
            LOGGER.info("engine resumed market_pair=%.4f dip=%.4f", market_pair, dipped)

    # ------------------------------------------------------------------ sizing

    def _probe_size(self, price: float) -> float:
        cfg = self.config
        if cfg.probe_sizing == "midpoint":
            return float(math.floor((cfg.probe_size_min + cfg.probe_size_max) / 2.0))
        span = cfg.probe_max_price - cfg.probe_min_price
        closeness = (price - cfg.probe_min_price) / span if span > 0 else 0.0
        raw = cfg.probe_size_min + (cfg.probe_size_max - cfg.probe_size_min) * (1.0 - clamp(closeness, 0.0, 1.0))
        return float(math.floor(raw + EPS))

    def _dip_size(self, dip: float) -> float:
        cfg = self.config
        steps = min(cfg.avg_down_max_steps, int(math.floor(dip / cfg.avg_down_step_cents + EPS)))
        return min(cfg.avg_down_size_max, cfg.avg_down_size_min + max(0, steps) * cfg.avg_down_size_step)

    def _hedge_size(self, higher_size: float, lower_size: float) -> float:
        cfg = self.config
        target = math.floor(higher_size * cfg.hedge_target_ratio + EPS)
        needed = target - lower_size
        if needed <= -cfg.hedge_overshoot_tolerance:
            return 0.0
        if needed <= 0:
            return cfg.hedge_size_min
        return clamp(float(math.floor(needed + EPS)), cfg.hedge_size_min, cfg.hedge_size_max)

    def _repeat_lower_size(self, state: PairState) -> float:
        cfg = self.config
        if cfg.repeat_lower_sizing == "dip":
            return self._dip_size(self._dip(state, LegSide.LOWER))
        target = math.floor(state.higher.size * cfg.hedge_target_ratio + EPS)
        needed = target - state.lower.size
        if needed <= 0:
            return cfg.repeat_lower_size_min
        return clamp(float(math.floor(needed + EPS)), cfg.repeat_lower_size_min, cfg.repeat_lower_size_max)

    def _reversal_size(self, lower_size: float) -> float:
        cfg = self.config
        ratio = min(cfg.reversal_ratio_max, cfg.reversal_ratio_min + self.reversal_orders * cfg.reversal_ratio_step)
        raw = math.floor(lower_size * ratio + EPS)
        unit = cfg.reversal_size_round if cfg.reversal_size_round > 0 else 1.0
        rounded = math.floor(raw / unit + 0.5) * unit
        return clamp(float(rounded), cfg.reversal_size_min, cfg.reversal_size_max)

    def _ladder(self, price: float, offsets: tuple[float, ...], rung: int, first_at_market: bool = True) -> float:
        return round(ladder_price(price, offsets, rung, self.config.min_price, first_at_market), 4)

    # ------------------------------------------------------------------ rules

    def _check_lock(self, minutes: float, state: PairState, basis: float, higher_id: str) -> TradingDecision | None:
        cfg = self.config
        low, high = cfg.lock_window
        if not (low <= minutes <= high):
            return None
        higher_size = state.higher.size
        lower_size = state.lower.size
        if higher_size <= 0 or lower_size <= 0:
            return None
        balance = balance_ratio(higher_size, lower_size)
        asym = asym_ratio(higher_size, lower_size)
        if basis > cfg.lock_target_pair_cost + EPS:
            return None
        if balance < cfg.lock_min_balance - EPS or asym > cfg.lock_max_asym + EPS:
            return None
        return TradingDecision(
            action=Action.HOLD,
            leg_id=higher_id,
            price=round(state.higher_ask, 4),
            size=min(higher_size, lower_size),
            reason=f"lock pair={basis:.4f} balance={balance:.2f} asym={asym:.2f} m={minutes:.1f}",
        )

    def _check_reversal(
        self, minutes: float, state: PairState, lower_id: str
    ) -> TradingDecision | None:
        cfg = self.config
        if cfg.reversal_max_orders <= 0 or self.reversal_orders >= cfg.reversal_max_orders:
            return None
        low, high = cfg.reversal_window
        if not (low <= minutes <= high):
            return None
        now = self.clock()
        if self._last_reversal_check is not None and now - self._last_reversal_check < cfg.reversal_check_seconds:
            return None
        self._last_reversal_check = now

        lower_size = state.lower.size
        if lower_size <= 0 or self._leg_blocked(lower_id):
            return None
        spread = state.lower_ask - state.higher_ask
        if spread + EPS < cfg.reversal_margin:
            return None
        balance = balance_ratio(state.higher.size, lower_size)
        if balance >= cfg.reversal_balance_ceiling - EPS:
            return None

        size = self._reversal_size(lower_size)
        price = self._ladder(state.lower_ask, cfg.reversal_offsets, self.reversal_orders, first_at_market=False)
        verdict = evaluate(LegSide.LOWER, size, price, state, cfg, reversal=True)
        if not verdict.allowed:
            LOGGER.debug("engine reversal_skip reason=%s", verdict.reason)
            return None
        self.reversal_orders += 1
        return self._emit(
            Action.BUY_LOWER,
            lower_id,
            price,
            size,
            f"reversal lower-higher={spread:.4f} balance={balance:.2f} tranche={self.reversal_orders}",
        )

    def _check_repeat(
        self, state: PairState, basis: float, higher_id: str, lower_id: str
    ) -> TradingDecision | None:
        cfg = self.config
        if cfg.repeat_interval_seconds <= 0 or basis <= cfg.target_pair_cost + EPS:
            return None
        now = self.clock()
        if self._last_repeat_check is not None and now - self._last_repeat_check < cfg.repeat_interval_seconds:
            return None
        self._last_repeat_check = now

        for side, leg_id, offsets in (
            (LegSide.HIGHER, higher_id, cfg.repeat_offsets_higher),
            (LegSide.LOWER, lower_id, cfg.repeat_offsets_lower),
        ):
            dip = self._dip(state, side)
            if state.leg(side).size <= 0 or dip + EPS < cfg.dip_threshold:
                continue
            if self._leg_blocked(leg_id):
                continue
            size = self._dip_size(dip) if side == LegSide.HIGHER else self._repeat_lower_size(state)
            rung = self.repeat_counts.get(leg_id, 0)
            price = self._ladder(state.ask(side), offsets, rung)
            verdict = evaluate(side, size, price, state, cfg)
            if not verdict.allowed:
                LOGGER.debug("engine repeat_skip leg=%s reason=%s", leg_id, verdict.reason)
                continue
            self.repeat_counts[leg_id] = rung + 1
            self.leg_adds[leg_id] = self.leg_adds.get(leg_id, 0) + 1
            action = Action.BUY_HIGHER if side == LegSide.HIGHER else Action.BUY_LOWER
            return self._emit(action, leg_id, price, size, f"repeat pair={basis:.4f} dip={dip * 100:.2f}c rung={rung}")
        return None

    def _check_probe(self, state: PairState, higher_id: str) -> TradingDecision | None:
        cfg = self.config
        if self.higher_leg_id is None or state.higher.size > 0:
            return None
        if self.probe_attempts >= cfg.probe_rungs or self._leg_blocked(higher_id):
            return None
        ask = state.higher_ask
        if ask < cfg.probe_min_price - EPS or ask > cfg.probe_max_price + EPS:
            return None
        rungs = [self._ladder(ask, cfg.probe_offsets, k) for k in range(max(1, cfg.probe_rungs))]
        projected = sum(rungs) / len(rungs)
        if projected >= cfg.probe_max_projected_avg - EPS:
            LOGGER.debug("engine probe_skip projected=%.4f cap=%.2f", projected, cfg.probe_max_projected_avg)
            return None
        size = self._probe_size(ask)
        price = rungs[min(self.probe_attempts, len(rungs) - 1)]
        verdict = evaluate(LegSide.HIGHER, size, price, state, cfg)
        if not verdict.allowed:
            LOGGER.debug("engine probe_skip reason=%s", verdict.reason)
            return None
        self.probe_attempts += 1
        return self._emit(
            Action.BUY_HIGHER,
            higher_id,
            price,
            size,
            f"probe higher @ {price:.4f} projected_avg={projected:.4f} rung={self.probe_attempts - 1}",
        )

    def _check_avg_down(self, side: LegSide, state: PairState, leg_id: str) -> TradingDecision | None:
        cfg = self.config
        leg = state.leg(side)
        if leg.size <= 0:
            return None
        if cfg.avg_down_min_balance > 0:
            if balance_ratio(state.higher.size, state.lower.size) < cfg.avg_down_min_balance - EPS:
                return None
        dip = self._dip(state, side)
        if dip + EPS < cfg.dip_threshold or self._leg_blocked(leg_id):
            return None
        size = self._dip_size(dip)
        rung = self.avg_down_counts.get(leg_id, 0)
        price = self._ladder(state.ask(side), cfg.avg_down_offsets, rung)
        verdict = evaluate(side, size, price, state, cfg)
        if not verdict.allowed:
            LOGGER.debug("engine avg_down_skip leg=%s reason=%s", leg_id, verdict.reason)
            return None
        self.avg_down_counts[leg_id] = rung + 1
        self.leg_adds[leg_id] = self.leg_adds.get(leg_id, 0) + 1
        action = Action.BUY_HIGHER if side == LegSide.HIGHER else Action.BUY_LOWER
        return self._emit(
            action,
            leg_id,
            price,
            size,
            f"avg-down {side.value.lower()} dip={dip * 100:.2f}c avg={leg.weighted_average:.4f} rung={rung}",
        )

    def _check_hedge(self, state: PairState, lower_id: str) -> TradingDecision | None:
        cfg = self.config
        higher_size = state.higher.size
        lower_size = state.lower.size
        lower_ask = state.lower_ask
        if higher_size <= 0 or lower_ask <= 0:
            return None
        ceiling = cfg.hedge_price_ceiling
        if cfg.hedge_dynamic_spread > 0:
            higher_avg = effective_average(state.higher.weighted_average, state.higher_ask)
            ceiling = min(higher_avg - cfg.hedge_dynamic_spread, cfg.hedge_price_ceiling)
        cheap = lower_ask < ceiling - EPS
        undersized = (
            cfg.hedge_soft_ratio > 0
            and lower_ask < cfg.hedge_soft_ceiling - EPS
            and lower_size < cfg.hedge_soft_ratio * higher_size
        )
        if not (cheap or undersized) or self._leg_blocked(lower_id):
            return None
        size = self._hedge_size(higher_size, lower_size)
        if size <= 0:
            return None
        rung = len(state.lower.entries)
        price = self._ladder(lower_ask, cfg.hedge_offsets, rung)
        verdict = evaluate(LegSide.LOWER, size, price, state, cfg, hedge=True)
        if not verdict.allowed:
            LOGGER.debug("engine hedge_skip reason=%s", verdict.reason)
            return None
        return self._emit(
            Action.BUY_LOWER,
            lower_id,
            price,
            size,
            f"hedge lower @ {price:.4f} toward {cfg.hedge_target_ratio:.0%} of {higher_size:.0f} "
            f"pair={verdict.projection.pair_cost:.4f}",
        )

    @staticmethod
    def _in_phase(window: tuple[float, float] | None, minutes: float) -> bool:
        if window is None:
            return True
        low, high = window
        return low < minutes <= high

    def _emit(self, action: Action, leg_id: str, price: float, size: float, reason: str) -> TradingDecision:
        self._awaiting_fill[leg_id] = (self.clock(), price)
        decision = TradingDecision(action=action, leg_id=leg_id, price=price, size=size, reason=reason)
        LOGGER.info(
            "engine decision strategy=%s action=%s leg=%s price=%.4f size=%.2f reason=%s",
            self.config.name,
            action.value,
            leg_id,
            price,
            size,
            reason,
        )
        return decision

    # ------------------------------------------------------------------ entry

    def execute(self, snapshot: Snapshot) -> TradingDecision | None:
        higher_id, lower_id = self._identify_legs(snapshot)
        self._sync_ledger(snapshot, higher_id)
        state = self._pair_state(snapshot, higher_id, lower_id)
        basis = self._record_history(state)
        self._update_pause(basis, state)
        minutes = snapshot.minutes_remaining

        decision = self._check_lock(minutes, state, basis, higher_id)
        if decision is not None:
            return decision
        if self.paused:
            return None

        decision = self._check_reversal(minutes, state, lower_id)
        if decision is not None:
            return decision
        decision = self._check_repeat(state, basis, higher_id, lower_id)
        if decision is not None:
            return decision

        cfg = self.config
        if self._in_phase(cfg.probe_window, minutes):
            decision = self._check_probe(state, higher_id)
            if decision is not None:
                return decision
        if not self._in_phase(cfg.build_window, minutes):
            return None
        decision = self._check_avg_down(LegSide.HIGHER, state, higher_id)
        if decision is not None:
            return decision
        if cfg.avg_down_lower:
            decision = self._check_avg_down(LegSide.LOWER, state, lower_id)
            if decision is not None:
                return decision
        return self._check_hedge(state, lower_id)

    def metrics(self) -> dict[str, float]:
        if self.higher_leg_id is None or len(self.ledger) < 2:
            return {}
        higher = self.ledger[self.higher_leg_id]
        lower = next(leg for leg_id, leg in self.ledger.items() if leg_id != self.higher_leg_id)
        return {
            "higher_size": higher.size,
            "lower_size": lower.size,
            "higher_avg": higher.weighted_average,
            "lower_avg": lower.weighted_average,
            "pair_cost": (higher.weighted_average + lower.weighted_average) if higher.size > 0 and lower.size > 0 else 0.0,
            "balance_ratio": balance_ratio(higher.size, lower.size),
            "asym_ratio": asym_ratio(higher.size, lower.size),
        }
