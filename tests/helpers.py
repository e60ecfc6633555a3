from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import random
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from hedge_bot.config import SimulatorConfig, StrategyConfig, load_config, strategy_preset  # noqa: E402
from hedge_bot.models import PriceQuote, Snapshot  # noqa: E402

UP = "token-up"
DOWN = "token-down"


def test_config(**kwargs):
    cfg = load_config()
    return replace(cfg, **kwargs)


test_config.__test__ = False  # type: ignore[attr-defined]


def strategy(name: str = "nuoiem", **overrides) -> StrategyConfig:
    return replace(strategy_preset(name), **overrides)


def sim_config(**overrides) -> SimulatorConfig:
    base = SimulatorConfig(
        fill_probability=1.0,
        enable_slippage=False,
        invalid_price_probability=0.0,
        rejection_probability=0.0,
        illiquid_probability=0.0,
        seed=7,
    )
    return replace(base, **overrides)


class FixedRandom(random.Random):
    """Every roll returns the same value; 0.0 fills every order unless a failure is certain."""

    def __init__(self, value: float = 0.0) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value

    def uniform(self, a: float, b: float) -> float:
        return a + (b - a) * self.value


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_snapshot(
    up_ask: float = 0.55,
    down_ask: float = 0.40,
    up_size: float = 0.0,
    down_size: float = 0.0,
    minutes: float = 10.0,
    spread: float = 0.01,
) -> Snapshot:
    return Snapshot(
        market="btc-updown-15m-test",
        leg_ids=(UP, DOWN),
        quotes={
            UP: PriceQuote(bid=max(0.0, up_ask - spread), ask=up_ask),
            DOWN: PriceQuote(bid=max(0.0, down_ask - spread), ask=down_ask),
        },
        positions={UP: up_size, DOWN: down_size},
        minutes_remaining=minutes,
    )
