from __future__ import annotations

import logging
import random
import time
from typing import Callable

from hedge_bot.clients_clob import ClobClient
from hedge_bot.clients_data import DataApiClient
from hedge_bot.clients_gamma import GammaClient
from hedge_bot.models import MarketInfo, Position, PriceQuote
from hedge_bot.pricing import clamp, round_tick

LOGGER = logging.getLogger("hedge_bot")


class FeedError(RuntimeError):
    """Price or position fetch failed; the current cycle is skipped."""


class PoolResolutionError(RuntimeError):
    """The traded pool cannot be resolved at all."""


class PriceFeed:
    market: str = ""
    leg_ids: tuple[str, str] = ("", "")

    def get_price(self, leg_id: str) -> PriceQuote:
        raise NotImplementedError

    def get_positions(self, owner: str) -> list[Position]:
        return []

    def minutes_remaining(self) -> float:
        raise NotImplementedError

    def quotes(self) -> dict[str, PriceQuote]:
        return {leg_id: self.get_price(leg_id) for leg_id in self.leg_ids}


class LiveFeed(PriceFeed):
    def __init__(
        self,
        clob: ClobClient,
        gamma: GammaClient,
        slug: str,
        data_api: DataApiClient | None = None,
    ) -> None:
        self.clob = clob
        self.gamma = gamma
        self.data_api = data_api
        self.slug = slug
        self.info: MarketInfo | None = None

    def resolve(self) -> MarketInfo:
        try:
            info = self.gamma.market_by_slug(self.slug)
        except (OSError, ValueError, RuntimeError) as exc:
            raise PoolResolutionError(f"market lookup failed slug={self.slug}: {exc}") from exc
        if info is None:
            raise PoolResolutionError(f"no tradable market for slug={self.slug}")
        self.info = info
        self.market = info.slug or self.slug
        self.leg_ids = info.leg_ids
        LOGGER.info(
            "pool_resolved slug=%s market_id=%s legs=%s/%s labels=%s/%s",
            self.market,
            info.market_id,
            info.primary_token_id,
            info.secondary_token_id,
            info.primary_label,
            info.secondary_label,
        )
        return info

    def get_price(self, leg_id: str) -> PriceQuote:
        try:
            quote = self.clob.get_quote(leg_id)
        except (OSError, ValueError, RuntimeError) as exc:
            raise FeedError(f"price fetch failed leg={leg_id}: {exc}") from exc
        if quote.ask <= 0:
            raise FeedError(f"empty ask side leg={leg_id}")
        return quote

    def get_positions(self, owner: str) -> list[Position]:
        if self.data_api is None or not owner:
            return []
        try:
            return self.data_api.get_positions(owner)
        except (OSError, ValueError, RuntimeError) as exc:
            raise FeedError(f"positions fetch failed owner={owner}: {exc}") from exc

    def minutes_remaining(self) -> float:
        if self.info is None:
            self.resolve()
        assert self.info is not None
        return max(0.0, self.info.seconds_to_end / 60.0)


class SyntheticFeed(PriceFeed):
    """Seeded random walk over a two-leg pool whose mids sum to 1.0."""

    def __init__(
        self,
        rng: random.Random,
        clock: Callable[[], float] = time.monotonic,
        pool_minutes: float = 15.0,
        start_price: float = 0.55,
        volatility: float = 0.01,
        spread: float = 0.01,
        market: str = "synthetic-pool",
        leg_ids: tuple[str, str] = ("leg-up", "leg-down"),
    ) -> None:
        self.rng = rng
        self.clock = clock
        self.pool_minutes = pool_minutes
        self.volatility = volatility
        self.spread = spread
        self.market = market
        self.leg_ids = leg_ids
        self.mid = clamp(start_price, 0.05, 0.95)
        self._started_at = clock()
        self._last: dict[str, PriceQuote] = {}

    def _step(self) -> None:
        self.mid = clamp(self.mid + self.rng.gauss(0.0, self.volatility), 0.05, 0.95)
        half = self.spread / 2.0
        up, down = self.leg_ids
        for leg_id, mid in ((up, self.mid), (down, 1.0 - self.mid)):
            self._last[leg_id] = PriceQuote(
                bid=round_tick(mid - half),
                ask=round_tick(mid + half),
            )

    def quotes(self) -> dict[str, PriceQuote]:
        self._step()
        return dict(self._last)

    def get_price(self, leg_id: str) -> PriceQuote:
        if not self._last:
            self._step()
        return self._last[leg_id]

    def minutes_remaining(self) -> float:
        elapsed = (self.clock() - self._started_at) / 60.0
        return max(0.0, self.pool_minutes - elapsed)
