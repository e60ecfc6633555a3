from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from hedge_bot.http_utils import get_json
from hedge_bot.models import PriceQuote, parse_float


def _best_level(levels: Any, best: str) -> float:
    if not isinstance(levels, list):
        return 0.0
    prices = [parse_float(level.get("price")) for level in levels if isinstance(level, dict)]
    prices = [p for p in prices if p > 0]
    if not prices:
        return 0.0
    return max(prices) if best == "max" else min(prices)


@dataclass
class ClobClient:
    base_url: str
    timeout_seconds: float = 10.0

    def get_book(self, token_id: str) -> dict[str, Any]:
        params = {"token_id": token_id}
        payload = get_json(f"{self.base_url}/book", params=params, timeout=self.timeout_seconds)
        if not isinstance(payload, dict):
            raise RuntimeError("CLOB /book response must be a JSON object")
        return payload

    def get_quote(self, token_id: str) -> PriceQuote:
        """Best bid / best ask for one token, regardless of book sort order."""
        book = self.get_book(token_id)
        return PriceQuote(
            bid=_best_level(book.get("bids"), "max"),
            ask=_best_level(book.get("asks"), "min"),
        )
