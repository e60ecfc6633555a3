from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import TypedDict, cast

from hedge_bot.http_utils import get_json
from hedge_bot.models import MarketInfo, parse_json_list, parse_ts


class GammaMarketPayload(TypedDict, total=False):
    id: str | int
    slug: str
    question: str
    conditionId: str
    endDate: str
    clobTokenIds: list[str] | str
    outcomes: list[str] | str


def _choose_primary_secondary(outcomes: list[str], token_ids: list[str]) -> tuple[str, str, str, str]:
    if len(token_ids) < 2:
        return "", "", "primary", "secondary"

    pairs = list(zip(outcomes, token_ids))
    if len(pairs) < 2:
        return token_ids[0], token_ids[1], "primary", "secondary"

    def score(label: str) -> int:
        normalized = label.lower()
        if "up" in normalized or "yes" in normalized:
            return 3
        if "down" in normalized or "no" in normalized:
            return 1
        return 2

    pairs_sorted = sorted(pairs, key=lambda x: score(x[0]), reverse=True)
    primary_label, primary_token = pairs_sorted[0]
    secondary_label, secondary_token = pairs_sorted[-1]
    return primary_token, secondary_token, primary_label, secondary_label


_EPOCH_SUFFIX = re.compile(r"-\d{10,}$")


def rolling_slug(pattern: str, pool_minutes: int, now: datetime | None = None) -> str:
    """
    Slug of the pool that is live at `now`, e.g.
      btc-updown-15m -> btc-updown-15m-1760700600
    A trailing epoch already present in `pattern` is replaced.
    """
    now = now or datetime.now(tz=timezone.utc)
    interval = max(1, int(pool_minutes)) * 60
    start = int(now.timestamp()) // interval * interval
    base = _EPOCH_SUFFIX.sub("", pattern.strip())
    return f"{base}-{start}"


def parse_market(item: GammaMarketPayload) -> MarketInfo | None:
    market_id_raw = item.get("id")
    market_id = str(market_id_raw).strip() if market_id_raw is not None else ""
    if not market_id:
        return None
    end_raw = item.get("endDate")
    if not isinstance(end_raw, str) or not end_raw.strip():
        return None
    try:
        end_time = parse_ts(end_raw)
    except ValueError:
        return None
    token_ids = parse_json_list(item.get("clobTokenIds"))
    if len(token_ids) < 2:
        return None
    outcomes = parse_json_list(item.get("outcomes"))
    primary_token, secondary_token, primary_label, secondary_label = _choose_primary_secondary(outcomes, token_ids)
    slug_raw = item.get("slug")
    question_raw = item.get("question")
    condition_raw = item.get("conditionId")
    return MarketInfo(
        market_id=market_id,
        slug=slug_raw.strip() if isinstance(slug_raw, str) else "",
        question=question_raw.strip() if isinstance(question_raw, str) else "",
        condition_id=condition_raw.strip() if isinstance(condition_raw, str) else "",
        end_time=end_time,
        outcomes=outcomes,
        token_ids=token_ids,
        primary_token_id=primary_token,
        secondary_token_id=secondary_token,
        primary_label=primary_label,
        secondary_label=secondary_label,
    )


@dataclass
class GammaClient:
    base_url: str
    timeout_seconds: float = 10.0

    def fetch_by_slug(self, slug: str) -> list[GammaMarketPayload]:
        payload = get_json(f"{self.base_url}/markets", params={"slug": slug}, timeout=self.timeout_seconds)
        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list):
            raise RuntimeError("Gamma /markets response must be a JSON array")
        return [cast(GammaMarketPayload, item) for item in payload if isinstance(item, dict)]

    def market_by_slug(self, slug: str) -> MarketInfo | None:
        for item in self.fetch_by_slug(slug):
            market = parse_market(item)
            if market is not None:
                return market
        return None
