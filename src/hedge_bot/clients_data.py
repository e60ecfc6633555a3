from __future__ import annotations

from dataclasses import dataclass

from hedge_bot.http_utils import get_json
from hedge_bot.models import Position, parse_float


@dataclass
class DataApiClient:
    base_url: str
    timeout_seconds: float = 10.0

    def get_positions(self, owner: str) -> list[Position]:
        params = {"user": owner, "sizeThreshold": "0.01", "limit": "500"}
        payload = get_json(f"{self.base_url}/positions", params=params, timeout=self.timeout_seconds)
        if not isinstance(payload, list):
            return []
        out: list[Position] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            asset = str(item.get("asset") or "").strip()
            if not asset:
                continue
            out.append(Position(asset=asset, size=parse_float(item.get("size"))))
        return out
