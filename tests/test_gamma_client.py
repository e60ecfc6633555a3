from __future__ import annotations

from datetime import datetime, timedelta, timezone
import unittest

from tests.helpers import ROOT  # noqa: F401
from hedge_bot.clients_clob import ClobClient
from hedge_bot.clients_data import DataApiClient
from hedge_bot.clients_gamma import GammaClient, GammaMarketPayload, parse_market, rolling_slug
from hedge_bot.feeds import FeedError, LiveFeed, PoolResolutionError


class FakeGammaClient(GammaClient):
    def __init__(self, items: list[dict] | None = None, error: Exception | None = None) -> None:
        super().__init__(base_url="https://gamma-api.polymarket.com", timeout_seconds=1.0)
        self._items = items or []
        self._error = error

    def fetch_by_slug(self, slug: str) -> list[GammaMarketPayload]:
        if self._error is not None:
            raise self._error
        return [item for item in self._items if item.get("slug") == slug]  # type: ignore[misc]


class FakeClobClient(ClobClient):
    def __init__(self, books: dict[str, dict]) -> None:
        super().__init__(base_url="https://clob.polymarket.com", timeout_seconds=1.0)
        self._books = books

    def get_book(self, token_id: str) -> dict:
        if token_id not in self._books:
            raise OSError("connection reset")
        return self._books[token_id]


def market_item(slug: str = "btc-updown-15m-1760700600", minutes_left: float = 10.0) -> dict:
    now = datetime.now(tz=timezone.utc)
    return {
        "id": "m-15m",
        "question": "Bitcoin Up or Down - October 17, 7:30AM-7:45AM ET",
        "endDate": (now + timedelta(minutes=minutes_left)).isoformat(),
        "conditionId": "0x" + ("11" * 32),
        "clobTokenIds": '["tok-down","tok-up"]',
        "outcomes": '["Down","Up"]',
        "slug": slug,
    }


class GammaClientTests(unittest.TestCase):
    def test_rolling_slug_aligns_to_pool_start(self) -> None:
        now = datetime(2025, 10, 17, 12, 7, 30, tzinfo=timezone.utc)
        slug = rolling_slug("btc-updown-15m", 15, now)
        base, epoch = slug.rsplit("-", 1)
        self.assertEqual(base, "btc-updown-15m")
        start = int(epoch)
        self.assertEqual(start % 900, 0)
        self.assertLessEqual(start, now.timestamp())
        self.assertGreater(start + 900, now.timestamp())

    def test_rolling_slug_replaces_existing_epoch(self) -> None:
        now = datetime(2025, 10, 17, 12, 7, 30, tzinfo=timezone.utc)
        self.assertEqual(
            rolling_slug("btc-updown-15m-1700000000", 15, now),
            rolling_slug("btc-updown-15m", 15, now),
        )
        hourly = rolling_slug("btc-updown-1h", 60, now)
        self.assertEqual(int(hourly.rsplit("-", 1)[1]) % 3600, 0)

    def test_parse_market_orders_up_leg_first(self) -> None:
        market = parse_market(market_item())  # type: ignore[arg-type]
        assert market is not None
        self.assertEqual(market.leg_ids, ("tok-up", "tok-down"))
        self.assertEqual(market.primary_label, "Up")
        self.assertGreater(market.seconds_to_end, 0)

    def test_parse_market_requires_two_tokens_and_end_date(self) -> None:
        item = market_item()
        item["clobTokenIds"] = '["tok-up"]'
        self.assertIsNone(parse_market(item))  # type: ignore[arg-type]
        item = market_item()
        item["endDate"] = ""
        self.assertIsNone(parse_market(item))  # type: ignore[arg-type]
        item = market_item()
        del item["id"]
        self.assertIsNone(parse_market(item))  # type: ignore[arg-type]

    def test_market_by_slug_skips_unparseable_items(self) -> None:
        bad = market_item()
        bad["clobTokenIds"] = "[]"
        client = FakeGammaClient([bad, market_item()])
        market = client.market_by_slug("btc-updown-15m-1760700600")
        assert market is not None
        self.assertEqual(market.market_id, "m-15m")
        self.assertIsNone(client.market_by_slug("unknown"))


class LiveFeedTests(unittest.TestCase):
    def books(self) -> dict[str, dict]:
        return {
            "tok-up": {
                "bids": [{"price": "0.50", "size": "10"}, {"price": "0.52", "size": "5"}],
                "asks": [{"price": "0.56", "size": "10"}, {"price": "0.54", "size": "5"}],
            },
            "tok-down": {
                "bids": [{"price": "0.44", "size": "10"}],
                "asks": [{"price": "0.47", "size": "10"}],
            },
        }

    def test_resolve_and_quote(self) -> None:
        feed = LiveFeed(FakeClobClient(self.books()), FakeGammaClient([market_item()]), "btc-updown-15m-1760700600")
        info = feed.resolve()
        self.assertEqual(feed.leg_ids, ("tok-up", "tok-down"))
        self.assertEqual(feed.market, info.slug)
        quote = feed.get_price("tok-up")
        self.assertAlmostEqual(quote.bid, 0.52, places=9)
        self.assertAlmostEqual(quote.ask, 0.54, places=9)
        self.assertAlmostEqual(quote.mid, 0.53, places=9)
        self.assertGreater(feed.minutes_remaining(), 9.0)

    def test_unknown_slug_is_pool_resolution_error(self) -> None:
        feed = LiveFeed(FakeClobClient(self.books()), FakeGammaClient([]), "missing")
        with self.assertRaises(PoolResolutionError):
            feed.resolve()
        broken = LiveFeed(FakeClobClient(self.books()), FakeGammaClient(error=OSError("dns")), "missing")
        with self.assertRaises(PoolResolutionError):
            broken.resolve()

    def test_price_failures_are_feed_errors(self) -> None:
        books = self.books()
        books["tok-down"] = {"bids": [], "asks": []}
        feed = LiveFeed(FakeClobClient(books), FakeGammaClient([market_item()]), "btc-updown-15m-1760700600")
        feed.resolve()
        with self.assertRaises(FeedError):
            feed.get_price("tok-down")
        with self.assertRaises(FeedError):
            feed.get_price("tok-missing")

    def test_positions_require_data_client_and_owner(self) -> None:
        class FakeDataApi(DataApiClient):
            def get_positions(self, owner: str):
                raise ValueError("bad json")

        feed = LiveFeed(FakeClobClient(self.books()), FakeGammaClient([market_item()]), "x")
        self.assertEqual(feed.get_positions("0xabc"), [])
        failing = LiveFeed(
            FakeClobClient(self.books()),
            FakeGammaClient([market_item()]),
            "x",
            data_api=FakeDataApi("https://data-api.polymarket.com"),
        )
        self.assertEqual(failing.get_positions(""), [])
        with self.assertRaises(FeedError):
            failing.get_positions("0xabc")


if __name__ == "__main__":
    unittest.main()
