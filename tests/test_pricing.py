from __future__ import annotations

import unittest

from tests.helpers import ROOT  # noqa: F401
from hedge_bot.models import LegEntry, LegState
from hedge_bot.pricing import asym_ratio, balance_ratio, clamp, ladder_price, project_average, round_tick, weighted_average


class PricingTests(unittest.TestCase):
    def test_weighted_average_matches_definition(self) -> None:
        entries = [LegEntry(0.55, 100.0), LegEntry(0.52, 110.0), LegEntry(0.50, 20.0)]
        expected = (0.55 * 100 + 0.52 * 110 + 0.50 * 20) / 230
        self.assertAlmostEqual(weighted_average(entries), expected, places=9)
        self.assertAlmostEqual(LegState("x", list(entries)).weighted_average, expected, places=9)

    def test_weighted_average_single_entry_is_its_price(self) -> None:
        self.assertAlmostEqual(weighted_average([LegEntry(0.47, 33.0)]), 0.47, places=9)
        self.assertAlmostEqual(LegState("x", [LegEntry(0.47, 33.0)]).weighted_average, 0.47, places=9)

    def test_weighted_average_empty_is_zero(self) -> None:
        self.assertEqual(weighted_average([]), 0.0)
        self.assertEqual(LegState("x").weighted_average, 0.0)

    def test_leg_state_collapse_keeps_previous_average(self) -> None:
        leg = LegState("x", [LegEntry(0.50, 50.0), LegEntry(0.40, 50.0)])
        leg.collapse(30.0)
        self.assertEqual(len(leg.entries), 1)
        self.assertAlmostEqual(leg.weighted_average, 0.45, places=9)
        self.assertAlmostEqual(leg.size, 30.0, places=9)
        leg.collapse(0.0)
        self.assertEqual(leg.entries, [])

    def test_ladder_first_rung_at_market_then_offsets(self) -> None:
        offsets = (-0.01, -0.03)
        self.assertAlmostEqual(ladder_price(0.55, offsets, 0), 0.55, places=9)
        self.assertAlmostEqual(ladder_price(0.55, offsets, 1), 0.52, places=9)
        self.assertAlmostEqual(ladder_price(0.55, offsets, 5), 0.52, places=9)

    def test_ladder_without_market_rung_uses_offsets_directly(self) -> None:
        offsets = (-0.02, -0.03, -0.05)
        self.assertAlmostEqual(ladder_price(0.50, offsets, 0, first_at_market=False), 0.48, places=9)
        self.assertAlmostEqual(ladder_price(0.50, offsets, 2, first_at_market=False), 0.45, places=9)

    def test_ladder_is_floored_at_min_price(self) -> None:
        self.assertAlmostEqual(ladder_price(0.02, (-0.05,), 1, min_price=0.01), 0.01, places=9)

    def test_project_average(self) -> None:
        self.assertAlmostEqual(project_average(0.55, 100.0, 0.52, 110.0), (55.0 + 57.2) / 210.0, places=9)
        self.assertAlmostEqual(project_average(0.0, 0.0, 0.40, 10.0), 0.40, places=9)

    def test_balance_and_asymmetry(self) -> None:
        self.assertAlmostEqual(balance_ratio(100.0, 40.0), 0.40, places=9)
        self.assertEqual(balance_ratio(100.0, 0.0), 0.0)
        self.assertAlmostEqual(asym_ratio(100.0, 60.0), 0.625, places=9)
        self.assertEqual(asym_ratio(0.0, 0.0), 0.0)

    def test_clamp_and_round_tick(self) -> None:
        self.assertEqual(clamp(1.4, 0.0, 1.0), 1.0)
        self.assertAlmostEqual(round_tick(0.5449), 0.54, places=9)
        self.assertAlmostEqual(round_tick(0.0), 0.01, places=9)


if __name__ == "__main__":
    unittest.main()
