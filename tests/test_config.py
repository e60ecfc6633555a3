from __future__ import annotations

import unittest
from unittest.mock import patch

from tests.helpers import ROOT  # noqa: F401
from hedge_bot.config import KARAS, NUOIEM, PRESETS, RAISEM, RAISEM_V1, load_config, strategy_preset


class PresetTests(unittest.TestCase):
    def test_presets_are_registered_by_name(self) -> None:
        self.assertEqual(sorted(PRESETS), ["karas", "nuoiem", "raisem", "raisemV1"])
        for name, preset in PRESETS.items():
            self.assertEqual(preset.name, name)

    def test_unknown_preset_raises(self) -> None:
        with self.assertRaises(ValueError):
            strategy_preset("martingale")
        self.assertIs(strategy_preset(" raisem "), RAISEM)

    def test_variant_thresholds(self) -> None:
        self.assertAlmostEqual(NUOIEM.target_pair_cost, 0.95, places=9)
        self.assertFalse(NUOIEM.strict_pair_cap)
        self.assertTrue(RAISEM.strict_pair_cap)
        self.assertAlmostEqual(RAISEM.min_improvement, 0.01, places=9)
        self.assertGreater(RAISEM.history_window, 0)
        self.assertTrue(RAISEM_V1.resume_on_dip)
        self.assertAlmostEqual(KARAS.target_pair_cost, 0.965, places=9)
        self.assertAlmostEqual(KARAS.max_pool_cost, 100.0, places=9)
        self.assertEqual(KARAS.probe_sizing, "midpoint")

    def test_guard_bands_are_consistent(self) -> None:
        for preset in PRESETS.values():
            self.assertLessEqual(preset.min_asym_ratio, preset.max_asym_ratio)
            if preset.pause_threshold > 0:
                self.assertLessEqual(preset.resume_threshold, preset.pause_threshold)
            self.assertLessEqual(preset.probe_min_price, preset.probe_max_price)
            self.assertLessEqual(preset.avg_down_size_min, preset.avg_down_size_max)
            self.assertLessEqual(preset.hedge_size_min, preset.hedge_size_max)


class LoadConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict("os.environ", {}, clear=True):
            cfg = load_config()
        self.assertTrue(cfg.paper_mode)
        self.assertEqual(cfg.strategy, NUOIEM)
        self.assertAlmostEqual(cfg.simulator.budget_usd, 100.0, places=9)
        self.assertAlmostEqual(cfg.simulator.fill_delay_ms, 1000.0, places=9)
        self.assertEqual(cfg.simulator.max_retries, 3)
        self.assertIsNone(cfg.simulator.seed)
        self.assertIsNone(cfg.poly_signature_type)
        self.assertAlmostEqual(cfg.api_timeout_seconds, 3.0, places=9)

    def test_env_overrides(self) -> None:
        env = {
            "BOT_MODE": "LIVE",
            "TRADING_STRATEGY": "karas",
            "MAX_BUDGET_PER_POOL": "250",
            "SIM_SEED": "42",
            "SIM_FILL_PROBABILITY": "0.6",
            "SIM_ENABLE_SLIPPAGE": "false",
            "POLY_SIGNATURE_TYPE": "1",
            "POLL_INTERVAL_MS": "500",
        }
        with patch.dict("os.environ", env, clear=True):
            cfg = load_config()
        self.assertTrue(cfg.live_mode)
        self.assertIs(cfg.strategy, KARAS)
        self.assertAlmostEqual(cfg.simulator.budget_usd, 250.0, places=9)
        self.assertEqual(cfg.simulator.seed, 42)
        self.assertAlmostEqual(cfg.simulator.fill_probability, 0.6, places=9)
        self.assertFalse(cfg.simulator.enable_slippage)
        self.assertEqual(cfg.poly_signature_type, 1)
        self.assertAlmostEqual(cfg.poll_interval_seconds, 0.5, places=9)

    def test_unparseable_numbers_fall_back(self) -> None:
        env = {"MAX_BUDGET_PER_POOL": "lots", "SIM_SEED": "abc", "SIM_MAX_RETRIES": "x"}
        with patch.dict("os.environ", env, clear=True):
            cfg = load_config()
        self.assertAlmostEqual(cfg.simulator.budget_usd, 100.0, places=9)
        self.assertIsNone(cfg.simulator.seed)
        self.assertEqual(cfg.simulator.max_retries, 3)


if __name__ == "__main__":
    unittest.main()
