"""
Tests for the Lag Compensation Service.
"""

import os
import shutil
import tempfile
import unittest
import logging

from services.optimization_store import OptimizationStore
from services.lag_compensation_service import LagCompensationService
from services.thompson_sampling_service.models import Arm, ArmMetrics, LagProfile

# Set up logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class TestLagCompensationService(unittest.TestCase):
    """Test suite for LagCompensationService."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        self.config = {"data_path": self.test_dir, "log_dir": os.path.join(self.test_dir, "logs")}
        self.store = OptimizationStore(self.test_dir)
        self.service = LagCompensationService(self.store, self.config, logger)
        self.arm = Arm(
            id="A",
            name="Campaign A",
            metrics=ArmMetrics(spend=500, clicks=1000, conversions=50, revenue=2500),
            campaign_id="camp-1",
        )

    def tearDown(self):
        """Clean up after tests."""
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_build_profile_is_monotone_and_complete(self):
        profiles = self.service.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})

        self.assertEqual([p.days_since for p in profiles], [1, 3, 7])
        self.assertEqual([p.completion_cdf for p in profiles], [0.5, 0.75, 1.0])
        self.assertAlmostEqual(profiles[0].confidence_score, 0.75)
        self.assertEqual(profiles[0].sample_size, 300)
        self.assertEqual(len(self.service.get_lag_profiles("global")), 3)

    def test_confidence_is_capped(self):
        profiles = self.service.build_lag_profiles("global", "global", {1: 5000, 2: 5000})
        self.assertEqual(profiles[0].confidence_score, 0.95)

    def test_insufficient_data_builds_nothing(self):
        profiles = self.service.build_lag_profiles("campaign", "camp-1", {1: 10, 2: 5})

        self.assertEqual(profiles, [])
        self.assertEqual(self.service.get_lag_profiles(), [])

    def test_non_monotone_curve_rejected(self):
        profiles = [
            LagProfile("global", "global", 1, 0.6, 200, 0.7),
            LagProfile("global", "global", 3, 0.4, 200, 0.7),
        ]

        with self.assertRaises(ValueError):
            self.service.save_lag_profiles(profiles)
        self.assertEqual(self.service.get_lag_profiles(), [])

    def test_out_of_range_point_rejected(self):
        with self.assertRaises(ValueError):
            self.service.save_lag_profiles([LagProfile("global", "global", 1, 1.2, 200, 0.7)])
        with self.assertRaises(ValueError):
            self.service.save_lag_profiles([LagProfile("global", "global", 120, 0.5, 200, 0.7)])
        with self.assertRaises(ValueError):
            self.service.save_lag_profiles([LagProfile("region", "eu", 1, 0.5, 200, 0.7)])

    def test_rebuild_replaces_scope(self):
        self.service.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})
        self.service.build_lag_profiles("global", "global", {2: 100, 4: 100})

        profiles = self.service.get_lag_profiles("global", "global")
        self.assertEqual([p.days_since for p in profiles], [2, 4])

    def test_adjustment_uses_global_profile(self):
        self.service.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})

        adjustment = self.service.calculate_lag_adjustment(self.arm)

        self.assertIsNotNone(adjustment)
        self.assertAlmostEqual(adjustment.adjusted_successes, 100.0)
        self.assertEqual(adjustment.adjusted_trials, 1000)
        self.assertAlmostEqual(adjustment.uncertainty_penalty, 0.025)

    def test_action_scope_preferred(self):
        self.service.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})
        self.service.build_lag_profiles("action", "A", {2: 50, 5: 150})

        profile = self.service.find_profile(self.arm)

        self.assertEqual(profile.scope_type, "action")
        self.assertEqual(profile.completion_cdf, 0.25)

    def test_campaign_scope_before_global(self):
        self.service.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})
        self.service.build_lag_profiles("campaign", "camp-1", {1: 100, 2: 100})

        profile = self.service.find_profile(self.arm)

        self.assertEqual(profile.scope_type, "campaign")
        self.assertEqual(profile.scope_id, "camp-1")

    def test_low_confidence_profile_ignored(self):
        # 50 conversions gives confidence 50 / 150 = 0.33
        self.service.build_lag_profiles("global", "global", {1: 25, 3: 25})

        self.assertIsNone(self.service.calculate_lag_adjustment(self.arm))
        self.assertIsNotNone(self.service.calculate_lag_adjustment(self.arm, threshold=0.3))

    def test_days_since_launch_selects_point(self):
        self.service.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})
        self.arm.days_since_launch = 4

        profile = self.service.find_profile(self.arm)

        self.assertEqual(profile.days_since, 3)
        self.assertEqual(profile.completion_cdf, 0.75)

    def test_complete_curve_point_gives_no_adjustment(self):
        self.service.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})
        self.arm.days_since_launch = 10

        self.assertIsNone(self.service.calculate_lag_adjustment(self.arm))

    def test_lag_window_filters_points(self):
        self.service.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})

        profile = self.service.find_profile(self.arm, min_lag_days=2, max_lag_days=5)

        self.assertEqual(profile.days_since, 3)

    def test_recency_weight(self):
        self.assertAlmostEqual(LagCompensationService.calculate_recency_weight(14), 0.4763, places=4)
        self.assertAlmostEqual(LagCompensationService.calculate_recency_weight(15), 0.5)

    def test_run_build_and_get(self):
        result = self.service.run(
            {"action": "build_profiles", "scope_type": "global", "lag_counts": {"1": 200, "2": 100}}
        )
        self.assertEqual(result["status"], "success")
        self.assertEqual(len(result["profiles"]), 2)

        result = self.service.run({"action": "get_profiles"})
        self.assertEqual(len(result["profiles"]), 2)


if __name__ == "__main__":
    unittest.main()
