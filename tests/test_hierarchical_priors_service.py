"""
Tests for the Hierarchical Priors Service.
"""

import os
import shutil
import tempfile
import unittest
import logging
from datetime import datetime, timedelta

from services.optimization_store import OptimizationStore
from services.hierarchical_priors_service import (
    HierarchicalPriorsService,
    GLOBAL,
    CAMPAIGN,
    ACTION,
    CVR,
    REVENUE,
)

# Set up logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

NOW = datetime(2024, 6, 1, 12, 0, 0)


class TestHierarchicalPriorsService(unittest.TestCase):
    """Test suite for HierarchicalPriorsService."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        self.config = {"data_path": self.test_dir, "log_dir": os.path.join(self.test_dir, "logs")}
        self.store = OptimizationStore(self.test_dir)
        self.service = HierarchicalPriorsService(self.store, self.config, logger, clock=lambda: NOW)

    def tearDown(self):
        """Clean up after tests."""
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _measure(self, arm_id, campaign_id, trials, successes, revenue=0.0, age_days=1):
        self.store.append_measurement(
            {
                "measurement_id": f"{arm_id}-{age_days}",
                "experiment_id": campaign_id,
                "arm_id": arm_id,
                "trials": trials,
                "successes": successes,
                "revenue_total": revenue,
                "created_at": (NOW - timedelta(days=age_days)).isoformat(),
            }
        )

    def _seed_two_campaigns(self):
        self._measure("a0", "c1", trials=40, successes=2)
        self._measure("a1", "c2", trials=200, successes=20, revenue=2000)

    def test_update_counts_per_level(self):
        self._seed_two_campaigns()

        counts = self.service.update_all_priors()

        # c1 is below the campaign gate; a0 has too few conversions for a revenue prior
        self.assertEqual(counts, {"global_priors": 2, "campaign_priors": 2, "action_priors": 3})
        self.assertIsNone(self.service.get_prior(CAMPAIGN, "c1", CVR))
        self.assertIsNotNone(self.service.get_prior(ACTION, "a0", CVR))
        self.assertIsNone(self.service.get_prior(ACTION, "a0", REVENUE))

    def test_priors_are_valid_and_confident(self):
        self._seed_two_campaigns()
        self.service.update_all_priors()

        for level, scope_id, metric in [
            (GLOBAL, GLOBAL, CVR),
            (GLOBAL, GLOBAL, REVENUE),
            (CAMPAIGN, "c2", CVR),
            (ACTION, "a1", REVENUE),
        ]:
            prior = self.service.get_prior(level, scope_id, metric)
            self.assertGreaterEqual(prior.alpha_prior, 1.0)
            self.assertGreaterEqual(prior.beta_prior, 1.0)
            self.assertGreater(prior.gamma_rate_prior, 0.0)
            self.assertLessEqual(prior.confidence_level, 0.95)
            self.assertEqual(prior.updated_at, NOW.isoformat())

    def test_effective_priors_lookup_order(self):
        self._seed_two_campaigns()
        self.service.update_all_priors()

        priors = self.service.get_effective_priors("a0", "c1")
        self.assertEqual(priors["cvr"].level, ACTION)
        self.assertEqual(priors["revenue"].level, GLOBAL)

        priors = self.service.get_effective_priors("new-arm", "c2")
        self.assertEqual(priors["cvr"].level, CAMPAIGN)
        self.assertEqual(priors["revenue"].level, CAMPAIGN)

        priors = self.service.get_effective_priors("new-arm")
        self.assertEqual(priors["cvr"].level, GLOBAL)

    def test_no_history_gives_no_priors(self):
        counts = self.service.update_all_priors()

        self.assertEqual(counts, {"global_priors": 0, "campaign_priors": 0, "action_priors": 0})
        self.assertEqual(self.service.get_effective_priors("a0", "c1"), {"cvr": None, "revenue": None})

    def test_old_measurements_excluded(self):
        self._measure("a1", "c2", trials=200, successes=20, revenue=2000, age_days=100)

        counts = self.service.update_all_priors()

        self.assertEqual(counts["global_priors"], 0)

    def test_action_window_is_shorter(self):
        self._measure("a1", "c2", trials=200, successes=20, revenue=2000, age_days=45)

        counts = self.service.update_all_priors()

        self.assertEqual(counts["campaign_priors"], 2)
        self.assertEqual(counts["action_priors"], 0)

    def test_clean_old_priors(self):
        self._seed_two_campaigns()
        self.service.update_all_priors()
        stored = sum(self.service.get_priors_stats()[k] for k in ["global_priors", "campaign_priors", "action_priors"])

        later = HierarchicalPriorsService(
            self.store, self.config, logger, clock=lambda: NOW + timedelta(days=200)
        )
        removed = later.clean_old_priors()

        self.assertEqual(removed, stored)
        self.assertEqual(later.get_priors_stats()["global_priors"], 0)

    def test_clean_keeps_recent_priors(self):
        self._seed_two_campaigns()
        self.service.update_all_priors()

        self.assertEqual(self.service.clean_old_priors(retention_days=30), 0)

    def test_learn_beta_prior_without_trials(self):
        self.assertIsNone(HierarchicalPriorsService.learn_beta_prior(0, 0, 10))

    def test_learn_beta_prior_degenerate_rate(self):
        prior = HierarchicalPriorsService.learn_beta_prior(0, 100, 10)

        self.assertGreaterEqual(prior["alpha_prior"], 1.0)
        self.assertGreaterEqual(prior["beta_prior"], 1.0)

    def test_learn_gamma_prior(self):
        self.assertIsNone(HierarchicalPriorsService.learn_gamma_prior(0, 100, 10))

        prior = HierarchicalPriorsService.learn_gamma_prior(20, 2000, 100)
        # Shape n and rate n / mean before scaling by strength / 100
        self.assertAlmostEqual(prior["gamma_shape_prior"], 20.0)
        self.assertAlmostEqual(prior["gamma_rate_prior"], 0.2)

    def test_shrink_toward_parent(self):
        self._seed_two_campaigns()
        self.service.update_all_priors()
        parent = self.service.get_prior(GLOBAL, GLOBAL, CVR)
        local = HierarchicalPriorsService.learn_beta_prior(50, 100, 5)

        blended = HierarchicalPriorsService.shrink(local, parent, 5, 5)

        self.assertAlmostEqual(blended["alpha_prior"], 0.5 * local["alpha_prior"] + 0.5 * parent.alpha_prior)

    def test_run_actions(self):
        self._seed_two_campaigns()

        result = self.service.run({"action": "update_priors"})
        self.assertEqual(result["status"], "success")
        self.assertEqual(result["global_priors"], 2)

        result = self.service.run({"action": "get_effective_priors", "arm_id": "a1", "campaign_id": "c2"})
        self.assertEqual(result["priors"]["cvr"]["level"], ACTION)

        result = self.service.run({"action": "get_stats"})
        self.assertEqual(result["last_updated"], NOW.isoformat())


if __name__ == "__main__":
    unittest.main()
