"""
Tests for the Lag-Aware Allocation Service.
"""

import os
import shutil
import tempfile
import unittest
import logging
from unittest.mock import patch

from services.optimization_store import OptimizationStore
from services.feature_flag_service import (
    FeatureFlagService,
    HIERARCHICAL_EMPIRICAL_BAYES,
    LAG_AWARE_POSTERIOR_UPDATES,
    RECENCY_LAG_ADJUSTED_STATS,
)
from services.hierarchical_priors_service import HierarchicalPriorsService
from services.lag_compensation_service import LagCompensationService
from services.lag_aware_allocation_service import LagAwareAllocationService
from services.thompson_sampling_service import ThompsonSamplingService
from services.thompson_sampling_service.models import (
    Arm,
    ArmMetrics,
    AllocationErrorKind,
    BudgetConstraints,
    LagAwareConstraints,
)

# Set up logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def make_arm(arm_id, clicks, conversions, spend, revenue, **kwargs):
    return Arm(
        id=arm_id,
        name=f"Campaign {arm_id}",
        metrics=ArmMetrics(spend=spend, clicks=clicks, conversions=conversions, revenue=revenue),
        **kwargs,
    )


class TestLagAwareAllocationService(unittest.TestCase):
    """Test suite for LagAwareAllocationService."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        self.config = {"data_path": self.test_dir, "log_dir": os.path.join(self.test_dir, "logs")}
        self.store = OptimizationStore(self.test_dir)
        self.flags = FeatureFlagService(self.store, self.config, logger)
        self.priors = HierarchicalPriorsService(self.store, self.config, logger)
        self.lag = LagCompensationService(self.store, self.config, logger)
        self.service = LagAwareAllocationService(
            self.store,
            self.config,
            logger,
            flag_service=self.flags,
            priors_service=self.priors,
            lag_service=self.lag,
        )
        self.base = ThompsonSamplingService(config=self.config, logger=logger)
        self.constraints = BudgetConstraints(min_daily_budget=5, max_daily_budget=100)
        self.arms = [
            make_arm("A", clicks=500, conversions=100, spend=1000, revenue=5000),
            make_arm("B", clicks=300, conversions=20, spend=1000, revenue=1000),
        ]

    def tearDown(self):
        """Clean up after tests."""
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _proposals(self, outcome):
        return [a.proposed_daily_budget for a in outcome.allocations]

    def test_all_flags_off_matches_base(self):
        enhanced = self.service.allocate_budget(self.arms, 75, self.constraints, seed=42)
        base = self.base.allocate_budget(self.arms, 75, self.constraints, seed=42)

        self.assertTrue(enhanced.success)
        self.assertFalse(enhanced.fallback_used)
        self.assertEqual(self._proposals(enhanced), self._proposals(base))
        self.assertNotIn("enhancements", enhanced.metadata)

    def test_hierarchical_without_priors_matches_base_proposals(self):
        self.flags.enable_feature_flag(HIERARCHICAL_EMPIRICAL_BAYES, 100)

        enhanced = self.service.allocate_budget(self.arms, 75, self.constraints, seed=42)
        base = self.base.allocate_budget(self.arms, 75, self.constraints, seed=42)

        self.assertTrue(enhanced.success)
        self.assertFalse(enhanced.fallback_used)
        self.assertEqual(self._proposals(enhanced), self._proposals(base))
        for allocation in enhanced.allocations:
            self.assertTrue(allocation.reasoning.endswith(" [Enhanced with cross-campaign learning]"))
        self.assertEqual(enhanced.metadata["enhancements"]["A"], [HIERARCHICAL_EMPIRICAL_BAYES])

    def test_constraint_toggle_disables_enhancement(self):
        self.flags.enable_feature_flag(HIERARCHICAL_EMPIRICAL_BAYES, 100)
        constraints = LagAwareConstraints(
            min_daily_budget=5, max_daily_budget=100, enable_hierarchical_priors=False
        )

        outcome = self.service.allocate_budget(self.arms, 75, constraints, seed=42)

        self.assertTrue(outcome.success)
        self.assertNotIn("enhancements", outcome.metadata)
        self.assertEqual(self.store.measurement_count(), 0)

    def test_enhanced_error_falls_back_to_base(self):
        self.flags.enable_feature_flag(HIERARCHICAL_EMPIRICAL_BAYES, 100)

        with patch.object(self.service, "compute_lag_aware_posterior", side_effect=RuntimeError("boom")):
            outcome = self.service.allocate_budget(self.arms, 75, self.constraints, seed=42)

        base = self.base.allocate_budget(self.arms, 75, self.constraints, seed=42)
        self.assertTrue(outcome.success)
        self.assertTrue(outcome.fallback_used)
        self.assertEqual(outcome.metadata["fallback_reason"], "boom")
        self.assertEqual(self._proposals(outcome), self._proposals(base))

    def test_no_valid_arms_falls_back_to_base(self):
        self.flags.enable_feature_flag(HIERARCHICAL_EMPIRICAL_BAYES, 100)
        arms = [
            make_arm("X", clicks=10, conversions=15, spend=20, revenue=300),
            make_arm("Y", clicks=4, conversions=9, spend=8, revenue=90),
        ]

        outcome = self.service.allocate_budget(arms, 40, self.constraints, seed=3)
        base = self.base.allocate_budget(arms, 40, self.constraints, seed=3)

        self.assertTrue(outcome.success)
        self.assertTrue(outcome.fallback_used)
        self.assertEqual(outcome.metadata["fallback_reason"], "No arms passed lag-aware validation")
        self.assertEqual(self._proposals(outcome), self._proposals(base))
        self.assertEqual(self.store.measurement_count(), 0)

    def test_lag_adjustment_inflates_conversions(self):
        self.lag.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})
        arm = make_arm("L", clicks=1000, conversions=50, spend=500, revenue=2500)

        posterior = self.service.compute_lag_aware_posterior(
            arm, LagAwareConstraints(), {LAG_AWARE_POSTERIOR_UPDATES: True}
        )

        self.assertTrue(posterior.is_lag_adjusted)
        self.assertAlmostEqual(posterior.alpha, 101.0)
        self.assertAlmostEqual(posterior.beta, 901.0)
        self.assertAlmostEqual(posterior.uncertainty_penalty, 0.025)

    def test_flag_config_tunes_constraints(self):
        self.flags.set_feature_flag_config(
            LAG_AWARE_POSTERIOR_UPDATES, {"min_lag_days": 2, "max_lag_days": 30, "confidence_threshold": 0.8}
        )
        self.flags.set_feature_flag_config(
            RECENCY_LAG_ADJUSTED_STATS, {"recency_half_life_days": 7, "min_effective_trials": 20}
        )

        constraints = self.service._coerce_constraints(self.constraints)
        self.assertEqual(constraints.min_daily_budget, 5)
        self.assertEqual(constraints.min_lag_days, 2)
        self.assertEqual(constraints.max_lag_days, 30)
        self.assertEqual(constraints.lag_confidence_threshold, 0.8)
        self.assertEqual(constraints.recency_half_life_days, 7)
        self.assertEqual(constraints.min_effective_trials, 20)

        caller = self.service._coerce_constraints({"minDailyBudget": 5, "lagConfidenceThreshold": 0.5})
        self.assertEqual(caller.lag_confidence_threshold, 0.5)
        self.assertEqual(caller.recency_half_life_days, 7)

        explicit = LagAwareConstraints()
        self.assertIs(self.service._coerce_constraints(explicit), explicit)

    def test_flag_confidence_threshold_gates_lag_adjustment(self):
        self.lag.build_lag_profiles("global", "global", {1: 150, 3: 75, 7: 75})
        self.flags.enable_feature_flag(LAG_AWARE_POSTERIOR_UPDATES, 100)
        arms = [
            make_arm("L", clicks=1000, conversions=50, spend=500, revenue=2500),
            make_arm("M", clicks=800, conversions=30, spend=400, revenue=1200),
        ]

        self.service.allocate_budget(arms, 40, self.constraints, seed=1)
        self.flags.set_feature_flag_config(LAG_AWARE_POSTERIOR_UPDATES, {"confidence_threshold": 0.8})
        self.service.allocate_budget(arms, 40, self.constraints, seed=1)

        rows = self.store.query_measurements()
        self.assertEqual(rows["is_lag_adjusted"].tolist(), [True, True, False, False])

    def test_lag_adjustment_needs_confident_profile(self):
        arm = make_arm("L", clicks=1000, conversions=50, spend=500, revenue=2500)

        posterior = self.service.compute_lag_aware_posterior(
            arm, LagAwareConstraints(), {LAG_AWARE_POSTERIOR_UPDATES: True}
        )

        self.assertFalse(posterior.is_lag_adjusted)
        self.assertEqual(posterior.alpha, 51.0)

    def test_recency_weighting_scales_counts(self):
        arm = make_arm("R", clicks=1000, conversions=50, spend=500, revenue=2500)

        posterior = self.service.compute_lag_aware_posterior(
            arm, LagAwareConstraints(), {RECENCY_LAG_ADJUSTED_STATS: True}
        )

        self.assertAlmostEqual(posterior.recency_weight, 0.4763, places=3)
        self.assertAlmostEqual(posterior.effective_trials, 1000 * posterior.recency_weight)
        self.assertAlmostEqual(posterior.alpha, 1 + 50 * posterior.recency_weight)

    def test_recency_weighting_respects_trial_floor(self):
        arm = make_arm("R", clicks=12, conversions=3, spend=12, revenue=60)

        posterior = self.service.compute_lag_aware_posterior(
            arm, LagAwareConstraints(min_effective_trials=10), {RECENCY_LAG_ADJUSTED_STATS: True}
        )

        self.assertAlmostEqual(posterior.effective_trials, 10.0)
        self.assertAlmostEqual(posterior.effective_successes, 2.5)

    def test_invalid_posterior_arm_held_at_minimum(self):
        self.flags.enable_feature_flag(HIERARCHICAL_EMPIRICAL_BAYES, 100)
        arms = [
            make_arm("good", clicks=500, conversions=50, spend=500, revenue=2500),
            make_arm("bad", clicks=10, conversions=15, spend=20, revenue=300),
        ]

        outcome = self.service.allocate_budget(arms, 50, self.constraints, seed=5)

        self.assertTrue(outcome.success)
        self.assertFalse(outcome.fallback_used)
        by_arm = outcome.by_arm()
        self.assertEqual(by_arm["bad"].proposed_daily_budget, 5.0)
        self.assertEqual(by_arm["good"].proposed_daily_budget, 45.0)
        self.assertIn("held at minimum budget", by_arm["bad"].reasoning)
        self.assertEqual(outcome.metadata["skipped_arms"], ["bad"])

    def test_emergency_disable_returns_to_base(self):
        self.flags.enable_feature_flag(HIERARCHICAL_EMPIRICAL_BAYES, 100)
        self.flags.emergency_disable_all("error spike")

        outcome = self.service.allocate_budget(self.arms, 75, self.constraints, seed=42)

        self.assertTrue(outcome.success)
        self.assertNotIn("enhancements", outcome.metadata)

    def test_infeasible_constraints_are_not_a_fallback(self):
        self.flags.enable_feature_flag(HIERARCHICAL_EMPIRICAL_BAYES, 100)
        arms = [make_arm(f"c{i}", clicks=100, conversions=5, spend=100, revenue=200) for i in range(3)]

        outcome = self.service.allocate_budget(
            arms, 50, BudgetConstraints(min_daily_budget=30, max_daily_budget=100), seed=1
        )

        self.assertFalse(outcome.success)
        self.assertFalse(outcome.fallback_used)
        self.assertEqual(outcome.error_kind, AllocationErrorKind.CONSTRAINT_INFEASIBLE)

    def test_enhanced_allocation_is_logged(self):
        self.flags.enable_feature_flag(HIERARCHICAL_EMPIRICAL_BAYES, 100)
        before = self.store.measurement_count()

        self.service.allocate_budget(self.arms, 75, self.constraints, seed=42)

        self.assertEqual(self.store.measurement_count(), before + 2)
        rows = self.store.query_measurements()
        self.assertEqual(set(rows["arm_id"]), {"A", "B"})
        self.assertTrue((rows["data_source"] == "google_ads").all())

    def test_learned_priors_feed_posterior(self):
        self.flags.enable_feature_flag(HIERARCHICAL_EMPIRICAL_BAYES, 100)
        self.service.allocate_budget(self.arms, 75, self.constraints, seed=42)
        counts = self.priors.update_all_priors()
        self.assertEqual(counts["global_priors"], 2)

        newcomer = make_arm("new", clicks=0, conversions=0, spend=0, revenue=0)
        posterior = self.service.compute_lag_aware_posterior(
            newcomer, LagAwareConstraints(), {HIERARCHICAL_EMPIRICAL_BAYES: True}
        )

        global_cvr = self.priors.get_prior("global", "global", "cvr")
        self.assertEqual(posterior.prior_source, "global")
        self.assertAlmostEqual(posterior.alpha, global_cvr.alpha_prior)
        self.assertAlmostEqual(posterior.beta, global_cvr.beta_prior)


if __name__ == "__main__":
    unittest.main()
