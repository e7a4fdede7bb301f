"""
Tests for the Thompson Sampling Service.

This module contains unit tests for the base Thompson Sampling budget allocator.
"""

import os
import shutil
import tempfile
import unittest
import logging

import numpy as np

from services.thompson_sampling_service import ThompsonSamplingService
from services.thompson_sampling_service.models import (
    Arm,
    ArmMetrics,
    AllocationErrorKind,
    BudgetConstraints,
)

# Set up logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def make_arm(arm_id, clicks, conversions, spend, revenue, current=None, **kwargs):
    return Arm(
        id=arm_id,
        name=f"Campaign {arm_id}",
        metrics=ArmMetrics(spend=spend, clicks=clicks, conversions=conversions, revenue=revenue),
        current_daily_budget=current,
        **kwargs,
    )


class TestThompsonSamplingService(unittest.TestCase):
    """Test suite for ThompsonSamplingService."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        self.config = {"data_path": self.test_dir, "log_dir": os.path.join(self.test_dir, "logs")}
        self.service = ThompsonSamplingService(config=self.config, logger=logger)
        self.constraints = BudgetConstraints(min_daily_budget=5, max_daily_budget=100)

    def tearDown(self):
        """Clean up after tests."""
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _ab_arms(self):
        return [
            make_arm("A", clicks=500, conversions=100, spend=1000, revenue=5000),
            make_arm("B", clicks=300, conversions=20, spend=1000, revenue=1000),
        ]

    def test_strong_arm_gets_more_budget(self):
        """Arm A converts 20% at $2 CPC, arm B 6.7% at $3.33 CPC."""
        outcome = self.service.allocate_budget(self._ab_arms(), 75, self.constraints, seed=42)

        self.assertTrue(outcome.success)
        by_arm = outcome.by_arm()
        self.assertGreater(by_arm["A"].proposed_daily_budget, by_arm["B"].proposed_daily_budget)
        self.assertAlmostEqual(outcome.total_allocated, 75.0, delta=0.01)
        for allocation in outcome.allocations:
            self.assertGreaterEqual(allocation.proposed_daily_budget, 5.0)
            self.assertLessEqual(allocation.proposed_daily_budget, 100.0)
            self.assertTrue(allocation.reasoning)
            low, high = allocation.confidence_interval
            self.assertLessEqual(low, high)

    def test_empty_arms_is_structured_failure(self):
        outcome = self.service.allocate_budget([], 100, self.constraints)

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_kind, AllocationErrorKind.INVALID_INPUT)
        self.assertEqual(outcome.allocations, [])

    def test_non_positive_budget_rejected(self):
        outcome = self.service.allocate_budget(self._ab_arms(), 0, self.constraints)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_kind, AllocationErrorKind.INVALID_INPUT)

    def test_sum_to_total_within_change_limits(self):
        arms = [
            make_arm(f"c{i}", clicks=200 + 50 * i, conversions=5 + 3 * i, spend=400, revenue=500 + 100 * i, current=20)
            for i in range(4)
        ]
        constraints = BudgetConstraints(min_daily_budget=2, max_daily_budget=100, max_change_percent=25)

        outcome = self.service.allocate_budget(arms, 80, constraints, seed=7)

        self.assertTrue(outcome.success)
        self.assertAlmostEqual(sum(a.proposed_daily_budget for a in outcome.allocations), 80.0, delta=0.01)
        for allocation in outcome.allocations:
            self.assertGreaterEqual(allocation.proposed_daily_budget, 15.0 - 0.005)
            self.assertLessEqual(allocation.proposed_daily_budget, 25.0 + 0.005)
            self.assertEqual(round(allocation.proposed_daily_budget, 2), allocation.proposed_daily_budget)

    def test_same_seed_same_allocation(self):
        first = self.service.allocate_budget(self._ab_arms(), 75, self.constraints, seed=123)
        second = self.service.allocate_budget(self._ab_arms(), 75, self.constraints, seed=123)

        self.assertEqual(
            [a.proposed_daily_budget for a in first.allocations],
            [a.proposed_daily_budget for a in second.allocations],
        )
        self.assertEqual(
            [a.thompson_score for a in first.allocations],
            [a.thompson_score for a in second.allocations],
        )

    def test_value_posterior_rate(self):
        posterior = self.service.compute_posterior(
            make_arm("A", clicks=500, conversions=100, spend=1000, revenue=5000)
        )
        self.assertEqual(posterior.shape, 101)
        self.assertAlmostEqual(posterior.rate, 0.02)

        empty = self.service.compute_posterior(make_arm("N", clicks=50, conversions=0, spend=20, revenue=0))
        self.assertEqual(empty.rate, 1.0)

    def test_score_increases_with_conversions(self):
        """Same clicks, spend and revenue; more conversions never scores lower."""
        arms = [
            make_arm(f"m{conv}", clicks=500, conversions=conv, spend=1000, revenue=1000)
            for conv in (20, 40, 80)
        ]
        for seed in range(50):
            scores = []
            for arm in arms:
                posterior = self.service.compute_posterior(arm)
                scored = self.service._score_arm(arm, posterior, np.random.default_rng(seed), 0.3, 0.1)
                scores.append(scored.thompson_score)
            self.assertLessEqual(scores[0], scores[1])
            self.assertLessEqual(scores[1], scores[2])

    def test_infeasible_minimums(self):
        arms = [make_arm(f"c{i}", clicks=100, conversions=5, spend=100, revenue=200) for i in range(3)]
        constraints = BudgetConstraints(min_daily_budget=30, max_daily_budget=100)

        outcome = self.service.allocate_budget(arms, 50, constraints, seed=1)

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_kind, AllocationErrorKind.CONSTRAINT_INFEASIBLE)
        self.assertTrue(any("minimum budgets" in v for v in outcome.violations))

    def test_max_below_min_is_violation(self):
        arms = [make_arm("bad", clicks=100, conversions=5, spend=100, revenue=200, min_budget=20, max_budget=10)]
        outcome = self.service.allocate_budget(arms, 15, self.constraints, seed=1)

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_kind, AllocationErrorKind.CONSTRAINT_INFEASIBLE)

    def test_maximums_below_total(self):
        arms = [make_arm(f"c{i}", clicks=100, conversions=5, spend=100, revenue=200) for i in range(2)]
        constraints = BudgetConstraints(min_daily_budget=2, max_daily_budget=10)

        outcome = self.service.allocate_budget(arms, 50, constraints, seed=1)

        self.assertTrue(outcome.success)
        for allocation in outcome.allocations:
            self.assertEqual(allocation.proposed_daily_budget, 10.0)
        self.assertEqual(outcome.total_allocated, 20.0)
        self.assertIn("below total", outcome.reasoning)

    def test_change_limit_relaxed_when_total_unreachable(self):
        arms = [
            make_arm("x", clicks=300, conversions=15, spend=300, revenue=900, current=10),
            make_arm("y", clicks=300, conversions=9, spend=300, revenue=600, current=10),
        ]
        constraints = BudgetConstraints(min_daily_budget=2, max_daily_budget=100, max_change_percent=25)

        outcome = self.service.allocate_budget(arms, 100, constraints, seed=3)

        self.assertTrue(outcome.success)
        self.assertAlmostEqual(outcome.total_allocated, 100.0, delta=0.01)
        self.assertIn("relaxed", outcome.reasoning)

    def test_campaign_limits_cap_arm(self):
        arms = self._ab_arms()
        constraints = BudgetConstraints(min_daily_budget=5, max_daily_budget=100, campaign_limits={"A": 30})

        outcome = self.service.allocate_budget(arms, 75, constraints, seed=42)

        self.assertTrue(outcome.success)
        self.assertLessEqual(outcome.by_arm()["A"].proposed_daily_budget, 30.0)
        self.assertAlmostEqual(outcome.total_allocated, 75.0, delta=0.01)

    def test_redistribute_moves_surplus_by_headroom(self):
        raw = np.array([80.0, 10.0, 10.0])
        lower = np.array([5.0, 5.0, 5.0])
        upper = np.array([50.0, 40.0, 20.0])

        result = ThompsonSamplingService.redistribute(raw, lower, upper, 100.0)

        self.assertAlmostEqual(result.sum(), 100.0, places=6)
        self.assertTrue(np.all(result <= upper + 1e-9))
        self.assertTrue(np.all(result >= lower - 1e-9))
        # Surplus of 30 split by headroom 30:10
        self.assertAlmostEqual(result[1], 32.5, places=6)
        self.assertAlmostEqual(result[2], 17.5, places=6)

    def test_round_to_cents_gives_residual_to_roomiest(self):
        x = np.array([33.333, 33.333, 33.334])
        lower = np.zeros(3)
        upper = np.array([100.0, 100.0, 100.0])

        cents = ThompsonSamplingService.round_to_cents(x, lower, upper, 100.0)

        self.assertAlmostEqual(cents.sum(), 100.0, places=9)

    def test_exploration_bonus_floor(self):
        self.assertEqual(self.service.calculate_exploration_bonus(10000, 0.3, 0.1), 0.1)
        self.assertAlmostEqual(self.service.calculate_exploration_bonus(4, 0.3, 0.1), 0.15)
        self.assertAlmostEqual(self.service.calculate_exploration_bonus(0, 0.3, 0.1), 0.3)

    def test_multi_objective_score(self):
        arm = make_arm("A", clicks=500, conversions=100, spend=1000, revenue=5000)
        self.assertEqual(self.service.calculate_multi_objective_score(arm), 0.0)
        score = self.service.calculate_multi_objective_score(arm, target_cpa=10, target_roas=5)
        self.assertAlmostEqual(score, 1.0)

    def test_run_allocate_with_dict_arms(self):
        result = self.service.run(
            {
                "action": "allocate_budget",
                "arms": [
                    {"id": "A", "name": "A", "metrics30d": {"clicks": 500, "conversions": 100, "spend": 1000, "revenue": 5000}},
                    {"id": "B", "name": "B", "metrics30d": {"clicks": 300, "conversions": 20, "spend": 1000, "revenue": 1000}},
                ],
                "total_budget": 75,
                "constraints": {"minDailyBudget": 5, "maxDailyBudget": 100},
                "seed": 42,
                "save": True,
            }
        )

        self.assertEqual(result["status"], "success")
        self.assertEqual(len(result["allocations"]), 2)
        self.assertTrue(os.path.exists(result["artifact_path"]))
        self.assertIn("execution_time_seconds", result)

    def test_run_unknown_action(self):
        result = self.service.run({"action": "nope"})
        self.assertEqual(result["status"], "failed")


if __name__ == "__main__":
    unittest.main()
