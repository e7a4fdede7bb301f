"""
Thompson Sampling Service for the Budget Optimization System

This module implements the base budget allocator: per-arm Beta/Gamma
posteriors are sampled once per call, turned into a Thompson score and
converted into daily budget proposals that respect min/max and
percent-change limits and sum to the total budget.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Optional, List, Tuple

import numpy as np

from services.base_service import BaseService
from services.thompson_sampling_service.models import (
    Arm,
    AllocationErrorKind,
    AllocationOutcome,
    AllocationResult,
    BayesianPosterior,
    BudgetConstraints,
)
from services.thompson_sampling_service.sampling import (
    beta_quantile,
    sample_beta,
    sample_gamma,
)

logger = logging.getLogger(__name__)

BUDGET_TOLERANCE = 0.01
MIN_CPC = 0.01


@dataclass
class ScoredArm:
    """Sampled quantities behind one arm's Thompson score."""

    arm: Arm
    posterior: BayesianPosterior
    sampled_cvr: float
    sampled_value: float
    expected_roas: float
    exploration_bonus: float
    thompson_score: float


@dataclass
class BudgetBounds:
    """Per-arm lower/upper budget bounds for one call."""

    lower: np.ndarray
    upper: np.ndarray
    violations: List[str]
    notes: List[str]


def value_rate(conversions: float, revenue: float) -> float:
    """Gamma rate for revenue per conversion: conversions/revenue, or 1 without either."""
    if conversions > 0 and revenue > 0:
        return conversions / revenue
    return 1.0


class ThompsonSamplingService(BaseService):
    """
    Base Thompson Sampling budget allocator.

    For every arm the service samples a conversion rate from
    Beta(1 + conversions, 1 + clicks - conversions) and a value per conversion
    from a Gamma posterior, converts them into an expected ROAS, adds an
    exploration bonus for thinly observed arms and splits the budget in
    proportion to the resulting scores.
    """

    def __init__(
        self,
        store=None,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the ThompsonSamplingService.

        Args:
            store: Optional OptimizationStore (unused by the base allocator)
            config: Optional configuration dictionary
            logger: Optional logger instance
        """
        super().__init__(store=store, config=config, logger=logger)

        self.random_seed = self.config.get("random_seed")
        self.rng = np.random.default_rng(self.random_seed)

        self.default_exploration_floor = self.config.get("exploration_floor", 0.1)
        self.default_max_change_percent = self.config.get("max_change_percent", 25.0)
        self.default_constraints = BudgetConstraints.from_dict(self.config.get("constraints", {}))

        self.logger.info("ThompsonSamplingService initialized")

    def _rng_for_call(self, seed: Optional[int]) -> np.random.Generator:
        if seed is not None:
            return np.random.default_rng(seed)
        return self.rng

    def _coerce_constraints(self, constraints) -> BudgetConstraints:
        if constraints is None:
            return self.default_constraints
        if isinstance(constraints, dict):
            return BudgetConstraints.from_dict(constraints)
        return constraints

    @staticmethod
    def _coerce_arms(arms) -> List[Arm]:
        return [arm if isinstance(arm, Arm) else Arm.from_dict(arm) for arm in arms or []]

    def allocate_budget(
        self,
        arms: List[Arm],
        total_budget: float,
        constraints: Optional[BudgetConstraints] = None,
        seed: Optional[int] = None,
    ) -> AllocationOutcome:
        """
        Allocate a daily budget across arms with Thompson Sampling.

        Args:
            arms: Arms competing for budget (Arm objects or dictionaries)
            total_budget: Total daily budget to split, must be positive
            constraints: Budget constraints (defaults from config)
            seed: Optional seed; identical seed and inputs give identical results

        Returns:
            AllocationOutcome with one AllocationResult per arm, or a typed failure
        """
        start_time = datetime.now()
        arms = self._coerce_arms(arms)
        constraints = self._coerce_constraints(constraints)

        invalid = self._validate_request(arms, total_budget)
        if invalid is not None:
            self._track_execution(start_time, False)
            return invalid

        rng = self._rng_for_call(seed)
        scored = {}
        for arm in arms:
            posterior = self.compute_posterior(arm)
            scored[arm.id] = self._score_arm(
                arm,
                posterior,
                rng,
                constraints.risk_tolerance,
                self._exploration_floor(constraints),
            )

        outcome = self._allocate_scored(arms, scored, total_budget, constraints)
        self._track_execution(start_time, outcome.success)
        return outcome

    def _validate_request(self, arms: List[Arm], total_budget: float) -> Optional[AllocationOutcome]:
        if not arms:
            return AllocationOutcome.failure(
                AllocationErrorKind.INVALID_INPUT, "No arms provided for allocation"
            )
        if total_budget is None or not math.isfinite(total_budget) or total_budget <= 0:
            return AllocationOutcome.failure(
                AllocationErrorKind.INVALID_INPUT,
                f"Total budget must be positive, got {total_budget}",
            )
        return None

    def _exploration_floor(self, constraints: BudgetConstraints) -> float:
        if constraints.exploration_floor is None:
            return self.default_exploration_floor
        return constraints.exploration_floor

    def _max_change_percent(self, constraints: BudgetConstraints) -> float:
        if constraints.max_change_percent is None:
            return self.default_max_change_percent
        return constraints.max_change_percent

    def compute_posterior(self, arm: Arm) -> BayesianPosterior:
        """Posterior from raw metrics under uniform Beta(1, 1) and unit Gamma priors."""
        m = arm.metrics
        return BayesianPosterior(
            alpha=1 + m.conversions,
            beta=1 + m.clicks - m.conversions,
            shape=1 + m.conversions,
            rate=value_rate(m.conversions, m.revenue),
            effective_trials=m.clicks,
            effective_successes=m.conversions,
        )

    def calculate_exploration_bonus(
        self, sample_size: float, risk_tolerance: float, exploration_floor: float, penalty: float = 0.0
    ) -> float:
        """Uncertainty bonus 1/sqrt(n) (plus any lag penalty) scaled by risk, floored."""
        uncertainty = 1 / math.sqrt(sample_size or 1)
        return max((uncertainty + penalty) * risk_tolerance, exploration_floor)

    def _score_arm(
        self,
        arm: Arm,
        posterior: BayesianPosterior,
        rng: np.random.Generator,
        risk_tolerance: float,
        exploration_floor: float,
    ) -> ScoredArm:
        sampled_cvr = sample_beta(posterior.alpha, posterior.beta, rng)
        sampled_value = sample_gamma(posterior.shape, posterior.rate, rng)

        expected_roas = sampled_cvr * sampled_value / max(arm.metrics.avg_cpc, MIN_CPC)
        exploration_bonus = self.calculate_exploration_bonus(
            posterior.effective_trials,
            risk_tolerance,
            exploration_floor,
            posterior.uncertainty_penalty,
        )

        return ScoredArm(
            arm=arm,
            posterior=posterior,
            sampled_cvr=sampled_cvr,
            sampled_value=sampled_value,
            expected_roas=expected_roas,
            exploration_bonus=exploration_bonus,
            thompson_score=expected_roas * (1 + exploration_bonus),
        )

    def compute_bounds(
        self,
        arms: List[Arm],
        total_budget: float,
        constraints: BudgetConstraints,
        pinned: Optional[set] = None,
    ) -> BudgetBounds:
        """
        Per-arm budget bounds for one call.

        Hard bounds come from the arm's own min/max (or the constraint
        defaults) and campaign limits. The percent-change limit narrows them
        around the current budget unless that makes the total unreachable, in
        which case it is relaxed. Pinned arms are held at their lower bound.
        """
        pinned = pinned or set()
        max_change = self._max_change_percent(constraints) / 100
        hard_lower, hard_upper, violations = [], [], []

        for arm in arms:
            lo = arm.min_budget if arm.min_budget is not None else constraints.min_daily_budget
            hi = arm.max_budget if arm.max_budget is not None else constraints.max_daily_budget
            if arm.id in (constraints.campaign_limits or {}):
                hi = min(hi, constraints.campaign_limits[arm.id])
            if lo < 0:
                violations.append(f"Arm {arm.name} has negative minimum budget: {lo}")
                lo = 0.0
            if hi < lo:
                violations.append(
                    f"Arm {arm.name} has max budget ({hi}) less than min budget ({lo})"
                )
            hard_lower.append(lo)
            hard_upper.append(hi)

        hard_lower = np.array(hard_lower, dtype=float)
        hard_upper = np.array(hard_upper, dtype=float)
        notes = []

        if hard_lower.sum() > total_budget + BUDGET_TOLERANCE:
            violations.append(
                f"Total budget ({total_budget}) is less than sum of minimum budgets "
                f"({round(hard_lower.sum(), 2)})"
            )

        lower = hard_lower.copy()
        upper = hard_upper.copy()
        for i, arm in enumerate(arms):
            current = arm.current_daily_budget or 0
            if current > 0 and max_change > 0 and hard_lower[i] <= hard_upper[i]:
                lower[i] = max(hard_lower[i], min(current * (1 - max_change), hard_upper[i]))
                upper[i] = min(hard_upper[i], max(current * (1 + max_change), hard_lower[i]))

        for i, arm in enumerate(arms):
            if arm.id in pinned:
                upper[i] = lower[i]

        if lower.sum() > total_budget + BUDGET_TOLERANCE or upper.sum() < total_budget - BUDGET_TOLERANCE:
            narrowed = not (np.allclose(lower, hard_lower) and np.allclose(upper, hard_upper))
            if narrowed and not violations:
                notes.append(
                    f"Max change limit of {max_change * 100:.0f}% relaxed to reach total budget"
                )
                self.logger.warning(notes[-1])
            lower = hard_lower.copy()
            upper = hard_upper.copy()
            for i, arm in enumerate(arms):
                if arm.id in pinned:
                    upper[i] = lower[i]

        return BudgetBounds(lower=lower, upper=upper, violations=violations, notes=notes)

    @staticmethod
    def redistribute(
        raw: np.ndarray, lower: np.ndarray, upper: np.ndarray, total_budget: float
    ) -> np.ndarray:
        """
        Clip raw shares to bounds and move the clipped remainder.

        A surplus goes to arms in proportion to their remaining headroom
        (upper - x); a deficit is taken in proportion to remaining slack
        (x - lower).
        """
        x = np.clip(raw, lower, upper)
        for _ in range(len(x) + 1):
            diff = total_budget - x.sum()
            if abs(diff) <= 1e-9:
                break
            if diff > 0:
                room = upper - x
                capacity = room.sum()
                if capacity <= 1e-12:
                    break
                x = x + room * min(1.0, diff / capacity)
            else:
                slack = x - lower
                capacity = slack.sum()
                if capacity <= 1e-12:
                    break
                x = x - slack * min(1.0, -diff / capacity)
        return x

    @staticmethod
    def round_to_cents(
        x: np.ndarray, lower: np.ndarray, upper: np.ndarray, total_budget: float
    ) -> np.ndarray:
        """Round to cents, then hand any residual cents to the roomiest arm."""
        lower_cents = np.ceil(np.round(lower * 100, 6))
        upper_cents = np.floor(np.round(upper * 100, 6))
        upper_cents = np.maximum(upper_cents, lower_cents)

        cents = np.clip(np.round(x * 100), lower_cents, upper_cents)
        residual = int(round(total_budget * 100 - cents.sum()))

        while residual != 0:
            if residual > 0:
                room = upper_cents - cents
            else:
                room = cents - lower_cents
            best = int(np.argmax(room))
            if room[best] <= 0:
                break
            step = min(abs(residual), int(room[best]))
            cents[best] += step if residual > 0 else -step
            residual += -step if residual > 0 else step

        return cents / 100

    def _allocate_scored(
        self,
        arms: List[Arm],
        scored: Dict[str, ScoredArm],
        total_budget: float,
        constraints: BudgetConstraints,
        reasoning_suffixes: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AllocationOutcome:
        """Turn per-arm scores into bounded budget proposals that sum to the total."""
        pinned = {arm.id for arm in arms if arm.id not in scored}
        bounds = self.compute_bounds(arms, total_budget, constraints, pinned)

        if bounds.violations:
            message = "Constraint validation failed: " + "; ".join(bounds.violations)
            self.logger.warning(message)
            return AllocationOutcome.failure(
                AllocationErrorKind.CONSTRAINT_INFEASIBLE, message, bounds.violations
            )

        scores = np.array(
            [scored[arm.id].thompson_score if arm.id in scored else 0.0 for arm in arms]
        )
        total_score = scores.sum()
        if total_score > 0:
            ratios = scores / total_score
        else:
            eligible = np.array([1.0 if arm.id in scored else 0.0 for arm in arms])
            ratios = eligible / max(eligible.sum(), 1.0)

        raw = total_budget * ratios
        proposals = self.redistribute(raw, bounds.lower, bounds.upper, total_budget)
        proposals = self.round_to_cents(proposals, bounds.lower, bounds.upper, total_budget)

        notes = list(bounds.notes)
        if bounds.upper.sum() < total_budget - BUDGET_TOLERANCE:
            notes.append(
                f"Sum of maximum budgets ({round(bounds.upper.sum(), 2)}) is below total "
                f"budget ({total_budget}); every arm set to its maximum"
            )
            self.logger.warning(notes[-1])

        results = []
        for i, arm in enumerate(arms):
            proposed = float(proposals[i])
            current = arm.current_daily_budget or 0.0
            entry = scored.get(arm.id)
            posterior = entry.posterior if entry else self.compute_posterior(arm)
            score = entry.thompson_score if entry else 0.0
            reasoning = self.generate_reasoning(arm, score, float(ratios[i]), current, proposed)
            if entry is None:
                reasoning += " Arm skipped by validation; held at minimum budget."
            results.append(
                AllocationResult(
                    arm_id=arm.id,
                    arm_name=arm.name,
                    current_daily_budget=current,
                    proposed_daily_budget=proposed,
                    expected_improvement=self.calculate_expected_improvement(arm, current, proposed),
                    confidence_interval=self.calculate_confidence_interval(
                        arm, proposed, posterior
                    ),
                    reasoning=reasoning + (reasoning_suffixes or {}).get(arm.id, ""),
                    thompson_score=score,
                    exploration_bonus=entry.exploration_bonus if entry else 0.0,
                )
            )

        summary = (
            f"Allocated ${sum(r.proposed_daily_budget for r in results):.2f} of "
            f"${total_budget:.2f} across {len(results)} arms using Thompson Sampling."
        )
        if notes:
            summary += " " + " ".join(notes)

        self.logger.info(summary)
        return AllocationOutcome.ok(results, reasoning=summary, metadata=metadata or {})

    def calculate_expected_improvement(self, arm: Arm, current_budget: float, proposed_budget: float) -> float:
        """Expected change in conversion value assuming volume grows with sqrt(budget)."""
        if current_budget == 0:
            return 1.0

        budget_ratio = proposed_budget / current_budget
        volume_multiplier = math.sqrt(budget_ratio)
        improvement = (volume_multiplier - 1) * arm.metrics.conversion_rate * arm.metrics.avg_value
        return max(0.0, improvement)

    def calculate_confidence_interval(
        self, arm: Arm, proposed_budget: float, posterior: Optional[BayesianPosterior] = None
    ) -> Tuple[float, float]:
        """95% interval on daily conversions at the proposed budget."""
        posterior = posterior or self.compute_posterior(arm)
        lower_cvr = beta_quantile(posterior.alpha, posterior.beta, 0.025)
        upper_cvr = beta_quantile(posterior.alpha, posterior.beta, 0.975)

        expected_clicks = proposed_budget / max(arm.metrics.avg_cpc, MIN_CPC)
        return (
            round(expected_clicks * lower_cvr, 1),
            round(expected_clicks * upper_cvr, 1),
        )

    def generate_reasoning(
        self,
        arm: Arm,
        thompson_score: float,
        score_ratio: float,
        current_budget: float,
        proposed_budget: float,
    ) -> str:
        """Generate human-readable reasoning for an allocation."""
        cvr = arm.metrics.conversion_rate * 100
        cpc = arm.metrics.avg_cpc

        reason = f"Thompson score: {thompson_score:.3f} ({score_ratio * 100:.1f}% of total). "
        reason += f"CVR: {cvr:.2f}%, CPC: ${cpc:.2f}. "

        if current_budget > 0:
            change_pct = (proposed_budget - current_budget) / current_budget * 100
            if proposed_budget > current_budget:
                reason += f"Increasing budget by {change_pct:.1f}% based on strong performance."
            elif proposed_budget < current_budget:
                reason += f"Decreasing budget by {abs(change_pct):.1f}% to optimize allocation."
            else:
                reason += "Maintaining current budget level."
        else:
            reason += f"New allocation of ${proposed_budget:.2f} daily."

        return reason

    def calculate_multi_objective_score(
        self,
        arm: Arm,
        target_cpa: Optional[float] = None,
        target_roas: Optional[float] = None,
        maximize_conversions: bool = False,
        maximize_revenue: bool = False,
    ) -> float:
        """
        Weighted closeness of an arm to CPA/ROAS targets and volume goals.

        Returns:
            Score in [0, inf); 0 when no objective is given
        """
        m = arm.metrics
        cpa = m.spend / max(m.conversions, 1)
        roas = m.revenue / max(m.spend, 1)

        score = 0.0
        weight_sum = 0.0

        if target_cpa:
            score += math.exp(-abs(cpa - target_cpa) / target_cpa) * 0.3
            weight_sum += 0.3
        if target_roas:
            score += math.exp(-abs(roas - target_roas) / target_roas) * 0.3
            weight_sum += 0.3
        if maximize_conversions:
            score += m.conversions / max(m.spend, 1) * 0.2
            weight_sum += 0.2
        if maximize_revenue:
            score += m.revenue / max(m.spend, 1) * 0.2
            weight_sum += 0.2

        return score / weight_sum if weight_sum > 0 else 0.0

    def save_allocation(self, outcome: AllocationOutcome) -> Optional[str]:
        """Write an allocation outcome to the dated proposals folder."""
        now = datetime.now()
        directory = f"{self.data_path}/proposals/{now.strftime('%Y-%m-%d')}"
        filename = f"budget_proposals_{now.strftime('%H%M%S_%f')}.json"
        if self.save_data(outcome.to_dict(), filename, directory):
            return f"{directory}/{filename}"
        return None

    def run(self, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run the service with the specified parameters.

        Supported actions:
            allocate_budget: arms (list or arms_file), total_budget, constraints, seed, save
            multi_objective_score: arm, objectives

        Returns:
            Dictionary with run results
        """
        start_time = datetime.now()

        try:
            params = parameters or {}
            action = params.get("action", "allocate_budget")
            self.logger.info(f"Starting {self.__class__.__name__} run: {action}")

            if action == "allocate_budget":
                arms = params.get("arms")
                if arms is None and params.get("arms_file"):
                    arms = self.load_data(params["arms_file"]) or []
                outcome = self.allocate_budget(
                    arms or [],
                    params.get("total_budget", 0.0),
                    params.get("constraints"),
                    seed=params.get("seed"),
                )
                result = outcome.to_dict()
                if outcome.success and params.get("save", False):
                    result["artifact_path"] = self.save_allocation(outcome)

            elif action == "multi_objective_score":
                arm = Arm.from_dict(params["arm"])
                objectives = params.get("objectives", {})
                result = {
                    "status": "success",
                    "arm_id": arm.id,
                    "score": self.calculate_multi_objective_score(arm, **objectives),
                }

            else:
                result = {"status": "failed", "message": f"Unknown action: {action}"}

            execution_time = (datetime.now() - start_time).total_seconds()
            result["execution_time_seconds"] = execution_time
            return result

        except Exception as e:
            error_message = f"Error running {self.__class__.__name__}: {str(e)}"
            self.logger.error(error_message)

            return {
                "status": "failed",
                "message": error_message,
                "execution_time_seconds": (datetime.now() - start_time).total_seconds(),
            }
