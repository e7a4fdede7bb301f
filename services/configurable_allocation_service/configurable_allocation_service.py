"""
Configurable Allocation Service for the Budget Optimization System

Thompson Sampling budget allocation whose sampling, constraint handling and
prior computation are injected strategy objects. The allocation steps are:

1. validate the request with the constraint strategy
2. fold cached priors into each arm's posterior
3. draw conversion rate and value with the sampling strategy
4. split the budget by Thompson score
5. let the constraint strategy enforce bounds and the total
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List, Callable

import numpy as np
import pandas as pd

from services.base_service import BaseService
from services.thompson_sampling_service import ThompsonSamplingService
from services.thompson_sampling_service.models import (
    Arm,
    AllocationResult,
    BayesianPosterior,
    BudgetConstraints,
)
from services.thompson_sampling_service.sampling import beta_mean, gamma_mean
from services.thompson_sampling_service.thompson_sampling_service import BUDGET_TOLERANCE, MIN_CPC

from .constraint_strategies import (
    CONSTRAINT_STRATEGIES,
    ConstraintArm,
    ConstraintStrategy,
    determine_risk_level,
)
from .prior_strategies import (
    PRIOR_STRATEGIES,
    PriorDistribution,
    PriorStrategy,
    empty_history,
    normalize_history,
)
from .sampling_strategies import SAMPLING_STRATEGIES, SamplingStrategy

HISTORY_RETENTION_DAYS = 30

ACCURACY_SCORES = {"exact": 1.0, "high": 0.9, "medium": 0.7}


@dataclass
class ConfigurableOptimizationResult:
    success: bool
    allocations: List[AllocationResult] = field(default_factory=list)
    total_allocated: float = 0.0
    reasoning: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    strategy_metadata: Dict[str, str] = field(default_factory=dict)
    context: Optional[Dict[str, Any]] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    def by_arm(self) -> Dict[str, AllocationResult]:
        return {a.arm_id: a for a in self.allocations}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "success" if self.success else "failed",
            "success": self.success,
            "allocations": [a.to_dict() for a in self.allocations],
            "total_allocated": self.total_allocated,
            "reasoning": self.reasoning,
            "metadata": dict(self.metadata),
            "strategy_metadata": dict(self.strategy_metadata),
            "context": self.context,
            "diagnostics": dict(self.diagnostics),
        }


class ConfigurableAllocationService(BaseService):
    """Thompson Sampling allocator built from pluggable strategies."""

    def __init__(
        self,
        sampling_strategy: SamplingStrategy,
        constraint_strategy: ConstraintStrategy,
        prior_strategy: PriorStrategy,
        store=None,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the ConfigurableAllocationService.

        Args:
            sampling_strategy: Draws Beta/Gamma variates
            constraint_strategy: Validates and enforces budget bounds
            prior_strategy: Computes and updates per-arm priors
            store: Optional OptimizationStore (unused)
            config: Optional configuration dictionary
            logger: Optional logger instance
            clock: Returns the current time (history trimming)
        """
        super().__init__(store=store, config=config, logger=logger)

        self.sampling_strategy = sampling_strategy
        self.constraint_strategy = constraint_strategy
        self.prior_strategy = prior_strategy
        self.clock = clock or datetime.now

        # Bounds, reasoning and confidence intervals are shared with the base allocator
        self.allocator = ThompsonSamplingService(config=self.config, logger=self.logger)

        self.cached_priors: Dict[str, PriorDistribution] = {}
        self.history = empty_history()

        self.logger.info(
            f"ConfigurableAllocationService initialized with "
            f"{self.strategy_names()['sampling']}, {self.strategy_names()['constraint']}, "
            f"{self.strategy_names()['prior']}"
        )

    def strategy_names(self) -> Dict[str, str]:
        return {
            "sampling": self.sampling_strategy.get_metadata()["name"],
            "constraint": self.constraint_strategy.get_metadata()["name"],
            "prior": self.prior_strategy.get_metadata()["name"],
        }

    def _failure(
        self,
        reasoning: str,
        start_time: datetime,
        context: Optional[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]] = None,
        constraint_violations: int = 0,
    ) -> ConfigurableOptimizationResult:
        self._track_execution(start_time, False)
        return ConfigurableOptimizationResult(
            success=False,
            reasoning=reasoning,
            metadata={
                "optimization_time_ms": (datetime.now() - start_time).total_seconds() * 1000,
                "error": reasoning,
                **(metadata or {}),
            },
            strategy_metadata=self.strategy_names(),
            context=context,
            diagnostics={
                "final_objective_value": 0.0,
                "constraint_violations": constraint_violations,
                "strategy_performance": {
                    "sampling_accuracy": 0.0,
                    "constraint_efficiency": 0.0,
                    "prior_reliability": 0.0,
                },
            },
        )

    def _to_constraint_arms(
        self,
        arms: List[Arm],
        constraints: BudgetConstraints,
        context: Optional[Dict[str, Any]],
    ) -> List[ConstraintArm]:
        context = context or {}
        market = context.get("market_conditions") or {}
        seasonality = context.get("seasonality") or {}
        limits = constraints.campaign_limits or {}

        result = []
        for arm in arms:
            lo = arm.min_budget if arm.min_budget is not None else constraints.min_daily_budget
            hi = arm.max_budget if arm.max_budget is not None else constraints.max_daily_budget
            if arm.id in limits:
                hi = min(hi, limits[arm.id])
            m = arm.metrics
            result.append(
                ConstraintArm(
                    id=arm.id,
                    name=arm.name,
                    min_budget=lo,
                    max_budget=hi,
                    current_budget=arm.current_daily_budget or 0.0,
                    conversion_rate=m.conversion_rate,
                    average_value=m.avg_value,
                    cost_per_click=m.avg_cpc,
                    quality_score=m.quality_score,
                    category=arm.category,
                    seasonality=seasonality.get(arm.id, market.get("seasonality", 1.0)),
                    risk_level=determine_risk_level(m.conversion_rate, m.quality_score),
                )
            )
        return result

    def compute_posterior(self, arm: Arm) -> BayesianPosterior:
        """Base posterior with the arm's cached prior folded in, if any."""
        posterior = self.allocator.compute_posterior(arm)
        prior = self.cached_priors.get(arm.id)
        if prior is None:
            return posterior

        return replace(
            posterior,
            alpha=posterior.alpha + prior.cvr_alpha - 1,
            beta=posterior.beta + prior.cvr_beta - 1,
            shape=posterior.shape + prior.value_shape - 1,
            rate=posterior.rate + prior.value_rate,
            prior_source=prior.source,
        )

    def _draw(self, posterior: BayesianPosterior):
        try:
            cvr = self.sampling_strategy.sample_beta(posterior.alpha, posterior.beta)
        except ValueError as e:
            self.logger.debug(f"Beta sampling failed, using mean: {str(e)}")
            cvr = beta_mean(posterior.alpha, posterior.beta)
        try:
            value = self.sampling_strategy.sample_gamma(posterior.shape, posterior.rate)
        except ValueError as e:
            self.logger.debug(f"Gamma sampling failed, using mean: {str(e)}")
            value = gamma_mean(posterior.shape, posterior.rate)
        return cvr, value

    def allocate_budget(
        self,
        total_budget: float,
        arms: List[Arm],
        constraints: Optional[BudgetConstraints] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ConfigurableOptimizationResult:
        """
        Allocate a daily budget across arms using the configured strategies.

        Args:
            total_budget: Total daily budget to split
            arms: Arms competing for budget (Arm objects or dictionaries)
            constraints: Budget constraints (defaults from config)
            context: Optional objectives and market conditions
                (market_conditions.seasonality, per-arm seasonality)

        Returns:
            ConfigurableOptimizationResult; failures are reported, never raised
        """
        start_time = datetime.now()
        arms = self.allocator._coerce_arms(arms)

        if not arms:
            return self._failure("No arms provided for allocation", start_time, context)
        if total_budget is None or not math.isfinite(total_budget) or total_budget <= 0:
            return self._failure(f"Total budget must be positive, got {total_budget}", start_time, context)

        try:
            constraints = self.allocator._coerce_constraints(constraints)
            constraint_arms = self._to_constraint_arms(arms, constraints, context)

            validation = self.constraint_strategy.validate_constraints(total_budget, constraint_arms)
            if not validation.valid:
                message = "Constraint validation failed: " + "; ".join(validation.violations)
                self.logger.warning(message)
                return self._failure(
                    message,
                    start_time,
                    context,
                    metadata={"violations": validation.violations},
                    constraint_violations=len(validation.violations),
                )
            for warning in validation.warnings:
                self.logger.warning(warning)

            # Percent-change limits narrow each box around the current budget
            bounds = self.allocator.compute_bounds(arms, total_budget, constraints)
            constraint_arms = [
                replace(c, min_budget=float(bounds.lower[i]), max_budget=float(bounds.upper[i]))
                for i, c in enumerate(constraint_arms)
            ]

            floor = self.allocator._exploration_floor(constraints)
            posteriors, scores, bonuses = [], [], []
            for arm in arms:
                posterior = self.compute_posterior(arm)
                cvr, value = self._draw(posterior)
                bonus = self.allocator.calculate_exploration_bonus(
                    posterior.effective_trials, constraints.risk_tolerance, floor
                )
                expected_roas = cvr * value / max(arm.metrics.avg_cpc, MIN_CPC)
                posteriors.append(posterior)
                bonuses.append(bonus)
                scores.append(expected_roas * (1 + bonus))

            scores = np.array(scores, dtype=float)
            if not np.all(np.isfinite(scores)):
                return self._failure("Non-finite Thompson score", start_time, context)
            total_score = scores.sum()
            ratios = scores / total_score if total_score > 0 else np.full(len(arms), 1.0 / len(arms))
            raw = total_budget * ratios

            final = self.constraint_strategy.apply_constraints(raw, total_budget, constraint_arms)
            final = np.asarray(final, dtype=float)
            if not np.all(np.isfinite(final)):
                return self._failure("Constraint strategy returned non-finite budgets", start_time, context)

            allocations = []
            for i, arm in enumerate(arms):
                proposed = float(final[i])
                current = arm.current_daily_budget or 0.0
                reasoning = self.allocator.generate_reasoning(
                    arm, float(scores[i]), float(ratios[i]), current, proposed
                )
                reasoning += self._adjustment_note(float(raw[i]), proposed)
                allocations.append(
                    AllocationResult(
                        arm_id=arm.id,
                        arm_name=arm.name,
                        current_daily_budget=current,
                        proposed_daily_budget=proposed,
                        expected_improvement=self.allocator.calculate_expected_improvement(
                            arm, current, proposed
                        ),
                        confidence_interval=self.allocator.calculate_confidence_interval(
                            arm, proposed, posteriors[i]
                        ),
                        reasoning=reasoning,
                        thompson_score=float(scores[i]),
                        exploration_bonus=bonuses[i],
                    )
                )

            total_allocated = round(float(final.sum()), 2)
            notes = list(bounds.notes) + list(validation.warnings)
            if abs(total_allocated - total_budget) > BUDGET_TOLERANCE:
                notes.append(f"Allocated ${total_allocated:.2f} of ${total_budget:.2f}; bounds prevent a full split")

            self._track_execution(start_time, True)
            return ConfigurableOptimizationResult(
                success=True,
                allocations=allocations,
                total_allocated=total_allocated,
                reasoning=self.generate_reasoning(allocations, total_allocated, notes, context),
                metadata={
                    "optimization_time_ms": (datetime.now() - start_time).total_seconds() * 1000,
                    "warnings": list(validation.warnings),
                    "notes": notes,
                },
                strategy_metadata=self.strategy_names(),
                context=context,
                diagnostics={
                    "final_objective_value": self.calculate_total_expected_value(arms, final),
                    "constraint_violations": len(validation.violations),
                    "strategy_performance": {
                        "sampling_accuracy": self.evaluate_sampling_accuracy(),
                        "constraint_efficiency": self.evaluate_constraint_efficiency(
                            len(validation.warnings)
                        ),
                        "prior_reliability": self.evaluate_prior_reliability(arms),
                    },
                },
            )

        except Exception as e:
            self.logger.error(f"Configurable allocation failed: {str(e)}")
            return self._failure(f"Optimization failed: {str(e)}", start_time, context)

    @staticmethod
    def _adjustment_note(raw: float, proposed: float) -> str:
        if raw <= 0:
            return ""
        change = (proposed - raw) / raw * 100
        if abs(change) < 1:
            return ""
        if change > 0:
            return f" Allocation increased by {change:.1f}% by constraint optimization."
        return f" Allocation decreased by {abs(change):.1f}% by constraint enforcement."

    def generate_reasoning(
        self,
        allocations: List[AllocationResult],
        total_allocated: float,
        notes: List[str],
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        names = self.strategy_names()
        lines = [
            f"Allocated ${total_allocated:.2f} across {len(allocations)} arms using Thompson Sampling "
            f"({names['sampling']}, {names['constraint']}, {names['prior']})."
        ]
        for alloc in allocations:
            lines.append(
                f"- {alloc.arm_name}: ${alloc.proposed_daily_budget:.2f} "
                f"(expected improvement {alloc.expected_improvement:.2f})"
            )

        objectives = (context or {}).get("objectives") or {}
        if objectives.get("primary"):
            lines.append(f"Primary objective: {objectives['primary']}")
        if objectives.get("secondary"):
            lines.append(f"Secondary objectives: {', '.join(objectives['secondary'])}")

        lines.extend(notes)
        return "\n".join(lines)

    @staticmethod
    def expected_return(arm: Arm, budget: float) -> float:
        m = arm.metrics
        clicks = budget / max(m.avg_cpc, MIN_CPC)
        return clicks * m.conversion_rate * m.avg_value

    def calculate_total_expected_value(self, arms: List[Arm], budgets: np.ndarray) -> float:
        return float(sum(self.expected_return(arm, float(b)) for arm, b in zip(arms, budgets)))

    def evaluate_sampling_accuracy(self) -> float:
        accuracy = self.sampling_strategy.get_metadata().get("accuracy")
        return ACCURACY_SCORES.get(accuracy, 0.5)

    @staticmethod
    def evaluate_constraint_efficiency(warning_count: int) -> float:
        return max(0.0, 1.0 - 0.1 * warning_count)

    def evaluate_prior_reliability(self, arms: List[Arm]) -> float:
        if not arms or not self.cached_priors:
            return 0.5
        values = [
            self.cached_priors[arm.id].reliability if arm.id in self.cached_priors else 0.5
            for arm in arms
        ]
        return float(np.mean(values))

    def initialize_priors(self, arms: List[Arm], history: Optional[pd.DataFrame] = None):
        """
        Compute and cache priors for the given arms.

        Args:
            arms: Arms to compute priors for
            history: Past performance rows; without it arms get weak or domain priors
        """
        arms = self.allocator._coerce_arms(arms)
        history = normalize_history(history, arms)
        self.cached_priors = self.prior_strategy.compute_priors(arms, history)
        self.logger.info(f"Initialized priors for {len(self.cached_priors)} arms")
        return self.cached_priors

    def record_performance(self, performance) -> int:
        """
        Append performance rows, keep the last 30 days and update cached priors.

        Args:
            performance: DataFrame or list of dicts with arm_id, timestamp, clicks,
                conversions, conversion_value

        Returns:
            Number of history rows retained
        """
        rows = performance if isinstance(performance, pd.DataFrame) else pd.DataFrame(performance)
        rows = normalize_history(rows)
        if len(rows) == 0:
            return len(self.history)

        combined = rows if len(self.history) == 0 else pd.concat([self.history, rows], ignore_index=True)
        cutoff = pd.Timestamp(self.clock() - timedelta(days=HISTORY_RETENTION_DAYS))
        self.history = combined[combined["timestamp"] >= cutoff].reset_index(drop=True)

        if self.cached_priors:
            self.cached_priors = self.prior_strategy.update_priors(self.cached_priors, rows)

        self.logger.info(f"Recorded {len(rows)} performance rows, {len(self.history)} retained")
        return len(self.history)

    def get_strategy_information(self) -> Dict[str, Any]:
        return {
            "sampling": self.sampling_strategy.get_metadata(),
            "constraint": self.constraint_strategy.get_metadata(),
            "prior": self.prior_strategy.get_metadata(),
        }

    def run(self, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run the service with the specified parameters.

        Supported actions:
            allocate_budget: arms, total_budget, constraints, context
            initialize_priors: arms, history (list of performance rows)
            strategy_info

        Returns:
            Dictionary with run results
        """
        start_time = datetime.now()

        try:
            params = parameters or {}
            action = params.get("action", "allocate_budget")
            self.logger.info(f"Starting {self.__class__.__name__} run: {action}")

            if action == "allocate_budget":
                result = self.allocate_budget(
                    params.get("total_budget", 0.0),
                    params.get("arms") or [],
                    params.get("constraints"),
                    params.get("context"),
                ).to_dict()

            elif action == "initialize_priors":
                history = params.get("history")
                priors = self.initialize_priors(
                    params.get("arms") or [],
                    pd.DataFrame(history) if history else None,
                )
                result = {
                    "status": "success",
                    "priors": {arm_id: p.to_dict() for arm_id, p in priors.items()},
                }

            elif action == "strategy_info":
                result = {"status": "success", "strategies": self.get_strategy_information()}

            else:
                result = {"status": "failed", "message": f"Unknown action: {action}"}

            result["execution_time_seconds"] = (datetime.now() - start_time).total_seconds()
            return result

        except Exception as e:
            error_message = f"Error running {self.__class__.__name__}: {str(e)}"
            self.logger.error(error_message)

            return {
                "status": "failed",
                "message": error_message,
                "execution_time_seconds": (datetime.now() - start_time).total_seconds(),
            }


def create_configurable_allocator(
    sampling: str = "monte_carlo",
    constraint: str = "basic",
    prior: str = "hierarchical",
    seed: Optional[int] = None,
    config: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None,
) -> ConfigurableAllocationService:
    """
    Build a ConfigurableAllocationService from strategy names.

    Args:
        sampling: monte_carlo, variational or rejection
        constraint: basic or advanced
        prior: hierarchical or informative
        seed: Seed for the sampling strategy
        config: Optional configuration dictionary
        logger: Optional logger instance

    Raises:
        ValueError: if a strategy name is unknown
    """
    if sampling not in SAMPLING_STRATEGIES:
        raise ValueError(f"Unknown sampling strategy: {sampling}")
    if constraint not in CONSTRAINT_STRATEGIES:
        raise ValueError(f"Unknown constraint strategy: {constraint}")
    if prior not in PRIOR_STRATEGIES:
        raise ValueError(f"Unknown prior strategy: {prior}")

    return ConfigurableAllocationService(
        sampling_strategy=SAMPLING_STRATEGIES[sampling](seed=seed),
        constraint_strategy=CONSTRAINT_STRATEGIES[constraint](),
        prior_strategy=PRIOR_STRATEGIES[prior](),
        config=config,
        logger=logger,
    )
