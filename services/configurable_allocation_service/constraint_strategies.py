"""
Constraint strategies for the configurable allocator.

A constraint strategy turns raw Thompson shares into final budgets that
respect every arm's box and sum to the total, and checks a request for
infeasible or risky constraints before any sampling happens.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

import cvxpy as cp
import numpy as np

from services.thompson_sampling_service.thompson_sampling_service import (
    BUDGET_TOLERANCE,
    MIN_CPC,
    ThompsonSamplingService,
)

logger = logging.getLogger(__name__)

HIGH_RISK = "high"
MEDIUM_RISK = "medium"
LOW_RISK = "low"

RISK_MULTIPLIERS = {LOW_RISK: 1.0, MEDIUM_RISK: 0.9, HIGH_RISK: 0.75}


@dataclass
class ConstraintArm:
    """Per-arm view used by the constraint strategies."""

    id: str
    name: str
    min_budget: float
    max_budget: float
    current_budget: float = 0.0
    conversion_rate: float = 0.0
    average_value: float = 0.0
    cost_per_click: float = 0.0
    quality_score: Optional[float] = None
    category: Optional[str] = None
    seasonality: float = 1.0
    risk_level: str = MEDIUM_RISK


@dataclass
class ConstraintValidationResult:
    valid: bool
    violations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    total_min_budget: float = 0.0
    total_max_budget: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "violations": list(self.violations),
            "warnings": list(self.warnings),
            "total_min_budget": self.total_min_budget,
            "total_max_budget": self.total_max_budget,
        }


def determine_risk_level(conversion_rate: float, quality_score: Optional[float]) -> str:
    """Bucket an arm by conversion rate and quality score."""
    qs = 5 if quality_score is None else quality_score
    if conversion_rate < 0.01 or qs < 3:
        return HIGH_RISK
    if conversion_rate < 0.03 or qs < 6:
        return MEDIUM_RISK
    return LOW_RISK


def _bounds(arms: List[ConstraintArm]):
    lower = np.array([max(0.0, a.min_budget) for a in arms], dtype=float)
    upper = np.array([a.max_budget for a in arms], dtype=float)
    return lower, np.maximum(upper, lower)


class ConstraintStrategy(ABC):
    """Interface for allocation constraint handling."""

    @abstractmethod
    def apply_constraints(
        self, raw_allocations: np.ndarray, total_budget: float, arms: List[ConstraintArm]
    ) -> np.ndarray:
        pass

    @abstractmethod
    def validate_constraints(self, total_budget: float, arms: List[ConstraintArm]) -> ConstraintValidationResult:
        pass

    @abstractmethod
    def get_metadata(self) -> Dict[str, Any]:
        pass

    def _base_validation(self, total_budget: float, arms: List[ConstraintArm]) -> ConstraintValidationResult:
        violations, warnings = [], []

        for arm in arms:
            if arm.min_budget < 0:
                violations.append(f"Arm {arm.name} has negative minimum budget: {arm.min_budget}")
            if arm.max_budget < arm.min_budget:
                violations.append(
                    f"Arm {arm.name} has max budget ({arm.max_budget}) less than min budget ({arm.min_budget})"
                )

        total_min = float(sum(a.min_budget for a in arms))
        total_max = float(sum(a.max_budget for a in arms))

        if total_budget < total_min - BUDGET_TOLERANCE:
            violations.append(
                f"Total budget ({total_budget}) is less than sum of minimum budgets ({round(total_min, 2)})"
            )
        if total_budget > total_max + BUDGET_TOLERANCE:
            warnings.append(
                f"Total budget ({total_budget}) exceeds sum of maximum budgets ({round(total_max, 2)})"
            )

        return ConstraintValidationResult(
            valid=not violations,
            violations=violations,
            warnings=warnings,
            total_min_budget=total_min,
            total_max_budget=total_max,
        )


class BasicConstraintStrategy(ConstraintStrategy):
    """Box clipping with proportional rebalancing and cent rounding."""

    def __init__(self, tolerance: float = BUDGET_TOLERANCE):
        self.tolerance = tolerance

    def apply_constraints(
        self, raw_allocations: np.ndarray, total_budget: float, arms: List[ConstraintArm]
    ) -> np.ndarray:
        lower, upper = _bounds(arms)
        raw = np.asarray(raw_allocations, dtype=float)
        x = ThompsonSamplingService.redistribute(raw, lower, upper, total_budget)
        return ThompsonSamplingService.round_to_cents(x, lower, upper, total_budget)

    def validate_constraints(self, total_budget: float, arms: List[ConstraintArm]) -> ConstraintValidationResult:
        result = self._base_validation(total_budget, arms)

        high_risk = [a for a in arms if a.risk_level == HIGH_RISK]
        if arms and len(high_risk) > len(arms) * 0.5:
            result.warnings.append(
                f"More than half of the arms are high risk ({len(high_risk)}/{len(arms)})"
            )
        return result

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": "Basic Constraint Handling",
            "description": "Box constraints with proportional rebalancing",
            "constraint_types": ["min_budget", "max_budget", "total_budget"],
            "complexity": "simple",
            "flexibility": "low",
        }


class AdvancedConstraintStrategy(ConstraintStrategy):
    """
    Business rules followed by a convex re-optimization.

    Seasonality scales each arm's share, high-risk arms lose 10% and
    low-quality arms are held at 1.5x their minimum. The adjusted split is
    then the anchor of a cvxpy problem that maximizes risk-weighted value
    per dollar minus a quadratic penalty for straying from the anchor,
    subject to the box constraints and the total. Solver failures fall back
    to the basic strategy.
    """

    def __init__(
        self,
        proximity_weight: float = 1.0,
        tolerance: float = 0.001,
        solver: Optional[str] = None,
    ):
        self.proximity_weight = proximity_weight
        self.tolerance = tolerance
        self.solver = solver
        self.fallback = BasicConstraintStrategy()
        self.last_solver_status = None

    def apply_business_rules(self, allocations: np.ndarray, arms: List[ConstraintArm]) -> np.ndarray:
        adjusted = np.asarray(allocations, dtype=float).copy()
        for i, arm in enumerate(arms):
            adjusted[i] *= float(np.clip(arm.seasonality, 0.5, 2.0))
            if arm.risk_level == HIGH_RISK:
                adjusted[i] *= 0.9
            if arm.quality_score is not None and arm.quality_score < 3:
                adjusted[i] = max(adjusted[i], arm.min_budget * 1.5)
        return adjusted

    def value_per_dollar(self, arms: List[ConstraintArm]) -> np.ndarray:
        values = np.array(
            [
                a.conversion_rate * a.average_value / max(a.cost_per_click, MIN_CPC)
                * RISK_MULTIPLIERS.get(a.risk_level, 1.0)
                for a in arms
            ],
            dtype=float,
        )
        peak = values.max() if len(values) else 0.0
        return values / peak if peak > 0 else np.zeros_like(values)

    def apply_constraints(
        self, raw_allocations: np.ndarray, total_budget: float, arms: List[ConstraintArm]
    ) -> np.ndarray:
        lower, upper = _bounds(arms)
        anchor = self.apply_business_rules(raw_allocations, arms)

        if upper.sum() < total_budget - BUDGET_TOLERANCE or lower.sum() > total_budget + BUDGET_TOLERANCE:
            return self.fallback.apply_constraints(anchor, total_budget, arms)

        n = len(arms)
        values = self.value_per_dollar(arms)
        budgets = cp.Variable(n)
        penalty = self.proximity_weight * cp.sum_squares(budgets - anchor) / max(total_budget, 1.0)
        objective = cp.Maximize(cp.sum(cp.multiply(values, budgets)) - penalty)
        constraints = [
            budgets >= lower,
            budgets <= upper,
            cp.sum(budgets) == total_budget,
        ]
        prob = cp.Problem(objective, constraints)

        try:
            try:
                if self.solver:
                    prob.solve(solver=self.solver)
                else:
                    prob.solve()
            except cp.SolverError:
                prob.solve(solver=cp.SCS)
        except cp.SolverError as e:
            logger.warning(f"Constraint optimization failed, using basic constraints: {str(e)}")
            self.last_solver_status = "error"
            return self.fallback.apply_constraints(anchor, total_budget, arms)

        self.last_solver_status = prob.status
        if prob.status not in [cp.OPTIMAL, cp.OPTIMAL_INACCURATE]:
            logger.warning(f"Constraint optimization status: {prob.status}")

        optimal = budgets.value
        if optimal is None or np.any(np.isnan(optimal)):
            logger.warning("Constraint optimization returned no solution, using basic constraints")
            return self.fallback.apply_constraints(anchor, total_budget, arms)

        return self.fallback.apply_constraints(np.asarray(optimal, dtype=float), total_budget, arms)

    def validate_constraints(self, total_budget: float, arms: List[ConstraintArm]) -> ConstraintValidationResult:
        result = self._base_validation(total_budget, arms)

        total_current = sum(a.current_budget for a in arms)
        if total_current > 0:
            by_category: Dict[str, float] = {}
            for arm in arms:
                key = arm.category or "uncategorized"
                by_category[key] = by_category.get(key, 0.0) + arm.current_budget
            for category, spend in by_category.items():
                if len(by_category) > 1 and spend / total_current > 0.8:
                    result.warnings.append(
                        f"Category {category} holds {spend / total_current * 100:.0f}% of current budget"
                    )
            for arm in arms:
                if len(arms) > 1 and arm.current_budget / total_current > 0.8:
                    result.warnings.append(
                        f"Arm {arm.name} holds {arm.current_budget / total_current * 100:.0f}% of current budget"
                    )

            low_performers = [a for a in arms if a.conversion_rate < 0.01]
            low_share = sum(a.current_budget for a in low_performers) / total_current
            if low_share > 0.3:
                result.warnings.append(
                    f"{low_share * 100:.0f}% of current budget is on arms converting below 1%"
                )

        return result

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": "Advanced Constraint Handling",
            "description": "Business rules with convex re-optimization and basic fallback",
            "constraint_types": [
                "min_budget",
                "max_budget",
                "total_budget",
                "seasonality",
                "risk_level",
                "quality_score",
            ],
            "complexity": "complex",
            "flexibility": "high",
        }


CONSTRAINT_STRATEGIES = {
    "basic": BasicConstraintStrategy,
    "advanced": AdvancedConstraintStrategy,
}
