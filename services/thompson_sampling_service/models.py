"""
Data model for the Thompson Sampling budget allocators.

Arms and constraints are caller-owned inputs. Allocation results are frozen
per call, and every allocator returns an AllocationOutcome so that the
expected failure paths (infeasible constraints, fallback to the base
allocator) travel as values instead of exceptions.
"""

import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Any, Optional, List, Tuple


class AllocationErrorKind(str, Enum):
    """Typed failure reasons carried by AllocationOutcome."""

    INVALID_POSTERIOR = "invalid_posterior"
    SAMPLING_FAILURE = "sampling_failure"
    CONSTRAINT_INFEASIBLE = "constraint_infeasible"
    MISSING_AUXILIARY_DATA = "missing_auxiliary_data"
    SYSTEMIC_INVALID_ALLOCATION = "systemic_invalid_allocation"
    INVALID_INPUT = "invalid_input"


def _pick(data: Dict[str, Any], *keys, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class ArmMetrics:
    """Trailing 30-day performance of an arm."""

    spend: float = 0.0
    clicks: float = 0.0
    conversions: float = 0.0
    revenue: float = 0.0
    impressions: float = 0.0
    quality_score: Optional[float] = None

    @property
    def avg_cpc(self) -> float:
        return self.spend / max(self.clicks, 1)

    @property
    def conversion_rate(self) -> float:
        return self.conversions / max(self.clicks, 1)

    @property
    def avg_value(self) -> float:
        return self.revenue / max(self.conversions, 1)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArmMetrics":
        return cls(
            spend=float(_pick(data, "spend", "cost", default=0.0)),
            clicks=float(_pick(data, "clicks", default=0.0)),
            conversions=float(_pick(data, "conversions", default=0.0)),
            revenue=float(_pick(data, "revenue", "conversion_value", default=0.0)),
            impressions=float(_pick(data, "impressions", default=0.0)),
            quality_score=_pick(data, "quality_score", "qualityScore"),
        )


@dataclass
class Arm:
    """A budget-bearing campaign, ad group or creative competing for spend."""

    id: str
    name: str
    metrics: ArmMetrics = field(default_factory=ArmMetrics)
    type: str = "campaign"
    current_daily_budget: Optional[float] = None
    min_budget: Optional[float] = None
    max_budget: Optional[float] = None
    campaign_id: Optional[str] = None
    category: Optional[str] = None
    days_since_launch: Optional[int] = None

    @property
    def campaign_scope_id(self) -> str:
        """Scope id used for campaign-level priors and lag profiles."""
        return self.campaign_id or self.id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Arm":
        """
        Build an arm from a plain dictionary.

        Accepts snake_case keys as well as the camelCase payloads produced by
        the reporting pipeline (metrics30d, currentDailyBudget, ...).
        """
        metrics = _pick(data, "metrics", "metrics30d", "metrics_30d", default={})
        if isinstance(metrics, ArmMetrics):
            arm_metrics = metrics
        else:
            arm_metrics = ArmMetrics.from_dict(metrics)

        return cls(
            id=str(data["id"]),
            name=str(_pick(data, "name", default=data["id"])),
            metrics=arm_metrics,
            type=_pick(data, "type", default="campaign"),
            current_daily_budget=_pick(data, "current_daily_budget", "currentDailyBudget"),
            min_budget=_pick(data, "min_budget", "minBudget"),
            max_budget=_pick(data, "max_budget", "maxBudget"),
            campaign_id=_pick(data, "campaign_id", "campaignId"),
            category=_pick(data, "category"),
            days_since_launch=_pick(data, "days_since_launch", "daysSinceLaunch"),
        )


@dataclass
class BudgetConstraints:
    """Portfolio-wide allocation limits."""

    min_daily_budget: float = 2.0
    max_daily_budget: float = 100.0
    risk_tolerance: float = 0.3
    max_change_percent: float = 25.0
    exploration_floor: float = 0.1
    campaign_limits: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BudgetConstraints":
        kwargs = _constraint_kwargs(data)
        return cls(**{k: v for k, v in kwargs.items() if k in cls.__dataclass_fields__})


@dataclass
class LagAwareConstraints(BudgetConstraints):
    """Budget constraints plus the lag, prior and recency tuning knobs."""

    enable_lag_adjustment: bool = True
    enable_hierarchical_priors: bool = True
    enable_recency_weighting: bool = True
    min_lag_days: int = 1
    max_lag_days: int = 90
    lag_confidence_threshold: float = 0.6
    recency_half_life_days: float = 14.0
    min_effective_trials: float = 10.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LagAwareConstraints":
        kwargs = _constraint_kwargs(data)
        return cls(**{k: v for k, v in kwargs.items() if k in cls.__dataclass_fields__})


_CAMEL_TO_SNAKE = {
    "minDailyBudget": "min_daily_budget",
    "maxDailyBudget": "max_daily_budget",
    "riskTolerance": "risk_tolerance",
    "maxChangePercent": "max_change_percent",
    "explorationFloor": "exploration_floor",
    "campaignLimits": "campaign_limits",
    "min_per_campaign": "min_daily_budget",
    "enableLagAdjustment": "enable_lag_adjustment",
    "enableHierarchicalPriors": "enable_hierarchical_priors",
    "enableRecencyWeighting": "enable_recency_weighting",
    "minLagDays": "min_lag_days",
    "maxLagDays": "max_lag_days",
    "lagConfidenceThreshold": "lag_confidence_threshold",
    "recencyHalfLifeDays": "recency_half_life_days",
    "minEffectiveTrials": "min_effective_trials",
}


def _constraint_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
    kwargs = {}
    for key, value in data.items():
        if value is None:
            continue
        kwargs[_CAMEL_TO_SNAKE.get(key, key)] = value
    return kwargs


@dataclass
class BayesianPosterior:
    """Beta posterior for conversion rate and Gamma posterior for value per conversion."""

    alpha: float
    beta: float
    shape: float
    rate: float
    effective_trials: float = 0.0
    effective_successes: float = 0.0
    recency_weight: float = 1.0
    uncertainty_penalty: float = 0.0
    prior_source: str = "uniform"
    is_lag_adjusted: bool = False

    def parameters(self) -> Tuple[float, float, float, float]:
        return self.alpha, self.beta, self.shape, self.rate


@dataclass
class LagProfile:
    """One point of a conversion-lag completion curve."""

    scope_type: str
    scope_id: str
    days_since: int
    completion_cdf: float
    sample_size: int = 0
    confidence_score: float = 0.0
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LagProfile":
        return cls(
            scope_type=data["scope_type"],
            scope_id=str(data["scope_id"]),
            days_since=int(data["days_since"]),
            completion_cdf=float(data["completion_cdf"]),
            sample_size=int(data.get("sample_size", 0)),
            confidence_score=float(data.get("confidence_score", 0.0)),
            updated_at=data.get("updated_at"),
        )


@dataclass
class HierarchicalPrior:
    """Learned Beta/Gamma hyperparameters for one level/scope/metric."""

    level: str
    scope_id: str
    metric: str
    alpha_prior: float = 1.0
    beta_prior: float = 1.0
    gamma_shape_prior: float = 1.0
    gamma_rate_prior: float = 1.0
    effective_sample_size: float = 0.0
    confidence_level: float = 0.0
    updated_at: Optional[str] = None

    @property
    def prior_id(self) -> str:
        return f"{self.level}-{self.scope_id}-{self.metric}"

    def parameters(self) -> Tuple[float, float, float, float]:
        return self.alpha_prior, self.beta_prior, self.gamma_shape_prior, self.gamma_rate_prior

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["prior_id"] = self.prior_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HierarchicalPrior":
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in fields})


@dataclass(frozen=True)
class AllocationResult:
    """Proposed daily budget for one arm."""

    arm_id: str
    arm_name: str
    current_daily_budget: float
    proposed_daily_budget: float
    expected_improvement: float
    confidence_interval: Tuple[float, float]
    reasoning: str
    thompson_score: float
    exploration_bonus: float

    def is_finite(self) -> bool:
        values = [
            self.proposed_daily_budget,
            self.expected_improvement,
            self.thompson_score,
            self.exploration_bonus,
            self.confidence_interval[0],
            self.confidence_interval[1],
        ]
        return all(math.isfinite(v) for v in values)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["confidence_interval"] = list(self.confidence_interval)
        return data


@dataclass
class AllocationOutcome:
    """Either a complete allocation or a typed failure."""

    success: bool
    allocations: List[AllocationResult] = field(default_factory=list)
    total_allocated: float = 0.0
    reasoning: str = ""
    error_kind: Optional[AllocationErrorKind] = None
    violations: List[str] = field(default_factory=list)
    fallback_used: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        allocations: List[AllocationResult],
        reasoning: str = "",
        fallback_used: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "AllocationOutcome":
        total = round(sum(a.proposed_daily_budget for a in allocations), 2)
        return cls(
            success=True,
            allocations=list(allocations),
            total_allocated=total,
            reasoning=reasoning,
            fallback_used=fallback_used,
            metadata=metadata or {},
        )

    @classmethod
    def failure(
        cls,
        error_kind: AllocationErrorKind,
        reasoning: str,
        violations: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "AllocationOutcome":
        return cls(
            success=False,
            reasoning=reasoning,
            error_kind=error_kind,
            violations=violations or [],
            metadata=metadata or {},
        )

    def by_arm(self) -> Dict[str, AllocationResult]:
        return {a.arm_id: a for a in self.allocations}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "success" if self.success else "failed",
            "success": self.success,
            "allocations": [a.to_dict() for a in self.allocations],
            "total_allocated": self.total_allocated,
            "reasoning": self.reasoning,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "violations": list(self.violations),
            "fallback_used": self.fallback_used,
            "metadata": dict(self.metadata),
        }
