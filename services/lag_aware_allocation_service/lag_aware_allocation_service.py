"""
Lag-Aware Allocation Service for the Budget Optimization System

Extends the base Thompson Sampling allocator with three flag-gated
enhancements applied to each arm's posterior:

- hierarchical_empirical_bayes: learned priors instead of Beta(1, 1)
- lag_aware_posterior_updates: conversions inflated by the lag completion curve
- recency_lag_adjusted_stats: exponential decay of effective trials/successes

If the enhanced path cannot produce a complete, finite allocation, the whole
call falls back to the base allocator.
"""

import logging
import math
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Dict, Any, Optional, List

from services.feature_flag_service import (
    FeatureFlagService,
    HIERARCHICAL_EMPIRICAL_BAYES,
    LAG_AWARE_POSTERIOR_UPDATES,
    RECENCY_LAG_ADJUSTED_STATS,
)
from services.hierarchical_priors_service import HierarchicalPriorsService
from services.lag_compensation_service import LagCompensationService
from services.optimization_store import OptimizationStore
from services.thompson_sampling_service import ThompsonSamplingService
from services.thompson_sampling_service.models import (
    Arm,
    AllocationErrorKind,
    AllocationOutcome,
    BayesianPosterior,
    BudgetConstraints,
    LagAwareConstraints,
)
from services.thompson_sampling_service.sampling import beta_quantile, is_valid_parameter_set
from services.thompson_sampling_service.thompson_sampling_service import value_rate

logger = logging.getLogger(__name__)

ENHANCEMENT_LABELS = {
    LAG_AWARE_POSTERIOR_UPDATES: "lag modeling",
    HIERARCHICAL_EMPIRICAL_BAYES: "cross-campaign learning",
    RECENCY_LAG_ADJUSTED_STATS: "recency weighting",
}

CONSTRAINT_TOGGLES = {
    LAG_AWARE_POSTERIOR_UPDATES: "enable_lag_adjustment",
    HIERARCHICAL_EMPIRICAL_BAYES: "enable_hierarchical_priors",
    RECENCY_LAG_ADJUSTED_STATS: "enable_recency_weighting",
}

# Flag config keys that tune the allocation, mapped to LagAwareConstraints fields
FLAG_CONFIG_FIELDS = {
    LAG_AWARE_POSTERIOR_UPDATES: {
        "min_lag_days": "min_lag_days",
        "max_lag_days": "max_lag_days",
        "confidence_threshold": "lag_confidence_threshold",
    },
    RECENCY_LAG_ADJUSTED_STATS: {
        "recency_half_life_days": "recency_half_life_days",
        "min_effective_trials": "min_effective_trials",
    },
}


class LagAwareAllocationService(ThompsonSamplingService):
    """Thompson Sampling allocator with lag compensation, hierarchical priors and recency weighting."""

    def __init__(
        self,
        store=None,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
        flag_service: Optional[FeatureFlagService] = None,
        priors_service: Optional[HierarchicalPriorsService] = None,
        lag_service: Optional[LagCompensationService] = None,
    ):
        """
        Initialize the LagAwareAllocationService.

        Collaborators not passed in are built on the same store.

        Args:
            store: OptimizationStore shared with the collaborators
            config: Optional configuration dictionary
            logger: Optional logger instance
            flag_service: Feature flag gate for the enhancements
            priors_service: Source of hierarchical priors
            lag_service: Source of lag adjustments
        """
        super().__init__(store=store, config=config, logger=logger)

        if self.store is None:
            self.store = OptimizationStore(self.data_path)

        self.flag_service = flag_service or FeatureFlagService(self.store, self.config, self.logger)
        self.priors_service = priors_service or HierarchicalPriorsService(self.store, self.config, self.logger)
        self.lag_service = lag_service or LagCompensationService(self.store, self.config, self.logger)

        self.record_measurements = self.config.get("record_measurements", True)

    def flag_tuning(self) -> Dict[str, Any]:
        """Tuning values stored in the lag and recency flag configs, keyed by constraint field."""
        tuning = {}
        for flag_name, fields in FLAG_CONFIG_FIELDS.items():
            flag_config = self.flag_service.get_feature_flag_config(flag_name) or {}
            for key, field_name in fields.items():
                if flag_config.get(key) is not None:
                    tuning[field_name] = flag_config[key]
        return tuning

    def _coerce_constraints(self, constraints) -> LagAwareConstraints:
        """
        Explicit LagAwareConstraints are used as given. Dictionaries and plain
        BudgetConstraints take their tuning knobs from the flag configs, with
        any values the caller set taking precedence.
        """
        if isinstance(constraints, LagAwareConstraints):
            return constraints
        if constraints is None:
            constraints = self.default_constraints
        if not isinstance(constraints, dict):
            constraints = asdict(constraints)
        return LagAwareConstraints.from_dict({**self.flag_tuning(), **constraints})

    def resolve_enhancements(self, arm: Arm, constraints: LagAwareConstraints) -> Dict[str, bool]:
        """Which enhancements are active for an arm: flag rollout AND caller toggle."""
        active = {}
        for flag_name, toggle in CONSTRAINT_TOGGLES.items():
            active[flag_name] = bool(getattr(constraints, toggle)) and self.flag_service.is_feature_enabled(
                flag_name, arm.id
            )
        return active

    def compute_lag_aware_posterior(
        self, arm: Arm, constraints: LagAwareConstraints, active: Dict[str, bool]
    ) -> BayesianPosterior:
        """
        Posterior with the active enhancements applied in order:
        hierarchical prior, then lag adjustment, then recency decay.
        """
        m = arm.metrics
        alpha_prior, beta_prior = 1.0, 1.0
        revenue_prior = None
        prior_source = "uniform"

        if active.get(HIERARCHICAL_EMPIRICAL_BAYES):
            priors = self.priors_service.get_effective_priors(arm.id, arm.campaign_scope_id)
            if priors["cvr"] is not None:
                alpha_prior = priors["cvr"].alpha_prior
                beta_prior = priors["cvr"].beta_prior
                prior_source = priors["cvr"].level
            revenue_prior = priors["revenue"]

        successes = m.conversions
        trials = m.clicks
        penalty = 0.0
        is_lag_adjusted = False

        if active.get(LAG_AWARE_POSTERIOR_UPDATES):
            adjustment = self.lag_service.calculate_lag_adjustment(
                arm,
                constraints.lag_confidence_threshold,
                constraints.min_lag_days,
                constraints.max_lag_days,
            )
            if adjustment is not None:
                successes = adjustment.adjusted_successes
                trials = adjustment.adjusted_trials
                penalty = adjustment.uncertainty_penalty
                is_lag_adjusted = True

        recency_weight = 1.0
        if active.get(RECENCY_LAG_ADJUSTED_STATS):
            recency_weight = self.lag_service.calculate_recency_weight(constraints.recency_half_life_days)
            raw_trials = trials
            trials *= recency_weight
            successes *= recency_weight
            floor = constraints.min_effective_trials
            if raw_trials >= floor and 0 < trials < floor:
                scale = floor / trials
                trials = floor
                successes *= scale

        if revenue_prior is not None:
            shape = revenue_prior.gamma_shape_prior + m.conversions
            local_rate = value_rate(m.conversions, m.revenue) if m.conversions > 0 and m.revenue > 0 else 0.0
            rate = revenue_prior.gamma_rate_prior + local_rate
        else:
            shape = 1 + m.conversions
            rate = value_rate(m.conversions, m.revenue)

        return BayesianPosterior(
            alpha=alpha_prior + successes,
            beta=beta_prior + trials - successes,
            shape=shape,
            rate=rate,
            effective_trials=trials,
            effective_successes=successes,
            recency_weight=recency_weight,
            uncertainty_penalty=penalty,
            prior_source=prior_source,
            is_lag_adjusted=is_lag_adjusted,
        )

    def allocate_budget(
        self,
        arms: List[Arm],
        total_budget: float,
        constraints: Optional[BudgetConstraints] = None,
        seed: Optional[int] = None,
    ) -> AllocationOutcome:
        """
        Allocate with the enhancements active for each arm, falling back to the
        base allocator when the enhanced allocation is unusable.

        Args:
            arms: Arms competing for budget (Arm objects or dictionaries)
            total_budget: Total daily budget to split
            constraints: LagAwareConstraints (plain BudgetConstraints get default toggles)
            seed: Optional seed for reproducible draws

        Returns:
            AllocationOutcome; fallback_used is set when the base allocator answered
        """
        arms = self._coerce_arms(arms)
        constraints = self._coerce_constraints(constraints)

        invalid = self._validate_request(arms, total_budget)
        if invalid is not None:
            return invalid

        active = {arm.id: self.resolve_enhancements(arm, constraints) for arm in arms}
        if not any(any(flags.values()) for flags in active.values()):
            self.logger.debug("No enhancements active, using base Thompson Sampling")
            return super().allocate_budget(arms, total_budget, constraints, seed)

        start_time = datetime.now()
        try:
            outcome = self._allocate_enhanced(arms, total_budget, constraints, active, seed)
        except Exception as e:
            self.logger.warning(f"Error in lag-aware allocation, falling back to base Thompson Sampling: {str(e)}")
            outcome = AllocationOutcome.failure(AllocationErrorKind.SYSTEMIC_INVALID_ALLOCATION, str(e))

        if outcome.success or outcome.error_kind == AllocationErrorKind.CONSTRAINT_INFEASIBLE:
            self._track_execution(start_time, outcome.success)
            return outcome

        self.logger.warning(f"Lag-aware allocation unusable ({outcome.reasoning}), using base allocator")
        fallback = super().allocate_budget(arms, total_budget, constraints, seed)
        fallback.fallback_used = True
        fallback.metadata["fallback_reason"] = outcome.reasoning
        return fallback

    def _allocate_enhanced(
        self,
        arms: List[Arm],
        total_budget: float,
        constraints: LagAwareConstraints,
        active: Dict[str, Dict[str, bool]],
        seed: Optional[int],
    ) -> AllocationOutcome:
        rng = self._rng_for_call(seed)
        floor = self._exploration_floor(constraints)
        scored = {}
        skipped = []

        for arm in arms:
            posterior = self.compute_lag_aware_posterior(arm, constraints, active[arm.id])
            if not is_valid_parameter_set(*posterior.parameters()):
                self.logger.warning(
                    f"Invalid posterior for arm {arm.id}, skipping: alpha={posterior.alpha}, "
                    f"beta={posterior.beta}, shape={posterior.shape}, rate={posterior.rate}"
                )
                skipped.append(arm.id)
                continue

            entry = self._score_arm(arm, posterior, rng, constraints.risk_tolerance, floor)
            values = [entry.sampled_cvr, entry.sampled_value, entry.expected_roas, entry.thompson_score]
            if not all(math.isfinite(v) for v in values):
                self.logger.warning(f"Non-finite score for arm {arm.id}, skipping: {values}")
                skipped.append(arm.id)
                continue

            scored[arm.id] = entry
            if self.record_measurements and self.store is not None:
                self._record_measurement(arm, entry)

        if not scored:
            return AllocationOutcome.failure(
                AllocationErrorKind.SYSTEMIC_INVALID_ALLOCATION,
                "No arms passed lag-aware validation",
            )

        suffixes = {arm.id: self._enhancement_suffix(active[arm.id]) for arm in arms}
        metadata = {
            "enhancements": {
                arm_id: [name for name, on in flags.items() if on] for arm_id, flags in active.items()
            },
            "skipped_arms": skipped,
        }
        outcome = self._allocate_scored(arms, scored, total_budget, constraints, suffixes, metadata)

        if outcome.success and not all(a.is_finite() for a in outcome.allocations):
            return AllocationOutcome.failure(
                AllocationErrorKind.SYSTEMIC_INVALID_ALLOCATION,
                "Non-finite value in final allocation",
            )
        return outcome

    @staticmethod
    def _enhancement_suffix(flags: Dict[str, bool]) -> str:
        labels = [ENHANCEMENT_LABELS[name] for name in ENHANCEMENT_LABELS if flags.get(name)]
        if not labels:
            return ""
        return f" [Enhanced with {', '.join(labels)}]"

    def _record_measurement(self, arm: Arm, entry):
        posterior = entry.posterior
        m = arm.metrics
        self.store.append_measurement(
            {
                "measurement_id": f"{arm.id}-{uuid.uuid4().hex[:12]}",
                "experiment_id": arm.campaign_scope_id,
                "arm_id": arm.id,
                "successes": m.conversions,
                "trials": m.clicks,
                "revenue_total": m.revenue,
                "is_lag_adjusted": posterior.is_lag_adjusted,
                "recency_weight": posterior.recency_weight,
                "effective_trials": posterior.effective_trials,
                "effective_successes": posterior.effective_successes,
                "alpha_posterior": posterior.alpha,
                "beta_posterior": posterior.beta,
                "gamma_shape": posterior.shape,
                "gamma_rate": posterior.rate,
                "exploration_bonus": entry.exploration_bonus,
                "uncertainty_penalty": posterior.uncertainty_penalty,
                "confidence_interval_lower": beta_quantile(posterior.alpha, posterior.beta, 0.025),
                "confidence_interval_upper": beta_quantile(posterior.alpha, posterior.beta, 0.975),
            }
        )
