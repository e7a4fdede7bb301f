"""
Feature Flag Service for the Budget Optimization System

Gates every allocator enhancement behind a flag with percentage rollout.
Rollout increases are rate limited (size per step and a stability window
between steps) and all enhancements can be disabled at once in an emergency.
"""

import hashlib
import logging
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from typing import Dict, Any, Optional, List, Callable

from services.base_service import BaseService
from services.optimization_store import FEATURE_FLAGS

logger = logging.getLogger(__name__)

LAG_AWARE_POSTERIOR_UPDATES = "lag_aware_posterior_updates"
HIERARCHICAL_EMPIRICAL_BAYES = "hierarchical_empirical_bayes"
RECENCY_LAG_ADJUSTED_STATS = "recency_lag_adjusted_stats"
PACING_CONTROLLER_INTEGRATION = "pacing_controller_integration"
CONVERSION_LAG_BUCKET_COLLECTION = "conversion_lag_bucket_collection"

ENHANCEMENT_FLAGS = [
    LAG_AWARE_POSTERIOR_UPDATES,
    HIERARCHICAL_EMPIRICAL_BAYES,
    RECENCY_LAG_ADJUSTED_STATS,
    PACING_CONTROLLER_INTEGRATION,
]

DEFAULT_FLAGS = [
    {
        "flag_name": LAG_AWARE_POSTERIOR_UPDATES,
        "enabled": False,
        "rollout_percentage": 0.0,
        "config": {"min_lag_days": 1, "max_lag_days": 90, "confidence_threshold": 0.6},
    },
    {
        "flag_name": HIERARCHICAL_EMPIRICAL_BAYES,
        "enabled": False,
        "rollout_percentage": 0.0,
        "config": {
            "global_prior_strength": 10,
            "campaign_prior_strength": 5,
            "update_frequency_hours": 24,
        },
    },
    {
        "flag_name": RECENCY_LAG_ADJUSTED_STATS,
        "enabled": False,
        "rollout_percentage": 0.0,
        "config": {"recency_half_life_days": 14, "min_effective_trials": 10},
    },
    {
        "flag_name": PACING_CONTROLLER_INTEGRATION,
        "enabled": False,
        "rollout_percentage": 0.0,
        "config": {"max_bid_adjustment": 0.25, "exploration_budget": 0.1, "decision_frequency": 60},
    },
    {
        "flag_name": CONVERSION_LAG_BUCKET_COLLECTION,
        "enabled": True,
        "rollout_percentage": 100.0,
        "config": {
            "api_fields": ["segments.conversion_or_adjustment_lag_bucket"],
            "cache_hours": 24,
        },
    },
]


class RolloutValidationError(ValueError):
    """Raised when a rollout change violates the rollout constraints."""


@dataclass
class RolloutConstraints:
    max_percentage_increase_per_hour: float = 10.0
    min_stability_period_hours: float = 2.0
    max_target_campaigns: int = 100
    emergency_disable_threshold: float = 0.05


@dataclass
class FeatureFlag:
    """Stored state of one flag."""

    flag_name: str
    enabled: bool = False
    rollout_percentage: float = 0.0
    target_campaigns: Optional[List[str]] = None
    config: Dict[str, Any] = field(default_factory=dict)
    created_by: str = "budget_optimizer"
    enabled_at: Optional[str] = None
    disabled_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureFlag":
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in fields})


def rollout_bucket(entity_id: str, flag_name: str) -> float:
    """Stable bucket in [0, 100) for an entity and flag."""
    digest = hashlib.sha256(f"{entity_id}{flag_name}".encode("utf-8")).hexdigest()
    return (int(digest[:8], 16) % 10000) / 100


class FeatureFlagService(BaseService):
    """Service managing feature flags for the allocator enhancements."""

    def __init__(
        self,
        store=None,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rollout_constraints: Optional[RolloutConstraints] = None,
    ):
        """
        Initialize the FeatureFlagService.

        Args:
            store: OptimizationStore holding the flag table
            config: Optional configuration dictionary
            logger: Optional logger instance
            clock: Optional time source, defaults to datetime.now
            rollout_constraints: Rate limits for rollout changes
        """
        super().__init__(store=store, config=config, logger=logger)
        self.clock = clock or datetime.now

        if rollout_constraints is None:
            rollout_config = self.config.get("rollout", {})
            rollout_constraints = RolloutConstraints(
                **{k: v for k, v in rollout_config.items() if k in RolloutConstraints.__dataclass_fields__}
            )
        self.rollout_constraints = rollout_constraints

        if self.config.get("initialize_defaults", True):
            self.initialize_default_flags()

        self.logger.info("FeatureFlagService initialized")

    def _now(self) -> str:
        return self.clock().isoformat()

    def initialize_default_flags(self) -> int:
        """Create any missing default flags. Existing flags are left untouched."""
        now = self._now()
        created = []

        def add_missing(table):
            for default in DEFAULT_FLAGS:
                if default["flag_name"] in table:
                    continue
                flag = FeatureFlag(
                    flag_name=default["flag_name"],
                    enabled=default["enabled"],
                    rollout_percentage=default["rollout_percentage"],
                    config=dict(default["config"]),
                    enabled_at=now if default["enabled"] else None,
                    created_at=now,
                    updated_at=now,
                )
                table[flag.flag_name] = flag.to_dict()
                created.append(flag.flag_name)
            return table

        self.store.update(FEATURE_FLAGS, add_missing)

        for flag_name in created:
            self.logger.info(f"Initialized feature flag: {flag_name}")
        return len(created)

    def get_feature_flag(self, flag_name: str) -> Optional[FeatureFlag]:
        data = self.store.snapshot(FEATURE_FLAGS).get(flag_name)
        return FeatureFlag.from_dict(data) if data else None

    def get_all_feature_flags(self) -> List[FeatureFlag]:
        table = self.store.snapshot(FEATURE_FLAGS)
        return [FeatureFlag.from_dict(table[name]) for name in sorted(table)]

    def _require(self, flag_name: str) -> FeatureFlag:
        flag = self.get_feature_flag(flag_name)
        if flag is None:
            raise KeyError(f"Feature flag {flag_name} not found")
        return flag

    def _write(self, flag_name: str, changes: Dict[str, Any]):
        def apply(table):
            if flag_name not in table:
                raise KeyError(f"Feature flag {flag_name} not found")
            table[flag_name].update(changes)
            return table

        self.store.update(FEATURE_FLAGS, apply)

    def is_feature_enabled(
        self, flag_name: str, campaign_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> bool:
        """
        Whether a flag is active for an entity.

        Partial rollouts use a stable hash bucket of the entity id, so the same
        campaign keeps the same answer while the percentage is unchanged.
        """
        flag = self.get_feature_flag(flag_name)
        if flag is None or not flag.enabled:
            return False

        if flag.target_campaigns and campaign_id and campaign_id not in flag.target_campaigns:
            return False

        if flag.rollout_percentage >= 100:
            return True
        if flag.rollout_percentage <= 0:
            return False

        entity = campaign_id or user_id or "default"
        return rollout_bucket(entity, flag_name) < flag.rollout_percentage

    def get_feature_flag_config(self, flag_name: str) -> Optional[Dict[str, Any]]:
        flag = self.get_feature_flag(flag_name)
        if flag is None:
            return None
        return dict(flag.config)

    def set_feature_flag_config(self, flag_name: str, config: Dict[str, Any]):
        self._write(flag_name, {"config": dict(config), "updated_at": self._now()})
        self.logger.info(f"Updated config for feature flag: {flag_name}")

    def validate_rollout_increase(
        self, flag: FeatureFlag, new_percentage: float, constraints: Optional[RolloutConstraints] = None
    ):
        """
        Check a rollout change against the rate limits.

        Raises:
            RolloutValidationError: If the step is too large or too soon
        """
        constraints = constraints or self.rollout_constraints
        increase = new_percentage - flag.rollout_percentage

        if increase > constraints.max_percentage_increase_per_hour:
            raise RolloutValidationError(
                f"Percentage increase {increase:.1f}% exceeds limit of "
                f"{constraints.max_percentage_increase_per_hour}% per hour"
            )

        if increase > 0 and flag.updated_at:
            elapsed = self.clock() - datetime.fromisoformat(flag.updated_at)
            hours_since_update = elapsed.total_seconds() / 3600
            if hours_since_update < constraints.min_stability_period_hours:
                raise RolloutValidationError(
                    f"Must wait {constraints.min_stability_period_hours} hours between rollout "
                    f"increases. Last update: {hours_since_update:.1f}h ago"
                )

    def enable_feature_flag(
        self,
        flag_name: str,
        rollout_percentage: float = 100.0,
        target_campaigns: Optional[List[str]] = None,
    ):
        """
        Enable a flag at the given rollout percentage.

        Raises:
            KeyError: If the flag does not exist
            RolloutValidationError: If an already enabled flag would change too fast
        """
        flag = self._require(flag_name)
        if flag.enabled and flag.rollout_percentage != rollout_percentage:
            self.validate_rollout_increase(flag, rollout_percentage)

        if target_campaigns and len(target_campaigns) > self.rollout_constraints.max_target_campaigns:
            raise RolloutValidationError(
                f"Cannot target {len(target_campaigns)} campaigns: limit is "
                f"{self.rollout_constraints.max_target_campaigns}"
            )

        now = self._now()
        self._write(
            flag_name,
            {
                "enabled": True,
                "rollout_percentage": min(100.0, max(0.0, float(rollout_percentage))),
                "target_campaigns": list(target_campaigns) if target_campaigns else None,
                "enabled_at": now,
                "updated_at": now,
            },
        )
        self.logger.info(
            f"Enabled feature flag: {flag_name} at {rollout_percentage}% "
            f"({len(target_campaigns or [])} target campaigns)"
        )

    def disable_feature_flag(self, flag_name: str, reason: Optional[str] = None):
        now = self._now()
        self._write(flag_name, {"enabled": False, "disabled_at": now, "updated_at": now})
        self.logger.warning(f"Disabled feature flag: {flag_name} (reason: {reason})")

    def gradual_rollout(
        self,
        flag_name: str,
        target_percentage: float,
        increment_per_step: float = 10.0,
        wait_hours: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Move an enabled flag one step toward the target percentage.

        Args:
            flag_name: Flag to roll out
            target_percentage: Final rollout percentage
            increment_per_step: Maximum increase for this step
            wait_hours: Stability window for this step; never shorter than the
                configured min_stability_period_hours

        Returns:
            Dictionary with success, current_percentage and message
        """
        flag = self.get_feature_flag(flag_name)
        if flag is None:
            return {
                "success": False,
                "current_percentage": 0.0,
                "message": f"Feature flag {flag_name} not found",
            }

        if not flag.enabled:
            return {
                "success": False,
                "current_percentage": flag.rollout_percentage,
                "message": f"Feature flag {flag_name} is not enabled",
            }

        new_percentage = min(target_percentage, flag.rollout_percentage + increment_per_step)

        constraints = self.rollout_constraints
        if wait_hours is not None:
            constraints = replace(
                constraints,
                min_stability_period_hours=max(wait_hours, constraints.min_stability_period_hours),
            )

        try:
            self.validate_rollout_increase(flag, new_percentage, constraints)
        except RolloutValidationError as e:
            return {
                "success": False,
                "current_percentage": flag.rollout_percentage,
                "message": f"Cannot increase rollout: {str(e)}",
            }
        if new_percentage <= flag.rollout_percentage:
            return {
                "success": True,
                "current_percentage": flag.rollout_percentage,
                "message": "Already at target rollout percentage",
            }

        self._write(flag_name, {"rollout_percentage": new_percentage, "updated_at": self._now()})
        self.logger.info(
            f"Increased rollout for {flag_name}: {flag.rollout_percentage}% -> {new_percentage}%"
        )
        return {
            "success": True,
            "current_percentage": new_percentage,
            "message": f"Rollout increased to {new_percentage}%",
        }

    def emergency_disable_all(self, reason: str):
        """Disable every enhancement flag at once, bypassing rate limits."""
        now = self._now()

        def disable(table):
            for flag_name in ENHANCEMENT_FLAGS:
                if flag_name in table:
                    table[flag_name].update({"enabled": False, "disabled_at": now, "updated_at": now})
            return table

        self.store.update(FEATURE_FLAGS, disable)
        self.logger.error(f"EMERGENCY DISABLE of all enhancement flags: {reason}")

    def check_error_rate(self, error_rate: float, reason: Optional[str] = None) -> bool:
        """
        Emergency-disable the enhancements when the error rate reaches the threshold.

        Returns:
            True if the emergency disable was triggered
        """
        threshold = self.rollout_constraints.emergency_disable_threshold
        if error_rate >= threshold:
            self.emergency_disable_all(
                reason or f"Error rate {error_rate:.2%} reached threshold {threshold:.2%}"
            )
            return True
        return False

    def add_target_campaigns(self, flag_name: str, campaign_ids: List[str]):
        """
        Add campaigns to a flag's allow-list.

        Raises:
            KeyError: If the flag does not exist
            RolloutValidationError: If the allow-list would exceed the limit
        """
        flag = self._require(flag_name)
        targets = list(flag.target_campaigns or [])
        for campaign_id in campaign_ids:
            if campaign_id not in targets:
                targets.append(campaign_id)

        if len(targets) > self.rollout_constraints.max_target_campaigns:
            raise RolloutValidationError(
                f"Cannot add campaigns: would exceed limit of "
                f"{self.rollout_constraints.max_target_campaigns} targeted campaigns"
            )

        self._write(flag_name, {"target_campaigns": targets, "updated_at": self._now()})
        self.logger.info(f"Added {len(campaign_ids)} target campaigns to {flag_name} ({len(targets)} total)")

    def remove_target_campaigns(self, flag_name: str, campaign_ids: List[str]):
        flag = self.get_feature_flag(flag_name)
        if flag is None or not flag.target_campaigns:
            return

        targets = [c for c in flag.target_campaigns if c not in campaign_ids]
        self._write(flag_name, {"target_campaigns": targets or None, "updated_at": self._now()})
        self.logger.info(f"Removed {len(campaign_ids)} target campaigns from {flag_name} ({len(targets)} total)")

    def get_rollout_status(self) -> Dict[str, Any]:
        """Summary of the enhancement and data-collection flags."""
        features = []
        enabled_count = 0
        total_rollout = 0.0

        for flag_name in ENHANCEMENT_FLAGS + [CONVERSION_LAG_BUCKET_COLLECTION]:
            flag = self.get_feature_flag(flag_name)
            if flag is None:
                continue
            features.append(
                {
                    "name": flag_name,
                    "enabled": flag.enabled,
                    "rollout_percentage": flag.rollout_percentage,
                    "last_updated": flag.updated_at,
                }
            )
            if flag.enabled:
                enabled_count += 1
                total_rollout += flag.rollout_percentage

        return {
            "total_features": len(features),
            "enabled_features": enabled_count,
            "avg_rollout_percentage": total_rollout / enabled_count if enabled_count else 0.0,
            "features": features,
        }

    def run(self, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run the service with the specified parameters.

        Supported actions: status, enable, disable, gradual_rollout, emergency_disable

        Returns:
            Dictionary with run results
        """
        start_time = datetime.now()

        try:
            params = parameters or {}
            action = params.get("action", "status")
            self.logger.info(f"Starting {self.__class__.__name__} run: {action}")

            if action == "status":
                result = {"status": "success", **self.get_rollout_status()}
            elif action == "enable":
                self.enable_feature_flag(
                    params["flag_name"],
                    params.get("rollout_percentage", 100.0),
                    params.get("target_campaigns"),
                )
                result = {"status": "success", "flag": self.get_feature_flag(params["flag_name"]).to_dict()}
            elif action == "disable":
                self.disable_feature_flag(params["flag_name"], params.get("reason"))
                result = {"status": "success", "flag": self.get_feature_flag(params["flag_name"]).to_dict()}
            elif action == "gradual_rollout":
                step = self.gradual_rollout(
                    params["flag_name"],
                    params.get("target_percentage", 100.0),
                    params.get("increment_per_step", 10.0),
                    params.get("wait_hours"),
                )
                result = {"status": "success" if step["success"] else "failed", **step}
            elif action == "emergency_disable":
                self.emergency_disable_all(params.get("reason", "manual"))
                result = {"status": "success", **self.get_rollout_status()}
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
