"""
Hierarchical Priors Service for the Budget Optimization System

Learns empirical-Bayes Beta (conversion rate) and Gamma (revenue per
conversion) priors from the measurement log at three levels:

- global: every measurement in the last 90 days
- campaign: grouped by experiment_id over 90 days, shrunk toward global
- action: grouped by arm_id over 30 days, shrunk toward its campaign (or global)

New and thinly observed arms borrow strength from these priors.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List, Callable

import pandas as pd

from services.base_service import BaseService
from services.optimization_store import HIERARCHICAL_PRIORS
from services.thompson_sampling_service.models import HierarchicalPrior
from services.thompson_sampling_service.sampling import is_valid_parameter_set

logger = logging.getLogger(__name__)

GLOBAL = "global"
CAMPAIGN = "campaign"
ACTION = "action"

CVR = "cvr"
REVENUE = "revenue_per_conversion"


class HierarchicalPriorsService(BaseService):
    """Service that learns and serves hierarchical empirical-Bayes priors."""

    def __init__(
        self,
        store=None,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the HierarchicalPriorsService.

        Args:
            store: OptimizationStore holding the measurement log and prior table
            config: Optional configuration dictionary
            logger: Optional logger instance
            clock: Optional time source, defaults to datetime.now
        """
        super().__init__(store=store, config=config, logger=logger)
        self.clock = clock or datetime.now

        self.global_strength = self.config.get("global_prior_strength", 10)
        self.campaign_strength = self.config.get("campaign_prior_strength", 5)
        self.action_strength = self.config.get("action_prior_strength", self.campaign_strength // 2)

        self.campaign_min_trials = self.config.get("campaign_min_trials", 50)
        self.action_min_trials = self.config.get("action_min_trials", self.campaign_min_trials // 2)

        self.global_window_days = self.config.get("global_window_days", 90)
        self.campaign_window_days = self.config.get("campaign_window_days", 90)
        self.action_window_days = self.config.get("action_window_days", 30)
        self.retention_days = self.config.get("retention_days", 180)

        self.logger.info("HierarchicalPriorsService initialized")

    # Method-of-moments estimators

    @staticmethod
    def learn_beta_prior(successes: float, trials: float, prior_strength: float) -> Optional[Dict[str, float]]:
        """
        Beta prior for conversion rate by method of moments.

        Returns:
            Dictionary of hyperparameters, or None when there is no history
        """
        if trials <= 0:
            return None

        p = successes / trials
        if p <= 0 or p >= 1:
            # Degenerate moments; keep the rate inside (0, 1) by add-one smoothing
            p = (successes + 1) / (trials + 2)

        variance = max(0.001, min(0.25, p * (1 - p) / trials))
        alpha = ((1 - p) / variance - 1 / p) * p * p
        beta = alpha * (1 / p - 1)

        return {
            "alpha_prior": max(1.0, alpha * prior_strength / 100),
            "beta_prior": max(1.0, beta * prior_strength / 100),
            "gamma_shape_prior": 1.0,
            "gamma_rate_prior": 1.0,
            "effective_sample_size": float(trials),
            "confidence_level": min(0.95, trials / (trials + prior_strength)),
        }

    @staticmethod
    def learn_gamma_prior(conversions: float, revenue: float, prior_strength: float) -> Optional[Dict[str, float]]:
        """Gamma prior for revenue per conversion by method of moments."""
        if conversions <= 0 or revenue <= 0:
            return None

        mean = revenue / conversions
        variance = max(mean * mean / conversions, 0.01)
        shape = mean * mean / variance
        rate = mean / variance

        return {
            "alpha_prior": 1.0,
            "beta_prior": 1.0,
            "gamma_shape_prior": max(1.0, shape * prior_strength / 100),
            "gamma_rate_prior": max(0.01, rate * prior_strength / 100),
            "effective_sample_size": float(conversions),
            "confidence_level": min(0.95, conversions / (conversions + prior_strength)),
        }

    @staticmethod
    def shrink(
        local: Dict[str, float], parent: Optional[HierarchicalPrior], n: float, prior_strength: float
    ) -> Dict[str, float]:
        """Blend local hyperparameters toward the parent with weight n / (n + strength)."""
        if parent is None:
            return local

        weight = n / (n + prior_strength)
        parent_values = parent.to_dict()
        blended = dict(local)
        for key in ["alpha_prior", "beta_prior", "gamma_shape_prior", "gamma_rate_prior"]:
            blended[key] = weight * local[key] + (1 - weight) * parent_values[key]
        blended["confidence_level"] = min(
            0.95, weight * local["confidence_level"] + (1 - weight) * parent.confidence_level
        )
        return blended

    # Learning

    def _window(self, days: int) -> pd.DataFrame:
        now = self.clock()
        return self.store.query_measurements(since=now - timedelta(days=days), until=now + timedelta(seconds=1))

    def _build_prior(self, level: str, scope_id: str, metric: str, values: Optional[Dict[str, float]]) -> Optional[HierarchicalPrior]:
        if values is None:
            return None

        prior = HierarchicalPrior(
            level=level,
            scope_id=str(scope_id),
            metric=metric,
            alpha_prior=float(values["alpha_prior"]),
            beta_prior=float(values["beta_prior"]),
            gamma_shape_prior=float(values["gamma_shape_prior"]),
            gamma_rate_prior=float(values["gamma_rate_prior"]),
            effective_sample_size=float(values["effective_sample_size"]),
            confidence_level=float(values["confidence_level"]),
            updated_at=self.clock().isoformat(),
        )

        if not is_valid_parameter_set(*prior.parameters()):
            self.logger.warning(f"Rejected invalid prior {prior.prior_id}: {prior.parameters()}")
            return None
        return prior

    def _learn_scope(
        self,
        level: str,
        scope_id: str,
        successes: float,
        trials: float,
        revenue: float,
        prior_strength: float,
        min_trials: float,
        parent_cvr: Optional[HierarchicalPrior],
        parent_revenue: Optional[HierarchicalPrior],
    ) -> List[HierarchicalPrior]:
        priors = []
        if trials < min_trials:
            return priors

        local_cvr = self.learn_beta_prior(successes, trials, prior_strength)
        if local_cvr is not None:
            cvr = self._build_prior(level, scope_id, CVR, self.shrink(local_cvr, parent_cvr, trials, prior_strength))
            if cvr is not None:
                priors.append(cvr)

        if successes >= min_trials / 5:
            local_revenue = self.learn_gamma_prior(successes, revenue, prior_strength)
            if local_revenue is not None:
                blended = self.shrink(local_revenue, parent_revenue, successes, prior_strength)
                revenue_prior = self._build_prior(level, scope_id, REVENUE, blended)
                if revenue_prior is not None:
                    priors.append(revenue_prior)

        return priors

    def update_all_priors(self) -> Dict[str, int]:
        """
        Relearn every prior from the measurement log and swap in the new table.

        Returns:
            Counts of stored priors per level
        """
        start_time = datetime.now()
        self.logger.info("Starting hierarchical priors update")

        table: Dict[str, Dict[str, Any]] = {}

        # Global
        global_df = self._window(self.global_window_days)
        global_priors = []
        if not global_df.empty:
            global_priors = self._learn_scope(
                GLOBAL,
                GLOBAL,
                global_df["successes"].sum(),
                global_df["trials"].sum(),
                global_df["revenue_total"].sum(),
                self.global_strength,
                0,
                None,
                None,
            )
        else:
            self.logger.debug("No global data available for prior learning")
        for prior in global_priors:
            table[prior.prior_id] = prior.to_dict()

        global_cvr = self._from_table(table, GLOBAL, GLOBAL, CVR)
        global_revenue = self._from_table(table, GLOBAL, GLOBAL, REVENUE)

        # Campaign
        campaign_priors = []
        campaign_df = self._window(self.campaign_window_days)
        if not campaign_df.empty:
            grouped = campaign_df.groupby("experiment_id")[["successes", "trials", "revenue_total"]].sum()
            for campaign_id, row in grouped.iterrows():
                campaign_priors.extend(
                    self._learn_scope(
                        CAMPAIGN,
                        campaign_id,
                        row["successes"],
                        row["trials"],
                        row["revenue_total"],
                        self.campaign_strength,
                        self.campaign_min_trials,
                        global_cvr,
                        global_revenue,
                    )
                )
        for prior in campaign_priors:
            table[prior.prior_id] = prior.to_dict()

        # Action
        action_priors = []
        action_df = self._window(self.action_window_days)
        if not action_df.empty:
            grouped = action_df.groupby(["arm_id", "experiment_id"])[["successes", "trials", "revenue_total"]].sum()
            for (arm_id, campaign_id), row in grouped.iterrows():
                parent_cvr = self._from_table(table, CAMPAIGN, campaign_id, CVR) or global_cvr
                parent_revenue = self._from_table(table, CAMPAIGN, campaign_id, REVENUE) or global_revenue
                action_priors.extend(
                    self._learn_scope(
                        ACTION,
                        arm_id,
                        row["successes"],
                        row["trials"],
                        row["revenue_total"],
                        self.action_strength,
                        self.action_min_trials,
                        parent_cvr,
                        parent_revenue,
                    )
                )
        for prior in action_priors:
            table[prior.prior_id] = prior.to_dict()

        self.store.replace(HIERARCHICAL_PRIORS, table)

        result = {
            "global_priors": len(global_priors),
            "campaign_priors": len(campaign_priors),
            "action_priors": len(action_priors),
        }
        self.logger.info(
            f"Hierarchical priors updated: {result['global_priors']} global, "
            f"{result['campaign_priors']} campaign, {result['action_priors']} action"
        )
        self._track_execution(start_time, True)
        return result

    # Lookup

    @staticmethod
    def _from_table(table: Dict[str, Any], level: str, scope_id: str, metric: str) -> Optional[HierarchicalPrior]:
        data = table.get(f"{level}-{scope_id}-{metric}")
        if data is None:
            return None
        return HierarchicalPrior.from_dict(data)

    def get_prior(self, level: str, scope_id: str, metric: str) -> Optional[HierarchicalPrior]:
        """Get one stored prior, or None."""
        table = self.store.snapshot(HIERARCHICAL_PRIORS)
        prior = self._from_table(table, level, str(scope_id), metric)
        if prior is not None and not is_valid_parameter_set(*prior.parameters()):
            self.logger.warning(f"Ignoring invalid stored prior {prior.prior_id}")
            return None
        return prior

    def get_effective_priors(self, arm_id: str, campaign_id: Optional[str] = None) -> Dict[str, Optional[HierarchicalPrior]]:
        """
        Most specific available priors for an arm.

        Lookup order is action (arm_id), then campaign (campaign_id), then global.

        Returns:
            Dictionary with 'cvr' and 'revenue' priors (either may be None)
        """
        table = self.store.snapshot(HIERARCHICAL_PRIORS)
        scopes = [(ACTION, arm_id)]
        if campaign_id is not None:
            scopes.append((CAMPAIGN, campaign_id))
        scopes.append((GLOBAL, GLOBAL))

        effective = {}
        for key, metric in [("cvr", CVR), ("revenue", REVENUE)]:
            effective[key] = None
            for level, scope_id in scopes:
                prior = self._from_table(table, level, str(scope_id), metric)
                if prior is not None and is_valid_parameter_set(*prior.parameters()):
                    effective[key] = prior
                    break
        return effective

    def get_priors_stats(self) -> Dict[str, Any]:
        """Counts of stored priors per level and the latest update time."""
        table = self.store.snapshot(HIERARCHICAL_PRIORS)
        levels = [entry["level"] for entry in table.values()]
        updated = [entry.get("updated_at") for entry in table.values() if entry.get("updated_at")]
        return {
            "global_priors": levels.count(GLOBAL),
            "campaign_priors": levels.count(CAMPAIGN),
            "action_priors": levels.count(ACTION),
            "last_updated": max(updated) if updated else None,
        }

    def clean_old_priors(self, retention_days: Optional[int] = None) -> int:
        """
        Remove priors not updated within the retention window.

        Returns:
            Number of priors removed
        """
        retention_days = retention_days if retention_days is not None else self.retention_days
        cutoff = self.clock() - timedelta(days=retention_days)
        removed = []

        def prune(table):
            kept = {}
            for prior_id, entry in table.items():
                updated_at = entry.get("updated_at")
                if updated_at and datetime.fromisoformat(updated_at) < cutoff:
                    removed.append(prior_id)
                else:
                    kept[prior_id] = entry
            return kept

        self.store.update(HIERARCHICAL_PRIORS, prune)

        if removed:
            self.logger.info(f"Cleaned {len(removed)} old hierarchical priors")
        return len(removed)

    def run(self, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run the service with the specified parameters.

        Supported actions: update_priors, get_stats, clean_old_priors, get_effective_priors

        Returns:
            Dictionary with run results
        """
        start_time = datetime.now()

        try:
            params = parameters or {}
            action = params.get("action", "update_priors")
            self.logger.info(f"Starting {self.__class__.__name__} run: {action}")

            if action == "update_priors":
                result = {"status": "success", **self.update_all_priors()}
            elif action == "get_stats":
                result = {"status": "success", **self.get_priors_stats()}
            elif action == "clean_old_priors":
                removed = self.clean_old_priors(params.get("retention_days"))
                result = {"status": "success", "removed": removed}
            elif action == "get_effective_priors":
                priors = self.get_effective_priors(params["arm_id"], params.get("campaign_id"))
                result = {
                    "status": "success",
                    "priors": {k: (v.to_dict() if v else None) for k, v in priors.items()},
                }
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
