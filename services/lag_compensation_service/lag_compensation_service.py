"""
Lag Compensation Service for the Budget Optimization System

Conversions are reported with a delay, so recent data understates true
conversion counts. This service keeps completion curves (the share of
eventual conversions reported N days after the click) per action, campaign
and globally, and inflates observed conversions by the matching curve point.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Optional, List

import numpy as np

from services.base_service import BaseService
from services.optimization_store import LAG_PROFILES
from services.thompson_sampling_service.models import Arm, LagProfile

logger = logging.getLogger(__name__)

SCOPE_TYPES = ["action", "campaign", "global"]
MAX_LAG_DAYS = 90
AVERAGE_DATA_AGE_DAYS = 15


@dataclass
class LagAdjustment:
    """Lag-inflated conversion counts for one arm."""

    adjusted_successes: float
    adjusted_trials: float
    uncertainty_penalty: float
    profile: LagProfile


def validate_monotonic(profiles: List[LagProfile]) -> bool:
    """True when completion_cdf never decreases with days_since within each scope."""
    by_scope: Dict[tuple, List[LagProfile]] = {}
    for profile in profiles:
        by_scope.setdefault((profile.scope_type, profile.scope_id), []).append(profile)

    for points in by_scope.values():
        points = sorted(points, key=lambda p: p.days_since)
        for previous, current in zip(points, points[1:]):
            if current.completion_cdf < previous.completion_cdf:
                return False
    return True


class LagCompensationService(BaseService):
    """Service that stores conversion-lag curves and applies them to arm metrics."""

    def __init__(
        self,
        store=None,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(store=store, config=config, logger=logger)

        self.default_threshold = self.config.get("lag_confidence_threshold", 0.6)
        self.default_min_lag_days = self.config.get("min_lag_days", 1)
        self.default_max_lag_days = self.config.get("max_lag_days", MAX_LAG_DAYS)
        self.min_sample_size = self.config.get("min_sample_size", 30)

        self.logger.info("LagCompensationService initialized")

    def get_lag_profiles(self, scope_type: Optional[str] = None, scope_id: Optional[str] = None) -> List[LagProfile]:
        """Stored profile points, optionally for one scope, ordered by days_since."""
        profiles = [LagProfile.from_dict(p) for p in self.store.snapshot(LAG_PROFILES)]
        if scope_type is not None:
            profiles = [p for p in profiles if p.scope_type == scope_type]
        if scope_id is not None:
            profiles = [p for p in profiles if p.scope_id == str(scope_id)]
        return sorted(profiles, key=lambda p: (p.scope_type, p.scope_id, p.days_since))

    def find_profile(
        self,
        arm: Arm,
        threshold: Optional[float] = None,
        min_lag_days: Optional[int] = None,
        max_lag_days: Optional[int] = None,
    ) -> Optional[LagProfile]:
        """
        Qualifying curve point for an arm.

        Scopes are tried from most to least specific: action (arm id),
        campaign, global. A point qualifies when its confidence reaches the
        threshold and its days_since lies within [min_lag_days, max_lag_days].
        With a known days_since_launch the latest qualifying point not after
        it is used, otherwise the earliest qualifying point.
        """
        threshold = self.default_threshold if threshold is None else threshold
        min_lag_days = self.default_min_lag_days if min_lag_days is None else min_lag_days
        max_lag_days = self.default_max_lag_days if max_lag_days is None else max_lag_days

        all_profiles = self.get_lag_profiles()
        scopes = [("action", arm.id), ("campaign", arm.campaign_scope_id), ("global", None)]

        for scope_type, scope_id in scopes:
            points = [
                p
                for p in all_profiles
                if p.scope_type == scope_type
                and (scope_id is None or p.scope_id == str(scope_id))
                and p.confidence_score >= threshold
                and min_lag_days <= p.days_since <= max_lag_days
            ]
            if arm.days_since_launch is not None:
                points = [p for p in points if p.days_since <= arm.days_since_launch]
                if points:
                    return points[-1]
            elif points:
                return points[0]

        return None

    def calculate_lag_adjustment(
        self,
        arm: Arm,
        threshold: Optional[float] = None,
        min_lag_days: Optional[int] = None,
        max_lag_days: Optional[int] = None,
    ) -> Optional[LagAdjustment]:
        """
        Inflate observed conversions by the completion curve.

        Returns:
            LagAdjustment, or None when no qualifying profile exists or the
            curve point is already complete (or empty)
        """
        profile = self.find_profile(arm, threshold, min_lag_days, max_lag_days)
        if profile is None:
            self.logger.debug(f"No qualifying lag profile for arm {arm.id}, using raw stats")
            return None

        completion = profile.completion_cdf
        if not 0 < completion < 1:
            return None

        observed = arm.metrics.conversions
        return LagAdjustment(
            adjusted_successes=observed / completion,
            adjusted_trials=arm.metrics.clicks,
            uncertainty_penalty=(1 - profile.confidence_score) * 0.1,
            profile=profile,
        )

    @staticmethod
    def calculate_recency_weight(half_life_days: float = 14.0) -> float:
        """Exponential decay weight for data of average age 15 days."""
        decay_rate = math.log(2) / half_life_days
        return math.exp(-decay_rate * AVERAGE_DATA_AGE_DAYS)

    def build_lag_profiles(
        self,
        scope_type: str,
        scope_id: str,
        lag_counts: Dict[int, float],
        min_sample_size: Optional[int] = None,
    ) -> List[LagProfile]:
        """
        Learn and store a completion curve from conversions per reporting lag.

        Args:
            scope_type: 'action', 'campaign' or 'global'
            scope_id: Arm id, campaign id or 'global'
            lag_counts: Conversions reported N days after the click, keyed by N
            min_sample_size: Minimum total conversions to build a curve

        Returns:
            The stored curve points (empty when data is insufficient)
        """
        min_sample_size = self.min_sample_size if min_sample_size is None else min_sample_size
        days = sorted(int(d) for d in lag_counts if 0 <= int(d) <= MAX_LAG_DAYS)
        counts = np.array([max(float(lag_counts[d]), 0.0) for d in days])
        total = counts.sum()

        if total < max(min_sample_size, 1):
            self.logger.debug(
                f"Insufficient lag data for {scope_type}/{scope_id}: {total} < {min_sample_size}"
            )
            return []

        cdf = np.maximum.accumulate(np.cumsum(counts) / total)
        confidence = min(0.95, total / (total + 100))
        now = datetime.now().isoformat()

        profiles = [
            LagProfile(
                scope_type=scope_type,
                scope_id=str(scope_id),
                days_since=day,
                completion_cdf=float(min(1.0, value)),
                sample_size=int(total),
                confidence_score=confidence,
                updated_at=now,
            )
            for day, value in zip(days, cdf)
        ]

        self.save_lag_profiles(profiles)
        self.logger.info(f"Built lag profile for {scope_type}/{scope_id} with {len(profiles)} points")
        return profiles

    def save_lag_profiles(self, profiles: List[LagProfile]):
        """
        Replace the stored curves for every scope present in profiles.

        Raises:
            ValueError: If a point is out of range or a curve is not monotonic
        """
        for profile in profiles:
            if profile.scope_type not in SCOPE_TYPES:
                raise ValueError(f"Unknown lag profile scope type: {profile.scope_type}")
            if not 0 <= profile.days_since <= MAX_LAG_DAYS:
                raise ValueError(f"days_since out of range [0, {MAX_LAG_DAYS}]: {profile.days_since}")
            if not 0 <= profile.completion_cdf <= 1:
                raise ValueError(f"completion_cdf out of range [0, 1]: {profile.completion_cdf}")
            if not 0 <= profile.confidence_score <= 1:
                raise ValueError(f"confidence_score out of range [0, 1]: {profile.confidence_score}")

        if not validate_monotonic(profiles):
            raise ValueError("completion_cdf must be non-decreasing in days_since within a scope")

        scopes = {(p.scope_type, p.scope_id) for p in profiles}

        def merge(table):
            kept = [p for p in table if (p["scope_type"], str(p["scope_id"])) not in scopes]
            return kept + [p.to_dict() for p in profiles]

        self.store.update(LAG_PROFILES, merge)

    def run(self, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run the service with the specified parameters.

        Supported actions: build_profiles, get_profiles

        Returns:
            Dictionary with run results
        """
        start_time = datetime.now()

        try:
            params = parameters or {}
            action = params.get("action", "get_profiles")
            self.logger.info(f"Starting {self.__class__.__name__} run: {action}")

            if action == "build_profiles":
                profiles = self.build_lag_profiles(
                    params.get("scope_type", "global"),
                    params.get("scope_id", "global"),
                    {int(k): v for k, v in params.get("lag_counts", {}).items()},
                    params.get("min_sample_size"),
                )
                result = {"status": "success", "profiles": [p.to_dict() for p in profiles]}
            elif action == "get_profiles":
                profiles = self.get_lag_profiles(params.get("scope_type"), params.get("scope_id"))
                result = {"status": "success", "profiles": [p.to_dict() for p in profiles]}
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
