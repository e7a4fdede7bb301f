"""
Feature Flag Service for gradual rollout of allocator enhancements.
"""

from .feature_flag_service import (
    FeatureFlagService,
    FeatureFlag,
    RolloutConstraints,
    RolloutValidationError,
    rollout_bucket,
    ENHANCEMENT_FLAGS,
    LAG_AWARE_POSTERIOR_UPDATES,
    HIERARCHICAL_EMPIRICAL_BAYES,
    RECENCY_LAG_ADJUSTED_STATS,
    PACING_CONTROLLER_INTEGRATION,
    CONVERSION_LAG_BUCKET_COLLECTION,
)

__all__ = [
    "FeatureFlagService",
    "FeatureFlag",
    "RolloutConstraints",
    "RolloutValidationError",
    "rollout_bucket",
    "ENHANCEMENT_FLAGS",
    "LAG_AWARE_POSTERIOR_UPDATES",
    "HIERARCHICAL_EMPIRICAL_BAYES",
    "RECENCY_LAG_ADJUSTED_STATS",
    "PACING_CONTROLLER_INTEGRATION",
    "CONVERSION_LAG_BUCKET_COLLECTION",
]

# Service metadata
SERVICE_NAME = "FeatureFlagService"
SERVICE_DESCRIPTION = "Percentage rollout and emergency disable for optimizer enhancements"
SERVICE_VERSION = "1.0.0"
