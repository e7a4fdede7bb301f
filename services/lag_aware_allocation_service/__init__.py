"""
Lag-Aware Allocation Service.

Thompson Sampling budget allocation with conversion-lag compensation,
hierarchical priors and recency weighting, each behind a feature flag.
"""

from .lag_aware_allocation_service import LagAwareAllocationService

__all__ = ["LagAwareAllocationService"]

# Service metadata
SERVICE_NAME = "LagAwareAllocationService"
SERVICE_DESCRIPTION = "Lag-aware Thompson Sampling budget allocation with base-allocator fallback"
SERVICE_VERSION = "1.0.0"
SUPPORTED_ENHANCEMENTS = [
    "lag_aware_posterior_updates",
    "hierarchical_empirical_bayes",
    "recency_lag_adjusted_stats",
]
