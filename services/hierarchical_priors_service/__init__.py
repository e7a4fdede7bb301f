"""
Hierarchical Priors Service for cross-campaign learning.

Learns global, campaign and action level empirical-Bayes priors from the
measurement log so new arms start from what similar arms have shown.
"""

from .hierarchical_priors_service import (
    HierarchicalPriorsService,
    GLOBAL,
    CAMPAIGN,
    ACTION,
    CVR,
    REVENUE,
)

__all__ = [
    "HierarchicalPriorsService",
    "GLOBAL",
    "CAMPAIGN",
    "ACTION",
    "CVR",
    "REVENUE",
]

# Service metadata
SERVICE_NAME = "HierarchicalPriorsService"
SERVICE_DESCRIPTION = "Hierarchical empirical-Bayes priors for conversion rate and revenue"
SERVICE_VERSION = "1.0.0"
SUPPORTED_LEVELS = ["global", "campaign", "action"]
SUPPORTED_METRICS = ["cvr", "revenue_per_conversion"]
