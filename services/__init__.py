"""
Budget Optimization System - Services Package

This package contains the services of the Thompson Sampling budget optimizer.
Each service handles one concern: base allocation, hierarchical priors,
conversion-lag compensation, feature flag rollout, lag-aware allocation and
strategy-configurable allocation.
"""

# Common service utilities and definitions
from .base_service import BaseService
from .optimization_store import OptimizationStore

from .thompson_sampling_service import ThompsonSamplingService
from .hierarchical_priors_service import HierarchicalPriorsService
from .lag_compensation_service import LagCompensationService
from .feature_flag_service import FeatureFlagService
from .lag_aware_allocation_service import LagAwareAllocationService
from .configurable_allocation_service import (
    ConfigurableAllocationService,
    create_configurable_allocator,
)

__all__ = [
    "BaseService",
    "OptimizationStore",
    "ThompsonSamplingService",
    "HierarchicalPriorsService",
    "LagCompensationService",
    "FeatureFlagService",
    "LagAwareAllocationService",
    "ConfigurableAllocationService",
    "create_configurable_allocator",
]
