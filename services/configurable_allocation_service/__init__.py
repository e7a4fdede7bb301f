"""
Configurable Allocation Service.

Thompson Sampling budget allocation with injectable sampling, constraint and
prior strategies.
"""

from .configurable_allocation_service import (
    ConfigurableAllocationService,
    ConfigurableOptimizationResult,
    create_configurable_allocator,
)
from .constraint_strategies import (
    AdvancedConstraintStrategy,
    BasicConstraintStrategy,
    ConstraintArm,
    ConstraintStrategy,
    ConstraintValidationResult,
)
from .prior_strategies import (
    HierarchicalBayesPriors,
    InformativePriors,
    PriorDistribution,
    PriorStrategy,
)
from .sampling_strategies import (
    MonteCarloBayesSampling,
    RejectionSampling,
    SamplingStrategy,
    VariationalBayesSampling,
)

__all__ = [
    "ConfigurableAllocationService",
    "ConfigurableOptimizationResult",
    "create_configurable_allocator",
    "AdvancedConstraintStrategy",
    "BasicConstraintStrategy",
    "ConstraintArm",
    "ConstraintStrategy",
    "ConstraintValidationResult",
    "HierarchicalBayesPriors",
    "InformativePriors",
    "PriorDistribution",
    "PriorStrategy",
    "MonteCarloBayesSampling",
    "RejectionSampling",
    "SamplingStrategy",
    "VariationalBayesSampling",
]

# Service metadata
SERVICE_NAME = "ConfigurableAllocationService"
SERVICE_DESCRIPTION = "Strategy-injected Thompson Sampling budget allocation"
SERVICE_VERSION = "1.0.0"
SUPPORTED_STRATEGIES = {
    "sampling": ["monte_carlo", "variational", "rejection"],
    "constraint": ["basic", "advanced"],
    "prior": ["hierarchical", "informative"],
}
