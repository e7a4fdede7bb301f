"""
Thompson Sampling Service for daily budget allocation.

Samples Beta/Gamma posteriors per arm and turns the sampled ROAS into
bounded budget proposals that sum to the total budget.
"""

from .models import (
    Arm,
    ArmMetrics,
    BudgetConstraints,
    LagAwareConstraints,
    BayesianPosterior,
    LagProfile,
    HierarchicalPrior,
    AllocationResult,
    AllocationOutcome,
    AllocationErrorKind,
)
from .thompson_sampling_service import ThompsonSamplingService

__all__ = [
    "ThompsonSamplingService",
    "Arm",
    "ArmMetrics",
    "BudgetConstraints",
    "LagAwareConstraints",
    "BayesianPosterior",
    "LagProfile",
    "HierarchicalPrior",
    "AllocationResult",
    "AllocationOutcome",
    "AllocationErrorKind",
]

# Service metadata
SERVICE_NAME = "ThompsonSamplingService"
SERVICE_DESCRIPTION = "Thompson Sampling budget allocation across campaigns and ad groups"
SERVICE_VERSION = "1.0.0"
SUPPORTED_ACTIONS = ["allocate_budget", "multi_objective_score"]
