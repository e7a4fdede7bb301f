"""
Lag Compensation Service for delayed conversion reporting.
"""

from .lag_compensation_service import LagCompensationService, LagAdjustment, validate_monotonic

__all__ = ["LagCompensationService", "LagAdjustment", "validate_monotonic"]

# Service metadata
SERVICE_NAME = "LagCompensationService"
SERVICE_DESCRIPTION = "Conversion lag completion curves and lag-adjusted conversion counts"
SERVICE_VERSION = "1.0.0"
SUPPORTED_SCOPES = ["action", "campaign", "global"]
