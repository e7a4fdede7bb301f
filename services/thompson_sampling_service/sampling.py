"""
Numerically safe Beta/Gamma sampling primitives.

Draws use inverse-transform sampling: a uniform from the caller's numpy
Generator is mapped through the scipy quantile function. The same seed gives
the same draw, and a larger alpha (or Gamma shape) never yields a smaller
draw for the same uniform.
"""

import logging
import math
from typing import Optional

import numpy as np
from scipy import stats

logger = logging.getLogger(__name__)

MIN_PARAMETER = 0.1
MIN_GAMMA_RATE = 0.01
MAX_PARAMETER = 1e6


def _clamp(value: float, lower: float, upper: float) -> float:
    if value is None or not math.isfinite(value):
        return lower
    return max(lower, min(value, upper))


def beta_mean(alpha: float, beta: float) -> float:
    return alpha / (alpha + beta)


def gamma_mean(shape: float, rate: float) -> float:
    return shape / rate


def is_valid_parameter_set(*values: float) -> bool:
    """True when every value is finite, strictly positive and at most 1e6."""
    for value in values:
        if value is None or not math.isfinite(value):
            return False
        if value <= 0 or value > MAX_PARAMETER:
            return False
    return True


def sample_beta(alpha: float, beta: float, rng: Optional[np.random.Generator] = None) -> float:
    """
    Draw a conversion rate from Beta(alpha, beta).

    Never raises: out-of-range parameters are clamped and a failed or
    out-of-range draw falls back to the analytic mean.
    """
    rng = rng or np.random.default_rng()
    safe_alpha = _clamp(alpha, MIN_PARAMETER, MAX_PARAMETER)
    safe_beta = _clamp(beta, MIN_PARAMETER, MAX_PARAMETER)
    u = rng.random()

    try:
        result = float(stats.beta.ppf(u, safe_alpha, safe_beta))
    except (ValueError, FloatingPointError, OverflowError) as e:
        logger.debug(f"Beta sampling failed, using mean: alpha={alpha}, beta={beta}: {str(e)}")
        return beta_mean(safe_alpha, safe_beta)

    if not math.isfinite(result) or result < 0 or result > 1:
        logger.debug(f"Beta draw out of range ({result}), using mean: alpha={alpha}, beta={beta}")
        return beta_mean(safe_alpha, safe_beta)

    return result


def sample_gamma(shape: float, rate: float, rng: Optional[np.random.Generator] = None) -> float:
    """
    Draw a value per conversion from Gamma(shape, rate).

    Never raises: out-of-range parameters are clamped and a failed or
    non-positive draw falls back to the analytic mean.
    """
    rng = rng or np.random.default_rng()
    safe_shape = _clamp(shape, MIN_PARAMETER, MAX_PARAMETER)
    safe_rate = _clamp(rate, MIN_GAMMA_RATE, MAX_PARAMETER)
    u = rng.random()

    try:
        result = float(stats.gamma.ppf(u, safe_shape, scale=1.0 / safe_rate))
    except (ValueError, FloatingPointError, OverflowError) as e:
        logger.debug(f"Gamma sampling failed, using mean: shape={shape}, rate={rate}: {str(e)}")
        return gamma_mean(safe_shape, safe_rate)

    if not math.isfinite(result) or result <= 0:
        logger.debug(f"Gamma draw out of range ({result}), using mean: shape={shape}, rate={rate}")
        return gamma_mean(safe_shape, safe_rate)

    return result


def beta_quantile(alpha: float, beta: float, p: float) -> float:
    """Beta quantile clipped to [0, 1]; falls back to the mean on bad input."""
    safe_alpha = _clamp(alpha, MIN_PARAMETER, MAX_PARAMETER)
    safe_beta = _clamp(beta, MIN_PARAMETER, MAX_PARAMETER)
    value = float(stats.beta.ppf(p, safe_alpha, safe_beta))
    if not math.isfinite(value):
        return beta_mean(safe_alpha, safe_beta)
    return max(0.0, min(1.0, value))
