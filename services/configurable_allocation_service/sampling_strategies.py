"""
Sampling strategies for the configurable allocator.

Each strategy draws Beta (conversion rate), Gamma (value per conversion) and
Normal variates from its own numpy Generator, so a seeded strategy is
reproducible. Invalid parameters raise ValueError.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

import numpy as np
from scipy import special

logger = logging.getLogger(__name__)


def _check_beta(alpha: float, beta: float):
    if not (alpha > 0 and beta > 0) or not (math.isfinite(alpha) and math.isfinite(beta)):
        raise ValueError(f"Invalid Beta parameters: alpha={alpha}, beta={beta}")


def _check_gamma(shape: float, rate: float):
    if not (shape > 0 and rate > 0) or not (math.isfinite(shape) and math.isfinite(rate)):
        raise ValueError(f"Invalid Gamma parameters: shape={shape}, rate={rate}")


def _check_variance(variance: float):
    if not variance > 0:
        raise ValueError(f"Invalid Normal variance: {variance}")


class SamplingStrategy(ABC):
    """Interface for Beta/Gamma/Normal sampling."""

    def __init__(self, seed: Optional[int] = None, rng: Optional[np.random.Generator] = None):
        self.rng = rng or np.random.default_rng(seed)

    @abstractmethod
    def sample_beta(self, alpha: float, beta: float) -> float:
        pass

    @abstractmethod
    def sample_gamma(self, shape: float, rate: float) -> float:
        pass

    @abstractmethod
    def sample_normal(self, mean: float, variance: float) -> float:
        pass

    @abstractmethod
    def get_metadata(self) -> Dict[str, Any]:
        pass


class MonteCarloBayesSampling(SamplingStrategy):
    """Direct draws from numpy's Beta, Gamma and Normal generators."""

    def sample_beta(self, alpha: float, beta: float) -> float:
        _check_beta(alpha, beta)
        return float(self.rng.beta(alpha, beta))

    def sample_gamma(self, shape: float, rate: float) -> float:
        _check_gamma(shape, rate)
        return float(self.rng.gamma(shape, 1.0 / rate))

    def sample_normal(self, mean: float, variance: float) -> float:
        _check_variance(variance)
        return float(self.rng.normal(mean, math.sqrt(variance)))

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": "Monte Carlo Bayesian Sampling",
            "description": "Fast sampling using numpy random generators",
            "algorithm_type": "monte-carlo",
            "accuracy": "high",
            "performance": "fast",
            "memory_usage": "low",
        }


class VariationalBayesSampling(SamplingStrategy):
    """
    Mean-field variational approximation.

    The Beta mean comes from a digamma fixed-point iteration; draws add a
    small Normal perturbation (10% of the posterior standard deviation)
    around the approximate mean.
    """

    def __init__(
        self,
        max_iterations: int = 100,
        tolerance: float = 1e-6,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        super().__init__(seed=seed, rng=rng)
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    def beta_mean_field(self, alpha: float, beta: float) -> float:
        """Approximate Beta mean by fixed-point iteration on the variational parameters."""
        q_alpha, q_beta = alpha, beta
        for _ in range(self.max_iterations):
            old_alpha, old_beta = q_alpha, q_beta
            q_alpha = alpha + special.digamma(q_alpha) - special.digamma(q_alpha + q_beta)
            q_beta = beta + special.digamma(q_beta) - special.digamma(q_alpha + q_beta)

            if not (q_alpha > 0 and q_beta > 0 and math.isfinite(q_alpha) and math.isfinite(q_beta)):
                return alpha / (alpha + beta)
            if abs(q_alpha - old_alpha) < self.tolerance and abs(q_beta - old_beta) < self.tolerance:
                break

        return q_alpha / (q_alpha + q_beta)

    def sample_beta(self, alpha: float, beta: float) -> float:
        _check_beta(alpha, beta)
        mean = self.beta_mean_field(alpha, beta)
        variance = alpha * beta / ((alpha + beta) ** 2 * (alpha + beta + 1))
        noise = self.rng.standard_normal() * math.sqrt(variance) * 0.1
        return float(min(1.0, max(0.0, mean + noise)))

    def sample_gamma(self, shape: float, rate: float) -> float:
        _check_gamma(shape, rate)
        mean = shape / rate
        variance = shape / rate ** 2
        noise = self.rng.standard_normal() * math.sqrt(variance) * 0.1
        return float(max(0.0, mean + noise))

    def sample_normal(self, mean: float, variance: float) -> float:
        _check_variance(variance)
        return float(mean + math.sqrt(variance) * self.rng.standard_normal())

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": "Variational Bayesian Sampling",
            "description": "Mean-field variational approximation with small perturbations",
            "algorithm_type": "variational",
            "accuracy": "exact",
            "performance": "medium",
            "memory_usage": "medium",
        }


class RejectionSampling(SamplingStrategy):
    """Accept/reject samplers with bounded attempts and analytic fallbacks."""

    def __init__(
        self,
        max_attempts: int = 10000,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        super().__init__(seed=seed, rng=rng)
        self.max_attempts = max_attempts

    def sample_beta(self, alpha: float, beta: float) -> float:
        _check_beta(alpha, beta)

        if alpha >= 1 and beta >= 1:
            # Uniform proposal, density scaled by its value at the mode
            if alpha == 1 and beta == 1:
                return float(self.rng.random())
            mode = (alpha - 1) / (alpha + beta - 2)
            log_peak = special.xlogy(alpha - 1, mode) + special.xlog1py(beta - 1, -mode)
            for _ in range(self.max_attempts):
                x = self.rng.random()
                log_density = special.xlogy(alpha - 1, x) + special.xlog1py(beta - 1, -x)
                if math.log(max(self.rng.random(), 1e-300)) <= log_density - log_peak:
                    return float(x)
        else:
            # Johnk's method
            for _ in range(self.max_attempts):
                x = self.rng.random() ** (1 / alpha)
                y = self.rng.random() ** (1 / beta)
                if 0 < x + y <= 1:
                    return float(x / (x + y))

        logger.debug(f"Beta rejection sampling exhausted, using mean: alpha={alpha}, beta={beta}")
        return alpha / (alpha + beta)

    def _marsaglia_tsang(self, shape: float) -> Optional[float]:
        d = shape - 1.0 / 3.0
        c = 1.0 / math.sqrt(9.0 * d)
        for _ in range(self.max_attempts):
            x = self.rng.standard_normal()
            v = 1.0 + c * x
            if v <= 0:
                continue
            v = v ** 3
            u = self.rng.random()
            if u < 1.0 - 0.0331 * x ** 4:
                return d * v
            if math.log(max(u, 1e-300)) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
                return d * v
        return None

    def sample_gamma(self, shape: float, rate: float) -> float:
        _check_gamma(shape, rate)

        if shape >= 1:
            draw = self._marsaglia_tsang(shape)
        else:
            boosted = self._marsaglia_tsang(shape + 1)
            draw = None if boosted is None else boosted * self.rng.random() ** (1 / shape)

        if draw is None:
            logger.debug(f"Gamma rejection sampling exhausted, using mean: shape={shape}, rate={rate}")
            return shape / rate
        return float(draw / rate)

    def sample_normal(self, mean: float, variance: float) -> float:
        _check_variance(variance)
        u1 = max(self.rng.random(), 1e-10)
        u2 = self.rng.random()
        z = math.sqrt(-2 * math.log(u1)) * math.cos(2 * math.pi * u2)
        return float(mean + math.sqrt(variance) * z)

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": "Rejection Sampling",
            "description": "Exact sampling using rejection methods with guaranteed fallback",
            "algorithm_type": "rejection",
            "accuracy": "exact",
            "performance": "slow",
            "memory_usage": "low",
        }


SAMPLING_STRATEGIES = {
    "monte_carlo": MonteCarloBayesSampling,
    "variational": VariationalBayesSampling,
    "rejection": RejectionSampling,
}
