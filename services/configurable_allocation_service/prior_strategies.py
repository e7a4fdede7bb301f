"""
Prior strategies for the configurable allocator.

Performance history is a pandas DataFrame with one row per arm and period:
arm_id, category, timestamp, clicks, conversions, conversion_value, cost.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Any, List, Optional

import pandas as pd

from services.thompson_sampling_service.models import Arm

logger = logging.getLogger(__name__)

HISTORY_COLUMNS = [
    "arm_id",
    "category",
    "timestamp",
    "clicks",
    "conversions",
    "conversion_value",
    "cost",
]

DEFAULT_CATEGORY = "default"


@dataclass
class PriorDistribution:
    arm_id: str
    cvr_alpha: float
    cvr_beta: float
    cvr_confidence: float
    value_shape: float
    value_rate: float
    value_confidence: float
    sample_size: float
    last_updated: str
    source: str
    reliability: float
    category: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def empty_history() -> pd.DataFrame:
    return pd.DataFrame(columns=HISTORY_COLUMNS)


def normalize_history(history: Optional[pd.DataFrame], arms: Optional[List[Arm]] = None) -> pd.DataFrame:
    """Fill missing columns and categories so strategies can group safely."""
    if history is None or len(history) == 0:
        return empty_history()

    df = history.copy()
    for column in ("clicks", "conversions", "conversion_value", "cost"):
        if column not in df.columns:
            df[column] = 0.0
        df[column] = pd.to_numeric(df[column], errors="coerce").fillna(0.0)

    categories = {arm.id: arm.category for arm in arms or [] if arm.category}
    if "category" not in df.columns:
        df["category"] = None
    df["category"] = [
        cat if isinstance(cat, str) and cat else categories.get(arm_id, DEFAULT_CATEGORY)
        for arm_id, cat in zip(df["arm_id"], df["category"])
    ]
    if "timestamp" not in df.columns:
        df["timestamp"] = pd.Timestamp.now()
    df["timestamp"] = pd.to_datetime(df["timestamp"])
    return df


def sample_reliability(sample_size: float) -> float:
    return min(1.0, math.log(sample_size + 1) / math.log(1000))


def sample_confidence(sample_size: float) -> float:
    return min(0.95, sample_size / (sample_size + 100))


class PriorStrategy(ABC):
    """Interface for computing and updating per-arm priors."""

    @abstractmethod
    def compute_priors(self, arms: List[Arm], history: pd.DataFrame) -> Dict[str, PriorDistribution]:
        pass

    @abstractmethod
    def update_priors(
        self, priors: Dict[str, PriorDistribution], performance: pd.DataFrame
    ) -> Dict[str, PriorDistribution]:
        pass

    @abstractmethod
    def get_metadata(self) -> Dict[str, Any]:
        pass


class HierarchicalBayesPriors(PriorStrategy):
    """
    Empirical Bayes priors shared across arms of the same category.

    Category hyperpriors come from the method of moments over per-period
    conversion rates and values; each arm's prior shrinks its own history
    toward its category in proportion to the category's sample size.
    """

    def __init__(self, min_sample_size: int = 100, regularization_strength: float = 0.1):
        self.min_sample_size = min_sample_size
        self.regularization_strength = regularization_strength

    @staticmethod
    def _variance(values: pd.Series) -> float:
        if len(values) < 2:
            return 0.01
        return float(values.var(ddof=1))

    def compute_category_hyperpriors(self, history: pd.DataFrame) -> Dict[str, Dict[str, float]]:
        hyperpriors = {}
        for category, rows in history.groupby("category"):
            total_clicks = rows["clicks"].sum()
            total_conversions = rows["conversions"].sum()
            total_value = rows["conversion_value"].sum()

            with_clicks = rows[rows["clicks"] > 0]
            rates = with_clicks["conversions"] / with_clicks["clicks"]
            with_conversions = rows[rows["conversions"] > 0]
            values = with_conversions["conversion_value"] / with_conversions["conversions"]

            mean_cr = total_conversions / max(1.0, total_clicks)
            var_cr = max(self._variance(rates), 0.0001)
            strength = mean_cr * (1 - mean_cr) / var_cr - 1

            avg_value = total_value / max(1.0, total_conversions)
            var_value = max(self._variance(values), 1.0)

            hyperpriors[category] = {
                "alpha": max(1.0, mean_cr * strength),
                "beta": max(1.0, (1 - mean_cr) * strength),
                "shape": max(1.0, avg_value * avg_value / var_value),
                "rate": max(0.1, avg_value / var_value),
                "sample_size": float(total_clicks),
                "reliability": sample_reliability(total_clicks),
            }
        return hyperpriors

    def _weak_prior(self, arm: Arm, hyperprior: Optional[Dict[str, float]], now: str) -> PriorDistribution:
        if hyperprior is not None:
            return PriorDistribution(
                arm_id=arm.id,
                cvr_alpha=hyperprior["alpha"],
                cvr_beta=hyperprior["beta"],
                cvr_confidence=0.1,
                value_shape=hyperprior["shape"],
                value_rate=hyperprior["rate"],
                value_confidence=0.1,
                sample_size=0,
                last_updated=now,
                source="hierarchical",
                reliability=0.1,
                category=arm.category,
            )
        # Roughly 5% conversion rate and $100 per conversion
        return PriorDistribution(
            arm_id=arm.id,
            cvr_alpha=1.0,
            cvr_beta=19.0,
            cvr_confidence=0.05,
            value_shape=2.0,
            value_rate=0.02,
            value_confidence=0.05,
            sample_size=0,
            last_updated=now,
            source="informative",
            reliability=0.05,
            category=arm.category,
        )

    def compute_priors(self, arms: List[Arm], history: pd.DataFrame) -> Dict[str, PriorDistribution]:
        history = normalize_history(history, arms)
        hyperpriors = self.compute_category_hyperpriors(history) if len(history) else {}
        now = datetime.now().isoformat()
        priors = {}

        for arm in arms:
            rows = history[history["arm_id"] == arm.id]
            category = rows["category"].iloc[0] if len(rows) else (arm.category or DEFAULT_CATEGORY)
            hyperprior = hyperpriors.get(category)

            if len(rows) == 0 or hyperprior is None:
                priors[arm.id] = self._weak_prior(arm, hyperprior, now)
                continue

            clicks = float(rows["clicks"].sum())
            conversions = float(rows["conversions"].sum())
            value = float(rows["conversion_value"].sum())

            shrinkage = hyperprior["sample_size"] / max(clicks + hyperprior["sample_size"], 1e-9)
            category_cr = hyperprior["alpha"] / (hyperprior["alpha"] + hyperprior["beta"])
            arm_cr = conversions / max(1.0, clicks)
            posterior_cr = shrinkage * category_cr + (1 - shrinkage) * arm_cr

            effective_n = clicks + hyperprior["sample_size"] * self.regularization_strength
            alpha = posterior_cr * effective_n + hyperprior["alpha"]
            beta = (1 - posterior_cr) * effective_n + hyperprior["beta"]

            category_value = hyperprior["shape"] / hyperprior["rate"]
            arm_value = value / max(1.0, conversions)
            posterior_value = shrinkage * category_value + (1 - shrinkage) * arm_value
            shape = conversions + hyperprior["shape"]
            rate = hyperprior["rate"] + (conversions / posterior_value if posterior_value > 0 else 0.0)

            priors[arm.id] = PriorDistribution(
                arm_id=arm.id,
                cvr_alpha=max(1.0, alpha),
                cvr_beta=max(1.0, beta),
                cvr_confidence=sample_confidence(clicks),
                value_shape=max(1.0, shape),
                value_rate=max(0.1, rate),
                value_confidence=sample_confidence(conversions),
                sample_size=clicks,
                last_updated=now,
                source="hierarchical",
                reliability=sample_reliability(clicks),
                category=category,
            )

        return priors

    def update_priors(
        self, priors: Dict[str, PriorDistribution], performance: pd.DataFrame
    ) -> Dict[str, PriorDistribution]:
        updated = {arm_id: PriorDistribution(**prior.to_dict()) for arm_id, prior in priors.items()}
        performance = normalize_history(performance)

        for row in performance.itertuples(index=False):
            prior = updated.get(row.arm_id)
            if prior is None:
                continue

            if row.clicks > 0:
                prior.cvr_alpha += row.conversions
                prior.cvr_beta += row.clicks - row.conversions
            if row.conversions > 0 and row.conversion_value > 0:
                avg_value = row.conversion_value / row.conversions
                prior.value_shape += row.conversions
                prior.value_rate += row.conversions / avg_value

            prior.sample_size += row.clicks
            prior.last_updated = pd.Timestamp(row.timestamp).isoformat()
            prior.reliability = sample_reliability(prior.sample_size)

        return updated

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": "Hierarchical Bayesian Priors",
            "description": "Empirical Bayes approach sharing information across similar arms",
            "approach": "hierarchical",
            "data_requirements": "moderate",
            "accuracy": "high",
            "adaptability": "dynamic",
        }


DEFAULT_DOMAIN_KNOWLEDGE = {
    "search_ads": {
        "conversion_rate": 0.05,
        "conversion_rate_variance": 0.001,
        "avg_value": 150.0,
        "avg_value_variance": 2500.0,
        "confidence": 0.7,
        "trust": 0.8,
        "effective_sample_size": 200,
    },
    "display_ads": {
        "conversion_rate": 0.02,
        "conversion_rate_variance": 0.0005,
        "avg_value": 100.0,
        "avg_value_variance": 1600.0,
        "confidence": 0.6,
        "trust": 0.7,
        "effective_sample_size": 150,
    },
    "shopping_ads": {
        "conversion_rate": 0.08,
        "conversion_rate_variance": 0.002,
        "avg_value": 200.0,
        "avg_value_variance": 4900.0,
        "confidence": 0.8,
        "trust": 0.9,
        "effective_sample_size": 300,
    },
}

DEFAULT_DOMAIN_PRIOR = {
    "conversion_rate": 0.03,
    "conversion_rate_variance": 0.001,
    "avg_value": 120.0,
    "avg_value_variance": 2000.0,
    "confidence": 0.5,
    "trust": 0.5,
    "effective_sample_size": 100,
}


def budget_tier(budget: Optional[float]) -> str:
    budget = budget or 0
    if budget < 100:
        return "low"
    if budget < 1000:
        return "medium"
    return "high"


class InformativePriors(PriorStrategy):
    """Priors from domain knowledge per ad category, adjusted for budget tier and age."""

    def __init__(self, domain_knowledge: Optional[Dict[str, Dict[str, float]]] = None):
        self.domain_knowledge = domain_knowledge or DEFAULT_DOMAIN_KNOWLEDGE

    def domain_prior(self, category: Optional[str]) -> Dict[str, float]:
        if not category:
            return DEFAULT_DOMAIN_PRIOR
        if category in self.domain_knowledge:
            return self.domain_knowledge[category]
        return self.domain_knowledge.get(f"{category}_ads", DEFAULT_DOMAIN_PRIOR)

    def compute_priors(self, arms: List[Arm], history: pd.DataFrame) -> Dict[str, PriorDistribution]:
        now = datetime.now().isoformat()
        priors = {}

        for arm in arms:
            domain = self.domain_prior(arm.category)
            tier = budget_tier(arm.current_daily_budget)
            budget_multiplier = {"high": 1.2, "low": 0.8}.get(tier, 1.0)
            age = arm.days_since_launch if arm.days_since_launch is not None else 30
            age_multiplier = min(1.5, 1 + age / 365)

            cr = min(0.99, domain["conversion_rate"] * budget_multiplier * age_multiplier)
            avg_value = domain["avg_value"] * budget_multiplier

            strength = cr * (1 - cr) / domain["conversion_rate_variance"] - 1
            shape = avg_value * avg_value / domain["avg_value_variance"]
            rate = avg_value / domain["avg_value_variance"]

            priors[arm.id] = PriorDistribution(
                arm_id=arm.id,
                cvr_alpha=max(1.0, cr * strength),
                cvr_beta=max(1.0, (1 - cr) * strength),
                cvr_confidence=domain["confidence"],
                value_shape=max(1.0, shape),
                value_rate=max(0.01, rate),
                value_confidence=domain["confidence"],
                sample_size=round(domain["effective_sample_size"]),
                last_updated=now,
                source="informative",
                reliability=domain["trust"],
                category=arm.category,
            )

        return priors

    def update_priors(
        self, priors: Dict[str, PriorDistribution], performance: pd.DataFrame
    ) -> Dict[str, PriorDistribution]:
        """Down-weight new evidence by the category's trust in the domain prior."""
        updated = {arm_id: PriorDistribution(**prior.to_dict()) for arm_id, prior in priors.items()}
        performance = normalize_history(performance)

        for row in performance.itertuples(index=False):
            prior = updated.get(row.arm_id)
            if prior is None:
                continue

            trust = self.domain_prior(prior.category)["trust"]
            weight = (1 - trust) * min(1.0, row.clicks / 1000)

            if row.clicks > 0:
                prior.cvr_alpha += weight * row.conversions
                prior.cvr_beta += weight * (row.clicks - row.conversions)
            if row.conversions > 0 and row.conversion_value > 0:
                avg_value = row.conversion_value / row.conversions
                prior.value_shape += weight * row.conversions
                prior.value_rate += weight * row.conversions / avg_value

            prior.sample_size += row.clicks
            prior.last_updated = pd.Timestamp(row.timestamp).isoformat()

        return updated

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "name": "Informative Domain Priors",
            "description": "Domain-specific knowledge and expert judgment based priors",
            "approach": "informative",
            "data_requirements": "minimal",
            "accuracy": "medium",
            "adaptability": "moderate",
        }


PRIOR_STRATEGIES = {
    "hierarchical": HierarchicalBayesPriors,
    "informative": InformativePriors,
}
