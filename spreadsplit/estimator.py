"""
Fast split-position inference from a trained model. No I/O, no remote calls.
"""

import math
from dataclasses import dataclass

from .config import SplitConfig
from .features import FeatureVector
from .model import ModelRecord, feature_terms

# Per-term bound; thirteen terms at this size still sum to a finite float
MAX_CONTRIBUTION = 1e300


@dataclass
class Prediction:
    """A split position together with the terms that produced it."""

    position: int  # Clamped, 0-1000 scale
    raw_score: float  # Linear score before clamping
    contributions: dict[str, float]  # weight * term, per coefficient
    clamped: bool = False


def _contribution(weight: float, value: float) -> float:
    if weight == 0.0:
        return 0.0
    product = weight * value
    if math.isnan(product):
        return product
    return min(max(product, -MAX_CONTRIBUTION), MAX_CONTRIBUTION)


def predict_with_details(
    features: FeatureVector,
    model: ModelRecord,
    config: SplitConfig | None = None,
) -> Prediction:
    """Predict a split position and report each term's contribution.

    Raises:
        ValueError: If the features produce a non-numeric score
    """
    config = config or SplitConfig()

    contributions = {
        name: _contribution(model.weight(name), value) for name, value in feature_terms(features).items()
    }
    raw = model.bias + math.fsum(contributions.values())
    if math.isnan(raw):
        raise ValueError("Feature vector produced a NaN split score")

    # Positions near the image edges are never right for a real spread
    bounded = min(max(raw, config.prediction_min), config.prediction_max)
    return Prediction(
        position=int(round(bounded)),
        raw_score=raw,
        contributions=contributions,
        clamped=bounded != raw,
    )


def predict(
    features: FeatureVector,
    model: ModelRecord,
    config: SplitConfig | None = None,
) -> int:
    """Predict the split position (0-1000 scale) clamped to the safe range."""
    return predict_with_details(features, model, config).position
