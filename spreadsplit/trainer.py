"""
Estimator training: fit the linear split model to oracle-labeled examples
with full-batch gradient descent.
"""

import logging
import math
from typing import Iterable

import numpy as np

from .config import SplitConfig
from .dataset import TrainingExample
from .model import TERM_NAMES, ModelRecord, feature_terms

logger = logging.getLogger(__name__)


class InsufficientDataError(ValueError):
    """Raised when too few valid examples are available to train."""

    def __init__(self, valid_count: int, total_count: int, required: int) -> None:
        self.valid_count = valid_count
        self.total_count = total_count
        self.required = required
        super().__init__(
            f"Need at least {required} valid examples to train. "
            f"Have {valid_count} valid out of {total_count} total."
        )


def design_matrix(examples: list[TrainingExample]) -> np.ndarray:
    """Centered feature terms, one row per example, columns in TERM_NAMES order."""
    rows = [list(feature_terms(e.features).values()) for e in examples]
    return np.array(rows, dtype=np.float64).reshape(len(examples), len(TERM_NAMES))


def train_model(
    examples: Iterable[TrainingExample],
    config: SplitConfig | None = None,
    rng: np.random.Generator | None = None,
) -> ModelRecord:
    """Train a new model record.

    Args:
        examples: Labeled examples; invalid ones are excluded
        config: Learning rate, epochs, clipping and split settings
        rng: Random generator for the fit/validation shuffle. Pass a seeded
            generator for reproducible runs.

    Returns:
        A new ModelRecord (not yet stored or activated)

    Raises:
        InsufficientDataError: If fewer than ``config.min_training_examples``
            valid examples remain
    """
    config = config or SplitConfig()
    examples = list(examples)
    valid = [e for e in examples if e.is_valid()]

    if len(valid) < len(examples):
        logger.warning(f"Excluded {len(examples) - len(valid)} invalid training examples")

    if len(valid) < config.min_training_examples:
        raise InsufficientDataError(len(valid), len(examples), config.min_training_examples)

    rng = rng if rng is not None else np.random.default_rng()
    shuffled = [valid[i] for i in rng.permutation(len(valid))]

    # Epsilon keeps 10 * 0.8 from flooring to 7
    train_size = max(1, math.floor(len(shuffled) * (1 - config.validation_fraction) + 1e-9))
    train = shuffled[:train_size]
    validation = shuffled[train_size:]

    # The median label is a robust start for the bias; coefficients start at zero
    labels = sorted(float(e.label_position) for e in valid)
    bias = labels[len(labels) // 2]
    weights = np.zeros(len(TERM_NAMES))

    X = design_matrix(train)
    y = np.array([float(e.label_position) for e in train])
    clip = config.gradient_clip
    lr = config.learning_rate

    for epoch in range(config.epochs):
        error = bias + X @ weights - y

        # Clip each example's contribution so one outlier cannot dominate
        grad_bias = np.clip(error, -clip, clip).mean()
        grad_weights = np.clip(error[:, None] * X, -clip, clip).mean(axis=0)

        bias -= lr * grad_bias
        weights -= lr * grad_weights

        if logger.isEnabledFor(logging.DEBUG) and (epoch + 1) % 100 == 0:
            logger.debug(f"Epoch {epoch + 1}/{config.epochs}: train MSE {np.mean(error ** 2):.2f}")

    if validation:
        Xv = design_matrix(validation)
        yv = np.array([float(e.label_position) for e in validation])
        validation_mse = float(np.mean((bias + Xv @ weights - yv) ** 2))
    else:
        validation_mse = 0.0

    record = ModelRecord(
        weights={"bias": float(bias), **dict(zip(TERM_NAMES, weights.tolist()))},
        training_size=len(train),
        validation_mse=validation_mse,
    )

    logger.info(
        f"Trained model {record.model_id} on {len(train)} examples "
        f"({len(validation)} held out), validation RMSE {record.validation_rmse:.1f}"
    )
    return record
