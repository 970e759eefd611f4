"""
Linear split model: shared feature terms, immutable model records and a
directory-backed registry that tracks the active record.
"""

import json
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping

from .features import FEATURE_SCHEMA_VERSION, FeatureVector

logger = logging.getLogger(__name__)


# Each term is centered on the typical spread so that an average page
# contributes nothing and the bias alone predicts it.
FEATURE_TERMS: tuple[tuple[str, Callable[[FeatureVector], float]], ...] = (
    ("center_darkest_idx", lambda f: f.center_darkest_idx - 50),
    ("center_brightest_idx", lambda f: f.center_brightest_idx - 50),
    ("edge_center_diff", lambda f: f.edge_center_diff / 50),
    ("inverted_gutter_offset", lambda f: 1.0 if f.has_inverted_gutter else 0.0),
    ("aspect_ratio_offset", lambda f: f.aspect_ratio - 1.5),
    ("page_position_offset", lambda f: (0.5 if f.page_position is None else f.page_position) - 0.5),
    ("book_size_offset", lambda f: (1 if f.book_size_category is None else f.book_size_category) - 1),
    ("gutter_candidate_weight", lambda f: (f.gutter_candidate - 500) / 100),
    ("text_gap_center_weight", lambda f: (f.text_gap_center - 500) / 100),
    ("ideal_split_from_text_weight", lambda f: (f.ideal_split_from_text - 500) / 100),
    ("left_page_text_end_weight", lambda f: (f.left_page_text_end - 500) / 100),
    ("right_page_text_start_weight", lambda f: (f.right_page_text_start - 500) / 100),
    ("margin_balance_weight", lambda f: (f.left_margin - f.right_margin) / 10),
)

TERM_NAMES = tuple(name for name, _ in FEATURE_TERMS)


class ModelNotFoundError(LookupError):
    """Raised when a model record is not in the registry."""


def feature_terms(features: FeatureVector) -> dict[str, float]:
    """Centered model inputs for one feature vector, in coefficient order."""
    return {name: float(term(features)) for name, term in FEATURE_TERMS}


@dataclass(frozen=True)
class ModelRecord:
    """A trained weight set plus the metadata needed to judge it.

    Records are never modified; retraining produces a new record.
    """

    weights: Mapping[str, float]
    training_size: int
    validation_mse: float
    trained_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    model_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    feature_schema_version: int = FEATURE_SCHEMA_VERSION

    def __post_init__(self) -> None:
        if "bias" not in self.weights:
            raise ValueError("weights must include a bias")
        frozen = MappingProxyType({name: float(value) for name, value in self.weights.items()})
        object.__setattr__(self, "weights", frozen)

    @property
    def bias(self) -> float:
        return self.weights["bias"]

    @property
    def validation_rmse(self) -> float:
        return math.sqrt(self.validation_mse)

    def weight(self, name: str) -> float:
        """Coefficient for a term; records trained before the term existed use 0."""
        return self.weights.get(name, 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "weights": dict(self.weights),
            "training_size": self.training_size,
            "validation_mse": self.validation_mse,
            "trained_at": self.trained_at.isoformat(),
            "feature_schema_version": self.feature_schema_version,
        }

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> "ModelRecord":
        return cls(
            weights=record["weights"],
            training_size=int(record["training_size"]),
            validation_mse=float(record["validation_mse"]),
            trained_at=datetime.fromisoformat(record["trained_at"]),
            model_id=record["model_id"],
            feature_schema_version=int(record.get("feature_schema_version", 1)),
        )


class ModelRegistry:
    """Stores model records as JSON files and tracks which one is active.

    Layout:
        <root>/models/<model_id>.json
        <root>/active.json   ({"model_id": ...})
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def models_dir(self) -> Path:
        return self.root / "models"

    @property
    def active_path(self) -> Path:
        return self.root / "active.json"

    def _record_path(self, model_id: str) -> Path:
        return self.models_dir / f"{model_id}.json"

    def save(self, record: ModelRecord, activate: bool = True) -> Path:
        """Persist a new record, optionally making it the active model."""
        self.models_dir.mkdir(parents=True, exist_ok=True)
        path = self._record_path(record.model_id)
        if path.exists():
            raise FileExistsError(f"Model {record.model_id} already exists; records are immutable")

        path.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
        logger.info(f"Saved model {record.model_id} (RMSE {record.validation_rmse:.1f})")

        if activate:
            self.activate(record.model_id)
        return path

    def load(self, model_id: str) -> ModelRecord:
        path = self._record_path(model_id)
        if not path.exists():
            raise ModelNotFoundError(f"Model not found: {model_id}")
        return ModelRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def list_records(self) -> list[ModelRecord]:
        """All stored records, newest first."""
        if not self.models_dir.exists():
            return []
        records = [
            ModelRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
            for path in self.models_dir.glob("*.json")
        ]
        return sorted(records, key=lambda r: r.trained_at, reverse=True)

    def activate(self, model_id: str) -> None:
        if not self._record_path(model_id).exists():
            raise ModelNotFoundError(f"Model not found: {model_id}")
        self.root.mkdir(parents=True, exist_ok=True)
        self.active_path.write_text(json.dumps({"model_id": model_id}), encoding="utf-8")
        logger.info(f"Activated model {model_id}")

    def active_id(self) -> str | None:
        if not self.active_path.exists():
            return None
        return json.loads(self.active_path.read_text(encoding="utf-8")).get("model_id")

    def active(self) -> ModelRecord | None:
        """The record selected for inference, or None before the first training."""
        model_id = self.active_id()
        if model_id is None:
            return None
        return self.load(model_id)
