"""
Training examples: labeled feature vectors and their JSON Lines storage.
"""

import json
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .features import FeatureSchemaError, FeatureVector
from .oracle import Confidence, SplitLabel

logger = logging.getLogger(__name__)

SOURCE_ORACLE = "oracle"
SOURCE_USER_SPLIT = "user_split"

# Accepted crops closer to the edges than this are not spread splits
USER_SPLIT_MIN = 100
USER_SPLIT_MAX = 900

# Older manual-split records carry this in place of a confidence level
USER_CONFIDENCE = "user"


class DatasetError(ValueError):
    """Raised when a dataset file cannot be read."""


@dataclass
class TrainingExample:
    """One page's features paired with its ground-truth split."""

    page_id: str
    image_ref: str
    features: FeatureVector | None
    label_position: float  # 0-1000 scale
    label_confidence: Confidence | None  # None when the stored value was unreadable
    label_reasoning: str = ""
    is_two_page_spread: bool = True
    book_id: str | None = None
    source: str = SOURCE_ORACLE
    created_at: datetime | None = field(default_factory=lambda: datetime.now(timezone.utc))
    defect: str | None = None  # Why a stored record cannot be trained on

    @classmethod
    def from_label(
        cls,
        page_id: str,
        image_ref: str,
        features: FeatureVector,
        label: SplitLabel,
        book_id: str | None = None,
    ) -> "TrainingExample":
        """Build an example from an oracle answer."""
        return cls(
            page_id=page_id,
            image_ref=image_ref,
            features=features,
            label_position=label.split_position,
            label_confidence=label.confidence,
            label_reasoning=label.reasoning,
            is_two_page_spread=label.is_two_page_spread,
            book_id=book_id,
        )

    @classmethod
    def from_user_split(
        cls,
        page_id: str,
        image_ref: str,
        features: FeatureVector,
        crop_x_end: int,
        book_id: str | None = None,
    ) -> "TrainingExample":
        """Build an example from a split a person already accepted.

        ``crop_x_end`` is the right edge of the left page's crop on the
        0-1000 scale. Values near the edges are not genuine spread splits.

        Raises:
            ValueError: If crop_x_end is outside (100, 900)
        """
        if not USER_SPLIT_MIN < crop_x_end < USER_SPLIT_MAX:
            raise ValueError(f"crop_x_end must be in ({USER_SPLIT_MIN}, {USER_SPLIT_MAX}), got {crop_x_end}")

        return cls(
            page_id=page_id,
            image_ref=image_ref,
            features=features,
            label_position=crop_x_end,
            label_confidence=Confidence.HIGH,
            label_reasoning="Accepted manual split",
            book_id=book_id,
            source=SOURCE_USER_SPLIT,
        )

    def is_valid(self) -> bool:
        """Whether the example can be used for training.

        Requires features and a finite label inside the split scale.
        """
        if self.defect:
            return False
        if self.features is None or not self.features.is_finite():
            return False
        if isinstance(self.label_position, bool) or not isinstance(self.label_position, (int, float)):
            return False
        return math.isfinite(self.label_position) and 0 <= self.label_position <= 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "page_id": self.page_id,
            "image_ref": self.image_ref,
            "book_id": self.book_id,
            "features": self.features.to_dict() if self.features else None,
            "label_position": self.label_position,
            "label_confidence": self.label_confidence.value if self.label_confidence else None,
            "label_reasoning": self.label_reasoning,
            "is_two_page_spread": self.is_two_page_spread,
            "source": self.source,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> "TrainingExample":
        """Rebuild an example from a stored record.

        Unreadable parts never fail the load. Features that no longer match
        the schema become ``features=None``; a missing label or an unknown
        confidence is noted in ``defect``. Either way the example is
        reported as invalid instead of being dropped unseen.
        """
        page_id = str(record.get("page_id") or "")
        problems = []

        features = None
        raw_features = record.get("features")
        if isinstance(raw_features, dict):
            try:
                features = FeatureVector.from_dict(raw_features)
            except FeatureSchemaError as e:
                logger.warning(f"Example {page_id}: unusable features ({e})")
        elif raw_features is not None:
            logger.warning(f"Example {page_id}: features is not an object")

        label_position = record.get("label_position")
        if label_position is None:
            problems.append("missing label_position")
            label_position = math.nan

        confidence = _parse_confidence(record.get("label_confidence", Confidence.MEDIUM.value))
        if confidence is None:
            problems.append(f"unknown label_confidence {record.get('label_confidence')!r}")

        return cls(
            page_id=page_id,
            image_ref=str(record.get("image_ref") or ""),
            features=features,
            label_position=label_position,
            label_confidence=confidence,
            label_reasoning=str(record.get("label_reasoning") or ""),
            is_two_page_spread=bool(record.get("is_two_page_spread", True)),
            book_id=record.get("book_id"),
            source=record.get("source") or SOURCE_ORACLE,
            created_at=_parse_timestamp(record.get("created_at"), page_id),
            defect="; ".join(problems) or None,
        )


def _parse_confidence(value: Any) -> Confidence | None:
    if isinstance(value, str):
        value = value.strip().lower()
    if value == USER_CONFIDENCE:
        return Confidence.HIGH
    try:
        return Confidence(value)
    except ValueError:
        return None


def _parse_timestamp(value: Any, page_id: str) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning(f"Example {page_id}: unreadable created_at {value!r}")
        return None


def load_examples(path: Path) -> list[TrainingExample]:
    """Read examples from a JSON Lines file.

    Records with unusable fields load as invalid examples.

    Raises:
        DatasetError: If the file is missing or a line is not a JSON object
    """
    path = Path(path)
    if not path.exists():
        raise DatasetError(f"Dataset not found: {path}")

    examples = []
    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise DatasetError(f"{path}:{line_number}: invalid training example ({e})") from e
            if not isinstance(record, dict):
                raise DatasetError(f"{path}:{line_number}: invalid training example (not a JSON object)")

            example = TrainingExample.from_dict(record)
            if example.defect:
                logger.warning(f"{path}:{line_number}: example {example.page_id} is unusable ({example.defect})")
            examples.append(example)

    logger.info(f"Loaded {len(examples)} training examples from {path}")
    return examples


def append_examples(path: Path, examples: Iterable[TrainingExample]) -> int:
    """Append examples to a JSON Lines file, creating it if needed.

    Returns:
        Number of examples written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    count = 0
    with path.open("a", encoding="utf-8") as handle:
        for example in examples:
            handle.write(json.dumps(example.to_dict(), ensure_ascii=False) + "\n")
            count += 1
    return count


def save_examples(path: Path, examples: Iterable[TrainingExample]) -> int:
    """Write examples to a JSON Lines file, replacing its contents."""
    path = Path(path)
    if path.exists():
        path.unlink()
    return append_examples(path, examples)


def summarize_examples(examples: list[TrainingExample]) -> dict[str, Any]:
    """Counts that help judge whether a dataset is ready for training."""
    return {
        "total": len(examples),
        "valid": sum(1 for e in examples if e.is_valid()),
        "by_book": dict(Counter(e.book_id or "unknown" for e in examples).most_common(10)),
        "by_confidence": dict(Counter(e.label_confidence.value if e.label_confidence else "unknown" for e in examples)),
        "by_source": dict(Counter(e.source for e in examples)),
    }
