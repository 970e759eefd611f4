"""
Feature extraction: describe the candidate gutter of a spread as a fixed,
versioned set of named scalars.

Position-like fields share units with the label they help predict: either
percent (0-100) or the split scale (0-1000, where 500 is the image center).
"""

import dataclasses
import logging
import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
from PIL import Image

from .config import SplitConfig
from .profiler import ColumnProfiles, MalformedImageError, prepare_image, profile_columns

logger = logging.getLogger(__name__)

FEATURE_SCHEMA_VERSION = 2

# Fields normalized to percent (0-100)
PERCENT_FIELDS = (
    "center_darkest_idx",
    "center_brightest_idx",
    "left_text_end_idx",
    "right_text_start_idx",
    "text_gap_width",
    "left_margin",
    "right_margin",
)

# Fields on the split scale (0-1000)
SPLIT_SCALE_FIELDS = (
    "gutter_candidate",
    "text_gap_center",
    "left_page_text_start",
    "left_page_text_end",
    "right_page_text_start",
    "right_page_text_end",
    "ideal_split_from_text",
)

OPTIONAL_FIELDS = ("page_position", "book_size_category")


class FeatureSchemaError(ValueError):
    """Raised when a feature record does not match the current schema."""


class GutterType(Enum):
    """Visual form of the binding between the two pages."""

    SHADOW = "shadow"  # Dark band (camera scans)
    GAP = "gap"  # Bright band (flatbed glass), a.k.a. inverted gutter


def book_size_category(page_count: int) -> int:
    """Bucket a book by page count: 0 = small (<100), 1 = medium, 2 = large (300+)."""
    if page_count < 100:
        return 0
    if page_count < 300:
        return 1
    return 2


@dataclass(frozen=True)
class PageContext:
    """Optional position of the page within its book, supplied by the caller."""

    page_number: int | None = None
    total_pages: int | None = None
    book_page_count: int | None = None

    @property
    def page_position(self) -> float | None:
        """Page position normalized to 0 (start) .. 1 (end)."""
        if self.page_number is None or not self.total_pages:
            return None
        return min(1.0, max(0.0, self.page_number / self.total_pages))

    @property
    def book_size_category(self) -> int | None:
        count = self.book_page_count if self.book_page_count is not None else self.total_pages
        if count is None:
            return None
        return book_size_category(count)


@dataclass(frozen=True)
class FeatureVector:
    """Features describing the candidate gutter of one image."""

    # Geometry
    aspect_ratio: float
    width: int
    height: int

    # Central band statistics (idx fields are percent across the band)
    center_darkest_p10: float
    center_darkest_idx: float
    center_brightest_p10: float
    center_brightest_idx: float
    center_avg_p10: float
    center_p10_variance: float

    # Edge contrast
    left_edge_p10: float
    right_edge_p10: float
    edge_center_diff: float  # Positive = center brighter than edges

    # Gutter candidate
    gutter_type: GutterType
    gutter_candidate: float
    gutter_width: int  # Columns inside the gutter band
    predicted_p10: float
    predicted_transitions: int
    predicted_dark_run: float

    # Text boundaries
    left_text_end_idx: float
    right_text_start_idx: float
    text_gap_width: float
    text_gap_center: float
    left_page_text_start: float
    left_page_text_end: float
    right_page_text_start: float
    right_page_text_end: float
    left_margin: float
    right_margin: float
    ideal_split_from_text: float

    # Page context
    page_position: float | None = None
    book_size_category: int | None = None

    @property
    def has_inverted_gutter(self) -> bool:
        return self.gutter_type is GutterType.GAP

    def numeric_values(self) -> dict[str, float]:
        """All numeric fields that are set, keyed by name."""
        values = {}
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if field.name == "gutter_type" or value is None:
                continue
            values[field.name] = float(value)
        return values

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in self.numeric_values().values())

    def to_dict(self) -> dict[str, Any]:
        """Plain record suitable for JSON storage."""
        record = dataclasses.asdict(self)
        record["gutter_type"] = self.gutter_type.value
        record["schema_version"] = FEATURE_SCHEMA_VERSION
        return record

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> "FeatureVector":
        """Rebuild a vector from a plain record.

        Raises:
            FeatureSchemaError: On missing or non-numeric fields, an unknown
                gutter type or a schema version newer than this code
        """
        version = record.get("schema_version", FEATURE_SCHEMA_VERSION)
        if not isinstance(version, int) or version > FEATURE_SCHEMA_VERSION:
            raise FeatureSchemaError(
                f"Unsupported feature schema version {version!r} "
                f"(this build reads up to {FEATURE_SCHEMA_VERSION})"
            )

        values: dict[str, Any] = {}
        missing = []
        for field in dataclasses.fields(cls):
            name = field.name
            value = record.get(name)

            if value is None:
                if name in OPTIONAL_FIELDS:
                    values[name] = None
                else:
                    missing.append(name)
                continue

            if name == "gutter_type":
                try:
                    values[name] = GutterType(value)
                except ValueError:
                    raise FeatureSchemaError(f"Unknown gutter_type {value!r}") from None
                continue

            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise FeatureSchemaError(f"Field {name} must be numeric, got {value!r}")

            if name in ("width", "height", "gutter_width", "predicted_transitions", "book_size_category"):
                value = int(value)
            values[name] = value

        if missing:
            raise FeatureSchemaError(f"Missing feature fields: {', '.join(missing)}")

        return cls(**values)


def _text_columns(transitions: np.ndarray, config: SplitConfig) -> np.ndarray:
    """Flag columns sitting inside a sustained run of text.

    A column counts as text when the majority of the window around it has
    more transitions than the legibility threshold.
    """
    width = len(transitions)
    window = max(config.min_text_window, int(width * config.text_window_fraction))
    is_text = (transitions > config.text_transition_threshold).astype(np.int64)

    cumulative = np.concatenate(([0], np.cumsum(is_text)))
    idx = np.arange(width)
    lo = np.maximum(0, idx - window)
    hi = np.minimum(width - 1, idx + window)
    counts = cumulative[hi + 1] - cumulative[lo]

    return counts > window


def _first(mask: np.ndarray, offset: int, default: int) -> int:
    hits = np.flatnonzero(mask)
    return offset + int(hits[0]) if hits.size else default


def _last(mask: np.ndarray, offset: int, default: int) -> int:
    hits = np.flatnonzero(mask)
    return offset + int(hits[-1]) if hits.size else default


def _text_boundaries(has_text: np.ndarray) -> tuple[int, int, int, int]:
    """Locate the text blocks of both pages.

    Returns:
        (left_start, left_end, right_start, right_end) column indices. Sides
        without text collapse onto the image center (inner edges) or the
        image edges (outer edges).
    """
    width = len(has_text)
    center = width // 2

    left_start = _first(has_text[:center], 0, 0)
    left_end = _last(has_text[left_start:center + 1], left_start, center)
    right_end = _last(has_text[center + 1:], center + 1, width - 1)
    right_start = _first(has_text[center:right_end + 1], center, center)

    return left_start, left_end, right_start, right_end


def extract_features_from_profiles(
    profiles: ColumnProfiles,
    width: int,
    height: int,
    config: SplitConfig | None = None,
    context: PageContext | None = None,
) -> FeatureVector:
    """Derive the feature vector from column profiles.

    Args:
        profiles: One profile per column
        width: Image width (must equal the number of profiles)
        height: Image height
        config: Thresholds; defaults are used when omitted
        context: Optional position of the page within its book

    Returns:
        FeatureVector for the image

    Raises:
        MalformedImageError: If the dimensions do not match the profiles
    """
    config = config or SplitConfig()
    context = context or PageContext()

    if width <= 0 or height <= 0:
        raise MalformedImageError(f"Invalid dimensions {width}x{height}")
    if len(profiles) != width:
        raise MalformedImageError(f"Got {len(profiles)} column profiles for width {width}")

    p10 = profiles.p10

    def percent(px: float) -> float:
        return min(100.0, max(0.0, px / width * 100.0))

    def split_scale(px: float) -> float:
        return min(1000.0, max(0.0, px / width * 1000.0))

    # Central search band, at least one column wide
    start = int(width * config.center_band_start)
    end = int(width * config.center_band_end)
    if end <= start:
        start = min(start, width - 1)
        end = start + 1
    band = p10[start:end]

    darkest = int(np.argmin(band))
    brightest = int(np.argmax(band))

    edge = max(1, int(width * config.edge_fraction))
    left_edge = float(p10[:edge].mean())
    right_edge = float(p10[-edge:].mean())

    center_p10 = float(band[len(band) // 2])
    edge_center_diff = center_p10 - (left_edge + right_edge) / 2

    # One place decides the gutter form; everything downstream reads gutter_type
    if edge_center_diff > config.inversion_threshold:
        gutter_type = GutterType.GAP
        candidate = start + brightest
        in_gutter = band > band[brightest] - config.gutter_width_offset
    else:
        gutter_type = GutterType.SHADOW
        candidate = start + darkest + int(width * config.shadow_offset_fraction)
        in_gutter = band < band[darkest] + config.gutter_width_offset
    candidate = min(candidate, width - 1)

    has_text = _text_columns(profiles.transitions, config)
    left_start, left_end, right_start, right_end = _text_boundaries(has_text)

    gap_center = (left_end + right_start) / 2
    left_margin = left_start
    right_margin = (width - 1) - right_end
    ideal_split = gap_center + (left_margin - right_margin) / 2

    features = FeatureVector(
        aspect_ratio=width / height,
        width=width,
        height=height,
        center_darkest_p10=float(band[darkest]),
        center_darkest_idx=darkest / len(band) * 100.0,
        center_brightest_p10=float(band[brightest]),
        center_brightest_idx=brightest / len(band) * 100.0,
        center_avg_p10=float(band.mean()),
        center_p10_variance=float(band.var()),
        left_edge_p10=left_edge,
        right_edge_p10=right_edge,
        edge_center_diff=edge_center_diff,
        gutter_type=gutter_type,
        gutter_candidate=split_scale(candidate),
        gutter_width=int(np.count_nonzero(in_gutter)),
        predicted_p10=float(p10[candidate]),
        predicted_transitions=int(profiles.transitions[candidate]),
        predicted_dark_run=float(profiles.max_dark_run[candidate]),
        left_text_end_idx=percent(left_end),
        right_text_start_idx=percent(right_start),
        text_gap_width=percent(right_start - left_end),
        text_gap_center=split_scale(gap_center),
        left_page_text_start=split_scale(left_start),
        left_page_text_end=split_scale(left_end),
        right_page_text_start=split_scale(right_start),
        right_page_text_end=split_scale(right_end),
        left_margin=percent(left_margin),
        right_margin=percent(right_margin),
        ideal_split_from_text=split_scale(ideal_split),
        page_position=context.page_position,
        book_size_category=context.book_size_category,
    )

    logger.debug(
        f"Features {width}x{height}: {gutter_type.value} gutter at "
        f"{features.gutter_candidate:.0f}, text gap center {features.text_gap_center:.0f}"
    )
    return features


def extract_features(
    image: np.ndarray | Image.Image | Path | str,
    config: SplitConfig | None = None,
    context: PageContext | None = None,
) -> FeatureVector:
    """Extract the feature vector for one image.

    Args:
        image: Grayscale array already at analysis width, or a PIL image /
            path that is converted and resized to ``config.analysis_width``
        config: Thresholds; defaults are used when omitted
        context: Optional position of the page within its book

    Returns:
        FeatureVector for the image
    """
    config = config or SplitConfig()

    if isinstance(image, np.ndarray):
        pixels = image
    else:
        pixels = prepare_image(image, config.analysis_width)

    profiles = profile_columns(pixels, config)
    height, width = pixels.shape
    return extract_features_from_profiles(profiles, width, height, config, context)
