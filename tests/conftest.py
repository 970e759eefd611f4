"""Shared builders for synthetic spreads, feature vectors and examples."""

import numpy as np
import pytest
from PIL import Image

from spreadsplit.dataset import TrainingExample
from spreadsplit.features import FeatureVector, GutterType
from spreadsplit.oracle import Confidence

# Every model term is zero for this vector, so a model predicts its bias
NEUTRAL_FEATURES = dict(
    aspect_ratio=1.5,
    width=500,
    height=333,
    center_darkest_p10=40.0,
    center_darkest_idx=50.0,
    center_brightest_p10=200.0,
    center_brightest_idx=50.0,
    center_avg_p10=150.0,
    center_p10_variance=900.0,
    left_edge_p10=180.0,
    right_edge_p10=180.0,
    edge_center_diff=0.0,
    gutter_type=GutterType.SHADOW,
    gutter_candidate=500.0,
    gutter_width=8,
    predicted_p10=40.0,
    predicted_transitions=2,
    predicted_dark_run=95.0,
    left_text_end_idx=45.0,
    right_text_start_idx=55.0,
    text_gap_width=10.0,
    text_gap_center=500.0,
    left_page_text_start=100.0,
    left_page_text_end=500.0,
    right_page_text_start=500.0,
    right_page_text_end=900.0,
    left_margin=10.0,
    right_margin=10.0,
    ideal_split_from_text=500.0,
)


@pytest.fixture
def make_features():
    """Factory for feature vectors that differ from the neutral one."""

    def build(**overrides) -> FeatureVector:
        return FeatureVector(**{**NEUTRAL_FEATURES, **overrides})

    return build


@pytest.fixture
def make_example(make_features):
    """Factory for labeled training examples."""

    def build(page_id: str, label: float = 500, book_id: str | None = "book-1", **overrides) -> TrainingExample:
        return TrainingExample(
            page_id=page_id,
            image_ref=f"/scans/{page_id}.jpg",
            features=make_features(**overrides),
            label_position=label,
            label_confidence=Confidence.HIGH,
            book_id=book_id,
        )

    return build


def dark_band_pixels(width: int = 500, height: int = 300) -> np.ndarray:
    """Bright page with a ten-column binding shadow at the center."""
    pixels = np.full((height, width), 220, dtype=np.uint8)
    pixels[:, width * 49 // 100 : width * 51 // 100] = 30
    return pixels


def flatbed_pixels(width: int = 500, height: int = 300) -> np.ndarray:
    """Dark outer margins, gray pages and a bright glass gap at 44-46 %."""
    pixels = np.full((height, width), 110, dtype=np.uint8)
    pixels[:, : width // 10] = 40
    pixels[:, width - width // 10 :] = 40
    pixels[:, width * 44 // 100 : width * 46 // 100] = 235
    return pixels


def text_pixels(width: int = 500, height: int = 400, blocks=((50, 221), (280, 451))) -> np.ndarray:
    """White spread with striped "text" blocks; each stripe pair is one line."""
    pixels = np.full((height, width), 255, dtype=np.uint8)
    lines = (np.arange(height) % 4 < 2)
    for start, end in blocks:
        pixels[lines, start:end] = 0
    return pixels


@pytest.fixture
def dark_band_spread() -> np.ndarray:
    return dark_band_pixels()


@pytest.fixture
def flatbed_spread() -> np.ndarray:
    return flatbed_pixels()


@pytest.fixture
def text_spread() -> np.ndarray:
    return text_pixels()


@pytest.fixture
def spread_file(tmp_path):
    """A dark-band spread saved as PNG at twice the analysis width."""
    path = tmp_path / "spread_0001.png"
    Image.fromarray(dark_band_pixels(width=1000, height=600)).save(path)
    return path
