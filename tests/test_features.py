"""Tests for feature extraction."""

import numpy as np
import pytest
from PIL import Image

from spreadsplit.config import SplitConfig
from spreadsplit.features import (
    FEATURE_SCHEMA_VERSION,
    PERCENT_FIELDS,
    SPLIT_SCALE_FIELDS,
    FeatureSchemaError,
    FeatureVector,
    GutterType,
    PageContext,
    book_size_category,
    extract_features,
)


def assert_in_declared_ranges(features: FeatureVector) -> None:
    for name in PERCENT_FIELDS:
        assert 0 <= getattr(features, name) <= 100, name
    for name in SPLIT_SCALE_FIELDS:
        assert 0 <= getattr(features, name) <= 1000, name
    assert features.gutter_width >= 0


class TestBindingShadow:
    """A dark band at the center of a bright spread."""

    def test_not_inverted(self, dark_band_spread):
        """A dark center is a shadow gutter."""
        features = extract_features(dark_band_spread)
        assert features.gutter_type is GutterType.SHADOW
        assert not features.has_inverted_gutter
        assert features.edge_center_diff < 0

    def test_darkest_near_band_center(self, dark_band_spread):
        """The darkest column should sit near the middle of the search band."""
        features = extract_features(dark_band_spread)
        assert abs(features.center_darkest_idx - 50) <= 6
        assert features.center_darkest_p10 == 30

    def test_gutter_width_matches_band(self, dark_band_spread):
        """Gutter width should equal the band width in columns."""
        assert extract_features(dark_band_spread).gutter_width == 10

    def test_candidate_offset_right_of_darkest_column(self, dark_band_spread):
        """The shadow candidate sits a little right of the darkest column."""
        features = extract_features(dark_band_spread)
        # Column 245 plus 0.5 % of 500 columns
        assert features.gutter_candidate == pytest.approx(494.0)
        assert features.predicted_p10 == 30
        assert features.predicted_dark_run == 100.0


class TestFlatbedGap:
    """A bright band with darker surroundings."""

    def test_inverted(self, flatbed_spread):
        """Center brighter than the edges marks a gap gutter."""
        features = extract_features(flatbed_spread)
        assert features.gutter_type is GutterType.GAP
        assert features.has_inverted_gutter
        assert features.edge_center_diff == pytest.approx(70.0)

    def test_brightest_column_in_band(self, flatbed_spread):
        """The brightest column should be the start of the bright band."""
        features = extract_features(flatbed_spread)
        assert features.center_brightest_idx == pytest.approx(20.0)
        assert features.gutter_candidate == pytest.approx(440.0)
        assert features.gutter_width == 10

    def test_inversion_threshold_configurable(self, flatbed_spread):
        """Raising the threshold above the contrast keeps it a shadow gutter."""
        features = extract_features(flatbed_spread, SplitConfig(inversion_threshold=100))
        assert features.gutter_type is GutterType.SHADOW


class TestTextBoundaries:
    """Striped text blocks on both pages."""

    def test_text_block_edges(self, text_spread):
        """Inner text edges should be found on both pages."""
        features = extract_features(text_spread)
        assert features.left_page_text_start == pytest.approx(100.0)
        assert features.left_page_text_end == pytest.approx(440.0)
        assert features.right_page_text_start == pytest.approx(560.0)
        assert features.right_page_text_end == pytest.approx(900.0)

    def test_gap_between_blocks(self, text_spread):
        """The text gap should be centered between the inner edges."""
        features = extract_features(text_spread)
        assert features.text_gap_center == pytest.approx(500.0)
        assert features.text_gap_width == pytest.approx(12.0)
        assert features.left_text_end_idx == pytest.approx(44.0)
        assert features.right_text_start_idx == pytest.approx(56.0)

    def test_ideal_split_balances_margins(self, text_spread):
        """Equal-ish margins keep the ideal split at the gap center."""
        features = extract_features(text_spread)
        assert features.left_margin == pytest.approx(10.0)
        assert features.right_margin == pytest.approx(9.8)
        assert features.ideal_split_from_text == pytest.approx(501.0)

    def test_shifted_text_moves_gap(self):
        """Moving both blocks right should move the gap center right."""
        from conftest import text_pixels

        features = extract_features(text_pixels(blocks=((100, 241), (330, 481))))
        assert features.text_gap_center == pytest.approx(570.0)

    def test_blank_page_collapses_to_center(self):
        """Without text the inner edges fall back to the image center."""
        features = extract_features(np.full((300, 500), 255, dtype=np.uint8))
        assert features.left_page_text_end == pytest.approx(500.0)
        assert features.right_page_text_start == pytest.approx(500.0)
        assert features.text_gap_width == 0


class TestRangesAndDeterminism:
    """Invariants that hold for every image."""

    @pytest.mark.parametrize(
        "shape,value",
        [((1, 1), 0), ((1, 500), 255), ((300, 1), 128), ((300, 2), 0), ((2, 500), 90), ((300, 500), 255)],
    )
    def test_degenerate_images_in_range(self, shape, value):
        """Tiny or uniform images should still give in-range features."""
        features = extract_features(np.full(shape, value, dtype=np.uint8))
        assert_in_declared_ranges(features)
        assert features.is_finite()

    def test_random_noise_in_range(self):
        """Noise images should give in-range features."""
        rng = np.random.default_rng(3)
        for _ in range(5):
            pixels = rng.integers(0, 256, size=(200, 500), dtype=np.uint8)
            assert_in_declared_ranges(extract_features(pixels))

    def test_idempotent(self, text_spread):
        """Extracting twice should give identical vectors."""
        assert extract_features(text_spread) == extract_features(text_spread)

    def test_pil_and_array_input_agree(self, dark_band_spread):
        """A PIL image at analysis width should match the raw array."""
        image = Image.fromarray(dark_band_spread)
        assert extract_features(image) == extract_features(dark_band_spread)

    def test_aspect_ratio(self, dark_band_spread):
        """Aspect ratio is width over height."""
        features = extract_features(dark_band_spread)
        assert features.aspect_ratio == pytest.approx(500 / 300)


class TestPageContext:
    """Optional book context."""

    def test_absent_by_default(self, dark_band_spread):
        """Context fields should be None when the caller knows nothing."""
        features = extract_features(dark_band_spread)
        assert features.page_position is None
        assert features.book_size_category is None

    def test_position_and_size(self, dark_band_spread):
        """Page number and count should become position and size bucket."""
        context = PageContext(page_number=50, total_pages=200, book_page_count=250)
        features = extract_features(dark_band_spread, context=context)
        assert features.page_position == pytest.approx(0.25)
        assert features.book_size_category == 1

    def test_total_pages_used_when_count_missing(self):
        """Without a book page count the batch size picks the bucket."""
        assert PageContext(page_number=1, total_pages=40).book_size_category == 0

    @pytest.mark.parametrize("count,expected", [(0, 0), (99, 0), (100, 1), (299, 1), (300, 2), (1200, 2)])
    def test_size_buckets(self, count, expected):
        """Books are small under 100 pages, large from 300."""
        assert book_size_category(count) == expected


class TestSerialization:
    """Stored feature records."""

    def test_record_carries_schema_version(self, make_features):
        """Records should be tagged with the schema version."""
        record = make_features().to_dict()
        assert record["schema_version"] == FEATURE_SCHEMA_VERSION
        assert record["gutter_type"] == "shadow"

    def test_from_dict_restores_vector(self, make_features):
        """A stored record should rebuild the same vector."""
        features = make_features(gutter_type=GutterType.GAP, page_position=0.3)
        assert FeatureVector.from_dict(features.to_dict()) == features

    def test_missing_field_rejected(self, make_features):
        """Records missing required fields should be rejected by name."""
        record = make_features().to_dict()
        del record["text_gap_center"]
        with pytest.raises(FeatureSchemaError, match="text_gap_center"):
            FeatureVector.from_dict(record)

    def test_newer_schema_rejected(self, make_features):
        """Records from a newer schema should not be read silently."""
        record = make_features().to_dict()
        record["schema_version"] = FEATURE_SCHEMA_VERSION + 1
        with pytest.raises(FeatureSchemaError, match="schema version"):
            FeatureVector.from_dict(record)

    def test_non_numeric_rejected(self, make_features):
        """String values in numeric fields should be rejected."""
        record = make_features().to_dict()
        record["aspect_ratio"] = "wide"
        with pytest.raises(FeatureSchemaError):
            FeatureVector.from_dict(record)
