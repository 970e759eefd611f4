"""Tests for column profiling."""

import numpy as np
import pytest
from PIL import Image

from spreadsplit.config import SplitConfig
from spreadsplit.profiler import MalformedImageError, prepare_image, profile_buffer, profile_columns


class TestProfileColumns:
    """Tests for per-column statistics."""

    def test_one_profile_per_column(self, dark_band_spread):
        """Profiles should cover every column of the image."""
        profiles = profile_columns(dark_band_spread)
        assert len(profiles) == 500
        assert [p.x for p in profiles][:3] == [0, 1, 2]

    def test_p10_is_rank_based(self):
        """p10 should be the pixel at rank floor(h * 0.10) of the sorted column."""
        column = np.arange(0, 200, 10, dtype=np.uint8).reshape(20, 1)
        profiles = profile_columns(column[::-1])
        # floor(20 * 0.1) = 2 -> third darkest value
        assert profiles.p10[0] == 20

    def test_transitions_count_dark_light_changes(self):
        """Each switch between dark and light rows should count once."""
        pixels = np.array([[0], [0], [255], [255], [0], [255]], dtype=np.uint8)
        profiles = profile_columns(pixels)
        assert profiles.transitions[0] == 3

    def test_max_dark_run_is_percent_of_height(self):
        """The longest dark run should be reported as a percentage of height."""
        pixels = np.full((10, 1), 255, dtype=np.uint8)
        pixels[2:6] = 0
        pixels[8] = 0
        profiles = profile_columns(pixels)
        assert profiles.max_dark_run[0] == pytest.approx(40.0)

    def test_dark_threshold_from_config(self):
        """Pixels at or above the threshold are light."""
        pixels = np.full((10, 1), 150, dtype=np.uint8)
        assert profile_columns(pixels, SplitConfig(dark_threshold=180)).max_dark_run[0] == 100.0
        assert profile_columns(pixels, SplitConfig(dark_threshold=150)).max_dark_run[0] == 0.0

    def test_uniform_column_has_no_dark_variation(self, dark_band_spread):
        """A solid column should have zero spread among its darkest pixels."""
        profiles = profile_columns(dark_band_spread)
        assert profiles[250].dark_std_dev == 0.0
        assert profiles[250].p10 == 30

    def test_single_pixel_image(self):
        """A 1x1 image is degenerate but valid."""
        profiles = profile_columns(np.zeros((1, 1), dtype=np.uint8))
        assert len(profiles) == 1
        assert profiles[0].transitions == 0
        assert profiles[0].max_dark_run == 100.0

    def test_rejects_non_2d_input(self):
        """Color or flat arrays should be rejected."""
        with pytest.raises(MalformedImageError):
            profile_columns(np.zeros((4, 4, 3), dtype=np.uint8))

    def test_rejects_empty_input(self):
        """Zero-sized images should be rejected."""
        with pytest.raises(MalformedImageError):
            profile_columns(np.zeros((0, 10), dtype=np.uint8))


class TestProfileBuffer:
    """Tests for raw buffer profiling."""

    def test_matches_array_profiling(self, dark_band_spread):
        """Buffer and array input should give the same statistics."""
        from_buffer = profile_buffer(dark_band_spread.tobytes(), 500, 300)
        from_array = profile_columns(dark_band_spread)
        assert np.array_equal(from_buffer.p10, from_array.p10)
        assert np.array_equal(from_buffer.transitions, from_array.transitions)

    def test_length_mismatch(self):
        """A buffer shorter than width x height should be rejected."""
        with pytest.raises(MalformedImageError, match="expected 10x10"):
            profile_buffer(bytes(99), 10, 10)

    def test_invalid_dimensions(self):
        """Non-positive dimensions should be rejected."""
        with pytest.raises(MalformedImageError):
            profile_buffer(b"", 0, 5)


class TestPrepareImage:
    """Tests for decoding and resizing."""

    def test_resizes_to_analysis_width(self, spread_file):
        """Images should be scaled to the analysis width, keeping aspect."""
        pixels = prepare_image(spread_file, 500)
        assert pixels.shape == (300, 500)
        assert pixels.dtype == np.uint8

    def test_color_converted_to_grayscale(self):
        """RGB input should come back as a single channel."""
        image = Image.new("RGB", (500, 250), (200, 100, 50))
        pixels = prepare_image(image, 500)
        assert pixels.ndim == 2
        assert pixels.shape == (250, 500)
