"""
Column profiling: reduce a grayscale image to one statistic vector per column.

Text strokes produce many dark/light transitions down a column, empty margins
produce few, and a binding shadow shows up as a column whose darkest pixels
stay dark for long runs.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image, ImageOps

from .config import SplitConfig

logger = logging.getLogger(__name__)


class MalformedImageError(ValueError):
    """Raised when a pixel buffer cannot be profiled."""


@dataclass(frozen=True)
class ColumnProfile:
    """Statistics for a single pixel column."""

    x: int
    p10: float  # Darkness percentile brightness (0-255)
    transitions: int  # Dark/light classification changes down the column
    max_dark_run: float  # Longest dark run, percent of column height
    dark_std_dev: float  # Spread of the darkest quarter of pixels


@dataclass(frozen=True)
class ColumnProfiles:
    """Ordered column statistics for one image, stored as parallel arrays."""

    p10: np.ndarray
    transitions: np.ndarray
    max_dark_run: np.ndarray
    dark_std_dev: np.ndarray

    def __len__(self) -> int:
        return len(self.p10)

    def __getitem__(self, x: int) -> ColumnProfile:
        return ColumnProfile(
            x=int(x) % len(self),
            p10=float(self.p10[x]),
            transitions=int(self.transitions[x]),
            max_dark_run=float(self.max_dark_run[x]),
            dark_std_dev=float(self.dark_std_dev[x]),
        )

    def __iter__(self):
        for x in range(len(self)):
            yield self[x]

    @property
    def width(self) -> int:
        return len(self)


def profile_columns(pixels: np.ndarray, config: SplitConfig | None = None) -> ColumnProfiles:
    """Compute per-column statistics for a grayscale image.

    Args:
        pixels: 2-D array (height x width) of brightness values 0-255
        config: Thresholds; defaults are used when omitted

    Returns:
        ColumnProfiles with one entry per column

    Raises:
        MalformedImageError: If the array is empty or not two-dimensional
    """
    config = config or SplitConfig()
    pixels = np.asarray(pixels)

    if pixels.ndim != 2:
        raise MalformedImageError(f"Expected a 2-D grayscale array, got shape {pixels.shape}")

    height, width = pixels.shape
    if height == 0 or width == 0:
        raise MalformedImageError(f"Empty pixel buffer ({width}x{height})")

    # Percentile by rank rather than interpolation, so p10 is always a real pixel value
    ordered = np.sort(pixels, axis=0)
    p10 = ordered[int(height * config.percentile)].astype(np.float64)

    darkest = ordered[: max(1, int(height * 0.25))].astype(np.float64)
    dark_std_dev = darkest.std(axis=0)

    dark = pixels < config.dark_threshold
    transitions = np.count_nonzero(dark[1:] != dark[:-1], axis=0)

    run = np.zeros(width, dtype=np.int64)
    longest = np.zeros(width, dtype=np.int64)
    for row in dark:
        run = np.where(row, run + 1, 0)
        np.maximum(longest, run, out=longest)

    return ColumnProfiles(
        p10=p10,
        transitions=transitions.astype(np.int64),
        max_dark_run=longest / height * 100.0,
        dark_std_dev=dark_std_dev,
    )


def profile_buffer(
    data: bytes | bytearray | memoryview,
    width: int,
    height: int,
    config: SplitConfig | None = None,
) -> ColumnProfiles:
    """Profile a raw row-major 8-bit grayscale buffer.

    Raises:
        MalformedImageError: If the buffer length does not match width x height
    """
    if width <= 0 or height <= 0:
        raise MalformedImageError(f"Invalid dimensions {width}x{height}")

    pixels = np.frombuffer(data, dtype=np.uint8)
    if pixels.size != width * height:
        raise MalformedImageError(
            f"Buffer holds {pixels.size} pixels, expected {width}x{height}={width * height}"
        )

    return profile_columns(pixels.reshape(height, width), config)


def prepare_image(image: Image.Image | Path | str, analysis_width: int = 500) -> np.ndarray:
    """Decode, grayscale and resize an image to the analysis width.

    Aspect ratio is preserved. EXIF orientation is applied first so the
    gutter is vertical in the analysed pixels.

    Args:
        image: PIL image or path to an image file
        analysis_width: Target width in pixels

    Returns:
        2-D uint8 array (height x analysis_width)
    """
    if isinstance(image, (str, Path)):
        with Image.open(image) as opened:
            return prepare_image(opened, analysis_width)

    gray = ImageOps.exif_transpose(image).convert("L")
    width, height = gray.size
    if width == 0 or height == 0:
        raise MalformedImageError(f"Image has no pixels ({width}x{height})")

    if width != analysis_width:
        new_height = max(1, round(height * analysis_width / width))
        gray = gray.resize((analysis_width, new_height), Image.LANCZOS)
        logger.debug(f"Resized {width}x{height} -> {analysis_width}x{new_height} for analysis")

    return np.asarray(gray, dtype=np.uint8)
