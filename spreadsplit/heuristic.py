"""
Rule-based split detection. Needs no trained model, so it serves as the
first stage of the cascade and as the fallback before any model exists.
"""

import logging
from dataclasses import dataclass

import numpy as np

from .config import SplitConfig
from .oracle import Confidence
from .profiler import ColumnProfiles

logger = logging.getLogger(__name__)

# Images narrower than this relative to their height are single pages
MIN_SPREAD_ASPECT = 0.9


@dataclass
class SplitDetection:
    """A split recommendation for one image."""

    is_two_page_spread: bool
    confidence: Confidence
    split_position: int  # 0-1000 scale
    has_text_at_split: bool = False
    gutter_score: float = 0.0
    text_warning: str | None = None
    method: str = "heuristic"


def gutter_scores(profiles: ColumnProfiles) -> np.ndarray:
    """Score every column on how much it looks like a binding shadow.

    Components, each roughly 0-100: darkness, long dark runs, few
    transitions and consistent dark pixels.
    """
    darkness = (255 - profiles.p10) / 2.55
    transition_score = np.maximum(0, 100 - profiles.transitions / 5)
    consistency = np.maximum(0, 50 - profiles.dark_std_dev)
    return (
        darkness * 0.3
        + profiles.max_dark_run * 0.35
        + transition_score * 0.2
        + consistency * 0.15
    )


def text_at_position(profiles: ColumnProfiles, position: int, window: int = 3) -> str | None:
    """Check a narrow window around a split line for text.

    Returns:
        A warning describing the text signals, or None for a clean gutter
    """
    lo = max(0, position - window)
    hi = min(len(profiles), position + window + 1)

    avg_transitions = float(profiles.transitions[lo:hi].mean())
    avg_dark_run = float(profiles.max_dark_run[lo:hi].mean())
    avg_dark_std = float(profiles.dark_std_dev[lo:hi].mean())
    column = profiles[position]

    reasons = []
    if column.transitions > 30 and avg_transitions > 40:
        reasons.append(f"high transitions ({column.transitions})")
    if column.max_dark_run < 40 and avg_dark_run < 50:
        reasons.append(f"short dark runs ({column.max_dark_run:.0f}%)")
    if avg_dark_std > 30:
        reasons.append(f"high variance ({avg_dark_std:.0f})")

    if len(reasons) >= 2:
        return f"Text at split: {', '.join(reasons)}"
    return None


def detect_split(
    profiles: ColumnProfiles,
    width: int,
    height: int,
    config: SplitConfig | None = None,
) -> SplitDetection:
    """Recommend a split from column statistics alone."""
    config = config or SplitConfig()
    aspect_ratio = width / height

    if aspect_ratio < MIN_SPREAD_ASPECT:
        return SplitDetection(
            is_two_page_spread=False,
            confidence=Confidence.HIGH,
            split_position=500,
        )

    start = int(width * config.heuristic_band_start)
    end = max(start + 1, int(width * config.heuristic_band_end))
    scores = gutter_scores(profiles)[start:end]

    best = start + int(np.argmax(scores))
    score = float(scores.max())
    warning = text_at_position(profiles, best)

    if aspect_ratio > 1.1 and score > 50 and warning is None:
        confidence = Confidence.HIGH
    elif aspect_ratio < 1.0 or score < 30 or warning is not None:
        confidence = Confidence.LOW
    else:
        confidence = Confidence.MEDIUM

    detection = SplitDetection(
        is_two_page_spread=aspect_ratio > 1.0,
        confidence=confidence,
        split_position=round(best / width * 1000),
        has_text_at_split=warning is not None,
        gutter_score=score,
        text_warning=warning,
    )
    logger.debug(
        f"Heuristic split at {detection.split_position} "
        f"(score {score:.0f}, {confidence.value} confidence)"
    )
    return detection
