"""
Configuration for spread-split estimation.
"""

import os
from dataclasses import dataclass


@dataclass
class SplitConfig:
    """Tunable parameters for profiling, feature extraction and training.

    The thresholds are empirical defaults; validate them against a labeled
    dataset before trusting them on a new image source.

    Attributes:
        analysis_width: Width images are resized to before profiling

        # Column profiling
        dark_threshold: Pixels below this brightness count as dark
        percentile: Brightness percentile used as the column darkness signal

        # Feature extraction
        center_band_start: Left edge of the gutter search band (fraction of width)
        center_band_end: Right edge of the gutter search band (fraction of width)
        edge_fraction: Width of each outer margin used as the edge baseline
        inversion_threshold: Center-minus-edge brightness above which the
            gutter is a bright gap instead of a shadow
        gutter_width_offset: Brightness offset from the extremum that bounds
            the gutter when estimating its width
        shadow_offset_fraction: Shift applied to a shadow gutter candidate
        text_transition_threshold: Transitions above which a column holds text
        text_window_fraction: Half-width of the text detection window
        min_text_window: Minimum half-width of the text detection window

        # Rule-based detector
        heuristic_band_start: Left edge of the heuristic search band
        heuristic_band_end: Right edge of the heuristic search band

        # Training
        learning_rate: Gradient descent step size
        epochs: Number of full-batch epochs
        gradient_clip: Bound on each per-example gradient contribution
        validation_fraction: Share of examples held out for validation
        min_training_examples: Fewer valid examples than this fails training

        # Inference
        prediction_min: Lower clamp for predicted split positions (0-1000)
        prediction_max: Upper clamp for predicted split positions (0-1000)

        # Orchestration
        label_retries: Oracle attempts per page before the page is excluded
        label_retry_delay: Seconds between oracle attempts
        feature_workers: Threads used for batch feature extraction
        retrain_threshold: Valid examples a dataset needs before importing
            accepted manual splits retrains the model
    """

    analysis_width: int = 500

    # Column profiling
    dark_threshold: int = 180
    percentile: float = 0.10

    # Feature extraction
    center_band_start: float = 0.40
    center_band_end: float = 0.60
    edge_fraction: float = 0.05
    inversion_threshold: float = 30.0
    gutter_width_offset: float = 20.0
    shadow_offset_fraction: float = 0.005
    text_transition_threshold: int = 20
    text_window_fraction: float = 0.01
    min_text_window: int = 3

    # Rule-based detector
    heuristic_band_start: float = 0.35
    heuristic_band_end: float = 0.65

    # Training
    learning_rate: float = 1e-4
    epochs: int = 500
    gradient_clip: float = 10.0
    validation_fraction: float = 0.2
    min_training_examples: int = 10

    # Inference
    prediction_min: int = 200
    prediction_max: int = 800

    # Orchestration
    label_retries: int = 3
    label_retry_delay: float = 2.0
    feature_workers: int = 4
    retrain_threshold: int = 20

    def __post_init__(self) -> None:
        """Validate numeric constraints."""
        if self.analysis_width < 1:
            raise ValueError(f"analysis_width must be >= 1, got {self.analysis_width}")

        if not 0 <= self.dark_threshold <= 255:
            raise ValueError(f"dark_threshold must be in [0, 255], got {self.dark_threshold}")

        if not 0 <= self.percentile < 1:
            raise ValueError(f"percentile must be in [0, 1), got {self.percentile}")

        if not 0 <= self.center_band_start < self.center_band_end <= 1:
            raise ValueError(
                "center band must satisfy 0 <= start < end <= 1, "
                f"got ({self.center_band_start}, {self.center_band_end})"
            )

        if not 0 <= self.heuristic_band_start < self.heuristic_band_end <= 1:
            raise ValueError(
                "heuristic band must satisfy 0 <= start < end <= 1, "
                f"got ({self.heuristic_band_start}, {self.heuristic_band_end})"
            )

        if not 0 < self.edge_fraction <= 0.5:
            raise ValueError(f"edge_fraction must be in (0, 0.5], got {self.edge_fraction}")

        if self.min_text_window < 1:
            raise ValueError(f"min_text_window must be >= 1, got {self.min_text_window}")

        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be > 0, got {self.learning_rate}")

        if self.epochs < 0:
            raise ValueError(f"epochs must be >= 0, got {self.epochs}")

        if self.gradient_clip <= 0:
            raise ValueError(f"gradient_clip must be > 0, got {self.gradient_clip}")

        if not 0 <= self.validation_fraction < 1:
            raise ValueError(
                f"validation_fraction must be in [0, 1), got {self.validation_fraction}"
            )

        if self.min_training_examples < 1:
            raise ValueError(
                f"min_training_examples must be >= 1, got {self.min_training_examples}"
            )

        if not 0 <= self.prediction_min <= self.prediction_max <= 1000:
            raise ValueError(
                "prediction clamp must satisfy 0 <= min <= max <= 1000, "
                f"got ({self.prediction_min}, {self.prediction_max})"
            )

        if self.label_retries < 1:
            raise ValueError(f"label_retries must be >= 1, got {self.label_retries}")

        if self.feature_workers < 1:
            raise ValueError(f"feature_workers must be >= 1, got {self.feature_workers}")

        if self.retrain_threshold < 1:
            raise ValueError(f"retrain_threshold must be >= 1, got {self.retrain_threshold}")


@dataclass
class OracleConfig:
    """Connection settings for the vision model that labels training spreads.

    Any OpenAI-compatible chat-completions endpoint with image input works
    (vLLM, llama.cpp server, hosted APIs).
    """

    api_url: str = "http://localhost:8000/v1/chat/completions"
    model: str = "model"
    api_key: str | None = None
    timeout: float = 120.0
    temperature: float = 0.1
    max_tokens: int = 512

    def __post_init__(self) -> None:
        if not self.api_url:
            raise ValueError("api_url cannot be empty")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {self.max_tokens}")

    @classmethod
    def from_env(cls) -> "OracleConfig":
        """Build settings from SPLIT_ORACLE_* environment variables."""
        defaults = cls()
        return cls(
            api_url=os.getenv("SPLIT_ORACLE_URL", defaults.api_url),
            model=os.getenv("SPLIT_ORACLE_MODEL", defaults.model),
            api_key=os.getenv("SPLIT_ORACLE_API_KEY") or None,
            timeout=float(os.getenv("SPLIT_ORACLE_TIMEOUT", defaults.timeout)),
        )
