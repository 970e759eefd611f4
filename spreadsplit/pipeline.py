"""
Orchestration: batch feature extraction, oracle labeling runs, imports of
accepted manual splits, training and the split detector used at inference
time.
"""

import io
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import httpx
import numpy as np
from PIL import Image

from .config import SplitConfig
from .dataset import (
    SOURCE_USER_SPLIT,
    USER_SPLIT_MAX,
    USER_SPLIT_MIN,
    TrainingExample,
    append_examples,
    load_examples,
)
from .estimator import predict_with_details
from .features import FeatureVector, PageContext, extract_features_from_profiles
from .heuristic import SplitDetection, detect_split, text_at_position
from .model import ModelRecord, ModelRegistry
from .oracle import Confidence, OracleError, SplitLabel, SplitOracle
from .profiler import prepare_image, profile_columns
from .progress import ProgressReporter
from .trainer import InsufficientDataError, train_model

logger = logging.getLogger(__name__)

DETECTION_METHODS = ("heuristic", "ml", "cascade")


@dataclass
class PageImage:
    """A page image plus the book context the caller knows about."""

    page_id: str
    image_ref: str
    book_id: str | None = None
    page_number: int | None = None
    total_pages: int | None = None
    book_page_count: int | None = None

    @property
    def context(self) -> PageContext:
        return PageContext(
            page_number=self.page_number,
            total_pages=self.total_pages,
            book_page_count=self.book_page_count,
        )


@dataclass
class FeatureResult:
    """Outcome of feature extraction for one page."""

    page: PageImage
    features: FeatureVector | None
    success: bool
    error_message: str | None = None


@dataclass
class LabelingFailure:
    """A page excluded from the training set, and why."""

    page_id: str
    stage: str  # "crop", "features" or "oracle"
    error_message: str


@dataclass
class LabelingResult:
    """Examples produced by a labeling run and the pages it excluded."""

    examples: list[TrainingExample] = field(default_factory=list)
    failures: list[LabelingFailure] = field(default_factory=list)
    skipped: int = 0  # Already labeled in the dataset

    @property
    def labeled_count(self) -> int:
        return len(self.examples)


def load_image(image_ref: str | Path, client: httpx.Client | None = None) -> Image.Image:
    """Open a local image or download one over http(s)."""
    ref = str(image_ref)
    if ref.startswith(("http://", "https://")):
        if client is None:
            response = httpx.get(ref, timeout=60.0)
        else:
            response = client.get(ref)
        response.raise_for_status()
        return Image.open(io.BytesIO(response.content))
    return Image.open(ref)


def _extract_one(page: PageImage, config: SplitConfig) -> FeatureResult:
    try:
        with load_image(page.image_ref) as image:
            pixels = prepare_image(image, config.analysis_width)
        profiles = profile_columns(pixels, config)
        height, width = pixels.shape
        features = extract_features_from_profiles(profiles, width, height, config, page.context)
        return FeatureResult(page=page, features=features, success=True)
    except (OSError, ValueError, httpx.HTTPError, Image.DecompressionBombError) as e:
        logger.error(f"Feature extraction failed for page {page.page_id}: {e}")
        return FeatureResult(page=page, features=None, success=False, error_message=str(e))


def extract_features_batch(
    pages: list[PageImage],
    config: SplitConfig | None = None,
) -> list[FeatureResult]:
    """Extract features for many pages in parallel.

    Pages are independent, so they run on a thread pool. Results come back
    in input order; failures are reported per page.
    """
    config = config or SplitConfig()
    if not pages:
        return []

    workers = min(config.feature_workers, len(pages))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(lambda page: _extract_one(page, config), pages))


class LabelingPipeline:
    """Builds training examples by asking the oracle about each page.

    Owns the retry policy for oracle calls. A page whose features or label
    cannot be obtained is recorded as a failure and left out; the run
    continues.

    Usage:
        with VisionSplitOracle() as oracle:
            pipeline = LabelingPipeline(oracle)
            result = pipeline.run(pages, dataset_path=Path("splits.jsonl"))
    """

    def __init__(
        self,
        oracle: SplitOracle,
        config: SplitConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.oracle = oracle
        self.config = config or SplitConfig()
        self._sleep = sleep

    def label_with_retry(self, image_ref: str) -> SplitLabel:
        """Ask the oracle, retrying transient failures.

        Raises:
            OracleError: The last failure once all attempts are used
        """
        attempts = self.config.label_retries
        last_error: OracleError | None = None

        for attempt in range(attempts):
            try:
                return self.oracle.label_split(image_ref)
            except OracleError as e:
                last_error = e
                if attempt < attempts - 1:
                    logger.warning(f"Labeling attempt {attempt + 1} failed: {e}, retrying...")
                    self._sleep(self.config.label_retry_delay)

        logger.error(f"Labeling failed after {attempts} attempts: {last_error}")
        raise last_error

    def run(
        self,
        pages: list[PageImage],
        dataset_path: Path | None = None,
        resume: bool = True,
    ) -> LabelingResult:
        """Label pages and optionally append the examples to a dataset file.

        Args:
            pages: Pages to label
            dataset_path: JSON Lines file that receives each example as soon
                as it is labeled
            resume: Skip pages already present in ``dataset_path``

        Returns:
            LabelingResult with the new examples and the excluded pages
        """
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("PIL").setLevel(logging.WARNING)

        result = LabelingResult()

        if resume and dataset_path is not None and Path(dataset_path).exists():
            done = {e.page_id for e in load_examples(dataset_path)}
            remaining = [p for p in pages if p.page_id not in done]
            result.skipped = len(pages) - len(remaining)
            pages = remaining

        if not pages:
            logger.info(f"Nothing to label ({result.skipped} pages already labeled)")
            return result

        feature_results = extract_features_batch(pages, self.config)
        desc = f"Labeling ({result.skipped} done)" if result.skipped else "Labeling"

        with ProgressReporter(len(pages), desc=desc, unit="pages") as progress:
            for item in feature_results:
                page = item.page
                if not item.success:
                    result.failures.append(LabelingFailure(page.page_id, "features", item.error_message or ""))
                    progress.update(success=False, item_name=page.page_id)
                    continue

                try:
                    label = self.label_with_retry(page.image_ref)
                except OracleError as e:
                    result.failures.append(LabelingFailure(page.page_id, "oracle", str(e)))
                    progress.update(success=False, item_name=page.page_id)
                    continue

                example = TrainingExample.from_label(
                    page_id=page.page_id,
                    image_ref=page.image_ref,
                    features=item.features,
                    label=label,
                    book_id=page.book_id,
                )
                result.examples.append(example)
                if dataset_path is not None:
                    append_examples(dataset_path, [example])
                progress.update(success=True, item_name=page.page_id)

        return result


def train_and_register(
    examples: list[TrainingExample],
    registry: ModelRegistry,
    config: SplitConfig | None = None,
    rng: np.random.Generator | None = None,
    activate: bool = True,
) -> ModelRecord:
    """Train a new record and store it, active by default."""
    record = train_model(examples, config, rng)
    registry.save(record, activate=activate)
    return record


@dataclass
class UserSplit:
    """A split a person accepted while cropping a spread.

    ``crop_x_end`` is the right edge of the left page's crop, 0-1000 scale.
    """

    page: PageImage
    crop_x_end: int


@dataclass
class ImportResult:
    """Examples added from accepted splits, and any retrained model."""

    examples: list[TrainingExample] = field(default_factory=list)
    failures: list[LabelingFailure] = field(default_factory=list)
    skipped: int = 0  # Already in the dataset
    dataset_total: int = 0
    user_split_total: int = 0
    model: ModelRecord | None = None
    retrain_error: str | None = None

    @property
    def imported_count(self) -> int:
        return len(self.examples)


def import_user_splits(
    splits: list[UserSplit],
    dataset_path: Path,
    config: SplitConfig | None = None,
    registry: ModelRegistry | None = None,
    rng: np.random.Generator | None = None,
) -> ImportResult:
    """Turn accepted manual splits into training examples.

    Pages already in the dataset are skipped. A page whose crop is outside
    (100, 900) or whose image cannot be read is recorded as a failure.

    With a registry, the model is retrained on the whole dataset once it
    holds ``config.retrain_threshold`` valid examples and this call added at
    least one. A failed retrain is reported on the result, not raised.
    """
    config = config or SplitConfig()
    dataset_path = Path(dataset_path)
    result = ImportResult()

    existing = load_examples(dataset_path) if dataset_path.exists() else []
    seen = {e.page_id for e in existing}

    pending = []
    for split in splits:
        page_id = split.page.page_id
        if page_id in seen:
            result.skipped += 1
            continue
        seen.add(page_id)
        if not USER_SPLIT_MIN < split.crop_x_end < USER_SPLIT_MAX:
            message = f"crop_x_end must be in ({USER_SPLIT_MIN}, {USER_SPLIT_MAX}), got {split.crop_x_end}"
            result.failures.append(LabelingFailure(page_id, "crop", message))
            continue
        pending.append(split)

    crops = {split.page.page_id: split.crop_x_end for split in pending}
    for item in extract_features_batch([split.page for split in pending], config):
        page = item.page
        if not item.success:
            result.failures.append(LabelingFailure(page.page_id, "features", item.error_message or ""))
            continue
        result.examples.append(
            TrainingExample.from_user_split(
                page_id=page.page_id,
                image_ref=page.image_ref,
                features=item.features,
                crop_x_end=crops[page.page_id],
                book_id=page.book_id,
            )
        )

    if result.examples:
        append_examples(dataset_path, result.examples)

    dataset = existing + result.examples
    result.dataset_total = len(dataset)
    result.user_split_total = sum(1 for e in dataset if e.source == SOURCE_USER_SPLIT)
    logger.info(
        f"Imported {result.imported_count} accepted splits "
        f"({result.skipped} already present, {len(result.failures)} failed). "
        f"Dataset: {result.dataset_total} examples"
    )

    if registry is None or not result.examples:
        return result

    valid_count = sum(1 for e in dataset if e.is_valid())
    if valid_count < config.retrain_threshold:
        logger.info(f"Not retraining: {valid_count} valid examples, threshold {config.retrain_threshold}")
        return result

    try:
        result.model = train_and_register(dataset, registry, config, rng)
    except InsufficientDataError as e:
        logger.warning(f"Retrain after import failed: {e}")
        result.retrain_error = str(e)
    else:
        logger.info(
            f"Retrained model {result.model.model_id}: {result.model.training_size} examples, "
            f"RMSE={result.model.validation_rmse:.2f}"
        )
    return result


class SplitDetector:
    """Chooses a split for incoming images without calling the oracle.

    Methods:
        heuristic: Rule-based column scoring only
        ml: Trained model only (requires a model record)
        cascade: Heuristic when it is confident, otherwise the model if one
            is available, otherwise the heuristic answer
    """

    def __init__(
        self,
        model: ModelRecord | None = None,
        method: str = "cascade",
        config: SplitConfig | None = None,
    ) -> None:
        if method not in DETECTION_METHODS:
            raise ValueError(f"Unknown detection method {method!r}. Valid: {DETECTION_METHODS}")
        if method == "ml" and model is None:
            raise ValueError("No trained model available. Train a model first or use method='heuristic'")

        self.model = model
        self.method = method
        self.config = config or SplitConfig()

    def detect(
        self,
        image: np.ndarray | Image.Image | Path | str,
        context: PageContext | None = None,
    ) -> SplitDetection:
        if isinstance(image, np.ndarray):
            pixels = image
        else:
            pixels = prepare_image(image, self.config.analysis_width)

        profiles = profile_columns(pixels, self.config)
        height, width = pixels.shape

        if self.method != "ml":
            detection = detect_split(profiles, width, height, self.config)
            if self.method == "heuristic" or detection.confidence is Confidence.HIGH:
                return detection
            if self.model is None:
                return detection
            logger.debug(f"Heuristic confidence {detection.confidence.value}, using trained model")

        features = extract_features_from_profiles(profiles, width, height, self.config, context)
        prediction = predict_with_details(features, self.model, self.config)
        column = min(width - 1, int(prediction.position / 1000 * width))
        warning = text_at_position(profiles, column)

        return SplitDetection(
            is_two_page_spread=True,
            confidence=Confidence.MEDIUM if warning else Confidence.HIGH,
            split_position=prediction.position,
            has_text_at_split=warning is not None,
            text_warning=warning,
            method="ml",
        )
