#!/usr/bin/env python3
"""
Command-line interface for spreadsplit.

Usage:
    # Inspect the features of one scan
    spreadsplit features ./scans/spread_0042.jpg

    # Label scans with the vision model and append them to a dataset
    spreadsplit label ./scans/*.jpg -o splits.jsonl --book-id atlas-1902

    # Add accepted manual splits and retrain once 20 examples are valid
    spreadsplit import-splits crops.json -o splits.jsonl --models ./models --retrain-after 20

    # Train a model from the dataset and make it active
    spreadsplit train splits.jsonl --models ./models --seed 7

    # Predict split positions for new scans
    spreadsplit predict ./scans/*.jpg --models ./models --method cascade

    # List stored models or switch the active one
    spreadsplit models --models ./models --activate 3f9a0c1b2d4e

    # Run the HTTP service
    spreadsplit serve --models ./models --port 8788
"""

import argparse
import json
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".tif", ".tiff", ".webp"}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def collect_images(inputs: list[str]) -> list[Path]:
    """Expand files and directories into a sorted list of image paths."""
    images = []
    for item in inputs:
        path = Path(item)
        if path.is_dir():
            images.extend(sorted(p for p in path.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES))
        else:
            images.append(path)
    return images


def cmd_features(args: argparse.Namespace) -> int:
    """Print the feature vector of one image."""
    from .config import SplitConfig
    from .features import extract_features

    image_path = Path(args.image)
    if not image_path.exists():
        print(f"Image not found: {image_path}", file=sys.stderr)
        return 1

    features = extract_features(image_path, SplitConfig(analysis_width=args.analysis_width))
    print(json.dumps(features.to_dict(), indent=2))
    return 0


def cmd_label(args: argparse.Namespace) -> int:
    """Label images with the vision model."""
    from .config import OracleConfig, SplitConfig
    from .oracle import VisionSplitOracle
    from .pipeline import LabelingPipeline, PageImage

    images = collect_images(args.images)
    if not images:
        print("No images found", file=sys.stderr)
        return 1

    pages = [
        PageImage(
            page_id=f"{args.book_id}:{path.stem}" if args.book_id else path.stem,
            image_ref=str(path),
            book_id=args.book_id,
            page_number=index + 1,
            total_pages=len(images),
            book_page_count=args.book_pages,
        )
        for index, path in enumerate(images)
    ]

    oracle_config = OracleConfig.from_env()
    if args.api_url:
        oracle_config.api_url = args.api_url
    if args.model:
        oracle_config.model = args.model

    config = SplitConfig(label_retries=args.retries)
    output = Path(args.output)

    with VisionSplitOracle(oracle_config) as oracle:
        result = LabelingPipeline(oracle, config).run(pages, dataset_path=output, resume=not args.no_resume)

    print(f"✓ Labeled {result.labeled_count} pages -> {output}")
    if result.skipped:
        print(f"  Skipped {result.skipped} pages already in the dataset")
    if result.failures:
        print(f"⚠ {len(result.failures)} pages excluded:")
        for failure in result.failures:
            print(f"  {failure.page_id} ({failure.stage}): {failure.error_message}")
        return 1
    return 0


def cmd_train(args: argparse.Namespace) -> int:
    """Train a model from a dataset and register it."""
    import numpy as np

    from .config import SplitConfig
    from .dataset import DatasetError, load_examples, summarize_examples
    from .model import ModelRegistry
    from .pipeline import train_and_register
    from .trainer import InsufficientDataError

    dataset = Path(args.dataset)
    if not dataset.exists():
        print(f"Dataset not found: {dataset}", file=sys.stderr)
        return 1

    try:
        examples = load_examples(dataset)
    except DatasetError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    summary = summarize_examples(examples)
    print(f"Dataset: {summary['valid']}/{summary['total']} valid examples from {len(summary['by_book'])} books")

    config = SplitConfig(learning_rate=args.learning_rate, epochs=args.epochs)
    rng = np.random.default_rng(args.seed)

    try:
        record = train_and_register(examples, ModelRegistry(Path(args.models)), config, rng, activate=not args.no_activate)
    except InsufficientDataError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    print(f"✓ Trained model {record.model_id} on {record.training_size} examples")
    print(f"  Validation RMSE: {record.validation_rmse:.1f} (0-1000 scale)")
    if not args.no_activate:
        print("  Now active")
    return 0


def cmd_import_splits(args: argparse.Namespace) -> int:
    """Add accepted manual splits to a dataset, retraining when it is large enough."""
    import numpy as np

    from .config import SplitConfig
    from .dataset import DatasetError
    from .model import ModelRegistry
    from .pipeline import PageImage, UserSplit, import_user_splits

    splits_file = Path(args.splits)
    if not splits_file.exists():
        print(f"Splits file not found: {splits_file}", file=sys.stderr)
        return 1

    try:
        records = json.loads(splits_file.read_text(encoding="utf-8"))
        splits = [
            UserSplit(
                page=PageImage(
                    page_id=str(record["page_id"]),
                    image_ref=str(record["image_ref"]),
                    book_id=record.get("book_id", args.book_id),
                    page_number=record.get("page_number"),
                    total_pages=record.get("total_pages"),
                    book_page_count=record.get("book_page_count"),
                ),
                crop_x_end=int(record["crop_x_end"]),
            )
            for record in records
        ]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        print(f"✗ Invalid splits file {splits_file}: {e}", file=sys.stderr)
        return 1

    try:
        config = SplitConfig(retrain_threshold=args.retrain_after)
    except ValueError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    registry = ModelRegistry(Path(args.models)) if args.models else None
    output = Path(args.output)

    try:
        result = import_user_splits(splits, output, config, registry, np.random.default_rng(args.seed))
    except DatasetError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    print(f"✓ Imported {result.imported_count} accepted splits -> {output}")
    if result.skipped:
        print(f"  Skipped {result.skipped} pages already in the dataset")
    print(f"  Dataset: {result.dataset_total} examples ({result.user_split_total} manual splits)")
    if result.model is not None:
        print(f"✓ Retrained model {result.model.model_id} on {result.model.training_size} examples")
        print(f"  Validation RMSE: {result.model.validation_rmse:.1f} (0-1000 scale)")
    elif result.retrain_error:
        print(f"✗ Retrain failed: {result.retrain_error}", file=sys.stderr)

    if result.failures:
        print(f"⚠ {len(result.failures)} pages excluded:")
        for failure in result.failures:
            print(f"  {failure.page_id} ({failure.stage}): {failure.error_message}")
    return 1 if result.failures or result.retrain_error else 0


def cmd_predict(args: argparse.Namespace) -> int:
    """Predict split positions for images."""
    from .config import SplitConfig
    from .model import ModelNotFoundError, ModelRegistry
    from .pipeline import SplitDetector

    images = collect_images(args.images)
    if not images:
        print("No images found", file=sys.stderr)
        return 1

    model = None
    if args.models:
        try:
            model = ModelRegistry(Path(args.models)).active()
        except ModelNotFoundError as e:
            print(f"✗ {e}", file=sys.stderr)
            return 1

    try:
        detector = SplitDetector(model=model, method=args.method, config=SplitConfig())
    except ValueError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    failed = 0
    for path in images:
        try:
            detection = detector.detect(path)
        except (OSError, ValueError) as e:
            print(f"✗ {path.name}: {e}", file=sys.stderr)
            failed += 1
            continue

        kind = "spread" if detection.is_two_page_spread else "single"
        line = f"{path.name}: {detection.split_position} ({kind}, {detection.confidence.value}, {detection.method})"
        if detection.text_warning:
            line += f" ⚠ {detection.text_warning}"
        print(line)

    return 1 if failed else 0


def cmd_models(args: argparse.Namespace) -> int:
    """List models or change the active one."""
    from .model import ModelNotFoundError, ModelRegistry

    registry = ModelRegistry(Path(args.models))

    if args.activate:
        try:
            registry.activate(args.activate)
        except ModelNotFoundError as e:
            print(f"✗ {e}", file=sys.stderr)
            return 1
        print(f"✓ Active model: {args.activate}")
        return 0

    records = registry.list_records()
    if not records:
        print("No models trained yet")
        return 0

    active_id = registry.active_id()
    for record in records:
        marker = "*" if record.model_id == active_id else " "
        print(
            f"{marker} {record.model_id}  {record.trained_at:%Y-%m-%d %H:%M}  "
            f"n={record.training_size}  RMSE={record.validation_rmse:.1f}"
        )
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP service."""
    import uvicorn

    from .server import create_app

    app = create_app(Path(args.models))
    print(f"Starting server on port {args.port}...")
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="spreadsplit",
        description="Find where to split scanned two-page book spreads",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # features command
    p_features = subparsers.add_parser("features", help="Print the feature vector of an image")
    p_features.add_argument("image", help="Image file")
    p_features.add_argument("--analysis-width", type=int, default=500, help="Width images are resized to")
    p_features.set_defaults(func=cmd_features)

    # label command
    p_label = subparsers.add_parser(
        "label",
        help="Label images with the vision model",
        description="Ask the vision model for split positions and store training examples",
    )
    p_label.add_argument("images", nargs="+", help="Image files or directories")
    p_label.add_argument("-o", "--output", default="./splits.jsonl", help="Dataset file (JSON Lines)")
    p_label.add_argument("--book-id", help="Book the images belong to")
    p_label.add_argument("--book-pages", type=int, help="Page count of the book")
    p_label.add_argument("--api-url", help="Chat-completions endpoint (default: $SPLIT_ORACLE_URL)")
    p_label.add_argument("--model", help="Vision model name (default: $SPLIT_ORACLE_MODEL)")
    p_label.add_argument("--retries", type=int, default=3, help="Attempts per page")
    p_label.add_argument("--no-resume", action="store_true", help="Relabel pages already in the dataset")
    p_label.set_defaults(func=cmd_label)

    # train command
    p_train = subparsers.add_parser("train", help="Train a model from a dataset")
    p_train.add_argument("dataset", help="Dataset file (JSON Lines)")
    p_train.add_argument("--models", default="./models", help="Model registry directory")
    p_train.add_argument("--seed", type=int, help="Seed for the train/validation shuffle")
    p_train.add_argument("--epochs", type=int, default=500, help="Gradient descent epochs")
    p_train.add_argument("--learning-rate", type=float, default=1e-4, help="Learning rate")
    p_train.add_argument("--no-activate", action="store_true", help="Store the model without activating it")
    p_train.set_defaults(func=cmd_train)

    # import-splits command
    p_import = subparsers.add_parser(
        "import-splits",
        help="Add accepted manual splits to a dataset",
        description="Store accepted manual splits as training examples and retrain once the dataset is large enough",
    )
    p_import.add_argument("splits", help="JSON file: list of {page_id, image_ref, crop_x_end, ...}")
    p_import.add_argument("-o", "--output", default="./splits.jsonl", help="Dataset file (JSON Lines)")
    p_import.add_argument("--book-id", help="Book for records that do not name one")
    p_import.add_argument("--models", help="Model registry directory (enables retraining)")
    p_import.add_argument("--retrain-after", type=int, default=20, help="Valid examples needed before retraining")
    p_import.add_argument("--seed", type=int, help="Seed for the train/validation shuffle")
    p_import.set_defaults(func=cmd_import_splits)

    # predict command
    p_predict = subparsers.add_parser("predict", help="Predict split positions")
    p_predict.add_argument("images", nargs="+", help="Image files or directories")
    p_predict.add_argument("--models", help="Model registry directory (uses the active model)")
    p_predict.add_argument(
        "--method",
        choices=["heuristic", "ml", "cascade"],
        default="cascade",
        help="Detection method",
    )
    p_predict.set_defaults(func=cmd_predict)

    # models command
    p_models = subparsers.add_parser("models", help="List or activate trained models")
    p_models.add_argument("--models", default="./models", help="Model registry directory")
    p_models.add_argument("--activate", metavar="MODEL_ID", help="Make this model active")
    p_models.set_defaults(func=cmd_models)

    # serve command
    p_serve = subparsers.add_parser("serve", help="Run the HTTP service")
    p_serve.add_argument("--models", default="./models", help="Model registry directory")
    p_serve.add_argument("--host", default="0.0.0.0", help="Bind address")
    p_serve.add_argument("--port", type=int, default=8788, help="Port")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
