"""
Spread Split HTTP Service

Feature extraction, split prediction and training for the surrounding
application. Model records live in a registry directory on disk.
"""

import dataclasses
import logging
import math
import os
from pathlib import Path
from typing import Any

import httpx
import numpy as np
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .config import SplitConfig
from .dataset import DatasetError, TrainingExample
from .estimator import predict_with_details
from .features import FeatureSchemaError, FeatureVector, PageContext, extract_features
from .model import ModelNotFoundError, ModelRegistry
from .pipeline import PageImage, UserSplit, import_user_splits, load_image, train_and_register
from .trainer import InsufficientDataError

logger = logging.getLogger(__name__)


class FeaturesRequest(BaseModel):
    image_ref: str = Field(alias="imageRef")
    page_number: int | None = Field(default=None, alias="pageNumber")
    total_pages: int | None = Field(default=None, alias="totalPages")
    book_page_count: int | None = Field(default=None, alias="bookPageCount")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def context(self) -> PageContext:
        return PageContext(self.page_number, self.total_pages, self.book_page_count)


class PredictRequest(BaseModel):
    """Either a stored feature record or an image to extract one from."""

    features: dict[str, Any] | None = None
    image_ref: str | None = Field(default=None, alias="imageRef")
    page_number: int | None = Field(default=None, alias="pageNumber")
    total_pages: int | None = Field(default=None, alias="totalPages")
    book_page_count: int | None = Field(default=None, alias="bookPageCount")

    model_config = ConfigDict(populate_by_name=True)


class TrainRequest(BaseModel):
    examples: list[dict[str, Any]]
    seed: int | None = None
    activate: bool = True


class UserSplitEntry(BaseModel):
    page_id: str = Field(alias="pageId")
    image_ref: str = Field(alias="imageRef")
    crop_x_end: int = Field(alias="cropXEnd")
    book_id: str | None = Field(default=None, alias="bookId")
    page_number: int | None = Field(default=None, alias="pageNumber")
    total_pages: int | None = Field(default=None, alias="totalPages")
    book_page_count: int | None = Field(default=None, alias="bookPageCount")

    model_config = ConfigDict(populate_by_name=True)

    def to_user_split(self) -> UserSplit:
        page = PageImage(
            page_id=self.page_id,
            image_ref=self.image_ref,
            book_id=self.book_id,
            page_number=self.page_number,
            total_pages=self.total_pages,
            book_page_count=self.book_page_count,
        )
        return UserSplit(page=page, crop_x_end=self.crop_x_end)


class ImportSplitsRequest(BaseModel):
    """Accepted manual splits, optionally followed by a retrain."""

    splits: list[UserSplitEntry]
    retrain: bool = True
    retrain_threshold: int | None = Field(default=None, alias="retrainThreshold", ge=1)
    seed: int | None = None

    model_config = ConfigDict(populate_by_name=True)


def _rounded(value: float, digits: int | None = None) -> float | None:
    # JSON has no infinities
    return round(value, digits) if math.isfinite(value) else None


def key_features(vector: FeatureVector) -> dict[str, Any]:
    """The feature values a reviewer looks at first."""
    return {
        "aspectRatio": _rounded(vector.aspect_ratio, 2),
        "gutterType": vector.gutter_type.value,
        "hasInvertedGutter": vector.has_inverted_gutter,
        "edgeCenterDiff": _rounded(vector.edge_center_diff),
        "gutterCandidate": _rounded(vector.gutter_candidate),
        "gutterWidth": vector.gutter_width,
        "textGapCenter": _rounded(vector.text_gap_center),
        "textGapWidth": _rounded(vector.text_gap_width),
        "leftTextEndIdx": _rounded(vector.left_text_end_idx),
        "rightTextStartIdx": _rounded(vector.right_text_start_idx),
    }


def create_app(
    registry_root: Path | None = None,
    config: SplitConfig | None = None,
    dataset_path: Path | None = None,
) -> FastAPI:
    """Build the service around one model registry and one dataset file.

    Args:
        registry_root: Registry directory (default: $SPLIT_MODELS_DIR or ./models)
        config: Feature and training parameters
        dataset_path: JSON Lines file receiving imported manual splits
            (default: $SPLIT_DATASET or examples.jsonl in the registry)
    """
    registry = ModelRegistry(Path(registry_root or os.getenv("SPLIT_MODELS_DIR", "./models")))
    config = config or SplitConfig()
    dataset = Path(dataset_path or os.getenv("SPLIT_DATASET") or registry.root / "examples.jsonl")

    app = FastAPI(title="Spread Split Server")

    # CORS for the review front end
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def features_for(image_ref: str, context: PageContext) -> FeatureVector:
        try:
            with load_image(image_ref) as image:
                return extract_features(image, config, context)
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail=f"Image not found: {image_ref}")
        except httpx.HTTPError as e:
            raise HTTPException(status_code=404, detail=f"Image could not be fetched: {e}")
        except (OSError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Unreadable image: {e}")

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "registry": str(registry.root),
            "active_model": registry.active_id(),
            "dataset": str(dataset),
        }

    @app.post("/features")
    def features(request: FeaturesRequest):
        """Extract the feature vector of one image."""
        return features_for(request.image_ref, request.context).to_dict()

    @app.post("/predict")
    def predict(request: PredictRequest):
        """Predict a split position with the active model."""
        try:
            model = registry.active()
        except ModelNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        if model is None:
            raise HTTPException(status_code=400, detail="No trained model available")

        if request.features is not None:
            try:
                vector = FeatureVector.from_dict(request.features)
            except FeatureSchemaError as e:
                raise HTTPException(status_code=400, detail=str(e))
        elif request.image_ref:
            context = PageContext(request.page_number, request.total_pages, request.book_page_count)
            vector = features_for(request.image_ref, context)
        else:
            raise HTTPException(status_code=400, detail="Provide features or imageRef")

        try:
            prediction = predict_with_details(vector, model, config)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return {
            "splitPosition": prediction.position,
            "rawScore": prediction.raw_score,
            "clamped": prediction.clamped,
            "modelId": model.model_id,
            "contributions": prediction.contributions,
            "features": key_features(vector),
            "modelInfo": {
                "modelId": model.model_id,
                "trainingSize": model.training_size,
                "validationRMSE": round(model.validation_rmse, 2),
                "trainedAt": model.trained_at.isoformat(),
            },
        }

    @app.post("/train")
    def train(request: TrainRequest):
        """Train a model from labeled examples and store it.

        Unreadable examples are counted as invalid rather than failing the request.
        """
        examples = [TrainingExample.from_dict(record) for record in request.examples]

        rng = np.random.default_rng(request.seed)
        try:
            record = train_and_register(examples, registry, config, rng, activate=request.activate)
        except InsufficientDataError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return record.to_dict()

    @app.post("/examples/user-splits")
    def import_splits(request: ImportSplitsRequest):
        """Store accepted manual splits and retrain once the dataset is large enough."""
        import_config = config
        if request.retrain_threshold is not None:
            import_config = dataclasses.replace(config, retrain_threshold=request.retrain_threshold)

        try:
            result = import_user_splits(
                [entry.to_user_split() for entry in request.splits],
                dataset,
                import_config,
                registry if request.retrain else None,
                np.random.default_rng(request.seed),
            )
        except DatasetError as e:
            raise HTTPException(status_code=500, detail=str(e))

        retrain = None
        if result.model is not None:
            retrain = {
                "success": True,
                "modelId": result.model.model_id,
                "trainingSize": result.model.training_size,
                "validationRMSE": round(result.model.validation_rmse, 2),
            }
        elif result.retrain_error:
            retrain = {"success": False, "error": result.retrain_error}

        return {
            "imported": result.imported_count,
            "skipped": result.skipped,
            "failures": [
                {"pageId": f.page_id, "stage": f.stage, "error": f.error_message} for f in result.failures
            ],
            "total": {"allExamples": result.dataset_total, "userSplits": result.user_split_total},
            "retrain": retrain,
        }

    @app.get("/model")
    def active_model():
        """The active model record."""
        try:
            record = registry.active()
        except ModelNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        if record is None:
            raise HTTPException(status_code=404, detail="No active model")
        return record.to_dict()

    @app.get("/models")
    def list_models():
        active_id = registry.active_id()
        return [
            {**record.to_dict(), "active": record.model_id == active_id}
            for record in registry.list_records()
        ]

    @app.post("/models/{model_id}/activate")
    def activate_model(model_id: str):
        try:
            registry.activate(model_id)
        except ModelNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"active_model": model_id}

    return app


def main() -> None:
    import uvicorn

    port = int(os.getenv("SPLIT_PORT", "8788"))
    print(f"Starting server on port {port}...")
    uvicorn.run(create_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
