"""
spreadsplit - Find where to split scanned two-page book spreads

A pipeline for:
1. Profiling the columns of a scanned spread
2. Describing the candidate gutter as a fixed feature vector
3. Labeling training spreads with a vision-language model
4. Training a small linear estimator on the labels and on accepted manual splits
5. Predicting split positions without any remote calls
"""

__version__ = "1.0.0"
__author__ = "spreadsplit"

from .config import OracleConfig, SplitConfig
from .estimator import predict
from .features import FeatureVector, extract_features
from .model import ModelRecord, ModelRegistry
from .pipeline import LabelingPipeline, SplitDetector, import_user_splits
from .trainer import train_model

__all__ = [
    "FeatureVector",
    "LabelingPipeline",
    "ModelRecord",
    "ModelRegistry",
    "OracleConfig",
    "SplitConfig",
    "SplitDetector",
    "extract_features",
    "import_user_splits",
    "predict",
    "train_model",
]
