"""
Common utilities shared by the trainer and the prediction server.

- bundle_constants: bundle file naming and algorithm keys
- errors: exception taxonomy
- scalers: feature z-scoring and log label scaling
- metrics: MSE/RMSE/MAE/R² and training telemetry
- features: raw feature encoding for one vehicle or a frame
- naming: make/model normalisation and bundle ids
"""

from .errors import (
    CarPriceError,
    NotFittedError,
    ShapeMismatchError,
    SearchError,
    BundleLoadError,
    BundleNotFoundError,
    LoadTimeoutError,
)
from .scalers import FeatureScaler, LabelScaler
from .metrics import AlgorithmMetrics, TrainingTime, evaluate

__all__ = [
    # Errors
    'CarPriceError',
    'NotFittedError',
    'ShapeMismatchError',
    'SearchError',
    'BundleLoadError',
    'BundleNotFoundError',
    'LoadTimeoutError',
    # Scalers
    'FeatureScaler',
    'LabelScaler',
    # Metrics
    'AlgorithmMetrics',
    'TrainingTime',
    'evaluate',
]
