# Copyright 2025 The Kubernetes Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Regression metrics and training-time telemetry.

Metrics are always computed on de-scaled prices by the callers; the functions
here are plain numeric helpers over two equally long vectors.
"""

from dataclasses import dataclass, asdict
from typing import Optional

import numpy as np

from .errors import ShapeMismatchError


def _pair(truth, preds):
    truth = np.asarray(truth, dtype=float).ravel()
    preds = np.asarray(preds, dtype=float).ravel()
    if truth.shape[0] != preds.shape[0]:
        raise ShapeMismatchError(truth.shape[0], preds.shape[0], what="predictions")
    if truth.shape[0] == 0:
        raise ValueError("Cannot compute metrics on empty vectors")
    return truth, preds


def mean_squared_error(truth, preds) -> float:
    truth, preds = _pair(truth, preds)
    return float(np.mean((truth - preds) ** 2))


def root_mean_squared_error(truth, preds) -> float:
    return float(np.sqrt(mean_squared_error(truth, preds)))


def mean_absolute_error(truth, preds) -> float:
    truth, preds = _pair(truth, preds)
    return float(np.mean(np.abs(truth - preds)))


def r_squared(truth, preds) -> float:
    """1 - SS_res / SS_tot; a constant target scores 1.0 when matched exactly, else 0.0."""
    truth, preds = _pair(truth, preds)
    ss_res = float(np.sum((truth - preds) ** 2))
    ss_tot = float(np.sum((truth - truth.mean()) ** 2))
    if ss_tot == 0.0:
        return 1.0 if ss_res == 0.0 else 0.0
    return 1.0 - ss_res / ss_tot


@dataclass(frozen=True)
class AlgorithmMetrics:
    mse: float
    mae: float
    rmse: float
    r2: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'AlgorithmMetrics':
        # Older bundles only carry RMSE; MSE is derived from it.
        rmse = float(data.get("rmse", 0.0))
        mse = float(data["mse"]) if "mse" in data else rmse * rmse
        return cls(mse=mse, mae=float(data.get("mae", 0.0)), rmse=rmse, r2=float(data.get("r2", 0.0)))


def evaluate(truth, preds) -> AlgorithmMetrics:
    mse = mean_squared_error(truth, preds)
    return AlgorithmMetrics(
        mse=mse,
        mae=mean_absolute_error(truth, preds),
        rmse=float(np.sqrt(mse)),
        r2=r_squared(truth, preds),
    )


@dataclass(frozen=True)
class TrainingTime:
    """Wall-clock telemetry for one algorithm's training (search included)."""
    total_ms: Optional[float] = None
    trials: Optional[int] = None
    mean_trial_ms: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'TrainingTime':
        return cls(
            total_ms=data.get("total_ms"),
            trials=data.get("trials"),
            mean_trial_ms=data.get("mean_trial_ms"),
        )
