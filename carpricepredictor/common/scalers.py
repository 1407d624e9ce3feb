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
Z-score scalers for the feature matrix and the price labels.

Both scalers use population statistics. Their fitted statistics are exported
as frozen state objects so bundles can persist and rehydrate them without
touching private attributes.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .bundle_constants import STATE_VERSION
from .errors import NotFittedError, ShapeMismatchError

LABEL_STD_FLOOR = 1e-12


@dataclass(frozen=True)
class FeatureScalerState:
    means: Tuple[float, ...]
    stds: Tuple[float, ...]

    @property
    def n_features(self) -> int:
        return len(self.means)

    def to_dict(self) -> dict:
        return {
            "state_version": STATE_VERSION,
            "means": list(self.means),
            "stds": list(self.stds),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'FeatureScalerState':
        means = tuple(float(v) for v in data["means"])
        stds = tuple(float(v) for v in data["stds"])
        if len(means) != len(stds):
            raise ShapeMismatchError(len(means), len(stds), what="feature stds")
        return cls(means=means, stds=stds)


@dataclass(frozen=True)
class LabelScalerState:
    mean: float
    std: float
    use_log: bool

    def to_dict(self) -> dict:
        return {
            "state_version": STATE_VERSION,
            "mean": self.mean,
            "std": self.std,
            "use_log": self.use_log,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LabelScalerState':
        return cls(mean=float(data["mean"]), std=float(data["std"]), use_log=bool(data["use_log"]))


class FeatureScaler:
    """Per-column z-score scaler; zero-std columns scale to a constant 0.0."""

    def __init__(self):
        self._means: Optional[np.ndarray] = None
        self._stds: Optional[np.ndarray] = None

    @property
    def is_fitted(self) -> bool:
        return self._means is not None

    @property
    def means(self) -> np.ndarray:
        self._check_fitted()
        return self._means

    @property
    def stds(self) -> np.ndarray:
        self._check_fitted()
        return self._stds

    @property
    def n_features(self) -> int:
        self._check_fitted()
        return len(self._means)

    def fit(self, X) -> 'FeatureScaler':
        X = np.asarray(X, dtype=float)
        if X.ndim != 2:
            raise ValueError(f"Expected a 2-D feature matrix, got {X.ndim} dimension(s)")
        n = X.shape[0]
        means = X.sum(axis=0) / max(1, n)
        stds = np.sqrt(((X - means) ** 2).sum(axis=0) / max(1, n))
        self._means = means
        self._stds = stds
        return self

    def fit_transform(self, X) -> np.ndarray:
        return self.fit(X).transform(X)

    def transform(self, X) -> np.ndarray:
        self._check_fitted()
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            return self.transform_row(X)
        if X.shape[1] != len(self._means):
            raise ShapeMismatchError(len(self._means), X.shape[1])
        return self._scale(X)

    def transform_row(self, row) -> np.ndarray:
        self._check_fitted()
        row = np.asarray(row, dtype=float).ravel()
        if row.shape[0] != len(self._means):
            raise ShapeMismatchError(len(self._means), row.shape[0])
        return self._scale(row)

    def inverse_transform(self, Z) -> np.ndarray:
        self._check_fitted()
        Z = np.asarray(Z, dtype=float)
        width = Z.shape[-1] if Z.ndim else 0
        if width != len(self._means):
            raise ShapeMismatchError(len(self._means), width)
        return np.where(self._stds > 0, Z * self._stds + self._means, self._means)

    def _scale(self, X: np.ndarray) -> np.ndarray:
        positive = self._stds > 0
        safe_stds = np.where(positive, self._stds, 1.0)
        return np.where(positive, (X - self._means) / safe_stds, 0.0)

    def _check_fitted(self):
        if self._means is None:
            raise NotFittedError("FeatureScaler is not fitted.")

    def get_state(self) -> FeatureScalerState:
        self._check_fitted()
        return FeatureScalerState(
            means=tuple(float(v) for v in self._means),
            stds=tuple(float(v) for v in self._stds),
        )

    @classmethod
    def from_state(cls, state: FeatureScalerState) -> 'FeatureScaler':
        if len(state.means) != len(state.stds):
            raise ShapeMismatchError(len(state.means), len(state.stds), what="feature stds")
        scaler = cls()
        scaler._means = np.asarray(state.means, dtype=float)
        scaler._stds = np.asarray(state.stds, dtype=float)
        return scaler


class LabelScaler:
    """
    Z-score scaler for prices, optionally applied after a log(y + 1) transform.

    A degenerate label std is floored to a tiny positive value so that
    scaling never divides by zero.
    """

    def __init__(self, use_log: bool = True):
        self.use_log = use_log
        self._mean: Optional[float] = None
        self._std: Optional[float] = None

    @property
    def is_fitted(self) -> bool:
        return self._mean is not None

    @property
    def mean(self) -> float:
        self._check_fitted()
        return self._mean

    @property
    def std(self) -> float:
        self._check_fitted()
        return self._std

    def fit(self, y) -> 'LabelScaler':
        v = self._forward(np.asarray(y, dtype=float).ravel())
        n = v.shape[0]
        mean = float(v.sum() / max(1, n))
        std = float(np.sqrt(((v - mean) ** 2).sum() / max(1, n)))
        if not std > 0:
            std = LABEL_STD_FLOOR
        self._mean = mean
        self._std = std
        return self

    def fit_transform(self, y) -> np.ndarray:
        return self.fit(y).transform(y)

    def transform(self, y) -> np.ndarray:
        self._check_fitted()
        v = self._forward(np.asarray(y, dtype=float).ravel())
        return (v - self._mean) / self._std

    def inverse_transform(self, z) -> np.ndarray:
        self._check_fitted()
        v = np.asarray(z, dtype=float).ravel() * self._std + self._mean
        return np.expm1(v) if self.use_log else v

    def transform_value(self, value: float) -> float:
        return float(self.transform([value])[0])

    def inverse_transform_value(self, z: float) -> float:
        return float(self.inverse_transform([z])[0])

    def _forward(self, y: np.ndarray) -> np.ndarray:
        return np.log1p(y) if self.use_log else y

    def _check_fitted(self):
        if self._mean is None:
            raise NotFittedError("LabelScaler is not fitted.")

    def get_state(self) -> LabelScalerState:
        self._check_fitted()
        return LabelScalerState(mean=self._mean, std=self._std, use_log=self.use_log)

    @classmethod
    def from_state(cls, state: LabelScalerState) -> 'LabelScaler':
        scaler = cls(use_log=state.use_log)
        scaler._mean = float(state.mean)
        scaler._std = float(state.std) if state.std > 0 else LABEL_STD_FLOOR
        return scaler
