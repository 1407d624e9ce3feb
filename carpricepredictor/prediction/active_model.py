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
Serving-time model state.

A LoadedModels snapshot is built completely off to the side from a bundle
(scalers, learners, metrics), validated, and then published by a single
reference assignment. Predictions read the reference once and work on that
snapshot only, so an in-flight request sees either the complete old state or
the complete new state. Readers never take a lock; the lock below only
serialises writers.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from ..common.bundle_constants import (
    COMPOSED_ALGORITHMS,
    GB_KEY,
    LINEAR_KEY,
    RF_KEY,
    RIDGE_KEY,
)
from ..common.errors import BundleLoadError, NotFittedError, ShapeMismatchError
from ..common.features import encode_manual_input, feature_count
from ..common.metrics import AlgorithmMetrics, TrainingTime
from ..common.scalers import FeatureScaler, LabelScaler
from ..training.gradient_boosting import GradientBoostingRegressor
from ..training.model_bundle import CarMeta, ModelBundle, load_bundle
from ..training.random_forest import RandomForestRegressor
from ..training.residual_stacking import ResidualStack
from ..training.ridge import LinearRegression, RidgeRegression


@dataclass(frozen=True)
class LoadedModels:
    """Immutable snapshot of one loaded bundle (lock-free reads)."""
    bundle_key: str
    version: str
    trained_at: str
    car: CarMeta
    fuels: Tuple[str, ...]
    transmissions: Tuple[str, ...]
    anchor_target_year: int
    feature_scaler: FeatureScaler
    label_scaler: LabelScaler
    learners: Mapping[str, Any]
    composed: Mapping[str, ResidualStack]
    metrics: Mapping[str, AlgorithmMetrics]
    training_times: Mapping[str, TrainingTime]
    loaded_at: datetime

    @property
    def n_features(self) -> int:
        return self.feature_scaler.n_features

    def encode_row(self, year: int, odometer: float, fuel: str, transmission: str, target_year: int):
        raw = encode_manual_input(year, odometer, fuel, transmission,
                                  self.fuels, self.transmissions, target_year=target_year)
        return self.feature_scaler.transform_row(raw)

    def predict_all_scaled(self, row) -> Dict[str, float]:
        """
        Scaled prediction of every served algorithm for one scaled feature row.

        Direct learners (linear, ridge) predict as-is; residual learners are
        only reported through their ridge composition (ridge_rf, ridge_gb).
        """
        width = len(row)
        if width != self.n_features:
            raise ShapeMismatchError(self.n_features, width)

        out: Dict[str, float] = {}
        for key in (LINEAR_KEY, RIDGE_KEY):
            learner = self.learners.get(key)
            if learner is not None:
                out[key] = float(learner.predict_row(row))
        for key, stack in self.composed.items():
            out[key] = stack.predict_row(row)
        return out

    def to_price(self, z: float) -> float:
        return self.label_scaler.inverse_transform_value(z)


_LEARNER_TYPES = {
    LINEAR_KEY: LinearRegression,
    RIDGE_KEY: RidgeRegression,
    RF_KEY: RandomForestRegressor,
    GB_KEY: GradientBoostingRegressor,
}


def build_loaded_models(bundle: ModelBundle, bundle_key: Optional[str] = None) -> LoadedModels:
    """
    Rehydrate and validate every component of a bundle.

    Raises:
        ShapeMismatchError: If scaler width, vocabularies and learner feature counts disagree
        BundleLoadError: If the bundle holds no servable learner
    """
    feature_scaler = FeatureScaler.from_state(bundle.preprocess.feature_scaler)
    label_scaler = LabelScaler.from_state(bundle.preprocess.label_scaler)
    width = feature_scaler.n_features

    expected = feature_count(bundle.preprocess.fuels, bundle.preprocess.transmissions)
    if expected != width:
        raise ShapeMismatchError(expected, width, what="scaler columns")

    states = {LINEAR_KEY: bundle.linear, RIDGE_KEY: bundle.ridge, RF_KEY: bundle.rf, GB_KEY: bundle.gb}
    learners: Dict[str, Any] = {}
    for key, state in states.items():
        if state is None:
            continue
        learner = _LEARNER_TYPES[key].from_state(state)
        if learner.n_features != width:
            raise ShapeMismatchError(width, learner.n_features, what=f"features in '{key}'")
        learners[key] = learner

    composed: Dict[str, ResidualStack] = {}
    ridge = learners.get(RIDGE_KEY)
    if ridge is not None:
        for key, residual_key in COMPOSED_ALGORITHMS.items():
            if residual_key in learners:
                composed[key] = ResidualStack(ridge, learners[residual_key])

    if LINEAR_KEY not in learners and RIDGE_KEY not in learners:
        raise BundleLoadError(f"Bundle {bundle.bundle_id} has no linear or ridge model")

    return LoadedModels(
        bundle_key=bundle_key or bundle.bundle_id,
        version=bundle.version,
        trained_at=bundle.trained_at,
        car=bundle.car,
        fuels=tuple(bundle.preprocess.fuels),
        transmissions=tuple(bundle.preprocess.transmissions),
        anchor_target_year=bundle.preprocess.anchor_target_year,
        feature_scaler=feature_scaler,
        label_scaler=label_scaler,
        learners=MappingProxyType(learners),
        composed=MappingProxyType(composed),
        metrics=MappingProxyType(dict(bundle.metrics)),
        training_times=MappingProxyType(dict(bundle.training_times)),
        loaded_at=datetime.now(timezone.utc),
    )


class ActiveModelSet:
    """Holder of the currently served bundle, swapped atomically on hot-load."""

    def __init__(self):
        self._current: Optional[LoadedModels] = None
        self._swap_lock = threading.Lock()

    @property
    def current(self) -> Optional[LoadedModels]:
        return self._current

    @property
    def is_loaded(self) -> bool:
        return self._current is not None

    def predict_all_scaled(self, row) -> Dict[str, float]:
        snapshot = self._current
        if snapshot is None:
            raise NotFittedError("No models loaded.")
        return snapshot.predict_all_scaled(row)

    def install(self, snapshot: LoadedModels) -> LoadedModels:
        with self._swap_lock:
            previous = self._current
            self._current = snapshot
        logging.info(f"Hot-swapped active models: {previous.bundle_key if previous else '<empty>'} -> "
                     f"{snapshot.bundle_key} ({snapshot.version}, trained {snapshot.trained_at})")
        return snapshot

    def load_from_bundle(self, bundle: ModelBundle, bundle_key: Optional[str] = None) -> LoadedModels:
        """Build the new state from `bundle` and swap it in; on any error the old state stays."""
        return self.install(build_loaded_models(bundle, bundle_key))

    def load_from_path(self, path, bundle_key: Optional[str] = None) -> LoadedModels:
        return self.load_from_bundle(load_bundle(path), bundle_key)

    def clear(self):
        with self._swap_lock:
            self._current = None
