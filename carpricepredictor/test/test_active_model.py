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
Tests for the serving snapshot and its atomic hot-swap.
"""

import dataclasses
import threading

import numpy as np
import pytest

from ..common.errors import BundleLoadError, NotFittedError, ShapeMismatchError
from ..common.scalers import FeatureScalerState
from ..prediction.active_model import ActiveModelSet, build_loaded_models
from ..training.model_bundle import save_bundle
from ..training.residual_stacking import ResidualStack
from ..training.random_forest import RandomForestRegressor
from ..training.ridge import RidgeRegression


class TestBuildLoadedModels:

    def test_exposes_served_algorithms_only(self, toyota_bundle):
        snapshot = build_loaded_models(toyota_bundle)
        row = snapshot.encode_row(2015, 90000, "gas", "manual", 2025)
        predictions = snapshot.predict_all_scaled(row)

        assert set(predictions) == {"linear", "ridge", "ridge_rf", "ridge_gb"}
        assert snapshot.bundle_key == "toyota_camry"
        assert snapshot.n_features == 13

    def test_composed_prediction_is_ridge_plus_residual(self, toyota_bundle):
        snapshot = build_loaded_models(toyota_bundle)
        row = snapshot.encode_row(2012, 120000, "diesel", "automatic", 2025)

        ridge = RidgeRegression.from_state(toyota_bundle.ridge)
        rf = RandomForestRegressor.from_state(toyota_bundle.rf)
        expected = ResidualStack(ridge, rf).predict_row(row)
        assert snapshot.predict_all_scaled(row)["ridge_rf"] == pytest.approx(expected)

    def test_prices_are_positive_and_plausible(self, toyota_bundle):
        snapshot = build_loaded_models(toyota_bundle)
        row = snapshot.encode_row(2018, 40000, "gas", "automatic", 2025)
        for z in snapshot.predict_all_scaled(row).values():
            assert 1000 < snapshot.to_price(z) < 60000

    def test_row_width_mismatch(self, toyota_bundle):
        snapshot = build_loaded_models(toyota_bundle)
        with pytest.raises(ShapeMismatchError):
            snapshot.predict_all_scaled(np.zeros(12))

    def test_scaler_width_must_match_vocabularies(self, toyota_bundle):
        state = toyota_bundle.preprocess.feature_scaler
        narrow = FeatureScalerState(means=state.means[:-1], stds=state.stds[:-1])
        bad = dataclasses.replace(toyota_bundle,
                                  preprocess=dataclasses.replace(toyota_bundle.preprocess, feature_scaler=narrow))
        with pytest.raises(ShapeMismatchError):
            build_loaded_models(bad)

    def test_learner_width_must_match_scaler(self, toyota_bundle):
        ridge = dataclasses.replace(toyota_bundle.ridge, weights=toyota_bundle.ridge.weights[:5])
        with pytest.raises(ShapeMismatchError):
            build_loaded_models(dataclasses.replace(toyota_bundle, ridge=ridge))

    def test_residual_learner_without_ridge_is_not_served(self, toyota_bundle):
        snapshot = build_loaded_models(dataclasses.replace(toyota_bundle, ridge=None))
        row = snapshot.encode_row(2015, 50000, "gas", "manual", 2025)
        assert set(snapshot.predict_all_scaled(row)) == {"linear"}

    def test_bundle_without_linear_models_rejected(self, toyota_bundle):
        with pytest.raises(BundleLoadError):
            build_loaded_models(dataclasses.replace(toyota_bundle, linear=None, ridge=None))


class TestActiveModelSet:

    def test_empty_set_raises(self):
        active = ActiveModelSet()
        assert not active.is_loaded
        with pytest.raises(NotFittedError, match="No models loaded."):
            active.predict_all_scaled(np.zeros(13))

    def test_load_from_bundle_installs_snapshot(self, toyota_bundle):
        active = ActiveModelSet()
        snapshot = active.load_from_bundle(toyota_bundle)
        assert active.current is snapshot
        assert active.is_loaded

    def test_load_from_path(self, tmp_path, ford_bundle):
        path = save_bundle(ford_bundle, tmp_path / "ford.json")
        active = ActiveModelSet()
        snapshot = active.load_from_path(path, bundle_key="custom")
        assert snapshot.bundle_key == "custom"
        assert snapshot.car.model == "F-150"

    def test_load_from_corrupt_path_raises(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("nope")
        with pytest.raises(BundleLoadError):
            ActiveModelSet().load_from_path(path)

    def test_failed_load_keeps_previous_state(self, toyota_bundle):
        active = ActiveModelSet()
        before = active.load_from_bundle(toyota_bundle)

        broken = dataclasses.replace(
            toyota_bundle, gb=dataclasses.replace(toyota_bundle.gb, n_features=3))
        with pytest.raises(ShapeMismatchError):
            active.load_from_bundle(broken)
        assert active.current is before

    def test_clear(self, toyota_bundle):
        active = ActiveModelSet()
        active.load_from_bundle(toyota_bundle)
        active.clear()
        assert active.current is None

    def test_readers_see_whole_snapshots_during_swaps(self, toyota_bundle, ford_bundle):
        toyota = build_loaded_models(toyota_bundle)
        ford = build_loaded_models(ford_bundle)
        row = toyota.encode_row(2016, 80000, "gas", "manual", 2025)
        expected = {
            toyota.bundle_key: toyota.predict_all_scaled(row),
            ford.bundle_key: ford.predict_all_scaled(row),
        }

        active = ActiveModelSet()
        active.install(toyota)
        stop = threading.Event()
        failures = []

        def reader():
            while not stop.is_set():
                snapshot = active.current
                got = snapshot.predict_all_scaled(row)
                if got != expected[snapshot.bundle_key]:
                    failures.append((snapshot.bundle_key, got))

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for t in readers:
            t.start()
        for i in range(200):
            active.install(ford if i % 2 == 0 else toyota)
        stop.set()
        for t in readers:
            t.join()

        assert failures == []
