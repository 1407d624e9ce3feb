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
Shared fixtures: small synthetic listings and fully fitted model bundles.
"""

import numpy as np
import pandas as pd
import pytest

from ..common.bundle_constants import LINEAR_KEY, RIDGE_GB_KEY, RIDGE_KEY, RIDGE_RF_KEY
from ..common.features import encode_frame
from ..common.metrics import TrainingTime, evaluate
from ..common.scalers import FeatureScaler, LabelScaler
from ..training.gradient_boosting import GradientBoostingRegressor
from ..training.model_bundle import BundleRegistry, CarMeta, ModelBundle, PreprocessState
from ..training.random_forest import RandomForestRegressor
from ..training.residual_stacking import ResidualStack, compute_residuals
from ..training.ridge import LinearRegression, RidgeRegression

FUELS = ("diesel", "gas")
TRANSMISSIONS = ("automatic", "manual")
ANCHOR_YEAR = 2025


def synthetic_listings(n=160, seed=0, make="Toyota", model="Camry") -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    year = rng.integers(2005, 2021, size=n)
    odometer = rng.uniform(5_000, 250_000, size=n).round()
    fuel = rng.choice(list(FUELS), size=n)
    transmission = rng.choice(list(TRANSMISSIONS), size=n)
    age = ANCHOR_YEAR - year
    price = (30_000 * 0.9 ** age - 0.03 * odometer
             + np.where(fuel == "diesel", 1_500, 0)
             + np.where(transmission == "automatic", 800, 0)
             + rng.normal(scale=500, size=n))
    return pd.DataFrame({
        "year": year,
        "price": np.maximum(price, 500.0).round(),
        "odometer": odometer,
        "manufacturer": make,
        "model": model,
        "fuel": fuel,
        "transmission": transmission,
    })


def build_bundle(make="Toyota", model="Camry", seed=0, price_factor=1.0) -> ModelBundle:
    rows = synthetic_listings(seed=seed, make=make, model=model)
    rows["price"] = rows["price"] * price_factor
    X_raw = encode_frame(rows, FUELS, TRANSMISSIONS, target_year=ANCHOR_YEAR)
    y_raw = rows["price"].to_numpy(dtype=float)

    feature_scaler = FeatureScaler()
    label_scaler = LabelScaler()
    X = feature_scaler.fit_transform(X_raw)
    y = label_scaler.fit_transform(y_raw)

    linear = LinearRegression().fit(X, y)
    ridge = RidgeRegression(lam=0.1).fit(X, y)
    residuals = compute_residuals(ridge, X, y)
    rf = RandomForestRegressor(n_estimators=4, max_depth=3, random_seed=seed, n_jobs=1).fit(X, residuals)
    gb = GradientBoostingRegressor(n_estimators=8, max_depth=2, random_seed=seed).fit(X, residuals)

    def metrics(z):
        return evaluate(y_raw, label_scaler.inverse_transform(z))

    return ModelBundle(
        car=CarMeta(make=make, model=model, min_year=int(rows["year"].min()), max_year=int(rows["year"].max())),
        preprocess=PreprocessState(
            fuels=FUELS,
            transmissions=TRANSMISSIONS,
            feature_scaler=feature_scaler.get_state(),
            label_scaler=label_scaler.get_state(),
            anchor_target_year=ANCHOR_YEAR,
            total_rows=len(rows),
        ),
        linear=linear.get_state(),
        ridge=ridge.get_state(),
        rf=rf.get_state(),
        gb=gb.get_state(),
        metrics={
            LINEAR_KEY: metrics(linear.predict(X)),
            RIDGE_KEY: metrics(ridge.predict(X)),
            RIDGE_RF_KEY: metrics(ResidualStack(ridge, rf).predict(X)),
            RIDGE_GB_KEY: metrics(ResidualStack(ridge, gb).predict(X)),
        },
        training_times={"Ridge": TrainingTime(total_ms=12.0, trials=40, mean_trial_ms=0.3)},
    )


@pytest.fixture(scope="session")
def toyota_bundle() -> ModelBundle:
    return build_bundle("Toyota", "Camry", seed=0)


@pytest.fixture(scope="session")
def ford_bundle() -> ModelBundle:
    return build_bundle("Ford", "F-150", seed=1, price_factor=1.5)


@pytest.fixture
def processed_dir(tmp_path, toyota_bundle, ford_bundle):
    """A bundle directory holding the Toyota and Ford bundles."""
    registry = BundleRegistry(tmp_path / "processed")
    registry.save(toyota_bundle)
    registry.save(ford_bundle)
    return registry.processed_dir
