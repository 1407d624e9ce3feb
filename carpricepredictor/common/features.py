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
Raw feature encoding for a vehicle observed at a target year.

Column layout (fixed per bundle):
    age, odometer, mileage_per_year, log_odometer, age^2,
    one-hot fuels..., one-hot transmissions...,
    age*log_odometer, mileage_per_year^2, age^3, mileage_per_year^3

The same encoder is used by the trainer (with the bundle's anchor year as the
target year) and by the prediction server (with the requested target year).
"""

from typing import List, Sequence

import numpy as np
import pandas as pd

from .bundle_constants import DEFAULT_TARGET_YEAR

BASE_FEATURES = ["age", "odometer", "mileage_per_year", "log_odometer", "age_sq"]
TAIL_FEATURES = ["age_x_log_odometer", "mileage_per_year_sq", "age_cu", "mileage_per_year_cu"]


def clean_category(value) -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return ""
    return str(value).strip().lower()


def feature_names(fuels: Sequence[str], transmissions: Sequence[str]) -> List[str]:
    return (
        BASE_FEATURES
        + [f"fuel_{f}" for f in fuels]
        + [f"transmission_{t}" for t in transmissions]
        + TAIL_FEATURES
    )


def feature_count(fuels: Sequence[str], transmissions: Sequence[str]) -> int:
    return len(BASE_FEATURES) + len(fuels) + len(transmissions) + len(TAIL_FEATURES)


def encode_manual_input(
    year: int,
    odometer: float,
    fuel: str,
    transmission: str,
    fuels: Sequence[str],
    transmissions: Sequence[str],
    target_year: int = DEFAULT_TARGET_YEAR,
) -> np.ndarray:
    """Encode one vehicle into the raw (unscaled) feature row."""
    age = float(max(0, int(target_year) - int(year)))
    odo = max(0.0, float(odometer))
    mileage_per_year = odo / (age + 1.0)
    log_odo = float(np.log(odo + 1.0))

    f = clean_category(fuel)
    t = clean_category(transmission)

    row = [age, odo, mileage_per_year, log_odo, age * age]
    row.extend(1.0 if f == known else 0.0 for known in fuels)
    row.extend(1.0 if t == known else 0.0 for known in transmissions)
    row.extend([
        age * log_odo,
        mileage_per_year * mileage_per_year,
        age * age * age,
        mileage_per_year * mileage_per_year * mileage_per_year,
    ])
    return np.asarray(row, dtype=float)


def encode_frame(
    df: pd.DataFrame,
    fuels: Sequence[str],
    transmissions: Sequence[str],
    target_year: int = DEFAULT_TARGET_YEAR,
) -> np.ndarray:
    """Vectorised encode_manual_input over a frame with year/odometer/fuel/transmission columns."""
    if df.empty:
        return np.zeros((0, feature_count(fuels, transmissions)))

    years = pd.to_numeric(df["year"], errors="coerce").fillna(target_year).to_numpy(dtype=float)
    odometers = pd.to_numeric(df["odometer"], errors="coerce").fillna(0.0).to_numpy(dtype=float)

    age = np.maximum(0.0, float(target_year) - np.floor(years))
    odo = np.maximum(0.0, odometers)
    mpy = odo / (age + 1.0)
    log_odo = np.log(odo + 1.0)

    fuel_col = df["fuel"].map(clean_category).to_numpy()
    trans_col = df["transmission"].map(clean_category).to_numpy()

    columns = [age, odo, mpy, log_odo, age * age]
    columns.extend((fuel_col == f).astype(float) for f in fuels)
    columns.extend((trans_col == t).astype(float) for t in transmissions)
    columns.extend([age * log_odo, mpy * mpy, age * age * age, mpy * mpy * mpy])
    return np.column_stack(columns)
