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

import numpy as np
import pandas as pd
import pytest

from ..training.dataset import group_counts, load_vehicles, rows_for, split, to_matrix, vocabulary
from .conftest import synthetic_listings


def _write(tmp_path, df, name="vehicles.csv"):
    path = tmp_path / name
    df.to_csv(path, index=False)
    return path


class TestLoadVehicles:

    def test_drops_unusable_rows(self, tmp_path):
        df = pd.DataFrame({
            "id": [1, 2, 3, 4, 5],
            "year": [2015, None, 2018, 2019, 2012],
            "price": [9000, 8000, 0, 12000, 5000],
            "odometer": [80000, 90000, 10000, None, 150000],
            "manufacturer": ["ford", "ford", "bmw", "bmw", " Ford "],
            "model": ["focus", "focus", "x3", "x3", "Focus"],
            "fuel": ["gas", "gas", "diesel", "diesel", None],
            "transmission": ["manual", "manual", "automatic", "automatic", "manual"],
        })
        vehicles = load_vehicles(_write(tmp_path, df))

        assert list(vehicles["price"]) == [9000, 5000]
        assert vehicles["year"].dtype.kind == "i"
        assert vehicles.loc[1, "manufacturer"] == "Ford"
        assert vehicles.loc[1, "fuel"] == ""

    def test_max_rows(self, tmp_path):
        vehicles = load_vehicles(_write(tmp_path, synthetic_listings(n=30)), max_rows=10)
        assert len(vehicles) == 10

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_vehicles(tmp_path / "missing.csv")

    def test_missing_column(self, tmp_path):
        df = synthetic_listings(n=5).drop(columns=["fuel"])
        with pytest.raises(ValueError, match="fuel"):
            load_vehicles(_write(tmp_path, df))


def test_group_counts_and_rows_for():
    df = pd.concat([
        synthetic_listings(n=60, make="Toyota", model="Camry LE"),
        synthetic_listings(n=55, make="toyota ", model="le  camry"),
        synthetic_listings(n=70, make="Ford", model="Focus"),
        synthetic_listings(n=10, make="BMW", model="X3"),
    ], ignore_index=True)

    counts = group_counts(df, min_count=50)
    assert counts.to_dict("records") == [
        {"make": "toyota", "model": "camry le", "count": 115},
        {"make": "ford", "model": "focus", "count": 70},
    ]
    assert len(rows_for(df, "TOYOTA", "Camry LE")) == 115
    assert rows_for(df, "bmw", "x5").empty


def test_vocabulary_is_sorted_lowercase_and_non_blank():
    assert vocabulary(pd.Series(["Gas", "diesel", "", " gas ", None])) == ["diesel", "gas"]


def test_to_matrix():
    rows = synthetic_listings(n=40)
    X, y, fuels, transmissions = to_matrix(rows, target_year=2025)
    assert fuels == ["diesel", "gas"]
    assert transmissions == ["automatic", "manual"]
    assert X.shape == (40, 13)
    np.testing.assert_array_equal(y, rows["price"].to_numpy(dtype=float))


def test_split_is_ordered():
    X = np.arange(20).reshape(10, 2)
    y = np.arange(10)
    tx, ty, vx, vy = split(X, y, 0.8)
    assert tx.shape == (8, 2) and vx.shape == (2, 2)
    np.testing.assert_array_equal(vy, [8, 9])
