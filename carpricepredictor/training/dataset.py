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
Vehicle listing ingestion and matrix construction for training.

The raw CSV carries one listing per row; only the columns below are used.
Rows without a positive price, a year or an odometer reading are dropped.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from ..common.features import clean_category, encode_frame
from ..common.naming import normalize_name

VEHICLE_COLUMNS = ["year", "price", "odometer", "manufacturer", "model", "fuel", "transmission"]
NUMERIC_COLUMNS = ["year", "price", "odometer"]
TEXT_COLUMNS = ["manufacturer", "model", "fuel", "transmission"]


def load_vehicles(csv_path, max_rows: Optional[int] = None) -> pd.DataFrame:
    """
    Load usable listings from a vehicles CSV.

    Raises:
        FileNotFoundError: If the CSV does not exist
        ValueError: If a required column is missing
    """
    csv_path = Path(csv_path)
    if not csv_path.is_file():
        raise FileNotFoundError(f"Vehicles CSV not found: {csv_path}")

    df = pd.read_csv(csv_path, skipinitialspace=True, on_bad_lines="skip", low_memory=False)
    df.columns = [str(c).strip().lower() for c in df.columns]
    missing = [c for c in VEHICLE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Vehicles CSV {csv_path.name} is missing columns: {missing}")

    df = df[VEHICLE_COLUMNS].copy()
    for col in NUMERIC_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    for col in TEXT_COLUMNS:
        df[col] = df[col].where(df[col].notna(), "").astype(str).str.strip()

    total = len(df)
    usable = (df["price"] > 0) & df["year"].notna() & df["odometer"].notna()
    df = df[usable]
    if max_rows is not None:
        df = df.head(int(max_rows))
    df = df.reset_index(drop=True)
    df["year"] = df["year"].astype(int)

    logging.info(f"Loaded {len(df)} usable vehicles from {csv_path} ({total - int(usable.sum())} rows dropped)")
    return df


def with_normalized_names(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out["make_norm"] = out["manufacturer"].map(normalize_name)
    out["model_norm"] = out["model"].map(normalize_name)
    return out


def group_counts(df: pd.DataFrame, min_count: int = 50) -> pd.DataFrame:
    """
    Row count per normalised (make, model), most frequent first.

    Returns:
        Frame with columns make, model, count for pairs with at least `min_count` rows
    """
    named = with_normalized_names(df)
    named = named[(named["make_norm"] != "") & (named["model_norm"] != "")]
    counts = (
        named.groupby(["make_norm", "model_norm"]).size()
        .reset_index(name="count")
        .rename(columns={"make_norm": "make", "model_norm": "model"})
    )
    counts = counts[counts["count"] >= min_count]
    return counts.sort_values(["count", "make", "model"], ascending=[False, True, True]).reset_index(drop=True)


def rows_for(df: pd.DataFrame, make: str, model: str) -> pd.DataFrame:
    """Listings whose normalised make and model equal the given ones."""
    named = with_normalized_names(df)
    mask = (named["make_norm"] == normalize_name(make)) & (named["model_norm"] == normalize_name(model))
    return df[mask.to_numpy()].reset_index(drop=True)


def vocabulary(values: pd.Series) -> List[str]:
    """Sorted distinct non-blank lowercased categories."""
    return sorted({v for v in values.map(clean_category) if v})


def to_matrix(rows: pd.DataFrame, target_year: int) -> Tuple[np.ndarray, np.ndarray, List[str], List[str]]:
    """Encode listings at `target_year`; returns (X, y, fuels, transmissions)."""
    fuels = vocabulary(rows["fuel"])
    transmissions = vocabulary(rows["transmission"])
    X = encode_frame(rows, fuels, transmissions, target_year=target_year)
    y = rows["price"].to_numpy(dtype=float)
    return X, y, fuels, transmissions


def split(X, y, train_ratio: float):
    """Ordered split at int(n * train_ratio); returns (train_x, train_y, test_x, test_y)."""
    X = np.asarray(X)
    y = np.asarray(y)
    cut = int(X.shape[0] * train_ratio)
    return X[:cut], y[:cut], X[cut:], y[cut:]
