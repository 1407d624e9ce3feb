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
Offline trainer: one model bundle per (make, model) group in the vehicles CSV.

For every group with enough listings the trainer fits a linear model, a
k-fold-tuned ridge model and two residual learners (random forest and
gradient boosting) on the ridge residuals, scores all four served
algorithms on a held-out test split, applies the quality gate and writes
the bundle to the processed directory.

Usage:
    python -m carpricepredictor.training.trainer --csv vehicles.csv --make toyota --model "4runner sr5"
"""

import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pandas as pd

from ..common.bundle_constants import (
    DEFAULT_TARGET_YEAR,
    GB_TIMING,
    LINEAR_KEY,
    LINEAR_TIMING,
    MIN_ANCHOR_YEAR,
    RF_TIMING,
    RIDGE_GB_KEY,
    RIDGE_KEY,
    RIDGE_RF_KEY,
    RIDGE_TIMING,
)
from ..common.metrics import AlgorithmMetrics, TrainingTime, evaluate
from ..common.naming import bundle_id, normalize_name
from ..common.scalers import FeatureScaler, LabelScaler
from . import gradient_boosting, random_forest
from .dataset import group_counts, load_vehicles, rows_for, split, to_matrix
from .model_bundle import BundleRegistry, CarMeta, ModelBundle, PreprocessState
from .residual_stacking import ResidualStack, compute_residuals
from .ridge import LinearRegression, train_with_best_params_kfold


class TrainSettings:
    """Configuration for the offline trainer."""

    DATASETS_DIR: str = os.getenv("CARPRICE_DATASETS_DIR", "datasets")
    PROCESSED_DIR: str = os.getenv("CARPRICE_PROCESSED_DIR", os.path.join(DATASETS_DIR, "processed"))

    # Hyperparameter search
    MAX_CONFIGS: int = int(os.getenv("CARPRICE_MAX_CONFIGS", "60"))
    RIDGE_KFOLDS: int = int(os.getenv("CARPRICE_RIDGE_KFOLDS", "5"))
    N_JOBS: int = int(os.getenv("CARPRICE_N_JOBS", "-1"))

    # Groups smaller than this are not trained
    MIN_GROUP_ROWS: int = int(os.getenv("CARPRICE_MIN_GROUP_ROWS", "50"))

    TEST_TRAIN_RATIO: float = 0.8
    VALIDATION_RATIO: float = 0.75


settings = TrainSettings()

log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, log_level, logging.INFO), format="%(asctime)s - %(levelname)s - %(message)s")


def clamp_anchor_year(year: int) -> int:
    latest = datetime.now(timezone.utc).year + 10
    return max(MIN_ANCHOR_YEAR, min(int(year), latest))


@dataclass
class TrainingOptions:
    csv_path: str
    out_dir: str
    max_rows: int = 1_000_000
    requested_anchor_year: int = DEFAULT_TARGET_YEAR
    anchor_year: int = DEFAULT_TARGET_YEAR
    manufacturer: Optional[str] = None   # normalised
    model: Optional[str] = None          # normalised
    max_configs: int = 60
    min_r2: Optional[float] = 0.5
    max_mae: Optional[float] = None
    max_rmse: Optional[float] = None
    search_seed: Optional[int] = None
    min_group_rows: int = 50
    k_folds: int = 5
    n_jobs: int = -1

    def fails_quality_gate(self, m: AlgorithmMetrics) -> bool:
        return (
            (self.min_r2 is not None and m.r2 < self.min_r2)
            or (self.max_mae is not None and m.mae > self.max_mae)
            or (self.max_rmse is not None and m.rmse > self.max_rmse)
        )


@dataclass
class GroupOutcome:
    make: str
    model: str
    bundle: Optional[ModelBundle] = None
    metrics: Dict[str, AlgorithmMetrics] = field(default_factory=dict)
    skipped_reason: Optional[str] = None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Train used-car price model bundles.")
    parser.add_argument("--csv", dest="csv_path", default=None, help="Vehicles CSV (default: <datasets>/raw/vehicles.csv)")
    parser.add_argument("--out", dest="out_dir", default=None, help="Processed bundle directory")
    parser.add_argument("--max", dest="max_rows", type=int, default=1_000_000, help="Maximum usable rows to load")
    parser.add_argument("--anchor-year", type=int, default=DEFAULT_TARGET_YEAR)
    parser.add_argument("--manufacturer", "--make", dest="manufacturer", default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--max-configs", type=int, default=settings.MAX_CONFIGS)
    parser.add_argument("--min-r2", type=float, default=0.5)
    parser.add_argument("--max-mae", type=float, default=None)
    parser.add_argument("--max-rmse", type=float, default=None)
    parser.add_argument("--search-seed", type=int, default=None)
    return parser


def parse_options(argv: List[str]) -> TrainingOptions:
    args = build_arg_parser().parse_args(argv)
    csv_path = args.csv_path or os.path.join(settings.DATASETS_DIR, "raw", "vehicles.csv")
    return TrainingOptions(
        csv_path=csv_path,
        out_dir=args.out_dir or settings.PROCESSED_DIR,
        max_rows=args.max_rows,
        requested_anchor_year=args.anchor_year,
        anchor_year=clamp_anchor_year(args.anchor_year),
        manufacturer=normalize_name(args.manufacturer) or None,
        model=normalize_name(args.model) or None,
        max_configs=max(1, args.max_configs),
        min_r2=args.min_r2,
        max_mae=args.max_mae,
        max_rmse=args.max_rmse,
        search_seed=args.search_seed,
        min_group_rows=settings.MIN_GROUP_ROWS,
        k_folds=settings.RIDGE_KFOLDS,
        n_jobs=settings.N_JOBS,
    )


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def train_group(rows: pd.DataFrame, make: str, model: str, options: TrainingOptions) -> GroupOutcome:
    """
    Train every learner for one (make, model) group and assemble its bundle.

    The returned outcome carries no bundle when the group was skipped
    (empty vocabularies, too few rows or a failed quality gate).
    """
    outcome = GroupOutcome(make=make, model=model)

    X_raw, y_raw, fuels, transmissions = to_matrix(rows, target_year=options.anchor_year)
    if not fuels or not transmissions:
        outcome.skipped_reason = "fuels/transmissions are empty"
        return outcome

    train_raw_x, train_raw_y, test_raw_x, test_raw_y = split(X_raw, y_raw, settings.TEST_TRAIN_RATIO)
    if test_raw_x.shape[0] == 0 or train_raw_x.shape[0] < 4:
        outcome.skipped_reason = f"too few rows ({X_raw.shape[0]})"
        return outcome

    feature_scaler = FeatureScaler()
    label_scaler = LabelScaler()
    train_x = feature_scaler.fit_transform(train_raw_x)
    test_x = feature_scaler.transform(test_raw_x)
    train_y = label_scaler.fit_transform(train_raw_y)
    test_y = label_scaler.transform(test_raw_y)
    truth = label_scaler.inverse_transform(test_y)

    def score(name: str, z_pred) -> AlgorithmMetrics:
        m = evaluate(truth, label_scaler.inverse_transform(z_pred))
        logging.info(f"{make} {model:<18} [{name}] MAE={m.mae:7.0f} RMSE={m.rmse:7.0f} R2={m.r2:5.3f}")
        return m

    tx, ty, vx, vy = split(train_x, train_y, settings.VALIDATION_RATIO)
    timings: Dict[str, TrainingTime] = {}

    start = time.perf_counter()
    linear = LinearRegression().fit(train_x, train_y)
    timings[LINEAR_TIMING] = TrainingTime(total_ms=_elapsed_ms(start))
    outcome.metrics[LINEAR_KEY] = score("Linear", linear.predict(test_x))

    ridge_search = train_with_best_params_kfold(
        train_x, train_y, label_scaler,
        k_folds=options.k_folds, min_exp=-9, max_exp=3, alpha_steps=40,
        seed=42 if options.search_seed is None else options.search_seed,
        n_jobs=options.n_jobs,
    )
    ridge = ridge_search.model
    timings[RIDGE_TIMING] = ridge_search.training_time
    outcome.metrics[RIDGE_KEY] = score("Ridge", ridge.predict(test_x))

    train_res = compute_residuals(ridge, tx, ty)
    val_res = compute_residuals(ridge, vx, vy)

    rf_search = random_forest.train_residuals_with_best_params(
        tx, train_res, vx, val_res,
        max_configs=options.max_configs, search_seed=options.search_seed, n_jobs=options.n_jobs,
    )
    timings[RF_TIMING] = rf_search.training_time
    outcome.metrics[RIDGE_RF_KEY] = score("Ridge+RF", ResidualStack(ridge, rf_search.model).predict(test_x))

    gb_search = gradient_boosting.train_residuals_with_best_params(
        tx, train_res, vx, val_res,
        max_configs=options.max_configs, search_seed=options.search_seed, n_jobs=options.n_jobs,
    )
    timings[GB_TIMING] = gb_search.training_time
    outcome.metrics[RIDGE_GB_KEY] = score("Ridge+GB", ResidualStack(ridge, gb_search.model).predict(test_x))

    failing = [
        f"{key} (R2={m.r2:.3f}, MAE={m.mae:.0f}, RMSE={m.rmse:.0f})"
        for key, m in outcome.metrics.items() if options.fails_quality_gate(m)
    ]
    if failing:
        outcome.skipped_reason = "failing metrics: " + "; ".join(failing)
        return outcome

    display_make = str(rows["manufacturer"].iloc[0]).strip() or make
    display_model = str(rows["model"].iloc[0]).strip() or model
    years = rows["year"]

    outcome.bundle = ModelBundle(
        car=CarMeta(
            make=display_make,
            model=display_model,
            min_year=int(years.min()),
            max_year=int(years.max()),
        ),
        preprocess=PreprocessState(
            fuels=tuple(fuels),
            transmissions=tuple(transmissions),
            feature_scaler=feature_scaler.get_state(),
            label_scaler=label_scaler.get_state(),
            anchor_target_year=options.anchor_year,
            total_rows=len(rows),
        ),
        linear=linear.get_state(),
        ridge=ridge.get_state(),
        rf=rf_search.model.get_state(),
        gb=gb_search.model.get_state(),
        metrics=dict(outcome.metrics),
        training_times=timings,
        notes=f"make={display_make}, model={display_model}, rows={len(rows)}; anchorTargetYear={options.anchor_year}",
    )
    return outcome


def select_groups(counts: pd.DataFrame, options: TrainingOptions) -> pd.DataFrame:
    if options.manufacturer:
        counts = counts[counts["make"] == options.manufacturer]
    if options.model:
        counts = counts[counts["model"] == options.model]
    return counts


def run(argv: List[str]) -> int:
    """Train bundles; returns the process exit code."""
    options = parse_options(argv)
    if options.model and not options.manufacturer:
        logging.error("When using --model, you must also pass --manufacturer <name>.")
        return 2

    if options.requested_anchor_year != options.anchor_year:
        logging.warning(f"Anchor year {options.requested_anchor_year} was clamped to {options.anchor_year}")

    logging.info(f"Loading vehicles from: {options.csv_path}")
    logging.info(f"Quality gate -> min R2 = {options.min_r2}, max MAE = {options.max_mae}, max RMSE = {options.max_rmse}")

    vehicles = load_vehicles(options.csv_path, options.max_rows)
    groups = select_groups(group_counts(vehicles, options.min_group_rows), options)
    if groups.empty:
        target = " ".join(filter(None, [options.manufacturer, options.model])) or "any (make, model) pair"
        logging.error(f"No trainable groups with at least {options.min_group_rows} rows for {target}.")
        return 1

    registry = BundleRegistry(options.out_dir)
    trained = skipped = 0
    for group in groups.itertuples(index=False):
        rows = rows_for(vehicles, group.make, group.model)
        logging.info(f"Training {group.make} {group.model} ({len(rows)} rows) -> {bundle_id(group.make, group.model)}")

        outcome = train_group(rows, group.make, group.model, options)
        if outcome.bundle is None:
            logging.warning(f"SKIP -> {group.make} {group.model}: {outcome.skipped_reason}")
            skipped += 1
            continue

        registry.save(outcome.bundle)
        trained += 1

    logging.info(f"Anchor target year = {options.anchor_year}; max search configs = {options.max_configs}")
    logging.info(f"Training finished. Bundles trained: {trained}, skipped: {skipped}")
    return 0


def main():
    sys.exit(run(sys.argv[1:]))


if __name__ == "__main__":
    main()
