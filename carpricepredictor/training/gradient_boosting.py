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
Gradient-boosted regression trees with row subsampling and early stopping.

Round t fits a shallow tree to the residuals left by the initial constant
plus trees 0..t-1; predictions are `init + learning_rate * sum(trees)`.
With validation data, the validation RMSE is checked every `eval_every`
rounds and the ensemble is truncated back to the best round once it stops
improving for `patience` rounds.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from ..common.bundle_constants import STATE_VERSION
from ..common.errors import NotFittedError, ShapeMismatchError
from .decision_tree import DecisionTreeRegressor, TreeState
from .search import SearchResult, run_search, sample_candidates, validation_rmse

GB_SPLITS_PER_FEATURE = 32

GB_PARAM_GRID = {
    "n_estimators": [200, 300, 400],
    "learning_rate": [0.03, 0.05, 0.1],
    "max_depth": [2, 3, 4],
    "min_samples_leaf": [1, 3, 5, 10],
    "min_samples_split": [2, 10, 20],
    "subsample": [0.6, 0.8, 1.0],
}


@dataclass(frozen=True)
class BoostingState:
    n_estimators: int
    learning_rate: float
    max_depth: int
    min_samples_split: int
    min_samples_leaf: int
    subsample: float
    random_seed: int
    init: float
    best_iteration: int
    n_features: int
    trees: Tuple[TreeState, ...]

    def to_dict(self) -> dict:
        return {
            "state_version": STATE_VERSION,
            "n_estimators": self.n_estimators,
            "learning_rate": self.learning_rate,
            "max_depth": self.max_depth,
            "min_samples_split": self.min_samples_split,
            "min_samples_leaf": self.min_samples_leaf,
            "subsample": self.subsample,
            "random_seed": self.random_seed,
            "init": self.init,
            "best_iteration": self.best_iteration,
            "n_features": self.n_features,
            "trees": [t.to_dict() for t in self.trees],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'BoostingState':
        return cls(
            n_estimators=int(data["n_estimators"]),
            learning_rate=float(data["learning_rate"]),
            max_depth=int(data["max_depth"]),
            min_samples_split=int(data["min_samples_split"]),
            min_samples_leaf=int(data["min_samples_leaf"]),
            subsample=float(data["subsample"]),
            random_seed=int(data["random_seed"]),
            init=float(data["init"]),
            best_iteration=int(data.get("best_iteration", -1)),
            n_features=int(data["n_features"]),
            trees=tuple(TreeState.from_dict(t) for t in data["trees"]),
        )


class GradientBoostingRegressor:

    def __init__(
        self,
        n_estimators: int = 400,
        learning_rate: float = 0.05,
        max_depth: int = 3,
        min_samples_split: int = 10,
        min_samples_leaf: int = 5,
        subsample: float = 0.8,
        random_seed: int = 42,
    ):
        self.n_estimators = max(1, int(n_estimators))
        self.learning_rate = max(1e-6, float(learning_rate))
        self.max_depth = max(1, int(max_depth))
        self.min_samples_split = max(2, int(min_samples_split))
        self.min_samples_leaf = max(1, int(min_samples_leaf))
        self.subsample = float(np.clip(subsample, 0.3, 1.0))
        self.random_seed = random_seed

        self.best_iteration = -1
        self._init: Optional[float] = None
        self._trees: List[DecisionTreeRegressor] = []
        self._n_features: Optional[int] = None

    @property
    def is_fitted(self) -> bool:
        return self._init is not None

    @property
    def init(self) -> float:
        self._check_fitted()
        return self._init

    @property
    def trees(self) -> Tuple[DecisionTreeRegressor, ...]:
        self._check_fitted()
        return tuple(self._trees)

    @property
    def n_features(self) -> int:
        self._check_fitted()
        return self._n_features

    def _sample_rows(self, rng: np.random.Generator, n: int) -> np.ndarray:
        k = max(1, int(round(n * self.subsample)))
        if k >= n:
            return np.arange(n)
        # First k slots of a shuffle, i.e. a partial Fisher-Yates draw
        return rng.permutation(n)[:k]

    def fit(
        self,
        X,
        y,
        X_val=None,
        y_val=None,
        label_scaler=None,
        eval_every: int = 5,
        patience: int = 20,
        min_delta: float = 1e-6,
    ) -> 'GradientBoostingRegressor':
        """
        Fit the ensemble, optionally with early stopping on a validation set.

        Args:
            X, y: Training features and (scaled) labels
            X_val, y_val: Optional validation split used for early stopping
            label_scaler: When given, validation RMSE is measured on de-scaled prices
            eval_every: Evaluate validation RMSE every this many rounds
            patience: Rounds without improvement before stopping
            min_delta: Minimum RMSE decrease that counts as an improvement
        """
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()
        if X.ndim != 2:
            raise ValueError(f"Expected a 2-D feature matrix, got {X.ndim} dimension(s)")
        if X.shape[0] != y.shape[0]:
            raise ShapeMismatchError(X.shape[0], y.shape[0], what="labels")
        if X.shape[0] == 0:
            raise ValueError("Cannot fit gradient boosting on zero rows")

        has_val = X_val is not None and y_val is not None
        if has_val:
            X_val = np.asarray(X_val, dtype=float)
            y_val = np.asarray(y_val, dtype=float).ravel()
            if X_val.shape[1] != X.shape[1]:
                raise ShapeMismatchError(X.shape[1], X_val.shape[1])
            if X_val.shape[0] != y_val.shape[0]:
                raise ShapeMismatchError(X_val.shape[0], y_val.shape[0], what="labels")

        n = X.shape[0]
        rng = np.random.default_rng(self.random_seed)
        eval_every = max(1, int(eval_every))

        self._trees = []
        self._n_features = X.shape[1]
        self._init = float(y.mean())
        self.best_iteration = -1

        pred = np.full(n, self._init)
        val_pred = np.full(X_val.shape[0], self._init) if has_val else None
        best_rmse = np.inf
        last_improve = -1

        for t in range(self.n_estimators):
            residuals = y - pred
            idx = self._sample_rows(rng, n)

            tree = DecisionTreeRegressor(
                max_depth=self.max_depth,
                min_samples_split=self.min_samples_split,
                min_samples_leaf=self.min_samples_leaf,
                max_splits_per_feature=GB_SPLITS_PER_FEATURE,
            ).fit(X[idx], residuals[idx])
            self._trees.append(tree)
            pred += self.learning_rate * tree.predict(X)

            if not has_val:
                continue

            val_pred += self.learning_rate * tree.predict(X_val)
            if (t + 1) % eval_every != 0:
                continue

            rmse = validation_rmse(y_val, val_pred, label_scaler)
            if rmse + min_delta < best_rmse:
                best_rmse = rmse
                self.best_iteration = t + 1
                last_improve = t
            elif t - last_improve >= patience:
                logging.debug(f"GB early stop at round {t + 1}, best round {self.best_iteration} (rmse={best_rmse:.4f})")
                break

        if 0 < self.best_iteration < len(self._trees):
            del self._trees[self.best_iteration:]

        return self

    def predict(self, X) -> np.ndarray:
        self._check_fitted()
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X.reshape(1, -1)
        if X.shape[1] != self._n_features:
            raise ShapeMismatchError(self._n_features, X.shape[1])
        total = np.zeros(X.shape[0])
        for tree in self._trees:
            total += tree.predict(X)
        return self._init + self.learning_rate * total

    def predict_row(self, row) -> float:
        self._check_fitted()
        row = np.asarray(row, dtype=float).ravel()
        if row.shape[0] != self._n_features:
            raise ShapeMismatchError(self._n_features, row.shape[0])
        return self._init + self.learning_rate * sum(tree.predict_row(row) for tree in self._trees)

    def _check_fitted(self):
        if self._init is None:
            raise NotFittedError("Gradient boosting not trained yet.")

    def get_state(self) -> BoostingState:
        self._check_fitted()
        return BoostingState(
            n_estimators=self.n_estimators,
            learning_rate=self.learning_rate,
            max_depth=self.max_depth,
            min_samples_split=self.min_samples_split,
            min_samples_leaf=self.min_samples_leaf,
            subsample=self.subsample,
            random_seed=self.random_seed,
            init=self._init,
            best_iteration=self.best_iteration,
            n_features=self._n_features,
            trees=tuple(t.get_state() for t in self._trees),
        )

    @classmethod
    def from_state(cls, state: BoostingState) -> 'GradientBoostingRegressor':
        model = cls(
            n_estimators=state.n_estimators,
            learning_rate=state.learning_rate,
            max_depth=state.max_depth,
            min_samples_split=state.min_samples_split,
            min_samples_leaf=state.min_samples_leaf,
            subsample=state.subsample,
            random_seed=state.random_seed,
        )
        for tree_state in state.trees:
            if tree_state.n_features != state.n_features:
                raise ShapeMismatchError(state.n_features, tree_state.n_features)
        model._init = float(state.init)
        model.best_iteration = state.best_iteration
        model._n_features = state.n_features
        model._trees = [DecisionTreeRegressor.from_state(t) for t in state.trees]
        return model


def train_with_best_params(
    train_x,
    train_y,
    val_x,
    val_y,
    label_scaler=None,
    max_configs: int = 60,
    full_grid: bool = False,
    search_seed: Optional[int] = None,
    eval_every: int = 5,
    patience: int = 20,
    param_grid: Optional[dict] = None,
    n_jobs: int = -1,
) -> SearchResult:
    """
    Pick boosting hyperparameters by validation RMSE.

    Runs either the full grid or `max_configs` distinct random trials. Each
    trial early-stops on the same validation split it is scored on.
    """
    train_x = np.asarray(train_x, dtype=float)
    train_y = np.asarray(train_y, dtype=float).ravel()
    val_x = np.asarray(val_x, dtype=float)
    val_y = np.asarray(val_y, dtype=float).ravel()

    grid = GB_PARAM_GRID if param_grid is None else param_grid
    candidates = sample_candidates(grid, None if full_grid else max_configs, search_seed)

    def evaluate(params):
        model = GradientBoostingRegressor(**params)
        model.fit(train_x, train_y, val_x, val_y, label_scaler,
                  eval_every=eval_every, patience=patience)
        return validation_rmse(val_y, model.predict(val_x), label_scaler), model

    return run_search(candidates, evaluate, n_jobs=n_jobs, name="GB search")


def train_residuals_with_best_params(
    train_x,
    train_residuals,
    val_x,
    val_residuals,
    max_configs: int = 60,
    search_seed: Optional[int] = None,
    n_jobs: int = -1,
) -> SearchResult:
    """Boosting search on ridge residuals; RMSE is measured in scaled label units."""
    return train_with_best_params(
        train_x, train_residuals, val_x, val_residuals,
        label_scaler=None,
        max_configs=max_configs,
        search_seed=search_seed,
        n_jobs=n_jobs,
    )
