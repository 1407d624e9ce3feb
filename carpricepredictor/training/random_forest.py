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
Bagged ensemble of regression trees.

Every tree draws its own bag from a generator seeded with `random_seed + t`,
so a forest is reproducible for a fixed seed while its members stay
distinct. Trees share no mutable state and are fitted concurrently on joblib
worker threads; the member order is always 0..n_estimators-1.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from joblib import Parallel, delayed

from ..common.bundle_constants import STATE_VERSION
from ..common.errors import NotFittedError, ShapeMismatchError
from .decision_tree import DecisionTreeRegressor, TreeState
from .search import SearchResult, run_search, sample_candidates, validation_rmse

RF_PARAM_GRID = {
    "n_estimators": [30, 50, 80],
    "max_depth": [6, 8, 10],
    "min_samples_leaf": [5, 10, 15],
    "sample_ratio": [0.6, 0.8],
    "min_samples_split": [10],
    "bootstrap": [True],
}


@dataclass(frozen=True)
class ForestState:
    n_estimators: int
    max_depth: int
    min_samples_split: int
    min_samples_leaf: int
    bootstrap: bool
    sample_ratio: float
    random_seed: int
    n_features: int
    trees: Tuple[TreeState, ...]

    def to_dict(self) -> dict:
        return {
            "state_version": STATE_VERSION,
            "n_estimators": self.n_estimators,
            "max_depth": self.max_depth,
            "min_samples_split": self.min_samples_split,
            "min_samples_leaf": self.min_samples_leaf,
            "bootstrap": self.bootstrap,
            "sample_ratio": self.sample_ratio,
            "random_seed": self.random_seed,
            "n_features": self.n_features,
            "trees": [t.to_dict() for t in self.trees],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ForestState':
        return cls(
            n_estimators=int(data["n_estimators"]),
            max_depth=int(data["max_depth"]),
            min_samples_split=int(data["min_samples_split"]),
            min_samples_leaf=int(data["min_samples_leaf"]),
            bootstrap=bool(data["bootstrap"]),
            sample_ratio=float(data["sample_ratio"]),
            random_seed=int(data["random_seed"]),
            n_features=int(data["n_features"]),
            trees=tuple(TreeState.from_dict(t) for t in data["trees"]),
        )


class RandomForestRegressor:

    def __init__(
        self,
        n_estimators: int = 50,
        max_depth: int = 8,
        min_samples_split: int = 10,
        min_samples_leaf: int = 5,
        bootstrap: bool = True,
        sample_ratio: float = 1.0,
        random_seed: int = 42,
        n_jobs: int = -1,
    ):
        self.n_estimators = max(1, int(n_estimators))
        self.max_depth = max_depth
        self.min_samples_split = min_samples_split
        self.min_samples_leaf = min_samples_leaf
        self.bootstrap = bootstrap
        self.sample_ratio = float(np.clip(sample_ratio, 0.1, 1.0))
        self.random_seed = random_seed
        self.n_jobs = n_jobs

        self._trees: Tuple[DecisionTreeRegressor, ...] = ()
        self._n_features: Optional[int] = None

    @property
    def is_fitted(self) -> bool:
        return bool(self._trees)

    @property
    def trees(self) -> Tuple[DecisionTreeRegressor, ...]:
        self._check_fitted()
        return self._trees

    @property
    def n_features(self) -> int:
        self._check_fitted()
        return self._n_features

    def _new_tree(self) -> DecisionTreeRegressor:
        return DecisionTreeRegressor(
            max_depth=self.max_depth,
            min_samples_split=self.min_samples_split,
            min_samples_leaf=self.min_samples_leaf,
        )

    def _bag_indices(self, n: int, tree_index: int) -> np.ndarray:
        rng = np.random.default_rng(self.random_seed + tree_index)
        bag_size = max(1, int(round(n * self.sample_ratio)))
        if self.bootstrap:
            return rng.integers(0, n, size=bag_size)
        return rng.choice(n, size=min(bag_size, n), replace=False)

    def _fit_one(self, X: np.ndarray, y: np.ndarray, tree_index: int) -> DecisionTreeRegressor:
        idx = self._bag_indices(X.shape[0], tree_index)
        return self._new_tree().fit(X[idx], y[idx])

    def fit(self, X, y) -> 'RandomForestRegressor':
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()
        if X.ndim != 2:
            raise ValueError(f"Expected a 2-D feature matrix, got {X.ndim} dimension(s)")
        if X.shape[0] != y.shape[0]:
            raise ShapeMismatchError(X.shape[0], y.shape[0], what="labels")
        if X.shape[0] == 0:
            raise ValueError("Cannot fit a forest on zero rows")

        trees = Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(self._fit_one)(X, y, t) for t in range(self.n_estimators)
        )
        self._trees = tuple(trees)
        self._n_features = X.shape[1]
        logging.debug(f"Random forest fitted: {self.n_estimators} trees on {X.shape[0]} rows")
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
        return total / len(self._trees)

    def predict_row(self, row) -> float:
        self._check_fitted()
        row = np.asarray(row, dtype=float).ravel()
        if row.shape[0] != self._n_features:
            raise ShapeMismatchError(self._n_features, row.shape[0])
        return float(sum(tree.predict_row(row) for tree in self._trees) / len(self._trees))

    def _check_fitted(self):
        if not self._trees:
            raise NotFittedError("Forest not trained yet.")

    def get_state(self) -> ForestState:
        self._check_fitted()
        return ForestState(
            n_estimators=self.n_estimators,
            max_depth=self.max_depth,
            min_samples_split=self.min_samples_split,
            min_samples_leaf=self.min_samples_leaf,
            bootstrap=self.bootstrap,
            sample_ratio=self.sample_ratio,
            random_seed=self.random_seed,
            n_features=self._n_features,
            trees=tuple(t.get_state() for t in self._trees),
        )

    @classmethod
    def from_state(cls, state: ForestState) -> 'RandomForestRegressor':
        if not state.trees:
            raise ValueError("Forest state has no trees")
        forest = cls(
            n_estimators=state.n_estimators,
            max_depth=state.max_depth,
            min_samples_split=state.min_samples_split,
            min_samples_leaf=state.min_samples_leaf,
            bootstrap=state.bootstrap,
            sample_ratio=state.sample_ratio,
            random_seed=state.random_seed,
        )
        for tree_state in state.trees:
            if tree_state.n_features != state.n_features:
                raise ShapeMismatchError(state.n_features, tree_state.n_features)
        forest._trees = tuple(DecisionTreeRegressor.from_state(t) for t in state.trees)
        forest._n_features = state.n_features
        return forest


def train_with_best_params(
    train_x,
    train_y,
    val_x,
    val_y,
    label_scaler=None,
    max_configs: Optional[int] = None,
    search_seed: Optional[int] = None,
    param_grid: Optional[dict] = None,
    n_jobs: int = -1,
) -> SearchResult:
    """
    Pick forest hyperparameters by validation RMSE.

    Evaluates the full grid, or `max_configs` distinct random configurations
    when that is smaller. Forests inside the search fit their trees serially;
    the parallelism is across candidates.
    """
    train_x = np.asarray(train_x, dtype=float)
    train_y = np.asarray(train_y, dtype=float).ravel()
    val_x = np.asarray(val_x, dtype=float)
    val_y = np.asarray(val_y, dtype=float).ravel()

    candidates = sample_candidates(RF_PARAM_GRID if param_grid is None else param_grid,
                                   max_configs, search_seed)

    def evaluate(params):
        model = RandomForestRegressor(n_jobs=1, **params).fit(train_x, train_y)
        return validation_rmse(val_y, model.predict(val_x), label_scaler), model

    return run_search(candidates, evaluate, n_jobs=n_jobs, name="RF search")


def train_residuals_with_best_params(
    train_x,
    train_residuals,
    val_x,
    val_residuals,
    max_configs: Optional[int] = None,
    search_seed: Optional[int] = None,
    n_jobs: int = -1,
) -> SearchResult:
    """Forest search on ridge residuals; RMSE is measured in scaled label units."""
    return train_with_best_params(
        train_x, train_residuals, val_x, val_residuals,
        label_scaler=None,
        max_configs=max_configs,
        search_seed=search_seed,
        n_jobs=n_jobs,
    )
