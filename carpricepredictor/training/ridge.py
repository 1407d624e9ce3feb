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
L2-regularised linear regression (ridge) and plain linear regression.

Two fitting modes:
- closed form: centre X and y, solve (XcᵀXc + λI) w = Xcᵀyc by Cholesky, then
  bias = mean(y) - mean(X)·w. A singular or near-singular system is re-solved
  with a small non-zero λ instead of failing.
- gradient descent: full-batch updates for a fixed number of epochs with the
  L2 penalty on the weights only.

Hyperparameters are chosen by k-fold cross-validation over a log-spaced λ grid
(and a learning-rate grid for the gradient-descent path), or by a single
hold-out split.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from ..common.bundle_constants import STATE_VERSION
from ..common.errors import NotFittedError, SearchError, ShapeMismatchError
from .search import SearchResult, run_search, validation_rmse

DEFAULT_ALPHAS = (1e-8, 1e-7, 1e-6, 1e-5, 1e-4, 1e-3, 5e-3, 1e-2, 5e-2, 0.1, 0.2, 0.5, 1.0, 2.0)
DEFAULT_LEARNING_RATES = (1e-4, 1e-3, 1e-2)

# Relative pivot floor below which a Cholesky factor counts as singular
CHOLESKY_DIAG_FLOOR = 1e-12
FALLBACK_MIN_LAMBDA = 1e-8


@dataclass(frozen=True)
class LinearState:
    weights: Tuple[float, ...]
    bias: float
    alpha: float = 0.0

    @property
    def n_features(self) -> int:
        return len(self.weights)

    def to_dict(self) -> dict:
        return {
            "state_version": STATE_VERSION,
            "weights": list(self.weights),
            "bias": self.bias,
            "alpha": self.alpha,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LinearState':
        return cls(
            weights=tuple(float(w) for w in data["weights"]),
            bias=float(data["bias"]),
            alpha=float(data.get("alpha", 0.0)),
        )


def _cholesky_solve(A: np.ndarray, b: np.ndarray) -> Optional[np.ndarray]:
    try:
        L = np.linalg.cholesky(A)
    except np.linalg.LinAlgError:
        return None
    scale = max(1.0, float(np.trace(A)) / A.shape[0])
    if np.min(np.diag(L)) ** 2 <= CHOLESKY_DIAG_FLOOR * scale:
        return None
    w = np.linalg.solve(L.T, np.linalg.solve(L, b))
    return w if np.all(np.isfinite(w)) else None


def solve_normal_equations(gram: np.ndarray, rhs: np.ndarray, lam: float) -> np.ndarray:
    """Solve (G + λI) w = rhs, falling back to a regularised solve when G + λI is singular."""
    p = gram.shape[0]
    eye = np.eye(p)
    w = _cholesky_solve(gram + lam * eye, rhs)
    if w is not None:
        return w

    fallback = max(lam, FALLBACK_MIN_LAMBDA) * max(1.0, float(np.trace(gram)) / max(1, p))
    logging.debug(f"Normal equations singular at lambda={lam:g}; retrying with lambda={fallback:g}")
    w = _cholesky_solve(gram + fallback * eye, rhs)
    if w is not None:
        return w
    return np.linalg.lstsq(gram + fallback * eye, rhs, rcond=None)[0]


class RidgeRegression:

    def __init__(
        self,
        learning_rate: float = 1e-4,
        epochs: int = 10000,
        lam: float = 0.1,
        use_closed_form: bool = True,
    ):
        self.learning_rate = learning_rate
        self.epochs = epochs
        self.lam = max(0.0, float(lam))
        self.use_closed_form = use_closed_form

        self._weights: Optional[np.ndarray] = None
        self._bias: float = 0.0

    @property
    def is_fitted(self) -> bool:
        return self._weights is not None

    @property
    def weights(self) -> np.ndarray:
        self._check_fitted()
        return self._weights.copy()

    @property
    def bias(self) -> float:
        self._check_fitted()
        return self._bias

    @property
    def alpha(self) -> float:
        return self.lam

    @property
    def n_features(self) -> int:
        self._check_fitted()
        return self._weights.shape[0]

    def fit(self, X, y) -> 'RidgeRegression':
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()
        if X.ndim != 2:
            raise ValueError(f"Expected a 2-D feature matrix, got {X.ndim} dimension(s)")
        if X.shape[0] != y.shape[0]:
            raise ShapeMismatchError(X.shape[0], y.shape[0], what="labels")
        if X.shape[0] == 0:
            raise ValueError("Cannot fit a linear model on zero rows")

        if self.use_closed_form:
            self._fit_closed_form(X, y)
        else:
            self._fit_gradient_descent(X, y)

        if not (np.all(np.isfinite(self._weights)) and np.isfinite(self._bias)):
            logging.warning(f"{type(self).__name__} produced non-finite parameters (lambda={self.lam:g})")
        return self

    def _fit_closed_form(self, X: np.ndarray, y: np.ndarray):
        mean_x = X.mean(axis=0)
        mean_y = float(y.mean())
        Xc = X - mean_x
        yc = y - mean_y

        w = solve_normal_equations(Xc.T @ Xc, Xc.T @ yc, self.lam)
        self._weights = w
        self._bias = float(mean_y - mean_x @ w)

    def _fit_gradient_descent(self, X: np.ndarray, y: np.ndarray):
        n, p = X.shape
        w = np.zeros(p)
        b = 0.0
        lr = self.learning_rate
        for _ in range(self.epochs):
            err = X @ w + b - y
            grad_w = X.T @ err / n + self.lam * w
            grad_b = err.sum() / n
            w -= lr * grad_w
            b -= lr * grad_b
        self._weights = w
        self._bias = float(b)

    def predict(self, X) -> np.ndarray:
        self._check_fitted()
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X.reshape(1, -1)
        if X.shape[1] != self._weights.shape[0]:
            raise ShapeMismatchError(self._weights.shape[0], X.shape[1])
        return X @ self._weights + self._bias

    def predict_row(self, row) -> float:
        self._check_fitted()
        row = np.asarray(row, dtype=float).ravel()
        if row.shape[0] != self._weights.shape[0]:
            raise ShapeMismatchError(self._weights.shape[0], row.shape[0])
        return float(self._bias + row @ self._weights)

    def _check_fitted(self):
        if self._weights is None:
            raise NotFittedError(f"{type(self).__name__} is not fitted.")

    def get_state(self) -> LinearState:
        self._check_fitted()
        return LinearState(
            weights=tuple(float(w) for w in self._weights),
            bias=self._bias,
            alpha=self.lam,
        )

    @classmethod
    def from_state(cls, state: LinearState) -> 'RidgeRegression':
        model = cls(lam=state.alpha)
        model._weights = np.asarray(state.weights, dtype=float)
        model._bias = float(state.bias)
        return model


class LinearRegression(RidgeRegression):
    """Ordinary least squares: ridge with λ = 0 (the singular-system fallback still applies)."""

    def __init__(self, learning_rate: float = 1e-4, epochs: int = 10000, use_closed_form: bool = True):
        super().__init__(learning_rate=learning_rate, epochs=epochs, lam=0.0, use_closed_form=use_closed_form)

    @classmethod
    def from_state(cls, state: LinearState) -> 'LinearRegression':
        model = cls()
        model._weights = np.asarray(state.weights, dtype=float)
        model._bias = float(state.bias)
        return model


def _make_ridge(params: dict, use_closed_form: bool, epochs: int) -> RidgeRegression:
    return RidgeRegression(
        learning_rate=params.get("learning_rate", DEFAULT_LEARNING_RATES[0]),
        epochs=epochs,
        lam=params["lam"],
        use_closed_form=use_closed_form,
    )


def kfold_indices(n: int, k_folds: int, seed: Optional[int] = 42):
    """Shuffled, near-equal folds; returns a list of index arrays."""
    rng = np.random.default_rng(seed)
    return np.array_split(rng.permutation(n), k_folds)


def train_with_best_params_kfold(
    X,
    y,
    label_scaler=None,
    k_folds: int = 5,
    min_exp: float = -9,
    max_exp: float = 3,
    alpha_steps: int = 40,
    learning_rates: Optional[Sequence[float]] = None,
    use_closed_form: bool = True,
    epochs: int = 10000,
    seed: Optional[int] = 42,
    n_jobs: int = -1,
) -> SearchResult:
    """
    k-fold cross-validated λ search, refitting the winner on all rows.

    Candidates are ordered by ascending λ (then learning rate in the given
    order), so equal mean RMSEs resolve to the smallest λ.

    Returns:
        SearchResult whose model is refit on the full (X, y)
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float).ravel()
    n = X.shape[0]
    if n < 2:
        raise SearchError(f"Ridge k-fold search needs at least 2 rows, got {n}")

    k = max(2, min(int(k_folds), n))
    alphas = np.logspace(min_exp, max_exp, alpha_steps) if alpha_steps > 0 else np.array([])
    if use_closed_form:
        candidates = [{"lam": float(a)} for a in alphas]
    else:
        lrs = list(DEFAULT_LEARNING_RATES if learning_rates is None else learning_rates)
        candidates = [{"lam": float(a), "learning_rate": float(lr)} for a in alphas for lr in lrs]

    folds = kfold_indices(n, k, seed)
    splits = [
        (np.concatenate([f for j, f in enumerate(folds) if j != i]), val_idx)
        for i, val_idx in enumerate(folds)
    ]

    def evaluate(params):
        scores = []
        for train_idx, val_idx in splits:
            model = _make_ridge(params, use_closed_form, epochs).fit(X[train_idx], y[train_idx])
            scores.append(validation_rmse(y[val_idx], model.predict(X[val_idx]), label_scaler))
        return float(np.mean(scores)), None

    result = run_search(candidates, evaluate, n_jobs=n_jobs, name=f"Ridge {k}-fold search")
    final = _make_ridge(result.best_params, use_closed_form, epochs).fit(X, y)
    return dataclasses.replace(result, model=final)


def train_with_best_params(
    train_x,
    train_y,
    val_x,
    val_y,
    label_scaler=None,
    alphas: Sequence[float] = DEFAULT_ALPHAS,
    use_closed_form: bool = True,
    n_jobs: int = -1,
) -> SearchResult:
    """Hold-out λ search; the winner is refit on train + validation rows."""
    train_x = np.asarray(train_x, dtype=float)
    train_y = np.asarray(train_y, dtype=float).ravel()
    val_x = np.asarray(val_x, dtype=float)
    val_y = np.asarray(val_y, dtype=float).ravel()

    candidates = [{"lam": float(a)} for a in sorted(alphas)]

    def evaluate(params):
        model = _make_ridge(params, use_closed_form, 10000).fit(train_x, train_y)
        return validation_rmse(val_y, model.predict(val_x), label_scaler), model

    result = run_search(candidates, evaluate, n_jobs=n_jobs, name="Ridge hold-out search")
    final = _make_ridge(result.best_params, use_closed_form, 10000).fit(
        np.vstack([train_x, val_x]), np.concatenate([train_y, val_y])
    )
    return dataclasses.replace(result, model=final)
