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
Regression tree built by recursive variance-reduction splits.

Nodes live in a flat arena (a tuple indexed by int) as either a Leaf or an
Internal node holding the arena indices of its two children. The root is
always index 0 and children are always appended after their parent, so the
arena is acyclic by construction and serialises as a plain list.

Split search is bounded: each feature offers at most `max_splits_per_feature`
candidate thresholds taken at evenly spaced positions of the sorted column.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np

from ..common.bundle_constants import STATE_VERSION
from ..common.errors import NotFittedError, ShapeMismatchError


@dataclass(frozen=True)
class Leaf:
    value: float


@dataclass(frozen=True)
class Internal:
    feature_index: int
    threshold: float
    left: int
    right: int


Node = Union[Leaf, Internal]


@dataclass(frozen=True)
class TreeState:
    """Exportable fitted state of a single tree."""
    nodes: Tuple[Node, ...]
    n_features: int

    def validate(self):
        if not self.nodes:
            raise ValueError("Tree state has no nodes")
        count = len(self.nodes)
        for i, node in enumerate(self.nodes):
            if isinstance(node, Leaf):
                continue
            if not isinstance(node, Internal):
                raise ValueError(f"Unknown node type at {i}: {type(node).__name__}")
            if not (i < node.left < count and i < node.right < count):
                raise ValueError(f"Node {i} has out-of-range children ({node.left}, {node.right})")
            if not 0 <= node.feature_index < self.n_features:
                raise ShapeMismatchError(self.n_features, node.feature_index + 1)

    @property
    def max_feature_index(self) -> int:
        indices = [n.feature_index for n in self.nodes if isinstance(n, Internal)]
        return max(indices) if indices else -1

    def to_dict(self) -> dict:
        nodes = []
        for node in self.nodes:
            if isinstance(node, Leaf):
                nodes.append({"value": node.value})
            else:
                nodes.append({
                    "feature": node.feature_index,
                    "threshold": node.threshold,
                    "left": node.left,
                    "right": node.right,
                })
        return {"state_version": STATE_VERSION, "n_features": self.n_features, "nodes": nodes}

    @classmethod
    def from_dict(cls, data: dict) -> 'TreeState':
        nodes = []
        for raw in data["nodes"]:
            if "feature" in raw:
                nodes.append(Internal(
                    feature_index=int(raw["feature"]),
                    threshold=float(raw["threshold"]),
                    left=int(raw["left"]),
                    right=int(raw["right"]),
                ))
            else:
                nodes.append(Leaf(value=float(raw["value"])))
        state = cls(nodes=tuple(nodes), n_features=int(data["n_features"]))
        state.validate()
        return state


class DecisionTreeRegressor:

    def __init__(
        self,
        max_depth: int = 10,
        min_samples_split: int = 2,
        min_samples_leaf: int = 1,
        max_splits_per_feature: int = 32,
    ):
        self.max_depth = max_depth
        self.min_samples_split = min_samples_split
        self.min_samples_leaf = min_samples_leaf
        self.max_splits_per_feature = max_splits_per_feature

        self._nodes: List[Optional[Node]] = []
        self._n_features: Optional[int] = None
        self._compiled = None

    @property
    def is_fitted(self) -> bool:
        return self._compiled is not None

    @property
    def n_features(self) -> int:
        self._check_fitted()
        return self._n_features

    @property
    def node_count(self) -> int:
        self._check_fitted()
        return len(self._nodes)

    def fit(self, X, y) -> 'DecisionTreeRegressor':
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()
        if X.ndim != 2:
            raise ValueError(f"Expected a 2-D feature matrix, got {X.ndim} dimension(s)")
        if X.shape[0] != y.shape[0]:
            raise ShapeMismatchError(X.shape[0], y.shape[0], what="labels")
        if X.shape[0] == 0:
            raise ValueError("Cannot fit a tree on zero rows")

        self._nodes = []
        self._n_features = X.shape[1]
        self._build(X, y, np.arange(X.shape[0]), depth=0)
        self._compile()
        return self

    def _build(self, X: np.ndarray, y: np.ndarray, idx: np.ndarray, depth: int) -> int:
        ys = y[idx]
        value = float(ys.mean())

        if depth >= self.max_depth or idx.shape[0] < self.min_samples_split or np.all(ys == ys[0]):
            return self._add(Leaf(value))

        feature, threshold = self._best_split(X[idx], ys)
        if feature is None:
            return self._add(Leaf(value))

        node_id = self._add(None)
        goes_left = X[idx, feature] <= threshold
        left = self._build(X, y, idx[goes_left], depth + 1)
        right = self._build(X, y, idx[~goes_left], depth + 1)
        self._nodes[node_id] = Internal(feature, threshold, left, right)
        return node_id

    def _add(self, node: Optional[Node]) -> int:
        self._nodes.append(node)
        return len(self._nodes) - 1

    def _best_split(self, X: np.ndarray, y: np.ndarray):
        n, n_features = X.shape
        n_splits = min(self.max_splits_per_feature, n - 1)
        if n_splits <= 0:
            return None, None

        centered = y - y.mean()
        total_sum = centered.sum()
        total_sq = np.square(centered).sum()
        parent_var = total_sq / n
        if parent_var <= 0:
            return None, None

        # Candidate positions along the sorted column (round-half-even, like np.rint)
        positions = np.rint(np.arange(1, n_splits + 1) / (n_splits + 1) * (n - 1)).astype(int)

        # Gains below float noise do not count as an improvement
        best_gain = parent_var * 1e-12
        best_feature, best_threshold = None, None

        for f in range(n_features):
            order = np.argsort(X[:, f], kind="mergesort")
            xs = X[order, f]
            cum_sum = np.cumsum(centered[order])
            cum_sq = np.cumsum(np.square(centered[order]))

            thresholds = xs[positions]
            n_left = np.searchsorted(xs, thresholds, side="right")
            n_right = n - n_left
            valid = (n_left >= self.min_samples_leaf) & (n_right >= self.min_samples_leaf) & (n_right > 0)
            if not valid.any():
                continue

            nl = np.where(valid, n_left, 1)
            nr = np.where(valid, n_right, 1)
            sum_left = cum_sum[nl - 1]
            sq_left = cum_sq[nl - 1]
            var_left = np.maximum(sq_left / nl - (sum_left / nl) ** 2, 0.0)
            var_right = np.maximum((total_sq - sq_left) / nr - ((total_sum - sum_left) / nr) ** 2, 0.0)

            gains = parent_var - (nl / n * var_left + nr / n * var_right)
            gains = np.where(valid, gains, -np.inf)

            j = int(np.argmax(gains))
            if gains[j] > best_gain:
                best_gain = float(gains[j])
                best_feature = f
                best_threshold = float(thresholds[j])

        return best_feature, best_threshold

    def _compile(self):
        """Flatten the arena into parallel arrays for vectorised traversal."""
        count = len(self._nodes)
        feature = np.full(count, -1, dtype=np.int64)
        threshold = np.zeros(count)
        left = np.zeros(count, dtype=np.int64)
        right = np.zeros(count, dtype=np.int64)
        value = np.zeros(count)
        for i, node in enumerate(self._nodes):
            if isinstance(node, Leaf):
                value[i] = node.value
            else:
                feature[i] = node.feature_index
                threshold[i] = node.threshold
                left[i] = node.left
                right[i] = node.right
        self._compiled = (feature, threshold, left, right, value)

    def predict(self, X) -> np.ndarray:
        self._check_fitted()
        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X.reshape(1, -1)
        if X.shape[1] != self._n_features:
            raise ShapeMismatchError(self._n_features, X.shape[1])

        feature, threshold, left, right, value = self._compiled
        node = np.zeros(X.shape[0], dtype=np.int64)
        active = np.nonzero(feature[node] >= 0)[0]
        while active.size:
            current = node[active]
            goes_left = X[active, feature[current]] <= threshold[current]
            node[active] = np.where(goes_left, left[current], right[current])
            active = active[feature[node[active]] >= 0]
        return value[node]

    def predict_row(self, row) -> float:
        self._check_fitted()
        row = np.asarray(row, dtype=float).ravel()
        if row.shape[0] != self._n_features:
            raise ShapeMismatchError(self._n_features, row.shape[0])

        node = self._nodes[0]
        while isinstance(node, Internal):
            node = self._nodes[node.left if row[node.feature_index] <= node.threshold else node.right]
        return node.value

    def _check_fitted(self):
        if self._compiled is None:
            raise NotFittedError("Tree not trained yet.")

    def get_state(self) -> TreeState:
        self._check_fitted()
        return TreeState(nodes=tuple(self._nodes), n_features=self._n_features)

    @classmethod
    def from_state(cls, state: TreeState, **params) -> 'DecisionTreeRegressor':
        state.validate()
        tree = cls(**params)
        tree._nodes = list(state.nodes)
        tree._n_features = state.n_features
        tree._compile()
        return tree
