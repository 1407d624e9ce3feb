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
Residual stacking: a ridge base model plus a learner fitted to its residuals.

Both terms live in scaled label space. The combined prediction is their sum,
and the label inverse transform is applied once to that sum by the caller
(the log-price transform is not additive, so de-scaling each term separately
would be wrong).
"""

import numpy as np

from ..common.errors import ShapeMismatchError


def compute_residuals(base, X, y) -> np.ndarray:
    """Scaled label minus the base model's prediction."""
    y = np.asarray(y, dtype=float).ravel()
    return y - base.predict(X)


class ResidualStack:

    def __init__(self, base, residual):
        if base.n_features != residual.n_features:
            raise ShapeMismatchError(base.n_features, residual.n_features)
        self.base = base
        self.residual = residual

    @property
    def n_features(self) -> int:
        return self.base.n_features

    def predict(self, X) -> np.ndarray:
        return self.base.predict(X) + self.residual.predict(X)

    def predict_row(self, row) -> float:
        return float(self.base.predict_row(row) + self.residual.predict_row(row))


def fit_residual_stack(base, X, y, residual_learner) -> ResidualStack:
    """Fit `residual_learner` on the base model's training residuals."""
    residual_learner.fit(X, compute_residuals(base, X, y))
    return ResidualStack(base, residual_learner)
