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
Error taxonomy shared by the learners, the active model set and the servers.

- NotFittedError: predict/transform on a component that was never fitted
- ShapeMismatchError: feature count disagrees with the stored dimensionality
- SearchError: a hyperparameter search produced no valid candidate
- BundleLoadError: a bundle is absent, malformed or could not be applied

Zero-variance columns and labels are not errors; they are mapped to neutral
values where they occur.
"""


class CarPriceError(Exception):
    """Base class for all predictor errors."""


class NotFittedError(CarPriceError, RuntimeError):
    pass


class ShapeMismatchError(CarPriceError, ValueError):

    def __init__(self, expected: int, got: int, what: str = "features"):
        self.expected = expected
        self.got = got
        super().__init__(f"Shape mismatch: expected {expected} {what}, got {got}.")


class SearchError(CarPriceError, RuntimeError):
    pass


class BundleLoadError(CarPriceError, RuntimeError):
    pass


class BundleNotFoundError(BundleLoadError, FileNotFoundError):
    pass


class LoadTimeoutError(BundleLoadError, TimeoutError):
    """Raised when a hot-load was not applied because of a timeout or cancellation."""
