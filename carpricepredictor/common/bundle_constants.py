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
Bundle Constants

Shared constants for bundle naming across the trainer and the prediction server.
This keeps algorithm keys, file suffixes and telemetry names in one place.
"""

# Bundle files (one JSON document per make/model)
BUNDLE_FILE_SUFFIX = ".json"
BUNDLE_TMP_SUFFIX = ".tmp"
BUNDLE_FORMAT_VERSION = "v1"

# Version of the exportable learner/scaler state layout
STATE_VERSION = 1

# Algorithm keys used for learners, metrics and API responses
LINEAR_KEY = "linear"
RIDGE_KEY = "ridge"
RF_KEY = "rf"                # residual learner, never served alone
GB_KEY = "gb"                # residual learner, never served alone
RIDGE_RF_KEY = "ridge_rf"    # ridge + forest residuals
RIDGE_GB_KEY = "ridge_gb"    # ridge + boosting residuals

# Keys served by the prediction API, in response order
SERVED_ALGORITHMS = (LINEAR_KEY, RIDGE_KEY, RIDGE_RF_KEY, RIDGE_GB_KEY)

# Composed key -> residual learner key
COMPOSED_ALGORITHMS = {
    RIDGE_RF_KEY: RF_KEY,
    RIDGE_GB_KEY: GB_KEY,
}

# Training-time telemetry names
LINEAR_TIMING = "Linear"
RIDGE_TIMING = "Ridge"
RF_TIMING = "RandomForest"
GB_TIMING = "GradientBoosting"

# Feature encoding defaults
DEFAULT_TARGET_YEAR = 2030
MIN_ANCHOR_YEAR = 1990

CURRENCY = "EUR"
