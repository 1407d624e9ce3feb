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
Normalisation of manufacturer/model names and canonical bundle identifiers.
"""

import re

_WHITESPACE = re.compile(r"\s+")


def normalize_name(name, sort_tokens: bool = True) -> str:
    """Trim, lowercase, collapse whitespace and (by default) sort the tokens."""
    if name is None or not str(name).strip():
        return ""
    cleaned = _WHITESPACE.sub(" ", str(name).strip().lower())
    tokens = cleaned.split(" ")
    if sort_tokens:
        tokens.sort()
    return " ".join(tokens)


def _canon(value: str) -> str:
    x = (value or "").strip().replace(" ", "_").replace("-", "_")
    while "__" in x:
        x = x.replace("__", "_")
    return x.strip("_")


def bundle_id(make: str, model: str) -> str:
    """
    Canonical file id for a (make, model) pair, always prefixed with the make.

    When the make appears as a prefixed token inside the model name, the
    model id is rotated so that token leads:

        bundle_id("toyota", "utility sport sr5 toyota_4runner")
        -> "toyota_4runner_utility_sport_sr5"
    """
    make_id = _canon(normalize_name(make))
    model_id = _canon(normalize_name(model))

    needle = make_id + "_"
    idx = model_id.find(needle)
    if idx > 0:
        before = _canon(model_id[:idx])
        after = _canon(model_id[idx:])
        model_id = after if not before else f"{after}_{before}"

    if not model_id.startswith(needle):
        model_id = f"{make_id}_{model_id}"

    return _canon(model_id)


def title_case(value: str) -> str:
    """Display label for a stored value ("grand_cherokee" -> "Grand Cherokee")."""
    if value is None or not str(value).strip():
        return ""
    return " ".join(w.capitalize() for w in str(value).replace("_", " ").split())
