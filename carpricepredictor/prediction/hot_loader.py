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
On-demand loading of the bundle for a requested make/model.

Each bundle key has its own gate so that concurrent requests for the same
vehicle trigger a single file read and swap. Requests for the model that is
already active return immediately without touching any gate.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Dict, Optional

from ..common.errors import BundleNotFoundError, LoadTimeoutError
from ..common.naming import bundle_id
from ..training.model_bundle import BundleRegistry, load_bundle
from .active_model import ActiveModelSet, LoadedModels, build_loaded_models


class StaticBundleResolver:
    """Maps a make/model to `<processed_dir>/<bundle_id>.json`."""

    def __init__(self, processed_dir):
        self.registry = BundleRegistry(processed_dir)

    def resolve(self, make: str, model: str) -> Path:
        return self.registry.path_for(make, model)


class ModelHotLoader:

    def __init__(self, active: ActiveModelSet, resolver: StaticBundleResolver, default_timeout: Optional[float] = None):
        self.active = active
        self.resolver = resolver
        self.default_timeout = default_timeout
        # key -> [gate, requests holding or waiting on it]; dropped at zero
        self._gates: Dict[str, list] = {}
        self._gates_lock = threading.Lock()

    def _checkout_gate(self, key: str) -> threading.Lock:
        with self._gates_lock:
            entry = self._gates.get(key)
            if entry is None:
                entry = self._gates[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _return_gate(self, key: str) -> None:
        with self._gates_lock:
            entry = self._gates[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._gates[key]

    def ensure_loaded(
        self,
        make: str,
        model: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> LoadedModels:
        """
        Make the bundle for (make, model) active and return its snapshot.

        Args:
            make, model: Vehicle names as requested (normalised internally)
            timeout: Seconds allowed for waiting on the gate and loading; None = default
            cancel_event: When set before the swap, the load is abandoned

        Raises:
            BundleNotFoundError: No bundle file exists for the pair
            LoadTimeoutError: Timed out or cancelled; the active state is unchanged
            BundleLoadError / ShapeMismatchError: The bundle is unusable; the active state is unchanged
        """
        key = bundle_id(make, model)
        snapshot = self.active.current
        if snapshot is not None and snapshot.bundle_key == key:
            return snapshot

        timeout = self.default_timeout if timeout is None else timeout
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)

        gate = self._checkout_gate(key)
        try:
            acquired = gate.acquire() if timeout is None else gate.acquire(timeout=max(0.0, timeout))
            if not acquired:
                raise LoadTimeoutError(f"Timed out waiting for the load of '{key}'")
            try:
                return self._load_locked(key, make, model, timeout, deadline, cancel_event)
            finally:
                gate.release()
        finally:
            self._return_gate(key)

    def _load_locked(self, key, make, model, timeout, deadline, cancel_event) -> LoadedModels:
        # Another request may have installed this key while we waited
        snapshot = self.active.current
        if snapshot is not None and snapshot.bundle_key == key:
            return snapshot

        path = self.resolver.resolve(make, model)
        if not path.is_file():
            raise BundleNotFoundError(f"Bundle not found: {path}")

        logging.info(f"[Model] Loading '{key}' from {path}")
        fresh = build_loaded_models(load_bundle(path), key)

        if cancel_event is not None and cancel_event.is_set():
            raise LoadTimeoutError(f"Load of '{key}' was cancelled")
        if deadline is not None and time.monotonic() > deadline:
            raise LoadTimeoutError(f"Load of '{key}' exceeded {timeout:.1f}s")

        return self.active.install(fresh)
