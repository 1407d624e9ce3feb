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

import threading
import time

import pytest

from ..common.errors import BundleLoadError, BundleNotFoundError, LoadTimeoutError
from ..prediction import hot_loader as hot_loader_module
from ..prediction.active_model import ActiveModelSet
from ..prediction.hot_loader import ModelHotLoader, StaticBundleResolver


@pytest.fixture
def loader(processed_dir):
    return ModelHotLoader(ActiveModelSet(), StaticBundleResolver(processed_dir))


class TestModelHotLoader:

    def test_resolver_path(self, processed_dir):
        assert StaticBundleResolver(processed_dir).resolve("Toyota", "Camry") == processed_dir / "toyota_camry.json"

    def test_loads_and_activates(self, loader):
        snapshot = loader.ensure_loaded("toyota", "camry")
        assert snapshot.bundle_key == "toyota_camry"
        assert loader.active.current is snapshot

    def test_same_key_is_a_fast_path(self, loader, monkeypatch):
        first = loader.ensure_loaded("Toyota", "Camry")

        def fail(path):
            raise AssertionError("bundle should not be re-read")

        monkeypatch.setattr(hot_loader_module, "load_bundle", fail)
        assert loader.ensure_loaded(" TOYOTA ", "camry") is first

    def test_switches_between_bundles(self, loader):
        loader.ensure_loaded("Toyota", "Camry")
        ford = loader.ensure_loaded("Ford", "F-150")
        assert loader.active.current is ford
        assert ford.car.make == "Ford"

    def test_missing_bundle(self, loader):
        with pytest.raises(BundleNotFoundError):
            loader.ensure_loaded("Tesla", "Model 3")
        assert loader.active.current is None

    def test_concurrent_requests_load_once(self, loader, monkeypatch):
        calls = []
        real_load = hot_loader_module.load_bundle

        def counting_load(path):
            calls.append(path)
            time.sleep(0.05)
            return real_load(path)

        monkeypatch.setattr(hot_loader_module, "load_bundle", counting_load)
        barrier = threading.Barrier(6)
        results = []

        def request():
            barrier.wait()
            results.append(loader.ensure_loaded("ford", "f-150"))

        threads = [threading.Thread(target=request) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert len({id(r) for r in results}) == 1
        assert loader._gates == {}

    def test_gate_timeout_leaves_state_unchanged(self, loader):
        before = loader.ensure_loaded("Toyota", "Camry")
        gate = loader._checkout_gate("ford_f_150")
        gate.acquire()
        try:
            with pytest.raises(LoadTimeoutError):
                loader.ensure_loaded("Ford", "F-150", timeout=0.05)
            # The timed-out waiter gave its slot back; ours is still held
            assert loader._gates["ford_f_150"][1] == 1
        finally:
            gate.release()
            loader._return_gate("ford_f_150")
        assert loader.active.current is before
        assert loader._gates == {}

    def test_unknown_vehicles_leave_no_gates(self, loader):
        for i in range(200):
            with pytest.raises(BundleNotFoundError):
                loader.ensure_loaded("nosuch", f"model {i}")
        assert loader._gates == {}

    def test_gates_released_after_loads_and_failures(self, loader, processed_dir):
        loader.ensure_loaded("Toyota", "Camry")
        (processed_dir / "ford_f_150.json").write_text("{}")
        with pytest.raises(BundleLoadError):
            loader.ensure_loaded("Ford", "F-150")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(BundleLoadError):
            loader.ensure_loaded("Ford", "F-150", cancel_event=cancel)
        assert loader._gates == {}

    def test_cancelled_load_is_not_applied(self, loader):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(LoadTimeoutError):
            loader.ensure_loaded("Ford", "F-150", cancel_event=cancel)
        assert loader.active.current is None

    def test_slow_load_past_deadline_is_not_applied(self, loader, monkeypatch):
        real_load = hot_loader_module.load_bundle

        def slow_load(path):
            time.sleep(0.2)
            return real_load(path)

        monkeypatch.setattr(hot_loader_module, "load_bundle", slow_load)
        with pytest.raises(LoadTimeoutError):
            loader.ensure_loaded("Ford", "F-150", timeout=0.05)
        assert loader.active.current is None

    def test_corrupt_bundle_keeps_previous(self, loader, processed_dir):
        before = loader.ensure_loaded("Toyota", "Camry")
        (processed_dir / "ford_f_150.json").write_text("{}")
        with pytest.raises(BundleLoadError):
            loader.ensure_loaded("Ford", "F-150")
        assert loader.active.current is before
