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
Tests for bundle serialisation, checksums and the bundle registry.
"""

import json
import os

import numpy as np
import pytest

from ..common.errors import BundleLoadError, BundleNotFoundError
from ..training.gradient_boosting import GradientBoostingRegressor
from ..training import model_bundle as model_bundle_module
from ..training.model_bundle import BundleRegistry, BundleSummary, ModelBundle, load_bundle, save_bundle
from ..training.random_forest import RandomForestRegressor
from ..training.ridge import RidgeRegression


class TestBundleRoundTrip:

    def test_dict_round_trip_is_lossless(self, toyota_bundle):
        restored = ModelBundle.from_dict(json.loads(json.dumps(toyota_bundle.to_dict())))
        assert restored == toyota_bundle

    def test_file_round_trip(self, tmp_path, toyota_bundle):
        path = save_bundle(toyota_bundle, tmp_path / "toyota_camry.json")
        loaded = load_bundle(path)

        assert loaded.bundle_id == "toyota_camry"
        assert loaded.algorithms == ["linear", "ridge", "rf", "gb"]
        assert loaded.n_features == 13
        assert loaded.metrics == toyota_bundle.metrics

        X = np.random.default_rng(0).normal(size=(5, 13))
        for state_cls, attr in ((RidgeRegression, "ridge"), (RandomForestRegressor, "rf"),
                                (GradientBoostingRegressor, "gb")):
            before = state_cls.from_state(getattr(toyota_bundle, attr)).predict(X)
            after = state_cls.from_state(getattr(loaded, attr)).predict(X)
            np.testing.assert_array_equal(before, after)

    def test_no_temp_files_left(self, tmp_path, toyota_bundle):
        save_bundle(toyota_bundle, tmp_path / "a.json")
        save_bundle(toyota_bundle, tmp_path / "a.json")
        assert sorted(p.name for p in tmp_path.iterdir()) == ["a.json"]


class TestLoadFailures:

    def test_missing_file(self, tmp_path):
        with pytest.raises(BundleNotFoundError):
            load_bundle(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(BundleLoadError):
            load_bundle(path)

    def test_checksum_mismatch(self, tmp_path, toyota_bundle):
        path = save_bundle(toyota_bundle, tmp_path / "b.json")
        document = json.loads(path.read_text())
        document["bundle"]["ridge"]["bias"] += 1.0
        path.write_text(json.dumps(document))

        with pytest.raises(BundleLoadError, match="checksum"):
            load_bundle(path)

    def test_malformed_structure(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({"bundle": {"car": {"make": "x", "model": "y"}}}))
        with pytest.raises(BundleLoadError):
            load_bundle(path)

    def test_bad_tree_in_forest(self, tmp_path, toyota_bundle):
        payload = toyota_bundle.to_dict()
        payload["random_forest"]["trees"][0]["nodes"] = []
        path = tmp_path / "d.json"
        path.write_text(json.dumps({"bundle": payload}))
        with pytest.raises(BundleLoadError):
            load_bundle(path)


class TestBundleRegistry:

    def test_path_for_uses_bundle_id(self, tmp_path):
        registry = BundleRegistry(tmp_path)
        assert registry.path_for("Ford", "F-150") == tmp_path / "ford_f_150.json"

    def test_save_and_iterate(self, processed_dir):
        registry = BundleRegistry(processed_dir)
        names = [p.name for p in registry.list_bundle_files()]
        assert names == ["ford_f_150.json", "toyota_camry.json"]
        assert [b.car.make for _, b in registry.iter_bundles()] == ["Ford", "Toyota"]

    def test_unreadable_files_are_skipped(self, processed_dir):
        (processed_dir / "broken.json").write_text("][")
        registry = BundleRegistry(processed_dir)
        assert len(registry.list_bundle_files()) == 3
        assert len(list(registry.iter_bundles())) == 2

    def test_missing_directory_is_empty(self, tmp_path):
        assert BundleRegistry(tmp_path / "absent").list_bundle_files() == []


class TestBundleSummaries:

    @pytest.fixture
    def counting_load(self, monkeypatch):
        calls = []
        real_load = model_bundle_module.load_bundle

        def load(path):
            calls.append(path.name)
            return real_load(path)

        monkeypatch.setattr(model_bundle_module, "load_bundle", load)
        return calls

    def test_summaries_match_bundles(self, processed_dir, toyota_bundle):
        summaries = dict(BundleRegistry(processed_dir).iter_summaries())
        toyota = summaries[processed_dir / "toyota_camry.json"]
        assert isinstance(toyota, BundleSummary)
        assert toyota.car == toyota_bundle.car
        assert toyota.preprocess == toyota_bundle.preprocess
        assert list(toyota.algorithms) == toyota_bundle.algorithms

    def test_unchanged_files_are_parsed_once(self, processed_dir, counting_load):
        registry = BundleRegistry(processed_dir)
        for _ in range(3):
            assert len(list(registry.iter_summaries())) == 2
        assert sorted(counting_load) == ["ford_f_150.json", "toyota_camry.json"]

    def test_changed_file_is_parsed_again(self, processed_dir, counting_load):
        registry = BundleRegistry(processed_dir)
        list(registry.iter_summaries())
        path = processed_dir / "ford_f_150.json"
        st = path.stat()
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))

        list(registry.iter_summaries())
        assert counting_load.count("ford_f_150.json") == 2
        assert counting_load.count("toyota_camry.json") == 1

    def test_unreadable_files_are_skipped_and_not_reparsed(self, processed_dir, counting_load):
        (processed_dir / "broken.json").write_text("][")
        registry = BundleRegistry(processed_dir)
        assert len(list(registry.iter_summaries())) == 2
        assert len(list(registry.iter_summaries())) == 2
        assert counting_load.count("broken.json") == 1

    def test_deleted_files_drop_out(self, processed_dir):
        registry = BundleRegistry(processed_dir)
        list(registry.iter_summaries())
        (processed_dir / "ford_f_150.json").unlink()

        assert [p.name for p, _ in registry.iter_summaries()] == ["toyota_camry.json"]
        assert list(registry._summaries) == [processed_dir / "toyota_camry.json"]
