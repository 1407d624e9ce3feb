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
Model Bundle: the immutable persisted output of one training run.

A bundle holds everything needed to serve one make/model:
1. Preprocessing state (category vocabularies, feature and label scaler statistics)
2. Fitted learner states (linear, ridge, forest residuals, boosting residuals)
3. Test-set metrics and training-time telemetry

Design Principles:
- One JSON document per bundle, named after the canonical bundle id
- Atomic writes (temp file + rename), so readers never see a partial file
- A SHA256 checksum over the canonical payload detects corrupted files
- Bundles are never modified after being written; a retrain replaces the file
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from ..common.bundle_constants import (
    BUNDLE_FILE_SUFFIX,
    BUNDLE_FORMAT_VERSION,
    BUNDLE_TMP_SUFFIX,
    GB_KEY,
    LINEAR_KEY,
    RF_KEY,
    RIDGE_KEY,
)
from ..common.errors import BundleLoadError, BundleNotFoundError
from ..common.metrics import AlgorithmMetrics, TrainingTime
from ..common.naming import bundle_id
from ..common.scalers import FeatureScalerState, LabelScalerState
from .gradient_boosting import BoostingState
from .random_forest import ForestState
from .ridge import LinearState


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CarMeta:
    make: str
    model: str
    min_year: Optional[int] = None
    max_year: Optional[int] = None

    def to_dict(self) -> dict:
        return {"make": self.make, "model": self.model, "min_year": self.min_year, "max_year": self.max_year}

    @classmethod
    def from_dict(cls, data: dict) -> 'CarMeta':
        return cls(
            make=str(data.get("make") or ""),
            model=str(data.get("model") or ""),
            min_year=data.get("min_year"),
            max_year=data.get("max_year"),
        )


@dataclass(frozen=True)
class PreprocessState:
    fuels: Tuple[str, ...]
    transmissions: Tuple[str, ...]
    feature_scaler: FeatureScalerState
    label_scaler: LabelScalerState
    anchor_target_year: int
    total_rows: int = 0

    def to_dict(self) -> dict:
        return {
            "fuels": list(self.fuels),
            "transmissions": list(self.transmissions),
            "feature_scaler": self.feature_scaler.to_dict(),
            "label_scaler": self.label_scaler.to_dict(),
            "anchor_target_year": self.anchor_target_year,
            "total_rows": self.total_rows,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PreprocessState':
        return cls(
            fuels=tuple(str(f) for f in data.get("fuels", [])),
            transmissions=tuple(str(t) for t in data.get("transmissions", [])),
            feature_scaler=FeatureScalerState.from_dict(data["feature_scaler"]),
            label_scaler=LabelScalerState.from_dict(data["label_scaler"]),
            anchor_target_year=int(data["anchor_target_year"]),
            total_rows=int(data.get("total_rows", 0)),
        )


@dataclass(frozen=True)
class ModelBundle:
    """
    Complete trained artifact set for one make/model.

    `rf` and `gb` are residual learners: they predict the ridge model's
    error and are only meaningful added to the ridge prediction.
    """
    car: CarMeta
    preprocess: PreprocessState
    linear: Optional[LinearState] = None
    ridge: Optional[LinearState] = None
    rf: Optional[ForestState] = None
    gb: Optional[BoostingState] = None
    metrics: Dict[str, AlgorithmMetrics] = field(default_factory=dict)
    training_times: Dict[str, TrainingTime] = field(default_factory=dict)
    version: str = BUNDLE_FORMAT_VERSION
    trained_at: str = field(default_factory=_utc_now)
    notes: Optional[str] = None

    @property
    def bundle_id(self) -> str:
        return bundle_id(self.car.make, self.car.model)

    @property
    def n_features(self) -> int:
        return self.preprocess.feature_scaler.n_features

    @property
    def algorithms(self) -> List[str]:
        """Learner keys present in the bundle."""
        present = [(LINEAR_KEY, self.linear), (RIDGE_KEY, self.ridge), (RF_KEY, self.rf), (GB_KEY, self.gb)]
        return [key for key, state in present if state is not None]

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "trained_at": self.trained_at,
            "notes": self.notes,
            "car": self.car.to_dict(),
            "preprocess": self.preprocess.to_dict(),
            "linear": self.linear.to_dict() if self.linear else None,
            "ridge": self.ridge.to_dict() if self.ridge else None,
            "random_forest": self.rf.to_dict() if self.rf else None,
            "gradient_boosting": self.gb.to_dict() if self.gb else None,
            "metrics": {k: m.to_dict() for k, m in self.metrics.items()},
            "training_times": {k: t.to_dict() for k, t in self.training_times.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ModelBundle':
        def optional(key, state_cls):
            raw = data.get(key)
            return state_cls.from_dict(raw) if raw else None

        return cls(
            car=CarMeta.from_dict(data.get("car") or {}),
            preprocess=PreprocessState.from_dict(data["preprocess"]),
            linear=optional("linear", LinearState),
            ridge=optional("ridge", LinearState),
            rf=optional("random_forest", ForestState),
            gb=optional("gradient_boosting", BoostingState),
            metrics={k: AlgorithmMetrics.from_dict(v) for k, v in (data.get("metrics") or {}).items()},
            training_times={k: TrainingTime.from_dict(v) for k, v in (data.get("training_times") or {}).items()},
            version=str(data.get("version", BUNDLE_FORMAT_VERSION)),
            trained_at=str(data.get("trained_at") or _utc_now()),
            notes=data.get("notes"),
        )


def payload_checksum(payload: dict) -> str:
    """SHA256 over the canonical (sorted, compact) JSON encoding of a bundle payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def save_bundle(bundle: ModelBundle, path) -> Path:
    """
    Write a bundle atomically.

    The document is written to a temp file in the destination directory and
    renamed over the target, so concurrent readers see either the old file
    or the complete new one.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = bundle.to_dict()
    document = {"checksum": payload_checksum(payload), "bundle": payload}

    fd, tmp_path = tempfile.mkstemp(suffix=BUNDLE_TMP_SUFFIX, prefix=f"{path.stem}_", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(document, f, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    logging.debug(f"Bundle {bundle.bundle_id} written to {path} ({os.path.getsize(path)} bytes)")
    return path


@dataclass(frozen=True)
class BundleSummary:
    """Bundle metadata for listings; the learner states are not retained."""
    car: CarMeta
    preprocess: PreprocessState
    version: str
    trained_at: str
    algorithms: Tuple[str, ...]

    @classmethod
    def of(cls, bundle: ModelBundle) -> 'BundleSummary':
        return cls(
            car=bundle.car,
            preprocess=bundle.preprocess,
            version=bundle.version,
            trained_at=bundle.trained_at,
            algorithms=tuple(bundle.algorithms),
        )


def load_bundle(path) -> ModelBundle:
    """
    Read and verify a bundle file.

    Raises:
        BundleNotFoundError: If the file does not exist
        BundleLoadError: If the file is not valid JSON, fails its checksum or has a bad structure
    """
    path = Path(path)
    if not path.is_file():
        raise BundleNotFoundError(f"Bundle not found: {path}")

    try:
        with open(path, "r") as f:
            document = json.load(f)
    except (OSError, ValueError) as e:
        raise BundleLoadError(f"Bundle {path.name} is unreadable: {e}") from e

    if not isinstance(document, dict) or not isinstance(document.get("bundle"), dict):
        raise BundleLoadError(f"Bundle {path.name} has no bundle payload")

    payload = document["bundle"]
    expected = document.get("checksum")
    if expected is not None and payload_checksum(payload) != expected:
        raise BundleLoadError(f"Bundle {path.name} failed its checksum")

    try:
        return ModelBundle.from_dict(payload)
    except (KeyError, TypeError, ValueError) as e:
        raise BundleLoadError(f"Bundle {path.name} is malformed: {e}") from e


class BundleRegistry:
    """
    Directory of processed bundles, one `{bundle_id}.json` file per make/model.
    """

    def __init__(self, processed_dir):
        self.processed_dir = Path(processed_dir)
        self.lock = threading.RLock()
        # path -> ((mtime_ns, size), summary or None when unreadable)
        self._summaries: Dict[Path, Tuple[Tuple[int, int], Optional[BundleSummary]]] = {}

    def path_for(self, make: str, model: str) -> Path:
        return self.processed_dir / f"{bundle_id(make, model)}{BUNDLE_FILE_SUFFIX}"

    def save(self, bundle: ModelBundle) -> Path:
        with self.lock:
            path = save_bundle(bundle, self.path_for(bundle.car.make, bundle.car.model))
        logging.info(f"Saved model bundle -> {path}")
        return path

    def list_bundle_files(self) -> List[Path]:
        if not self.processed_dir.is_dir():
            return []
        return sorted(p for p in self.processed_dir.glob(f"*{BUNDLE_FILE_SUFFIX}") if p.is_file())

    def iter_bundles(self) -> Iterator[Tuple[Path, ModelBundle]]:
        """Yield every readable bundle; unreadable files are logged and skipped."""
        for path in self.list_bundle_files():
            try:
                yield path, load_bundle(path)
            except BundleLoadError as e:
                logging.warning(f"Skipping bundle {path.name}: {e}")

    def iter_summaries(self) -> Iterator[Tuple[Path, BundleSummary]]:
        """
        Yield the metadata of every readable bundle.

        A file is parsed again only when its mtime or size changes; unreadable
        files are logged once per change and skipped.
        """
        with self.lock:
            paths = self.list_bundle_files()
            for stale in set(self._summaries) - set(paths):
                del self._summaries[stale]

            summaries = []
            for path in paths:
                try:
                    st = path.stat()
                except FileNotFoundError:
                    continue
                stamp = (st.st_mtime_ns, st.st_size)
                cached = self._summaries.get(path)
                if cached is None or cached[0] != stamp:
                    try:
                        summary = BundleSummary.of(load_bundle(path))
                    except BundleLoadError as e:
                        logging.warning(f"Skipping bundle {path.name}: {e}")
                        summary = None
                    cached = self._summaries[path] = (stamp, summary)
                if cached[1] is not None:
                    summaries.append((path, cached[1]))
        return iter(summaries)
