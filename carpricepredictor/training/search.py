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
Map-reduce hyperparameter search shared by the ridge, forest and boosting learners.

Candidates are split into contiguous chunks, one per worker. Every worker
evaluates its chunk sequentially and returns only its local best trial; the
global winner is then picked by a single-threaded reduction over
(score, evaluation order). No best-so-far state is shared between workers, and
ties always resolve to the candidate that comes first in evaluation order.
"""

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from ..common.errors import SearchError
from ..common.metrics import TrainingTime, root_mean_squared_error

Evaluator = Callable[[Dict[str, Any]], Tuple[float, Any]]


@dataclass(frozen=True)
class TrialOutcome:
    order: int
    score: float
    params: Dict[str, Any]
    model: Any = field(compare=False)


@dataclass(frozen=True)
class SearchResult:
    model: Any
    best_params: Dict[str, Any]
    best_rmse: float
    mean_trial_ms: float
    total_ms: float
    trials: int

    @property
    def training_time(self) -> TrainingTime:
        return TrainingTime(total_ms=self.total_ms, trials=self.trials, mean_trial_ms=self.mean_trial_ms)


def expand_grid(grid: Dict[str, Sequence[Any]]) -> List[Dict[str, Any]]:
    """Cartesian product of a parameter grid, in key order then value order."""
    if not grid:
        return []
    keys = list(grid.keys())
    return [dict(zip(keys, values)) for values in itertools.product(*(grid[k] for k in keys))]


def sample_candidates(
    grid: Dict[str, Sequence[Any]],
    max_configs: Optional[int] = None,
    seed: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Full grid when max_configs is None or covers it, otherwise a random
    sample of distinct configurations (drawn with `seed`) in draw order.
    """
    candidates = expand_grid(grid)
    if max_configs is None or max_configs >= len(candidates):
        return candidates
    rng = np.random.default_rng(seed)
    picks = rng.choice(len(candidates), size=max(1, int(max_configs)), replace=False)
    return [candidates[i] for i in picks]


def validation_rmse(truth, preds, label_scaler=None) -> float:
    """RMSE in price units when a label scaler is given, otherwise in scaled units."""
    if label_scaler is not None:
        with np.errstate(over="ignore", invalid="ignore"):
            return root_mean_squared_error(label_scaler.inverse_transform(truth),
                                           label_scaler.inverse_transform(preds))
    return root_mean_squared_error(truth, preds)


def _evaluate_chunk(chunk, evaluate: Evaluator, name: str):
    local_best: Optional[TrialOutcome] = None
    elapsed_ms = 0.0
    for order, params in chunk:
        start = time.perf_counter()
        score, model = evaluate(params)
        trial_ms = (time.perf_counter() - start) * 1000.0
        elapsed_ms += trial_ms

        logging.debug(f"[{name}] trial {order + 1}: {params} -> rmse={score:.4f} ({trial_ms:.1f} ms)")
        if not np.isfinite(score):
            continue
        if local_best is None or (score, order) < (local_best.score, local_best.order):
            local_best = TrialOutcome(order=order, score=float(score), params=params, model=model)
    return local_best, len(chunk), elapsed_ms


def _chunks(items: List[Any], parts: int) -> List[List[Any]]:
    size, extra = divmod(len(items), parts)
    out, start = [], 0
    for i in range(parts):
        end = start + size + (1 if i < extra else 0)
        if end > start:
            out.append(items[start:end])
        start = end
    return out


def reduce_best(outcomes: Sequence[Optional[TrialOutcome]]) -> Optional[TrialOutcome]:
    valid = [o for o in outcomes if o is not None]
    if not valid:
        return None
    return min(valid, key=lambda o: (o.score, o.order))


def run_search(
    candidates: Sequence[Dict[str, Any]],
    evaluate: Evaluator,
    n_jobs: int = -1,
    name: str = "search",
) -> SearchResult:
    """
    Evaluate every candidate and return the lowest-scoring one.

    Args:
        candidates: Parameter dictionaries in evaluation order
        evaluate: Callable returning (validation RMSE, fitted model) for one candidate
        n_jobs: joblib worker count (-1 = all cores)
        name: Label used in log lines

    Raises:
        SearchError: If there is nothing to evaluate or no candidate scored a finite RMSE
    """
    if not candidates:
        raise SearchError(f"{name}: no candidates to evaluate")

    start = time.perf_counter()
    indexed = list(enumerate(candidates))
    workers = max(1, min(effective_n_jobs(n_jobs), len(indexed)))
    chunks = _chunks(indexed, workers)

    if len(chunks) == 1:
        results = [_evaluate_chunk(chunks[0], evaluate, name)]
    else:
        results = Parallel(n_jobs=len(chunks), prefer="threads")(
            delayed(_evaluate_chunk)(chunk, evaluate, name) for chunk in chunks
        )

    best = reduce_best([local_best for local_best, _, _ in results])
    trials = sum(count for _, count, _ in results)
    trial_ms = sum(ms for _, _, ms in results)
    total_ms = (time.perf_counter() - start) * 1000.0

    if best is None:
        raise SearchError(f"{name}: none of {trials} candidates produced a finite validation RMSE")

    logging.info(f"[{name}] best rmse={best.score:.4f} params={best.params} "
                 f"({trials} trials, {total_ms:.0f} ms total)")

    return SearchResult(
        model=best.model,
        best_params=dict(best.params),
        best_rmse=best.score,
        mean_trial_ms=trial_ms / trials,
        total_ms=total_ms,
        trials=trials,
    )
