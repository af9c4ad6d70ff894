"""search.py – Valuation-adaptive perturbation optimization (VAPO).

The optimizer walks the Cayley graph of the algebra from the identity:

* **Valuation schedule**: each iteration only considers a window of the
  public generator set.  Early windows hold every perturbation (global
  jumps through large-norm generators); the window tightens monotonically
  towards the small-norm generators, never below ``min_window``.
* **Parallel evaluation**: candidates ``S ∘ g`` are materialized and
  scored in a ``ThreadPoolExecutor``; each iteration joins every result
  before selecting.
* **Deterministic selection**: candidates are ranked by
  ``(barrier, total, residual, generator index)``, so the outcome never
  depends on worker finish order.  States already visited are skipped
  while any fresh candidate remains (``avoid_revisits``).  With
  ``temperature > 0`` a seeded Metropolis step may accept a worse
  candidate.
* **Trace**: every accepted move appends its generator index, so
  ``S_final = g_{i₁} ∘ … ∘ g_{i_k}`` replays from the identity.

The status machine is ``EXPLORING → CONVERGED | EXHAUSTED``.

License: MIT
"""

from __future__ import annotations

import enum
import logging
import math
import os
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .algebra import Perturbation
from .energy import EnergyEvaluator, EnergySignal

logger = logging.getLogger(__name__)

_CPU_COUNT = os.cpu_count() or 4


class SearchStatus(str, enum.Enum):
    EXPLORING = "exploring"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"


@dataclass
class SearchConfig:
    max_iterations: int = 4096
    residual_tolerance: float = 1e-6
    min_window: int = 4
    schedule_power: float = 1.0
    parallel_workers: int = 0  # 0 = min(window, cpu_count)
    temperature: float = 0.0   # 0 = pure greedy descent
    seed: int = 0
    avoid_revisits: bool = True
    record_graph: bool = False
    time_budget_s: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.min_window < 1:
            raise ValueError(f"min_window must be positive, got {self.min_window}")
        if self.schedule_power <= 0:
            raise ValueError(f"schedule_power must be positive, got {self.schedule_power}")
        if self.temperature < 0:
            raise ValueError(f"temperature must be non-negative, got {self.temperature}")


@dataclass(frozen=True)
class Candidate:
    index: int
    state: Any
    energy: EnergySignal

    def key(self) -> Tuple[float, float, float, int]:
        return self.energy.rank_key() + (self.index,)


@dataclass(frozen=True)
class SearchEvent:
    """Progress report emitted once per iteration."""
    iteration: int
    window_size: int
    current_energy: float
    best_energy: float
    best_barrier: float


@dataclass
class SearchResult:
    status: SearchStatus
    final_state: Any
    final_energy: EnergySignal
    best_state: Any
    best_energy: EnergySignal
    trace: List[int]
    iterations: int
    evaluations: int
    seed_moves: int = 0
    best_trace_length: int = 0
    stopped_early: bool = False
    explored: Dict[Tuple[int, ...], List[Tuple[int, ...]]] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.status is SearchStatus.CONVERGED

    @property
    def best_trace(self) -> List[int]:
        """Prefix of the trace that replays to ``best_state``."""
        return self.trace[: self.best_trace_length]


# ── Valuation schedule ───────────────────────────────────────────────

@dataclass(frozen=True)
class ValuationSchedule:
    """Monotonically tightening window over the generator set.

    Generators are grouped by norm (a generator and its inverse share one).
    At progress ``p = min(1, bias · t / (n_max - 1)) ** power`` the window keeps
    the smallest ``n_norms − ⌊(n_norms − floor) · p⌋`` norm groups, where
    ``floor`` is the number of groups needed to hold ``min_window``
    generators.
    """
    min_window: int = 4
    power: float = 1.0

    def window(
        self,
        generators: Sequence[Perturbation],
        t: int,
        n_max: int,
        bias: float = 1.0,
    ) -> Tuple[Perturbation, ...]:
        if not generators:
            return ()
        if bias <= 0:
            raise ValueError(f"schedule bias must be positive, got {bias}")
        norms = sorted({g.norm for g in generators})
        floor = len(norms)
        count = 0
        for i, norm in enumerate(norms):
            count += sum(1 for g in generators if g.norm == norm)
            if count >= self.min_window:
                floor = i + 1
                break
        progress = min(1.0, bias * max(t, 0) / max(n_max - 1, 1)) ** self.power
        keep = len(norms) - math.floor((len(norms) - floor) * progress)
        allowed = set(norms[: max(floor, keep)])
        return tuple(g for g in generators if g.norm in allowed)


# ── Candidate evaluation (unit of parallel work) ─────────────────────

def _evaluate_candidate(
    algebra: Any,
    evaluator: EnergyEvaluator,
    state: Any,
    generator: Perturbation,
) -> Candidate:
    nxt = algebra.compose(state, generator.element)
    return Candidate(generator.index, nxt, evaluator.evaluate(nxt))


def _evaluate_window(
    pool: Optional[ThreadPoolExecutor],
    algebra: Any,
    evaluator: EnergyEvaluator,
    state: Any,
    window: Sequence[Perturbation],
) -> List[Candidate]:
    if pool is None:
        return [_evaluate_candidate(algebra, evaluator, state, g) for g in window]
    results: List[Candidate] = []
    futures = {
        pool.submit(_evaluate_candidate, algebra, evaluator, state, g): g.index
        for g in window
    }
    for future in as_completed(futures):
        results.append(future.result())
    return results


def _select(
    candidates: List[Candidate],
    temperature: float,
    t: int,
    n_max: int,
    rng: random.Random,
) -> Candidate:
    best = candidates[0]
    if temperature <= 0 or len(candidates) == 1:
        return best
    temp = temperature * (1.0 - t / n_max)
    if temp <= 0:
        return best
    challenger = candidates[rng.randrange(1, len(candidates))]
    delta = challenger.energy.total - best.energy.total
    if delta <= 0 or rng.random() < math.exp(-delta / temp):
        return challenger
    return best


# ── Main entry point ─────────────────────────────────────────────────

def vapo_search(
    algebra: Any,
    generators: Sequence[Perturbation],
    evaluator: EnergyEvaluator,
    config: Optional[SearchConfig] = None,
    *,
    seed_word: Sequence[int] = (),
    bias: float = 1.0,
    on_event: Optional[Callable[[SearchEvent], None]] = None,
    stop_event: Optional[threading.Event] = None,
) -> SearchResult:
    """Search for a state whose materialized path has zero energy.

    Parameters
    ----------
    algebra, generators
        The capability set and the public perturbations P.
    evaluator
        Pure state → EnergySignal function.
    config
        Budget and schedule; defaults to ``SearchConfig()``.
    seed_word
        Generator indices applied to the identity before search starts.
        They become the first entries of the trace.
    bias
        Multiplies the rate at which the valuation window tightens.
    on_event
        Called with a ``SearchEvent`` after every iteration.
    stop_event
        Checked at iteration boundaries; when set, the best-so-far is
        returned with ``stopped_early=True``.
    """
    config = config or SearchConfig()
    if not generators:
        raise ValueError("generator set is empty")
    by_index = {g.index: g for g in generators}
    schedule = ValuationSchedule(config.min_window, config.schedule_power)
    rng = random.Random(config.seed)
    tol = config.residual_tolerance

    state = algebra.identity()
    trace: List[int] = []
    for idx in seed_word:
        g = by_index.get(idx)
        if g is None:
            raise ValueError(f"seed word index {idx} outside generator set of size {len(generators)}")
        state = algebra.compose(state, g.element)
        trace.append(idx)
    seed_moves = len(trace)

    energy = evaluator.evaluate(state)
    evaluations = 1
    best_state, best_energy, best_len = state, energy, len(trace)
    explored: Dict[Tuple[int, ...], List[Tuple[int, ...]]] = {}
    visited: Set[Tuple[int, ...]] = {algebra.canonical(state)}

    if energy.converged(tol):
        logger.info("Seed state already converged (trace length %d)", len(trace))
        return SearchResult(
            SearchStatus.CONVERGED, state, energy, state, energy, trace, 0,
            evaluations, seed_moves, len(trace),
        )

    n_workers = config.parallel_workers or min(len(generators), _CPU_COUNT)
    deadline = (
        time.monotonic() + config.time_budget_s if config.time_budget_s is not None else None
    )
    status = SearchStatus.EXPLORING
    stopped = False
    iterations = 0

    pool = ThreadPoolExecutor(max_workers=n_workers) if n_workers > 1 else None
    try:
        for t in range(config.max_iterations):
            iterations = t + 1
            window = schedule.window(generators, t, config.max_iterations, bias)
            candidates = _evaluate_window(pool, algebra, evaluator, state, window)
            evaluations += len(candidates)
            candidates.sort(key=Candidate.key)

            if config.record_graph:
                explored.setdefault(algebra.canonical(state), []).extend(
                    algebra.canonical(c.state) for c in candidates
                )

            winner = next((c for c in candidates if c.energy.converged(tol)), None)
            if winner is not None:
                state, energy = winner.state, winner.energy
                trace.append(winner.index)
                best_state, best_energy, best_len = state, energy, len(trace)
                status = SearchStatus.CONVERGED
                if on_event is not None:
                    on_event(SearchEvent(t, len(window), energy.total, energy.total, energy.barrier))
                break

            # On a flat plateau the argmin may be the state we just left.
            eligible = candidates
            if config.avoid_revisits:
                eligible = [c for c in candidates if algebra.canonical(c.state) not in visited] or candidates
            chosen = _select(eligible, config.temperature, t, config.max_iterations, rng)
            state, energy = chosen.state, chosen.energy
            trace.append(chosen.index)
            if config.avoid_revisits:
                visited.add(algebra.canonical(state))
            if energy.rank_key() < best_energy.rank_key():
                best_state, best_energy, best_len = state, energy, len(trace)

            logger.debug(
                "iter %d: window=%d move=%d J=%.4g best=%.4g",
                t, len(window), chosen.index, energy.total, best_energy.total,
            )
            if on_event is not None:
                on_event(SearchEvent(t, len(window), energy.total, best_energy.total, best_energy.barrier))

            if stop_event is not None and stop_event.is_set():
                stopped = True
                break
            if deadline is not None and time.monotonic() >= deadline:
                stopped = True
                break
    finally:
        if pool is not None:
            pool.shutdown(wait=True)

    if status is SearchStatus.CONVERGED:
        logger.info(
            "Search converged after %d iterations (%d evaluations, trace length %d)",
            iterations, evaluations, len(trace),
        )
    else:
        status = SearchStatus.EXHAUSTED
        logger.info(
            "Search %s after %d iterations; best J=%.4g (%s)",
            "stopped" if stopped else "exhausted", iterations,
            best_energy.total, best_energy.tier,
        )

    return SearchResult(
        status=status,
        final_state=state,
        final_energy=energy,
        best_state=best_state,
        best_energy=best_energy,
        trace=trace,
        iterations=iterations,
        evaluations=evaluations,
        seed_moves=seed_moves,
        best_trace_length=best_len,
        stopped_early=stopped,
        explored=explored,
    )
