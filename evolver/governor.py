"""governor.py – Spectral health of the explored Cayley graph.

When search keeps circling a small, poorly connected region of the graph,
the random-walk operator on the explored subgraph has a second eigenvalue
close to 1 (a small spectral gap).  The governor estimates λ₂ by deflated
power iteration and drives a three-state machine:

    STABLE ──(gap < threshold)──► COLLAPSING ──(patience reached)──► MIGRATING

``migrate()`` bumps the algebra epoch, which re-derives Δ for the same
context, and returns the governor to STABLE.

License: MIT
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Hashable, List, Mapping, Optional, Sequence, Set

import numpy as np

logger = logging.getLogger(__name__)


class GovernorState(str, enum.Enum):
    STABLE = "stable"
    COLLAPSING = "collapsing"
    MIGRATING = "migrating"


@dataclass(frozen=True)
class GovernorConfig:
    min_spectral_gap: float = 0.05
    patience: int = 1          # consecutive low-gap observations before migrating
    min_nodes: int = 16        # smaller graphs are treated as healthy
    iterations: int = 64
    seed: int = 0
    max_migrations: int = 3

    def __post_init__(self) -> None:
        if not 0 < self.min_spectral_gap < 1:
            raise ValueError(f"min_spectral_gap must lie in (0, 1), got {self.min_spectral_gap}")
        if self.patience < 1 or self.iterations < 1:
            raise ValueError("patience and iterations must be positive")


def spectral_gap(
    adjacency: Mapping[Hashable, Sequence[Hashable]],
    degree: int,
    iterations: int = 64,
    seed: int = 0,
) -> float:
    """Estimate ``1 − |λ₂|`` of the random-walk operator on *adjacency*.

    Edges are taken as undirected (generator sets are closed under
    inversion).  Every node has *degree* moves; moves that leave the
    explored subgraph are folded into a self-loop so the operator stays
    stochastic.
    """
    edges: Dict[Hashable, Set[Hashable]] = {}
    for u, vs in adjacency.items():
        for v in vs:
            if v != u:
                edges.setdefault(u, set()).add(v)
                edges.setdefault(v, set()).add(u)
    nodes = sorted(set(adjacency) | set(edges))
    n = len(nodes)
    if n < 2 or degree < 1:
        return 1.0
    index = {node: i for i, node in enumerate(nodes)}
    m = np.zeros((n, n))
    for u in nodes:
        i = index[u]
        neighbours = edges.get(u, set())
        for v in neighbours:
            m[index[v], i] += 1.0 / degree
        m[i, i] += max(degree - len(neighbours), 0) / degree

    rng = np.random.default_rng(seed)
    uniform = np.full(n, 1.0 / np.sqrt(n))
    v = rng.standard_normal(n)
    for _ in range(iterations):
        v -= uniform * (uniform @ v)
        norm = np.linalg.norm(v)
        if norm < 1e-12:
            return 1.0
        v = m @ (v / norm)
    v -= uniform * (uniform @ v)
    lam = float(np.linalg.norm(v))
    return max(0.0, 1.0 - lam)


class SpectralGovernor:
    """Watch search health and decide when to migrate to a new algebra."""

    def __init__(self, config: Optional[GovernorConfig] = None) -> None:
        self.config = config or GovernorConfig()
        self.state = GovernorState.STABLE
        self.epoch = 0
        self.migrations = 0
        self.gap_history: List[float] = []
        self._low_streak = 0

    def observe(self, adjacency: Mapping[Hashable, Sequence[Hashable]], degree: int) -> GovernorState:
        cfg = self.config
        node_count = len(set(adjacency) | {v for vs in adjacency.values() for v in vs})
        if node_count < cfg.min_nodes:
            gap = 1.0
        else:
            gap = spectral_gap(adjacency, degree, cfg.iterations, cfg.seed)
        self.gap_history.append(gap)

        if gap < cfg.min_spectral_gap:
            self._low_streak += 1
            self.state = (
                GovernorState.MIGRATING if self._low_streak >= cfg.patience
                else GovernorState.COLLAPSING
            )
        else:
            self._low_streak = 0
            self.state = GovernorState.STABLE
        logger.debug("Spectral gap %.4f over %d nodes → %s", gap, node_count, self.state.value)
        return self.state

    def should_migrate(self, adjacency: Mapping[Hashable, Sequence[Hashable]], degree: int) -> bool:
        if self.migrations >= self.config.max_migrations:
            return False
        return self.observe(adjacency, degree) is GovernorState.MIGRATING

    def migrate(self) -> int:
        self.epoch += 1
        self.migrations += 1
        self.state = GovernorState.STABLE
        self._low_streak = 0
        logger.warning("Algebra migration → epoch %d", self.epoch)
        return self.epoch

    def reset(self) -> None:
        """Forget per-proof state; the gap history is kept for inspection."""
        self.state = GovernorState.STABLE
        self.epoch = 0
        self.migrations = 0
        self._low_streak = 0
