"""lifter.py – Carry search progress across an algebra migration.

After the governor migrates to a new epoch, Cl(Δ_new) shares no group
structure with Cl(Δ_old), but Ψ_topo features are coordinate-free enough
to compare.  The lifter turns the old best state into a *seed word* over
the new generator set:

1. **Lift** – project the old best state to its smooth features.
2. **Transport** – replay the old trace indices in the new algebra; the
   word is syntax, so it lands somewhere reasonable without any algebra.
3. **Re-quantize** – beam search over words extending that replay,
   minimising the feature distance to the lifted target.

The result is a list of generator indices, so the next search (and any
verifier) still starts from the identity and replays everything.

License: MIT
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LiftConfig:
    beam_width: int = 8
    max_steps: int = 24
    relaxation: float = 1.2   # children may be this much farther than their parent
    max_replay: int = 256     # longest old-trace prefix replayed in the new algebra

    def __post_init__(self) -> None:
        if self.beam_width < 1 or self.max_steps < 0 or self.max_replay < 0:
            raise ValueError("beam_width must be positive, max_steps and max_replay non-negative")
        if self.relaxation < 1.0:
            raise ValueError(f"relaxation must be ≥ 1, got {self.relaxation}")


@dataclass(frozen=True)
class _Node:
    word: Tuple[int, ...]
    state: Any
    dist: float

    def key(self) -> Tuple[float, int, Tuple[int, ...]]:
        return (self.dist, len(self.word), self.word)


def _distance(u: Sequence[float], v: Sequence[float]) -> float:
    return math.sqrt(sum((a - b) ** 2 for a, b in zip(u, v)))


class StateLifter:
    """Map a state of one algebra epoch to a seed word of the next.

    Parameters
    ----------
    config : LiftConfig, optional
        Beam width, depth, pruning slack and replay cap.
    """

    def __init__(self, config: Optional[LiftConfig] = None) -> None:
        self.config = config or LiftConfig()

    def lift(
        self,
        old_algebra: Any,
        old_state: Any,
        new_algebra: Any,
        generators: Sequence[Any],
        old_trace: Sequence[int] = (),
    ) -> List[int]:
        """Return generator indices whose replay approximates *old_state*.

        Old trace entries outside the new generator set are skipped.
        """
        cfg = self.config
        target = tuple(old_algebra.features(old_state))

        word: List[int] = []
        state = new_algebra.identity()
        for idx in list(old_trace)[: cfg.max_replay]:
            if 0 <= idx < len(generators):
                state = new_algebra.compose(state, generators[idx].element)
                word.append(idx)

        seed = _Node(tuple(word), state, _distance(new_algebra.features(state), target))
        best = seed
        frontier: List[_Node] = [seed]
        visited: Set[Tuple[int, ...]] = {new_algebra.canonical(state)}

        for _ in range(cfg.max_steps):
            children: List[_Node] = []
            for node in frontier:
                for g in generators:
                    nxt = new_algebra.compose(node.state, g.element)
                    canon = new_algebra.canonical(nxt)
                    if canon in visited:
                        continue
                    visited.add(canon)
                    d = _distance(new_algebra.features(nxt), target)
                    if d < node.dist * cfg.relaxation:
                        children.append(_Node(node.word + (g.index,), nxt, d))
            if not children:
                break
            children.sort(key=_Node.key)
            frontier = children[: cfg.beam_width]
            if frontier[0].key() < best.key():
                best = frontier[0]

        logger.info(
            "Lifted state across migration: replay %d, word %d, feature distance %.4g → %.4g",
            len(word), len(best.word), seed.dist, best.dist,
        )
        return list(best.word)
