"""proposer.py – Optional, untrusted heuristic proposer.

A proposer may suggest a *seed word* (generator indices applied to the
identity before search) and a *schedule bias* (how fast the valuation
window tightens).  Its output is never trusted: indices and bias are
validated here, invalid suggestions are dropped with a warning, and the
seed state is scored by the ordinary evaluator like any other state.
Seed moves are recorded in the trace, so verification still replays from
the identity and never needs to know a proposer was involved.

License: MIT
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Protocol, Sequence, Tuple, runtime_checkable

from .dsl import Theorem

logger = logging.getLogger(__name__)

MAX_SEED_LENGTH = 64


@dataclass(frozen=True)
class Proposal:
    seed_word: Tuple[int, ...] = ()
    schedule_bias: float = 1.0


@runtime_checkable
class HeuristicProposer(Protocol):
    """Anything that can suggest where search should start."""

    @property
    def name(self) -> str:
        ...

    def propose(self, ctx_hash: str, theorem: Theorem, generator_count: int) -> Proposal:
        ...


class NullProposer:
    """Proposes nothing: search starts at the identity with no bias."""

    _name = "null"

    @property
    def name(self) -> str:
        return self._name

    def propose(self, ctx_hash: str, theorem: Theorem, generator_count: int) -> Proposal:
        return Proposal()


class FixedProposer:
    """Replays a fixed suggestion (e.g. one computed offline)."""

    _name = "fixed"

    def __init__(self, seed_word: Sequence[int] = (), schedule_bias: float = 1.0) -> None:
        self._proposal = Proposal(tuple(seed_word), schedule_bias)

    @property
    def name(self) -> str:
        return self._name

    def propose(self, ctx_hash: str, theorem: Theorem, generator_count: int) -> Proposal:
        return self._proposal


def sanitize_proposal(
    proposal: Proposal,
    generator_count: int,
    max_seed_length: int = MAX_SEED_LENGTH,
) -> Proposal:
    """Drop any part of *proposal* that is not well formed."""
    seed = proposal.seed_word
    bad = [
        i for i in seed
        if isinstance(i, bool) or not isinstance(i, int) or not 0 <= i < generator_count
    ]
    if bad:
        logger.warning("Dropping seed word with out-of-range indices %s", bad[:5])
        seed = ()
    elif len(seed) > max_seed_length:
        logger.warning(
            "Dropping seed word of length %d (limit %d)", len(seed), max_seed_length,
        )
        seed = ()

    bias = proposal.schedule_bias
    if not isinstance(bias, (int, float)) or not math.isfinite(bias) or bias <= 0:
        logger.warning("Ignoring invalid schedule bias %r", bias)
        bias = 1.0
    return Proposal(tuple(seed), float(bias))
