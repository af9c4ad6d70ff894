"""materialize.py – Soul → Body projection.

Two views of an algebraic state:

* **Ψ_topo** – smooth, lossy features.  A reduced form (a, b, c) is a
  point z = x + iy of the upper half plane with x = −b / 2a and
  y = √|Δ| / 2a; its features are (cos 2πx, sin 2πx, log y).  Nearby
  forms have nearby features, which is what lets a residual guide search.

* **Ψ_exact** – an avalanche digest (SHAKE-256, 1024-bit output) of the
  canonical encoding.  Flipping any single input bit changes about half
  of the output bits, so nothing about a path can be predicted from a
  neighbouring state.

The digest seeds a digit stream that is decoded, slot by slot, into a
proof path drawn from a menu of syntactically plausible actions.  Decoding
is total: every state yields a path, valid or not.

License: MIT
"""

from __future__ import annotations

import hashlib
import itertools
import logging
import math
from typing import Any, List, Optional, Sequence, Tuple, Union

from .dsl import QED, Apply, Assert, Branch, Case, Define, Path, ProofAction, Theorem
from .rules import DEFAULT_RULEBOOK, RuleBook

logger = logging.getLogger(__name__)

EXACT_DIGEST_BYTES = 128  # 1024-bit avalanche digest


# ── Ψ_topo ───────────────────────────────────────────────────────────

def form_features(a: int, b: int, delta: int) -> Tuple[float, float, float]:
    """Upper-half-plane embedding of the reduced form (a, b, ·) of disc Δ."""
    x = -b / (2 * a)
    log_y = 0.5 * math.log(-delta) - math.log(2 * a)
    angle = 2.0 * math.pi * x
    return (math.cos(angle), math.sin(angle), log_y)


def bucketed(features: Sequence[float], resolution: float = 1e-3) -> Tuple[float, ...]:
    """Lossy bucketing of a feature vector onto a grid of *resolution*."""
    if resolution <= 0:
        raise ValueError(f"resolution must be positive, got {resolution}")
    return tuple(round(f / resolution) * resolution for f in features)


def topo_features(algebra: Any, state: Any, resolution: Optional[float] = None) -> Tuple[float, ...]:
    features = tuple(algebra.features(state))
    return bucketed(features, resolution) if resolution else features


# ── Ψ_exact ──────────────────────────────────────────────────────────

def encode_canonical(values: Sequence[int]) -> bytes:
    """Length-prefixed, signed big-endian encoding of canonical integers."""
    parts = [b"evolver/state", len(values).to_bytes(4, "big")]
    for v in values:
        raw = int(v).to_bytes(abs(int(v)).bit_length() // 8 + 1, "big", signed=True)
        parts.append(len(raw).to_bytes(4, "big"))
        parts.append(raw)
    return b"".join(parts)


def exact_digest(values: Sequence[int]) -> bytes:
    return hashlib.shake_256(encode_canonical(values)).digest(EXACT_DIGEST_BYTES)


class DigitStream:
    """Unbounded stream of 32-bit digits expanded from a digest."""

    __slots__ = ("_seed", "_counter", "_buffer")

    def __init__(self, seed: bytes) -> None:
        self._seed = seed
        self._counter = 0
        self._buffer: List[int] = []

    def next(self) -> int:
        if not self._buffer:
            block = hashlib.sha256(self._seed + self._counter.to_bytes(8, "big")).digest()
            self._counter += 1
            self._buffer = [
                int.from_bytes(block[i:i + 4], "big") for i in range(28, -1, -4)
            ]
        return self._buffer.pop()


# ── Path decoding ────────────────────────────────────────────────────

MenuItem = Union[ProofAction, Case]


class Materializer:
    """Decode states into proof paths for one theorem.

    Parameters
    ----------
    theorem : Theorem
        Supplies the vocabularies and the symbol names a path may use.
    depth : int
        Maximum number of top-level actions (decoding stops earlier at QED).
    branch_depth : int
        Number of actions decoded into each branch sub-proof.
    """

    def __init__(
        self,
        theorem: Theorem,
        depth: int = 5,
        branch_depth: int = 3,
        rulebook: Optional[RuleBook] = None,
    ) -> None:
        if depth < 1 or branch_depth < 1:
            raise ValueError(f"depths must be positive, got {depth} / {branch_depth}")
        self.theorem = theorem
        self.depth = depth
        self.branch_depth = branch_depth
        self.rulebook = rulebook or DEFAULT_RULEBOOK

    def digest(self, algebra: Any, state: Any) -> bytes:
        return exact_digest(algebra.canonical(state))

    def materialize_path(self, algebra: Any, state: Any) -> Path:
        digits = DigitStream(self.digest(algebra, state))
        return self._decode(digits, [], set(), self.depth, top=True)

    # ── Internals ────────────────────────────────────────────

    def _decode(
        self,
        digits: DigitStream,
        defined: List[str],
        used_cases: set,
        depth: int,
        top: bool,
    ) -> Path:
        defined = list(defined)
        actions: List[ProofAction] = []
        for _ in range(depth):
            menu = self.menu(defined, used_cases, top)
            if not menu:
                break
            item = menu[digits.next() % len(menu)]
            if isinstance(item, Case):
                used_cases.add(item.case_id)
                sub = self._decode(digits, defined, used_cases, self.branch_depth, top=False)
                item = Branch(item.case_id, sub)
            actions.append(item)
            if isinstance(item, Define):
                defined.append(item.symbol)
            elif isinstance(item, Apply):
                defined.append(item.output)
            elif isinstance(item, QED):
                break
        return tuple(actions)

    def menu(self, defined: Sequence[str], used_cases: set = frozenset(), top: bool = True) -> List[MenuItem]:
        """The ordered menu of plausible next actions for a scope."""
        thm = self.theorem
        items: List[MenuItem] = []

        pending = [s for s in thm.hypothesis_symbols if s not in defined]
        if pending:
            items.extend(Define(pending[0], t) for t in thm.types)

        fresh = [d for d in thm.derived if d not in defined]
        if fresh:
            for name in thm.rules:
                rule = self.rulebook.rule(name)
                if rule is None:
                    continue
                for combo in itertools.combinations(defined, rule.arity):
                    items.append(Apply(name, combo, fresh[0]))

        for symbol in defined:
            for rel in thm.relations:
                items.extend(Assert(symbol, rel, t) for t in thm.types)

        if top:
            items.extend(
                c for c in thm.cases
                if c.case_id not in used_cases and c.symbol in defined
            )
            items.append(QED())
        return items
