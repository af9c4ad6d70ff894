"""rules.py – Inference rules and relations as STP structure matrices.

Logical values live in the two-dimensional truth space Δ₂:

    δ₂¹ = [1, 0]   (Even / True)
    δ₂² = [0, 1]   (Odd  / False)

A k-ary rule R is represented by its *structure matrix* M_R (2 × 2ᵏ), built
once from the rule's truth table, so that

    R(x₁, …, x_k) = M_R ⋉ x₁ ⋉ … ⋉ x_k

where ⋉ is the semi-tensor product.  Relations (``is``, ``NotEquals``) are
binary rules whose output is a truth value.

Adding a new rule:
  1. Write its truth table over the parity indices (1 = Even, 2 = Odd).
  2. Register it in ``default_rules()``.

License: MIT
"""

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass
from functools import reduce
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import numpy as np


def _frozen(values) -> np.ndarray:
    arr = np.array(values, dtype=float)
    arr.setflags(write=False)
    return arr


EVEN = _frozen([1.0, 0.0])
ODD = _frozen([0.0, 1.0])
TRUE = EVEN
FALSE = ODD

# Undetermined parity: a uniform mixture, resolved only by a case split.
INTEGER = _frozen([0.5, 0.5])

CONCEPT_VECTORS: Mapping[str, np.ndarray] = MappingProxyType({
    "Even": EVEN,
    "Odd": ODD,
    "True": TRUE,
    "False": FALSE,
    "Integer": INTEGER,
})

EXCLUSIVE_CONCEPTS: FrozenSet[FrozenSet[str]] = frozenset({
    frozenset({"Even", "Odd"}),
    frozenset({"True", "False"}),
    frozenset({"Zero", "Positive"}),
})


def exclusive(a: str, b: str) -> bool:
    return frozenset({a, b}) in EXCLUSIVE_CONCEPTS


# ── Semi-tensor product ──────────────────────────────────────────────

def _as_matrix(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    return x.reshape(-1, 1) if x.ndim == 1 else x


def stp(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Left semi-tensor product  A ⋉ B = (A ⊗ I_{t/n})(B ⊗ I_{t/p}).

    ``n`` is the column count of A, ``p`` the row count of B and
    ``t = lcm(n, p)``.  1-D inputs are treated as column vectors.
    """
    a, b = _as_matrix(a), _as_matrix(b)
    n, p = a.shape[1], b.shape[0]
    t = n * p // math.gcd(n, p)
    left = a if t == n else np.kron(a, np.eye(t // n))
    right = b if t == p else np.kron(b, np.eye(t // p))
    return left @ right


def stp_chain(*factors: np.ndarray) -> np.ndarray:
    """M ⋉ x₁ ⋉ … ⋉ x_k, left to right."""
    if not factors:
        raise ValueError("stp_chain needs at least one factor")
    return reduce(stp, factors)


def structure_matrix(table: Mapping[Tuple[int, ...], int], arity: int, size: int = 2) -> np.ndarray:
    """Build M_R from a truth table over 1-based δ indices.

    Column j of M_R corresponds to the j-th input tuple in lexicographic
    order, which is exactly the column selected by x₁ ⋉ … ⋉ x_k.
    """
    inputs = list(itertools.product(range(1, size + 1), repeat=arity))
    missing = [idx for idx in inputs if idx not in table]
    if missing:
        raise ValueError(f"truth table is missing inputs {missing}")
    m = np.zeros((size, size ** arity))
    for col, idx in enumerate(inputs):
        out = table[idx]
        if not 1 <= out <= size:
            raise ValueError(f"truth table output {out} out of range for inputs {idx}")
        m[out - 1, col] = 1.0
    m.setflags(write=False)
    return m


# ── Rule registry ────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class InferenceRule:
    """A named k-ary operation with its precomputed structure matrix."""
    name: str
    arity: int
    matrix: np.ndarray
    description: str = ""

    def apply(self, *inputs: np.ndarray) -> np.ndarray:
        if len(inputs) != self.arity:
            raise ValueError(f"{self.name} takes {self.arity} inputs, got {len(inputs)}")
        return stp_chain(self.matrix, *inputs).ravel()


def _rule(name: str, table: Dict[Tuple[int, ...], int], description: str) -> InferenceRule:
    arity = len(next(iter(table)))
    return InferenceRule(name, arity, structure_matrix(table, arity), description)


def default_rules() -> List[InferenceRule]:
    """Parity arithmetic: 1 = Even, 2 = Odd."""
    return [
        _rule("ModAdd", {(1, 1): 1, (1, 2): 2, (2, 1): 2, (2, 2): 1},
              "parity of a sum"),
        _rule("ModMul", {(1, 1): 1, (1, 2): 1, (2, 1): 1, (2, 2): 2},
              "parity of a product"),
        _rule("Succ", {(1,): 2, (2,): 1}, "parity of n + 1"),
        _rule("Double", {(1,): 1, (2,): 1}, "parity of 2n"),
        _rule("Square", {(1,): 1, (2,): 2}, "parity of n²"),
        _rule("Negate", {(1,): 1, (2,): 2}, "parity of −n"),
    ]


def default_relations() -> List[InferenceRule]:
    """Binary relations returning a truth value: 1 = True, 2 = False."""
    equals = {(1, 1): 1, (1, 2): 2, (2, 1): 2, (2, 2): 1}
    differs = {(1, 1): 2, (1, 2): 1, (2, 1): 1, (2, 2): 2}
    return [
        _rule("is", equals, "subject has the object's value"),
        _rule("Equals", equals, "subject equals object"),
        _rule("NotEquals", differs, "subject differs from object"),
    ]


# Relations under which an Assert attaches its object as a concept.
IDENTITY_RELATIONS: FrozenSet[str] = frozenset({"is", "Equals"})


class RuleBook:
    """Immutable lookup of rules and relations by name."""

    def __init__(
        self,
        rules: Optional[Iterable[InferenceRule]] = None,
        relations: Optional[Iterable[InferenceRule]] = None,
    ) -> None:
        self._rules = MappingProxyType(
            {r.name: r for r in (rules if rules is not None else default_rules())}
        )
        self._relations = MappingProxyType(
            {r.name: r for r in (relations if relations is not None else default_relations())}
        )
        for rel in self._relations.values():
            if rel.arity != 2:
                raise ValueError(f"relation {rel.name} must be binary, got arity {rel.arity}")

    def rule(self, name: str) -> Optional[InferenceRule]:
        return self._rules.get(name)

    def relation(self, name: str) -> Optional[InferenceRule]:
        return self._relations.get(name)

    @property
    def rule_names(self) -> Tuple[str, ...]:
        return tuple(self._rules)

    @property
    def relation_names(self) -> Tuple[str, ...]:
        return tuple(self._relations)


DEFAULT_RULEBOOK = RuleBook()
