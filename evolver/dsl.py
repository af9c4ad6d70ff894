"""dsl.py – Proof DSL: actions, paths, symbol tables, target theorems.

Provides the foundational data types for the logic side of the system:
  • Define / Assert / Apply / Branch / QED – the closed set of proof
    actions a materialized path is made of
  • Path – an ordered tuple of actions
  • SymbolTable – incremental symbol → truth-vector map with definition
    order, cloned per branch scope
  • Theorem / Case – the public target description (hypotheses, goal,
    vocabularies, case split, optional target feature)
  • Built-in parity theorems, including the end-to-end scenario
    "prove sum of two odds is even"

License: MIT
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, ClassVar, Dict, Iterable, List, Optional, Set, Tuple, Union

import numpy as np


# ── Proof actions ────────────────────────────────────────────────────

@dataclass(frozen=True)
class Define:
    """Introduce *symbol* with the given logical type."""
    symbol: str
    type: str

    kind: ClassVar[str] = "Define"

    def __str__(self) -> str:
        return f"Define({self.symbol}, {self.type})"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "symbol": self.symbol, "type": self.type}

    @classmethod
    def from_dict(cls, d: dict) -> "Define":
        return cls(symbol=d["symbol"], type=d["type"])


@dataclass(frozen=True)
class Assert:
    """Claim ``relation(subject, object)``; *object* is a type or a symbol."""
    subject: str
    relation: str
    object: str

    kind: ClassVar[str] = "Assert"

    def __str__(self) -> str:
        return f"Assert({self.subject} {self.relation} {self.object})"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "subject": self.subject,
            "relation": self.relation,
            "object": self.object,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Assert":
        return cls(subject=d["subject"], relation=d["relation"], object=d["object"])


@dataclass(frozen=True)
class Apply:
    """Apply *rule* to *inputs*, binding the result to *output*."""
    rule: str
    inputs: Tuple[str, ...]
    output: str

    kind: ClassVar[str] = "Apply"

    def __post_init__(self) -> None:
        if not isinstance(self.inputs, tuple):
            object.__setattr__(self, "inputs", tuple(self.inputs))

    def __str__(self) -> str:
        return f"Apply({self.rule}, [{', '.join(self.inputs)}] → {self.output})"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "rule": self.rule,
            "inputs": list(self.inputs),
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Apply":
        return cls(rule=d["rule"], inputs=tuple(d["inputs"]), output=d["output"])


@dataclass(frozen=True)
class Branch:
    """Case *case_id* of a case split, proved by *sub_proof*."""
    case_id: str
    sub_proof: Tuple["ProofAction", ...]

    kind: ClassVar[str] = "Branch"

    def __post_init__(self) -> None:
        if not isinstance(self.sub_proof, tuple):
            object.__setattr__(self, "sub_proof", tuple(self.sub_proof))

    def __str__(self) -> str:
        inner = "; ".join(str(a) for a in self.sub_proof)
        return f"Branch({self.case_id}: {inner})"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "case_id": self.case_id,
            "sub_proof": [a.to_dict() for a in self.sub_proof],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Branch":
        return cls(
            case_id=d["case_id"],
            sub_proof=tuple(action_from_dict(a) for a in d["sub_proof"]),
        )


@dataclass(frozen=True)
class QED:
    """Close the proof."""

    kind: ClassVar[str] = "QED"

    def __str__(self) -> str:
        return "QED"

    def to_dict(self) -> dict:
        return {"kind": self.kind}

    @classmethod
    def from_dict(cls, d: dict) -> "QED":
        return cls()


ProofAction = Union[Define, Assert, Apply, Branch, QED]
Path = Tuple[ProofAction, ...]

_ACTION_TYPES: Dict[str, type] = {
    cls.kind: cls for cls in (Define, Assert, Apply, Branch, QED)
}


def action_from_dict(d: dict) -> ProofAction:
    kind = d.get("kind")
    cls = _ACTION_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown proof action kind: {kind!r}")
    return cls.from_dict(d)


def format_path(path: Iterable[ProofAction], indent: str = "") -> str:
    """Render a path one action per line, nesting branch sub-proofs."""
    lines: List[str] = []
    for i, action in enumerate(path, 1):
        if isinstance(action, Branch):
            lines.append(f"{indent}{i}. Branch {action.case_id}:")
            lines.append(format_path(action.sub_proof, indent + "    "))
        else:
            lines.append(f"{indent}{i}. {action}")
    return "\n".join(line for line in lines if line)


# ── Symbol table ─────────────────────────────────────────────────────

class SymbolTable:
    """Symbol → truth vector, with definition order and attached concepts.

    Values are one-hot (or mixed, for undetermined types) numpy vectors.
    ``concepts`` records every type label a symbol has been given so the
    axiom layer can look for mutually exclusive pairs.
    """

    __slots__ = ("_values", "_order", "_concepts")

    def __init__(self) -> None:
        self._values: Dict[str, np.ndarray] = {}
        self._order: List[str] = []
        self._concepts: Dict[str, Set[str]] = {}

    # ── Lookups ──────────────────────────────────────────────

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._values

    def __len__(self) -> int:
        return len(self._order)

    @property
    def symbols(self) -> Tuple[str, ...]:
        return tuple(self._order)

    def value(self, symbol: str) -> Optional[np.ndarray]:
        return self._values.get(symbol)

    def concepts(self, symbol: str) -> Set[str]:
        return set(self._concepts.get(symbol, ()))

    # ── Mutation ─────────────────────────────────────────────

    def bind(self, symbol: str, vector: np.ndarray) -> None:
        if symbol not in self._values:
            self._order.append(symbol)
        self._values[symbol] = np.asarray(vector, dtype=float)

    def add_concept(self, symbol: str, concept: str) -> None:
        self._concepts.setdefault(symbol, set()).add(concept)

    def clone(self) -> "SymbolTable":
        other = SymbolTable()
        other._values = dict(self._values)
        other._order = list(self._order)
        other._concepts = {s: set(c) for s, c in self._concepts.items()}
        return other


# ── Target description ───────────────────────────────────────────────

@dataclass(frozen=True)
class Case:
    """One case of a case split: inside the branch *symbol* has *type*."""
    case_id: str
    symbol: str
    type: str


@dataclass(frozen=True)
class Theorem:
    """Public description of what a proof must establish.

    ``hypotheses`` are the premises (symbol, type) a path has to introduce;
    ``derived`` are the names ``Apply`` may bind, in order; ``goal`` is the
    assertion the path must discharge before ``QED``.  The vocabularies
    (``rules``, ``types``, ``relations``) bound what the materializer will
    decode, and ``cases`` declares an exhaustive case split.
    """
    name: str
    hypotheses: Tuple[Tuple[str, str], ...]
    derived: Tuple[str, ...] = ()
    goal: Optional[Assert] = None
    rules: Tuple[str, ...] = ("ModAdd", "ModMul")
    types: Tuple[str, ...] = ("Even", "Odd")
    relations: Tuple[str, ...] = ("is",)
    cases: Tuple[Case, ...] = ()
    target_feature: Optional[Tuple[float, ...]] = None

    def hypothesis_type(self, symbol: str) -> Optional[str]:
        for name, type_ in self.hypotheses:
            if name == symbol:
                return type_
        return None

    @property
    def hypothesis_symbols(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.hypotheses)

    def case(self, case_id: str) -> Optional[Case]:
        for c in self.cases:
            if c.case_id == case_id:
                return c
        return None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "hypotheses": [list(h) for h in self.hypotheses],
            "derived": list(self.derived),
            "goal": self.goal.to_dict() if self.goal else None,
            "rules": list(self.rules),
            "types": list(self.types),
            "relations": list(self.relations),
            "cases": [[c.case_id, c.symbol, c.type] for c in self.cases],
            "target_feature": list(self.target_feature) if self.target_feature else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Theorem":
        goal = d.get("goal")
        feature = d.get("target_feature")
        return cls(
            name=d["name"],
            hypotheses=tuple((h[0], h[1]) for h in d["hypotheses"]),
            derived=tuple(d.get("derived", ())),
            goal=Assert.from_dict(goal) if goal else None,
            rules=tuple(d.get("rules", ("ModAdd", "ModMul"))),
            types=tuple(d.get("types", ("Even", "Odd"))),
            relations=tuple(d.get("relations", ("is",))),
            cases=tuple(Case(*c) for c in d.get("cases", ())),
            target_feature=tuple(feature) if feature else None,
        )


# ── Built-in theorems ────────────────────────────────────────────────

def sum_of_two_odds() -> Theorem:
    """n, m odd ⊢ n + m is even."""
    return Theorem(
        name="sum_of_two_odds",
        hypotheses=(("n", "Odd"), ("m", "Odd")),
        derived=("sum",),
        goal=Assert("sum", "is", "Even"),
    )


def sum_of_two_evens() -> Theorem:
    return Theorem(
        name="sum_of_two_evens",
        hypotheses=(("n", "Even"), ("m", "Even")),
        derived=("sum",),
        goal=Assert("sum", "is", "Even"),
    )


def product_of_two_odds() -> Theorem:
    return Theorem(
        name="product_of_two_odds",
        hypotheses=(("n", "Odd"), ("m", "Odd")),
        derived=("prod",),
        goal=Assert("prod", "is", "Odd"),
    )


def parity_of_square() -> Theorem:
    """n integer ⊢ n² + n is even, by case split on the parity of n."""
    return Theorem(
        name="parity_of_square",
        hypotheses=(("n", "Integer"),),
        derived=("sq", "total"),
        goal=Assert("total", "is", "Even"),
        rules=("Square", "ModAdd"),
        types=("Even", "Odd", "Integer"),
        cases=(Case("n_even", "n", "Even"), Case("n_odd", "n", "Odd")),
    )


_CONTEXTS: Dict[str, Callable[[], Theorem]] = {
    "prove sum of two odds is even": sum_of_two_odds,
    "prove sum of two evens is even": sum_of_two_evens,
    "prove product of two odds is odd": product_of_two_odds,
    "prove square plus itself is even": parity_of_square,
}


def theorem_for_context(context: str) -> Theorem:
    """Resolve a context phrase to one of the built-in theorems."""
    key = " ".join(context.lower().split())
    factory = _CONTEXTS.get(key)
    if factory is None:
        raise ValueError(f"Unknown context: {context!r}")
    return factory()
