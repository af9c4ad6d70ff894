"""energy.py – Tiered energy evaluation of materialized proof paths.

The evaluator scores a path in three strictly ordered tiers:

1. **Structural / causal** (barrier 10) – the path is not well formed:
   redefinitions, unknown names, wrong arity, inputs used before they are
   defined, a missing or early QED, an undischarged goal, empty branches.
   Nothing deeper is computed.
2. **Axioms** (barrier 100) – some symbol is given two mutually exclusive
   concepts (Even and Odd, say) by the hypotheses, its ``Define`` and the
   path's ``Assert`` claims.
3. **Rule consistency** (barrier 100) – the semi-tensor evaluation of an
   ``Apply`` contradicts an existing claim for its output, or an
   ``Assert`` does not evaluate to True.  Energy accumulates as squared
   Euclidean distance; sibling branches combine by max.

A path that survives all three gets barrier 0.  The residual
β·‖F(S) − F_target‖² is always added, so search can descend within a
tier, but a lower barrier always outranks a higher one.

License: MIT
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from .dsl import QED, Apply, Assert, Branch, Define, Path, ProofAction, SymbolTable, Theorem
from .materialize import Materializer
from .rules import (
    CONCEPT_VECTORS,
    DEFAULT_RULEBOOK,
    EXCLUSIVE_CONCEPTS,
    IDENTITY_RELATIONS,
    TRUE,
    RuleBook,
    stp_chain,
)

logger = logging.getLogger(__name__)

BARRIER_OK = 0.0
BARRIER_SYNTAX = 10.0
BARRIER_SEMANTIC = 100.0

_LOGIC_EPS = 1e-12


# ═══════════════════════════════════════════════════════════════════════
#  Signal and policy
# ═══════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EnergySignal:
    """Outcome of evaluating one state.

    ``total = barrier + axiom_penalty + residual``; ``logic_energy`` is the
    raw rule-consistency energy that triggered a logic barrier.
    """
    barrier: float
    axiom_penalty: float = 0.0
    residual: float = 0.0
    logic_energy: float = 0.0
    violations: Tuple[str, ...] = ()

    @property
    def total(self) -> float:
        return self.barrier + self.axiom_penalty + self.residual

    @property
    def tier(self) -> str:
        if self.barrier == BARRIER_OK:
            return "ok"
        if self.barrier == BARRIER_SYNTAX:
            return "syntax"
        return "axiom" if self.axiom_penalty > 0 else "logic"

    def rank_key(self) -> Tuple[float, float, float]:
        return (self.barrier, self.total, self.residual)

    def converged(self, tolerance: float) -> bool:
        return self.barrier == BARRIER_OK and self.residual < tolerance

    def to_dict(self) -> dict:
        return {
            "barrier": self.barrier,
            "axiom_penalty": self.axiom_penalty,
            "residual": self.residual,
            "logic_energy": self.logic_energy,
            "total": self.total,
            "tier": self.tier,
            "violations": list(self.violations),
        }


@dataclass(frozen=True)
class EnergyPolicy:
    """Selectable evaluation variants.

    ``branch``: ``"max"`` (default) or ``"sum"`` for sibling branches.
    ``residual``: ``"euclidean"`` (default) or ``"hierarchical"``, an
    ultrametric comparing base-``hierarchy_base`` digit expansions.
    """
    branch: str = "max"
    residual: str = "euclidean"
    beta: float = 1.0
    axiom_weight: float = 1.0
    hierarchy_base: int = 2
    hierarchy_depth: int = 16

    def __post_init__(self) -> None:
        if self.branch not in ("max", "sum"):
            raise ValueError(f"Unknown branch policy: {self.branch!r}")
        if self.residual not in ("euclidean", "hierarchical"):
            raise ValueError(f"Unknown residual metric: {self.residual!r}")
        if self.beta < 0 or self.axiom_weight <= 0:
            raise ValueError("beta must be non-negative and axiom_weight positive")
        if self.hierarchy_base < 2 or self.hierarchy_depth < 1:
            raise ValueError("hierarchy_base must be ≥ 2 and hierarchy_depth ≥ 1")


def _hierarchical_distance(u: float, v: float, base: int, depth: int) -> float:
    """base^(−m) where m is the length of the common digit prefix."""
    # map ℝ → (0, 1) before expanding
    su = math.atan(u) / math.pi + 0.5
    sv = math.atan(v) / math.pi + 0.5
    for m in range(depth):
        su, du = math.modf(su * base)[0], int(su * base)
        sv, dv = math.modf(sv * base)[0], int(sv * base)
        if du != dv:
            return float(base) ** (-m)
    return 0.0


# ═══════════════════════════════════════════════════════════════════════
#  Evaluator
# ═══════════════════════════════════════════════════════════════════════


class EnergyEvaluator:
    """Pure function (state, target) → EnergySignal.

    Parameters
    ----------
    algebra : GroupAlgebra
        The algebra whose states are evaluated.
    theorem : Theorem
        The public target: hypotheses, goal, vocabularies, target feature.
    policy : EnergyPolicy, optional
    materializer : Materializer, optional
        Defaults to ``Materializer(theorem)``.
    """

    def __init__(
        self,
        algebra: Any,
        theorem: Theorem,
        policy: Optional[EnergyPolicy] = None,
        materializer: Optional[Materializer] = None,
        rulebook: Optional[RuleBook] = None,
    ) -> None:
        self.algebra = algebra
        self.theorem = theorem
        self.policy = policy or EnergyPolicy()
        self.rulebook = rulebook or DEFAULT_RULEBOOK
        self.materializer = materializer or Materializer(theorem, rulebook=self.rulebook)
        self._target = (
            np.asarray(theorem.target_feature, dtype=float)
            if theorem.target_feature is not None else None
        )

    # ── Public API ───────────────────────────────────────────

    def evaluate(self, state: Any) -> EnergySignal:
        return self.evaluate_with_path(state)[1]

    def evaluate_with_path(self, state: Any) -> Tuple[Path, EnergySignal]:
        path = self.materializer.materialize_path(self.algebra, state)
        features = self.algebra.features(state) if self._target is not None else None
        return path, self.score(path, features)

    def score(self, path: Path, features: Optional[Sequence[float]] = None) -> EnergySignal:
        """Score a path; *features* feed the residual term only."""
        residual = self.residual(features)

        problems = self.structural_violations(path)
        if problems:
            return EnergySignal(BARRIER_SYNTAX, 0.0, residual, violations=tuple(problems))

        conflicts = self.axiom_conflicts(path)
        if conflicts:
            penalty = len(conflicts) * self.policy.axiom_weight
            return EnergySignal(BARRIER_SEMANTIC, penalty, residual, violations=tuple(conflicts))

        notes: List[str] = []
        logic = self._logic(path, SymbolTable(), notes)
        if logic > _LOGIC_EPS:
            return EnergySignal(
                BARRIER_SEMANTIC, 0.0, residual, logic_energy=logic, violations=tuple(notes),
            )
        return EnergySignal(BARRIER_OK, 0.0, residual)

    def residual(self, features: Optional[Sequence[float]]) -> float:
        if self._target is None or features is None or self.policy.beta == 0:
            return 0.0
        f = np.asarray(features, dtype=float)
        if f.shape != self._target.shape:
            raise ValueError(f"feature shape {f.shape} does not match target {self._target.shape}")
        if self.policy.residual == "euclidean":
            return self.policy.beta * float(np.sum((f - self._target) ** 2))
        return self.policy.beta * sum(
            _hierarchical_distance(u, v, self.policy.hierarchy_base, self.policy.hierarchy_depth)
            for u, v in zip(f.tolist(), self._target.tolist())
        )

    # ── Tier 1: structure and causality ──────────────────────

    def structural_violations(self, path: Path) -> List[str]:
        if not path:
            return ["empty path"]
        problems: List[str] = []
        if not isinstance(path[-1], QED):
            problems.append("path does not end with QED")
        for i, action in enumerate(path[:-1]):
            if isinstance(action, QED):
                problems.append(f"step {i}: QED before the end of the proof")

        defined = self._walk_structure(path, set(), problems, top=True)

        for symbol in self.theorem.hypothesis_symbols:
            if symbol not in defined:
                problems.append(f"hypothesis {symbol} never introduced")
        if self.theorem.goal is not None and not self._discharges(path, self.theorem.goal):
            problems.append(f"goal {self.theorem.goal} not discharged")
        return problems

    def _walk_structure(self, path: Sequence[ProofAction], defined: Set[str],
                        problems: List[str], top: bool) -> Set[str]:
        defined = set(defined)
        seen_cases: Set[str] = set()
        for i, action in enumerate(path):
            where = f"step {i}" if top else f"branch step {i}"
            if isinstance(action, Define):
                if action.symbol in defined:
                    problems.append(f"{where}: redefinition of {action.symbol}")
                if action.symbol in self.theorem.derived:
                    problems.append(f"{where}: derived symbol {action.symbol} defined directly")
                if action.type not in CONCEPT_VECTORS:
                    problems.append(f"{where}: unknown type {action.type}")
                defined.add(action.symbol)
            elif isinstance(action, Apply):
                rule = self.rulebook.rule(action.rule)
                if rule is None:
                    problems.append(f"{where}: unknown rule {action.rule}")
                elif len(action.inputs) != rule.arity:
                    problems.append(
                        f"{where}: {action.rule} takes {rule.arity} inputs, got {len(action.inputs)}"
                    )
                for name in action.inputs:
                    if name not in defined:
                        problems.append(f"{where}: input {name} used before definition")
                defined.add(action.output)
            elif isinstance(action, Assert):
                if action.subject not in defined:
                    problems.append(f"{where}: subject {action.subject} undefined")
                if self.rulebook.relation(action.relation) is None:
                    problems.append(f"{where}: unknown relation {action.relation}")
                if action.object not in defined and action.object not in CONCEPT_VECTORS:
                    problems.append(f"{where}: unknown object {action.object}")
            elif isinstance(action, Branch):
                if not top:
                    problems.append(f"{where}: nested branch")
                if action.case_id in seen_cases:
                    problems.append(f"{where}: duplicate case {action.case_id}")
                seen_cases.add(action.case_id)
                case = self.theorem.case(action.case_id)
                if self.theorem.cases and case is None:
                    problems.append(f"{where}: unknown case {action.case_id}")
                if case is not None and case.symbol not in defined:
                    problems.append(f"{where}: case symbol {case.symbol} undefined")
                if not action.sub_proof:
                    problems.append(f"{where}: empty branch {action.case_id}")
                if any(isinstance(a, QED) for a in action.sub_proof):
                    problems.append(f"{where}: QED inside branch {action.case_id}")
                self._walk_structure(action.sub_proof, defined, problems, top=False)
        return defined

    def _discharges(self, path: Sequence[ProofAction], goal: Assert) -> bool:
        """Goal asserted at top level, or in every branch of a complete split."""
        if any(a == goal for a in path):
            return True
        expected = {c.case_id for c in self.theorem.cases}
        for group in _branch_groups(path):
            ids = {b.case_id for b in group}
            if expected and ids != expected:
                continue
            if all(any(a == goal for a in b.sub_proof) for b in group):
                return True
        return False

    # ── Tier 2: axioms ───────────────────────────────────────

    def axiom_conflicts(self, path: Path) -> List[str]:
        concepts: Dict[str, Set[str]] = {}
        for symbol, type_ in self.theorem.hypotheses:
            concepts.setdefault(symbol, set()).add(type_)
        conflicts: List[str] = []
        self._walk_concepts(path, concepts, conflicts, baseline={})
        return conflicts

    def _walk_concepts(self, path: Sequence[ProofAction], concepts: Dict[str, Set[str]],
                       conflicts: List[str], baseline: Dict[str, Set[frozenset]]) -> None:
        concepts = {s: set(c) for s, c in concepts.items()}
        for action in path:
            if isinstance(action, Define):
                hyp = self.theorem.hypothesis_type(action.symbol)
                if hyp is not None and hyp != action.type and frozenset({hyp, action.type}) not in EXCLUSIVE_CONCEPTS:
                    conflicts.append(f"{action.symbol}: hypothesis {hyp} specialised to {action.type}")
                concepts.setdefault(action.symbol, set()).add(action.type)
            elif isinstance(action, Assert) and action.relation in IDENTITY_RELATIONS:
                if action.object in CONCEPT_VECTORS:
                    concepts.setdefault(action.subject, set()).add(action.object)

        found: Dict[str, Set[frozenset]] = {}
        for symbol, labels in concepts.items():
            for pair in EXCLUSIVE_CONCEPTS:
                if pair <= labels:
                    found.setdefault(symbol, set()).add(pair)
                    if pair not in baseline.get(symbol, set()):
                        conflicts.append(f"{symbol}: {' and '.join(sorted(pair))}")

        for action in path:
            if isinstance(action, Branch):
                inner = {s: set(c) for s, c in concepts.items()}
                case = self.theorem.case(action.case_id)
                if case is not None:
                    inner.setdefault(case.symbol, set()).add(case.type)
                self._walk_concepts(action.sub_proof, inner, conflicts, found)

    # ── Tier 3: rule consistency ─────────────────────────────

    def _logic(self, path: Sequence[ProofAction], table: SymbolTable, notes: List[str]) -> float:
        energy = 0.0
        i = 0
        while i < len(path):
            action = path[i]
            if isinstance(action, Branch):
                group: List[Branch] = []
                while i < len(path) and isinstance(path[i], Branch):
                    group.append(path[i])
                    i += 1
                energies = [self._logic(b.sub_proof, self._branch_scope(table, b), notes) for b in group]
                energy += max(energies) if self.policy.branch == "max" else sum(energies)
                continue
            e = self._step_energy(action, table)
            if e > _LOGIC_EPS:
                notes.append(f"{action}: inconsistency {e:.3g}")
            energy += e
            i += 1
        return energy

    def _branch_scope(self, table: SymbolTable, branch: Branch) -> SymbolTable:
        scope = table.clone()
        case = self.theorem.case(branch.case_id)
        if case is not None:
            scope.bind(case.symbol, CONCEPT_VECTORS[case.type])
        return scope

    def _step_energy(self, action: ProofAction, table: SymbolTable) -> float:
        if isinstance(action, Define):
            table.bind(action.symbol, CONCEPT_VECTORS[action.type])
            return 0.0
        if isinstance(action, Apply):
            rule = self.rulebook.rule(action.rule)
            v_phys = rule.apply(*(table.value(s) for s in action.inputs))
            claim = table.value(action.output)
            if claim is None:
                table.bind(action.output, v_phys)
                return 0.0
            return float(np.sum((v_phys - claim) ** 2))
        if isinstance(action, Assert):
            relation = self.rulebook.relation(action.relation)
            subject = table.value(action.subject)
            obj = table.value(action.object)
            if obj is None:
                obj = CONCEPT_VECTORS[action.object]
            truth = stp_chain(relation.matrix, subject, obj).ravel()
            return float(np.sum((truth - TRUE) ** 2))
        return 0.0


def _branch_groups(path: Sequence[ProofAction]) -> List[List[Branch]]:
    groups: List[List[Branch]] = []
    current: List[Branch] = []
    for action in path:
        if isinstance(action, Branch):
            current.append(action)
        elif current:
            groups.append(current)
            current = []
    if current:
        groups.append(current)
    return groups
