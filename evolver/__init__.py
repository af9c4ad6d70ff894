"""Evolver – algebraic proof-of-search engine.

A prover walks the ideal class group Cl(Δ) of a context-derived
discriminant looking for a state whose *materialized* proof path has zero
energy.  A verifier accepts the result by replaying a short trace of
public generators, never by searching.

  **Layer 1 – Soul** (algebra):
    Exact class-group arithmetic, discriminant derivation, the public
    generator set and a stand-in cyclic algebra.
    Modules: ``algebra``.

  **Layer 2 – Foundation** (logic):
    Proof DSL, target theorems, STP truth vectors and structure matrices.
    Modules: ``dsl``, ``rules``.

  **Layer 3 – Body** (projection and scoring):
    Smooth features, avalanche digest, deterministic path decoding, and
    the tiered energy evaluator.
    Modules: ``materialize``, ``energy``.

  **Layer 4 – Will** (search):
    Valuation-adaptive perturbation optimization with parallel candidate
    evaluation, the spectral governor that migrates the algebra when
    exploration collapses, and the lifter that seeds the new epoch from
    the old best state.
    Modules: ``search``, ``governor``, ``lifter``.

  **Layer 5 – Orchestration**:
    Proof bundles, replay verification, untrusted proposer seam, and the
    ``ProofEngine`` facade.
    Modules: ``engine``, ``proposer``.

License: MIT
"""

__version__ = "0.1.0"
__license__ = "MIT"

__all__ = [
    # Layer 1: Soul
    "algebra",
    # Layer 2: Foundation
    "dsl",
    "rules",
    # Layer 3: Body
    "materialize",
    "energy",
    # Layer 4: Will
    "search",
    "governor",
    "lifter",
    # Layer 5: Orchestration
    "engine",
    "proposer",
]
