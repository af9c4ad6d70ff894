"""engine.py – Proof bundles, replay verification and the engine facade.

Layered architecture::

    ┌─────────────────────────────────────────────────┐
    │                 ProofEngine                     │
    │                 (orchestrator)                  │
    └──────────┬──────────────────┬───────────────────┘
               │                  │
    ┌──────────▼──────────┐  ┌────▼──────────────────┐
    │  vapo_search        │  │  BundleVerifier       │
    │  (prover: search)   │  │  (checker: replay)    │
    ├─────────────────────┤  ├───────────────────────┤
    │ context → Δ → S*    │  │ verify(bundle)        │
    │  → ProofBundle      │  │  → VerificationResult │
    └─────────────────────┘  └───────────────────────┘

The prover does all the searching.  The verifier never searches: it
re-derives Δ from the context hash, replays the trace from the identity
(O(k) compositions), compares the result with the claimed final state and
checks that the materialized path has zero barrier.

**ProofBundle** is the contract between the two sides.

License: MIT
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from .algebra import (
    MAX_EPOCH,
    ClassGroup,
    ConstructionError,
    Perturbation,
    context_hash,
    derive_discriminant,
)
from .dsl import Theorem
from .energy import EnergyEvaluator, EnergyPolicy
from .governor import SpectralGovernor
from .lifter import StateLifter
from .materialize import Materializer
from .proposer import HeuristicProposer, NullProposer, Proposal, sanitize_proposal
from .search import SearchConfig, SearchEvent, SearchResult, vapo_search

logger = logging.getLogger(__name__)

BUNDLE_VERSION = 1


class BundleFormatError(ValueError):
    """A bundle could not be decoded or uses an unsupported version."""


# ═══════════════════════════════════════════════════════════════════════
#  Public parameters
# ═══════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PublicParameters:
    """Everything prover and verifier must agree on besides the theorem."""
    discriminant_bits: int = 128
    generator_count: int = 8
    path_depth: int = 5

    def __post_init__(self) -> None:
        if self.discriminant_bits < 16:
            raise ValueError(f"discriminant_bits must be ≥ 16, got {self.discriminant_bits}")
        if self.generator_count < 1 or self.path_depth < 1:
            raise ValueError("generator_count and path_depth must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PublicParameters":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            discriminant_bits=int(env.get("EVOLVER_DISCRIMINANT_BITS", defaults.discriminant_bits)),
            generator_count=int(env.get("EVOLVER_GENERATOR_COUNT", defaults.generator_count)),
            path_depth=int(env.get("EVOLVER_PATH_DEPTH", defaults.path_depth)),
        )

    def algebra_for(self, ctx_hash: str, epoch: int = 0) -> ClassGroup:
        return ClassGroup(derive_discriminant(ctx_hash, self.discriminant_bits, epoch))

    def to_dict(self) -> dict:
        return {
            "discriminant_bits": self.discriminant_bits,
            "generator_count": self.generator_count,
            "path_depth": self.path_depth,
        }


# ═══════════════════════════════════════════════════════════════════════
#  ProofBundle: the contract between prover and verifier
# ═══════════════════════════════════════════════════════════════════════


def _coefficient(value: Any) -> int:
    """Decode one form coefficient: a decimal string or an exact int."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise TypeError(f"form coefficient must be an int or decimal string, got {value!r}")
    return int(value)


@dataclass(frozen=True)
class ProofBundle:
    """Self-contained proof of search.

    Attributes
    ----------
    context_hash : str
        Hex SHA-256 of the context; Δ is re-derived from it.
    final_state : tuple[int, ...]
        Canonical encoding of S_final (``(a, b, c)`` for a class group).
    trace : tuple[int, ...]
        Generator indices; replaying them from the identity yields S_final.
    epoch : int
        Algebra epoch (non-zero only after a governor migration).
    version : int
        Bundle format version.
    metadata : dict
        Prover-side diagnostics.  Not part of the canonical encoding and
        never consulted by the verifier.
    """
    context_hash: str
    final_state: Tuple[int, ...]
    trace: Tuple[int, ...]
    epoch: int = 0
    version: int = BUNDLE_VERSION
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "final_state", tuple(self.final_state))
        object.__setattr__(self, "trace", tuple(self.trace))

    # ── Serialisation ────────────────────────────────────────

    def canonical_dict(self) -> dict:
        return {
            "context_hash": self.context_hash,
            "epoch": self.epoch,
            "final_state": [str(v) for v in self.final_state],
            "trace": list(self.trace),
            "version": self.version,
        }

    def canonical_bytes(self) -> bytes:
        return json.dumps(self.canonical_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    def digest(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()

    def to_dict(self) -> dict:
        d = self.canonical_dict()
        d["metadata"] = self.metadata
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ProofBundle":
        try:
            version = d["version"]
            ctx = d["context_hash"]
            epoch = d.get("epoch", 0)
            if not isinstance(d["final_state"], list) or not isinstance(d["trace"], list):
                raise TypeError("final_state and trace must be lists")
            final_state = tuple(_coefficient(v) for v in d["final_state"])
            trace = tuple(d["trace"])
        except (KeyError, TypeError, ValueError) as exc:
            raise BundleFormatError(f"malformed bundle: {exc}") from exc
        if not isinstance(version, int) or isinstance(version, bool):
            raise BundleFormatError(f"bundle version must be an int, got {version!r}")
        if not isinstance(ctx, str):
            raise BundleFormatError(f"context_hash must be a string, got {ctx!r}")
        if not isinstance(epoch, int) or isinstance(epoch, bool) or not 0 <= epoch < MAX_EPOCH:
            raise BundleFormatError(f"epoch must be an int in [0, 2**32), got {epoch!r}")
        if not all(isinstance(i, int) and not isinstance(i, bool) for i in trace):
            raise BundleFormatError("trace entries must be ints")
        return cls(
            context_hash=ctx,
            final_state=final_state,
            trace=trace,
            epoch=epoch,
            version=version,
            metadata=dict(d.get("metadata") or {}),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, s: Union[str, bytes]) -> "ProofBundle":
        try:
            data = json.loads(s)
        except ValueError as exc:
            raise BundleFormatError(f"bundle is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise BundleFormatError("bundle must be a JSON object")
        return cls.from_dict(data)


# ═══════════════════════════════════════════════════════════════════════
#  Verification
# ═══════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of verifying a ``ProofBundle``.

    Attributes
    ----------
    verified : bool
        ``True`` only if every check passed.
    reason : str
        Failed check (``format``, ``discriminant``, ``trace``, ``replay``,
        ``energy``), empty on success.
    message : str
        Human-readable diagnostic.
    verifier_name : str
        Which verifier produced this result.
    """
    verified: bool
    reason: str = ""
    message: str = ""
    verifier_name: str = "unknown"

    def to_dict(self) -> dict:
        return {
            "verified": self.verified,
            "reason": self.reason,
            "message": self.message,
            "verifier_name": self.verifier_name,
        }


class VerificationFailure(Exception):
    def __init__(self, result: VerificationResult) -> None:
        super().__init__(f"bundle rejected ({result.reason}): {result.message}")
        self.result = result


class SearchExhausted(RuntimeError):
    """Search ended without convergence; ``result`` holds the best-so-far."""

    def __init__(self, result: SearchResult, ctx_hash: str, epoch: int) -> None:
        super().__init__(
            f"search exhausted after {result.iterations} iterations "
            f"(best energy {result.best_energy.total:.4g}, tier {result.best_energy.tier})"
        )
        self.result = result
        self.context_hash = ctx_hash
        self.epoch = epoch


def replay_trace(algebra: Any, generators: Sequence[Perturbation], trace: Sequence[int]) -> Any:
    """Compose ``g_{i₁} ∘ … ∘ g_{i_k}`` starting from the identity.

    Raises ``IndexError`` for an index outside the generator set.
    """
    state = algebra.identity()
    for position, idx in enumerate(trace):
        if not 0 <= idx < len(generators):
            raise IndexError(f"trace[{position}] = {idx} outside generator set of size {len(generators)}")
        state = algebra.compose(state, generators[idx].element)
    return state


class BundleVerifier:
    """Replay-based verifier.  Stateless apart from public parameters."""

    _name = "replay"

    def __init__(
        self,
        theorem: Theorem,
        params: Optional[PublicParameters] = None,
        policy: Optional[EnergyPolicy] = None,
    ) -> None:
        self.theorem = theorem
        self.params = params or PublicParameters()
        self.policy = policy or EnergyPolicy()

    @property
    def name(self) -> str:
        return self._name

    def _reject(self, reason: str, message: str) -> VerificationResult:
        logger.info("Bundle rejected (%s): %s", reason, message)
        return VerificationResult(False, reason, message, self.name)

    def verify(self, bundle: ProofBundle) -> VerificationResult:
        if bundle.version != BUNDLE_VERSION:
            return self._reject("format", f"unsupported bundle version {bundle.version}")
        try:
            delta = derive_discriminant(bundle.context_hash, self.params.discriminant_bits, bundle.epoch)
        except (ValueError, TypeError, OverflowError) as exc:
            return self._reject("format", f"bad context hash: {exc}")
        algebra = ClassGroup(delta)

        try:
            claimed = algebra.from_canonical(bundle.final_state)
        except ConstructionError as exc:
            if len(bundle.final_state) == 3 and bundle.final_state[0] > 0:
                a, b, c = bundle.final_state
                if b * b - 4 * a * c != delta:
                    return self._reject("discriminant", f"final state does not have Δ = {delta}")
            return self._reject("format", f"final state is not a reduced form: {exc}")

        generators = algebra.generators(self.params.generator_count)
        try:
            replayed = replay_trace(algebra, generators, bundle.trace)
        except IndexError as exc:
            return self._reject("trace", str(exc))
        except ConstructionError as exc:
            return self._reject("replay", f"replay left the group: {exc}")

        if replayed != claimed:
            return self._reject("replay", f"trace replays to {replayed}, bundle claims {claimed}")

        evaluator = EnergyEvaluator(
            algebra, self.theorem, self.policy,
            Materializer(self.theorem, depth=self.params.path_depth),
        )
        energy = evaluator.evaluate(claimed)
        if energy.barrier != 0:
            return self._reject(
                "energy",
                f"materialized path has barrier {energy.barrier:g} ({energy.tier}): "
                + "; ".join(energy.violations[:3]),
            )
        logger.info("Bundle accepted: %d steps, Δ of %d bits", len(bundle.trace), delta.bit_length())
        return VerificationResult(True, "", f"replayed {len(bundle.trace)} steps", self.name)

    def check(self, bundle: ProofBundle) -> VerificationResult:
        result = self.verify(bundle)
        if not result.verified:
            raise VerificationFailure(result)
        return result


# ═══════════════════════════════════════════════════════════════════════
#  ProofEngine: facade
# ═══════════════════════════════════════════════════════════════════════


class ProofEngine:
    """Context in, ProofBundle out.

    Parameters
    ----------
    theorem : Theorem
        Public target description.
    params : PublicParameters, optional
    config : SearchConfig, optional
    policy : EnergyPolicy, optional
    proposer : HeuristicProposer, optional
        Untrusted starting-point suggestions; defaults to ``NullProposer``.
    governor : SpectralGovernor, optional
        When given, an exhausted search whose explored graph has collapsed
        is retried under the next algebra epoch.  The governor is per-proof:
        every ``prove`` call resets it and starts at epoch 0.
    lifter : StateLifter, optional
        Seeds the search after a migration from the previous epoch's best
        state; defaults to ``StateLifter()`` when a governor is given.
    """

    def __init__(
        self,
        theorem: Theorem,
        params: Optional[PublicParameters] = None,
        config: Optional[SearchConfig] = None,
        policy: Optional[EnergyPolicy] = None,
        proposer: Optional[HeuristicProposer] = None,
        governor: Optional[SpectralGovernor] = None,
        lifter: Optional[StateLifter] = None,
    ) -> None:
        self.theorem = theorem
        self.params = params or PublicParameters()
        self.config = config or SearchConfig()
        self.policy = policy or EnergyPolicy()
        self.proposer = proposer or NullProposer()
        self.governor = governor
        self.lifter = lifter or (StateLifter() if governor is not None else None)
        if governor is not None and not self.config.record_graph:
            self.config = replace(self.config, record_graph=True)
        self.verifier = BundleVerifier(theorem, self.params, self.policy)

    def _proposal(self, ctx_hash: str) -> Proposal:
        count = 2 * self.params.generator_count
        try:
            proposal = self.proposer.propose(ctx_hash, self.theorem, count)
        except Exception as exc:
            logger.warning("Proposer %s failed: %s", getattr(self.proposer, "name", "?"), exc)
            return Proposal()
        return sanitize_proposal(proposal, count)

    def search(
        self,
        context: Union[str, bytes],
        *,
        prehashed: bool = False,
        epoch: int = 0,
        on_event: Optional[Callable[[SearchEvent], None]] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> SearchResult:
        """Run one search for *context* under algebra *epoch*."""
        ctx = context_hash(context, prehashed)
        return self._search(ctx, epoch, on_event, stop_event)

    def _search(
        self,
        ctx: str,
        epoch: int,
        on_event,
        stop_event,
        seed_word: Optional[Sequence[int]] = None,
    ) -> SearchResult:
        algebra = self.params.algebra_for(ctx, epoch)
        generators = algebra.generators(self.params.generator_count)
        evaluator = EnergyEvaluator(
            algebra, self.theorem, self.policy,
            Materializer(self.theorem, depth=self.params.path_depth),
        )
        proposal = self._proposal(ctx)
        if seed_word is None:
            seed_word = proposal.seed_word
        seed_word = [i for i in seed_word if 0 <= i < len(generators)]
        logger.info(
            "Searching %s: Δ has %d bits, |P| = %d, epoch %d",
            self.theorem.name, algebra.delta.bit_length(), len(generators), epoch,
        )
        return vapo_search(
            algebra, generators, evaluator, self.config,
            seed_word=seed_word, bias=proposal.schedule_bias,
            on_event=on_event, stop_event=stop_event,
        )

    def prove(
        self,
        context: Union[str, bytes],
        *,
        prehashed: bool = False,
        on_event: Optional[Callable[[SearchEvent], None]] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> ProofBundle:
        """Search until convergence and package the result.

        Raises
        ------
        SearchExhausted
            The budget ran out (and no migration was possible).
        """
        ctx = context_hash(context, prehashed)
        epoch = 0
        seed_word: Optional[Sequence[int]] = None
        if self.governor is not None:
            self.governor.reset()
        while True:
            result = self._search(ctx, epoch, on_event, stop_event, seed_word)
            if result.converged:
                break
            degree = 2 * self.params.generator_count
            if (
                self.governor is None
                or result.stopped_early
                or not self.governor.should_migrate(result.explored, degree)
            ):
                raise SearchExhausted(result, ctx, epoch)
            old_algebra = self.params.algebra_for(ctx, epoch)
            epoch = self.governor.migrate()
            new_algebra = self.params.algebra_for(ctx, epoch)
            seed_word = self.lifter.lift(
                old_algebra, result.best_state, new_algebra,
                new_algebra.generators(self.params.generator_count), result.best_trace,
            )

        bundle = ProofBundle(
            context_hash=ctx,
            final_state=result.final_state.canonical(),
            trace=tuple(result.trace),
            epoch=epoch,
            metadata={
                "theorem": self.theorem.name,
                "iterations": result.iterations,
                "evaluations": result.evaluations,
                "seed_moves": result.seed_moves,
                "params": self.params.to_dict(),
            },
        )
        logger.info("Proof found: trace length %d, bundle %s", len(bundle.trace), bundle.digest()[:16])
        return bundle

    def verify(self, bundle: ProofBundle) -> VerificationResult:
        return self.verifier.verify(bundle)
