from __future__ import annotations

import dataclasses
import logging

import pytest

from evolver.algebra import context_hash
from evolver.dsl import QED, Apply, Assert, Define, Theorem, sum_of_two_odds
from evolver.engine import (
    BUNDLE_VERSION,
    BundleFormatError,
    BundleVerifier,
    ProofBundle,
    ProofEngine,
    PublicParameters,
    SearchExhausted,
    VerificationFailure,
    replay_trace,
)
from evolver.governor import GovernorConfig, SpectralGovernor
from evolver.lifter import StateLifter
from evolver.materialize import Materializer
from evolver.proposer import FixedProposer, Proposal, sanitize_proposal
from evolver.search import SearchConfig

CONTEXT = "prove sum of two odds is even"
SMALL = PublicParameters(discriminant_bits=64)
IMPOSSIBLE = Theorem(
    name="odd_is_even",
    hypotheses=(("n", "Odd"),),
    goal=Assert("n", "is", "Even"),
)


@pytest.fixture(scope="module")
def engine() -> ProofEngine:
    return ProofEngine(sum_of_two_odds(), config=SearchConfig(max_iterations=8192))


@pytest.fixture(scope="module")
def bundle(engine: ProofEngine) -> ProofBundle:
    return engine.prove(CONTEXT)


def _tampered(bundle: ProofBundle, **changes) -> ProofBundle:
    return dataclasses.replace(bundle, **changes)


# ── End to end ───────────────────────────────────────────────────────

def test_prove_sum_of_two_odds(engine: ProofEngine, bundle: ProofBundle) -> None:
    assert bundle.context_hash == context_hash(CONTEXT)
    assert bundle.epoch == 0
    assert bundle.version == BUNDLE_VERSION
    assert len(bundle.trace) >= 1
    result = engine.verify(bundle)
    assert result.verified, result.message
    assert result.verifier_name == "replay"


def test_bundle_materializes_to_the_expected_proof(engine: ProofEngine, bundle: ProofBundle) -> None:
    algebra = engine.params.algebra_for(bundle.context_hash)
    state = algebra.from_canonical(bundle.final_state)
    path = Materializer(sum_of_two_odds()).materialize_path(algebra, state)
    assert path == (
        Define("n", "Odd"),
        Define("m", "Odd"),
        Apply("ModAdd", ("n", "m"), "sum"),
        Assert("sum", "is", "Even"),
        QED(),
    )


def test_replay_reaches_final_state(engine: ProofEngine, bundle: ProofBundle) -> None:
    algebra = engine.params.algebra_for(bundle.context_hash)
    generators = algebra.generators(engine.params.generator_count)
    assert replay_trace(algebra, generators, bundle.trace).canonical() == bundle.final_state


def test_independent_verifier_accepts(bundle: ProofBundle) -> None:
    verifier = BundleVerifier(sum_of_two_odds())
    assert verifier.check(bundle).verified


# ── Tamper detection ─────────────────────────────────────────────────

def test_altered_trace_is_rejected(engine: ProofEngine, bundle: ProofBundle) -> None:
    pos = 1 if len(bundle.trace) > 1 else 0
    trace = list(bundle.trace)
    trace[pos] = (trace[pos] + 2) % (2 * engine.params.generator_count)
    result = engine.verify(_tampered(bundle, trace=tuple(trace)))
    assert not result.verified
    assert result.reason == "replay"


def test_out_of_range_index_is_rejected(engine: ProofEngine, bundle: ProofBundle) -> None:
    result = engine.verify(_tampered(bundle, trace=bundle.trace + (999,)))
    assert result.reason == "trace"


def test_truncated_trace_is_rejected(engine: ProofEngine, bundle: ProofBundle) -> None:
    result = engine.verify(_tampered(bundle, trace=bundle.trace[:-1]))
    assert result.reason == "replay"


def test_wrong_context_is_rejected(engine: ProofEngine, bundle: ProofBundle) -> None:
    result = engine.verify(_tampered(bundle, context_hash=context_hash("prove something else")))
    assert not result.verified
    assert result.reason == "discriminant"


def test_wrong_epoch_is_rejected(engine: ProofEngine, bundle: ProofBundle) -> None:
    result = engine.verify(_tampered(bundle, epoch=1))
    assert result.reason == "discriminant"


def test_malformed_fields_are_rejected(engine: ProofEngine, bundle: ProofBundle) -> None:
    assert engine.verify(_tampered(bundle, version=2)).reason == "format"
    assert engine.verify(_tampered(bundle, context_hash="not hex")).reason == "format"
    assert engine.verify(_tampered(bundle, final_state=(3, 1, 2))).reason in {"format", "discriminant"}


@pytest.mark.parametrize("ctx", ["00", "ab" * 31 + "a", "ab" * 33, "zz" * 32])
def test_context_hash_must_be_64_hex_digits(engine: ProofEngine, bundle: ProofBundle, ctx: str) -> None:
    result = engine.verify(_tampered(bundle, context_hash=ctx))
    assert not result.verified
    assert result.reason == "format"


def test_epoch_outside_counter_range_is_rejected(engine: ProofEngine, bundle: ProofBundle) -> None:
    assert engine.verify(_tampered(bundle, epoch=2**32)).reason == "format"
    assert engine.verify(_tampered(bundle, epoch=-1)).reason == "format"


def test_float_coefficients_are_not_truncated() -> None:
    text = ProofBundle("00" * 32, (3, 1, 2), (0,)).to_json().replace('"3"', "3.7")
    with pytest.raises(BundleFormatError):
        ProofBundle.from_json(text)
    assert ProofBundle.from_json(text.replace("3.7", "3")).final_state == (3, 1, 2)


def test_valid_replay_with_invalid_proof_is_rejected(engine: ProofEngine, bundle: ProofBundle) -> None:
    # An honest replay of a non-proof: the empty trace ends at the identity.
    algebra = engine.params.algebra_for(bundle.context_hash)
    empty = _tampered(bundle, trace=(), final_state=algebra.identity().canonical())
    result = engine.verify(empty)
    assert result.reason == "energy"
    with pytest.raises(VerificationFailure) as info:
        engine.verifier.check(empty)
    assert info.value.result.reason == "energy"


def test_verifier_for_another_theorem_rejects(bundle: ProofBundle) -> None:
    verifier = BundleVerifier(IMPOSSIBLE)
    assert verifier.verify(bundle).reason == "energy"


# ── Serialisation ────────────────────────────────────────────────────

def test_json_round_trip(bundle: ProofBundle) -> None:
    restored = ProofBundle.from_json(bundle.to_json())
    assert restored == bundle
    assert restored.digest() == bundle.digest()
    assert restored.metadata["theorem"] == "sum_of_two_odds"


def test_metadata_is_not_canonical(bundle: ProofBundle) -> None:
    other = _tampered(bundle, metadata={"note": "anything"})
    assert other.canonical_bytes() == bundle.canonical_bytes()
    assert b"metadata" not in bundle.canonical_bytes()


def test_large_integers_are_strings() -> None:
    b = ProofBundle("00" * 32, (2**100, -(2**90), 2**101), (0, 1))
    assert ProofBundle.from_json(b.to_json()).final_state == (2**100, -(2**90), 2**101)
    assert '"1267650600228229401496703205376"' in b.to_json()


@pytest.mark.parametrize(
    "text",
    [
        "{",
        "[]",
        '{"version": 1}',
        '{"version": "1", "context_hash": "00", "final_state": [], "trace": []}',
        '{"version": 1, "context_hash": "00", "final_state": ["x"], "trace": []}',
        '{"version": 1, "context_hash": "00", "final_state": [], "trace": ["0"]}',
        '{"version": 1, "context_hash": "00", "final_state": [], "trace": [], "epoch": -1}',
        '{"version": 1, "context_hash": "00", "final_state": [], "trace": [], "epoch": 4294967296}',
        '{"version": 1, "context_hash": "00", "final_state": [1.9, 1, 2], "trace": []}',
        '{"version": 1, "context_hash": "00", "final_state": [true, 1, 2], "trace": []}',
        '{"version": 1, "context_hash": "00", "final_state": "123", "trace": []}',
        '{"version": 1, "context_hash": "00", "final_state": [], "trace": {"0": 1}}',
    ],
)
def test_malformed_json_is_rejected(text: str) -> None:
    with pytest.raises(BundleFormatError):
        ProofBundle.from_json(text)


# ── Determinism and budgets ──────────────────────────────────────────

def test_search_is_reproducible() -> None:
    config = SearchConfig(max_iterations=30)
    a = ProofEngine(IMPOSSIBLE, SMALL, config).search(CONTEXT)
    b = ProofEngine(IMPOSSIBLE, SMALL, config).search(CONTEXT)
    assert a.trace == b.trace
    assert a.final_state == b.final_state
    assert a.best_energy == b.best_energy


def test_prehashed_context_gives_same_search() -> None:
    config = SearchConfig(max_iterations=10)
    engine = ProofEngine(IMPOSSIBLE, SMALL, config)
    assert engine.search(CONTEXT).trace == engine.search(context_hash(CONTEXT), prehashed=True).trace


def test_exhaustion_raises_with_best_so_far() -> None:
    engine = ProofEngine(IMPOSSIBLE, SMALL, SearchConfig(max_iterations=20))
    with pytest.raises(SearchExhausted) as info:
        engine.prove(CONTEXT)
    err = info.value
    assert err.result.iterations == 20
    assert err.context_hash == context_hash(CONTEXT)
    assert err.result.best_energy.barrier > 0


def test_governor_migrates_then_gives_up() -> None:
    governor = SpectralGovernor(GovernorConfig(min_spectral_gap=0.99, min_nodes=1, max_migrations=2))
    engine = ProofEngine(IMPOSSIBLE, SMALL, SearchConfig(max_iterations=20), governor=governor)
    assert engine.config.record_graph
    with pytest.raises(SearchExhausted) as info:
        engine.prove(CONTEXT)
    assert governor.migrations == 2
    assert info.value.epoch == 2


def test_governor_is_reset_for_every_proof(caplog: pytest.LogCaptureFixture) -> None:
    governor = SpectralGovernor(GovernorConfig(min_spectral_gap=0.99, min_nodes=1, max_migrations=2))
    engine = ProofEngine(IMPOSSIBLE, SMALL, SearchConfig(max_iterations=20), governor=governor)
    epochs = []
    with caplog.at_level(logging.WARNING, logger="evolver.governor"):
        for _ in range(2):
            with pytest.raises(SearchExhausted) as info:
                engine.prove(CONTEXT)
            epochs.append(info.value.epoch)
    assert epochs == [2, 2]
    assert sum("Algebra migration" in r.message for r in caplog.records) == 4
    assert len(governor.gap_history) == 4


class _RecordingLifter(StateLifter):
    def __init__(self) -> None:
        super().__init__()
        self.words = []

    def lift(self, *args, **kwargs):
        word = super().lift(*args, **kwargs)
        self.words.append(word)
        return word


def test_migration_seeds_the_next_epoch_with_the_lifted_word() -> None:
    governor = SpectralGovernor(GovernorConfig(min_spectral_gap=0.99, min_nodes=1, max_migrations=1))
    lifter = _RecordingLifter()
    engine = ProofEngine(
        IMPOSSIBLE, SMALL, SearchConfig(max_iterations=20), governor=governor, lifter=lifter,
    )
    with pytest.raises(SearchExhausted) as info:
        engine.prove(CONTEXT)
    assert len(lifter.words) == 1
    word = lifter.words[0]
    result = info.value.result
    assert result.seed_moves == len(word)
    assert result.trace[: len(word)] == word
    assert ProofEngine(IMPOSSIBLE, SMALL, governor=SpectralGovernor()).lifter is not None
    assert ProofEngine(IMPOSSIBLE, SMALL).lifter is None


# ── Parameters ───────────────────────────────────────────────────────

def test_parameters_from_env() -> None:
    params = PublicParameters.from_env({"EVOLVER_DISCRIMINANT_BITS": "96", "EVOLVER_PATH_DEPTH": "7"})
    assert params == PublicParameters(discriminant_bits=96, generator_count=8, path_depth=7)
    assert PublicParameters.from_env({}) == PublicParameters()
    with pytest.raises(ValueError):
        PublicParameters(discriminant_bits=8)


def test_prover_and_verifier_must_share_parameters(bundle: ProofBundle) -> None:
    verifier = BundleVerifier(sum_of_two_odds(), PublicParameters(discriminant_bits=96))
    assert not verifier.verify(bundle).verified


# ── Proposer seam ────────────────────────────────────────────────────

def test_proposer_seed_word_becomes_trace_prefix() -> None:
    engine = ProofEngine(IMPOSSIBLE, SMALL, SearchConfig(max_iterations=5), proposer=FixedProposer((0, 0, 3)))
    result = engine.search(CONTEXT)
    assert result.seed_moves == 3
    assert result.trace[:3] == [0, 0, 3]


def test_invalid_proposal_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    engine = ProofEngine(
        IMPOSSIBLE, SMALL, SearchConfig(max_iterations=5),
        proposer=FixedProposer((0, 999), schedule_bias=-1.0),
    )
    with caplog.at_level(logging.WARNING, logger="evolver.proposer"):
        result = engine.search(CONTEXT)
    assert result.seed_moves == 0
    assert "out-of-range" in caplog.text


class _BrokenProposer:
    name = "broken"

    def propose(self, ctx_hash, theorem, generator_count):
        raise RuntimeError("model unavailable")


def test_failing_proposer_does_not_stop_search() -> None:
    engine = ProofEngine(IMPOSSIBLE, SMALL, SearchConfig(max_iterations=5), proposer=_BrokenProposer())
    assert engine.search(CONTEXT).iterations == 5


def test_sanitize_proposal() -> None:
    assert sanitize_proposal(Proposal((1, 2), 2.0), 4) == Proposal((1, 2), 2.0)
    assert sanitize_proposal(Proposal((1, 4), 2.0), 4).seed_word == ()
    assert sanitize_proposal(Proposal((True,), 1.0), 4).seed_word == ()
    assert sanitize_proposal(Proposal((0,) * 10, 1.0), 4, max_seed_length=5).seed_word == ()
    assert sanitize_proposal(Proposal((), float("nan")), 4).schedule_bias == 1.0
