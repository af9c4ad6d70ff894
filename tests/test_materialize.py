from __future__ import annotations

import math
import random

import pytest

from evolver.algebra import ClassGroup, CyclicGroup
from evolver.dsl import QED, Apply, Assert, Branch, Case, Define, parity_of_square, sum_of_two_odds
from evolver.energy import EnergyEvaluator
from evolver.materialize import (
    EXACT_DIGEST_BYTES,
    Materializer,
    bucketed,
    encode_canonical,
    exact_digest,
    form_features,
)


def _bit_difference(x: bytes, y: bytes) -> int:
    return sum(bin(a ^ b).count("1") for a, b in zip(x, y))


# ── Ψ_exact ──────────────────────────────────────────────────────────

def test_digest_is_deterministic() -> None:
    assert exact_digest((2, 1, 3)) == exact_digest((2, 1, 3))
    assert len(exact_digest((2, 1, 3))) == EXACT_DIGEST_BYTES


def test_encoding_is_injective_on_signs_and_lengths() -> None:
    assert encode_canonical((1, -1)) != encode_canonical((1, 1))
    assert encode_canonical((1, 23)) != encode_canonical((12, 3))
    assert encode_canonical((256,)) != encode_canonical((0, 256))


def test_avalanche_on_single_increment(derived_group: ClassGroup, rng: random.Random, random_element) -> None:
    total_bits = EXACT_DIGEST_BYTES * 8
    samples = 200
    good = 0
    for _ in range(samples):
        x = random_element(derived_group, rng, steps=10)
        a, b, c = x.canonical()
        diff = _bit_difference(exact_digest((a, b, c)), exact_digest((a + 1, b, c)))
        if diff >= 0.45 * total_bits:
            good += 1
    assert good >= math.ceil(0.99 * samples)


# ── Ψ_topo ───────────────────────────────────────────────────────────

def test_form_features_are_smooth() -> None:
    delta = -(10**12 + 39)
    f1 = form_features(1000, 1, delta)
    f2 = form_features(1000, 3, delta)
    assert all(abs(u - v) < 0.02 for u, v in zip(f1, f2))
    assert f1[2] == pytest.approx(0.5 * math.log(-delta) - math.log(2000))


def test_bucketing_is_lossy() -> None:
    assert bucketed((0.12345, -0.98765), 0.01) == pytest.approx((0.12, -0.99))
    with pytest.raises(ValueError):
        bucketed((1.0,), 0.0)


# ── Path decoding ────────────────────────────────────────────────────

def test_materialization_is_deterministic(derived_group: ClassGroup, rng: random.Random, random_element) -> None:
    m = Materializer(sum_of_two_odds())
    for _ in range(25):
        x = random_element(derived_group, rng, steps=6)
        assert m.materialize_path(derived_group, x) == m.materialize_path(derived_group, x)


def test_materialization_is_total(derived_group: ClassGroup, rng: random.Random, random_element) -> None:
    m = Materializer(parity_of_square(), depth=6)
    for _ in range(200):
        x = random_element(derived_group, rng, steps=6)
        path = m.materialize_path(derived_group, x)
        assert 1 <= len(path) <= 6
        assert all(isinstance(a, (Define, Assert, Apply, Branch, QED)) for a in path)
        if any(isinstance(a, QED) for a in path):
            assert isinstance(path[-1], QED)


def test_menu_for_sum_of_two_odds() -> None:
    m = Materializer(sum_of_two_odds())
    assert m.menu([]) == [Define("n", "Even"), Define("n", "Odd"), QED()]
    assert len(m.menu(["n"])) == 5
    third = m.menu(["n", "m"])
    assert third[:2] == [Apply("ModAdd", ("n", "m"), "sum"), Apply("ModMul", ("n", "m"), "sum")]
    assert len(third) == 7
    assert len(m.menu(["n", "m", "sum"])) == 7


def test_menu_offers_cases_once_symbol_is_defined() -> None:
    m = Materializer(parity_of_square())
    assert not any(isinstance(i, Case) for i in m.menu([]))
    cases = [i for i in m.menu(["n"]) if isinstance(i, Case)]
    assert [c.case_id for c in cases] == ["n_even", "n_odd"]
    assert not any(isinstance(i, Case) for i in m.menu(["n"], {"n_even", "n_odd"}))
    assert not any(isinstance(i, (Case, QED)) for i in m.menu(["n"], top=False))


def test_valid_states_exist_but_are_rare() -> None:
    group = CyclicGroup(60000)
    ev = EnergyEvaluator(group, sum_of_two_odds())
    valid = [x for x in range(group.modulus) if ev.evaluate(x).barrier == 0]
    # one accepting path in 3·5·7·7·7 = 5145 decodings
    assert 0 < len(valid) < 40
    for x in valid:
        assert ev.materializer.materialize_path(group, x) == (
            Define("n", "Odd"),
            Define("m", "Odd"),
            Apply("ModAdd", ("n", "m"), "sum"),
            Assert("sum", "is", "Even"),
            QED(),
        )
