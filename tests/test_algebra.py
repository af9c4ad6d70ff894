from __future__ import annotations

import random

import pytest

from evolver.algebra import (
    ClassGroup,
    ClassGroupElement,
    ConstructionError,
    CyclicGroup,
    GroupAlgebra,
    context_hash,
    derive_discriminant,
    is_probable_prime,
    sqrt_mod_prime,
    xgcd,
)


# ── Integer helpers ──────────────────────────────────────────────────

@pytest.mark.parametrize("a,b", [(240, 46), (46, 240), (-17, 5), (0, 9), (12, 0), (2**89 - 1, 2**61 - 1)])
def test_xgcd_bezout(a: int, b: int) -> None:
    g, x, y = xgcd(a, b)
    assert g >= 0
    assert a * x + b * y == g
    if a or b:
        assert a % g == 0 and b % g == 0


@pytest.mark.parametrize("p", [7, 13, 17, 41, 97, 10007])
def test_sqrt_mod_prime(p: int) -> None:
    for n in range(1, 30):
        if pow(n, (p - 1) // 2, p) == 1:
            r = sqrt_mod_prime(n, p)
            assert r * r % p == n % p


def test_primality() -> None:
    assert is_probable_prime(2**61 - 1)
    assert is_probable_prime(10007)
    assert not is_probable_prime(561)          # Carmichael
    assert not is_probable_prime((2**31 - 1) * (2**61 - 1))
    assert not is_probable_prime(1)


# ── Forms and reduction ──────────────────────────────────────────────

def test_element_requires_reduced_canonical_form() -> None:
    assert ClassGroupElement(2, 1, 3).discriminant == -23
    with pytest.raises(ConstructionError):
        ClassGroupElement(3, 1, 2)   # a > c
    with pytest.raises(ConstructionError):
        ClassGroupElement(2, -2, 3)  # |b| = a needs b ≥ 0
    with pytest.raises(ConstructionError):
        ClassGroupElement(2, -1, 2)  # a = c needs b ≥ 0
    with pytest.raises(ConstructionError):
        ClassGroupElement(1, 3, 1)   # indefinite
    with pytest.raises(ConstructionError):
        ClassGroupElement(-1, 1, 6)


def test_from_triple_reduces() -> None:
    x = ClassGroupElement.from_triple(6, 1, 2)
    assert x.canonical() == (2, -1, 6)
    assert x.discriminant == -47
    assert ClassGroupElement.from_triple(4, 5, 3).canonical() == (2, -1, 3)


def test_class_group_rejects_bad_discriminant() -> None:
    for bad in (23, -22, 0):
        with pytest.raises(ValueError):
            ClassGroup(bad)


# ── Group laws ───────────────────────────────────────────────────────

def test_composition_worked_examples() -> None:
    g = ClassGroup(-23)
    x = g.element(2, 1, 3)
    assert g.compose(x, x).canonical() == (2, -1, 3)
    assert g.compose(x, g.invert(x)) == g.identity()
    assert g.identity().canonical() == (1, 1, 6)
    assert g.power(x, 3) == g.identity()


def test_class_number_47() -> None:
    g = ClassGroup(-47)
    x = g.element(2, 1, 6)
    powers = {g.power(x, k) for k in range(5)}
    assert len(powers) == 5
    assert g.power(x, 5) == g.identity()
    assert g.power(x, -1) == g.invert(x)


def test_identity_for_even_discriminant() -> None:
    g = ClassGroup(-4 * 1009)
    assert g.identity().canonical() == (1, 0, 1009)


def test_discriminant_invariant(small_group: ClassGroup, rng: random.Random, random_element) -> None:
    delta = small_group.delta
    for _ in range(40):
        x = random_element(small_group, rng)
        y = random_element(small_group, rng)
        for z in (small_group.compose(x, y), small_group.invert(x), small_group.identity()):
            assert z.b * z.b - 4 * z.a * z.c == delta
            assert small_group.discriminant(z) == delta


def test_group_laws(small_group: ClassGroup, rng: random.Random, random_element) -> None:
    e = small_group.identity()
    for _ in range(30):
        x = random_element(small_group, rng)
        y = random_element(small_group, rng)
        assert small_group.compose(x, e) == x
        assert small_group.compose(e, x) == x
        assert small_group.compose(x, small_group.invert(x)) == e
        assert small_group.compose(x, y) == small_group.compose(y, x)


def test_associativity_on_derived_discriminant(derived_group: ClassGroup, rng: random.Random, random_element) -> None:
    compose = derived_group.compose
    for _ in range(120):
        x = random_element(derived_group, rng, steps=12)
        y = random_element(derived_group, rng, steps=12)
        z = random_element(derived_group, rng, steps=12)
        assert compose(compose(x, y), z) == compose(x, compose(y, z))


def test_associativity_small(small_group: ClassGroup, rng: random.Random, random_element) -> None:
    compose = small_group.compose
    for _ in range(100):
        x, y, z = (random_element(small_group, rng, steps=8) for _ in range(3))
        assert compose(compose(x, y), z) == compose(x, compose(y, z))


def test_mixed_discriminants_rejected() -> None:
    g23, g47 = ClassGroup(-23), ClassGroup(-47)
    with pytest.raises(ConstructionError):
        g23.compose(g23.identity(), g47.identity())
    with pytest.raises(ConstructionError):
        g23.from_canonical((1, 1, 12))


# ── Discriminant derivation ──────────────────────────────────────────

def test_derive_discriminant_is_deterministic() -> None:
    ctx = context_hash("prove sum of two odds is even")
    d1 = derive_discriminant(ctx, bits=128)
    d2 = derive_discriminant(ctx, bits=128)
    assert d1 == d2
    assert d1 < 0
    assert d1 % 4 == 1
    assert (-d1).bit_length() == 128
    assert is_probable_prime(-d1)
    assert derive_discriminant(ctx, bits=128, epoch=1) != d1
    assert derive_discriminant(context_hash("another context"), bits=128) != d1


@pytest.mark.parametrize("epoch", [-1, 2**32, 2**40])
def test_derive_discriminant_rejects_epochs_outside_counter(epoch: int) -> None:
    ctx = context_hash("prove sum of two odds is even")
    with pytest.raises(ValueError):
        derive_discriminant(ctx, epoch=epoch)
    assert derive_discriminant(ctx, bits=32, epoch=2**32 - 1) < 0


@pytest.mark.parametrize("ctx", ["00", "ab" * 33, ""])
def test_derive_discriminant_rejects_short_or_long_hashes(ctx: str) -> None:
    with pytest.raises(ValueError):
        derive_discriminant(ctx)


def test_context_hash_prehashed() -> None:
    digest = context_hash("hello")
    assert len(digest) == 64
    assert context_hash(digest, prehashed=True) == digest
    assert context_hash(bytes.fromhex(digest), prehashed=True) == digest
    assert context_hash(b"hello") == digest
    with pytest.raises(ValueError):
        context_hash("abc", prehashed=True)


# ── Generator set ────────────────────────────────────────────────────

def test_generators_come_in_inverse_pairs(derived_group: ClassGroup) -> None:
    gens = derived_group.generators(8)
    assert len(gens) == 16
    assert [g.index for g in gens] == list(range(16))
    norms = [g.norm for g in gens]
    assert norms == sorted(norms)
    for g, g_inv in zip(gens[::2], gens[1::2]):
        assert g.norm == g_inv.norm
        assert derived_group.compose(g.element, g_inv.element) == derived_group.identity()
        assert g.element.a <= g.norm
        assert g.element.discriminant == derived_group.delta


def test_generator_shortage_is_reported() -> None:
    with pytest.raises(ConstructionError):
        ClassGroup(-23).generators(3)


# ── Capability set ───────────────────────────────────────────────────

def test_both_algebras_satisfy_protocol(derived_group: ClassGroup) -> None:
    assert isinstance(derived_group, GroupAlgebra)
    assert isinstance(CyclicGroup(101), GroupAlgebra)


def test_cyclic_group() -> None:
    g = CyclicGroup(101)
    assert g.compose(60, 50) == 9
    assert g.compose(7, g.invert(7)) == g.identity()
    assert g.from_canonical(g.canonical(42)) == 42
    gens = g.generators(3)
    assert [p.element for p in gens] == [2, 99, 3, 98, 5, 96]
    with pytest.raises(ConstructionError):
        g.compose(101, 1)
