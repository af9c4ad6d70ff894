from __future__ import annotations

import itertools
import random

import pytest

from evolver.algebra import ClassGroup, context_hash, derive_discriminant
from evolver.dsl import sum_of_two_odds

END_TO_END_CONTEXT = "prove sum of two odds is even"


@pytest.fixture
def rng() -> random.Random:
    return random.Random(20240601)


@pytest.fixture(params=[-23, -47, -71, -10007, -4 * 1009])
def small_group(request) -> ClassGroup:
    return ClassGroup(request.param)


@pytest.fixture(scope="session")
def derived_group() -> ClassGroup:
    ctx = context_hash(END_TO_END_CONTEXT)
    return ClassGroup(derive_discriminant(ctx, bits=128))


@pytest.fixture
def odds_theorem():
    return sum_of_two_odds()


@pytest.fixture
def random_element():
    """Factory: random element of *group* reached by a word in prime forms."""

    def make(group: ClassGroup, rng: random.Random, steps: int = 24):
        forms = [group.prime_form(p) for p in itertools.islice(group.split_primes(), 12)]
        forms += [group.invert(f) for f in forms]
        x = group.identity()
        for _ in range(steps):
            x = group.compose(x, rng.choice(forms))
        return x

    return make
