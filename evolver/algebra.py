"""algebra.py – Exact ideal class-group arithmetic (the "Soul" layer).

Provides the algebraic state space searched by the optimizer:

  • ClassGroupElement – reduced, positive-definite binary quadratic form
    (a, b, c).  Its discriminant is *derived* from the triple and every
    constructor validates reduction, so an element that is not the
    canonical representative of its class cannot exist.
  • ClassGroup – the capability set {compose, identity, invert,
    discriminant} over Cl(Δ), plus canonical encoding, smooth features and
    the public generator set.
  • CyclicGroup – a simplified stand-in algebra (Z/nZ) with the same
    capability set, used to exercise the optimizer and replay logic
    without any number theory.
  • Context hashing and deterministic discriminant derivation.

Composition is the classical algorithm (Cohen, *A Course in Computational
Algebraic Number Theory*, Alg. 5.4.7) followed by Gauss reduction, so one
``compose`` costs O(log |Δ|) big-integer operations.

License: MIT
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Any, Iterator, List, Protocol, Sequence, Tuple, Union, runtime_checkable

logger = logging.getLogger(__name__)


class ConstructionError(ValueError):
    """A value would leave Cl(Δ): wrong discriminant, not reduced, or not
    positive definite.  Raised only for internal bugs or corrupt input."""


# ═══════════════════════════════════════════════════════════════════════
#  Integer helpers
# ═══════════════════════════════════════════════════════════════════════


def xgcd(a: int, b: int) -> Tuple[int, int, int]:
    """Return ``(g, x, y)`` with ``a*x + b*y == g == gcd(a, b) >= 0``."""
    x0, y0, x1, y1 = 1, 0, 0, 1
    while b:
        q, r = divmod(a, b)
        a, b = b, r
        x0, x1 = x1, x0 - q * x1
        y0, y1 = y1, y0 - q * y1
    if a < 0:
        return -a, -x0, -y0
    return a, x0, y0


def _primes_up_to(limit: int) -> List[int]:
    sieve = bytearray([1]) * (limit + 1)
    sieve[0:2] = b"\x00\x00"
    for p in range(2, int(limit ** 0.5) + 1):
        if sieve[p]:
            sieve[p * p::p] = bytearray(len(sieve[p * p::p]))
    return [i for i, is_p in enumerate(sieve) if is_p]


_SMALL_PRIMES: Tuple[int, ...] = tuple(_primes_up_to(10_000))
_MR_BASES: Tuple[int, ...] = _SMALL_PRIMES[:24]


def is_probable_prime(n: int) -> bool:
    """Miller–Rabin with a fixed base set (deterministic for a given n)."""
    if n < 2:
        return False
    for p in _SMALL_PRIMES[:64]:
        if n % p == 0:
            return n == p
    d, s = n - 1, 0
    while d % 2 == 0:
        d //= 2
        s += 1
    for base in _MR_BASES:
        x = pow(base, d, n)
        if x == 1 or x == n - 1:
            continue
        for _ in range(s - 1):
            x = x * x % n
            if x == n - 1:
                break
        else:
            return False
    return True


def sqrt_mod_prime(n: int, p: int) -> int:
    """Tonelli–Shanks square root of *n* modulo an odd prime *p*."""
    n %= p
    if n == 0:
        return 0
    if pow(n, (p - 1) // 2, p) != 1:
        raise ValueError(f"{n} is not a quadratic residue mod {p}")
    if p % 4 == 3:
        return pow(n, (p + 1) // 4, p)
    q, s = p - 1, 0
    while q % 2 == 0:
        q //= 2
        s += 1
    z = 2
    while pow(z, (p - 1) // 2, p) != p - 1:
        z += 1
    m, c, t, r = s, pow(z, q, p), pow(n, q, p), pow(n, (q + 1) // 2, p)
    while t != 1:
        i, t2 = 0, t
        while t2 != 1:
            t2 = t2 * t2 % p
            i += 1
        b = pow(c, 1 << (m - i - 1), p)
        m, c = i, b * b % p
        t, r = t * c % p, r * b % p
    return r


# ═══════════════════════════════════════════════════════════════════════
#  Context → discriminant
# ═══════════════════════════════════════════════════════════════════════


def context_hash(context: Union[str, bytes], prehashed: bool = False) -> str:
    """Return the hex ``ContextHash = SHA-256(context)``.

    With ``prehashed=True`` *context* is taken to already be a 32-byte
    digest (raw bytes or 64 hex digits) and is only normalised.
    """
    if prehashed:
        if isinstance(context, bytes):
            if len(context) != 32:
                raise ValueError(f"pre-hashed context must be 32 bytes, got {len(context)}")
            return context.hex()
        text = context.strip().lower()
        if len(text) != 64:
            raise ValueError(f"pre-hashed context must be 64 hex digits, got {len(text)}")
        bytes.fromhex(text)
        return text
    if isinstance(context, str):
        context = context.encode("utf-8")
    return hashlib.sha256(context).hexdigest()


MAX_EPOCH = 2 ** 32  # epochs are hashed as 4-byte big-endian counters


def derive_discriminant(ctx_hash: str, bits: int = 128, epoch: int = 0) -> int:
    """Deterministically derive Δ from a context hash.

    The hash is expanded with SHA-256 in counter mode to *bits* bits, the
    top bit is forced, and Δ = −p for the next prime p ≡ 3 (mod 4) at or
    above that value.  Such a Δ is negative, ≡ 1 (mod 4) and fundamental.
    *epoch* selects an independent Δ for the same context (algebra
    migration).
    """
    if bits < 16:
        raise ValueError(f"discriminant needs at least 16 bits, got {bits}")
    if not 0 <= epoch < MAX_EPOCH:
        raise ValueError(f"epoch must lie in [0, 2**32), got {epoch}")
    if len(ctx_hash) != 64:
        raise ValueError(f"context hash must be 64 hex digits, got {len(ctx_hash)}")
    seed = bytes.fromhex(ctx_hash)
    stream = b""
    counter = 0
    while len(stream) * 8 < bits:
        stream += hashlib.sha256(
            b"evolver/discriminant"
            + seed
            + epoch.to_bytes(4, "big")
            + counter.to_bytes(4, "big")
        ).digest()
        counter += 1
    n = int.from_bytes(stream, "big") >> (len(stream) * 8 - bits)
    n |= 1 << (bits - 1)
    n += (3 - n) % 4
    while not is_probable_prime(n):
        n += 4
    return -n


# ═══════════════════════════════════════════════════════════════════════
#  Binary quadratic forms
# ═══════════════════════════════════════════════════════════════════════


def _reduce(a: int, b: int, c: int) -> Tuple[int, int, int]:
    """Gauss reduction to the unique reduced representative."""
    if a <= 0 or b * b - 4 * a * c >= 0:
        raise ConstructionError(f"form ({a}, {b}, {c}) is not positive definite")
    while True:
        if b > a or b <= -a:
            two_a = 2 * a
            r = b % two_a
            if r > a:
                r -= two_a
            k = (r - b) // two_a
            c = a * k * k + b * k + c
            b = r
        if a > c:
            a, c = c, a
            b = -b
            continue
        if b < 0 and (a == c or -b == a):
            b = -b
        return a, b, c


@dataclass(frozen=True, order=True)
class ClassGroupElement:
    """Reduced binary quadratic form ax² + bxy + cy² with b² − 4ac < 0.

    Instances are always the canonical reduced representative of their
    class: ``|b| ≤ a ≤ c`` and ``b ≥ 0`` whenever ``|b| = a`` or ``a = c``.
    Use :meth:`from_triple` to reduce an arbitrary positive-definite form.
    """
    a: int
    b: int
    c: int

    def __post_init__(self) -> None:
        a, b, c = self.a, self.b, self.c
        if not all(type(v) is int for v in (a, b, c)):
            raise ConstructionError(f"form coefficients must be int, got ({a!r}, {b!r}, {c!r})")
        if a <= 0 or b * b - 4 * a * c >= 0:
            raise ConstructionError(f"form ({a}, {b}, {c}) is not positive definite")
        if not (abs(b) <= a <= c):
            raise ConstructionError(f"form ({a}, {b}, {c}) is not reduced")
        if b < 0 and (a == c or -b == a):
            raise ConstructionError(f"form ({a}, {b}, {c}) is not the canonical representative")

    @classmethod
    def from_triple(cls, a: int, b: int, c: int) -> "ClassGroupElement":
        return cls(*_reduce(a, b, c))

    @property
    def discriminant(self) -> int:
        return self.b * self.b - 4 * self.a * self.c

    def canonical(self) -> Tuple[int, int, int]:
        return (self.a, self.b, self.c)

    def __str__(self) -> str:
        return f"({self.a}, {self.b}, {self.c})"


@dataclass(frozen=True)
class Perturbation:
    """One member of the public generator set P.

    ``index`` is the position in P (what a trace records), ``norm`` the
    prime norm of the underlying ideal, ``element`` the group element.
    """
    index: int
    norm: int
    element: Any


# ═══════════════════════════════════════════════════════════════════════
#  Algebra capability set
# ═══════════════════════════════════════════════════════════════════════


@runtime_checkable
class GroupAlgebra(Protocol):
    """What the optimizer and verifier need from an algebra.

    Neither depends on a concrete representation; ``ClassGroup`` and
    ``CyclicGroup`` are interchangeable.
    """

    @property
    def name(self) -> str:
        ...

    def compose(self, x: Any, y: Any) -> Any:
        ...

    def identity(self) -> Any:
        ...

    def invert(self, x: Any) -> Any:
        ...

    def discriminant(self, x: Any) -> int:
        ...

    def canonical(self, x: Any) -> Tuple[int, ...]:
        ...

    def from_canonical(self, values: Sequence[int]) -> Any:
        ...

    def features(self, x: Any) -> Tuple[float, ...]:
        ...

    def generators(self, k: int) -> Tuple[Perturbation, ...]:
        ...


class ClassGroup:
    """The ideal class group Cl(Δ) of an imaginary quadratic order.

    Parameters
    ----------
    discriminant : int
        Negative integer ≡ 0 or 1 (mod 4).
    """

    _name = "class-group"

    def __init__(self, discriminant: int) -> None:
        if discriminant >= 0 or discriminant % 4 not in (0, 1):
            raise ValueError(
                f"discriminant must be negative and 0 or 1 mod 4, got {discriminant}"
            )
        self._delta = discriminant
        if discriminant % 4 == 0:
            self._identity = ClassGroupElement(1, 0, -discriminant // 4)
        else:
            self._identity = ClassGroupElement(1, 1, (1 - discriminant) // 4)

    @property
    def name(self) -> str:
        return self._name

    @property
    def delta(self) -> int:
        return self._delta

    def __repr__(self) -> str:
        return f"ClassGroup(Δ={self._delta})"

    # ── Group operations ─────────────────────────────────────

    def identity(self) -> ClassGroupElement:
        return self._identity

    def discriminant(self, x: ClassGroupElement) -> int:
        return x.discriminant

    def _check(self, x: ClassGroupElement) -> None:
        if x.discriminant != self._delta:
            raise ConstructionError(
                f"element {x} has discriminant {x.discriminant}, group has {self._delta}"
            )

    def compose(self, x: ClassGroupElement, y: ClassGroupElement) -> ClassGroupElement:
        self._check(x)
        self._check(y)
        if x.a > y.a:
            x, y = y, x
        a1, b1 = x.a, x.b
        a2, b2, c2 = y.a, y.b, y.c

        s = (b1 + b2) // 2
        n = b2 - s
        if a2 % a1 == 0:
            y1, d = 0, a1
        else:
            d, y1, _ = xgcd(a2, a1)
        if s % d == 0:
            x2, y2, d1 = 0, -1, d
        else:
            d1, x2, y2 = xgcd(s, d)
            y2 = -y2

        v1 = a1 // d1
        v2 = a2 // d1
        r = (y1 * y2 * n - x2 * c2) % v1
        b3 = b2 + 2 * v2 * r
        a3 = v1 * v2
        num = b3 * b3 - self._delta
        if num % (4 * a3):
            raise ConstructionError(f"composition of {x} and {y} left Cl({self._delta})")
        return ClassGroupElement.from_triple(a3, b3, num // (4 * a3))

    def invert(self, x: ClassGroupElement) -> ClassGroupElement:
        self._check(x)
        return ClassGroupElement.from_triple(x.a, -x.b, x.c)

    def power(self, x: ClassGroupElement, exponent: int) -> ClassGroupElement:
        """Square-and-multiply; negative exponents use the inverse."""
        if exponent < 0:
            x, exponent = self.invert(x), -exponent
        result = self._identity
        while exponent:
            if exponent & 1:
                result = self.compose(result, x)
            exponent >>= 1
            if exponent:
                x = self.compose(x, x)
        return result

    # ── Encodings ────────────────────────────────────────────

    def canonical(self, x: ClassGroupElement) -> Tuple[int, int, int]:
        return x.canonical()

    def from_canonical(self, values: Sequence[int]) -> ClassGroupElement:
        if len(values) != 3:
            raise ConstructionError(f"class-group element needs 3 coefficients, got {len(values)}")
        element = ClassGroupElement(*(int(v) for v in values))
        self._check(element)
        return element

    def element(self, a: int, b: int, c: int) -> ClassGroupElement:
        """Reduce (a, b, c) and check it belongs to this group."""
        element = ClassGroupElement.from_triple(a, b, c)
        self._check(element)
        return element

    def features(self, x: ClassGroupElement) -> Tuple[float, float, float]:
        from .materialize import form_features  # deferred to avoid circular
        return form_features(x.a, x.b, self._delta)

    # ── Generator set ────────────────────────────────────────

    def prime_form(self, p: int) -> ClassGroupElement:
        """The class of a prime ideal of norm *p* (requires (Δ/p) = 1)."""
        delta = self._delta
        if p == 2:
            if delta % 8 != 1:
                raise ValueError(f"2 does not split for Δ={delta}")
            return self.element(2, 1, (1 - delta) // 8)
        if delta % p == 0 or pow(delta % p, (p - 1) // 2, p) != 1:
            raise ValueError(f"{p} does not split for Δ={delta}")
        root = sqrt_mod_prime(delta, p)
        b = root if (root - delta) % 2 == 0 else p - root
        return self.element(p, b, (b * b - delta) // (4 * p))

    def split_primes(self) -> Iterator[int]:
        delta = self._delta
        for p in _SMALL_PRIMES:
            if p == 2:
                if delta % 8 == 1:
                    yield p
                continue
            if delta % p and pow(delta % p, (p - 1) // 2, p) == 1:
                yield p

    def generators(self, k: int) -> Tuple[Perturbation, ...]:
        """The first *k* split primes as ``[g₁, g₁⁻¹, g₂, g₂⁻¹, …]``.

        Forms whose class would be the identity, or whose inverse
        coincides with themselves, contribute only once.
        """
        if k <= 0:
            raise ValueError(f"generator count must be positive, got {k}")
        elements: List[Tuple[int, ClassGroupElement]] = []
        seen = {self._identity}
        pairs = 0
        for p in self.split_primes():
            g = self.prime_form(p)
            if g in seen:
                continue
            seen.add(g)
            elements.append((p, g))
            g_inv = self.invert(g)
            if g_inv not in seen:
                seen.add(g_inv)
                elements.append((p, g_inv))
            pairs += 1
            if pairs == k:
                break
        if pairs < k:
            raise ConstructionError(f"only {pairs} split primes below {_SMALL_PRIMES[-1]} for Δ={self._delta}")
        return tuple(Perturbation(i, p, g) for i, (p, g) in enumerate(elements))


# ═══════════════════════════════════════════════════════════════════════
#  CyclicGroup: stand-in algebra
# ═══════════════════════════════════════════════════════════════════════


class CyclicGroup:
    """Additive group Z/nZ exposing the same capability set as ClassGroup.

    Useful for testing the search and replay machinery: every operation is
    trivially checkable, yet the optimizer cannot tell the difference.
    """

    _name = "cyclic"

    def __init__(self, modulus: int) -> None:
        if modulus < 2:
            raise ValueError(f"modulus must be at least 2, got {modulus}")
        self.modulus = modulus

    @property
    def name(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"CyclicGroup(n={self.modulus})"

    def _check(self, x: int) -> None:
        if type(x) is not int or not 0 <= x < self.modulus:
            raise ConstructionError(f"{x!r} is not an element of Z/{self.modulus}Z")

    def identity(self) -> int:
        return 0

    def compose(self, x: int, y: int) -> int:
        self._check(x)
        self._check(y)
        return (x + y) % self.modulus

    def invert(self, x: int) -> int:
        self._check(x)
        return (-x) % self.modulus

    def discriminant(self, x: int) -> int:
        self._check(x)
        return -self.modulus

    def canonical(self, x: int) -> Tuple[int]:
        self._check(x)
        return (x,)

    def from_canonical(self, values: Sequence[int]) -> int:
        if len(values) != 1:
            raise ConstructionError(f"cyclic element needs 1 coefficient, got {len(values)}")
        x = int(values[0])
        self._check(x)
        return x

    def features(self, x: int) -> Tuple[float, float, float]:
        angle = 2.0 * math.pi * x / self.modulus
        return (math.cos(angle), math.sin(angle), 0.0)

    def generators(self, k: int) -> Tuple[Perturbation, ...]:
        if k <= 0:
            raise ValueError(f"generator count must be positive, got {k}")
        out: List[Perturbation] = []
        for p in _SMALL_PRIMES:
            if len(out) >= 2 * k:
                break
            if self.modulus % p == 0:
                continue
            g = p % self.modulus
            if g == 0:
                continue
            out.append(Perturbation(len(out), p, g))
            if (-g) % self.modulus != g:
                out.append(Perturbation(len(out), p, (-g) % self.modulus))
        return tuple(out)
