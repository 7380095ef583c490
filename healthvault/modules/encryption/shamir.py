"""
Shamir secret sharing over GF(2^8).

Each byte of the secret is the constant term of an independent random
polynomial of degree ``threshold - 1``. Share ``x`` coordinates are 1..n.
Arithmetic uses the AES field polynomial (0x11b) with generator 3.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass

_EXP = [0] * 512
_LOG = [0] * 256


def _build_tables() -> None:
    value = 1
    for power in range(255):
        _EXP[power] = value
        _LOG[value] = power
        # multiply by the generator 3 = x + 1
        doubled = value << 1
        if doubled & 0x100:
            doubled ^= 0x11B
        value = doubled ^ value
    for power in range(255, 512):
        _EXP[power] = _EXP[power - 255]


_build_tables()


def _mul(a: int, b: int) -> int:
    if a == 0 or b == 0:
        return 0
    return _EXP[_LOG[a] + _LOG[b]]


def _div(a: int, b: int) -> int:
    if b == 0:
        raise ZeroDivisionError("division by zero in GF(256)")
    if a == 0:
        return 0
    return _EXP[(_LOG[a] - _LOG[b]) % 255]


@dataclass(frozen=True, slots=True)
class Share:
    index: int
    value: bytes


def split_secret(secret: bytes, *, threshold: int, shares: int) -> list[Share]:
    """Split ``secret`` into ``shares`` pieces, any ``threshold`` of which recover it."""
    if not 1 <= threshold <= shares:
        raise ValueError(f"invalid threshold {threshold} for {shares} shares")
    if shares > 255:
        raise ValueError("at most 255 shares are supported")

    coefficients = [
        [byte] + [secrets.randbelow(256) for _ in range(threshold - 1)] for byte in secret
    ]
    result = []
    for x in range(1, shares + 1):
        out = bytearray()
        for coeffs in coefficients:
            # Horner evaluation, highest degree first
            acc = 0
            for coeff in reversed(coeffs):
                acc = _mul(acc, x) ^ coeff
            out.append(acc)
        result.append(Share(index=x, value=bytes(out)))
    return result


def combine_shares(shares: list[Share]) -> bytes:
    """Recover the secret by Lagrange interpolation at x = 0."""
    if not shares:
        raise ValueError("no shares supplied")
    indexes = [share.index for share in shares]
    if len(set(indexes)) != len(indexes):
        raise ValueError("duplicate share indexes")
    length = len(shares[0].value)
    if any(len(share.value) != length for share in shares):
        raise ValueError("shares have inconsistent lengths")

    weights = []
    for i, xi in enumerate(indexes):
        numerator, denominator = 1, 1
        for j, xj in enumerate(indexes):
            if i == j:
                continue
            numerator = _mul(numerator, xj)
            denominator = _mul(denominator, xi ^ xj)
        weights.append(_div(numerator, denominator))

    secret = bytearray(length)
    for weight, share in zip(weights, shares, strict=True):
        for pos, byte in enumerate(share.value):
            secret[pos] ^= _mul(weight, byte)
    return bytes(secret)
