"""
Baby Jubjub twisted Edwards curve arithmetic over the BN254 scalar field
"""

from typing import Tuple

from .hashing import SNARK_FIELD_SIZE

Point = Tuple[int, int]

PRIME = SNARK_FIELD_SIZE
A = 168700
D = 168696

BASE8: Point = (
    5299619240641551281634865583518297030282874472190772894086521144482721001553,
    16950150798460657717958625567821834550301663161624707787222815936182638968203,
)

SUB_ORDER = 2736030358979909402780800718157159386076813972158567259200215660948447373041

IDENTITY: Point = (0, 1)

# Serialized placeholder for "no point"; never a curve point
ZERO_POINT: Point = (0, 0)


def point_add(p1: Point, p2: Point) -> Point:
    """Complete twisted Edwards addition"""
    x1, y1 = p1
    x2, y2 = p2
    x1x2 = x1 * x2 % PRIME
    y1y2 = y1 * y2 % PRIME
    dxy = D * x1x2 % PRIME * y1y2 % PRIME

    x3 = (x1 * y2 + y1 * x2) * pow(1 + dxy, -1, PRIME) % PRIME
    y3 = (y1y2 - A * x1x2) * pow(1 - dxy, -1, PRIME) % PRIME
    return (x3, y3)


def point_neg(p: Point) -> Point:
    return ((-p[0]) % PRIME, p[1])


def point_sub(p1: Point, p2: Point) -> Point:
    return point_add(p1, point_neg(p2))


def scalar_mul(p: Point, scalar: int) -> Point:
    """Double-and-add scalar multiplication"""
    if scalar < 0:
        return scalar_mul(point_neg(p), -scalar)

    result = IDENTITY
    addend = p
    while scalar:
        if scalar & 1:
            result = point_add(result, addend)
        addend = point_add(addend, addend)
        scalar >>= 1
    return result


def in_curve(p: Point) -> bool:
    x2 = p[0] * p[0] % PRIME
    y2 = p[1] * p[1] % PRIME
    return (A * x2 + y2) % PRIME == (1 + D * x2 % PRIME * y2) % PRIME


def is_identity(p: Point) -> bool:
    return p[0] % PRIME == 0 and p[1] % PRIME == 1


def normalize(p: Point) -> Point:
    """Map the serialized zero placeholder onto the identity point"""
    if p[0] == 0 and p[1] == 0:
        return IDENTITY
    return p
