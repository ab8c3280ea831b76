"""
Coordinator and participant key material on Baby Jubjub.

Private keys are arbitrary 256-bit values.  The scalar actually used on the
curve is derived from a blake2b-512 digest of the key, pruned and shifted, so
public keys are always in the prime-order subgroup generated by BASE8.
Signatures are EdDSA with a Poseidon challenge so they can be re-checked
inside the constraint system.
"""

import hashlib
import secrets
from dataclasses import dataclass, field
from typing import Tuple

from .babyjub import (
    BASE8, SUB_ORDER, ZERO_POINT, Point, in_curve, point_add, scalar_mul,
)
from .hashing import SNARK_FIELD_SIZE, hash2, poseidon

Signature = Tuple[Point, int]

# Domain constant for reactivation nullifiers
NULLIFIER_DOMAIN = 1444992409218394441042


def _digest(priv_key: int) -> bytes:
    if priv_key < 0 or priv_key >= 1 << 256:
        raise ValueError("Private key must fit in 32 bytes")
    return hashlib.blake2b(priv_key.to_bytes(32, 'little'), digest_size=64).digest()


def _pruned_scalar(priv_key: int) -> int:
    buff = bytearray(_digest(priv_key)[:32])
    buff[0] &= 0xF8
    buff[31] &= 0x7F
    buff[31] |= 0x40
    return int.from_bytes(bytes(buff), 'little')


def format_priv_key(priv_key: int) -> int:
    """Curve scalar for a raw private key"""
    return _pruned_scalar(priv_key) >> 3


def gen_priv_key() -> int:
    return secrets.randbelow(SNARK_FIELD_SIZE)


def gen_random_salt() -> int:
    return secrets.randbelow(SNARK_FIELD_SIZE)


def gen_pub_key(priv_key: int) -> Point:
    return scalar_mul(BASE8, format_priv_key(priv_key))


def gen_ecdh_shared_key(priv_key: int, pub_key: Point) -> Point:
    return scalar_mul(pub_key, format_priv_key(priv_key))


def shared_key_hash(priv_key: int, pub_key: Point) -> int:
    return poseidon(list(gen_ecdh_shared_key(priv_key, pub_key)))


def derive_scalar(private_value: int, domain: int, index: int) -> int:
    """Deterministic stand-in for a random scalar that can be recomputed later"""
    return poseidon([private_value, domain, index])


def gen_nullifier(priv_key: int) -> int:
    return hash2([format_priv_key(priv_key), NULLIFIER_DOMAIN])


def sign_poseidon(priv_key: int, message: int) -> Signature:
    digest = _digest(priv_key)
    s = _pruned_scalar(priv_key)
    pub_key = scalar_mul(BASE8, s >> 3)

    r = int.from_bytes(
        hashlib.blake2b(digest[32:] + message.to_bytes(32, 'little'),
                        digest_size=64).digest(),
        'little') % SUB_ORDER
    r8 = scalar_mul(BASE8, r)
    hm = poseidon([r8[0], r8[1], pub_key[0], pub_key[1], message])
    return r8, (r + hm * s) % SUB_ORDER


def verify_signature(message: int, signature: Signature, pub_key: Point) -> bool:
    r8, s = signature
    if s >= SUB_ORDER or s < 0:
        return False
    if tuple(pub_key) == ZERO_POINT or not in_curve(pub_key) or not in_curve(r8):
        return False

    hm = poseidon([r8[0], r8[1], pub_key[0], pub_key[1], message])
    left = scalar_mul(BASE8, s)
    right = point_add(r8, scalar_mul(pub_key, 8 * hm))
    return left == right


@dataclass
class Keypair:
    """Private key with its derived public key"""
    priv_key: int = field(default_factory=gen_priv_key)
    pub_key: Point = None

    def __post_init__(self):
        if self.pub_key is None:
            self.pub_key = gen_pub_key(self.priv_key)

    @property
    def formatted_priv_key(self) -> int:
        return format_priv_key(self.priv_key)

    def ecdh(self, other: Point) -> Point:
        return gen_ecdh_shared_key(self.priv_key, other)

    def shared_key_hash(self, other: Point) -> int:
        return shared_key_hash(self.priv_key, other)

    def sign(self, message: int) -> Signature:
        return sign_poseidon(self.priv_key, message)

    def nullifier(self) -> int:
        return gen_nullifier(self.priv_key)

    def pub_key_hash(self) -> int:
        return poseidon(list(self.pub_key))

