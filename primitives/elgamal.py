"""
Additive ElGamal encoding of a single status bit on Baby Jubjub.

bit 0 (active) decrypts to the identity point, bit 1 (deactivated) to BASE8.
The all-zero pair is the registration sentinel and decrypts to 0.
"""

import logging
from dataclasses import dataclass
from typing import Tuple

from .babyjub import (
    BASE8, IDENTITY, ZERO_POINT, Point, is_identity, normalize,
    point_add, point_sub, scalar_mul,
)
from .keys import format_priv_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusCiphertext:
    c1: Point = ZERO_POINT
    c2: Point = ZERO_POINT

    def is_sentinel(self) -> bool:
        return tuple(self.c1) == ZERO_POINT and tuple(self.c2) == ZERO_POINT

    def fields(self) -> Tuple[int, int, int, int]:
        return (self.c1[0], self.c1[1], self.c2[0], self.c2[1])


SENTINEL = StatusCiphertext()


def encrypt_parity(bit: int, pub_key: Point, scalar: int) -> StatusCiphertext:
    if bit not in (0, 1):
        raise ValueError(f"Status bit must be 0 or 1, got {bit}")
    c1 = scalar_mul(BASE8, scalar)
    c2 = point_add(BASE8 if bit else IDENTITY, scalar_mul(pub_key, scalar))
    return StatusCiphertext(c1, c2)


def decrypt_parity(ciphertext: StatusCiphertext, priv_key: int) -> int:
    if ciphertext.is_sentinel():
        return 0
    c1 = normalize(ciphertext.c1)
    c2 = normalize(ciphertext.c2)
    message = point_sub(c2, scalar_mul(c1, format_priv_key(priv_key)))
    return 0 if is_identity(message) else 1


def rerandomize(ciphertext: StatusCiphertext, pub_key: Point, scalar: int) -> StatusCiphertext:
    c1 = normalize(ciphertext.c1)
    c2 = normalize(ciphertext.c2)
    return StatusCiphertext(
        point_add(c1, scalar_mul(BASE8, scalar)),
        point_add(c2, scalar_mul(pub_key, scalar)),
    )


class StatusOracle:
    """Single place where encrypted status is read back by the authority"""

    def __init__(self, priv_key: int):
        self._priv_key = priv_key

    def status_bit(self, ciphertext: StatusCiphertext) -> int:
        return decrypt_parity(ciphertext, self._priv_key)

    def is_active(self, record) -> bool:
        """Accepts anything carrying a ``status`` ciphertext"""
        return self.status_bit(record.status) == 0
