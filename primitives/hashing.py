"""
Poseidon hashing over the BN254 scalar field
Variable-width permutation with Grain-LFSR derived round constants
"""

import hashlib
import logging
from functools import lru_cache
from typing import List, Sequence, Tuple

logger = logging.getLogger(__name__)

# BN254 scalar field prime, shared by every field element in the coordinator
SNARK_FIELD_SIZE = 21888242871839275222246405745257275088548364400416034343698204186575808495617

# ============================================================================
# GRAIN LFSR PARAMETER GENERATION
# ============================================================================


class GrainLFSR:
    """80-bit self-shrinking Grain LFSR used to derive Poseidon parameters"""

    STATE_BITS = 80
    TAPS = (62, 51, 38, 23, 13, 0)

    def __init__(self, field_bits: int, width: int, full_rounds: int, partial_rounds: int):
        seed = [(1, 2), (0, 4), (field_bits, 12), (width, 12),
                (full_rounds, 10), (partial_rounds, 10)]
        state = 0
        for value, length in seed:
            state = (state << length) | value
        state = (state << 30) | ((1 << 30) - 1)
        self.state = state
        self.field_bits = field_bits

        for _ in range(160):
            self._step()

    def _step(self) -> int:
        # Bit 0 of the sequence is the most significant bit of the state
        state = self.state
        new_bit = 0
        for tap in self.TAPS:
            new_bit ^= state >> (self.STATE_BITS - 1 - tap)
        new_bit &= 1
        self.state = ((state << 1) & ((1 << self.STATE_BITS) - 1)) | new_bit
        return new_bit

    def next_bit(self) -> int:
        """Self-shrinking output: emit the second bit of each pair whose first bit is 1"""
        while True:
            first = self._step()
            second = self._step()
            if first == 1:
                return second

    def random_bits(self, count: int) -> int:
        value = 0
        for _ in range(count):
            value = (value << 1) | self.next_bit()
        return value

    def field_element(self, prime: int) -> int:
        """Rejection-sample a value below the prime"""
        while True:
            candidate = self.random_bits(self.field_bits)
            if candidate < prime:
                return candidate


# ============================================================================
# POSEIDON PERMUTATION
# ============================================================================


class Poseidon:
    """Poseidon hash with width t = n + 1 for n in 1..5 inputs"""

    PRIME = SNARK_FIELD_SIZE
    FIELD_BITS = 254
    FULL_ROUNDS = 8
    # Partial rounds indexed by t - 2
    PARTIAL_ROUNDS = [56, 57, 56, 60, 60, 63, 64, 63, 60, 66, 60, 65, 70, 60, 64, 68]
    MAX_DIRECT_INPUTS = 5
    MAX_INPUTS = 10

    @staticmethod
    def field_add(a: int, b: int) -> int:
        """Field addition modulo prime"""
        return (a + b) % Poseidon.PRIME

    @staticmethod
    @lru_cache(maxsize=None)
    def parameters(width: int) -> Tuple[Tuple[int, ...], Tuple[Tuple[int, ...], ...]]:
        """Round constants and Cauchy MDS matrix for a permutation width"""
        if width < 2 or width - 2 >= len(Poseidon.PARTIAL_ROUNDS):
            raise ValueError(f"Unsupported Poseidon width: {width}")

        partial_rounds = Poseidon.PARTIAL_ROUNDS[width - 2]
        grain = GrainLFSR(Poseidon.FIELD_BITS, width,
                          Poseidon.FULL_ROUNDS, partial_rounds)

        total = (Poseidon.FULL_ROUNDS + partial_rounds) * width
        constants = tuple(grain.field_element(Poseidon.PRIME) for _ in range(total))

        while True:
            values = [grain.random_bits(Poseidon.FIELD_BITS) % Poseidon.PRIME
                      for _ in range(2 * width)]
            if len(set(values)) != len(values):
                continue
            xs, ys = values[:width], values[width:]
            if any((x + y) % Poseidon.PRIME == 0 for x in xs for y in ys):
                continue
            mds = tuple(
                tuple(pow(x + y, -1, Poseidon.PRIME) for y in ys) for x in xs)
            break

        logger.debug(f"Derived Poseidon parameters for t={width} "
                     f"({total} constants, R_P={partial_rounds})")
        return constants, mds

    @staticmethod
    def ark(state: List[int], constants: Sequence[int], constant_idx: int) -> List[int]:
        """Add round constants"""
        return [Poseidon.field_add(x, constants[constant_idx + i]) for i, x in enumerate(state)]

    @staticmethod
    def sbox(state: List[int], full_round: bool) -> List[int]:
        """Apply S-box (x^5 mod p)"""
        if full_round:
            return [pow(x, 5, Poseidon.PRIME) for x in state]
        return [pow(state[0], 5, Poseidon.PRIME)] + state[1:]

    @staticmethod
    def mix(state: List[int], mds: Sequence[Sequence[int]]) -> List[int]:
        """Apply MDS matrix multiplication"""
        return [sum(row[j] * state[j] for j in range(len(state))) % Poseidon.PRIME
                for row in mds]

    @staticmethod
    def permute(inputs: Sequence[int]) -> int:
        width = len(inputs) + 1
        constants, mds = Poseidon.parameters(width)
        partial_rounds = Poseidon.PARTIAL_ROUNDS[width - 2]

        state = [0] + [x % Poseidon.PRIME for x in inputs]
        constant_idx = 0
        half = Poseidon.FULL_ROUNDS // 2

        for round_idx in range(Poseidon.FULL_ROUNDS + partial_rounds):
            full = round_idx < half or round_idx >= half + partial_rounds
            state = Poseidon.ark(state, constants, constant_idx)
            constant_idx += width
            state = Poseidon.sbox(state, full)
            state = Poseidon.mix(state, mds)

        return state[0]

    @staticmethod
    def hash(inputs: Sequence[int]) -> int:
        """Hash 1..10 field elements into one"""
        inputs = list(inputs)
        if not 1 <= len(inputs) <= Poseidon.MAX_INPUTS:
            raise ValueError(
                f"Poseidon accepts 1..{Poseidon.MAX_INPUTS} inputs, got {len(inputs)}")
        for value in inputs:
            if value < 0:
                raise ValueError(f"Negative field element: {value}")

        if len(inputs) <= Poseidon.MAX_DIRECT_INPUTS:
            return Poseidon.permute(inputs)

        padded = inputs + [0] * (Poseidon.MAX_INPUTS - len(inputs))
        return hash2([hash5(padded[:5]), hash5(padded[5:])])


poseidon = Poseidon.hash


def hash2(values: Sequence[int]) -> int:
    if len(values) != 2:
        raise ValueError(f"hash2 expects 2 inputs, got {len(values)}")
    return Poseidon.permute(values)


def hash5(values: Sequence[int]) -> int:
    if len(values) != 5:
        raise ValueError(f"hash5 expects 5 inputs, got {len(values)}")
    return Poseidon.permute(values)


def compute_input_hash(values: Sequence[int]) -> int:
    """SHA-256 over 32-byte big-endian words, reduced into the SNARK field.

    Used to pack a batch's public inputs into a single public signal that the
    ledger recomputes from its own stored values.
    """
    buffer = bytearray()
    for value in values:
        if value < 0 or value >= 1 << 256:
            raise ValueError(f"Public input outside uint256 range: {value}")
        buffer += int(value).to_bytes(32, 'big')
    return int.from_bytes(hashlib.sha256(bytes(buffer)).digest(), 'big') % SNARK_FIELD_SIZE
