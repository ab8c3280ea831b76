"""
Field cryptography for the coordinator
Poseidon hashing, Baby Jubjub arithmetic, keys and encrypted status bits
"""

from .hashing import (
    SNARK_FIELD_SIZE,
    Poseidon,
    poseidon,
    hash2,
    hash5,
    compute_input_hash,
)
from .babyjub import BASE8, IDENTITY, SUB_ORDER, ZERO_POINT, Point
from .keys import (
    Keypair,
    NULLIFIER_DOMAIN,
    derive_scalar,
    format_priv_key,
    gen_ecdh_shared_key,
    gen_nullifier,
    gen_pub_key,
    gen_random_salt,
    shared_key_hash,
    sign_poseidon,
    verify_signature,
)
from .elgamal import (
    SENTINEL,
    StatusCiphertext,
    StatusOracle,
    decrypt_parity,
    encrypt_parity,
    rerandomize,
)

__version__ = "1.0.0"

__all__ = [
    # Hashing
    'SNARK_FIELD_SIZE',
    'Poseidon',
    'poseidon',
    'hash2',
    'hash5',
    'compute_input_hash',

    # Curve
    'BASE8',
    'IDENTITY',
    'SUB_ORDER',
    'ZERO_POINT',
    'Point',

    # Keys
    'Keypair',
    'NULLIFIER_DOMAIN',
    'derive_scalar',
    'format_priv_key',
    'gen_ecdh_shared_key',
    'gen_nullifier',
    'gen_pub_key',
    'gen_random_salt',
    'shared_key_hash',
    'sign_poseidon',
    'verify_signature',

    # Status encryption
    'SENTINEL',
    'StatusCiphertext',
    'StatusOracle',
    'decrypt_parity',
    'encrypt_parity',
    'rerandomize',
]
