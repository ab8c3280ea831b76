"""
Zero-Knowledge Proof Module for the round coordinator
Groth16 proofs through snarkjs, plus a digest backend for development rounds
"""

from .zk_proofs import (
    # Core classes
    ZKConfig,
    ProofArtifact,
    ProofType,
    CircuitFiles,
    Prover,
    Verifier,
    DigestProver,
    DigestVerifier,
    SnarkjsProver,
    SnarkjsVerifier,
    create_prover,
    create_verifier,
    stringify,
    add_new_key_violation,

    # Exceptions
    ZKError,
    CircuitArtifactError,
    ProofGenerationError,
    WitnessError,
)

__version__ = "1.0.0"

__all__ = [
    # Classes
    'ZKConfig',
    'ProofArtifact',
    'ProofType',
    'CircuitFiles',
    'Prover',
    'Verifier',
    'DigestProver',
    'DigestVerifier',
    'SnarkjsProver',
    'SnarkjsVerifier',
    'create_prover',
    'create_verifier',
    'stringify',
    'add_new_key_violation',

    # Exceptions
    'ZKError',
    'CircuitArtifactError',
    'ProofGenerationError',
    'WitnessError',
]
