"""
Proof backends
"""

import asyncio

import pytest

from zk import (
    CircuitArtifactError,
    DigestProver,
    DigestVerifier,
    ProofArtifact,
    ProofGenerationError,
    ProofType,
    SnarkjsProver,
    ZKConfig,
    create_prover,
    create_verifier,
    stringify,
)

WITNESS = {'inputHash': 42, 'msgs': [[1, 2], [3, 4]], 'flag': True}


class TestDigestBackend:

    def test_proof_verifies_against_its_input_hash(self):
        prover, verifier = DigestProver(b"k" * 32), DigestVerifier(b"k" * 32)
        artifact = asyncio.run(prover.prove(ProofType.DEACTIVATE, WITNESS, 42))

        assert artifact.public_signals == ["42"]
        assert asyncio.run(verifier.verify(artifact, 42))
        assert not asyncio.run(verifier.verify(artifact, 43))
        assert not asyncio.run(DigestVerifier(b"x" * 32).verify(artifact, 42))

    def test_serialized_artifact_still_verifies(self):
        artifact = asyncio.run(DigestProver(b"k" * 32).prove(ProofType.TALLY_VOTES, WITNESS, 42))
        restored = ProofArtifact.from_dict(artifact.to_dict())
        assert restored.proof_type is ProofType.TALLY_VOTES
        assert asyncio.run(DigestVerifier(b"k" * 32).verify(restored, 42))

    def test_circuit_type_is_bound(self):
        artifact = asyncio.run(DigestProver(b"k" * 32).prove(ProofType.DEACTIVATE, WITNESS, 42))
        artifact.proof_type = ProofType.ADD_NEW_KEY
        assert not asyncio.run(DigestVerifier(b"k" * 32).verify(artifact, 42))

    def test_witness_must_carry_same_hash(self):
        with pytest.raises(ProofGenerationError):
            asyncio.run(DigestProver(b"k" * 32).prove(ProofType.DEACTIVATE, WITNESS, 7))

    def test_factories_share_ephemeral_key(self):
        config = ZKConfig()
        prover, verifier = create_prover(config), create_verifier(config)
        artifact = asyncio.run(prover.prove(ProofType.PROCESS_MESSAGES, WITNESS, 42))
        assert asyncio.run(verifier.verify(artifact, 42))

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_prover(ZKConfig(backend="plonk"))


class TestSnarkjsBackend:

    def test_missing_artifacts(self, tmp_path):
        prover = SnarkjsProver(ZKConfig(backend="snarkjs", build_dir=tmp_path))
        with pytest.raises(CircuitArtifactError):
            asyncio.run(prover.prove(ProofType.DEACTIVATE, WITNESS, 42))

    def test_circuit_paths(self, tmp_path):
        files = ZKConfig(build_dir=tmp_path).circuit(ProofType.ADD_NEW_KEY)
        assert files.wasm_file == tmp_path / "add_new_key_js" / "add_new_key.wasm"
        assert files.zkey_file == tmp_path / "add_new_key.zkey"
        assert len(files.missing()) == 3


def test_stringify_nested_inputs():
    assert stringify(WITNESS) == {'inputHash': '42', 'msgs': [['1', '2'], ['3', '4']], 'flag': '1'}
