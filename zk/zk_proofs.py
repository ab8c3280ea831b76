"""
Proof generation and verification backends.

The coordinator treats the constraint system as a black box: a prover turns
a batch witness into a proof bound to the batch input hash, a verifier
checks a proof against an expected input hash.  Two backends exist:

- snarkjs: Groth16 ``fullprove``/``verify`` over compiled circuit artifacts
- digest: HMAC-SHA256 attestation over the witness, for development rounds
  where no circuit build is available
"""

import asyncio
import hashlib
import hmac
import json
import logging
import os
import secrets
import stat
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from merkle import FixedArityTree
from primitives import (
    NULLIFIER_DOMAIN, StatusCiphertext, compute_input_hash, hash2, hash5, poseidon, rerandomize,
)
from primitives.babyjub import scalar_mul

logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================


class ZKError(Exception):
    """Base exception for ZK operations"""
    pass


class CircuitArtifactError(ZKError):
    """Compiled circuit files are missing or unreadable"""
    pass


class ProofGenerationError(ZKError):
    """Proof generation failed"""
    pass


class WitnessError(ZKError):
    """Witness breaks a constraint of its circuit"""
    pass


# ============================================================================
# CONFIGURATION AND ARTIFACTS
# ============================================================================


class ProofType(Enum):
    """Circuits the coordinator proves against"""
    DEACTIVATE = "deactivate"
    PROCESS_MESSAGES = "process_messages"
    TALLY_VOTES = "tally_votes"
    ADD_NEW_KEY = "add_new_key"


@dataclass
class CircuitFiles:
    """Compiled artifacts of one circuit"""
    name: str
    wasm_file: Path
    zkey_file: Path
    vkey_file: Path

    @classmethod
    def in_dir(cls, build_dir: Path, name: str) -> 'CircuitFiles':
        return cls(
            name=name,
            wasm_file=build_dir / f"{name}_js" / f"{name}.wasm",
            zkey_file=build_dir / f"{name}.zkey",
            vkey_file=build_dir / f"{name}_vkey.json",
        )

    def missing(self) -> List[Path]:
        return [p for p in (self.wasm_file, self.zkey_file, self.vkey_file) if not p.exists()]


@dataclass
class ZKConfig:
    """Prover/verifier configuration"""
    backend: str = "digest"
    build_dir: Path = Path("circuits/build")
    snarkjs_bin: str = "snarkjs"
    proof_timeout: int = 600
    digest_key: Optional[bytes] = None
    circuit_names: Dict[str, str] = field(default_factory=lambda: {
        t.value: t.value for t in ProofType
    })

    def __post_init__(self):
        if isinstance(self.build_dir, str):
            self.build_dir = Path(self.build_dir)
        if isinstance(self.digest_key, str):
            self.digest_key = bytes.fromhex(self.digest_key)

    def circuit(self, proof_type: ProofType) -> CircuitFiles:
        return CircuitFiles.in_dir(self.build_dir, self.circuit_names[proof_type.value])


@dataclass
class ProofArtifact:
    """Container for proof and metadata"""
    proof: Dict[str, Any]
    public_signals: List[str]
    proof_type: ProofType
    input_hash: int
    generation_time: float
    backend: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'proof': self.proof,
            'public_signals': self.public_signals,
            'proof_type': self.proof_type.value,
            'input_hash': str(self.input_hash),
            'generation_time': self.generation_time,
            'backend': self.backend,
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProofArtifact':
        return cls(
            proof=data['proof'],
            public_signals=list(data['public_signals']),
            proof_type=ProofType(data['proof_type']),
            input_hash=int(data['input_hash']),
            generation_time=data.get('generation_time', 0.0),
            backend=data['backend'],
            timestamp=data.get('timestamp', time.time()),
        )


def stringify(value: Any) -> Any:
    """Circuit inputs as decimal strings, recursively"""
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [stringify(v) for v in value]
    if isinstance(value, dict):
        return {k: stringify(v) for k, v in value.items()}
    return value


def witness_digest(witness: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(stringify(witness), sort_keys=True).encode()).hexdigest()


# ============================================================================
# WITNESS RELATIONS
# ============================================================================


def add_new_key_violation(witness: Dict[str, Any]) -> Optional[str]:
    """First add-new-key constraint the witness breaks, or None.

    Ties the nullifier and the shared-key hash to one old private key, the
    proven leaf to that hash and the published status to a rerandomization
    of the leaf's ciphertext.
    """
    try:
        coord_pub = tuple(witness['coordPubKey'])
        old_key = witness['oldPrivateKey']
        shared = witness['sharedKeyHash']
        c1, c2 = tuple(witness['c1']), tuple(witness['c2'])
        d1, d2 = tuple(witness['d1']), tuple(witness['d2'])
        leaf = witness['deactivateLeaf']
        nullifier = witness['nullifier']

        if nullifier != hash2([old_key, NULLIFIER_DOMAIN]):
            return "nullifier is not derived from the old private key"
        if shared != poseidon(list(scalar_mul(coord_pub, old_key))):
            return "shared-key hash is not derived from the old private key"
        if leaf != hash5([*c1, *c2, shared]):
            return "deactivation leaf does not hold the shared-key hash and ciphertext"
        rerandomized = rerandomize(StatusCiphertext(c1, c2), coord_pub, witness['randomVal'])
        if (tuple(rerandomized.c1), tuple(rerandomized.c2)) != (d1, d2):
            return "status is not a rerandomization of the deactivation record"
        if not FixedArityTree.verify_inclusion(leaf, witness['deactivateLeafPathElements'],
                                               witness['deactivateLeafPathIndices'],
                                               witness['deactivateRoot']):
            return "deactivation leaf is not in the deactivation tree"
        expected_hash = compute_input_hash([witness['deactivateRoot'], poseidon(list(coord_pub)),
                                            nullifier, *d1, *d2])
        if witness['inputHash'] != expected_hash:
            return "input hash does not cover the public inputs"
    except (KeyError, TypeError, ValueError) as e:
        return f"malformed witness: {e!r}"
    return None


WITNESS_RELATIONS = {
    ProofType.ADD_NEW_KEY: add_new_key_violation,
}


# ============================================================================
# INTERFACES
# ============================================================================


class Prover(ABC):
    """Turns a batch witness into a proof bound to its input hash"""

    backend = "abstract"

    @abstractmethod
    async def prove(self, proof_type: ProofType, witness: Dict[str, Any],
                    input_hash: int) -> ProofArtifact:
        ...


class Verifier(ABC):

    @abstractmethod
    async def verify(self, artifact: ProofArtifact, expected_input_hash: int) -> bool:
        ...


def _bound_to(artifact: ProofArtifact, expected_input_hash: int) -> bool:
    if artifact.input_hash != expected_input_hash:
        logger.warning(f"Proof bound to {artifact.input_hash}, expected {expected_input_hash}")
        return False
    if not artifact.public_signals or artifact.public_signals[0] != str(expected_input_hash):
        logger.warning("Proof public signals do not carry the expected input hash")
        return False
    return True


# ============================================================================
# DIGEST BACKEND
# ============================================================================


class DigestProver(Prover):
    """Development backend: HMAC attestation of (circuit, input hash, witness).

    Offers no zero-knowledge or soundness against the key holder; it only
    lets a round run end to end with a shared secret standing in for the
    verification key.
    """

    backend = "digest"

    def __init__(self, key: bytes):
        self.key = key

    def _tag(self, proof_type: ProofType, input_hash: int, witness_hash: str) -> str:
        message = f"{proof_type.value}:{input_hash}:{witness_hash}".encode()
        return hmac.new(self.key, message, hashlib.sha256).hexdigest()

    async def prove(self, proof_type: ProofType, witness: Dict[str, Any],
                    input_hash: int) -> ProofArtifact:
        start_time = time.time()
        if witness.get('inputHash', input_hash) != input_hash:
            raise ProofGenerationError("Witness input hash does not match the batch input hash")
        relation = WITNESS_RELATIONS.get(proof_type)
        violation = relation(witness) if relation else None
        if violation:
            raise WitnessError(f"{proof_type.value} witness rejected: {violation}")

        witness_hash = witness_digest(witness)
        proof = {
            'witness_hash': witness_hash,
            'tag': self._tag(proof_type, input_hash, witness_hash),
        }
        return ProofArtifact(
            proof=proof,
            public_signals=[str(input_hash)],
            proof_type=proof_type,
            input_hash=input_hash,
            generation_time=time.time() - start_time,
            backend=self.backend,
        )


class DigestVerifier(Verifier):

    def __init__(self, key: bytes):
        self._prover = DigestProver(key)

    async def verify(self, artifact: ProofArtifact, expected_input_hash: int) -> bool:
        if artifact.backend != DigestProver.backend or not _bound_to(artifact, expected_input_hash):
            return False
        try:
            expected = self._prover._tag(artifact.proof_type, expected_input_hash,
                                         artifact.proof['witness_hash'])
            return hmac.compare_digest(expected, artifact.proof['tag'])
        except (KeyError, TypeError) as e:
            logger.warning(f"Malformed digest proof: {e}")
            return False


# ============================================================================
# SNARKJS BACKEND
# ============================================================================


def _secure_write(path: Path, data: Any):
    """Write JSON into a file readable only by the owner"""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f)


class SnarkjsProver(Prover):
    """Groth16 proofs through the snarkjs CLI"""

    backend = "snarkjs"

    def __init__(self, config: ZKConfig):
        self.config = config

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(cmd, capture_output=True, text=True,
                                  timeout=self.config.proof_timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProofGenerationError(f"snarkjs invocation failed: {e}")

    def _fullprove(self, circuit: CircuitFiles, witness: Dict[str, Any]):
        with tempfile.TemporaryDirectory() as temp_dir:
            temp_path = Path(temp_dir)
            input_file = temp_path / "input.json"
            proof_file = temp_path / "proof.json"
            public_file = temp_path / "public.json"
            _secure_write(input_file, stringify(witness))

            cmd = [
                self.config.snarkjs_bin, 'groth16', 'fullprove',
                str(input_file),
                str(circuit.wasm_file),
                str(circuit.zkey_file),
                str(proof_file),
                str(public_file),
            ]
            result = self._run(cmd)
            if result.returncode != 0:
                raise ProofGenerationError(f"Proof generation failed: {result.stderr}")

            return json.loads(proof_file.read_text()), json.loads(public_file.read_text())

    async def prove(self, proof_type: ProofType, witness: Dict[str, Any],
                    input_hash: int) -> ProofArtifact:
        start_time = time.time()
        circuit = self.config.circuit(proof_type)
        missing = circuit.missing()
        if missing:
            raise CircuitArtifactError(f"Missing circuit artifacts: {', '.join(map(str, missing))}")

        loop = asyncio.get_running_loop()
        proof, public_signals = await loop.run_in_executor(None, self._fullprove, circuit, witness)

        if not public_signals or public_signals[0] != str(input_hash):
            raise ProofGenerationError("Circuit output does not match the batch input hash")

        generation_time = time.time() - start_time
        logger.info(f"Generated {proof_type.value} proof in {generation_time:.2f}s")
        return ProofArtifact(
            proof=proof,
            public_signals=public_signals,
            proof_type=proof_type,
            input_hash=input_hash,
            generation_time=generation_time,
            backend=self.backend,
        )


class SnarkjsVerifier(Verifier):

    def __init__(self, config: ZKConfig):
        self.config = config
        self._vkey_cache: Dict[str, Dict[str, Any]] = {}

    def _verification_key(self, proof_type: ProofType) -> Dict[str, Any]:
        if proof_type.value not in self._vkey_cache:
            vkey_file = self.config.circuit(proof_type).vkey_file
            try:
                self._vkey_cache[proof_type.value] = json.loads(vkey_file.read_text())
            except (OSError, ValueError) as e:
                raise CircuitArtifactError(f"Cannot read verification key {vkey_file}: {e}")
        return self._vkey_cache[proof_type.value]

    def _verify_sync(self, artifact: ProofArtifact) -> bool:
        vkey = self._verification_key(artifact.proof_type)
        with tempfile.TemporaryDirectory() as temp_dir:
            temp_path = Path(temp_dir)
            vkey_file = temp_path / "vkey.json"
            public_file = temp_path / "public.json"
            proof_file = temp_path / "proof.json"
            _secure_write(vkey_file, vkey)
            _secure_write(public_file, artifact.public_signals)
            _secure_write(proof_file, artifact.proof)

            cmd = [self.config.snarkjs_bin, 'groth16', 'verify',
                   str(vkey_file), str(public_file), str(proof_file)]
            try:
                result = subprocess.run(cmd, capture_output=True, text=True,
                                        timeout=self.config.proof_timeout)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.error(f"Verification failed: {e}")
                return False
            return result.returncode == 0 and "OK!" in result.stdout

    async def verify(self, artifact: ProofArtifact, expected_input_hash: int) -> bool:
        if artifact.backend != SnarkjsProver.backend or not _bound_to(artifact, expected_input_hash):
            return False
        start_time = time.time()
        loop = asyncio.get_running_loop()
        is_valid = await loop.run_in_executor(None, self._verify_sync, artifact)
        logger.info(f"Verified {artifact.proof_type.value} proof in "
                    f"{time.time() - start_time:.3f}s: {'OK' if is_valid else 'INVALID'}")
        return is_valid


# ============================================================================
# FACTORIES
# ============================================================================


def _digest_key(config: ZKConfig) -> bytes:
    if config.digest_key is None:
        config.digest_key = secrets.token_bytes(32)
        logger.warning("No digest key configured, generated an ephemeral one")
    return config.digest_key


def create_prover(config: ZKConfig) -> Prover:
    if config.backend == "snarkjs":
        return SnarkjsProver(config)
    if config.backend == "digest":
        return DigestProver(_digest_key(config))
    raise ValueError(f"Unknown prover backend: {config.backend}")


def create_verifier(config: ZKConfig) -> Verifier:
    if config.backend == "snarkjs":
        return SnarkjsVerifier(config)
    if config.backend == "digest":
        return DigestVerifier(_digest_key(config))
    raise ValueError(f"Unknown verifier backend: {config.backend}")
