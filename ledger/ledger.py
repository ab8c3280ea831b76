"""
Ledger collaborator: stores the committed roots and commitments, enforces
batch ordering and records reactivation nullifiers.

A submission is accepted only if its batch number is the next expected one,
the public-input hash recomputed from the ledger's own prior commitments
matches the claimed one, and the proof verifies against that hash.  Nothing
is updated otherwise.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, Optional, Set

import requests

from coordinator.errors import LedgerRejection, NullifierAlreadyUsed
from coordinator.processor import CHAIN_FIELDS, BatchKind, BatchTranscript, pack_input_hash
from coordinator.reactivation import ReactivationRequest, reactivation_public_inputs
from coordinator.state import TREE_ARITY
from merkle import compute_zero_hashes
from primitives import Point, compute_input_hash, hash2, poseidon
from utils import LoopLock
from zk import ProofArtifact, Verifier

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Ledger could not be reached or answered out of contract"""
    pass


class LedgerUnavailable(LedgerError):
    """Transient failure; the same submission may be retried"""
    pass


def genesis_deactivate_commitment(state_tree_depth: int) -> int:
    """Commitment over an empty shadow tree and an empty deactivation tree"""
    depth = state_tree_depth + 2
    return hash2([0, compute_zero_hashes(TREE_ARITY, depth, 0)[depth]])


@dataclass
class LedgerState:
    """Everything the ledger has committed so far"""
    batch_number: int = 0
    coord_pub_key_hash: int = 0
    state_root: int = 0
    state_commitment: Optional[int] = None
    deactivate_root: int = 0
    deactivate_commitment: int = 0
    tally_commitment: int = 0
    nullifiers: Set[int] = field(default_factory=set)

    def commitment(self, kind: BatchKind) -> Optional[int]:
        if kind is BatchKind.DEACTIVATE:
            return self.deactivate_commitment
        if kind is BatchKind.VOTE:
            return self.state_commitment
        return self.tally_commitment

    def to_dict(self) -> Dict[str, Any]:
        return {
            'batch_number': self.batch_number,
            'coord_pub_key_hash': str(self.coord_pub_key_hash),
            'state_root': str(self.state_root),
            'state_commitment': None if self.state_commitment is None else str(self.state_commitment),
            'deactivate_root': str(self.deactivate_root),
            'deactivate_commitment': str(self.deactivate_commitment),
            'tally_commitment': str(self.tally_commitment),
            'nullifiers': sorted(str(n) for n in self.nullifiers),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerState':
        state_commitment = data.get('state_commitment')
        return cls(
            batch_number=int(data['batch_number']),
            coord_pub_key_hash=int(data['coord_pub_key_hash']),
            state_root=int(data.get('state_root', 0)),
            state_commitment=None if state_commitment is None else int(state_commitment),
            deactivate_root=int(data.get('deactivate_root', 0)),
            deactivate_commitment=int(data['deactivate_commitment']),
            tally_commitment=int(data.get('tally_commitment', 0)),
            nullifiers={int(n) for n in data.get('nullifiers', [])},
        )


@dataclass
class BatchSubmission:
    kind: BatchKind
    batch_number: int
    public_inputs: Dict[str, int]
    input_hash: int
    proof: ProofArtifact

    @classmethod
    def from_transcript(cls, transcript: BatchTranscript, proof: ProofArtifact) -> 'BatchSubmission':
        return cls(
            kind=transcript.kind,
            batch_number=transcript.batch_number,
            public_inputs=dict(transcript.public_inputs),
            input_hash=transcript.input_hash,
            proof=proof,
        )

    @property
    def new_commitment(self) -> int:
        return self.public_inputs[CHAIN_FIELDS[self.kind][1]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'batch_number': self.batch_number,
            'public_inputs': {k: str(v) for k, v in self.public_inputs.items()},
            'input_hash': str(self.input_hash),
            'proof': self.proof.to_dict(),
        }


# ============================================================================
# INTERFACE
# ============================================================================


class Ledger(ABC):

    @abstractmethod
    async def fetch_state(self) -> LedgerState:
        ...

    @abstractmethod
    async def open_processing(self, state_root: int) -> LedgerState:
        """Freeze registrations and seed the state commitment with salt 0"""
        ...

    @abstractmethod
    async def submit_batch(self, submission: BatchSubmission) -> LedgerState:
        ...

    @abstractmethod
    async def submit_reactivation(self, request: ReactivationRequest,
                                  proof: ProofArtifact) -> LedgerState:
        ...


# ============================================================================
# IN-MEMORY LEDGER
# ============================================================================


class InMemoryLedger(Ledger):
    """Reference ledger enforcing the acceptance rules in-process"""

    def __init__(self, coord_pub_key: Point, verifier: Verifier, state_tree_depth: int):
        self.coord_pub_key = tuple(coord_pub_key)
        self.verifier = verifier
        self.state = LedgerState(
            coord_pub_key_hash=poseidon(list(coord_pub_key)),
            deactivate_commitment=genesis_deactivate_commitment(state_tree_depth),
        )
        self.accepted = []
        self._lock = LoopLock()

    def _snapshot(self) -> LedgerState:
        return LedgerState(**{**self.state.__dict__, 'nullifiers': set(self.state.nullifiers)})

    async def fetch_state(self) -> LedgerState:
        return self._snapshot()

    async def open_processing(self, state_root: int) -> LedgerState:
        async with self._lock:
            if self.state.state_commitment is not None:
                raise LedgerRejection("Processing period already open",
                                      expected_batch=self.state.batch_number)
            self.state.state_root = state_root
            self.state.state_commitment = hash2([state_root, 0])
            logger.info(f"Ledger opened processing at state root {state_root}")
            return self._snapshot()

    def _check_bindings(self, submission: BatchSubmission):
        inputs = submission.public_inputs
        state = self.state

        if 'coord_pub_key_hash' in inputs and inputs['coord_pub_key_hash'] != state.coord_pub_key_hash:
            raise LedgerRejection("coordinator key mismatch", state.batch_number)
        if submission.kind is BatchKind.VOTE:
            if state.state_commitment is None:
                raise LedgerRejection("processing period not open", state.batch_number)
            if inputs['deactivate_commitment'] != state.deactivate_commitment:
                raise LedgerRejection("hash mismatch: deactivate commitment", state.batch_number)
        if submission.kind is BatchKind.TALLY and inputs['state_commitment'] != state.state_commitment:
            raise LedgerRejection("hash mismatch: state commitment", state.batch_number)

    async def submit_batch(self, submission: BatchSubmission) -> LedgerState:
        async with self._lock:
            state = self.state
            if submission.batch_number != state.batch_number:
                raise LedgerRejection(
                    f"batch number mismatch: got {submission.batch_number}, "
                    f"expected {state.batch_number}", state.batch_number)

            self._check_bindings(submission)

            # Prior commitment comes from the ledger, never from the caller
            prior_field, new_field = CHAIN_FIELDS[submission.kind]
            inputs = dict(submission.public_inputs)
            inputs[prior_field] = state.commitment(submission.kind)
            expected_hash = pack_input_hash(submission.kind, inputs)
            if expected_hash != submission.input_hash:
                raise LedgerRejection("hash mismatch", state.batch_number)

            if not await self.verifier.verify(submission.proof, expected_hash):
                raise LedgerRejection("proof failure", state.batch_number)

            if submission.kind is BatchKind.DEACTIVATE:
                state.deactivate_commitment = inputs[new_field]
                state.deactivate_root = inputs['new_deactivate_root']
            elif submission.kind is BatchKind.VOTE:
                state.state_commitment = inputs[new_field]
            else:
                state.tally_commitment = inputs[new_field]
            state.batch_number += 1
            self.accepted.append(submission)

            logger.info(f"Ledger accepted {submission.kind.value} batch {submission.batch_number}")
            return self._snapshot()

    async def submit_reactivation(self, request: ReactivationRequest,
                                  proof: ProofArtifact) -> LedgerState:
        async with self._lock:
            state = self.state
            if request.nullifier in state.nullifiers:
                raise NullifierAlreadyUsed(f"Nullifier {request.nullifier} already used")
            if request.deactivate_root != state.deactivate_root:
                raise LedgerRejection("deactivation root is not the committed one", state.batch_number)

            expected_hash = compute_input_hash(reactivation_public_inputs(
                state.deactivate_root, self.coord_pub_key, request.nullifier, request.status))
            if expected_hash != request.input_hash:
                raise LedgerRejection("hash mismatch", state.batch_number)
            if not await self.verifier.verify(proof, expected_hash):
                raise LedgerRejection("proof failure", state.batch_number)

            state.nullifiers.add(request.nullifier)
            logger.info(f"Ledger recorded nullifier {request.nullifier}")
            return self._snapshot()


# ============================================================================
# HTTP CLIENT
# ============================================================================


class HttpLedgerClient(Ledger):
    """Ledger reached through a JSON HTTP gateway.

    Status 409 and 422 are rejections; network errors and 5xx responses are
    transient and surface as LedgerUnavailable.
    """

    def __init__(self, base_url: str, round_id: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.round_id = round_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/rounds/{self.round_id}/{path}"

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            if method == 'GET':
                response = self.session.get(self._url(path), timeout=self.timeout)
            else:
                response = self.session.post(self._url(path), json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise LedgerUnavailable(f"Ledger request failed: {e}")

        if response.status_code in (409, 422):
            body = response.json()
            if body.get('error') == 'nullifier_used':
                raise NullifierAlreadyUsed(body.get('message', 'nullifier already used'))
            raise LedgerRejection(body.get('message', 'rejected'),
                                  int(body.get('expected_batch', -1)))
        if response.status_code >= 500:
            raise LedgerUnavailable(f"Ledger returned {response.status_code}")
        if response.status_code >= 400:
            raise LedgerError(f"Ledger returned {response.status_code}: {response.text}")
        return response.json()

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> LedgerState:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, partial(self._request, method, path, payload))
        return LedgerState.from_dict(data)

    async def fetch_state(self) -> LedgerState:
        return await self._call('GET', 'state')

    async def open_processing(self, state_root: int) -> LedgerState:
        return await self._call('POST', 'processing', {'state_root': str(state_root)})

    async def submit_batch(self, submission: BatchSubmission) -> LedgerState:
        return await self._call('POST', 'batches', submission.to_dict())

    async def submit_reactivation(self, request: ReactivationRequest,
                                  proof: ProofArtifact) -> LedgerState:
        payload = {
            'new_pub_key': [str(v) for v in request.new_pub_key],
            'status': [str(v) for v in request.status.fields()],
            'nullifier': str(request.nullifier),
            'deactivate_root': str(request.deactivate_root),
            'input_hash': str(request.input_hash),
            'proof': proof.to_dict(),
        }
        return await self._call('POST', 'reactivations', payload)
