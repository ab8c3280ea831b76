"""
Ledger acceptance rules and the HTTP client
"""

import asyncio
import dataclasses

import pytest
import requests

from coordinator import (
    LedgerRejection,
    NullifierAlreadyUsed,
    ReactivationProtocol,
    build_deactivate_message,
    build_message,
    build_reactivation_request,
)
from ledger import (
    BatchSubmission,
    HttpLedgerClient,
    InMemoryLedger,
    LedgerError,
    LedgerState,
    LedgerUnavailable,
    genesis_deactivate_commitment,
)
from primitives import Keypair
from zk import DigestProver, DigestVerifier, ProofType

KEY = b"k" * 32


def make_ledger(context):
    return InMemoryLedger(context.coord_pub_key, DigestVerifier(KEY),
                          context.params.state_tree_depth)


def prove(transcript, proof_type, key=KEY):
    proof = asyncio.run(DigestProver(key).prove(proof_type, transcript.witness, transcript.input_hash))
    return BatchSubmission.from_transcript(transcript, proof)


def deactivation_submission(context, processor, keypair, idx):
    ciphertext, enc_pub = build_deactivate_message(keypair, context.coord_pub_key, idx)
    context.push_deactivate_message(ciphertext, enc_pub)
    return prove(processor.process_deactivate_batch(), ProofType.DEACTIVATE)


class TestInMemoryLedger:

    def test_genesis_matches_empty_store(self, context):
        ledger = make_ledger(context)
        state = asyncio.run(ledger.fetch_state())
        assert state.batch_number == 0
        assert state.coord_pub_key_hash == context.coord_pub_key_hash
        assert state.deactivate_commitment == context.store.deactivate_commitment
        assert genesis_deactivate_commitment(2) == state.deactivate_commitment

    def test_signups_keep_genesis_commitment(self, context, enroll):
        enroll(3)
        assert context.store.deactivate_commitment == genesis_deactivate_commitment(2)

    def test_accepts_batches_in_order(self, context, processor, enroll):
        ledger = make_ledger(context)
        [(idx, voter)] = enroll(1)
        submission = deactivation_submission(context, processor, voter, idx)

        state = asyncio.run(ledger.submit_batch(submission))
        assert state.batch_number == 1
        assert state.deactivate_commitment == context.store.deactivate_commitment
        assert state.deactivate_root == context.store.deactivate_root

        with pytest.raises(LedgerRejection) as exc_info:
            asyncio.run(ledger.submit_batch(submission))
        assert exc_info.value.expected_batch == 1

    def test_vote_batches_follow_open_processing(self, context, processor, enroll):
        ledger = make_ledger(context)
        [(idx, voter)] = enroll(1)
        ciphertext, enc_pub = build_message(voter, context.coord_pub_key, idx, 0, 3, 1)
        context.push_message(ciphertext, enc_pub)
        context.end_vote_period()
        submission = prove(processor.process_vote_batch(), ProofType.PROCESS_MESSAGES)

        with pytest.raises(LedgerRejection):
            asyncio.run(ledger.submit_batch(submission))

        asyncio.run(ledger.open_processing(context.store.state_root))
        with pytest.raises(LedgerRejection):
            asyncio.run(ledger.open_processing(context.store.state_root))

        state = asyncio.run(ledger.submit_batch(submission))
        assert state.state_commitment == context.state_commitment

        tally = prove(processor.process_tally_batch(), ProofType.TALLY_VOTES)
        state = asyncio.run(ledger.submit_batch(tally))
        assert state.tally_commitment == context.tally.last.commitment
        assert len(ledger.accepted) == 2

    def test_rejects_altered_commitment(self, context, processor, enroll):
        ledger = make_ledger(context)
        [(idx, voter)] = enroll(1)
        submission = deactivation_submission(context, processor, voter, idx)

        inputs = dict(submission.public_inputs, new_deactivate_commitment=12345)
        with pytest.raises(LedgerRejection, match="hash mismatch"):
            asyncio.run(ledger.submit_batch(dataclasses.replace(submission, public_inputs=inputs)))

        inputs = dict(submission.public_inputs, state_root=12345)
        with pytest.raises(LedgerRejection, match="hash mismatch"):
            asyncio.run(ledger.submit_batch(dataclasses.replace(submission, public_inputs=inputs)))
        assert ledger.state.batch_number == 0

        # The prior commitment is always taken from the ledger itself
        inputs = dict(submission.public_inputs, current_deactivate_commitment=12345)
        state = asyncio.run(ledger.submit_batch(dataclasses.replace(submission, public_inputs=inputs)))
        assert state.batch_number == 1

    def test_rejects_foreign_proof(self, context, processor, enroll):
        ledger = make_ledger(context)
        [(idx, voter)] = enroll(1)
        ciphertext, enc_pub = build_deactivate_message(voter, context.coord_pub_key, idx)
        context.push_deactivate_message(ciphertext, enc_pub)
        transcript = processor.process_deactivate_batch()

        with pytest.raises(LedgerRejection, match="proof failure"):
            asyncio.run(ledger.submit_batch(prove(transcript, ProofType.DEACTIVATE, key=b"x" * 32)))
        assert ledger.state.deactivate_commitment == genesis_deactivate_commitment(2)

    def test_rejects_other_coordinator(self, context, processor, enroll):
        ledger = InMemoryLedger(Keypair().pub_key, DigestVerifier(KEY), 2)
        [(idx, voter)] = enroll(1)
        with pytest.raises(LedgerRejection, match="coordinator key"):
            asyncio.run(ledger.submit_batch(deactivation_submission(context, processor, voter, idx)))

    def test_reactivation_nullifier_recorded_once(self, context, processor, enroll):
        ledger = make_ledger(context)
        [(idx, voter)] = enroll(1)
        asyncio.run(ledger.submit_batch(deactivation_submission(context, processor, voter, idx)))

        def request():
            return build_reactivation_request(
                voter, Keypair().pub_key, context.coord_pub_key,
                context.store.deactivations, context.store.deactivate_tree_depth)

        first = request()
        assert ReactivationProtocol(context).verify_request(first)
        proof = asyncio.run(DigestProver(KEY).prove(ProofType.ADD_NEW_KEY, first.witness,
                                                    first.input_hash))
        state = asyncio.run(ledger.submit_reactivation(first, proof))
        assert voter.nullifier() in state.nullifiers

        second = request()
        proof = asyncio.run(DigestProver(KEY).prove(ProofType.ADD_NEW_KEY, second.witness,
                                                    second.input_hash))
        with pytest.raises(NullifierAlreadyUsed):
            asyncio.run(ledger.submit_reactivation(second, proof))


# ============================================================================
# HTTP CLIENT
# ============================================================================


class FakeResponse:

    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body or {}
        self.text = str(self._body)

    def json(self):
        return self._body


class FakeSession:

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def _reply(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def get(self, url, **kwargs):
        return self._reply('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self._reply('POST', url, **kwargs)


STATE_BODY = LedgerState(batch_number=4, coord_pub_key_hash=9, deactivate_commitment=3).to_dict()


class TestHttpLedgerClient:

    def client(self, session):
        return HttpLedgerClient("http://ledger.test/", "round-7", timeout=2.0, session=session)

    def test_fetch_state(self):
        session = FakeSession(FakeResponse(200, STATE_BODY))
        state = asyncio.run(self.client(session).fetch_state())
        assert state.batch_number == 4
        assert state.coord_pub_key_hash == 9
        assert state.state_commitment is None
        assert session.calls[0][:2] == ('GET', "http://ledger.test/rounds/round-7/state")
        assert session.calls[0][2]['timeout'] == 2.0

    def test_open_processing_posts_root(self):
        session = FakeSession(FakeResponse(200, STATE_BODY))
        asyncio.run(self.client(session).open_processing(123))
        method, url, kwargs = session.calls[0]
        assert (method, url) == ('POST', "http://ledger.test/rounds/round-7/processing")
        assert kwargs['json'] == {'state_root': '123'}

    def test_conflict_is_rejection(self):
        session = FakeSession(FakeResponse(409, {'message': 'stale batch', 'expected_batch': 5}))
        with pytest.raises(LedgerRejection) as exc_info:
            asyncio.run(self.client(session).fetch_state())
        assert exc_info.value.expected_batch == 5

    def test_used_nullifier(self):
        session = FakeSession(FakeResponse(422, {'error': 'nullifier_used'}))
        with pytest.raises(NullifierAlreadyUsed):
            asyncio.run(self.client(session).fetch_state())

    @pytest.mark.parametrize("session", [
        FakeSession(FakeResponse(503)),
        FakeSession(error=requests.ConnectionError("refused")),
    ])
    def test_transient_failures(self, session):
        with pytest.raises(LedgerUnavailable):
            asyncio.run(self.client(session).fetch_state())

    def test_other_client_errors(self):
        session = FakeSession(FakeResponse(404, {'message': 'no such round'}))
        with pytest.raises(LedgerError):
            asyncio.run(self.client(session).fetch_state())
