"""
Anonymous reactivation under a new key
"""

import asyncio
import dataclasses

import pytest

from coordinator import (
    NullifierAlreadyUsed,
    ReactivationError,
    ReactivationPolicy,
    ReactivationProtocol,
    RejectionReason,
    build_deactivate_message,
    build_message,
    build_reactivation_request,
    reactivation_public_inputs,
)
from primitives import Keypair, compute_input_hash, decrypt_parity, encrypt_parity
from zk import DigestProver, ProofType, WitnessError


@pytest.fixture
def deactivated(context, processor, enroll):
    """One voter deactivated through a processed batch"""
    voters = enroll(2)
    idx, keypair = voters[0]
    ciphertext, enc_pub = build_deactivate_message(keypair, context.coord_pub_key, idx)
    context.push_deactivate_message(ciphertext, enc_pub)
    processor.process_deactivate_batch()
    return idx, keypair


def request_for(context, old_keypair, new_keypair=None, **kwargs):
    new_keypair = new_keypair or Keypair()
    return build_reactivation_request(
        old_keypair, new_keypair.pub_key, context.coord_pub_key,
        context.store.deactivations, context.store.deactivate_tree_depth, **kwargs)


class TestRequest:

    def test_request_rerandomizes_recorded_status(self, context, deactivated):
        _idx, old = deactivated
        request = request_for(context, old, random_scalar=1234)
        record = context.store.deactivations[0]

        assert request.status != record.status
        assert decrypt_parity(request.status, context.keypair.priv_key) == 1
        assert request.nullifier == old.nullifier()
        assert request.deactivate_root == context.store.deactivate_root
        assert ReactivationProtocol(context).verify_request(request)

    def test_unknown_key_has_no_record(self, context, deactivated):
        with pytest.raises(ReactivationError):
            request_for(context, Keypair())

    def test_tampered_requests_fail_verification(self, context, deactivated):
        _idx, old = deactivated
        request = request_for(context, old)
        protocol = ReactivationProtocol(context)

        assert not protocol.verify_request(
            dataclasses.replace(request, input_hash=request.input_hash + 1))
        assert not protocol.verify_request(
            dataclasses.replace(request, nullifier=Keypair().nullifier()))
        witness = dict(request.witness, deactivateLeaf=request.witness['deactivateLeaf'] + 1)
        assert not protocol.verify_request(dataclasses.replace(request, witness=witness))
        with pytest.raises(ReactivationError):
            protocol.apply(dataclasses.replace(request, input_hash=0))

    def test_valid_leaf_cannot_be_replayed_under_fresh_nullifiers(self, context, deactivated):
        _idx, old = deactivated
        genuine = request_for(context, old)
        protocol = ReactivationProtocol(context)
        signups = context.store.num_signups

        for _ in range(3):
            nullifier = Keypair().nullifier()
            input_hash = compute_input_hash(reactivation_public_inputs(
                genuine.deactivate_root, context.coord_pub_key, nullifier, genuine.status))
            witness = dict(genuine.witness, nullifier=nullifier, inputHash=input_hash)
            forged = dataclasses.replace(genuine, nullifier=nullifier,
                                         input_hash=input_hash, witness=witness)

            assert not protocol.verify_request(forged)
            with pytest.raises(ReactivationError):
                protocol.apply(forged)
            with pytest.raises(WitnessError, match="nullifier"):
                asyncio.run(DigestProver(b"k" * 32).prove(ProofType.ADD_NEW_KEY, witness, input_hash))

        assert context.store.num_signups == signups
        assert context.store.nullifiers == set()
        assert protocol.apply(genuine) == signups

    def test_leaf_is_bound_to_the_old_key(self, context, deactivated):
        _idx, old = deactivated
        genuine = request_for(context, old)
        forger = Keypair()
        nullifier = forger.nullifier()
        input_hash = compute_input_hash(reactivation_public_inputs(
            genuine.deactivate_root, context.coord_pub_key, nullifier, genuine.status))
        witness = dict(genuine.witness, nullifier=nullifier, inputHash=input_hash,
                       oldPrivateKey=forger.formatted_priv_key,
                       sharedKeyHash=forger.shared_key_hash(context.coord_pub_key))
        forged = dataclasses.replace(genuine, nullifier=nullifier,
                                     input_hash=input_hash, witness=witness)

        assert not ReactivationProtocol(context).verify_request(forged)
        with pytest.raises(WitnessError, match="deactivation leaf"):
            asyncio.run(DigestProver(b"k" * 32).prove(ProofType.ADD_NEW_KEY, witness, input_hash))

    def test_status_must_rerandomize_the_record(self, context, deactivated):
        _idx, old = deactivated
        genuine = request_for(context, old, random_scalar=5)
        witness = dict(genuine.witness, randomVal=6)
        assert not ReactivationProtocol(context).verify_request(
            dataclasses.replace(genuine, witness=witness))

    def test_record_of_rejected_deactivation_is_refused(self, context, enroll):
        [(_idx, voter)] = enroll(1)
        store = context.store
        status = encrypt_parity(0, context.coord_pub_key, 99)
        store.record_deactivation(status, voter.shared_key_hash(context.coord_pub_key))

        with pytest.raises(ReactivationError):
            ReactivationProtocol(context).apply(request_for(context, voter))
        assert store.nullifiers == set()

    def test_request_goes_stale_after_new_deactivation(self, context, processor, deactivated):
        _idx, old = deactivated
        request = request_for(context, old)

        # A second voter leaves too, moving the deactivation root
        voter = Keypair()
        new_idx = context.sign_up(voter.pub_key)
        ciphertext, enc_pub = build_deactivate_message(voter, context.coord_pub_key, new_idx)
        context.push_deactivate_message(ciphertext, enc_pub)
        processor.process_deactivate_batch()

        assert not ReactivationProtocol(context).verify_request(request)
        assert ReactivationProtocol(context).verify_request(request_for(context, old))


class TestApply:

    def test_nullifier_single_use(self, context, deactivated):
        _idx, old = deactivated
        protocol = ReactivationProtocol(context)
        new_idx = protocol.apply(request_for(context, old))

        assert new_idx == context.store.num_signups - 1
        assert context.store.has_nullifier(old.nullifier())
        with pytest.raises(NullifierAlreadyUsed):
            protocol.apply(request_for(context, old))
        assert context.store.num_signups == new_idx + 1

    def test_fresh_active_record_can_vote(self, context, processor, deactivated):
        _idx, old = deactivated
        new_keypair = Keypair()
        new_idx = ReactivationProtocol(context, ReactivationPolicy.FRESH_ACTIVE).apply(
            request_for(context, old, new_keypair), balance=40)

        record = context.store.record(new_idx)
        assert record.pub_key == new_keypair.pub_key
        assert record.balance == 40
        assert decrypt_parity(record.status, context.keypair.priv_key) == 0

        ciphertext, enc_pub = build_message(new_keypair, context.coord_pub_key, new_idx, 2, 7, 1)
        context.push_message(ciphertext, enc_pub)
        context.end_vote_period()
        transcript = processor.process_vote_batch()
        assert transcript.outcomes[0].accepted
        assert context.store.record(new_idx).balance == 33

    def test_inherited_status_stays_deactivated(self, context, processor, deactivated):
        _idx, old = deactivated
        new_keypair = Keypair()
        request = request_for(context, old, new_keypair)
        new_idx = ReactivationProtocol(context, ReactivationPolicy.INHERIT).apply(request)

        record = context.store.record(new_idx)
        assert record.status == request.status
        assert not context.oracle.is_active(record)

        ciphertext, enc_pub = build_message(new_keypair, context.coord_pub_key, new_idx, 0, 1, 1)
        context.push_message(ciphertext, enc_pub)
        context.end_vote_period()
        transcript = processor.process_vote_batch()
        assert transcript.outcomes[0].reason is RejectionReason.DEACTIVATED

    def test_full_state_tree_leaves_nullifier_unused(self, context, enroll, deactivated):
        _idx, old = deactivated
        enroll(context.store.capacity - context.store.num_signups)
        request = request_for(context, old)

        with pytest.raises(ReactivationError, match="full"):
            ReactivationProtocol(context).apply(request)
        assert not context.store.has_nullifier(request.nullifier)
