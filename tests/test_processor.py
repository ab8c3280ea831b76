"""
Command validation and the three batch kinds
"""

import pytest

from coordinator import (
    BatchKind,
    CommandProcessor,
    CoordinatorContext,
    CoordinatorError,
    CostModel,
    Period,
    PeriodError,
    RejectionReason,
    RoundParameters,
    batch_gen_messages,
    build_deactivate_message,
    build_message,
    pack_input_hash,
)
from primitives import ZERO_POINT, Keypair, decrypt_parity, encrypt_parity, hash5


def publish(context, keypair, state_idx, vo_idx, weight, nonce, **kwargs):
    ciphertext, enc_pub = build_message(keypair, context.coord_pub_key, state_idx,
                                        vo_idx, weight, nonce, **kwargs)
    context.push_message(ciphertext, enc_pub)


def deactivate(context, processor, keypair, state_idx):
    ciphertext, enc_pub = build_deactivate_message(keypair, context.coord_pub_key, state_idx)
    context.push_deactivate_message(ciphertext, enc_pub)
    return processor.process_deactivate_batch()


def reasons(transcript):
    return {o.slot: o.reason for o in transcript.outcomes if o.reason is not None
            and o.reason is not RejectionReason.EMPTY_COMMAND}


# ============================================================================
# END-TO-END SCENARIOS
# ============================================================================


class TestScenarios:

    def test_accepted_vote_debits_balance(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        publish(context, voter, idx, 0, 10, 1)
        context.end_vote_period()
        transcript = processor.process_vote_batch()

        record = context.store.record(idx)
        assert transcript.accepted == 1
        assert record.balance == 90
        assert record.vote_tree.leaf(0) == 10
        assert record.nonce == 1
        assert context.oracle.is_active(record)
        assert context.period is Period.TALLYING

    def test_replayed_nonce_is_rejected(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        # The tail of the queue is processed first, so the replay is published first
        publish(context, voter, idx, 0, 30, 1)
        publish(context, voter, idx, 0, 10, 1)
        context.end_vote_period()
        transcript = processor.process_vote_batch()

        assert transcript.outcomes[1].accepted
        assert reasons(transcript) == {0: RejectionReason.NONCE_ERROR}
        record = context.store.record(idx)
        assert record.balance == 90
        assert record.vote_tree.leaf(0) == 10

    def test_deactivated_user_cannot_vote(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        transcript = deactivate(context, processor, voter, idx)
        assert transcript.kind is BatchKind.DEACTIVATE
        assert transcript.accepted == 1

        record = context.store.record(idx)
        assert not record.status.is_sentinel()
        assert decrypt_parity(record.status, context.keypair.priv_key) == 1

        publish(context, voter, idx, 0, 10, 1)
        context.end_vote_period()
        transcript = processor.process_vote_batch()
        assert reasons(transcript) == {0: RejectionReason.DEACTIVATED}
        assert context.store.record(idx).balance == 100


# ============================================================================
# VOTE VALIDATION
# ============================================================================


class TestVoteValidation:

    def test_nonce_must_be_next(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        publish(context, voter, idx, 0, 1, 2)
        publish(context, voter, idx, 0, 1, 0)
        context.end_vote_period()
        transcript = processor.process_vote_batch()
        assert reasons(transcript) == {0: RejectionReason.NONCE_ERROR,
                                       1: RejectionReason.NONCE_ERROR}
        assert context.store.record(idx).nonce == 0

    def test_signature_from_another_key(self, context, processor, enroll):
        [(idx, _voter)] = enroll(1)
        publish(context, Keypair(), idx, 0, 1, 1)
        context.end_vote_period()
        assert reasons(processor.process_vote_batch()) == {0: RejectionReason.SIGNATURE_ERROR}

    def test_option_and_state_index_bounds(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        publish(context, voter, idx, 5, 1, 1)
        publish(context, voter, 3, 0, 1, 1)
        context.end_vote_period()
        assert reasons(processor.process_vote_batch()) == {
            0: RejectionReason.VOTE_OPTION_OVERFLOW,
            1: RejectionReason.STATE_INDEX_OVERFLOW,
        }

    def test_linear_balance_limit(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        publish(context, voter, idx, 0, 101, 1)
        context.end_vote_period()
        assert reasons(processor.process_vote_batch()) == {0: RejectionReason.INSUFFICIENT_BALANCE}
        assert context.store.record(idx).balance == 100

    def test_quadratic_cost_refunds_previous_weight(self):
        context = CoordinatorContext(RoundParameters(cost_model=CostModel.QUADRATIC))
        processor = CommandProcessor(context)
        voter = Keypair()
        idx = context.sign_up(voter.pub_key)

        for ciphertext, enc_pub in batch_gen_messages(
                voter, context.coord_pub_key, idx, [(0, 10), (1, 1), (0, 11), (0, 3)]):
            context.push_message(ciphertext, enc_pub)
        context.end_vote_period()
        transcript = processor.process_vote_batch()

        # 10^2 spends everything, so nonce 2 fails and breaks the nonce chain
        assert reasons(transcript) == {2: RejectionReason.INSUFFICIENT_BALANCE,
                                       1: RejectionReason.NONCE_ERROR,
                                       0: RejectionReason.NONCE_ERROR}
        record = context.store.record(idx)
        assert record.balance == 0
        assert record.vote_tree.leaf(0) == 10

    def test_garbage_and_padding_slots_are_empty(self, context, processor, enroll):
        enroll(1)
        context.push_message([1] * 7, Keypair().pub_key)
        context.end_vote_period()
        transcript = processor.process_vote_batch()
        assert all(o.reason is RejectionReason.EMPTY_COMMAND for o in transcript.outcomes)
        assert transcript.rejections() == []

    def test_rejections_leave_state_untouched(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        root = context.store.state_root
        publish(context, voter, idx, 0, 1, 5)
        publish(context, Keypair(), idx, 0, 1, 1)
        context.end_vote_period()
        transcript = processor.process_vote_batch()
        assert transcript.accepted == 0
        assert context.store.state_root == root

    def test_inactive_shadow_flag(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        # Encrypted status says active while the shadow flag says otherwise
        context.store.mark_deactivated(
            idx, encrypt_parity(0, context.coord_pub_key, 7), 1)
        publish(context, voter, idx, 0, 1, 1)
        context.end_vote_period()
        assert reasons(processor.process_vote_batch()) == {0: RejectionReason.INACTIVE}


class TestVoteBatches:

    def test_key_rotation(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        rotated = Keypair()
        publish(context, rotated, idx, 1, 2, 2)
        publish(context, voter, idx, 0, 1, 1, new_pub_key=rotated.pub_key)
        context.end_vote_period()
        transcript = processor.process_vote_batch()

        assert transcript.accepted == 2
        record = context.store.record(idx)
        assert record.pub_key == rotated.pub_key
        assert record.vote_tree.leaves()[:2] == [1, 2]

    def test_zero_new_key_keeps_current_key(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        publish(context, voter, idx, 0, 1, 1, new_pub_key=ZERO_POINT)
        context.end_vote_period()
        processor.process_vote_batch()
        assert context.store.record(idx).pub_key == voter.pub_key

    def test_windows_unwind_from_tail(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        plan = [(0, 1), (1, 2), (2, 3), (3, 4), (4, 5), (0, 6), (1, 7)]
        for ciphertext, enc_pub in batch_gen_messages(voter, context.coord_pub_key, idx, plan):
            context.push_message(ciphertext, enc_pub)
        context.end_vote_period()

        first = processor.process_vote_batch()
        assert context.msg_end_idx == 5
        assert context.period is Period.PROCESSING
        second = processor.process_vote_batch()
        assert context.period is Period.TALLYING

        assert first.accepted == 2 and second.accepted == 5
        assert second.public_inputs['current_state_commitment'] == \
            first.public_inputs['new_state_commitment']
        record = context.store.record(idx)
        assert record.vote_tree.leaves() == [6, 7, 3, 4, 5]
        assert record.balance == 75
        assert record.nonce == 7

    def test_transcript_binds_public_inputs(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        publish(context, voter, idx, 0, 1, 1)
        context.end_vote_period()
        transcript = processor.process_vote_batch(new_state_salt=99)

        assert transcript.batch_number == 0
        assert transcript.input_hash == pack_input_hash(BatchKind.VOTE, transcript.public_inputs)
        assert transcript.witness['inputHash'] == transcript.input_hash
        assert transcript.witness['newStateSalt'] == 99
        assert context.batch_number == 1

    def test_empty_round_skips_processing(self, context):
        context.end_vote_period()
        assert context.period is Period.TALLYING

    def test_messages_only_during_filling(self, context, enroll):
        [(idx, voter)] = enroll(1)
        context.end_vote_period()
        with pytest.raises(PeriodError):
            publish(context, voter, idx, 0, 1, 1)


# ============================================================================
# DEACTIVATION BATCHES
# ============================================================================


class TestDeactivation:

    def test_commitment_tracks_both_roots(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        before = context.store.deactivate_commitment
        transcript = deactivate(context, processor, voter, idx)

        assert context.store.active_flag(idx) == 1
        assert len(context.store.deactivations) == 1
        assert transcript.public_inputs['current_deactivate_commitment'] == before
        assert transcript.new_commitment == context.store.deactivate_commitment != before
        assert context.store.active_proof(idx)[0] != 0

    def test_leaf_fields_match_tree_leaf(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        deactivate(context, processor, voter, idx)

        fields = context.store.deactivation_leaf_fields(0)
        assert len(fields) == 5
        assert fields[:4] == list(context.store.deactivations[0].status.fields())
        assert hash5(fields) == context.store.deactivate_tree.leaf(0)

    def test_vote_command_is_not_a_deactivation(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        ciphertext, enc_pub = build_message(voter, context.coord_pub_key, idx, 0, 1, 1)
        context.push_deactivate_message(ciphertext, enc_pub)
        root = context.store.deactivate_root
        transcript = processor.process_deactivate_batch()
        assert reasons(transcript) == {0: RejectionReason.NOT_DEACTIVATION}
        assert context.store.active_flag(idx) == 0

        # The rejected message still leaves a record, one nobody can reactivate from
        [record] = context.store.deactivations
        assert context.store.deactivate_root != root
        assert decrypt_parity(record.status, context.keypair.priv_key) == 0
        assert record.shared_key_hash != voter.shared_key_hash(context.coord_pub_key)
        assert transcript.witness['c1'][0] == list(record.status.c1)

    def test_witness_carries_deactivation_paths(self, context, processor, enroll):
        voters = enroll(2)
        for idx, voter in voters:
            ciphertext, enc_pub = build_deactivate_message(voter, context.coord_pub_key, idx)
            context.push_deactivate_message(ciphertext, enc_pub)
        before = context.store.deactivate_tree.copy()
        transcript = processor.process_deactivate_batch()

        paths = transcript.witness['deactivateLeavesPathElements']
        assert len(paths) == context.params.batch_size
        assert paths[0] == before.path_element_of(0)
        assert len(context.store.deactivations) == 2

    def test_duplicate_deactivation_for_same_key(self, context, processor):
        voter = Keypair()
        first = context.sign_up(voter.pub_key)
        second = context.sign_up(voter.pub_key)
        for idx in (first, second):
            ciphertext, enc_pub = build_deactivate_message(voter, context.coord_pub_key, idx)
            context.push_deactivate_message(ciphertext, enc_pub)

        transcript = processor.process_deactivate_batch()
        assert transcript.outcomes[0].accepted
        assert reasons(transcript) == {1: RejectionReason.DUPLICATE_DEACTIVATION}
        assert context.store.active_flag(second) == 0
        assert len(context.store.deactivations) == 2

    def test_second_deactivation_of_same_leaf(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        deactivate(context, processor, voter, idx)
        transcript = deactivate(context, processor, voter, idx)
        assert reasons(transcript) == {0: RejectionReason.DEACTIVATED}

    def test_forged_signature(self, context, processor, enroll):
        [(idx, _voter)] = enroll(1)
        transcript = deactivate(context, processor, Keypair(), idx)
        assert reasons(transcript) == {0: RejectionReason.SIGNATURE_ERROR}

    def test_nothing_pending(self, processor):
        with pytest.raises(CoordinatorError):
            processor.process_deactivate_batch()

    def test_only_during_filling(self, context, processor, enroll):
        [(idx, voter)] = enroll(1)
        ciphertext, enc_pub = build_deactivate_message(voter, context.coord_pub_key, idx)
        context.push_deactivate_message(ciphertext, enc_pub)
        context.end_vote_period()
        with pytest.raises(PeriodError):
            processor.process_deactivate_batch()
