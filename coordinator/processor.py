"""
Batch processing of signed commands.

Three batch kinds share one transcript shape:
- deactivate: arrival order during the filling period, flips encrypted status
- vote: fixed windows unwound from the tail of the message chain
- tally: fixed runs of state leaves folded into the commitment chain

Every batch records the witness the constraint system expects and the packed
public-input hash the ledger recomputes.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from merkle import FixedArityTree
from primitives import (
    compute_input_hash, derive_scalar, encrypt_parity, gen_random_salt, hash2,
    shared_key_hash,
)

from .context import CoordinatorContext, CostModel, Period
from .errors import CommandRejection, CommitmentMismatch, CoordinatorError, RejectionReason
from .messages import Command
from .tally import TallyCheckpoint

logger = logging.getLogger(__name__)

# Domain constants for deterministic status-encryption scalars
DEACTIVATE_DOMAIN = 20040
STATE_STATUS_DOMAIN = 20041
# Seeds the unmatchable shared-key hash of a rejected deactivation
REJECTED_DEACTIVATE_DOMAIN = 20043


class BatchKind(Enum):
    DEACTIVATE = "deactivate"
    VOTE = "vote"
    TALLY = "tally"


# Order in which public inputs are packed into the input hash
PUBLIC_INPUT_ORDER = {
    BatchKind.DEACTIVATE: (
        'new_deactivate_root', 'coord_pub_key_hash', 'batch_start_hash', 'batch_end_hash',
        'current_deactivate_commitment', 'new_deactivate_commitment', 'state_root',
    ),
    BatchKind.VOTE: (
        'packed_vals', 'coord_pub_key_hash', 'batch_start_hash', 'batch_end_hash',
        'current_state_commitment', 'new_state_commitment', 'deactivate_commitment',
    ),
    BatchKind.TALLY: (
        'packed_vals', 'state_commitment', 'current_tally_commitment', 'new_tally_commitment',
    ),
}

# Public input carrying the prior commitment, and the one carrying the next
CHAIN_FIELDS = {
    BatchKind.DEACTIVATE: ('current_deactivate_commitment', 'new_deactivate_commitment'),
    BatchKind.VOTE: ('current_state_commitment', 'new_state_commitment'),
    BatchKind.TALLY: ('current_tally_commitment', 'new_tally_commitment'),
}


def pack_input_hash(kind: BatchKind, public_inputs: Dict[str, int]) -> int:
    return compute_input_hash([public_inputs[name] for name in PUBLIC_INPUT_ORDER[kind]])


@dataclass
class CommandOutcome:
    slot: int
    accepted: bool
    reason: Optional[RejectionReason] = None
    state_idx: Optional[int] = None


@dataclass
class BatchTranscript:
    """Everything the prover and the ledger need for one batch"""
    kind: BatchKind
    batch_number: int
    public_inputs: Dict[str, int]
    input_hash: int
    witness: Dict[str, Any]
    outcomes: List[CommandOutcome] = field(default_factory=list)
    checkpoint: Optional[TallyCheckpoint] = None

    @property
    def accepted(self) -> int:
        return sum(1 for o in self.outcomes if o.accepted)

    @property
    def rejected(self) -> List[CommandOutcome]:
        return [o for o in self.outcomes if not o.accepted]

    def rejections(self) -> List[CommandRejection]:
        """No-op slots that carried a real command"""
        return [CommandRejection(o.reason, o.slot) for o in self.rejected
                if o.reason is not RejectionReason.EMPTY_COMMAND]

    @property
    def new_commitment(self) -> int:
        return self.public_inputs[CHAIN_FIELDS[self.kind][1]]


class CommandProcessor:
    """Validates and applies commands against one coordinator context"""

    def __init__(self, context: CoordinatorContext):
        self.context = context

    @property
    def store(self):
        return self.context.store

    @property
    def params(self):
        return self.context.params

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_record(self, command: Optional[Command]) -> Optional[RejectionReason]:
        if command is None:
            return RejectionReason.EMPTY_COMMAND
        if command.state_idx >= self.store.num_signups:
            return RejectionReason.STATE_INDEX_OVERFLOW
        return None

    def _check_status(self, state_idx: int) -> Optional[RejectionReason]:
        if not self.context.oracle.is_active(self.store.record(state_idx)):
            return RejectionReason.DEACTIVATED
        if self.store.active_flag(state_idx) != 0:
            return RejectionReason.INACTIVE
        return None

    def check_vote_command(self, command: Optional[Command]) -> Optional[RejectionReason]:
        reason = self._check_record(command)
        if reason:
            return reason
        if command.vo_idx >= self.params.max_vote_options:
            return RejectionReason.VOTE_OPTION_OVERFLOW

        reason = self._check_status(command.state_idx)
        if reason:
            return reason

        record = self.store.record(command.state_idx)
        if command.nonce != record.nonce + 1:
            return RejectionReason.NONCE_ERROR
        if not command.verify_signature(record.pub_key):
            return RejectionReason.SIGNATURE_ERROR

        cost = self.params.cost_model
        current_weight = record.vote_tree.leaf(command.vo_idx)
        if cost.cost(command.new_votes) > record.balance + cost.cost(current_weight):
            return RejectionReason.INSUFFICIENT_BALANCE
        return None

    def check_deactivate_command(self, command: Optional[Command]) -> Optional[RejectionReason]:
        reason = self._check_record(command)
        if reason:
            return reason

        reason = self._check_status(command.state_idx)
        if reason:
            return reason

        if not command.is_deactivation():
            return RejectionReason.NOT_DEACTIVATION

        record = self.store.record(command.state_idx)
        if not command.verify_signature(record.pub_key):
            return RejectionReason.SIGNATURE_ERROR

        shared = shared_key_hash(self.context.keypair.priv_key, record.pub_key)
        if self.store.find_deactivation(shared) is not None:
            return RejectionReason.DUPLICATE_DEACTIVATION
        return None

    # ------------------------------------------------------------------
    # Witness helpers
    # ------------------------------------------------------------------

    def _padding_index(self) -> int:
        return self.store.capacity - 1

    def _active_witness(self, state_idx: int):
        return self.store.active_proof(state_idx)

    def _finish(self, kind: BatchKind, public_inputs: Dict[str, int], witness: Dict[str, Any],
                outcomes: List[CommandOutcome], checkpoint: TallyCheckpoint = None) -> BatchTranscript:
        input_hash = pack_input_hash(kind, public_inputs)
        witness['inputHash'] = input_hash
        transcript = BatchTranscript(
            kind=kind,
            batch_number=self.context.batch_number,
            public_inputs=public_inputs,
            input_hash=input_hash,
            witness=witness,
            outcomes=outcomes,
            checkpoint=checkpoint,
        )
        self.context.batch_number += 1
        logger.info(f"{kind.value} batch {transcript.batch_number}: "
                    f"{transcript.accepted}/{len(outcomes)} accepted, input hash {input_hash}")
        return transcript

    # ------------------------------------------------------------------
    # Deactivation batches
    # ------------------------------------------------------------------

    def process_deactivate_batch(self, size: Optional[int] = None) -> BatchTranscript:
        ctx = self.context
        ctx.require_period(Period.FILLING)

        batch_size = self.params.batch_size
        start = ctx.processed_deactivate_count
        count = min(size or batch_size, batch_size, len(ctx.deactivate_queue) - start)
        if count <= 0:
            raise CoordinatorError("No pending deactivate messages")
        end = start + count

        logger.info(f"Processing deactivate messages [{start}, {end})")
        messages, commands = ctx.deactivate_queue.window(start, end, batch_size)

        sub_state_tree = self.store.state_tree.sub_tree(self.store.num_signups)
        current_state_root = sub_state_tree.root
        current_active_root = self.store.active_root
        current_deactivate_root = self.store.deactivate_root
        current_commitment = self.store.deactivate_commitment
        deactivate_index_0 = len(self.store.deactivations)

        coord_priv = ctx.keypair.priv_key
        coord_pub = ctx.coord_pub_key

        outcomes = []
        state_leaves, state_paths = [], []
        active_leaves, active_paths = [], []
        new_active_state, c1s, c2s = [], [], []
        deactivate_paths = []

        for i in range(batch_size):
            command = commands[i]
            reason = self.check_deactivate_command(command)
            state_idx = command.state_idx if reason is None else self._padding_index()
            marker = start + i + 1
            new_active_state.append(marker)

            state_leaves.append(self.store.state_leaf_fields(state_idx))
            state_paths.append(sub_state_tree.path_element_of(state_idx))
            active_leaf_value, active_path = self._active_witness(state_idx)
            active_leaves.append(active_leaf_value)
            active_paths.append(active_path)
            deactivate_paths.append(self.store.deactivation_path(deactivate_index_0 + i))

            # Every real message leaves a record; only accepted ones decrypt to 1
            record_status = encrypt_parity(
                1 if reason is None else 0, coord_pub,
                derive_scalar(coord_priv, DEACTIVATE_DOMAIN, marker))
            c1s.append(list(record_status.c1))
            c2s.append(list(record_status.c2))

            if reason is None:
                status = encrypt_parity(
                    1, coord_pub, derive_scalar(coord_priv, STATE_STATUS_DOMAIN, marker))
                shared = shared_key_hash(coord_priv, self.store.record(state_idx).pub_key)

                self.store.mark_deactivated(state_idx, status, marker)
                self.store.record_deactivation(record_status, shared)
                outcomes.append(CommandOutcome(i, True, state_idx=state_idx))
                logger.info(f"- Deactivate message <{start + i}> ✓ (state leaf {state_idx})")
            else:
                outcomes.append(CommandOutcome(i, False, reason))
                if i < count:
                    shared = derive_scalar(coord_priv, REJECTED_DEACTIVATE_DOMAIN, marker)
                    self.store.record_deactivation(record_status, shared)
                    logger.info(f"- Deactivate message <{start + i}> {reason.value}")

        ctx.processed_deactivate_count = end

        public_inputs = {
            'new_deactivate_root': self.store.deactivate_root,
            'coord_pub_key_hash': ctx.coord_pub_key_hash,
            'batch_start_hash': ctx.deactivate_queue.messages[start].prev_hash,
            'batch_end_hash': ctx.deactivate_queue.messages[end - 1].hash,
            'current_deactivate_commitment': current_commitment,
            'new_deactivate_commitment': self.store.deactivate_commitment,
            'state_root': current_state_root,
        }
        witness = {
            'currentActiveStateRoot': current_active_root,
            'currentDeactivateRoot': current_deactivate_root,
            'batchStartHash': public_inputs['batch_start_hash'],
            'batchEndHash': public_inputs['batch_end_hash'],
            'msgs': [m.ciphertext for m in messages],
            'coordPrivKey': ctx.keypair.formatted_priv_key,
            'coordPubKey': list(coord_pub),
            'encPubKeys': [list(m.enc_pub_key) for m in messages],
            'c1': c1s,
            'c2': c2s,
            'currentActiveState': active_leaves,
            'newActiveState': new_active_state,
            'deactivateIndex0': deactivate_index_0,
            'currentStateRoot': current_state_root,
            'currentStateLeaves': state_leaves,
            'currentStateLeavesPathElements': state_paths,
            'activeStateLeavesPathElements': active_paths,
            'deactivateLeavesPathElements': deactivate_paths,
            'currentDeactivateCommitment': current_commitment,
            'newDeactivateRoot': public_inputs['new_deactivate_root'],
            'newDeactivateCommitment': public_inputs['new_deactivate_commitment'],
        }
        return self._finish(BatchKind.DEACTIVATE, public_inputs, witness, outcomes)

    # ------------------------------------------------------------------
    # Vote batches
    # ------------------------------------------------------------------

    def process_vote_batch(self, new_state_salt: Optional[int] = None) -> BatchTranscript:
        ctx = self.context
        ctx.require_period(Period.PROCESSING)

        batch_size = self.params.batch_size
        end = ctx.msg_end_idx
        start = (end - 1) // batch_size * batch_size

        logger.info(f"Processing vote messages [{start}, {end})")
        messages, commands = ctx.vote_queue.window(start, end, batch_size)

        current_state_root = self.store.state_root
        cost = self.params.cost_model

        outcomes: List[Optional[CommandOutcome]] = [None] * batch_size
        state_leaves = [None] * batch_size
        state_paths = [None] * batch_size
        vote_weights = [None] * batch_size
        vote_paths = [None] * batch_size
        active_leaves = [None] * batch_size
        active_paths = [None] * batch_size

        # Last-queued first: the chain is unwound from its head
        for i in range(batch_size - 1, -1, -1):
            command = commands[i]
            reason = self.check_vote_command(command)

            if reason is None:
                state_idx, vo_idx = command.state_idx, command.vo_idx
            else:
                state_idx, vo_idx = self._padding_index(), 0

            record = self.store.record(state_idx) or self.store.empty_record()
            current_weight = record.vote_tree.leaf(vo_idx)

            state_leaves[i] = record.leaf_fields()
            state_paths[i] = self.store.state_tree.path_element_of(state_idx)
            vote_weights[i] = current_weight
            vote_paths[i] = record.vote_tree.path_element_of(vo_idx)
            active_leaves[i], active_paths[i] = self._active_witness(state_idx)

            if reason is None:
                new_balance = record.balance + cost.cost(current_weight) - cost.cost(command.new_votes)
                self.store.apply_vote(state_idx, vo_idx, command.new_votes, command.nonce,
                                      new_balance, command.new_pub_key)
                outcomes[i] = CommandOutcome(i, True, state_idx=state_idx)
                logger.info(f"- Message <{start + i}> ✓ (state leaf {state_idx})")
            else:
                outcomes[i] = CommandOutcome(i, False, reason)
                if command is not None:
                    logger.info(f"- Message <{start + i}> {reason.value}")

        salt = gen_random_salt() if new_state_salt is None else new_state_salt
        new_state_commitment = hash2([self.store.state_root, salt])

        packed_vals = (self.params.max_vote_options
                       + (self.store.num_signups << 32)
                       + ((1 << 64) if cost is CostModel.QUADRATIC else 0))

        public_inputs = {
            'packed_vals': packed_vals,
            'coord_pub_key_hash': ctx.coord_pub_key_hash,
            'batch_start_hash': ctx.vote_queue.messages[start].prev_hash,
            'batch_end_hash': ctx.vote_queue.messages[end - 1].hash,
            'current_state_commitment': ctx.state_commitment,
            'new_state_commitment': new_state_commitment,
            'deactivate_commitment': self.store.deactivate_commitment,
        }
        witness = {
            'packedVals': packed_vals,
            'batchStartHash': public_inputs['batch_start_hash'],
            'batchEndHash': public_inputs['batch_end_hash'],
            'msgs': [m.ciphertext for m in messages],
            'coordPrivKey': ctx.keypair.formatted_priv_key,
            'coordPubKey': list(ctx.coord_pub_key),
            'encPubKeys': [list(m.enc_pub_key) for m in messages],
            'currentStateRoot': current_state_root,
            'currentStateLeaves': state_leaves,
            'currentStateLeavesPathElements': state_paths,
            'currentStateCommitment': ctx.state_commitment,
            'currentStateSalt': ctx.state_salt,
            'newStateCommitment': new_state_commitment,
            'newStateSalt': salt,
            'currentVoteWeights': vote_weights,
            'currentVoteWeightsPathElements': vote_paths,
            'activeStateRoot': self.store.active_root,
            'deactivateRoot': self.store.deactivate_root,
            'deactivateCommitment': public_inputs['deactivate_commitment'],
            'activeStateLeaves': active_leaves,
            'activeStateLeavesPathElements': active_paths,
        }

        ctx.msg_end_idx = start
        ctx.state_commitment = new_state_commitment
        ctx.state_salt = salt

        transcript = self._finish(BatchKind.VOTE, public_inputs, witness, outcomes)
        if start == 0:
            ctx.end_processing_period()
        return transcript

    # ------------------------------------------------------------------
    # Tally batches
    # ------------------------------------------------------------------

    def process_tally_batch(self, new_tally_salt: Optional[int] = None) -> BatchTranscript:
        ctx = self.context
        ctx.require_period(Period.TALLYING)

        if hash2([self.store.state_root, ctx.state_salt]) != ctx.state_commitment:
            raise CommitmentMismatch("State commitment cannot be reproduced from the current root")

        int_depth = self.params.int_state_tree_depth
        batch_size = self.params.tally_batch_size
        batch_num = ctx.tally_batch_num
        start = batch_num * batch_size

        logger.info(f"Processing tally [{start}, {start + batch_size})")

        subtree_root = self.store.state_tree.subtree_root(batch_num, int_depth)
        siblings, positions = self.store.state_tree.subtree_inclusion_proof(batch_num, int_depth)
        if not FixedArityTree.verify_inclusion(subtree_root, siblings, positions, self.store.state_root):
            raise CoordinatorError(f"State subtree {batch_num} is not included in the state root")

        batch_votes = [0] * ctx.tally.size
        state_leaves, votes = [], []
        for idx in range(start, start + batch_size):
            record = self.store.record(idx) or self.store.empty_record()
            state_leaves.append(record.leaf_fields())
            votes.append(record.vote_tree.leaves())
            if not record.voted:
                continue
            for option, weight in enumerate(record.vote_tree.leaves()):
                batch_votes[option] += weight

        current = ctx.tally.last
        checkpoint = ctx.tally.advance(current, batch_votes, new_tally_salt)

        packed_vals = batch_num + (self.store.num_signups << 32)
        public_inputs = {
            'packed_vals': packed_vals,
            'state_commitment': ctx.state_commitment,
            'current_tally_commitment': current.commitment,
            'new_tally_commitment': checkpoint.commitment,
        }
        witness = {
            'stateRoot': self.store.state_root,
            'stateSalt': ctx.state_salt,
            'packedVals': packed_vals,
            'stateCommitment': ctx.state_commitment,
            'currentTallyCommitment': current.commitment,
            'newTallyCommitment': checkpoint.commitment,
            'stateLeaf': state_leaves,
            'statePathElements': siblings,
            'statePathIndices': positions,
            'votes': votes,
            'currentResults': list(current.totals),
            'currentResultsRootSalt': current.salt,
            'newResultsRootSalt': checkpoint.salt,
        }

        ctx.tally_batch_num += 1
        transcript = self._finish(BatchKind.TALLY, public_inputs, witness, [], checkpoint)
        if start + batch_size >= self.store.num_signups:
            ctx.period = Period.ENDED
            logger.info("Tallying finished")
        return transcript

    def tally_results(self) -> List[int]:
        return list(self.context.tally.last.totals[:self.params.max_vote_options])
