"""
Anonymous re-entry of a deactivated identity under a new key.

Client side: locate the deactivation record through the ECDH shared-key
hash, rerandomize its ciphertext, derive the one-time nullifier and build the
inclusion witness.  Coordinator side: reject used nullifiers, bind the
request to one accepted deactivation record and register the new key.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from merkle import FixedArityTree
from primitives import (
    Keypair, Point, StatusCiphertext, compute_input_hash, derive_scalar,
    encrypt_parity, gen_random_salt, poseidon, rerandomize,
)
from zk import add_new_key_violation

from .context import CoordinatorContext, Period
from .errors import NullifierAlreadyUsed, ReactivationError
from .state import TREE_ARITY, DeactivationRecord

logger = logging.getLogger(__name__)

REACTIVATE_DOMAIN = 20042


class ReactivationPolicy(Enum):
    """Status given to the record created by a reactivation"""
    FRESH_ACTIVE = "fresh_active"
    INHERIT = "inherit"


@dataclass
class ReactivationRequest:
    new_pub_key: Point
    status: StatusCiphertext
    nullifier: int
    deactivate_root: int
    input_hash: int
    witness: Dict[str, Any] = field(default_factory=dict)
    proof: Optional[Any] = None

    def public_inputs(self, coord_pub_key: Point) -> List[int]:
        return reactivation_public_inputs(self.deactivate_root, coord_pub_key,
                                          self.nullifier, self.status)


def reactivation_public_inputs(deactivate_root: int, coord_pub_key: Point, nullifier: int,
                               status: StatusCiphertext) -> List[int]:
    return [deactivate_root, poseidon(list(coord_pub_key)), nullifier, *status.fields()]


def build_reactivation_request(old_keypair: Keypair, new_pub_key: Point, coord_pub_key: Point,
                               deactivations: Sequence[DeactivationRecord], depth: int,
                               random_scalar: Optional[int] = None) -> ReactivationRequest:
    shared = old_keypair.shared_key_hash(coord_pub_key)
    index = next((i for i, d in enumerate(deactivations) if d.shared_key_hash == shared), None)
    if index is None:
        raise ReactivationError("No deactivation record matches this key")

    record = deactivations[index]
    z = gen_random_salt() if random_scalar is None else random_scalar
    status = rerandomize(record.status, coord_pub_key, z)
    nullifier = old_keypair.nullifier()

    tree = FixedArityTree(TREE_ARITY, depth, 0)
    tree.init_leaves([d.leaf_hash() for d in deactivations])

    input_hash = compute_input_hash(
        reactivation_public_inputs(tree.root, coord_pub_key, nullifier, status))

    witness = {
        'inputHash': input_hash,
        'coordPubKey': list(coord_pub_key),
        'deactivateRoot': tree.root,
        'deactivateIndex': index,
        'deactivateLeaf': record.leaf_hash(),
        'c1': list(record.status.c1),
        'c2': list(record.status.c2),
        'randomVal': z,
        'd1': list(status.c1),
        'd2': list(status.c2),
        'deactivateLeafPathElements': tree.path_element_of(index),
        'deactivateLeafPathIndices': tree.path_index_of(index),
        'nullifier': nullifier,
        'oldPrivateKey': old_keypair.formatted_priv_key,
        'sharedKeyHash': shared,
    }
    return ReactivationRequest(
        new_pub_key=tuple(new_pub_key),
        status=status,
        nullifier=nullifier,
        deactivate_root=tree.root,
        input_hash=input_hash,
        witness=witness,
    )


class ReactivationProtocol:
    """Coordinator-side acceptance of reactivation requests"""

    def __init__(self, context: CoordinatorContext,
                 policy: ReactivationPolicy = ReactivationPolicy.FRESH_ACTIVE):
        self.context = context
        self.policy = policy

    def verify_request(self, request: ReactivationRequest) -> bool:
        store = self.context.store
        coord_pub = self.context.coord_pub_key

        if request.deactivate_root != store.deactivate_root:
            logger.warning("Reactivation against a stale deactivation root")
            return False
        expected = compute_input_hash(request.public_inputs(coord_pub))
        if expected != request.input_hash:
            logger.warning("Reactivation input hash mismatch")
            return False

        w = request.witness
        try:
            claims = (
                w['inputHash'] == request.input_hash,
                w['nullifier'] == request.nullifier,
                w['deactivateRoot'] == request.deactivate_root,
                tuple(w['coordPubKey']) == tuple(coord_pub),
                tuple(w['d1']) == tuple(request.status.c1),
                tuple(w['d2']) == tuple(request.status.c2),
            )
        except KeyError as e:
            logger.warning(f"Reactivation witness incomplete: missing {e}")
            return False
        if not all(claims):
            logger.warning("Reactivation witness does not match the request")
            return False

        violation = add_new_key_violation(w)
        if violation:
            logger.warning(f"Reactivation witness rejected: {violation}")
            return False

        # Rejected deactivations leave records encrypting 0
        recorded = StatusCiphertext(tuple(w['c1']), tuple(w['c2']))
        if self.context.oracle.status_bit(recorded) != 1:
            logger.warning("Deactivation record does not mark an accepted deactivation")
            return False
        return True

    def check(self, request: ReactivationRequest):
        """Raise unless ``apply`` would register the request"""
        ctx = self.context
        ctx.require_period(Period.FILLING)

        if ctx.store.has_nullifier(request.nullifier):
            raise NullifierAlreadyUsed(f"Nullifier {request.nullifier} already used")
        if ctx.store.num_signups >= ctx.store.capacity:
            raise ReactivationError(f"State tree is full ({ctx.store.capacity} leaves)")
        if not self.verify_request(request):
            raise ReactivationError("Reactivation request does not verify")

    def apply(self, request: ReactivationRequest, balance: Optional[int] = None) -> int:
        ctx = self.context
        self.check(request)

        ctx.store.record_nullifier(request.nullifier)

        if self.policy is ReactivationPolicy.INHERIT:
            status = request.status
        else:
            scalar = derive_scalar(ctx.keypair.priv_key, REACTIVATE_DOMAIN, request.nullifier)
            status = encrypt_parity(0, ctx.coord_pub_key, scalar)

        index = ctx.store.register_reactivated(
            request.new_pub_key,
            ctx.params.voice_credits if balance is None else balance,
            status,
        )
        logger.info(f"Reactivated identity at state leaf {index} ({self.policy.value})")
        return index
