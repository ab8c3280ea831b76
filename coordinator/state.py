"""
Authoritative per-user state and the trees that commit to it
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from merkle import FixedArityTree, LeanTree
from primitives import SENTINEL, ZERO_POINT, Point, StatusCiphertext, hash2, hash5

logger = logging.getLogger(__name__)

TREE_ARITY = 5
MAX_BALANCE = 1 << 252

EMPTY_STATE_LEAF = hash2([hash5([0] * 5), hash5([0] * 5)])


@dataclass
class UserRecord:
    """One registered identity"""
    pub_key: Point
    balance: int
    vote_tree: FixedArityTree
    nonce: int = 0
    voted: bool = False
    status: StatusCiphertext = SENTINEL

    @property
    def vote_root(self) -> int:
        # Unvoted records commit to 0 so registration does not hash a vote tree
        return self.vote_tree.root if self.voted else 0

    def leaf_fields(self) -> List[int]:
        """10-field layout consumed by the constraint system"""
        return [self.pub_key[0], self.pub_key[1], self.balance, self.vote_root,
                self.nonce, *self.status.fields(), 0]

    def leaf_hash(self) -> int:
        fields = self.leaf_fields()
        return hash2([hash5(fields[:5]), hash5(fields[5:])])


@dataclass(frozen=True)
class DeactivationRecord:
    status: StatusCiphertext
    shared_key_hash: int

    def leaf_fields(self) -> List[int]:
        """5-field layout consumed by the constraint system"""
        return [*self.status.fields(), self.shared_key_hash]

    def leaf_hash(self) -> int:
        return hash5(self.leaf_fields())


def active_leaf(index: int, flag: int) -> int:
    """Shadow-tree leaf of a deactivated user; never 0 and unique per index.

    Active users (flag 0) have no leaf, so registrations leave the root alone.
    """
    return hash2([index, flag])


class StateStore:
    """Owns the State tree, the active-flag shadow tree, the deactivation
    record tree and every user's vote-option tree.

    Mutators assume the caller already validated the change.
    """

    def __init__(self, state_tree_depth: int, vote_option_tree_depth: int):
        self.state_tree_depth = state_tree_depth
        self.vote_option_tree_depth = vote_option_tree_depth
        self.deactivate_tree_depth = state_tree_depth + 2

        self.state_tree = FixedArityTree(TREE_ARITY, state_tree_depth, EMPTY_STATE_LEAF)
        self.active_tree = LeanTree()
        self.deactivate_tree = FixedArityTree(TREE_ARITY, self.deactivate_tree_depth, 0)

        self.records: List[UserRecord] = []
        self.active_flags: List[int] = []
        self.deactivations: List[DeactivationRecord] = []
        self._deactivation_index: Dict[int, int] = {}
        self.nullifiers: Set[int] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def num_signups(self) -> int:
        return len(self.records)

    @property
    def capacity(self) -> int:
        return self.state_tree.leaves_count

    @property
    def state_root(self) -> int:
        return self.state_tree.root

    @property
    def active_root(self) -> int:
        return self.active_tree.root

    @property
    def deactivate_root(self) -> int:
        return self.deactivate_tree.root

    @property
    def deactivate_commitment(self) -> int:
        return hash2([self.active_root, self.deactivate_root])

    def record(self, index: int) -> Optional[UserRecord]:
        if 0 <= index < len(self.records):
            return self.records[index]
        return None

    def empty_record(self) -> UserRecord:
        return UserRecord(
            pub_key=ZERO_POINT,
            balance=0,
            vote_tree=FixedArityTree(TREE_ARITY, self.vote_option_tree_depth, 0),
        )

    def active_flag(self, index: int) -> int:
        return self.active_flags[index]

    def active_proof(self, index: int) -> Tuple[int, List[int]]:
        """Shadow-tree leaf and siblings; (0, []) while the user is active"""
        flag = self.active_flags[index] if index < len(self.active_flags) else 0
        if flag == 0:
            return 0, []
        proof = self.active_tree.generate_proof(self.active_tree.index_of(active_leaf(index, flag)))
        return proof.leaf, proof.siblings

    def find_deactivation(self, shared_key_hash: int) -> Optional[int]:
        return self._deactivation_index.get(shared_key_hash)

    def has_nullifier(self, nullifier: int) -> bool:
        return nullifier in self.nullifiers

    def state_leaf_fields(self, index: int) -> List[int]:
        record = self.record(index) or self.empty_record()
        return record.leaf_fields()

    def deactivation_leaf_fields(self, index: int) -> List[int]:
        return self.deactivations[index].leaf_fields()

    def deactivation_path(self, index: int) -> List[List[int]]:
        """Siblings of a deactivation slot; empty past the tree's capacity"""
        if index >= self.deactivate_tree.leaves_count:
            return []
        return self.deactivate_tree.path_element_of(index)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _refresh_leaf(self, index: int):
        self.state_tree.update_leaf(index, self.records[index].leaf_hash())

    def _append(self, record: UserRecord) -> int:
        if len(self.records) >= self.capacity:
            raise OverflowError(f"State tree is full ({self.capacity} leaves)")
        if not 0 <= record.balance < MAX_BALANCE:
            raise ValueError(f"Balance {record.balance} outside [0, 2^252)")

        index = len(self.records)
        self.records.append(record)
        self.active_flags.append(0)
        self._refresh_leaf(index)
        return index

    def register(self, pub_key: Point, balance: int) -> int:
        index = self._append(UserRecord(
            pub_key=tuple(pub_key),
            balance=balance,
            vote_tree=FixedArityTree(TREE_ARITY, self.vote_option_tree_depth, 0),
        ))
        logger.info(f"Registered state leaf {index} (balance {balance})")
        return index

    def register_reactivated(self, pub_key: Point, balance: int, status: StatusCiphertext) -> int:
        index = self._append(UserRecord(
            pub_key=tuple(pub_key),
            balance=balance,
            vote_tree=FixedArityTree(TREE_ARITY, self.vote_option_tree_depth, 0),
            status=status,
        ))
        logger.info(f"Registered reactivated key at state leaf {index}")
        return index

    def apply_vote(self, index: int, option_idx: int, new_weight: int, new_nonce: int,
                   new_balance: int, new_pub_key: Optional[Point] = None):
        record = self.records[index]
        if new_nonce <= record.nonce:
            raise ValueError(f"Nonce for leaf {index} must increase ({record.nonce} -> {new_nonce})")
        if not 0 <= new_balance < MAX_BALANCE:
            raise ValueError(f"Balance {new_balance} outside [0, 2^252)")

        record.vote_tree.update_leaf(option_idx, new_weight)
        record.balance = new_balance
        record.nonce = new_nonce
        record.voted = True
        if new_pub_key is not None and tuple(new_pub_key) != ZERO_POINT:
            record.pub_key = tuple(new_pub_key)
        self._refresh_leaf(index)

    def mark_deactivated(self, index: int, status: StatusCiphertext, marker: int):
        if marker == 0:
            raise ValueError("Deactivation marker must be non-zero")
        record = self.records[index]
        record.status = status
        self.active_flags[index] = marker
        self.active_tree.insert(active_leaf(index, marker))
        self._refresh_leaf(index)

    def record_deactivation(self, status: StatusCiphertext, shared_key_hash: int) -> int:
        index = len(self.deactivations)
        if index >= self.deactivate_tree.leaves_count:
            raise OverflowError("Deactivation tree is full")

        record = DeactivationRecord(status, shared_key_hash)
        self.deactivations.append(record)
        self._deactivation_index[shared_key_hash] = index
        self.deactivate_tree.update_leaf(index, record.leaf_hash())
        return index

    def record_nullifier(self, nullifier: int):
        if nullifier in self.nullifiers:
            raise ValueError(f"Nullifier {nullifier} already recorded")
        self.nullifiers.add(nullifier)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        return copy.deepcopy(self.__dict__)

    def restore(self, snapshot: dict):
        self.__dict__.update(copy.deepcopy(snapshot))
