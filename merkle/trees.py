"""
Merkle trees used by the coordinator

FixedArityTree: A-ary, fixed depth, flat node array, Poseidon nodes.  Every
tree checked inside a proof uses this shape.
LeanTree: binary lean incremental tree of unbounded capacity, for trees
consumed off-chain only.
"""

import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Tuple

from primitives.hashing import SNARK_FIELD_SIZE, hash2, poseidon

logger = logging.getLogger(__name__)


class MerkleError(Exception):
    """Base exception for tree operations"""
    pass


# ============================================================================
# ZERO-HASH TABLE
# ============================================================================


@lru_cache(maxsize=None)
def compute_zero_hashes(arity: int, depth: int, zero: int) -> Tuple[int, ...]:
    """zeros[d] is the root of an empty subtree of height d"""
    zeros = [zero]
    for _ in range(depth):
        zeros.append(poseidon([zeros[-1]] * arity))
    return tuple(zeros)


def extend_tree_root(root: int, arity: int, zero: int, from_depth: int, to_depth: int) -> int:
    """Root of a deeper tree whose first subtree is ``root`` and the rest is empty"""
    if to_depth < from_depth:
        raise MerkleError(f"Cannot shrink a tree from depth {from_depth} to {to_depth}")
    zeros = compute_zero_hashes(arity, to_depth, zero)
    for depth in range(from_depth, to_depth):
        root = poseidon([root] + [zeros[depth]] * (arity - 1))
    return root


# ============================================================================
# FIXED-ARITY TREE
# ============================================================================


class FixedArityTree:
    """Fixed-arity, fixed-depth Poseidon tree.

    Node 0 is the root and child ``i`` of node ``p`` lives at ``p*A + i + 1``,
    so the whole tree is a single list and leaves start at
    ``(A^D - 1) / (A - 1)``.
    """

    def __init__(self, arity: int, depth: int, zero: int = 0):
        if arity < 2 or arity > 5:
            raise MerkleError(f"Unsupported arity {arity}")
        if depth < 0:
            raise MerkleError(f"Invalid depth {depth}")

        self.arity = arity
        self.depth = depth
        self.zero = zero
        self.leaves_count = arity ** depth
        self.leaves_idx_0 = (arity ** depth - 1) // (arity - 1)
        self.nodes_count = (arity ** (depth + 1) - 1) // (arity - 1)
        self.zeros = compute_zero_hashes(arity, depth, zero)

        self.nodes: List[int] = []
        for level in range(depth + 1):
            self.nodes.extend([self.zeros[depth - level]] * (arity ** level))

    @property
    def root(self) -> int:
        return self.nodes[0]

    def _check_index(self, leaf_idx: int):
        if leaf_idx < 0 or leaf_idx >= self.leaves_count:
            raise MerkleError(
                f"Leaf index {leaf_idx} out of bounds for {self.arity}-ary depth {self.depth}")

    def _hash_children(self, parent: int) -> int:
        first = parent * self.arity + 1
        return poseidon(self.nodes[first:first + self.arity])

    def leaf(self, leaf_idx: int) -> int:
        self._check_index(leaf_idx)
        return self.nodes[self.leaves_idx_0 + leaf_idx]

    def leaves(self) -> List[int]:
        return self.nodes[self.leaves_idx_0:]

    def update_leaf(self, leaf_idx: int, value: int):
        """Set a leaf and rehash its ancestors"""
        self._check_index(leaf_idx)
        if value < 0 or value >= SNARK_FIELD_SIZE:
            raise MerkleError(f"Value {value} outside field bounds")

        idx = self.leaves_idx_0 + leaf_idx
        self.nodes[idx] = value
        while idx > 0:
            idx = (idx - 1) // self.arity
            self.nodes[idx] = self._hash_children(idx)

    def init_leaves(self, leaves: Sequence[int]):
        """Replace every leaf and recompute the whole tree"""
        if len(leaves) > self.leaves_count:
            raise MerkleError(
                f"{len(leaves)} leaves exceed capacity {self.leaves_count}")

        for i in range(self.leaves_count):
            self.nodes[self.leaves_idx_0 + i] = leaves[i] if i < len(leaves) else self.zero

        for level in range(self.depth - 1, -1, -1):
            start = (self.arity ** level - 1) // (self.arity - 1)
            height = self.depth - level
            empty_children = [self.zeros[height - 1]] * self.arity
            for idx in range(start, start + self.arity ** level):
                first = idx * self.arity + 1
                children = self.nodes[first:first + self.arity]
                if children == empty_children:
                    self.nodes[idx] = self.zeros[height]
                else:
                    self.nodes[idx] = poseidon(children)

    def _path_from_node(self, idx: int) -> Tuple[List[List[int]], List[int]]:
        siblings = []
        positions = []
        while idx > 0:
            position = (idx - 1) % self.arity
            first = idx - position
            siblings.append([self.nodes[first + i] for i in range(self.arity) if i != position])
            positions.append(position)
            idx = (idx - 1) // self.arity
        return siblings, positions

    def path_index_of(self, leaf_idx: int) -> List[int]:
        self._check_index(leaf_idx)
        return self._path_from_node(self.leaves_idx_0 + leaf_idx)[1]

    def path_element_of(self, leaf_idx: int) -> List[List[int]]:
        self._check_index(leaf_idx)
        return self._path_from_node(self.leaves_idx_0 + leaf_idx)[0]

    def subtree_root(self, batch_index: int, subtree_depth: int) -> int:
        return self.nodes[self._subtree_node(batch_index, subtree_depth)]

    def _subtree_node(self, batch_index: int, subtree_depth: int) -> int:
        if subtree_depth < 0 or subtree_depth > self.depth:
            raise MerkleError(f"Subtree depth {subtree_depth} exceeds tree depth {self.depth}")
        level = self.depth - subtree_depth
        if batch_index < 0 or batch_index >= self.arity ** level:
            raise MerkleError(f"Subtree index {batch_index} out of bounds at level {level}")
        return (self.arity ** level - 1) // (self.arity - 1) + batch_index

    def subtree_inclusion_proof(self, batch_index: int,
                                subtree_depth: int) -> Tuple[List[List[int]], List[int]]:
        """Siblings and positions placing a subtree root under the full root"""
        return self._path_from_node(self._subtree_node(batch_index, subtree_depth))

    @staticmethod
    def verify_inclusion(node_hash: int, siblings: Sequence[Sequence[int]],
                         path_indices: Sequence[int], expected_root: int) -> bool:
        if len(siblings) != len(path_indices):
            return False

        current = node_hash
        for level_siblings, position in zip(siblings, path_indices):
            if position < 0 or position > len(level_siblings):
                return False
            children = list(level_siblings[:position]) + [current] + list(level_siblings[position:])
            current = poseidon(children)
        return current == expected_root

    def sub_tree(self, length: int) -> 'FixedArityTree':
        """Copy of this tree keeping only the first ``length`` leaves"""
        tree = FixedArityTree(self.arity, self.depth, self.zero)
        tree.init_leaves(self.leaves()[:length])
        return tree

    def copy(self) -> 'FixedArityTree':
        tree = FixedArityTree.__new__(FixedArityTree)
        tree.__dict__.update(self.__dict__)
        tree.nodes = list(self.nodes)
        return tree


# ============================================================================
# LEAN INCREMENTAL TREE
# ============================================================================


@dataclass
class LeanProof:
    root: int
    leaf: int
    index: int
    siblings: List[int] = field(default_factory=list)


class LeanTree:
    """Binary lean incremental Merkle tree.

    A node without a right sibling is carried up unhashed, so the depth is
    always ceil(log2(size)) and the tree never needs a capacity.
    """

    def __init__(self, leaves: Optional[Iterable[int]] = None):
        self._nodes: List[List[int]] = [[]]
        self._positions = {}
        if leaves:
            self.insert_many(leaves)

    @property
    def size(self) -> int:
        return len(self._nodes[0])

    @property
    def depth(self) -> int:
        return len(self._nodes) - 1

    @property
    def root(self) -> int:
        return self._nodes[self.depth][0] if self.size else 0

    @property
    def leaves(self) -> List[int]:
        return list(self._nodes[0])

    def _check_leaf(self, leaf: int):
        if leaf == 0:
            raise MerkleError("Leaf value 0 is reserved for absent leaves")
        if leaf < 0 or leaf >= SNARK_FIELD_SIZE:
            raise MerkleError(f"Leaf {leaf} outside field bounds")
        if leaf in self._positions:
            raise MerkleError(f"Leaf {leaf} already present")

    def _set(self, level: int, index: int, value: int):
        row = self._nodes[level]
        if index == len(row):
            row.append(value)
        else:
            row[index] = value

    def insert(self, leaf: int):
        self._check_leaf(leaf)

        index = self.size
        if self.size.bit_length() > self.depth:
            self._nodes.append([])

        self._positions[leaf] = index
        node = leaf
        for level in range(self.depth):
            self._set(level, index, node)
            if index & 1:
                node = hash2([self._nodes[level][index - 1], node])
            index >>= 1
        self._nodes[self.depth] = [node]

    def insert_many(self, leaves: Iterable[int]):
        for leaf in leaves:
            self.insert(leaf)

    def update(self, index: int, new_leaf: int):
        if index < 0 or index >= self.size:
            raise MerkleError(f"Leaf index {index} out of range")
        self._check_leaf(new_leaf)

        del self._positions[self._nodes[0][index]]
        self._positions[new_leaf] = index

        node = new_leaf
        for level in range(self.depth):
            row = self._nodes[level]
            row[index] = node
            if index & 1:
                node = hash2([row[index - 1], node])
            elif index + 1 < len(row):
                node = hash2([node, row[index + 1]])
            index >>= 1
        self._nodes[self.depth] = [node]

    def has(self, leaf: int) -> bool:
        return leaf in self._positions

    def index_of(self, leaf: int) -> int:
        return self._positions.get(leaf, -1)

    def generate_proof(self, index: int) -> LeanProof:
        if index < 0 or index >= self.size:
            raise MerkleError(f"Leaf index {index} out of range")

        leaf = self._nodes[0][index]
        siblings = []
        path = []
        for level in range(self.depth):
            row = self._nodes[level]
            is_right = index & 1
            sibling_idx = index - 1 if is_right else index + 1
            if sibling_idx < len(row):
                path.append(is_right)
                siblings.append(row[sibling_idx])
            index >>= 1

        packed = sum(bit << i for i, bit in enumerate(path))
        return LeanProof(root=self.root, leaf=leaf, index=packed, siblings=siblings)

    @staticmethod
    def verify_proof(proof: LeanProof) -> bool:
        node = proof.leaf
        for i, sibling in enumerate(proof.siblings):
            if (proof.index >> i) & 1:
                node = hash2([sibling, node])
            else:
                node = hash2([node, sibling])
        return node == proof.root

    def export(self) -> str:
        return json.dumps([str(leaf) for leaf in self._nodes[0]])

    @classmethod
    def import_(cls, data: str) -> 'LeanTree':
        return cls(int(leaf) for leaf in json.loads(data))

    def copy(self) -> 'LeanTree':
        tree = LeanTree()
        tree._nodes = [list(row) for row in self._nodes]
        tree._positions = dict(self._positions)
        return tree
