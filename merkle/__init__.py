"""Merkle trees for the coordinator state."""

from .trees import (
    FixedArityTree,
    LeanTree,
    LeanProof,
    MerkleError,
    compute_zero_hashes,
    extend_tree_root,
)

__all__ = [
    'FixedArityTree',
    'LeanTree',
    'LeanProof',
    'MerkleError',
    'compute_zero_hashes',
    'extend_tree_root',
]
