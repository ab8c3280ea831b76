"""
Fixed-arity and lean incremental trees
"""

import pytest

from merkle import (
    FixedArityTree,
    LeanProof,
    LeanTree,
    MerkleError,
    compute_zero_hashes,
    extend_tree_root,
)
from primitives import hash2, poseidon


class TestFixedArityTree:

    def test_empty_root_is_zero_hash(self):
        tree = FixedArityTree(5, 2, 0)
        assert tree.root == compute_zero_hashes(5, 2, 0)[2]

    def test_incremental_updates_match_full_rebuild(self):
        values = [11, 22, 33, 44, 55, 66, 77]
        incremental = FixedArityTree(5, 2, 0)
        for i, v in enumerate(values):
            incremental.update_leaf(i, v)

        rebuilt = FixedArityTree(5, 2, 0)
        rebuilt.init_leaves(values)
        assert incremental.root == rebuilt.root
        assert incremental.leaves()[:len(values)] == values

    def test_depth_one_root_is_hash_of_leaves(self):
        tree = FixedArityTree(5, 1, 0)
        tree.init_leaves([1, 2, 3])
        assert tree.root == poseidon([1, 2, 3, 0, 0])

    def test_inclusion_proof_for_every_leaf(self):
        tree = FixedArityTree(5, 2, 0)
        tree.init_leaves(list(range(1, 13)))
        for idx in (0, 4, 5, 11, 24):
            assert FixedArityTree.verify_inclusion(
                tree.leaf(idx), tree.path_element_of(idx), tree.path_index_of(idx), tree.root)

    def test_inclusion_proof_rejects_tampering(self):
        tree = FixedArityTree(5, 2, 0)
        tree.init_leaves([1, 2, 3, 4, 5, 6])
        siblings = tree.path_element_of(3)
        assert not FixedArityTree.verify_inclusion(99, siblings, tree.path_index_of(3), tree.root)
        assert not FixedArityTree.verify_inclusion(4, siblings, tree.path_index_of(2), tree.root)

    def test_subtree_inclusion(self):
        tree = FixedArityTree(5, 2, 0)
        tree.init_leaves(list(range(1, 10)))
        subtree = FixedArityTree(5, 1, 0)
        subtree.init_leaves([6, 7, 8, 9])

        assert tree.subtree_root(1, 1) == subtree.root
        siblings, positions = tree.subtree_inclusion_proof(1, 1)
        assert positions == [1]
        assert FixedArityTree.verify_inclusion(subtree.root, siblings, positions, tree.root)

    def test_sub_tree_keeps_prefix(self):
        tree = FixedArityTree(5, 2, 0)
        tree.init_leaves([1, 2, 3, 4])
        prefix = FixedArityTree(5, 2, 0)
        prefix.init_leaves([1, 2])
        assert tree.sub_tree(2).root == prefix.root

    def test_extend_tree_root_matches_deeper_tree(self):
        shallow = FixedArityTree(5, 1, 0)
        shallow.init_leaves([1, 2, 3])
        deep = FixedArityTree(5, 3, 0)
        deep.init_leaves([1, 2, 3])
        assert extend_tree_root(shallow.root, 5, 0, 1, 3) == deep.root

    def test_copy_is_independent(self):
        tree = FixedArityTree(5, 1, 0)
        clone = tree.copy()
        clone.update_leaf(0, 5)
        assert tree.leaf(0) == 0
        assert clone.root != tree.root

    def test_bounds(self):
        tree = FixedArityTree(5, 1, 0)
        with pytest.raises(MerkleError):
            tree.update_leaf(5, 1)
        with pytest.raises(MerkleError):
            tree.init_leaves([1] * 6)
        with pytest.raises(MerkleError):
            FixedArityTree(6, 1, 0)


class TestLeanTree:

    def test_empty_and_single_leaf(self):
        tree = LeanTree()
        assert tree.root == 0
        assert tree.depth == 0
        tree.insert(7)
        assert tree.root == 7

    def test_depth_grows_with_log_size(self):
        tree = LeanTree([1, 2, 3])
        assert tree.depth == 2
        assert tree.root == hash2([hash2([1, 2]), 3])
        tree.insert(4)
        assert tree.root == hash2([hash2([1, 2]), hash2([3, 4])])
        tree.insert(5)
        assert tree.depth == 3

    def test_update_matches_rebuild(self):
        tree = LeanTree([1, 2, 3, 4, 5])
        tree.update(2, 30)
        assert tree.root == LeanTree([1, 2, 30, 4, 5]).root
        assert tree.index_of(30) == 2
        assert not tree.has(3)

    def test_proofs_verify(self):
        tree = LeanTree([10, 20, 30, 40, 50])
        for index in range(tree.size):
            proof = tree.generate_proof(index)
            assert LeanTree.verify_proof(proof)
        forged = LeanProof(root=tree.root, leaf=99, index=0, siblings=tree.generate_proof(0).siblings)
        assert not LeanTree.verify_proof(forged)

    def test_zero_and_duplicate_leaves_rejected(self):
        tree = LeanTree([1])
        with pytest.raises(MerkleError):
            tree.insert(0)
        with pytest.raises(MerkleError):
            tree.insert(1)

    def test_absent_leaf_index(self):
        assert LeanTree([1, 2]).index_of(3) == -1

    def test_export_import(self):
        tree = LeanTree([5, 6, 7])
        restored = LeanTree.import_(tree.export())
        assert restored.root == tree.root
        assert restored.leaves == [5, 6, 7]
