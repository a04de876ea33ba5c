"""
Tests for Merkle batch commitments.
"""

import hashlib

import pytest

from evidence_seal.core.evidence import ContentHash, PathStep
from evidence_seal.core.exceptions import TreeConstructionError
from evidence_seal.merkle import (
    DUPLICATE,
    PROMOTE,
    MerkleBatcher,
    combine,
    recompute_root,
    verify_inclusion,
)


def leaf(n: int) -> str:
    return hashlib.sha256(f"file-{n}".encode()).hexdigest()


@pytest.fixture
def batcher():
    return MerkleBatcher()


class TestCombine:

    def test_combine_hashes_hex_concatenation(self):
        left, right = leaf(1), leaf(2)
        expected = hashlib.sha256((left + right).encode("ascii")).hexdigest()

        assert combine(left, right) == expected

    def test_order_sensitive(self):
        assert combine(leaf(1), leaf(2)) != combine(leaf(2), leaf(1))


class TestMerkleBatcher:
    """Tests for tree construction."""

    def test_three_leaf_batch(self, batcher):
        """Reference batch: odd last node is promoted."""
        h1, h2, h3 = leaf(1), leaf(2), leaf(3)

        tree = batcher.build_tree([h1, h2, h3])

        assert tree.root == combine(combine(h1, h2), h3)
        assert tree.path(0) == [PathStep(h2, False), PathStep(h3, False)]
        assert tree.path(1) == [PathStep(h1, True), PathStep(h3, False)]
        assert tree.path(2) == [PathStep(combine(h1, h2), True)]
        assert tree.policy == PROMOTE

    def test_three_leaf_batch_duplicate_policy(self):
        h1, h2, h3 = leaf(1), leaf(2), leaf(3)

        tree = MerkleBatcher(DUPLICATE).build_tree([h1, h2, h3])

        assert tree.root == combine(combine(h1, h2), combine(h3, h3))
        assert tree.path(2) == [PathStep(h3, False), PathStep(combine(h1, h2), True)]
        assert tree.policy == DUPLICATE

    def test_single_leaf(self, batcher):
        tree = batcher.build_tree([leaf(1)])

        assert tree.root == leaf(1)
        assert tree.path(0) == []

    def test_two_leaves(self, batcher):
        root, paths = batcher.build([leaf(1), leaf(2)])

        assert root == combine(leaf(1), leaf(2))
        assert paths == [[PathStep(leaf(2), False)], [PathStep(leaf(1), True)]]

    def test_empty_batch(self, batcher):
        with pytest.raises(TreeConstructionError) as exc_info:
            batcher.build_tree([])

        assert exc_info.value.leaf_count == 0

    def test_malformed_leaf(self, batcher):
        with pytest.raises(TreeConstructionError) as exc_info:
            batcher.build_tree([leaf(1), "not-a-digest"])

        assert exc_info.value.leaf_index == 1

    def test_accepts_content_hashes(self, batcher):
        hashes = [ContentHash("sha256", leaf(n)) for n in range(3)]

        assert batcher.build_tree(hashes).root == batcher.build_tree(
            [h.hexdigest for h in hashes]
        ).root

    def test_leaves_normalised_to_lowercase(self, batcher):
        assert batcher.build_tree([leaf(1).upper(), leaf(2)]).root == combine(leaf(1), leaf(2))

    def test_reorder_changes_root(self, batcher):
        leaves = [leaf(n) for n in range(4)]

        assert batcher.build_tree(leaves).root != batcher.build_tree(
            [leaves[1], leaves[0], leaves[2], leaves[3]]
        ).root

    def test_value_change_changes_root(self, batcher):
        leaves = [leaf(n) for n in range(5)]
        changed = list(leaves)
        changed[4] = leaf(99)

        assert batcher.build_tree(leaves).root != batcher.build_tree(changed).root

    @pytest.mark.parametrize("policy", [PROMOTE, DUPLICATE])
    @pytest.mark.parametrize("size", [1, 2, 3, 4, 5, 6, 7, 8, 9, 16, 17])
    def test_every_path_reaches_root(self, policy, size):
        """Every leaf's path reproduces the root, under both policies."""
        leaves = [leaf(n) for n in range(size)]
        tree = MerkleBatcher(policy).build_tree(leaves)

        for i, value in enumerate(leaves):
            assert recompute_root(value, tree.path(i)) == tree.root

    def test_levels(self, batcher):
        leaves = [leaf(n) for n in range(5)]
        tree = batcher.build_tree(leaves)

        assert tree.leaves == leaves
        assert tree.leaf_count == 5
        assert tree.levels[-1] == [tree.root]

    def test_path_index_out_of_range(self, batcher):
        tree = batcher.build_tree([leaf(1)])

        with pytest.raises(IndexError):
            tree.path(1)

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            MerkleBatcher("sideways")


class TestInclusion:
    """Tests for inclusion verification."""

    def test_verify_inclusion(self, batcher):
        leaves = [leaf(n) for n in range(6)]
        tree = batcher.build_tree(leaves)

        assert verify_inclusion(leaves[3], tree.path(3), tree.root)

    def test_wrong_leaf_fails(self, batcher):
        leaves = [leaf(n) for n in range(6)]
        tree = batcher.build_tree(leaves)

        assert not verify_inclusion(leaf(42), tree.path(3), tree.root)

    def test_wrong_position_fails(self, batcher):
        leaves = [leaf(n) for n in range(4)]
        tree = batcher.build_tree(leaves)

        assert not verify_inclusion(leaves[0], tree.path(1), tree.root)

    def test_malformed_leaf_does_not_verify(self, batcher):
        tree = batcher.build_tree([leaf(1), leaf(2)])

        assert verify_inclusion("zz", tree.path(0), tree.root) is False
