"""
Evidence Seal - Merkle Batch Commitments

Builds a binary hash tree over the content hashes of a batch so a single
root can be anchored externally, and produces per-leaf inclusion paths that
let a holder of one file confirm membership without seeing the others.

Tree rules:
- Leaves are lowercase hex digests, in the batch's declared order
- Parent = sha256(left_hex + right_hex), left then right
- Odd node at a level: ``promote`` carries it up unchanged (default);
  ``duplicate`` pairs it with itself
- One leaf: root = leaf, empty path
- Zero leaves: TreeConstructionError
"""

import hashlib
import logging
import string
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple, Union

from ..core.config import SUPPORTED_ODD_NODE_POLICIES
from ..core.evidence import ContentHash, PathStep
from ..core.exceptions import TreeConstructionError

logger = logging.getLogger(__name__)

PROMOTE = "promote"
DUPLICATE = "duplicate"

_HEX = set(string.hexdigits)

InclusionPath = List[PathStep]
Leaf = Union[str, ContentHash]


def combine(left: str, right: str) -> str:
    """Hash of two child nodes, order-sensitive."""
    return hashlib.sha256((left + right).encode("ascii")).hexdigest()


def _normalize_leaf(leaf: Leaf, index: int, count: int) -> str:
    value = leaf.hexdigest if isinstance(leaf, ContentHash) else leaf
    if not isinstance(value, str) or not value or not set(value) <= _HEX:
        raise TreeConstructionError(
            f"Leaf {index} is not a hex digest",
            leaf_count=count,
            leaf_index=index,
        )
    return value.lower()


@dataclass
class MerkleTree:
    """A built batch tree; levels[0] are the leaves, levels[-1] is [root]."""
    levels: List[List[str]]
    policy: str = PROMOTE
    _paths: List[InclusionPath] = field(default_factory=list, repr=False)

    @property
    def root(self) -> str:
        return self.levels[-1][0]

    @property
    def leaves(self) -> List[str]:
        return list(self.levels[0])

    @property
    def leaf_count(self) -> int:
        return len(self.levels[0])

    def path(self, index: int) -> InclusionPath:
        """Inclusion path for the leaf at index."""
        if not 0 <= index < self.leaf_count:
            raise IndexError(f"Leaf index {index} out of range")
        return list(self._paths[index])

    def paths(self) -> List[InclusionPath]:
        return [list(p) for p in self._paths]


class MerkleBatcher:
    """Builds batch trees under a fixed odd-node policy."""

    def __init__(self, odd_node_policy: str = PROMOTE):
        if odd_node_policy not in SUPPORTED_ODD_NODE_POLICIES:
            raise ValueError(f"Unknown odd node policy: {odd_node_policy}")
        self.odd_node_policy = odd_node_policy

    def build_tree(self, ordered_leaf_hashes: Sequence[Leaf]) -> MerkleTree:
        """
        Build a tree over the leaves in their given order.

        Args:
            ordered_leaf_hashes: Content hashes in declared batch order

        Returns:
            MerkleTree with root and per-leaf paths

        Raises:
            TreeConstructionError: On an empty batch or a malformed leaf
        """
        count = len(ordered_leaf_hashes)
        if count == 0:
            raise TreeConstructionError(
                "Cannot build a batch commitment with zero members",
                leaf_count=0,
            )

        level = [
            _normalize_leaf(leaf, i, count)
            for i, leaf in enumerate(ordered_leaf_hashes)
        ]
        levels = [level]
        paths: List[InclusionPath] = [[] for _ in range(count)]
        # positions[i] = index of leaf i's ancestor in the current level
        positions = list(range(count))

        while len(level) > 1:
            parents = []
            for i in range(0, len(level), 2):
                if i + 1 < len(level):
                    parents.append(combine(level[i], level[i + 1]))
                elif self.odd_node_policy == DUPLICATE:
                    parents.append(combine(level[i], level[i]))
                else:
                    parents.append(level[i])

            for leaf_index, pos in enumerate(positions):
                if pos % 2 == 0:
                    if pos + 1 < len(level):
                        paths[leaf_index].append(
                            PathStep(sibling_hash=level[pos + 1], sibling_is_left=False)
                        )
                    elif self.odd_node_policy == DUPLICATE:
                        paths[leaf_index].append(
                            PathStep(sibling_hash=level[pos], sibling_is_left=False)
                        )
                else:
                    paths[leaf_index].append(
                        PathStep(sibling_hash=level[pos - 1], sibling_is_left=True)
                    )
                positions[leaf_index] = pos // 2

            level = parents
            levels.append(level)

        tree = MerkleTree(levels=levels, policy=self.odd_node_policy, _paths=paths)
        logger.debug(
            f"Built Merkle tree over {count} leaves "
            f"(policy={self.odd_node_policy}): root {tree.root[:16]}..."
        )
        return tree

    def build(
        self, ordered_leaf_hashes: Sequence[Leaf]
    ) -> Tuple[str, List[InclusionPath]]:
        """Root and every leaf's path."""
        tree = self.build_tree(ordered_leaf_hashes)
        return tree.root, tree.paths()


def recompute_root(leaf_hash: Leaf, path: Sequence[PathStep]) -> str:
    """
    Climb from one leaf to the root using only its path.

    Independent of the odd-node policy and of every other leaf.
    """
    current = _normalize_leaf(leaf_hash, 0, 1)
    for step in path:
        sibling = step.sibling_hash.lower()
        if step.sibling_is_left:
            current = combine(sibling, current)
        else:
            current = combine(current, sibling)
    return current


def verify_inclusion(leaf_hash: Leaf, path: Sequence[PathStep], root: str) -> bool:
    """True if the leaf and path reproduce the root."""
    try:
        return recompute_root(leaf_hash, path) == root.lower()
    except TreeConstructionError:
        return False


__all__ = [
    "MerkleBatcher",
    "MerkleTree",
    "InclusionPath",
    "combine",
    "recompute_root",
    "verify_inclusion",
    "PROMOTE",
    "DUPLICATE",
]
